"""Instruction-based image editing on qwen/qwen-image-edit."""

PLUGIN_METADATA = {
    "name": "image_edit",
    "version": "1.0.0",
    "description": "Edits a single image from a text instruction.",
}
