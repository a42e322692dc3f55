"""Text or image to video on ByteDance Seedance."""

PLUGIN_METADATA = {
    "name": "video_animate",
    "version": "1.0.0",
    "description": "Animates a prompt, optionally from a start frame, into a short video.",
}
