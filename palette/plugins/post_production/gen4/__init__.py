"""Reference-guided image generation on Runway Gen-4."""

PLUGIN_METADATA = {
    "name": "gen4",
    "version": "1.0.0",
    "description": "Composes a new image from up to three tagged reference images.",
}
