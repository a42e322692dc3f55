"""Dynamic, centralized configuration management plugin."""

PLUGIN_METADATA = {
    "name": "config",
    "version": "1.0.0",
    "description": "Runtime-tunable settings (model ids, credit rates) for all plugins.",
}
