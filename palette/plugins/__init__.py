import importlib
from pathlib import Path
from typing import Dict, List, Type, TypeVar

import structlog
from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic_settings import BaseSettings

logger = structlog.get_logger(__name__)
T = TypeVar("T", bound=BaseSettings)


class PluginManager:
    """
    Handles the discovery, configuration loading, and registration of all plugins.

    A plugin is any directory under ``plugins/`` holding an ``endpoint.py``
    that exposes ``router``; an optional ``config.py`` may declare
    ``BaseSettings`` models that get merged into the application settings.
    """

    def __init__(
        self, plugins_dir: str = "plugins", excluded_plugins: List[str] | None = None
    ):
        self.base_path = Path(__file__).parent.parent
        self.plugins_dir = self.base_path / plugins_dir
        self.excluded_plugins = set(excluded_plugins or [])
        self.discovered_routers: Dict[str, APIRouter] = {}
        self.config_models: Dict[str, Type[BaseSettings]] = {}
        self.loaded_configs: Dict[str, BaseSettings] = {}
        self._discovery_has_run = False

    def discover(self):
        """Discovers all plugin routers and configuration models."""
        if self._discovery_has_run:
            logger.debug("Plugin discovery has already run. Skipping.")
            return
        if not self.plugins_dir.exists():
            logger.warning(f"Plugins directory {self.plugins_dir} does not exist.")
            self._discovery_has_run = True
            return

        logger.info("Starting plugin discovery...")
        for endpoint_file in sorted(self.plugins_dir.rglob("endpoint.py")):
            plugin_path = endpoint_file.parent
            relative_path = plugin_path.relative_to(self.plugins_dir)
            if any(part.startswith(("_", ".")) for part in relative_path.parts):
                continue

            plugin_name = relative_path.as_posix()
            if plugin_name in self.excluded_plugins:
                logger.info(f"Skipping excluded plugin: {plugin_name}")
                continue

            self._load_plugin_components(plugin_path, plugin_name)

        self._discovery_has_run = True

    def _get_module_path(self, file_path: Path) -> str:
        """Constructs the fully-qualified Python module path."""
        relative_to_root = file_path.relative_to(self.base_path.parent)
        return ".".join(relative_to_root.with_suffix("").parts)

    def _load_plugin_components(self, plugin_path: Path, plugin_name: str):
        """Loads the router and config models from a single plugin directory."""
        module_path = self._get_module_path(plugin_path / "endpoint.py")
        router = getattr(importlib.import_module(module_path), "router", None)
        if isinstance(router, APIRouter):
            self.discovered_routers[plugin_name] = router
            logger.debug(f"Discovered router for plugin: {plugin_name}")

        config_file = plugin_path / "config.py"
        if not config_file.exists():
            return
        module = importlib.import_module(self._get_module_path(config_file))
        for item_name in dir(module):
            obj = getattr(module, item_name)
            if (
                isinstance(obj, type)
                and issubclass(obj, BaseSettings)
                and obj is not BaseSettings
                and obj.__module__ == module.__name__
            ):
                self.config_models[obj.__name__] = obj
                logger.debug(
                    f"Found config model '{obj.__name__}' for plugin: {plugin_name}"
                )

    def get_config_models(self) -> List[Type[BaseSettings]]:
        return list(self.config_models.values())

    def bind_settings(self, settings: BaseSettings):
        """
        Registers the combined application settings as the instance of every
        plugin config model it was built from.
        """
        for name, model_class in self.config_models.items():
            if isinstance(settings, model_class):
                self.loaded_configs[name] = settings

    def get_plugin_config(self, model_class: Type[T]) -> T | None:
        """Retrieves a loaded plugin configuration instance by its class type."""
        instance = self.loaded_configs.get(model_class.__name__)
        if instance and isinstance(instance, model_class):
            return instance
        return None

    def register_routers(self, app: FastAPI):
        """Registers all discovered routers with the FastAPI application."""
        if not self.discovered_routers:
            logger.warning("No plugin routers were discovered to register.")
            return

        for plugin_name, router in sorted(self.discovered_routers.items()):
            prefix = f"/{plugin_name}"
            tags = [plugin_name.replace("/", " ").replace("_", " ").title()]
            app.include_router(router, prefix=prefix, tags=tags)
            logger.info(
                f"Registered plugin routes for '{plugin_name}' at prefix '{prefix}'"
            )


_plugin_manager_instance: PluginManager | None = None


def get_plugin_manager(excluded_plugins: List[str] | None = None) -> PluginManager:
    """Gets a singleton instance of the PluginManager and runs discovery."""
    global _plugin_manager_instance
    if _plugin_manager_instance is None:
        _plugin_manager_instance = PluginManager(excluded_plugins=excluded_plugins)
    _plugin_manager_instance.discover()
    return _plugin_manager_instance


def get_plugin_settings_provider(model_class: Type[T]):
    """
    Creates a dependency provider for a specific plugin settings model.

    Usage in an endpoint:
    `config: Annotated[MyPluginSettings, Depends(get_plugin_settings_provider(MyPluginSettings))]`
    """

    def dependency(request: Request) -> T:
        plugin_manager: PluginManager | None = getattr(
            request.app.state, "plugin_manager", None
        )
        if not plugin_manager:
            raise HTTPException(
                status_code=500,
                detail="Plugin manager not initialized in application state.",
            )

        config_instance = plugin_manager.get_plugin_config(model_class)
        if not config_instance:
            logger.error("Configuration not found for model", model=model_class.__name__)
            raise HTTPException(
                status_code=500,
                detail=f"Configuration for '{model_class.__name__}' is not loaded.",
            )
        return config_instance

    return dependency


__all__ = [
    "PluginManager",
    "get_plugin_manager",
    "get_plugin_settings_provider",
]
