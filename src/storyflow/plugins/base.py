"""Base class and registry for save plugins.

Plugins hook into the moment the engine persists an image:

- ``on_before_save`` may replace the image or redirect the path.
- ``on_after_save`` runs once the PNG is on disk (sidecar files, indexing).

Both hooks receive ``params``, the generation parameters of the image
(prompt, negative prompt, resolved config, instruction index and loop
iteration).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from PIL import Image

logger = logging.getLogger(__name__)


class PluginBase:
    """Base class for save plugins. Hooks are pass-through by default."""

    name: str = "Base"
    description: str = "Base plugin"
    version: str = "0.1.0"

    def __init__(self, **config):
        self.config = config
        self.enabled = config.get("enabled", True)

    def on_before_save(
        self, image: Image.Image, save_path: Path, params: dict[str, Any]
    ) -> tuple[Image.Image, Path]:
        return image, save_path

    def on_after_save(self, image: Image.Image, save_path: Path, params: dict[str, Any]) -> None:
        pass


class PluginRegistry:
    """Registry of available plugin classes keyed by name."""

    def __init__(self) -> None:
        self._plugins: dict[str, type[PluginBase]] = {}

    def register(self, plugin_class: type[PluginBase]) -> None:
        if plugin_class.name in self._plugins:
            logger.warning("Plugin '%s' is already registered, overwriting", plugin_class.name)
        self._plugins[plugin_class.name] = plugin_class
        logger.debug("Registered plugin: %s", plugin_class.name)

    def instantiate(self, plugin_name: str, **config) -> PluginBase:
        """Create a configured plugin instance.

        Raises:
            KeyError: If ``plugin_name`` is not registered.
        """
        if plugin_name not in self._plugins:
            available = ", ".join(self.list_available())
            raise KeyError(f"Plugin '{plugin_name}' not found. Available plugins: {available}")
        return self._plugins[plugin_name](**config)

    def list_available(self) -> list[str]:
        return sorted(self._plugins)


plugin_registry = PluginRegistry()
