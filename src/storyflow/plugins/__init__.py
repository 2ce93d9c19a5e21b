"""Save plugins for the StoryFlow engine.

Plugins run around every image the engine writes to disk.  Importing this
package registers the bundled plugins with :data:`plugin_registry`.
"""

from storyflow.plugins.base import PluginBase, PluginRegistry, plugin_registry
from storyflow.plugins.save_metadata import SaveMetadataPlugin

__all__ = ["PluginBase", "PluginRegistry", "SaveMetadataPlugin", "plugin_registry"]
