"""StoryFlow Engine - execution engine for StoryFlow image-generation workflows."""

__version__ = "0.3.0"

from storyflow.core.config import StoryflowConfig, config
from storyflow.core.engine import WorkflowEngine
from storyflow.providers import DrawThingsHTTPProvider, GenerationProvider, provider_registry

__all__ = [
    "DrawThingsHTTPProvider",
    "GenerationProvider",
    "StoryflowConfig",
    "WorkflowEngine",
    "config",
    "provider_registry",
]
