"""Generation providers for the StoryFlow engine."""

from storyflow.providers.base import (
    ConnectionFailedError,
    GenerationProgress,
    GenerationProvider,
    ImageDecodingError,
    InvalidResponseError,
    LoRAInfo,
    ModelInfo,
    ProgressStage,
    ProviderError,
    ProviderRegistry,
    ProviderTimeoutError,
    RequestFailedError,
    ToolNotSupportedError,
    ToolResult,
    provider_registry,
)
from storyflow.providers.http import DrawThingsHTTPProvider
from storyflow.providers.request_log import RequestLogger

__all__ = [
    "ConnectionFailedError",
    "DrawThingsHTTPProvider",
    "GenerationProgress",
    "GenerationProvider",
    "ImageDecodingError",
    "InvalidResponseError",
    "LoRAInfo",
    "ModelInfo",
    "ProgressStage",
    "ProviderError",
    "ProviderRegistry",
    "ProviderTimeoutError",
    "RequestFailedError",
    "RequestLogger",
    "ToolNotSupportedError",
    "ToolResult",
    "provider_registry",
]
