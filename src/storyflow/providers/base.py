"""Generation provider interface.

A provider turns a prompt plus a resolved :class:`GenerationConfig` into one
or more images.  The engine only talks to this interface; concrete transports
register themselves with :data:`provider_registry` under the name used by the
``provider_transport`` setting.

Error taxonomy
--------------
Every provider failure is a :class:`ProviderError`.  The ``fatal`` flag
decides whether the engine aborts the run or records a per-instruction
failure and carries on:

- :class:`ConnectionFailedError`: backend unreachable (fatal)
- :class:`RequestFailedError`: non-200 response; fatal only when the backend
  rejects our credentials (401/403)
- :class:`InvalidResponseError`, :class:`ImageDecodingError`,
  :class:`ProviderTimeoutError`, :class:`ToolNotSupportedError`: non-fatal

Implementing a provider
-----------------------
    >>> class MyProvider(GenerationProvider):
    ...     name = "mine"
    ...     async def check_connection(self) -> bool:
    ...         return True
    ...     async def generate_image(self, prompt, config, **kwargs):
    ...         return [Image.new("RGB", (config.width, config.height))]
    >>> provider_registry.register(MyProvider)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from PIL import Image

from storyflow.core.config import StoryflowConfig
from storyflow.core.generation import GenerationConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors.
# ---------------------------------------------------------------------------


class ProviderError(Exception):
    """Base class for generation provider failures."""

    fatal: bool = False


class ConnectionFailedError(ProviderError):
    fatal = True


class RequestFailedError(ProviderError):
    """The backend answered with a non-success status."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        self.fatal = status_code in (401, 403)
        detail = body.strip()[:200] if body else "no response body"
        super().__init__(f"Request failed with status {status_code}: {detail}")


class InvalidResponseError(ProviderError):
    pass


class ImageDecodingError(ProviderError):
    pass


class ProviderTimeoutError(ProviderError):
    pass


class ToolNotSupportedError(ProviderError):
    def __init__(self, tool: str, provider: str = ""):
        self.tool = tool
        where = f" by provider '{provider}'" if provider else ""
        super().__init__(f"Tool '{tool}' is not supported{where}")


# ---------------------------------------------------------------------------
# Progress and catalog types.
# ---------------------------------------------------------------------------


class ProgressStage(str, Enum):
    STARTING = "starting"
    SAMPLING = "sampling"
    DECODING = "decoding"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class GenerationProgress:
    stage: ProgressStage
    step: int = 0
    total_steps: int = 0
    message: str = ""

    @property
    def fraction(self) -> float:
        if self.stage is ProgressStage.SAMPLING:
            return self.step / max(self.total_steps, 1)
        if self.stage is ProgressStage.DECODING:
            return 0.95
        if self.stage is ProgressStage.COMPLETE:
            return 1.0
        return 0.0

    @property
    def description(self) -> str:
        if self.stage is ProgressStage.SAMPLING:
            return f"Sampling {self.step}/{self.total_steps}"
        if self.stage is ProgressStage.FAILED:
            return f"Failed: {self.message}"
        return {
            ProgressStage.STARTING: "Starting...",
            ProgressStage.DECODING: "Decoding image...",
            ProgressStage.COMPLETE: "Complete",
        }[self.stage]


ProgressCallback = Callable[[GenerationProgress], None]


@dataclass(frozen=True)
class ModelInfo:
    filename: str
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.filename


@dataclass(frozen=True)
class LoRAInfo:
    filename: str
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.filename


@dataclass
class ToolResult:
    """Result of a provider-side image tool.

    ``image`` is the produced layer (mask, depth map or edited canvas);
    ``data`` carries structured output such as pose keypoints.
    """

    image: Image.Image | None = None
    data: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Provider base class.
# ---------------------------------------------------------------------------


class GenerationProvider(ABC):
    """Abstract base class for generation backends."""

    name: str = "base"
    description: str = "Base class for generation providers"

    def __init__(self, config: StoryflowConfig):
        self.config = config

    @abstractmethod
    async def check_connection(self) -> bool:
        """Return True when the backend is reachable. Never raises."""

    @abstractmethod
    async def generate_image(
        self,
        prompt: str,
        config: GenerationConfig,
        *,
        source_image: Image.Image | None = None,
        mask: Image.Image | None = None,
        moodboard: Sequence[tuple[Image.Image, float]] = (),
        on_progress: ProgressCallback | None = None,
    ) -> list[Image.Image]:
        """Render images.

        Without ``source_image`` this is text-to-image; with it,
        image-to-image; with ``source_image`` and ``mask``, inpainting.

        Raises:
            ProviderError: On any failure.
        """

    async def apply_tool(
        self,
        tool: str,
        image: Image.Image | None,
        params: dict[str, Any] | None = None,
    ) -> ToolResult:
        """Run an image-analysis tool (masking, depth, pose, zoom) remotely.

        Raises:
            ToolNotSupportedError: Unless the provider implements the tool.
        """
        raise ToolNotSupportedError(tool, self.name)

    async def fetch_models(self) -> list[ModelInfo]:
        return []

    async def fetch_loras(self) -> list[LoRAInfo]:
        return []

    async def close(self) -> None:
        pass

    async def __aenter__(self) -> GenerationProvider:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def get_provider_info(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description}


class ProviderRegistry:
    """Registry of provider classes keyed by transport name.

    Usage
    -----
        >>> from storyflow.providers import provider_registry
        >>> provider = provider_registry.instantiate(config.provider_transport, config)
    """

    def __init__(self) -> None:
        self._providers: dict[str, type[GenerationProvider]] = {}

    def register(self, provider_class: type[GenerationProvider]) -> None:
        provider_name = provider_class.name
        if provider_name in self._providers:
            logger.warning("Provider '%s' is already registered, overwriting", provider_name)
        self._providers[provider_name] = provider_class
        logger.debug("Registered provider: %s", provider_name)

    def instantiate(self, provider_name: str, config: StoryflowConfig, **kwargs) -> GenerationProvider:
        """Create a provider instance.

        Raises:
            KeyError: If ``provider_name`` is not registered.
        """
        if provider_name not in self._providers:
            available = ", ".join(self.list_available())
            raise KeyError(f"Provider '{provider_name}' not found. Available providers: {available}")
        instance = self._providers[provider_name](config, **kwargs)
        logger.info("Instantiated provider: %s", provider_name)
        return instance

    def get_provider_class(self, provider_name: str) -> type[GenerationProvider] | None:
        return self._providers.get(provider_name)

    def list_available(self) -> list[str]:
        return sorted(self._providers)


provider_registry = ProviderRegistry()
