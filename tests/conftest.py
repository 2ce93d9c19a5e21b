"""Shared pytest fixtures for StoryFlow tests."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from collections.abc import Callable, Generator, Sequence
from pathlib import Path
from typing import Any

import pytest
from PIL import Image

from storyflow.core.config import StoryflowConfig
from storyflow.core.engine import WorkflowEngine
from storyflow.core.generation import GenerationConfig
from storyflow.providers.base import (
    GenerationProgress,
    GenerationProvider,
    ProgressStage,
    ProviderError,
    ToolResult,
)


class FakeProvider(GenerationProvider):
    """Deterministic in-memory provider.

    Every ``generate_image`` call is recorded in ``calls`` and returns
    ``images_per_call`` solid images sized from the resolved config.  The
    red channel encodes the call number so tests can tell renders apart.

    Args:
        config: Application configuration.
        connected: Result of ``check_connection``.
        error: Raised from every ``generate_image`` call when set.
        tools: Tool name -> result for ``apply_tool``; other tools are
            unsupported.
        delay: Seconds to sleep inside ``generate_image`` (for cancellation).
    """

    name = "fake"
    description = "In-memory test provider"

    def __init__(
        self,
        config: StoryflowConfig,
        *,
        connected: bool = True,
        error: ProviderError | None = None,
        tools: dict[str, ToolResult] | None = None,
        images_per_call: int = 1,
        delay: float = 0.0,
    ):
        super().__init__(config)
        self.connected = connected
        self.error = error
        self.tools = tools or {}
        self.images_per_call = images_per_call
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.tool_calls: list[tuple[str, dict[str, Any] | None]] = []
        self.connection_checks = 0
        self.closed = False

    async def check_connection(self) -> bool:
        self.connection_checks += 1
        return self.connected

    async def generate_image(
        self,
        prompt: str,
        config: GenerationConfig,
        *,
        source_image: Image.Image | None = None,
        mask: Image.Image | None = None,
        moodboard: Sequence[tuple[Image.Image, float]] = (),
        on_progress=None,
    ) -> list[Image.Image]:
        self.calls.append(
            {
                "prompt": prompt,
                "config": config,
                "source_image": source_image,
                "mask": mask,
                "moodboard": list(moodboard),
            }
        )
        if on_progress is not None:
            on_progress(GenerationProgress(ProgressStage.STARTING))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if on_progress is not None:
            on_progress(GenerationProgress(ProgressStage.COMPLETE))
        shade = (len(self.calls) * 40) % 256
        return [Image.new("RGB", (config.width, config.height), (shade, 0, 0)) for _ in range(self.images_per_call)]

    async def apply_tool(self, tool, image, params=None) -> ToolResult:
        self.tool_calls.append((tool, params))
        if tool not in self.tools:
            return await super().apply_tool(tool, image, params)
        return self.tools[tool]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> StoryflowConfig:
    """Create a test configuration rooted in the temporary directory.

    Generation defaults are kept small (64x64) so fake renders stay cheap.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        StoryflowConfig instance for testing
    """
    return StoryflowConfig(
        _env_file=None,
        working_dir=temp_dir / "work",
        default_width=64,
        default_height=64,
        default_steps=8,
        check_connection_before_run=True,
        request_log_path=temp_dir / "logs" / "request_log.txt",
    )


@pytest.fixture
def working_dir(test_config: StoryflowConfig) -> Path:
    """The engine's working directory (created by the config)."""
    return test_config.working_dir


@pytest.fixture
def fake_provider(test_config: StoryflowConfig) -> FakeProvider:
    return FakeProvider(test_config)


@pytest.fixture
def engine(fake_provider: FakeProvider, test_config: StoryflowConfig) -> WorkflowEngine:
    """Engine wired to the fake provider and the temporary working directory."""
    return WorkflowEngine(fake_provider, test_config)


@pytest.fixture
def run(engine: WorkflowEngine) -> Callable:
    """Run a workflow on the ``engine`` fixture and return the result."""

    def _run(instructions, **kwargs):
        return asyncio.run(engine.run(instructions, **kwargs))

    return _run


@pytest.fixture
def write_image(working_dir: Path) -> Callable[..., Path]:
    """Write a solid PNG below the working directory.

    Usage:
        write_image("frames/0.png", size=(32, 16), color=(0, 255, 0))
    """

    def _write(relative: str, size: tuple[int, int] = (64, 64), color=(0, 0, 255), mode: str = "RGB") -> Path:
        path = working_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.new(mode, size, color).save(path, format="PNG")
        return path

    return _write


@pytest.fixture
def test_client(temp_dir: Path, test_config: StoryflowConfig):
    """FastAPI TestClient with the fake provider installed on ``app.state``.

    The lifespan runs first (creating the configured HTTP provider without
    opening a connection); the fixture then swaps in the fake provider and
    the temporary working directory.
    """
    from fastapi.testclient import TestClient

    from storyflow.api.main import app

    with TestClient(app) as client:
        provider = FakeProvider(test_config)
        app.state.provider = provider
        app.state.config = test_config
        app.state.working_dir = test_config.working_dir
        app.state.plugins = []
        app.state.engine = None
        client.fake_provider = provider
        yield client
