"""Mutable pipeline state owned by a single engine run."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from PIL import Image

from storyflow.core.generation import GenerationConfig, GenerationSettings, InpaintOptions


@dataclass
class MoodboardItem:
    image: Image.Image
    weight: float = 1.0
    source: str = ""


@dataclass
class LoopFrame:
    """Runtime record of an open ``loop``/``loopEnd`` region."""

    start_pc: int
    start: int
    count: int
    current_iteration: int

    @property
    def end_iteration(self) -> int:
        """First index past the loop's range."""
        return self.start + self.count

    @property
    def offset(self) -> int:
        return self.current_iteration - self.start


@dataclass
class PipelineState:
    """The engine's working set.

    A fresh instance is created for every run.  ``settings`` accumulates the
    partial ``config`` payloads; :meth:`resolved_config` applies them on top
    of the run's baseline configuration.
    """

    canvas: Image.Image | None = None
    moodboard: list[MoodboardItem] = field(default_factory=list)
    mask: Image.Image | None = None
    depth: Image.Image | None = None
    pose: dict[str, Any] | None = None
    settings: GenerationSettings = field(default_factory=GenerationSettings)
    inpaint: InpaintOptions = field(default_factory=InpaintOptions)
    positive_prompt: str = ""
    negative_prompt: str = ""
    loop_stack: list[LoopFrame] = field(default_factory=list)
    program_counter: int = 0
    # Set by ``generate``; consumed by the next save, cleared at ``loopEnd``.
    fresh_generation: bool = False

    def merge_settings(self, settings: GenerationSettings) -> None:
        self.settings = self.settings.merged(settings)

    def resolved_config(self, baseline: GenerationConfig) -> GenerationConfig:
        resolved = baseline.with_settings(self.settings).with_inpaint(self.inpaint)
        resolved.negative_prompt = self.negative_prompt
        return resolved

    @property
    def has_prompt(self) -> bool:
        """A whitespace-only prompt counts as no prompt."""
        return bool(self.positive_prompt.strip())

    def fit_mask_to_canvas(self) -> None:
        """Stretch the mask to the canvas size when both are present and differ."""
        if self.mask is not None and self.canvas is not None and self.mask.size != self.canvas.size:
            self.mask = self.mask.resize(self.canvas.size)

    @property
    def current_frame(self) -> LoopFrame | None:
        return self.loop_stack[-1] if self.loop_stack else None

    def snapshot(self) -> dict[str, Any]:
        """Summary of the state for logs and API responses."""
        return {
            "has_canvas": self.canvas is not None,
            "canvas_size": list(self.canvas.size) if self.canvas is not None else None,
            "moodboard": [{"source": item.source, "weight": item.weight} for item in self.moodboard],
            "has_mask": self.mask is not None,
            "has_depth": self.depth is not None,
            "has_pose": self.pose is not None,
            "settings": self.settings.to_wire(),
            "prompt": self.positive_prompt,
            "negative_prompt": self.negative_prompt,
            "loop_depth": len(self.loop_stack),
        }
