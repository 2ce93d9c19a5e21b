"""Generation settings and the resolved request configuration.

Two layers are kept apart:

- :class:`GenerationSettings` is the *partial* payload of a ``config``
  instruction.  Every field is optional; only the fields a workflow author set
  are carried.  Successive settings are merged field by field.
- :class:`GenerationConfig` is the fully resolved configuration a provider
  receives for one request.  It is produced from the configured defaults with
  the accumulated settings applied on top.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, fields, replace
from typing import Any

logger = logging.getLogger(__name__)

# Wire name -> attribute name for the ``config`` instruction payload.
_SETTINGS_WIRE_NAMES: dict[str, str] = {
    "width": "width",
    "height": "height",
    "steps": "steps",
    "guidanceScale": "guidance_scale",
    "seed": "seed",
    "model": "model",
    "samplerName": "sampler_name",
    "numFrames": "num_frames",
    "strength": "strength",
    "batchCount": "batch_count",
    "batchSize": "batch_size",
    "clipSkip": "clip_skip",
    "shift": "shift",
    "loras": "loras",
}

_INT_FIELDS = {"width", "height", "steps", "seed", "num_frames", "batch_count", "batch_size", "clip_skip"}
_FLOAT_FIELDS = {"guidance_scale", "strength", "shift"}
_STR_FIELDS = {"model", "sampler_name"}


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


@dataclass(frozen=True)
class LoRA:
    """A LoRA reference: file name, weight and application mode."""

    file: str
    weight: float = 1.0
    mode: str = "all"

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "weight": self.weight, "mode": self.mode}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoRA:
        """Build a LoRA from its wire mapping.

        Raises:
            ValueError: If ``file`` is missing or a value has the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError(f"LoRA entry must be a mapping, got {type(data).__name__}")
        file = data.get("file")
        if not isinstance(file, str) or not file:
            raise ValueError("LoRA entry requires a non-empty 'file'")
        weight = data.get("weight", 1.0)
        if not _is_number(weight):
            raise ValueError(f"LoRA weight must be a number, got {weight!r}")
        mode = data.get("mode", "all")
        if not isinstance(mode, str):
            raise ValueError(f"LoRA mode must be a string, got {mode!r}")
        return cls(file=file, weight=float(weight), mode=mode)


@dataclass(frozen=True)
class GenerationSettings:
    """Partial generation settings carried by a ``config`` instruction.

    ``None`` means "not set by this instruction".  :meth:`merged` applies
    another settings object on top of this one, overriding only the fields the
    other object sets.
    """

    width: int | None = None
    height: int | None = None
    steps: int | None = None
    guidance_scale: float | None = None
    seed: int | None = None
    model: str | None = None
    sampler_name: str | None = None
    num_frames: int | None = None
    strength: float | None = None
    batch_count: int | None = None
    batch_size: int | None = None
    clip_skip: int | None = None
    shift: float | None = None
    loras: tuple[LoRA, ...] | None = None

    def merged(self, other: GenerationSettings) -> GenerationSettings:
        """Return a copy with every field set on ``other`` overriding ours."""
        return replace(self, **other.set_fields())

    def set_fields(self) -> dict[str, Any]:
        """Return the fields that are explicitly set (not ``None``)."""
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def is_empty(self) -> bool:
        return not self.set_fields()

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the camelCase wire mapping, omitting unset fields."""
        result: dict[str, Any] = {}
        for wire_name, attr in _SETTINGS_WIRE_NAMES.items():
            value = getattr(self, attr)
            if value is None:
                continue
            if attr == "loras":
                value = [lora.to_dict() for lora in value]
            result[wire_name] = value
        return result

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> GenerationSettings:
        """Parse the camelCase wire mapping.

        Unknown keys are ignored with a warning so that payloads written by
        newer editors still load.

        Raises:
            ValueError: If a known key carries a value of the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError(f"config payload must be a mapping, got {type(data).__name__}")

        kwargs: dict[str, Any] = {}
        for wire_name, value in data.items():
            attr = _SETTINGS_WIRE_NAMES.get(wire_name)
            if attr is None:
                logger.warning("Ignoring unknown config key '%s'", wire_name)
                continue
            if value is None:
                continue
            kwargs[attr] = _coerce_setting(attr, value)
        return cls(**kwargs)


def _coerce_setting(attr: str, value: Any) -> Any:
    if attr in _INT_FIELDS:
        if not _is_number(value) or int(value) != value:
            raise ValueError(f"config '{attr}' must be an integer, got {value!r}")
        return int(value)
    if attr in _FLOAT_FIELDS:
        if not _is_number(value):
            raise ValueError(f"config '{attr}' must be a number, got {value!r}")
        return float(value)
    if attr in _STR_FIELDS:
        if not isinstance(value, str):
            raise ValueError(f"config '{attr}' must be a string, got {value!r}")
        return value
    # loras
    if not isinstance(value, list):
        raise ValueError(f"config 'loras' must be a list, got {value!r}")
    return tuple(LoRA.from_dict(item) for item in value)


@dataclass(frozen=True)
class InpaintOptions:
    """Inpainting options set by an ``inpaintTools`` instruction."""

    mask_blur: int | None = None
    mask_blur_outset: int | None = None
    restore_original_after_inpaint: bool | None = None


@dataclass
class GenerationConfig:
    """Fully resolved configuration for one generation request.

    Attributes mirror the parameters accepted by the Draw Things HTTP API.
    ``seed == -1`` asks the backend to pick a random seed.
    """

    width: int = 1024
    height: int = 1024
    steps: int = 8
    guidance_scale: float = 1.0
    seed: int = -1
    seed_mode: str = "Scale Alike"
    sampler: str = "UniPC Trailing"
    model: str = ""
    shift: float = 3.0
    strength: float = 1.0
    batch_size: int = 1
    batch_count: int = 1
    clip_skip: int | None = None
    num_frames: int | None = None
    negative_prompt: str = ""
    loras: list[LoRA] = field(default_factory=list)
    mask_blur: int | None = None
    mask_blur_outset: int | None = None
    restore_original_after_inpaint: bool | None = None

    @classmethod
    def from_settings(cls, app_config) -> GenerationConfig:
        """Build the baseline configuration from :class:`StoryflowConfig` defaults."""
        return cls(
            width=app_config.default_width,
            height=app_config.default_height,
            steps=app_config.default_steps,
            guidance_scale=app_config.default_guidance_scale,
            seed=app_config.default_seed,
            seed_mode=app_config.default_seed_mode,
            sampler=app_config.default_sampler,
            shift=app_config.default_shift,
        )

    def with_settings(self, settings: GenerationSettings) -> GenerationConfig:
        """Return a copy with the explicitly set ``settings`` applied."""
        overrides = settings.set_fields()
        if "sampler_name" in overrides:
            overrides["sampler"] = overrides.pop("sampler_name")
        if "loras" in overrides:
            overrides["loras"] = list(overrides["loras"])
        return replace(self, **overrides)

    def with_inpaint(self, options: InpaintOptions) -> GenerationConfig:
        overrides = {f.name: getattr(options, f.name) for f in fields(options) if getattr(options, f.name) is not None}
        return replace(self, **overrides)

    def to_request_body(self, prompt: str) -> dict[str, Any]:
        """Convert to an HTTP API request body (A1111-compatible field names)."""
        body: dict[str, Any] = {
            "prompt": prompt,
            "negative_prompt": self.negative_prompt,
            "width": self.width,
            "height": self.height,
            "steps": self.steps,
            "guidance_scale": self.guidance_scale,
            "seed": self.seed,
            "seed_mode": self.seed_mode,
            "sampler": self.sampler,
            "shift": self.shift,
            "strength": self.strength,
            "batch_size": self.batch_size,
            "batch_count": self.batch_count,
        }
        if self.model:
            body["model"] = self.model
        if self.clip_skip is not None:
            body["clip_skip"] = self.clip_skip
        if self.num_frames is not None:
            body["num_frames"] = self.num_frames
        if self.loras:
            body["loras"] = [lora.to_dict() for lora in self.loras]
        if self.mask_blur is not None:
            body["mask_blur"] = self.mask_blur
        if self.mask_blur_outset is not None:
            body["mask_blur_outset"] = self.mask_blur_outset
        if self.restore_original_after_inpaint is not None:
            body["preserve_original_after_inpaint"] = self.restore_original_after_inpaint
        return body

    def to_metadata(self) -> dict[str, Any]:
        """Plain-dict view used by save plugins and API responses."""
        data = self.to_request_body(prompt="")
        data.pop("prompt")
        return data
