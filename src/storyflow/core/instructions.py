"""Instruction model for StoryFlow workflows.

A workflow is an ordered list of instructions.  Each instruction is an
immutable value of one variant from a closed set; each variant has a stable
wire key and an explicit encode/decode pair for the key->value wire form
used by the StoryFlow scripting protocol::

    {"prompt": "a cat in a hat"}
    {"loop": {"loop": 5, "start": 0}}
    {"canvasClear": true}
    {"moodboardWeights": {"index_0": 1.0, "index_1": 0.5}}

Instructions carry data and presentation metadata (title, category, icon)
only.  Execution lives entirely in :mod:`storyflow.core.engine`.

Identity
--------
Every instruction has an ``id`` used by editors to track selection.  The id is
excluded from equality: two instructions with the same variant and parameters
compare equal regardless of identity.  :func:`dataclasses.replace` keeps the
id, so "editing" an instruction produces a new value with the same identity.

Usage Example
-------------
    >>> from storyflow.core.instructions import Loop, LoopSave, Prompt, instructions_to_wire
    >>> workflow = [Prompt("a cat"), Loop(count=3), LoopSave("v_"), LoopEnd()]
    >>> instructions_to_wire(workflow)[1]
    {'loop': {'loop': 3, 'start': 0}}
"""

from __future__ import annotations

import copy
import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar
from uuid import UUID, uuid4

from storyflow.core.generation import GenerationSettings

logger = logging.getLogger(__name__)

_IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")


class InstructionDecodeError(ValueError):
    """Raised when a wire mapping cannot be decoded into an instruction."""


class InstructionCategory(str, Enum):
    """Grouping used by editors and reports."""

    FLOW_CONTROL = "Flow Control"
    PROMPT_CONFIG = "Prompt & Config"
    CANVAS = "Canvas"
    MOODBOARD = "Moodboard"
    MASK = "Mask"
    DEPTH_POSE = "Depth & Pose"
    ADVANCED = "Advanced"
    LOOP_OPERATIONS = "Loop Operations"
    GENERATION = "Generation"


# Wire key -> instruction class, populated by Instruction.__init_subclass__.
INSTRUCTION_TYPES: dict[str, type[Instruction]] = {}


# ---------------------------------------------------------------------------
# Payload decoding helpers.
# ---------------------------------------------------------------------------


def _fail(key: str, message: str) -> InstructionDecodeError:
    return InstructionDecodeError(f"'{key}': {message}")


def _as_str(key: str, value: Any) -> str:
    if not isinstance(value, str):
        raise _fail(key, f"expected a string, got {value!r}")
    return value


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _as_int(key: str, value: Any, name: str | None = None) -> int:
    label = f"'{name}' " if name else ""
    if not _is_number(value) or int(value) != value:
        raise _fail(key, f"{label}expected an integer, got {value!r}")
    return int(value)


def _as_float(key: str, value: Any, name: str | None = None) -> float:
    label = f"'{name}' " if name else ""
    if not _is_number(value):
        raise _fail(key, f"{label}expected a number, got {value!r}")
    return float(value)


def _as_mapping(key: str, value: Any) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise _fail(key, f"expected a mapping, got {value!r}")
    return value


def _optional(key: str, payload: Mapping[str, Any], name: str, kind: type) -> Any:
    value = payload.get(name)
    if value is None:
        return None
    if kind is bool:
        if not isinstance(value, bool):
            raise _fail(key, f"'{name}' expected a boolean, got {value!r}")
        return value
    if kind is int:
        return _as_int(key, value, name)
    return _as_float(key, value, name)


def _drop_none(values: dict[str, Any]) -> dict[str, Any]:
    return {name: value for name, value in values.items() if value is not None}


# ---------------------------------------------------------------------------
# Base class.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Instruction:
    """Base class for all instruction variants.

    Subclasses declare ``key`` (wire key), ``title``, ``category`` and
    ``icon``, and implement :meth:`_encode` / :meth:`_decode`.  Parameterless
    variants inherit the default pair, which encodes to ``true``.
    """

    key: ClassVar[str] = ""
    title: ClassVar[str] = "Instruction"
    category: ClassVar[InstructionCategory] = InstructionCategory.FLOW_CONTROL
    icon: ClassVar[str] = "circle"

    id: UUID = field(default_factory=uuid4, compare=False, repr=False, kw_only=True)

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if cls.key:
            if cls.key in INSTRUCTION_TYPES:
                logger.warning("Instruction key '%s' is already registered, overwriting", cls.key)
            INSTRUCTION_TYPES[cls.key] = cls

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the single-key wire mapping."""
        return {self.key: self._encode()}

    def _encode(self) -> Any:
        return True

    @classmethod
    def _decode(cls, value: Any) -> Instruction:
        if value is True or value == {}:
            return cls()
        raise _fail(cls.key, f"expected true, got {value!r}")


# ---------------------------------------------------------------------------
# Flow control.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Note(Instruction):
    """Comment; the engine ignores it."""

    key: ClassVar[str] = "note"
    title: ClassVar[str] = "Note"
    icon: ClassVar[str] = "text.bubble"

    text: str = ""

    def _encode(self) -> Any:
        return self.text

    @classmethod
    def _decode(cls, value: Any) -> Note:
        return cls(text=_as_str(cls.key, value))


@dataclass(frozen=True)
class Loop(Instruction):
    """Start of a loop body run ``count`` times with indices from ``start``."""

    key: ClassVar[str] = "loop"
    title: ClassVar[str] = "Loop"
    icon: ClassVar[str] = "repeat"

    count: int = 5
    start: int = 0

    def _encode(self) -> Any:
        return {"loop": self.count, "start": self.start}

    @classmethod
    def _decode(cls, value: Any) -> Loop:
        if isinstance(value, Mapping):
            if "loop" not in value:
                raise _fail(cls.key, "missing 'loop' count")
            return cls(
                count=_as_int(cls.key, value["loop"], "loop"),
                start=_as_int(cls.key, value.get("start", 0), "start"),
            )
        return cls(count=_as_int(cls.key, value))


@dataclass(frozen=True)
class LoopEnd(Instruction):
    key: ClassVar[str] = "loopEnd"
    title: ClassVar[str] = "Loop End"
    icon: ClassVar[str] = "repeat.1"


@dataclass(frozen=True)
class End(Instruction):
    """Stops the pipeline."""

    key: ClassVar[str] = "end"
    title: ClassVar[str] = "End"
    icon: ClassVar[str] = "stop.fill"


# ---------------------------------------------------------------------------
# Prompt & config.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Prompt(Instruction):
    key: ClassVar[str] = "prompt"
    title: ClassVar[str] = "Prompt"
    category: ClassVar[InstructionCategory] = InstructionCategory.PROMPT_CONFIG
    icon: ClassVar[str] = "text.cursor"

    text: str = ""

    def _encode(self) -> Any:
        return self.text

    @classmethod
    def _decode(cls, value: Any) -> Prompt:
        return cls(text=_as_str(cls.key, value))


@dataclass(frozen=True)
class NegativePrompt(Instruction):
    key: ClassVar[str] = "negPrompt"
    title: ClassVar[str] = "Negative Prompt"
    category: ClassVar[InstructionCategory] = InstructionCategory.PROMPT_CONFIG
    icon: ClassVar[str] = "minus.circle"

    text: str = ""

    def _encode(self) -> Any:
        return self.text

    @classmethod
    def _decode(cls, value: Any) -> NegativePrompt:
        return cls(text=_as_str(cls.key, value))


@dataclass(frozen=True)
class Config(Instruction):
    """Partial generation settings, merged into the accumulated config."""

    key: ClassVar[str] = "config"
    title: ClassVar[str] = "Config"
    category: ClassVar[InstructionCategory] = InstructionCategory.PROMPT_CONFIG
    icon: ClassVar[str] = "gearshape"

    settings: GenerationSettings = field(default_factory=GenerationSettings)

    def _encode(self) -> Any:
        return self.settings.to_wire()

    @classmethod
    def _decode(cls, value: Any) -> Config:
        try:
            return cls(settings=GenerationSettings.from_wire(_as_mapping(cls.key, value)))
        except InstructionDecodeError:
            raise
        except ValueError as e:
            raise _fail(cls.key, str(e)) from e


@dataclass(frozen=True)
class Frames(Instruction):
    key: ClassVar[str] = "frames"
    title: ClassVar[str] = "Frames"
    category: ClassVar[InstructionCategory] = InstructionCategory.PROMPT_CONFIG
    icon: ClassVar[str] = "film"

    count: int = 1

    def _encode(self) -> Any:
        return self.count

    @classmethod
    def _decode(cls, value: Any) -> Frames:
        return cls(count=_as_int(cls.key, value))


# ---------------------------------------------------------------------------
# Canvas operations.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CanvasClear(Instruction):
    key: ClassVar[str] = "canvasClear"
    title: ClassVar[str] = "Clear Canvas"
    category: ClassVar[InstructionCategory] = InstructionCategory.CANVAS
    icon: ClassVar[str] = "trash"


@dataclass(frozen=True)
class CanvasLoad(Instruction):
    key: ClassVar[str] = "canvasLoad"
    title: ClassVar[str] = "Load Canvas"
    category: ClassVar[InstructionCategory] = InstructionCategory.CANVAS
    icon: ClassVar[str] = "square.and.arrow.down"

    filename: str = ""

    def _encode(self) -> Any:
        return self.filename

    @classmethod
    def _decode(cls, value: Any) -> CanvasLoad:
        return cls(filename=_as_str(cls.key, value))


@dataclass(frozen=True)
class CanvasSave(Instruction):
    """Save the canvas, generating first when a render is due."""

    key: ClassVar[str] = "canvasSave"
    title: ClassVar[str] = "Save Canvas"
    category: ClassVar[InstructionCategory] = InstructionCategory.CANVAS
    icon: ClassVar[str] = "square.and.arrow.up"

    filename: str = "output.png"

    def _encode(self) -> Any:
        return self.filename

    @classmethod
    def _decode(cls, value: Any) -> CanvasSave:
        return cls(filename=_as_str(cls.key, value))


@dataclass(frozen=True)
class MoveScale(Instruction):
    key: ClassVar[str] = "moveScale"
    title: ClassVar[str] = "Move & Scale"
    category: ClassVar[InstructionCategory] = InstructionCategory.CANVAS
    icon: ClassVar[str] = "arrow.up.left.and.arrow.down.right"

    x: float = 0.0
    y: float = 0.0
    scale: float = 1.0

    def _encode(self) -> Any:
        return {"position_X": self.x, "position_Y": self.y, "canvas_scale": self.scale}

    @classmethod
    def _decode(cls, value: Any) -> MoveScale:
        payload = _as_mapping(cls.key, value)
        return cls(
            x=_as_float(cls.key, payload.get("position_X", 0.0), "position_X"),
            y=_as_float(cls.key, payload.get("position_Y", 0.0), "position_Y"),
            scale=_as_float(cls.key, payload.get("canvas_scale", 1.0), "canvas_scale"),
        )


@dataclass(frozen=True)
class AdaptSize(Instruction):
    key: ClassVar[str] = "adaptSize"
    title: ClassVar[str] = "Adapt Size"
    category: ClassVar[InstructionCategory] = InstructionCategory.CANVAS
    icon: ClassVar[str] = "aspectratio"

    max_width: int = 1024
    max_height: int = 1024

    def _encode(self) -> Any:
        return {"maxWidth": self.max_width, "maxHeight": self.max_height}

    @classmethod
    def _decode(cls, value: Any) -> AdaptSize:
        payload = _as_mapping(cls.key, value)
        if "maxWidth" not in payload or "maxHeight" not in payload:
            raise _fail(cls.key, "requires 'maxWidth' and 'maxHeight'")
        return cls(
            max_width=_as_int(cls.key, payload["maxWidth"], "maxWidth"),
            max_height=_as_int(cls.key, payload["maxHeight"], "maxHeight"),
        )


@dataclass(frozen=True)
class Crop(Instruction):
    key: ClassVar[str] = "crop"
    title: ClassVar[str] = "Crop"
    category: ClassVar[InstructionCategory] = InstructionCategory.CANVAS
    icon: ClassVar[str] = "crop"


# ---------------------------------------------------------------------------
# Moodboard operations.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MoodboardClear(Instruction):
    key: ClassVar[str] = "moodboardClear"
    title: ClassVar[str] = "Clear Moodboard"
    category: ClassVar[InstructionCategory] = InstructionCategory.MOODBOARD
    icon: ClassVar[str] = "rectangle.stack.badge.minus"


@dataclass(frozen=True)
class MoodboardCanvas(Instruction):
    """Snapshot the current canvas into the moodboard."""

    key: ClassVar[str] = "moodboardCanvas"
    title: ClassVar[str] = "Canvas to Moodboard"
    category: ClassVar[InstructionCategory] = InstructionCategory.MOODBOARD
    icon: ClassVar[str] = "rectangle.stack.badge.plus"


@dataclass(frozen=True)
class MoodboardAdd(Instruction):
    key: ClassVar[str] = "moodboardAdd"
    title: ClassVar[str] = "Add to Moodboard"
    category: ClassVar[InstructionCategory] = InstructionCategory.MOODBOARD
    icon: ClassVar[str] = "plus.rectangle.on.rectangle"

    filename: str = ""

    def _encode(self) -> Any:
        return self.filename

    @classmethod
    def _decode(cls, value: Any) -> MoodboardAdd:
        return cls(filename=_as_str(cls.key, value))


@dataclass(frozen=True)
class MoodboardRemove(Instruction):
    key: ClassVar[str] = "moodboardRemove"
    title: ClassVar[str] = "Remove from Moodboard"
    category: ClassVar[InstructionCategory] = InstructionCategory.MOODBOARD
    icon: ClassVar[str] = "minus.rectangle"

    index: int = 0

    def _encode(self) -> Any:
        return self.index

    @classmethod
    def _decode(cls, value: Any) -> MoodboardRemove:
        return cls(index=_as_int(cls.key, value))


@dataclass(frozen=True)
class MoodboardWeights(Instruction):
    """Per-index moodboard weights.

    ``weights`` may be passed as a mapping; it is stored as a sorted tuple of
    ``(index, weight)`` pairs so the instruction stays immutable.
    """

    key: ClassVar[str] = "moodboardWeights"
    title: ClassVar[str] = "Moodboard Weights"
    category: ClassVar[InstructionCategory] = InstructionCategory.MOODBOARD
    icon: ClassVar[str] = "slider.horizontal.3"

    weights: tuple[tuple[int, float], ...] = ()

    def __post_init__(self):
        pairs = self.weights.items() if isinstance(self.weights, Mapping) else self.weights
        normalized = tuple(sorted((int(index), float(weight)) for index, weight in pairs))
        object.__setattr__(self, "weights", normalized)

    @property
    def weight_map(self) -> dict[int, float]:
        return dict(self.weights)

    def _encode(self) -> Any:
        return {f"index_{index}": weight for index, weight in self.weights}

    @classmethod
    def _decode(cls, value: Any) -> MoodboardWeights:
        payload = _as_mapping(cls.key, value)
        weights: dict[int, float] = {}
        for name, weight in payload.items():
            if not isinstance(name, str) or not name.startswith("index_"):
                raise _fail(cls.key, f"weight keys must look like 'index_N', got {name!r}")
            index = name[len("index_") :]
            if not index.isdigit():
                raise _fail(cls.key, f"weight keys must look like 'index_N', got {name!r}")
            weights[int(index)] = _as_float(cls.key, weight, name)
        return cls(weights=weights)


@dataclass(frozen=True)
class LoopAddMoodboard(Instruction):
    """Add the current loop iteration's image from ``folder`` to the moodboard."""

    key: ClassVar[str] = "loopAddMB"
    title: ClassVar[str] = "Loop Add Moodboard"
    category: ClassVar[InstructionCategory] = InstructionCategory.MOODBOARD
    icon: ClassVar[str] = "rectangle.stack"

    folder: str = ""

    def _encode(self) -> Any:
        return self.folder

    @classmethod
    def _decode(cls, value: Any) -> LoopAddMoodboard:
        return cls(folder=_as_str(cls.key, value))


# ---------------------------------------------------------------------------
# Mask operations.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MaskClear(Instruction):
    key: ClassVar[str] = "maskClear"
    title: ClassVar[str] = "Clear Mask"
    category: ClassVar[InstructionCategory] = InstructionCategory.MASK
    icon: ClassVar[str] = "eraser"


@dataclass(frozen=True)
class MaskLoad(Instruction):
    key: ClassVar[str] = "maskLoad"
    title: ClassVar[str] = "Load Mask"
    category: ClassVar[InstructionCategory] = InstructionCategory.MASK
    icon: ClassVar[str] = "theatermask.and.paintbrush"

    filename: str = ""

    def _encode(self) -> Any:
        return self.filename

    @classmethod
    def _decode(cls, value: Any) -> MaskLoad:
        return cls(filename=_as_str(cls.key, value))


@dataclass(frozen=True)
class MaskGet(Instruction):
    """Derive the mask from the canvas alpha channel."""

    key: ClassVar[str] = "maskGet"
    title: ClassVar[str] = "Get Mask"
    category: ClassVar[InstructionCategory] = InstructionCategory.MASK
    icon: ClassVar[str] = "square.on.square.dashed"


@dataclass(frozen=True)
class MaskBackground(Instruction):
    key: ClassVar[str] = "maskBkgd"
    title: ClassVar[str] = "Mask Background"
    category: ClassVar[InstructionCategory] = InstructionCategory.MASK
    icon: ClassVar[str] = "rectangle.dashed.badge.record"


@dataclass(frozen=True)
class MaskForeground(Instruction):
    key: ClassVar[str] = "maskFG"
    title: ClassVar[str] = "Mask Foreground"
    category: ClassVar[InstructionCategory] = InstructionCategory.MASK
    icon: ClassVar[str] = "person.crop.rectangle"


@dataclass(frozen=True)
class MaskBody(Instruction):
    key: ClassVar[str] = "maskBody"
    title: ClassVar[str] = "Mask Body"
    category: ClassVar[InstructionCategory] = InstructionCategory.MASK
    icon: ClassVar[str] = "figure.stand"

    upper: bool | None = None
    lower: bool | None = None
    clothes: bool | None = None
    neck: int | None = None

    def _encode(self) -> Any:
        return _drop_none({"upper": self.upper, "lower": self.lower, "clothes": self.clothes, "neck": self.neck})

    @classmethod
    def _decode(cls, value: Any) -> MaskBody:
        payload = _as_mapping(cls.key, value)
        return cls(
            upper=_optional(cls.key, payload, "upper", bool),
            lower=_optional(cls.key, payload, "lower", bool),
            clothes=_optional(cls.key, payload, "clothes", bool),
            neck=_optional(cls.key, payload, "neck", int),
        )


@dataclass(frozen=True)
class MaskAsk(Instruction):
    key: ClassVar[str] = "maskAsk"
    title: ClassVar[str] = "AI Mask"
    category: ClassVar[InstructionCategory] = InstructionCategory.MASK
    icon: ClassVar[str] = "wand.and.stars"

    description: str = ""

    def _encode(self) -> Any:
        return self.description

    @classmethod
    def _decode(cls, value: Any) -> MaskAsk:
        return cls(description=_as_str(cls.key, value))


# ---------------------------------------------------------------------------
# Depth & pose.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DepthExtract(Instruction):
    key: ClassVar[str] = "depthExtract"
    title: ClassVar[str] = "Extract Depth"
    category: ClassVar[InstructionCategory] = InstructionCategory.DEPTH_POSE
    icon: ClassVar[str] = "cube.transparent"


@dataclass(frozen=True)
class DepthCanvas(Instruction):
    key: ClassVar[str] = "depthCanvas"
    title: ClassVar[str] = "Canvas to Depth"
    category: ClassVar[InstructionCategory] = InstructionCategory.DEPTH_POSE
    icon: ClassVar[str] = "square.3.layers.3d.down.left"


@dataclass(frozen=True)
class DepthToCanvas(Instruction):
    key: ClassVar[str] = "depthToCanvas"
    title: ClassVar[str] = "Depth to Canvas"
    category: ClassVar[InstructionCategory] = InstructionCategory.DEPTH_POSE
    icon: ClassVar[str] = "square.3.layers.3d.down.right"


@dataclass(frozen=True)
class PoseExtract(Instruction):
    key: ClassVar[str] = "poseExtract"
    title: ClassVar[str] = "Extract Pose"
    category: ClassVar[InstructionCategory] = InstructionCategory.DEPTH_POSE
    icon: ClassVar[str] = "figure.walk"


@dataclass(frozen=True)
class PoseJSON(Instruction):
    """Set the pose layer from OpenPose JSON."""

    key: ClassVar[str] = "poseJSON"
    title: ClassVar[str] = "Pose from JSON"
    category: ClassVar[InstructionCategory] = InstructionCategory.DEPTH_POSE
    icon: ClassVar[str] = "figure.arms.open"

    data: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        object.__setattr__(self, "data", MappingProxyType(copy.deepcopy(dict(self.data))))

    def _encode(self) -> Any:
        return copy.deepcopy(dict(self.data))

    @classmethod
    def _decode(cls, value: Any) -> PoseJSON:
        return cls(data=dict(_as_mapping(cls.key, value)))


# ---------------------------------------------------------------------------
# Advanced tools.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RemoveBackground(Instruction):
    key: ClassVar[str] = "removeBkgd"
    title: ClassVar[str] = "Remove Background"
    category: ClassVar[InstructionCategory] = InstructionCategory.ADVANCED
    icon: ClassVar[str] = "person.crop.rectangle.badge.plus"


@dataclass(frozen=True)
class FaceZoom(Instruction):
    key: ClassVar[str] = "faceZoom"
    title: ClassVar[str] = "Face Zoom"
    category: ClassVar[InstructionCategory] = InstructionCategory.ADVANCED
    icon: ClassVar[str] = "face.smiling"


@dataclass(frozen=True)
class AskZoom(Instruction):
    key: ClassVar[str] = "askZoom"
    title: ClassVar[str] = "AI Zoom"
    category: ClassVar[InstructionCategory] = InstructionCategory.ADVANCED
    icon: ClassVar[str] = "magnifyingglass"

    description: str = ""

    def _encode(self) -> Any:
        return self.description

    @classmethod
    def _decode(cls, value: Any) -> AskZoom:
        return cls(description=_as_str(cls.key, value))


@dataclass(frozen=True)
class InpaintTools(Instruction):
    key: ClassVar[str] = "inpaintTools"
    title: ClassVar[str] = "Inpaint Tools"
    category: ClassVar[InstructionCategory] = InstructionCategory.ADVANCED
    icon: ClassVar[str] = "paintbrush.pointed"

    strength: float | None = None
    mask_blur: int | None = None
    mask_blur_outset: int | None = None
    restore_original: bool | None = None

    def _encode(self) -> Any:
        return _drop_none(
            {
                "strength": self.strength,
                "maskBlur": self.mask_blur,
                "maskBlurOutset": self.mask_blur_outset,
                "restoreOriginalAfterInpaint": self.restore_original,
            }
        )

    @classmethod
    def _decode(cls, value: Any) -> InpaintTools:
        payload = _as_mapping(cls.key, value)
        return cls(
            strength=_optional(cls.key, payload, "strength", float),
            mask_blur=_optional(cls.key, payload, "maskBlur", int),
            mask_blur_outset=_optional(cls.key, payload, "maskBlurOutset", int),
            restore_original=_optional(cls.key, payload, "restoreOriginalAfterInpaint", bool),
        )


@dataclass(frozen=True)
class XLMagic(Instruction):
    """SDXL latent tuning."""

    key: ClassVar[str] = "xlMagic"
    title: ClassVar[str] = "XL Magic"
    category: ClassVar[InstructionCategory] = InstructionCategory.ADVANCED
    icon: ClassVar[str] = "wand.and.rays"

    original: float | None = None
    target: float | None = None
    negative: float | None = None

    def _encode(self) -> Any:
        return _drop_none({"original": self.original, "target": self.target, "negative": self.negative})

    @classmethod
    def _decode(cls, value: Any) -> XLMagic:
        payload = _as_mapping(cls.key, value)
        return cls(
            original=_optional(cls.key, payload, "original", float),
            target=_optional(cls.key, payload, "target", float),
            negative=_optional(cls.key, payload, "negative", float),
        )


# ---------------------------------------------------------------------------
# Loop-scoped I/O and explicit generation.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoopLoad(Instruction):
    """Load the current loop iteration's image from ``folder`` onto the canvas."""

    key: ClassVar[str] = "loopLoad"
    title: ClassVar[str] = "Loop Load"
    category: ClassVar[InstructionCategory] = InstructionCategory.LOOP_OPERATIONS
    icon: ClassVar[str] = "folder"

    folder: str = ""

    def _encode(self) -> Any:
        return self.folder

    @classmethod
    def _decode(cls, value: Any) -> LoopLoad:
        return cls(folder=_as_str(cls.key, value))


@dataclass(frozen=True)
class LoopSave(Instruction):
    """Save as ``<prefix><iteration>.png``, generating first when due."""

    key: ClassVar[str] = "loopSave"
    title: ClassVar[str] = "Loop Save"
    category: ClassVar[InstructionCategory] = InstructionCategory.LOOP_OPERATIONS
    icon: ClassVar[str] = "folder.badge.plus"

    prefix: str = ""

    def _encode(self) -> Any:
        return self.prefix

    @classmethod
    def _decode(cls, value: Any) -> LoopSave:
        return cls(prefix=_as_str(cls.key, value))


@dataclass(frozen=True)
class Generate(Instruction):
    """Render with the current prompt and config without saving."""

    key: ClassVar[str] = "generate"
    title: ClassVar[str] = "Generate"
    category: ClassVar[InstructionCategory] = InstructionCategory.GENERATION
    icon: ClassVar[str] = "sparkles"


# ---------------------------------------------------------------------------
# Groups used by the engine and validator.
# ---------------------------------------------------------------------------

CONTROL_FLOW_TYPES: tuple[type[Instruction], ...] = (Note, Loop, LoopEnd, End)
LOOP_SCOPED_TYPES: tuple[type[Instruction], ...] = (LoopLoad, LoopSave, LoopAddMoodboard)
GENERATION_TRIGGER_TYPES: tuple[type[Instruction], ...] = (Generate, CanvasSave, LoopSave)
IMAGE_LOAD_TYPES: tuple[type[Instruction], ...] = (CanvasLoad, MoodboardAdd, MaskLoad)


# ---------------------------------------------------------------------------
# Wire codec.
# ---------------------------------------------------------------------------


def instruction_from_wire(data: Any) -> Instruction:
    """Decode a single-key wire mapping into an instruction.

    Args:
        data: Mapping with exactly one key, the instruction's wire key.

    Returns:
        The decoded instruction (with a fresh identity).

    Raises:
        InstructionDecodeError: If the mapping is malformed, the key is
            unknown, or the payload has the wrong shape.
    """
    if not isinstance(data, Mapping) or len(data) != 1:
        raise InstructionDecodeError(f"Instruction must be a mapping with exactly one key, got {data!r}")

    key, value = next(iter(data.items()))
    instruction_type = INSTRUCTION_TYPES.get(key)
    if instruction_type is None:
        raise InstructionDecodeError(f"Unknown instruction '{key}'")
    return instruction_type._decode(value)


def instructions_from_wire(payload: Iterable[Any]) -> list[Instruction]:
    """Decode a list of wire mappings, failing on the first malformed entry."""
    instructions = []
    for index, item in enumerate(payload):
        try:
            instructions.append(instruction_from_wire(item))
        except InstructionDecodeError as e:
            raise InstructionDecodeError(f"Instruction {index}: {e}") from e
    return instructions


def instructions_to_wire(instructions: Iterable[Instruction]) -> list[dict[str, Any]]:
    return [instruction.to_wire() for instruction in instructions]


def summarize(instruction: Instruction, limit: int = 50) -> str:
    """Short human-readable description of an instruction's parameters."""
    value = instruction._encode()
    if value is True:
        return instruction.title
    if isinstance(value, str):
        if not value:
            return "(empty)"
        return value if len(value) <= limit else value[:limit] + "..."
    if isinstance(value, Mapping):
        if not value:
            return "(default)"
        text = ", ".join(f"{name}: {item}" for name, item in value.items())
        return text if len(text) <= limit else text[:limit] + "..."
    return str(value)


def has_image_extension(filename: str) -> bool:
    return filename.lower().endswith(_IMAGE_EXTENSIONS)
