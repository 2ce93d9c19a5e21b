"""Support classification for instruction variants.

The local engine emulates state mutations (prompt and config accumulation,
loops, canvas/moodboard/mask bookkeeping) itself.  Image-analysis tools are
forwarded to the generation provider and are only as good as that round
trip.  A handful of instructions have no local effect and no known remote
equivalent; the engine always skips them.

:data:`SUPPORT_TABLE` is the single source of truth.  Both the validator and
the engine call :func:`classify`.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from storyflow.core import instructions as ins


class SupportLevel(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class SupportInfo:
    level: SupportLevel
    reason: str


_FULL = SupportLevel.FULL
_PARTIAL = SupportLevel.PARTIAL
_UNSUPPORTED = SupportLevel.UNSUPPORTED

SUPPORT_TABLE: dict[type[ins.Instruction], SupportInfo] = {
    # Flow control
    ins.Note: SupportInfo(_FULL, "Comment; ignored during execution"),
    ins.Loop: SupportInfo(_FULL, "Loop control handled by the engine"),
    ins.LoopEnd: SupportInfo(_FULL, "Loop control handled by the engine"),
    ins.End: SupportInfo(_FULL, "Stops the pipeline"),
    # Prompt & config
    ins.Prompt: SupportInfo(_FULL, "Sets the positive prompt"),
    ins.NegativePrompt: SupportInfo(_FULL, "Sets the negative prompt"),
    ins.Config: SupportInfo(_FULL, "Merged into the generation config"),
    ins.Frames: SupportInfo(_FULL, "Sets the frame count for video models"),
    # Canvas
    ins.CanvasClear: SupportInfo(_FULL, "Clears the canvas"),
    ins.CanvasLoad: SupportInfo(_FULL, "Loads an image from the working directory"),
    ins.CanvasSave: SupportInfo(_FULL, "Generates if needed and saves to the working directory"),
    ins.MoveScale: SupportInfo(_FULL, "Canvas transform emulated locally"),
    ins.AdaptSize: SupportInfo(_FULL, "Canvas resize emulated locally"),
    ins.Crop: SupportInfo(_FULL, "Crops the canvas to its visible content"),
    # Moodboard
    ins.MoodboardClear: SupportInfo(_FULL, "Clears the moodboard"),
    ins.MoodboardCanvas: SupportInfo(_FULL, "Adds the canvas to the moodboard"),
    ins.MoodboardAdd: SupportInfo(_FULL, "Loads a moodboard image from the working directory"),
    ins.MoodboardRemove: SupportInfo(_FULL, "Removes a moodboard entry"),
    ins.MoodboardWeights: SupportInfo(_FULL, "Sets moodboard weights"),
    ins.LoopAddMoodboard: SupportInfo(_FULL, "Adds the iteration's image to the moodboard"),
    # Mask
    ins.MaskClear: SupportInfo(_FULL, "Clears the mask"),
    ins.MaskLoad: SupportInfo(_FULL, "Loads a mask from the working directory"),
    ins.MaskGet: SupportInfo(_FULL, "Derives the mask from the canvas alpha channel"),
    ins.MaskBackground: SupportInfo(_PARTIAL, "Background detection runs on the provider"),
    ins.MaskForeground: SupportInfo(_PARTIAL, "Foreground detection runs on the provider"),
    ins.MaskBody: SupportInfo(_PARTIAL, "Body segmentation runs on the provider"),
    ins.MaskAsk: SupportInfo(_PARTIAL, "Prompted masking runs on the provider"),
    # Depth & pose
    ins.DepthExtract: SupportInfo(_PARTIAL, "Depth estimation runs on the provider"),
    ins.DepthCanvas: SupportInfo(_FULL, "Copies the canvas into the depth layer"),
    ins.DepthToCanvas: SupportInfo(_FULL, "Copies the depth layer onto the canvas"),
    ins.PoseExtract: SupportInfo(_PARTIAL, "Pose detection runs on the provider"),
    ins.PoseJSON: SupportInfo(_FULL, "Sets the pose layer from JSON"),
    # Advanced
    ins.RemoveBackground: SupportInfo(_PARTIAL, "Background removal runs on the provider"),
    ins.FaceZoom: SupportInfo(_PARTIAL, "Face detection runs on the provider"),
    ins.AskZoom: SupportInfo(_PARTIAL, "Prompted zoom runs on the provider"),
    ins.InpaintTools: SupportInfo(_FULL, "Inpainting options are sent with the next request"),
    ins.XLMagic: SupportInfo(_UNSUPPORTED, "SDXL latent tuning has no local or remote equivalent"),
    # Loop I/O and generation
    ins.LoopLoad: SupportInfo(_FULL, "Loads the iteration's image from a folder"),
    ins.LoopSave: SupportInfo(_FULL, "Generates if needed and saves with the iteration index"),
    ins.Generate: SupportInfo(_FULL, "Calls the generation provider"),
}

_UNKNOWN = SupportInfo(_UNSUPPORTED, "Unknown instruction")


def support_info(instruction: ins.Instruction | type[ins.Instruction]) -> SupportInfo:
    instruction_type = instruction if isinstance(instruction, type) else type(instruction)
    return SUPPORT_TABLE.get(instruction_type, _UNKNOWN)


def classify(instruction: ins.Instruction | type[ins.Instruction]) -> SupportLevel:
    """Return the support level of an instruction or instruction type."""
    return support_info(instruction).level


@dataclass
class SupportAnalysis:
    """Support counts for a whole workflow."""

    full: int = 0
    partial: int = 0
    unsupported: int = 0
    has_generation_trigger: bool = False

    @property
    def total(self) -> int:
        return self.full + self.partial + self.unsupported

    @property
    def is_fully_supported(self) -> bool:
        return self.partial == 0 and self.unsupported == 0


def analyze(instructions: Iterable[ins.Instruction]) -> SupportAnalysis:
    analysis = SupportAnalysis()
    for instruction in instructions:
        level = classify(instruction)
        if level is SupportLevel.FULL:
            analysis.full += 1
        elif level is SupportLevel.PARTIAL:
            analysis.partial += 1
        else:
            analysis.unsupported += 1
        if isinstance(instruction, ins.GENERATION_TRIGGER_TYPES):
            analysis.has_generation_trigger = True
    return analysis
