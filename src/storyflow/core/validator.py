"""Pre-run validation of instruction sequences.

Validation is a pure pass over the instructions: it never raises and never
touches pipeline state, so editors can call it on every change.  Problems
come back as :class:`ValidationIssue` items split into blocking errors and
advisory warnings.

A single linear walk simulates just enough state (open loops, whether a
prompt, canvas or moodboard is available) to catch structural mistakes.
Loop bodies are walked once, as on their first iteration.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from storyflow.core import instructions as ins
from storyflow.core.support import SupportLevel, support_info

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str
    index: int | None = None
    severity: Severity = Severity.ERROR

    def __str__(self) -> str:
        if self.index is None:
            return self.message
        return f"Instruction {self.index}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "index": self.index, "severity": self.severity.value}


@dataclass
class ValidationReport:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        """True when there are no errors (warnings are acceptable)."""
        return not self.errors

    @property
    def is_perfect(self) -> bool:
        return not self.errors and not self.warnings

    @property
    def summary(self) -> str:
        if self.is_perfect:
            return "Valid"
        if self.is_valid:
            return f"{len(self.warnings)} warning(s)"
        return f"{len(self.errors)} error(s), {len(self.warnings)} warning(s)"

    def error(self, code: str, message: str, index: int | None = None) -> None:
        self.errors.append(ValidationIssue(code, message, index, Severity.ERROR))

    def warn(self, code: str, message: str, index: int | None = None) -> None:
        self.warnings.append(ValidationIssue(code, message, index, Severity.WARNING))

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "is_perfect": self.is_perfect,
            "summary": self.summary,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
        }


class WorkflowValidationFailed(Exception):
    """Raised by callers that refuse to run a workflow with validation errors."""

    def __init__(self, report: ValidationReport):
        self.report = report
        first = str(report.errors[0]) if report.errors else "unknown error"
        super().__init__(f"Workflow has {len(report.errors)} validation error(s); first: {first}")


@dataclass
class _LoopScope:
    index: int
    triggered_since_prompt: bool = False


def validate(instructions: Sequence[ins.Instruction]) -> ValidationReport:
    """Check an instruction sequence for errors and warnings."""
    report = ValidationReport()
    open_loops: list[_LoopScope] = []

    has_prompt = False
    has_canvas = False
    moodboard_count = 0
    saw_prompt = False
    saw_trigger = False
    saw_config = False

    for index, instruction in enumerate(instructions):
        info = support_info(instruction)
        if info.level is SupportLevel.UNSUPPORTED:
            report.warn("unsupported", f"'{instruction.key}' will be skipped: {info.reason}", index)

        if isinstance(instruction, ins.Loop):
            if instruction.count < 1:
                report.warn("loop_count", f"Loop count {instruction.count} runs the body zero times", index)
            open_loops.append(_LoopScope(index))
        elif isinstance(instruction, ins.LoopEnd):
            if not open_loops:
                report.error("unexpected_loop_end", "loopEnd without matching loop", index)
            else:
                open_loops.pop()
        elif isinstance(instruction, ins.LOOP_SCOPED_TYPES) and not open_loops:
            report.error("outside_loop", f"'{instruction.key}' must be inside a loop", index)

        if isinstance(instruction, ins.Prompt):
            has_prompt = bool(instruction.text.strip())
            saw_prompt = saw_prompt or has_prompt
            if open_loops:
                open_loops[-1].triggered_since_prompt = False
        elif isinstance(instruction, ins.Config):
            saw_config = True
            if open_loops and open_loops[-1].triggered_since_prompt:
                report.warn(
                    "config_after_generation",
                    "Config change after a generation in the same loop body applies from the next generation",
                    index,
                )
        elif isinstance(instruction, ins.IMAGE_LOAD_TYPES):
            path = instruction.filename
            if not path.strip():
                report.error("invalid_file_path", f"'{instruction.key}' requires a file path", index)
            elif not ins.has_image_extension(path):
                report.error("invalid_file_path", f"'{path}' is not an image file", index)
            if isinstance(instruction, ins.CanvasLoad):
                has_canvas = True
            elif isinstance(instruction, ins.MoodboardAdd):
                moodboard_count += 1
        elif isinstance(instruction, ins.CanvasClear):
            has_canvas = False
        elif isinstance(instruction, (ins.LoopLoad, ins.DepthToCanvas)):
            has_canvas = True
        elif isinstance(instruction, ins.LoopAddMoodboard):
            moodboard_count += 1
        elif isinstance(instruction, ins.MoodboardCanvas):
            if has_canvas:
                moodboard_count += 1
        elif isinstance(instruction, ins.MoodboardRemove):
            moodboard_count = max(0, moodboard_count - 1)
        elif isinstance(instruction, ins.MoodboardClear):
            moodboard_count = 0
        elif isinstance(instruction, ins.MoodboardWeights):
            missing = [str(i) for i, _ in instruction.weights if i >= moodboard_count]
            if missing:
                report.warn(
                    "moodboard_index",
                    f"No moodboard entry for index {', '.join(missing)} at this point",
                    index,
                )

        if isinstance(instruction, ins.CanvasSave):
            if not instruction.filename.lower().endswith(".png"):
                report.error("invalid_filename", f"Save filename '{instruction.filename}' must end in .png", index)
        elif isinstance(instruction, ins.LoopSave):
            if ins.has_image_extension(instruction.prefix):
                report.error(
                    "invalid_filename",
                    f"loopSave prefix '{instruction.prefix}' already has an extension; '<index>.png' is appended",
                    index,
                )

        if isinstance(instruction, ins.GENERATION_TRIGGER_TYPES):
            saw_trigger = True
            if not has_prompt and not has_canvas and moodboard_count == 0:
                report.error(
                    "nothing_to_generate",
                    f"'{instruction.key}' has no prompt, canvas or moodboard to work from",
                    index,
                )
            has_canvas = True
            if open_loops:
                open_loops[-1].triggered_since_prompt = True

    for scope in open_loops:
        report.error("unclosed_loop", "Loop is never closed by loopEnd", scope.index)

    if instructions and not saw_prompt:
        report.warn("no_prompt", "Workflow sets no prompt")
    if instructions and not saw_trigger:
        report.warn("no_generation", "Workflow never generates or saves an image")
    if instructions and not saw_config:
        report.warn("no_config", "Workflow never sets a generation config")

    logger.debug("Validated %d instructions: %s", len(instructions), report.summary)
    return report


def validate_payload(payload: Any) -> tuple[list[ins.Instruction] | None, ValidationReport]:
    """Decode and validate a raw wire payload.

    Returns the decoded instructions (``None`` when any entry fails to
    decode) together with the report.  Decode failures are reported as
    ``invalid_instruction`` errors at their index.
    """
    report = ValidationReport()
    if not isinstance(payload, list):
        report.error("invalid_structure", "Workflow must be a list of instructions")
        return None, report

    decoded: list[ins.Instruction] = []
    for index, item in enumerate(payload):
        try:
            decoded.append(ins.instruction_from_wire(item))
        except ins.InstructionDecodeError as e:
            report.error("invalid_instruction", str(e), index)

    if report.errors:
        return None, report
    return decoded, validate(decoded)


def is_valid(instructions: Sequence[ins.Instruction]) -> bool:
    return validate(instructions).is_valid
