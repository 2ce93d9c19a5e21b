"""Execution results and the run log.

:class:`ExecutionResult` is the only artifact a presentation layer needs to
render a run report: the ordered per-visit outcomes, aggregate counts, the
produced images, wall-clock duration and the fatal error (if any).

Control-flow instructions (``note``, ``loop``, ``loopEnd``, ``end``) are
recorded with the ``control`` outcome so the timeline stays complete, but
they are not counted as executed, skipped or failed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

from PIL import Image

from storyflow.core.events import ExecutionListener


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InstructionOutcome(str, Enum):
    EXECUTED = "executed"
    SKIPPED = "skipped"
    FAILED = "failed"
    CONTROL = "control"


@dataclass
class InstructionResult:
    """Outcome of one visit of one instruction."""

    index: int
    instruction_id: UUID
    key: str
    title: str
    icon: str
    outcome: InstructionOutcome
    message: str = ""
    iteration: int | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome in (InstructionOutcome.EXECUTED, InstructionOutcome.CONTROL)

    @property
    def skipped(self) -> bool:
        return self.outcome is InstructionOutcome.SKIPPED

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "id": str(self.instruction_id),
            "key": self.key,
            "title": self.title,
            "icon": self.icon,
            "outcome": self.outcome.value,
            "message": self.message,
            "iteration": self.iteration,
            "timestamp": self.timestamp.isoformat(),
            "duration": round(self.duration, 3),
        }


@dataclass
class GeneratedImage:
    """An image returned by the provider during a run."""

    image: Image.Image
    prompt: str
    negative_prompt: str
    config: dict[str, Any]
    instruction_index: int
    file_path: Path | None = None
    generated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "config": self.config,
            "instruction_index": self.instruction_index,
            "file_path": str(self.file_path) if self.file_path else None,
            "width": self.image.width,
            "height": self.image.height,
            "generated_at": self.generated_at.isoformat(),
        }


@dataclass
class ExecutionResult:
    """Report for one workflow run."""

    status: ExecutionStatus = ExecutionStatus.IDLE
    results: list[InstructionResult] = field(default_factory=list)
    images: list[GeneratedImage] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    fatal_error: str | None = None

    def _count(self, outcome: InstructionOutcome) -> int:
        return sum(1 for result in self.results if result.outcome is outcome)

    @property
    def executed_count(self) -> int:
        return self._count(InstructionOutcome.EXECUTED)

    @property
    def skipped_count(self) -> int:
        return self._count(InstructionOutcome.SKIPPED)

    @property
    def failed_count(self) -> int:
        return self._count(InstructionOutcome.FAILED)

    @property
    def success(self) -> bool:
        """True when the run finished without a fatal abort or cancellation."""
        return self.status is ExecutionStatus.COMPLETED and self.fatal_error is None

    @property
    def duration(self) -> float:
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()

    @property
    def saved_files(self) -> list[Path]:
        return [image.file_path for image in self.images if image.file_path is not None]

    @property
    def summary(self) -> str:
        text = (
            f"{self.executed_count} executed, {self.skipped_count} skipped, "
            f"{self.failed_count} failed, {len(self.images)} images in {self.duration:.1f}s"
        )
        if self.fatal_error:
            text += f" (aborted: {self.fatal_error})"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "success": self.success,
            "executed_count": self.executed_count,
            "skipped_count": self.skipped_count,
            "failed_count": self.failed_count,
            "duration": round(self.duration, 3),
            "fatal_error": self.fatal_error,
            "summary": self.summary,
            "results": [result.to_dict() for result in self.results],
            "images": [image.to_dict() for image in self.images],
        }


@dataclass
class LogEntry:
    timestamp: datetime
    index: int
    title: str
    icon: str
    outcome: InstructionOutcome
    message: str = ""

    def format(self) -> str:
        line = f"[{self.timestamp:%H:%M:%S}] #{self.index} {self.title}: {self.outcome.value}"
        if self.message:
            line += f" - {self.message}"
        return line


class ExecutionLog(ExecutionListener):
    """Listener that keeps a human-readable timeline of a run."""

    def __init__(self):
        self.entries: list[LogEntry] = []
        self.progress: dict[int, float] = {}
        self.result: ExecutionResult | None = None

    def instruction_completed(self, result: InstructionResult) -> None:
        self.entries.append(
            LogEntry(
                timestamp=result.timestamp,
                index=result.index,
                title=result.title,
                icon=result.icon,
                outcome=result.outcome,
                message=result.message,
            )
        )

    def generation_progress(self, index, progress) -> None:
        self.progress[index] = progress.fraction

    def run_completed(self, result: ExecutionResult) -> None:
        self.result = result

    def lines(self) -> list[str]:
        return [entry.format() for entry in self.entries]

    def clear(self) -> None:
        self.entries.clear()
        self.progress.clear()
        self.result = None
