"""Event channel between the engine and its observers.

The engine reports progress through a fixed vocabulary:

- ``instruction_started``: once per visited instruction, before any await.
- ``instruction_completed``: at most once per visit, with the outcome.
- ``generation_progress``: forwarded from the provider during a render.
- ``run_completed``: once, with the final result.

Loop bodies are visited repeatedly; every visit produces its own pair of
events.  Observers subclass :class:`ExecutionListener` and override the hooks
they care about.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from storyflow.core.instructions import Instruction
    from storyflow.core.results import ExecutionResult, InstructionResult
    from storyflow.providers.base import GenerationProgress

logger = logging.getLogger(__name__)


class ExecutionListener:
    """Base class for engine observers. All hooks are no-ops by default."""

    def instruction_started(self, index: int, total: int, instruction: Instruction) -> None:
        pass

    def instruction_completed(self, result: InstructionResult) -> None:
        pass

    def generation_progress(self, index: int, progress: GenerationProgress) -> None:
        pass

    def run_completed(self, result: ExecutionResult) -> None:
        pass


class ListenerGroup(ExecutionListener):
    """Fans events out to several listeners.

    A listener that raises is logged and left out of that event only; it
    never interrupts the run.
    """

    def __init__(self, listeners: Iterable[ExecutionListener] = ()):
        self.listeners: list[ExecutionListener] = list(listeners)

    def add(self, listener: ExecutionListener) -> None:
        self.listeners.append(listener)

    def _dispatch(self, hook: str, *args) -> None:
        for listener in self.listeners:
            try:
                getattr(listener, hook)(*args)
            except Exception:
                logger.exception("Listener %s failed in %s", type(listener).__name__, hook)

    def instruction_started(self, index, total, instruction):
        self._dispatch("instruction_started", index, total, instruction)

    def instruction_completed(self, result):
        self._dispatch("instruction_completed", result)

    def generation_progress(self, index, progress):
        self._dispatch("generation_progress", index, progress)

    def run_completed(self, result):
        self._dispatch("run_completed", result)
