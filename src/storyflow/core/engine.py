"""Workflow execution engine.

:class:`WorkflowEngine` interprets a list of instructions under a program
counter.  It owns a fresh :class:`PipelineState` per run, performs loop jumps,
calls the generation provider at trigger points and reports every visit
through the listener channel.

Failure policy
--------------
- Per-instruction failures (missing files, provider request errors, decode
  errors) are recorded and the run continues.
- Unsupported instructions are skipped without touching state.
- Fatal conditions (provider unreachable, credentials rejected,
  cancellation) stop the run.  Every instruction that was never visited is
  then appended as skipped with the abort reason, so the report is complete.

:meth:`WorkflowEngine.run` never raises for any of the above.  The only
exceptions that escape are raised before the run starts:
:class:`WorkingDirectoryError` and, when validation is enforced,
:class:`~storyflow.core.validator.WorkflowValidationFailed`.

Usage Example
-------------
    import asyncio
    from storyflow.core.engine import WorkflowEngine
    from storyflow.core.instructions import Loop, LoopEnd, LoopSave, Prompt
    from storyflow.providers import provider_registry

    provider = provider_registry.instantiate("http", config)
    engine = WorkflowEngine(provider, config)
    result = asyncio.run(engine.run([Prompt("a cat"), Loop(count=3), LoopSave("v_"), LoopEnd()]))
    print(result.summary)
"""

from __future__ import annotations

import asyncio
import copy
import logging
import os
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from PIL import Image

from storyflow.core import instructions as ins
from storyflow.core.config import StoryflowConfig
from storyflow.core.events import ExecutionListener, ListenerGroup
from storyflow.core.generation import GenerationConfig, GenerationSettings
from storyflow.core.results import (
    ExecutionResult,
    ExecutionStatus,
    GeneratedImage,
    InstructionOutcome,
    InstructionResult,
)
from storyflow.core.state import LoopFrame, MoodboardItem, PipelineState
from storyflow.core.support import SupportLevel, support_info
from storyflow.core.validator import WorkflowValidationFailed, validate
from storyflow.plugins.base import PluginBase
from storyflow.providers.base import GenerationProvider, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")

# Provider tool -> pipeline layer that receives the result.
_TOOL_TARGETS: dict[type[ins.Instruction], str] = {
    ins.MaskBackground: "mask",
    ins.MaskForeground: "mask",
    ins.MaskBody: "mask",
    ins.MaskAsk: "mask",
    ins.DepthExtract: "depth",
    ins.PoseExtract: "pose",
    ins.RemoveBackground: "canvas",
    ins.FaceZoom: "canvas",
    ins.AskZoom: "canvas",
}

CANCELLED_MESSAGE = "Execution cancelled"


class WorkingDirectoryError(Exception):
    """The working directory cannot be created or written to."""


class InstructionFailed(Exception):
    """Per-instruction failure; recorded and execution continues."""


class _RunCancelled(Exception):
    pass


class WorkflowEngine:
    """Interpreter for StoryFlow instruction sequences.

    Args:
        provider: Generation backend used at trigger points and for tools.
        config: Application configuration (defaults to the global instance).
        working_dir: Root for relative file paths (defaults to
            ``config.working_dir``).
        plugins: Save plugins run around every persisted image.
        listeners: Observers notified of run progress.
    """

    def __init__(
        self,
        provider: GenerationProvider,
        config: StoryflowConfig | None = None,
        *,
        working_dir: Path | str | None = None,
        plugins: Iterable[PluginBase] | None = None,
        listeners: Iterable[ExecutionListener] = (),
    ):
        if config is None:
            from storyflow.core.config import config as default_config

            config = default_config
        self.provider = provider
        self.config = config
        self.working_dir = Path(working_dir if working_dir is not None else config.working_dir).expanduser()
        self.plugins: list[PluginBase] = list(plugins or [])
        self.listeners = ListenerGroup(listeners)

        self.status = ExecutionStatus.IDLE
        self.state = PipelineState()
        self.current_index: int | None = None

        self._baseline = GenerationConfig.from_settings(config)
        self._result: ExecutionResult | None = None
        self._cancel_event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._active_task: asyncio.Future | None = None
        self._instructions: list[ins.Instruction] = []

        self._handlers: dict[type[ins.Instruction], Callable[[Any, int], Awaitable[str]]] = {
            ins.Note: self._note,
            ins.Loop: self._loop_start,
            ins.LoopEnd: self._loop_end,
            ins.End: self._end,
            ins.Prompt: self._prompt,
            ins.NegativePrompt: self._negative_prompt,
            ins.Config: self._config,
            ins.Frames: self._frames,
            ins.CanvasClear: self._canvas_clear,
            ins.CanvasLoad: self._canvas_load,
            ins.CanvasSave: self._canvas_save,
            ins.MoveScale: self._move_scale,
            ins.AdaptSize: self._adapt_size,
            ins.Crop: self._crop,
            ins.MoodboardClear: self._moodboard_clear,
            ins.MoodboardCanvas: self._moodboard_canvas,
            ins.MoodboardAdd: self._moodboard_add,
            ins.MoodboardRemove: self._moodboard_remove,
            ins.MoodboardWeights: self._moodboard_weights,
            ins.LoopAddMoodboard: self._loop_add_moodboard,
            ins.MaskClear: self._mask_clear,
            ins.MaskLoad: self._mask_load,
            ins.MaskGet: self._mask_get,
            ins.DepthCanvas: self._depth_canvas,
            ins.DepthToCanvas: self._depth_to_canvas,
            ins.PoseJSON: self._pose_json,
            ins.InpaintTools: self._inpaint_tools,
            ins.LoopLoad: self._loop_load,
            ins.LoopSave: self._loop_save,
            ins.Generate: self._generate,
        }
        for tool_type in _TOOL_TARGETS:
            self._handlers[tool_type] = self._provider_tool

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self.status is ExecutionStatus.RUNNING

    def add_listener(self, listener: ExecutionListener) -> None:
        self.listeners.add(listener)

    def supports(self, instruction_type: type[ins.Instruction]) -> bool:
        return instruction_type in self._handlers

    def cancel(self) -> None:
        """Request cancellation of the current run.

        Safe to call from another thread.  An in-flight provider call is
        interrupted; otherwise the flag is honored before the next
        instruction.
        """
        loop = self._loop
        if loop is None or not self.is_running:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._request_cancel()
        else:
            loop.call_soon_threadsafe(self._request_cancel)

    def _request_cancel(self) -> None:
        logger.info("Cancellation requested")
        if self._cancel_event is not None:
            self._cancel_event.set()
        if self._active_task is not None and not self._active_task.done():
            self._active_task.cancel()

    async def run(
        self,
        instructions: Sequence[ins.Instruction],
        *,
        check_connection: bool | None = None,
        enforce_validation: bool = False,
    ) -> ExecutionResult:
        """Execute a workflow and return its report.

        Args:
            instructions: The instruction sequence.
            check_connection: Check the provider connection first (defaults to
                ``config.check_connection_before_run``).  Only done when the
                workflow actually needs the provider.
            enforce_validation: Refuse to start when validation reports
                errors.

        Raises:
            RuntimeError: If the engine is already running.
            WorkingDirectoryError: If the working directory is unusable.
            WorkflowValidationFailed: If ``enforce_validation`` is set and
                the workflow has errors.
        """
        if self.is_running:
            raise RuntimeError("Engine is already running a workflow")

        self._instructions = list(instructions)
        if enforce_validation:
            report = validate(self._instructions)
            if not report.is_valid:
                raise WorkflowValidationFailed(report)
        self._prepare_working_dir()

        total = len(self._instructions)
        self.state = PipelineState()
        self._baseline = GenerationConfig.from_settings(self.config)
        self._result = result = ExecutionResult(status=ExecutionStatus.RUNNING)
        self._cancel_event = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        self.status = ExecutionStatus.RUNNING
        visited: set[int] = set()

        logger.info("Starting workflow with %d instructions in %s", total, self.working_dir)

        try:
            cancelled = await self._run_instructions(result, visited, check_connection)
        except asyncio.CancelledError:
            # The task running the workflow was cancelled from outside (shutdown, timeout).
            logger.warning("Workflow task cancelled")
            self._cancel_event.set()
            if self.current_index is not None:
                instruction = self._instructions[self.current_index]
                frame = self.state.current_frame
                result.results.append(
                    self._make_result(
                        instruction,
                        self.current_index,
                        InstructionOutcome.SKIPPED,
                        CANCELLED_MESSAGE,
                        frame.current_iteration if frame is not None else None,
                    )
                )
            result.fatal_error = CANCELLED_MESSAGE
            self._finish(result, visited, cancelled=True)
            raise
        return self._finish(result, visited, cancelled)

    async def _run_instructions(
        self, result: ExecutionResult, visited: set[int], check_connection: bool | None
    ) -> bool:
        """Drive the program counter; returns True when the run was cancelled."""
        total = len(self._instructions)
        cancelled = False

        if check_connection is None:
            check_connection = self.config.check_connection_before_run
        if check_connection and self._needs_provider():
            if not await self.provider.check_connection():
                result.fatal_error = f"Cannot connect to generation provider '{self.provider.name}'"
                logger.error("Aborting workflow: %s", result.fatal_error)

        state = self.state
        while state.program_counter < total and result.fatal_error is None:
            if self._cancel_event.is_set():
                cancelled = True
                result.fatal_error = CANCELLED_MESSAGE
                break

            index = state.program_counter
            instruction = self._instructions[index]
            visited.add(index)
            self.current_index = index
            frame = state.current_frame
            iteration = frame.current_iteration if frame is not None else None

            self.listeners.instruction_started(index, total, instruction)
            started = time.monotonic()
            state.program_counter = index + 1

            outcome, message = await self._execute(instruction, index)
            if outcome is None:
                cancelled = True
                result.fatal_error = CANCELLED_MESSAGE
                outcome, message = InstructionOutcome.SKIPPED, CANCELLED_MESSAGE

            entry = self._make_result(instruction, index, outcome, message, iteration)
            entry.duration = time.monotonic() - started
            result.results.append(entry)
            self.listeners.instruction_completed(entry)
            self.current_index = None
        return cancelled

    def _finish(self, result: ExecutionResult, visited: set[int], cancelled: bool) -> ExecutionResult:
        if result.fatal_error is not None:
            for index, instruction in enumerate(self._instructions):
                if index not in visited:
                    entry = self._make_result(
                        instruction, index, InstructionOutcome.SKIPPED, f"Not run: {result.fatal_error}"
                    )
                    result.results.append(entry)

        result.status = ExecutionStatus.CANCELLED if cancelled else ExecutionStatus.COMPLETED
        result.finished_at = datetime.now()
        self.status = result.status
        self.current_index = None
        self._active_task = None

        if result.success:
            logger.info("Workflow completed: %s", result.summary)
        else:
            logger.error("Workflow stopped: %s", result.summary)
        self.listeners.run_completed(result)
        return result

    # ------------------------------------------------------------------
    # Run helpers
    # ------------------------------------------------------------------

    def _prepare_working_dir(self) -> None:
        try:
            self.working_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkingDirectoryError(f"Cannot create working directory {self.working_dir}: {e}") from e
        if not os.access(self.working_dir, os.W_OK):
            raise WorkingDirectoryError(f"Working directory is not writable: {self.working_dir}")

    def _needs_provider(self) -> bool:
        for instruction in self._instructions:
            if isinstance(instruction, ins.GENERATION_TRIGGER_TYPES):
                return True
            if support_info(instruction).level is SupportLevel.PARTIAL:
                return True
        return False

    def _make_result(
        self,
        instruction: ins.Instruction,
        index: int,
        outcome: InstructionOutcome,
        message: str,
        iteration: int | None = None,
    ) -> InstructionResult:
        return InstructionResult(
            index=index,
            instruction_id=instruction.id,
            key=instruction.key,
            title=instruction.title,
            icon=instruction.icon,
            outcome=outcome,
            message=message,
            iteration=iteration,
        )

    async def _execute(self, instruction: ins.Instruction, index: int) -> tuple[InstructionOutcome | None, str]:
        """Run one instruction. Returns ``(None, "")`` when cancelled mid-call."""
        info = support_info(instruction)
        handler = self._handlers.get(type(instruction))
        if info.level is SupportLevel.UNSUPPORTED or handler is None:
            logger.info("Skipping %s: %s", instruction.key, info.reason)
            return InstructionOutcome.SKIPPED, info.reason

        try:
            message = await handler(instruction, index)
        except _RunCancelled:
            logger.warning("%s interrupted by cancellation", instruction.key)
            return None, ""
        except InstructionFailed as e:
            logger.warning("Instruction %d (%s) failed: %s", index, instruction.key, e)
            return InstructionOutcome.FAILED, str(e)
        except ProviderError as e:
            if e.fatal:
                logger.error("Instruction %d (%s) failed fatally: %s", index, instruction.key, e)
                self._result.fatal_error = str(e)
            else:
                logger.warning("Instruction %d (%s) failed: %s", index, instruction.key, e)
            return InstructionOutcome.FAILED, str(e)
        except Exception as e:
            logger.exception("Unexpected error in instruction %d (%s)", index, instruction.key)
            return InstructionOutcome.FAILED, f"Unexpected error: {e}"

        self.state.fit_mask_to_canvas()
        if isinstance(instruction, ins.CONTROL_FLOW_TYPES):
            outcome = InstructionOutcome.CONTROL
        else:
            outcome = InstructionOutcome.EXECUTED
        logger.debug("Instruction %d (%s): %s %s", index, instruction.key, outcome.value, message)
        return outcome, message

    async def _call_provider(self, operation: Awaitable[T]) -> T:
        """Await a provider operation so that :meth:`cancel` can interrupt it."""
        task = asyncio.ensure_future(operation)
        self._active_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancel_event is not None and self._cancel_event.is_set():
                raise _RunCancelled() from None
            raise
        finally:
            self._active_task = None

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    def _resolve_path(self, relative: str) -> Path:
        if not relative:
            raise InstructionFailed("Empty path")
        root = self.working_dir.resolve()
        path = (root / relative).resolve()
        if path != root and root not in path.parents:
            raise InstructionFailed(f"Path escapes the working directory: {relative}")
        return path

    def _load_image(self, relative: str, what: str = "File") -> Image.Image:
        path = self._resolve_path(relative)
        if not path.is_file():
            raise InstructionFailed(f"{what} not found: {relative}")
        return self._open_image(path, relative)

    def _open_image(self, path: Path, label: str) -> Image.Image:
        try:
            with Image.open(path) as image:
                image.load()
                return image.copy()
        except (OSError, ValueError) as e:
            raise InstructionFailed(f"Failed to load image {label}: {e}") from e

    def _save_image(self, image: Image.Image, relative: str, params: dict[str, Any]) -> Path:
        path = self._resolve_path(relative)
        for plugin in self.plugins:
            if plugin.enabled:
                image, path = plugin.on_before_save(image, path, params)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            image.save(path, format="PNG")
        except (OSError, ValueError) as e:
            raise InstructionFailed(f"Failed to save {relative}: {e}") from e
        for plugin in self.plugins:
            if plugin.enabled:
                plugin.on_after_save(image, path, params)
        logger.info("Saved image to %s", path)
        return path

    def _iteration_image(self, folder: str, frame: LoopFrame) -> tuple[Image.Image, str]:
        """Load ``folder/<iteration>.<ext>``, or the folder's n-th image by name."""
        directory = self._resolve_path(folder)
        if not directory.is_dir():
            raise InstructionFailed(f"Folder not found: {folder}")

        for extension in IMAGE_EXTENSIONS:
            candidate = directory / f"{frame.current_iteration}{extension}"
            if candidate.is_file():
                return self._open_image(candidate, candidate.name), candidate.name

        files = sorted(
            (p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS),
            key=lambda p: p.name,
        )
        if frame.offset >= len(files):
            raise InstructionFailed(f"Loop index {frame.offset} exceeds file count {len(files)} in {folder}")
        chosen = files[frame.offset]
        return self._open_image(chosen, chosen.name), chosen.name

    def _require_frame(self, instruction: ins.Instruction) -> LoopFrame:
        frame = self.state.current_frame
        if frame is None:
            raise InstructionFailed(f"{instruction.key} must be inside a loop")
        return frame

    def _require_canvas(self, instruction: ins.Instruction) -> Image.Image:
        if self.state.canvas is None:
            raise InstructionFailed(f"{instruction.key} requires a canvas")
        return self.state.canvas

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def _mode(self) -> str:
        if self.state.canvas is None:
            return "txt2img"
        return "inpainting" if self.state.mask is not None else "img2img"

    async def _render(self, index: int) -> list[GeneratedImage]:
        state = self.state
        if not state.has_prompt and state.canvas is None and not state.moodboard:
            raise InstructionFailed("Nothing to generate: no prompt, canvas or moodboard")

        prompt = state.positive_prompt if state.has_prompt else ""
        state.fit_mask_to_canvas()
        config = state.resolved_config(self._baseline)
        mode = self._mode()
        logger.info("Generating via %s", mode)

        images = await self._call_provider(
            self.provider.generate_image(
                prompt,
                config,
                source_image=state.canvas,
                mask=state.mask if state.canvas is not None else None,
                moodboard=[(item.image, item.weight) for item in state.moodboard],
                on_progress=lambda progress: self.listeners.generation_progress(index, progress),
            )
        )
        if not images:
            raise InstructionFailed("No image generated")

        state.canvas = images[0]
        metadata = config.to_metadata()
        generated = [
            GeneratedImage(
                image=image,
                prompt=prompt,
                negative_prompt=state.negative_prompt,
                config=metadata,
                instruction_index=index,
            )
            for image in images
        ]
        self._result.images.extend(generated)
        return generated

    async def _render_and_save(self, relative: str, index: int) -> str:
        """Save the canvas, generating first when a render is due."""
        state = self.state
        generated: GeneratedImage | None = None

        if state.fresh_generation and state.canvas is not None:
            generated = next((g for g in reversed(self._result.images) if g.image is state.canvas), None)
            state.fresh_generation = False
            source = "generated"
        elif state.has_prompt:
            source = self._mode()
            generated = (await self._render(index))[0]
        elif state.canvas is not None:
            source = "canvas"
        else:
            raise InstructionFailed("No prompt or canvas to save")

        params = {
            "prompt": state.positive_prompt,
            "negative_prompt": state.negative_prompt,
            **state.resolved_config(self._baseline).to_metadata(),
            "instruction_index": index,
        }
        frame = state.current_frame
        if frame is not None:
            params["iteration"] = frame.current_iteration

        path = self._save_image(state.canvas, relative, params)
        if generated is not None:
            generated.file_path = path
        return f"Saved {source} image: {relative}"

    # ------------------------------------------------------------------
    # Flow control
    # ------------------------------------------------------------------

    async def _note(self, instruction: ins.Note, index: int) -> str:
        return ""

    async def _loop_start(self, instruction: ins.Loop, index: int) -> str:
        state = self.state
        if instruction.count <= 0:
            end_index = self._matching_loop_end(index)
            state.program_counter = end_index + 1 if end_index is not None else len(self._instructions)
            return f"Loop skipped (count {instruction.count})"
        state.loop_stack.append(
            LoopFrame(
                start_pc=index,
                start=instruction.start,
                count=instruction.count,
                current_iteration=instruction.start,
            )
        )
        return f"Loop iteration 1/{instruction.count} (index {instruction.start})"

    def _matching_loop_end(self, loop_index: int) -> int | None:
        depth = 0
        for offset, instruction in enumerate(self._instructions[loop_index + 1 :], start=loop_index + 1):
            if isinstance(instruction, ins.Loop):
                depth += 1
            elif isinstance(instruction, ins.LoopEnd):
                if depth == 0:
                    return offset
                depth -= 1
        return None

    async def _loop_end(self, instruction: ins.LoopEnd, index: int) -> str:
        state = self.state
        frame = state.current_frame
        if frame is None:
            raise InstructionFailed("Loop end without matching loop start")
        state.fresh_generation = False
        frame.current_iteration += 1
        if frame.current_iteration < frame.end_iteration:
            state.program_counter = frame.start_pc + 1
            return f"Loop iteration {frame.offset + 1}/{frame.count} (index {frame.current_iteration})"
        state.loop_stack.pop()
        return "Loop completed"

    async def _end(self, instruction: ins.End, index: int) -> str:
        self.state.program_counter = len(self._instructions)
        logger.info("Workflow ended by 'end' instruction")
        return "Workflow ended"

    # ------------------------------------------------------------------
    # Prompt & config
    # ------------------------------------------------------------------

    async def _prompt(self, instruction: ins.Prompt, index: int) -> str:
        self.state.positive_prompt = instruction.text
        return "Prompt set"

    async def _negative_prompt(self, instruction: ins.NegativePrompt, index: int) -> str:
        self.state.negative_prompt = instruction.text
        return "Negative prompt set"

    async def _config(self, instruction: ins.Config, index: int) -> str:
        self.state.merge_settings(instruction.settings)
        changed = ", ".join(sorted(instruction.settings.set_fields())) or "nothing"
        return f"Config updated: {changed}"

    async def _frames(self, instruction: ins.Frames, index: int) -> str:
        if instruction.count < 1:
            raise InstructionFailed(f"Frame count must be at least 1, got {instruction.count}")
        self.state.merge_settings(GenerationSettings(num_frames=instruction.count))
        return f"Frames: {instruction.count}"

    # ------------------------------------------------------------------
    # Canvas
    # ------------------------------------------------------------------

    async def _canvas_clear(self, instruction: ins.CanvasClear, index: int) -> str:
        self.state.canvas = None
        return "Canvas cleared"

    async def _canvas_load(self, instruction: ins.CanvasLoad, index: int) -> str:
        self.state.canvas = self._load_image(instruction.filename)
        self.state.fresh_generation = False
        return f"Canvas loaded: {instruction.filename}"

    async def _canvas_save(self, instruction: ins.CanvasSave, index: int) -> str:
        return await self._render_and_save(instruction.filename, index)

    async def _move_scale(self, instruction: ins.MoveScale, index: int) -> str:
        canvas = self._require_canvas(instruction)
        if instruction.scale <= 0:
            raise InstructionFailed(f"Scale must be positive, got {instruction.scale}")
        width, height = canvas.size
        scaled = canvas.convert("RGBA").resize(
            (max(1, round(width * instruction.scale)), max(1, round(height * instruction.scale)))
        )
        moved = Image.new("RGBA", (width, height), (0, 0, 0, 0))
        moved.paste(scaled, (round(instruction.x), round(instruction.y)))
        self.state.canvas = moved
        if self.state.mask is not None:
            moved_mask = Image.new("L", (width, height), 0)
            moved_mask.paste(self.state.mask.resize(scaled.size), (round(instruction.x), round(instruction.y)))
            self.state.mask = moved_mask
        return f"Moved to ({instruction.x}, {instruction.y}) at scale {instruction.scale}"

    async def _adapt_size(self, instruction: ins.AdaptSize, index: int) -> str:
        canvas = self._require_canvas(instruction)
        if instruction.max_width <= 0 or instruction.max_height <= 0:
            raise InstructionFailed("Maximum size must be positive")
        adapted = canvas.copy()
        adapted.thumbnail((instruction.max_width, instruction.max_height))
        self.state.canvas = adapted
        width = max(64, adapted.width // 64 * 64)
        height = max(64, adapted.height // 64 * 64)
        self.state.merge_settings(GenerationSettings(width=width, height=height))
        return f"Canvas adapted to {adapted.width}x{adapted.height}, generation size {width}x{height}"

    async def _crop(self, instruction: ins.Crop, index: int) -> str:
        canvas = self._require_canvas(instruction)
        bbox = canvas.convert("RGBA").getchannel("A").getbbox()
        if bbox is None:
            raise InstructionFailed("Canvas is fully transparent")
        if self.state.mask is not None:
            self.state.mask = self.state.mask.resize(canvas.size).crop(bbox)
        self.state.canvas = canvas.crop(bbox)
        return f"Cropped to {bbox[2] - bbox[0]}x{bbox[3] - bbox[1]}"

    # ------------------------------------------------------------------
    # Moodboard
    # ------------------------------------------------------------------

    async def _moodboard_clear(self, instruction: ins.MoodboardClear, index: int) -> str:
        self.state.moodboard.clear()
        return "Moodboard cleared"

    async def _moodboard_canvas(self, instruction: ins.MoodboardCanvas, index: int) -> str:
        canvas = self._require_canvas(instruction)
        self.state.moodboard.append(MoodboardItem(image=canvas.copy(), source="canvas"))
        return f"Canvas added to moodboard ({len(self.state.moodboard)} items)"

    async def _moodboard_add(self, instruction: ins.MoodboardAdd, index: int) -> str:
        image = self._load_image(instruction.filename, "Moodboard file")
        self.state.moodboard.append(MoodboardItem(image=image, source=instruction.filename))
        return f"Moodboard image added: {instruction.filename}"

    async def _moodboard_remove(self, instruction: ins.MoodboardRemove, index: int) -> str:
        moodboard = self.state.moodboard
        if not 0 <= instruction.index < len(moodboard):
            raise InstructionFailed(f"Moodboard index {instruction.index} out of range ({len(moodboard)} items)")
        moodboard.pop(instruction.index)
        return f"Removed moodboard item {instruction.index}"

    async def _moodboard_weights(self, instruction: ins.MoodboardWeights, index: int) -> str:
        moodboard = self.state.moodboard
        applied, missing = [], []
        for item_index, weight in instruction.weights:
            if 0 <= item_index < len(moodboard):
                moodboard[item_index].weight = weight
                applied.append(item_index)
            else:
                missing.append(item_index)
        message = f"Weights set for {len(applied)} item(s)"
        if missing:
            message += f"; no moodboard entry for index {', '.join(map(str, missing))}"
        return message

    async def _loop_add_moodboard(self, instruction: ins.LoopAddMoodboard, index: int) -> str:
        frame = self._require_frame(instruction)
        image, name = self._iteration_image(instruction.folder, frame)
        self.state.moodboard.append(MoodboardItem(image=image, source=f"{instruction.folder}/{name}"))
        return f"Moodboard image added: {name}"

    # ------------------------------------------------------------------
    # Mask, depth & pose
    # ------------------------------------------------------------------

    async def _mask_clear(self, instruction: ins.MaskClear, index: int) -> str:
        self.state.mask = None
        return "Mask cleared"

    async def _mask_load(self, instruction: ins.MaskLoad, index: int) -> str:
        self.state.mask = self._load_image(instruction.filename, "Mask file").convert("L")
        return f"Mask loaded: {instruction.filename}"

    async def _mask_get(self, instruction: ins.MaskGet, index: int) -> str:
        canvas = self._require_canvas(instruction)
        self.state.mask = canvas.convert("RGBA").getchannel("A")
        return "Mask taken from canvas alpha"

    async def _depth_canvas(self, instruction: ins.DepthCanvas, index: int) -> str:
        self.state.depth = self._require_canvas(instruction).copy()
        return "Canvas copied to depth layer"

    async def _depth_to_canvas(self, instruction: ins.DepthToCanvas, index: int) -> str:
        if self.state.depth is None:
            raise InstructionFailed("No depth layer to copy")
        self.state.canvas = self.state.depth.copy()
        return "Depth layer copied to canvas"

    async def _pose_json(self, instruction: ins.PoseJSON, index: int) -> str:
        self.state.pose = copy.deepcopy(dict(instruction.data))
        return "Pose set from JSON"

    async def _inpaint_tools(self, instruction: ins.InpaintTools, index: int) -> str:
        state = self.state
        if instruction.strength is not None:
            state.merge_settings(GenerationSettings(strength=instruction.strength))
        overrides = {
            "mask_blur": instruction.mask_blur,
            "mask_blur_outset": instruction.mask_blur_outset,
            "restore_original_after_inpaint": instruction.restore_original,
        }
        state.inpaint = replace(
            state.inpaint,
            **{name: value for name, value in overrides.items() if value is not None},
        )
        return "Inpaint options updated"

    async def _provider_tool(self, instruction: ins.Instruction, index: int) -> str:
        canvas = self._require_canvas(instruction)
        payload = instruction.to_wire()[instruction.key]
        if isinstance(payload, dict):
            params = payload
        elif isinstance(payload, str):
            params = {"description": payload}
        else:
            params = {}

        tool_result = await self._call_provider(self.provider.apply_tool(instruction.key, canvas, params))
        target = _TOOL_TARGETS[type(instruction)]
        if target == "pose":
            self.state.pose = dict(tool_result.data)
            return f"{instruction.title} completed"
        if tool_result.image is None:
            raise InstructionFailed(f"Provider returned no image for {instruction.key}")
        if target == "mask":
            self.state.mask = tool_result.image.convert("L")
        elif target == "depth":
            self.state.depth = tool_result.image
        else:
            self.state.canvas = tool_result.image
        return f"{instruction.title} completed"

    # ------------------------------------------------------------------
    # Loop I/O and generation
    # ------------------------------------------------------------------

    async def _loop_load(self, instruction: ins.LoopLoad, index: int) -> str:
        frame = self._require_frame(instruction)
        image, name = self._iteration_image(instruction.folder, frame)
        self.state.canvas = image
        self.state.fresh_generation = False
        return f"Loaded: {name}"

    async def _loop_save(self, instruction: ins.LoopSave, index: int) -> str:
        frame = self._require_frame(instruction)
        return await self._render_and_save(f"{instruction.prefix}{frame.current_iteration}.png", index)

    async def _generate(self, instruction: ins.Generate, index: int) -> str:
        mode = self._mode()
        generated = await self._render(index)
        self.state.fresh_generation = True
        return f"Generated {len(generated)} image(s) via {mode}"
