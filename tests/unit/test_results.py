"""Tests for storyflow.core.results and storyflow.core.events."""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import uuid4

from PIL import Image

from storyflow.core.events import ExecutionListener, ListenerGroup
from storyflow.core.results import (
    ExecutionLog,
    ExecutionResult,
    ExecutionStatus,
    GeneratedImage,
    InstructionOutcome,
    InstructionResult,
    LogEntry,
)
from storyflow.providers.base import GenerationProgress, ProgressStage


def make_entry(index: int, outcome: InstructionOutcome, message: str = "") -> InstructionResult:
    return InstructionResult(
        index=index,
        instruction_id=uuid4(),
        key="prompt",
        title="Prompt",
        icon="text.cursor",
        outcome=outcome,
        message=message,
    )


class TestExecutionResult:
    def test_counts_ignore_control(self):
        result = ExecutionResult(
            status=ExecutionStatus.COMPLETED,
            results=[
                make_entry(0, InstructionOutcome.EXECUTED),
                make_entry(1, InstructionOutcome.CONTROL),
                make_entry(2, InstructionOutcome.SKIPPED),
                make_entry(3, InstructionOutcome.FAILED),
                make_entry(4, InstructionOutcome.EXECUTED),
            ],
        )
        assert result.executed_count == 2
        assert result.skipped_count == 1
        assert result.failed_count == 1

    def test_success_requires_completion_without_fatal_error(self):
        assert ExecutionResult(status=ExecutionStatus.COMPLETED).success
        assert not ExecutionResult(status=ExecutionStatus.COMPLETED, fatal_error="down").success
        assert not ExecutionResult(status=ExecutionStatus.CANCELLED).success
        assert not ExecutionResult(status=ExecutionStatus.RUNNING).success

    def test_failed_instructions_do_not_fail_the_run(self):
        result = ExecutionResult(status=ExecutionStatus.COMPLETED, results=[make_entry(0, InstructionOutcome.FAILED)])
        assert result.success

    def test_duration(self):
        started = datetime(2024, 1, 1, 12, 0, 0)
        result = ExecutionResult(started_at=started, finished_at=started + timedelta(seconds=2.5))
        assert result.duration == 2.5

    def test_summary_mentions_abort(self):
        result = ExecutionResult(status=ExecutionStatus.COMPLETED, fatal_error="backend down")
        assert "aborted: backend down" in result.summary

    def test_to_dict(self, temp_dir):
        image = GeneratedImage(
            image=Image.new("RGB", (8, 4)),
            prompt="a cat",
            negative_prompt="",
            config={"steps": 8},
            instruction_index=3,
            file_path=temp_dir / "a.png",
        )
        result = ExecutionResult(
            status=ExecutionStatus.COMPLETED,
            results=[make_entry(0, InstructionOutcome.EXECUTED, "Prompt set")],
            images=[image],
            finished_at=datetime.now(),
        )
        data = result.to_dict()
        assert data["status"] == "completed"
        assert data["success"] is True
        assert data["results"][0]["outcome"] == "executed"
        assert data["results"][0]["message"] == "Prompt set"
        assert data["images"][0]["width"] == 8
        assert data["images"][0]["file_path"] == str(temp_dir / "a.png")
        assert result.saved_files == [temp_dir / "a.png"]


class TestInstructionResult:
    def test_flags(self):
        assert make_entry(0, InstructionOutcome.EXECUTED).success
        assert make_entry(0, InstructionOutcome.CONTROL).success
        assert not make_entry(0, InstructionOutcome.FAILED).success
        assert make_entry(0, InstructionOutcome.SKIPPED).skipped


class TestExecutionLog:
    def test_records_completed_instructions(self):
        log = ExecutionLog()
        log.instruction_completed(make_entry(0, InstructionOutcome.FAILED, "File not found: a.png"))
        assert len(log.entries) == 1
        assert log.lines()[0].endswith("#0 Prompt: failed - File not found: a.png")

    def test_progress_and_clear(self):
        log = ExecutionLog()
        log.generation_progress(2, GenerationProgress(ProgressStage.SAMPLING, step=5, total_steps=10))
        assert log.progress == {2: 0.5}
        log.run_completed(ExecutionResult())
        log.clear()
        assert log.entries == []
        assert log.progress == {}
        assert log.result is None

    def test_log_entry_without_message(self):
        entry = LogEntry(datetime(2024, 1, 1, 9, 5, 7), 4, "Loop", "repeat", InstructionOutcome.CONTROL)
        assert entry.format() == "[09:05:07] #4 Loop: control"


class TestListenerGroup:
    def test_fans_out(self):
        seen = []

        class Recorder(ExecutionListener):
            def __init__(self, name):
                self.name = name

            def run_completed(self, result):
                seen.append(self.name)

        group = ListenerGroup([Recorder("a")])
        group.add(Recorder("b"))
        group.run_completed(ExecutionResult())
        assert seen == ["a", "b"]

    def test_isolates_failures(self):
        seen = []

        class Broken(ExecutionListener):
            def run_completed(self, result):
                raise ValueError("boom")

        class Recorder(ExecutionListener):
            def run_completed(self, result):
                seen.append(result)

        group = ListenerGroup([Broken(), Recorder()])
        group.run_completed(ExecutionResult())
        assert len(seen) == 1


class TestGenerationProgress:
    def test_fraction(self):
        assert GenerationProgress(ProgressStage.STARTING).fraction == 0.0
        assert GenerationProgress(ProgressStage.SAMPLING, step=3, total_steps=4).fraction == 0.75
        assert GenerationProgress(ProgressStage.COMPLETE).fraction == 1.0

    def test_description(self):
        assert GenerationProgress(ProgressStage.SAMPLING, step=3, total_steps=4).description == "Sampling 3/4"
        assert GenerationProgress(ProgressStage.FAILED, message="oops").description == "Failed: oops"
