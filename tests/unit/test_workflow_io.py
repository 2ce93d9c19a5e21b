"""Tests for storyflow.core.workflow_io — JSON export and import."""

from __future__ import annotations

import json

import pytest

from storyflow.core import instructions as ins
from storyflow.core.generation import GenerationSettings
from storyflow.core.workflow_io import dumps, export_to_file, instruction_counts, load_from_file, loads

WORKFLOW = [
    ins.Note("three cats"),
    ins.Prompt("a cat"),
    ins.Config(GenerationSettings(steps=20, seed=7)),
    ins.Loop(count=3),
    ins.LoopSave("v_"),
    ins.LoopEnd(),
]


class TestDumps:
    def test_wire_form(self):
        payload = json.loads(dumps(WORKFLOW))
        assert payload[0] == {"note": "three cats"}
        assert payload[2] == {"config": {"steps": 20, "seed": 7}}
        assert payload[3] == {"loop": {"loop": 3, "start": 0}}
        assert payload[5] == {"loopEnd": True}

    def test_pretty_printed_with_sorted_keys(self):
        text = dumps([ins.Config(GenerationSettings(steps=20, seed=7))])
        assert "\n" in text
        assert text.index('"seed"') < text.index('"steps"')

    def test_compact(self):
        assert dumps([ins.Prompt("x"), ins.Generate()], compact=True) == '[{"prompt":"x"},{"generate":true}]'


class TestLoads:
    def test_round_trip(self):
        assert loads(dumps(WORKFLOW)) == WORKFLOW

    def test_invalid_json(self):
        with pytest.raises(ins.InstructionDecodeError, match="Invalid JSON"):
            loads("[{")

    def test_not_an_array(self):
        with pytest.raises(ins.InstructionDecodeError, match="array"):
            loads('{"prompt": "x"}')

    def test_bad_entry(self):
        with pytest.raises(ins.InstructionDecodeError, match="Instruction 1"):
            loads('[{"prompt": "x"}, {"warp": 9}]')


class TestFiles:
    def test_export_and_load(self, temp_dir):
        path = export_to_file(WORKFLOW, temp_dir / "flows" / "cats.json")
        assert path.is_file()
        assert load_from_file(path) == WORKFLOW

    def test_missing_file(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            load_from_file(temp_dir / "nope.json")


def test_instruction_counts():
    assert instruction_counts(WORKFLOW + [ins.Prompt("b")]) == {
        "note": 1,
        "prompt": 2,
        "config": 1,
        "loop": 1,
        "loopSave": 1,
        "loopEnd": 1,
    }
