"""Tests for storyflow.core.support — Full / Partial / Unsupported classification."""

from __future__ import annotations

from dataclasses import dataclass

from storyflow.core import instructions as ins
from storyflow.core.support import SUPPORT_TABLE, SupportLevel, analyze, classify, support_info


class TestSupportTable:
    """The table must cover the whole instruction set."""

    def test_every_variant_classified(self):
        missing = [key for key, cls in ins.INSTRUCTION_TYPES.items() if cls not in SUPPORT_TABLE]
        assert missing == []

    def test_only_xl_magic_unsupported(self):
        unsupported = {cls.key for cls, info in SUPPORT_TABLE.items() if info.level is SupportLevel.UNSUPPORTED}
        assert unsupported == {"xlMagic"}

    def test_provider_tools_are_partial(self):
        partial = {cls.key for cls, info in SUPPORT_TABLE.items() if info.level is SupportLevel.PARTIAL}
        assert partial == {
            "maskBkgd",
            "maskFG",
            "maskBody",
            "maskAsk",
            "depthExtract",
            "poseExtract",
            "removeBkgd",
            "faceZoom",
            "askZoom",
        }

    def test_every_entry_has_reason(self):
        assert all(info.reason for info in SUPPORT_TABLE.values())


class TestClassify:
    def test_instance_and_type_agree(self):
        assert classify(ins.Prompt("x")) is classify(ins.Prompt) is SupportLevel.FULL

    def test_unknown_type(self):
        """Types outside the table are unsupported."""

        @dataclass(frozen=True)
        class Custom(ins.Instruction):
            pass

        info = support_info(Custom())
        assert info.level is SupportLevel.UNSUPPORTED
        assert info.reason == "Unknown instruction"


class TestAnalyze:
    def test_counts(self):
        analysis = analyze([ins.Prompt("x"), ins.MaskBackground(), ins.XLMagic(), ins.CanvasSave("a.png")])
        assert analysis.full == 2
        assert analysis.partial == 1
        assert analysis.unsupported == 1
        assert analysis.total == 4
        assert analysis.has_generation_trigger
        assert not analysis.is_fully_supported

    def test_fully_supported_without_trigger(self):
        analysis = analyze([ins.Prompt("x"), ins.Note("n")])
        assert analysis.is_fully_supported
        assert not analysis.has_generation_trigger

    def test_empty(self):
        analysis = analyze([])
        assert analysis.total == 0
        assert analysis.is_fully_supported
