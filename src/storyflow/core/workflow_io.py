"""JSON export and import of instruction lists.

The file format is the scripting protocol's wire form: a JSON array of
single-key objects, pretty-printed with sorted keys.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Sequence
from pathlib import Path

from storyflow.core.instructions import (
    Instruction,
    InstructionDecodeError,
    instructions_from_wire,
    instructions_to_wire,
)

logger = logging.getLogger(__name__)


def dumps(instructions: Sequence[Instruction], compact: bool = False) -> str:
    payload = instructions_to_wire(instructions)
    if compact:
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)


def loads(text: str) -> list[Instruction]:
    """Parse a JSON workflow.

    Raises:
        InstructionDecodeError: If the text is not JSON, not a list, or an
            entry cannot be decoded.
    """
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise InstructionDecodeError(f"Invalid JSON: {e}") from e
    if not isinstance(payload, list):
        raise InstructionDecodeError("Workflow JSON must be an array of instructions")
    return instructions_from_wire(payload)


def export_to_file(instructions: Sequence[Instruction], path: Path | str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(dumps(instructions))
    logger.info("Exported %d instructions to %s", len(instructions), path)
    return path


def load_from_file(path: Path | str) -> list[Instruction]:
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        instructions = loads(f.read())
    logger.info("Loaded %d instructions from %s", len(instructions), path)
    return instructions


def instruction_counts(instructions: Sequence[Instruction]) -> dict[str, int]:
    """Number of instructions per wire key."""
    return dict(Counter(instruction.key for instruction in instructions))
