"""Append outgoing provider requests to a text file for debugging."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_HEADER = "StoryFlow Request Log\n"


class RequestLogger:
    """Writes one block per request. Base64 image payloads are redacted."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text(_HEADER, encoding="utf-8")

    def log_http_request(self, endpoint: str, body: dict[str, Any]) -> None:
        loggable = dict(body)
        images = loggable.get("init_images")
        if isinstance(images, list):
            first = len(images[0]) if images else 0
            loggable["init_images"] = [f"<base64 png, {first} chars>"]
        if isinstance(loggable.get("mask"), str):
            loggable["mask"] = "<base64 mask>"

        entry = f"\n--- [{datetime.now():%Y-%m-%d %H:%M:%S}] HTTP -> {endpoint} ---\n"
        entry += json.dumps(loggable, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
        self._append(entry)

    def clear(self) -> None:
        self.path.write_text(_HEADER, encoding="utf-8")

    def _append(self, text: str) -> None:
        logger.debug(text)
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(text)
        except OSError as e:
            logger.warning("Could not write request log %s: %s", self.path, e)
