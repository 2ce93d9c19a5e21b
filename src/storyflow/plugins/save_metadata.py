"""Sidecar metadata for images persisted by a workflow run."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from PIL import Image

from storyflow.plugins.base import PluginBase, plugin_registry

logger = logging.getLogger(__name__)


class SaveMetadataPlugin(PluginBase):
    """
    Record how each saved image was produced.

    A ``canvasSave("out.png")`` or ``loopSave("v_")`` in iteration 0 leaves
    ``out.png``/``v_0.png`` on disk; this plugin adds ``<stem>.json`` with the
    prompt, the resolved generation config, the instruction index and the
    loop iteration, and ``<stem>.txt`` holding just the prompt.

    Configuration:
        folder_name: Move saved images into this subfolder (optional)
        filename_prefix: Prepended to sidecar stems as ``<prefix>_<stem>`` (optional)
        write_prompt: Write the ``.txt`` prompt file (default True)
    """

    name = "SaveMetadata"
    description = "Write prompt and generation parameters next to saved images"
    version = "0.3.0"

    def __init__(self, **config):
        super().__init__(**config)
        self.folder_name: str | None = config.get("folder_name")
        self.filename_prefix: str = config.get("filename_prefix", "")
        self.write_prompt: bool = config.get("write_prompt", True)

    def on_before_save(
        self, image: Image.Image, save_path: Path, params: dict[str, Any]
    ) -> tuple[Image.Image, Path]:
        if not (self.enabled and self.folder_name):
            return image, save_path

        target_dir = save_path.parent / self.folder_name
        target_dir.mkdir(parents=True, exist_ok=True)
        redirected = target_dir / save_path.name
        logger.debug("SaveMetadata redirect %s -> %s", save_path.name, redirected)
        return image, redirected

    def on_after_save(self, image: Image.Image, save_path: Path, params: dict[str, Any]) -> None:
        """Write the sidecars; an unwritable sidecar is logged and the run goes on."""
        if not self.enabled:
            return

        stem = self._sidecar_stem(save_path)
        try:
            if self.write_prompt:
                save_path.with_name(f"{stem}.txt").write_text(params.get("prompt", ""), encoding="utf-8")
            json_path = save_path.with_name(f"{stem}.json")
            json_path.write_text(
                json.dumps(self._build_metadata(image, save_path, params), indent=2, ensure_ascii=False, default=str),
                encoding="utf-8",
            )
        except OSError as e:
            logger.error("Could not write metadata for %s: %s", save_path, e)
            return

        logger.info("Wrote metadata for %s", save_path.name)

    def _sidecar_stem(self, save_path: Path) -> str:
        if self.filename_prefix:
            return f"{self.filename_prefix}_{save_path.stem}"
        return save_path.stem

    @staticmethod
    def _build_metadata(image: Image.Image, save_path: Path, params: dict[str, Any]) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "prompt": params.get("prompt", ""),
            "negative_prompt": params.get("negative_prompt", ""),
            "width": image.width,
            "height": image.height,
            "saved_at": datetime.now().isoformat(),
            "image_path": str(save_path),
        }
        # Run parameters (config, index, iteration) never override the image facts above.
        metadata.update({key: value for key, value in params.items() if key not in metadata})
        return metadata


plugin_registry.register(SaveMetadataPlugin)
