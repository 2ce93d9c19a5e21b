"""Tests for storyflow.plugins — the save plugin system."""

from __future__ import annotations

import json

import pytest
from PIL import Image

from storyflow.plugins import PluginBase, PluginRegistry, SaveMetadataPlugin, plugin_registry


@pytest.fixture
def params() -> dict:
    return {
        "prompt": "a cat",
        "negative_prompt": "blurry",
        "steps": 20,
        "instruction_index": 3,
        "iteration": 1,
    }


class TestPluginBase:
    def test_defaults(self, temp_dir):
        plugin = PluginBase()
        image = Image.new("RGB", (4, 4))
        assert plugin.enabled is True
        assert plugin.on_before_save(image, temp_dir / "a.png", {}) == (image, temp_dir / "a.png")

    def test_enabled_from_config(self):
        assert PluginBase(enabled=False).enabled is False


class TestPluginRegistry:
    def test_save_metadata_registered(self):
        assert "SaveMetadata" in plugin_registry.list_available()
        plugin = plugin_registry.instantiate("SaveMetadata", write_prompt=False)
        assert isinstance(plugin, SaveMetadataPlugin)
        assert plugin.write_prompt is False

    def test_unknown_plugin(self):
        with pytest.raises(KeyError, match="Available plugins"):
            PluginRegistry().instantiate("Missing")


class TestSaveMetadataPlugin:
    def test_writes_sidecars(self, temp_dir, params):
        image = Image.new("RGB", (32, 16))
        path = temp_dir / "v_1.png"
        image.save(path)
        SaveMetadataPlugin().on_after_save(image, path, params)

        assert (temp_dir / "v_1.txt").read_text() == "a cat"
        metadata = json.loads((temp_dir / "v_1.json").read_text())
        assert metadata["prompt"] == "a cat"
        assert metadata["negative_prompt"] == "blurry"
        assert metadata["width"] == 32
        assert metadata["height"] == 16
        assert metadata["steps"] == 20
        assert metadata["iteration"] == 1
        assert metadata["image_path"] == str(path)

    def test_prompt_file_optional(self, temp_dir, params):
        path = temp_dir / "out.png"
        SaveMetadataPlugin(write_prompt=False).on_after_save(Image.new("RGB", (4, 4)), path, params)
        assert not (temp_dir / "out.txt").exists()
        assert (temp_dir / "out.json").exists()

    def test_filename_prefix(self, temp_dir, params):
        path = temp_dir / "out.png"
        SaveMetadataPlugin(filename_prefix="meta").on_after_save(Image.new("RGB", (4, 4)), path, params)
        assert (temp_dir / "meta_out.json").exists()

    def test_folder_redirect(self, temp_dir, params):
        image = Image.new("RGB", (4, 4))
        _, new_path = SaveMetadataPlugin(folder_name="renders").on_before_save(image, temp_dir / "out.png", params)
        assert new_path == temp_dir / "renders" / "out.png"
        assert new_path.parent.is_dir()

    def test_no_redirect_by_default(self, temp_dir, params):
        image = Image.new("RGB", (4, 4))
        _, new_path = SaveMetadataPlugin().on_before_save(image, temp_dir / "out.png", params)
        assert new_path == temp_dir / "out.png"

    def test_disabled(self, temp_dir, params):
        path = temp_dir / "out.png"
        SaveMetadataPlugin(enabled=False).on_after_save(Image.new("RGB", (4, 4)), path, params)
        assert not (temp_dir / "out.json").exists()

    def test_write_failure_is_logged_not_raised(self, temp_dir, params):
        path = temp_dir / "missing_dir" / "out.png"
        SaveMetadataPlugin().on_after_save(Image.new("RGB", (4, 4)), path, params)
        assert not path.parent.exists()
