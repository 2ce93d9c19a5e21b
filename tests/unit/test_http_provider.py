"""Tests for storyflow.providers.http — the Draw Things HTTP provider.

Requests are served by ``httpx.MockTransport`` so no server is needed.

Tests cover:
- Connection checks and endpoint selection (txt2img vs img2img).
- Request bodies (source image, mask, strength) and Bearer auth.
- Mapping of HTTP and transport failures onto provider errors.
- Response decoding (images list, single image, data URIs).
- Model and LoRA catalogs in the response shapes seen in the wild.
- Request logging and registry lookup.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable

import httpx
import pytest
from PIL import Image

from storyflow.core.config import StoryflowConfig
from storyflow.core.generation import GenerationConfig
from storyflow.providers import (
    ConnectionFailedError,
    DrawThingsHTTPProvider,
    ImageDecodingError,
    InvalidResponseError,
    ProgressStage,
    ProviderTimeoutError,
    RequestFailedError,
    RequestLogger,
    provider_registry,
)
from storyflow.providers.http import image_from_base64, image_to_base64


def png_b64(size=(8, 8), color=(255, 0, 0)) -> str:
    return image_to_base64(Image.new("RGB", size, color))


class Recorder:
    """Mock transport handler that records requests and replays a response."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


def call(provider: DrawThingsHTTPProvider, method: str, *args, **kwargs):
    """Run one provider coroutine and close its mock client afterwards."""

    async def _run():
        try:
            return await getattr(provider, method)(*args, **kwargs)
        finally:
            await provider.client.aclose()

    return asyncio.run(_run())


@pytest.fixture
def make_provider(test_config: StoryflowConfig):
    def _make(respond, config: StoryflowConfig | None = None, **kwargs):
        cfg = config or test_config
        recorder = Recorder(respond)
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder), base_url=cfg.provider_base_url)
        return DrawThingsHTTPProvider(cfg, client=client, **kwargs), recorder

    return _make


def images_response(count: int = 1) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(200, json={"images": [png_b64() for _ in range(count)]})


# ---------------------------------------------------------------------------
# Connection.
# ---------------------------------------------------------------------------


class TestCheckConnection:
    def test_ok(self, make_provider):
        provider, recorder = make_provider(lambda r: httpx.Response(200, json={}))
        assert call(provider, "check_connection") is True
        assert recorder.requests[0].url.path == "/sdapi/v1/options"

    def test_bad_status(self, make_provider):
        provider, _ = make_provider(lambda r: httpx.Response(503))
        assert call(provider, "check_connection") is False

    def test_unreachable(self, make_provider):
        def refuse(request):
            raise httpx.ConnectError("connection refused")

        provider, _ = make_provider(refuse)
        assert call(provider, "check_connection") is False


# ---------------------------------------------------------------------------
# Generation.
# ---------------------------------------------------------------------------


class TestGenerateImage:
    def test_text_to_image(self, make_provider):
        provider, recorder = make_provider(images_response())
        images = call(provider, "generate_image", "a cat", GenerationConfig(width=512, steps=12))
        assert len(images) == 1
        assert images[0].size == (8, 8)
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/sdapi/v1/txt2img"
        body = recorder.last_json
        assert body["prompt"] == "a cat"
        assert body["width"] == 512
        assert body["steps"] == 12
        assert "init_images" not in body
        assert "mask" not in body

    def test_image_to_image_with_mask(self, make_provider):
        provider, recorder = make_provider(images_response())
        source = Image.new("RGB", (16, 16))
        mask = Image.new("L", (16, 16), 255)
        call(
            provider,
            "generate_image",
            "a cat",
            GenerationConfig(strength=0.6),
            source_image=source,
            mask=mask,
        )
        assert recorder.requests[0].url.path == "/sdapi/v1/img2img"
        body = recorder.last_json
        assert len(body["init_images"]) == 1
        assert image_from_base64(body["init_images"][0]).size == (16, 16)
        assert body["denoising_strength"] == 0.6
        assert isinstance(body["mask"], str)

    def test_multiple_images(self, make_provider):
        provider, _ = make_provider(images_response(3))
        assert len(call(provider, "generate_image", "x", GenerationConfig())) == 3

    def test_single_image_field(self, make_provider):
        provider, _ = make_provider(lambda r: httpx.Response(200, json={"image": png_b64()}))
        assert len(call(provider, "generate_image", "x", GenerationConfig())) == 1

    def test_moodboard_ignored(self, make_provider):
        provider, recorder = make_provider(images_response())
        call(provider, "generate_image", "x", GenerationConfig(), moodboard=[(Image.new("RGB", (4, 4)), 1.0)])
        assert recorder.requests[0].url.path == "/sdapi/v1/txt2img"

    def test_progress_stages(self, make_provider):
        provider, _ = make_provider(images_response())
        stages = []
        call(provider, "generate_image", "x", GenerationConfig(), on_progress=lambda p: stages.append(p.stage))
        assert stages == [
            ProgressStage.STARTING,
            ProgressStage.SAMPLING,
            ProgressStage.DECODING,
            ProgressStage.COMPLETE,
        ]

    def test_bearer_auth(self, make_provider, temp_dir):
        config = StoryflowConfig(_env_file=None, working_dir=temp_dir, shared_secret="s3cret")
        provider, recorder = make_provider(images_response(), config=config)
        call(provider, "generate_image", "x", GenerationConfig())
        assert recorder.requests[0].headers["Authorization"] == "Bearer s3cret"

    def test_no_auth_header_without_secret(self, make_provider):
        provider, recorder = make_provider(images_response())
        call(provider, "generate_image", "x", GenerationConfig())
        assert "Authorization" not in recorder.requests[0].headers


class TestGenerateErrors:
    def test_server_error_is_not_fatal(self, make_provider):
        provider, _ = make_provider(lambda r: httpx.Response(500, text="out of memory"))
        with pytest.raises(RequestFailedError) as exc_info:
            call(provider, "generate_image", "x", GenerationConfig())
        assert exc_info.value.status_code == 500
        assert not exc_info.value.fatal
        assert "out of memory" in str(exc_info.value)

    def test_auth_rejection_is_fatal(self, make_provider):
        provider, _ = make_provider(lambda r: httpx.Response(401, text="unauthorized"))
        with pytest.raises(RequestFailedError) as exc_info:
            call(provider, "generate_image", "x", GenerationConfig())
        assert exc_info.value.fatal

    def test_connection_refused_is_fatal(self, make_provider):
        def refuse(request):
            raise httpx.ConnectError("connection refused")

        provider, _ = make_provider(refuse)
        with pytest.raises(ConnectionFailedError) as exc_info:
            call(provider, "generate_image", "x", GenerationConfig())
        assert exc_info.value.fatal

    def test_read_timeout(self, make_provider):
        def stall(request):
            raise httpx.ReadTimeout("timed out")

        provider, _ = make_provider(stall)
        with pytest.raises(ProviderTimeoutError) as exc_info:
            call(provider, "generate_image", "x", GenerationConfig())
        assert not exc_info.value.fatal

    def test_not_json(self, make_provider):
        provider, _ = make_provider(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(InvalidResponseError):
            call(provider, "generate_image", "x", GenerationConfig())

    def test_missing_images(self, make_provider):
        provider, _ = make_provider(lambda r: httpx.Response(200, json={"info": "done"}))
        with pytest.raises(InvalidResponseError):
            call(provider, "generate_image", "x", GenerationConfig())

    def test_undecodable_images(self, make_provider):
        provider, _ = make_provider(lambda r: httpx.Response(200, json={"images": ["not base64!"]}))
        with pytest.raises(ImageDecodingError):
            call(provider, "generate_image", "x", GenerationConfig())


class TestBase64:
    def test_data_uri_prefix_stripped(self):
        image = image_from_base64("data:image/png;base64," + png_b64(size=(3, 2)))
        assert image.size == (3, 2)

    def test_garbage(self):
        with pytest.raises(ImageDecodingError):
            image_from_base64("aGVsbG8=")


# ---------------------------------------------------------------------------
# Catalogs.
# ---------------------------------------------------------------------------


class TestCatalogs:
    def test_models_webui_format(self, make_provider):
        payload = [{"title": "SDXL Base", "model_name": "sdxl_base.ckpt"}, "flux.ckpt"]
        provider, recorder = make_provider(lambda r: httpx.Response(200, json=payload))
        models = call(provider, "fetch_models")
        assert recorder.requests[0].url.path == "/sdapi/v1/sd-models"
        assert [m.filename for m in models] == ["sdxl_base.ckpt", "flux.ckpt"]
        assert models[0].display_name == "SDXL Base"
        assert models[1].display_name == "flux.ckpt"

    def test_models_wrapped_list(self, make_provider):
        provider, _ = make_provider(lambda r: httpx.Response(200, json={"models": ["a.ckpt", "b.ckpt"]}))
        assert [m.filename for m in call(provider, "fetch_models")] == ["a.ckpt", "b.ckpt"]

    def test_loras(self, make_provider):
        payload = [{"name": "Detail", "path": "detail.safetensors"}, {"alias": "style"}]
        provider, _ = make_provider(lambda r: httpx.Response(200, json=payload))
        loras = call(provider, "fetch_loras")
        assert [lora.filename for lora in loras] == ["detail.safetensors", "style"]

    def test_catalog_error(self, make_provider):
        provider, _ = make_provider(lambda r: httpx.Response(404, text="not found"))
        with pytest.raises(RequestFailedError):
            call(provider, "fetch_loras")


# ---------------------------------------------------------------------------
# Request log and registry.
# ---------------------------------------------------------------------------


class TestRequestLogging:
    def test_generation_request_logged(self, make_provider, temp_dir):
        log_path = temp_dir / "logs" / "requests.txt"
        provider, _ = make_provider(images_response(), request_logger=RequestLogger(log_path))
        call(provider, "generate_image", "a cat", GenerationConfig(), source_image=Image.new("RGB", (4, 4)))
        text = log_path.read_text()
        assert text.startswith("StoryFlow Request Log")
        assert "HTTP -> /sdapi/v1/img2img" in text
        assert '"prompt": "a cat"' in text
        assert "<base64 png" in text

    def test_logger_created_from_config(self, temp_dir):
        log_path = temp_dir / "logs" / "auto.txt"
        config = StoryflowConfig(
            _env_file=None, working_dir=temp_dir, request_log_enabled=True, request_log_path=log_path
        )
        provider = DrawThingsHTTPProvider(config)
        assert provider.request_logger is not None
        assert provider.request_logger.path == log_path

    def test_clear(self, temp_dir):
        logger = RequestLogger(temp_dir / "log.txt")
        logger.log_http_request("/sdapi/v1/txt2img", {"prompt": "x", "mask": "abc"})
        assert "<base64 mask>" in logger.path.read_text()
        logger.clear()
        assert logger.path.read_text() == "StoryFlow Request Log\n"


class TestRegistry:
    def test_http_registered(self, test_config):
        provider = provider_registry.instantiate("http", test_config)
        assert isinstance(provider, DrawThingsHTTPProvider)
        assert "http" in provider_registry.list_available()

    def test_unknown_provider(self, test_config):
        with pytest.raises(KeyError, match="grpc"):
            provider_registry.instantiate("grpc", test_config)

    def test_provider_info(self, test_config):
        info = DrawThingsHTTPProvider(test_config).get_provider_info()
        assert info["name"] == "http"
        assert info["base_url"] == test_config.provider_base_url
        assert info["authenticated"] is False
