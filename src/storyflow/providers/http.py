"""Draw Things HTTP provider.

Talks to the A1111-compatible HTTP API exposed by Draw Things:

========  =========================  ==================================
Method    Path                       Purpose
========  =========================  ==================================
GET       ``/sdapi/v1/options``      Liveness check
POST      ``/sdapi/v1/txt2img``      Text-to-image
POST      ``/sdapi/v1/img2img``      Image-to-image and inpainting
GET       ``/sdapi/v1/sd-models``    Model catalog
GET       ``/sdapi/v1/loras``        LoRA catalog
========  =========================  ==================================

Images travel as base64-encoded PNG.  When ``shared_secret`` is set every
request carries an ``Authorization: Bearer`` header.  The HTTP API has no
moodboard input, so moodboard images are not sent.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Sequence
from io import BytesIO
from typing import Any

import httpx
from PIL import Image

from storyflow.core.config import StoryflowConfig
from storyflow.core.generation import GenerationConfig
from storyflow.providers.base import (
    ConnectionFailedError,
    GenerationProgress,
    GenerationProvider,
    ImageDecodingError,
    InvalidResponseError,
    LoRAInfo,
    ModelInfo,
    ProgressCallback,
    ProgressStage,
    ProviderTimeoutError,
    RequestFailedError,
    provider_registry,
)
from storyflow.providers.request_log import RequestLogger

logger = logging.getLogger(__name__)

_DATA_URI_PREFIX = re.compile(r"^data:image/[^;]+;base64,")
_CATALOG_TIMEOUT = 10.0


def image_to_base64(image: Image.Image) -> str:
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def image_from_base64(data: str) -> Image.Image:
    """Decode a base64 (optionally data-URI prefixed) image.

    Raises:
        ImageDecodingError: If the payload is not a decodable image.
    """
    try:
        raw = base64.b64decode(_DATA_URI_PREFIX.sub("", data), validate=True)
        image = Image.open(BytesIO(raw))
        image.load()
    except (binascii.Error, ValueError, OSError) as e:
        raise ImageDecodingError(f"Could not decode image: {e}") from e
    return image


class DrawThingsHTTPProvider(GenerationProvider):
    """Generation provider backed by the Draw Things HTTP API."""

    name = "http"
    description = "Draw Things HTTP API (A1111-compatible)"

    def __init__(
        self,
        config: StoryflowConfig,
        client: httpx.AsyncClient | None = None,
        request_logger: RequestLogger | None = None,
    ):
        super().__init__(config)
        self._client = client
        self._owns_client = client is None
        if request_logger is None and config.request_log_enabled:
            request_logger = RequestLogger(config.request_log_path)
        self.request_logger = request_logger

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.provider_base_url,
                timeout=httpx.Timeout(self.config.request_timeout, connect=self.config.connection_timeout),
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        if self.config.shared_secret:
            return {"Authorization": f"Bearer {self.config.shared_secret}"}
        return {}

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def check_connection(self) -> bool:
        try:
            response = await self.client.get(
                "/sdapi/v1/options",
                headers=self._headers(),
                timeout=self.config.connection_timeout,
            )
        except httpx.HTTPError as e:
            logger.error("Failed to connect to Draw Things at %s: %s", self.config.provider_base_url, e)
            return False

        if response.status_code == 200:
            logger.info("Connected to Draw Things HTTP API at %s", self.config.provider_base_url)
            return True
        logger.warning("Draw Things connection check returned status %d", response.status_code)
        return False

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_image(
        self,
        prompt: str,
        config: GenerationConfig,
        *,
        source_image: Image.Image | None = None,
        mask: Image.Image | None = None,
        moodboard: Sequence[tuple[Image.Image, float]] = (),
        on_progress: ProgressCallback | None = None,
    ) -> list[Image.Image]:
        def report(progress: GenerationProgress) -> None:
            if on_progress is not None:
                on_progress(progress)

        report(GenerationProgress(ProgressStage.STARTING))

        is_img2img = source_image is not None
        endpoint = "/sdapi/v1/img2img" if is_img2img else "/sdapi/v1/txt2img"
        body = config.to_request_body(prompt)

        if source_image is not None:
            body["init_images"] = [image_to_base64(source_image)]
            # A1111-compatible API reads denoising_strength for img2img
            body["denoising_strength"] = config.strength
            logger.debug("Using img2img with source image, strength=%s", config.strength)
        if mask is not None:
            body["mask"] = image_to_base64(mask)
            logger.debug("Using mask for inpainting")
        if moodboard:
            logger.debug("HTTP API has no moodboard input; ignoring %d reference image(s)", len(moodboard))

        if self.request_logger is not None:
            self.request_logger.log_http_request(endpoint, body)

        logger.debug("Sending %s request: prompt=%s", endpoint, prompt[:50])
        report(GenerationProgress(ProgressStage.SAMPLING, step=0, total_steps=config.steps))

        response = await self._send("POST", endpoint, json=body, timeout=self.config.request_timeout)
        if response.status_code != 200:
            logger.error("Generation failed with status %d: %s", response.status_code, response.text[:200])
            raise RequestFailedError(response.status_code, response.text)

        report(GenerationProgress(ProgressStage.DECODING))
        images = self._decode_images(response)
        report(GenerationProgress(ProgressStage.COMPLETE))

        logger.info("Generated %d image(s) via %s", len(images), "img2img" if is_img2img else "txt2img")
        return images

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request, translating transport errors into provider errors."""
        try:
            return await self.client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.ConnectTimeout as e:
            raise ConnectionFailedError(f"Timed out connecting to {self.config.provider_base_url}") from e
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Request to {path} timed out") from e
        except httpx.TransportError as e:
            raise ConnectionFailedError(f"Could not reach {self.config.provider_base_url}: {e}") from e

    def _decode_images(self, response: httpx.Response) -> list[Image.Image]:
        try:
            payload = response.json()
        except ValueError as e:
            raise InvalidResponseError("Response is not valid JSON") from e
        if not isinstance(payload, dict):
            raise InvalidResponseError("Response is not a JSON object")

        encoded = payload.get("images")
        if not isinstance(encoded, list):
            # Some Draw Things versions return a single image
            single = payload.get("image")
            if isinstance(single, str):
                return [image_from_base64(single)]
            raise InvalidResponseError("Response has no 'images' field")

        images = []
        for item in encoded:
            if not isinstance(item, str):
                logger.warning("Skipping non-string image entry in response")
                continue
            try:
                images.append(image_from_base64(item))
            except ImageDecodingError as e:
                logger.warning("Failed to decode one image from response: %s", e)
        if not images:
            raise ImageDecodingError("Response contained no decodable images")
        return images

    # ------------------------------------------------------------------
    # Catalogs
    # ------------------------------------------------------------------

    async def _get_catalog(self, path: str) -> Any:
        response = await self._send("GET", path, timeout=_CATALOG_TIMEOUT)
        if response.status_code != 200:
            logger.error("Failed to fetch %s: %d - %s", path, response.status_code, response.text[:200])
            raise RequestFailedError(response.status_code, response.text)
        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponseError(f"{path} did not return JSON") from e

    async def fetch_models(self) -> list[ModelInfo]:
        payload = await self._get_catalog("/sdapi/v1/sd-models")
        models: list[ModelInfo] = []

        if isinstance(payload, list):
            for entry in payload:
                if isinstance(entry, str):
                    models.append(ModelInfo(filename=entry))
                elif isinstance(entry, dict):
                    # SD WebUI format: {"title": ..., "model_name": ..., "filename": ...}
                    if isinstance(entry.get("title"), str):
                        models.append(ModelInfo(filename=entry.get("model_name") or entry["title"], name=entry["title"]))
                    elif isinstance(entry.get("model_name"), str):
                        models.append(ModelInfo(filename=entry["model_name"]))
                    elif isinstance(entry.get("name"), str):
                        models.append(ModelInfo(filename=entry.get("filename") or entry["name"], name=entry["name"]))
        elif isinstance(payload, dict):
            if isinstance(payload.get("models"), list):
                models = [ModelInfo(filename=name) for name in payload["models"] if isinstance(name, str)]
            elif isinstance(payload.get("data"), list):
                models = [
                    ModelInfo(filename=entry["name"])
                    for entry in payload["data"]
                    if isinstance(entry, dict) and isinstance(entry.get("name"), str)
                ]

        logger.info("Fetched %d models from Draw Things", len(models))
        return models

    async def fetch_loras(self) -> list[LoRAInfo]:
        payload = await self._get_catalog("/sdapi/v1/loras")
        loras: list[LoRAInfo] = []

        if isinstance(payload, list):
            for entry in payload:
                if isinstance(entry, str):
                    loras.append(LoRAInfo(filename=entry))
                elif isinstance(entry, dict):
                    if isinstance(entry.get("name"), str):
                        loras.append(LoRAInfo(filename=entry.get("path") or entry["name"], name=entry["name"]))
                    elif isinstance(entry.get("alias"), str):
                        loras.append(LoRAInfo(filename=entry["alias"]))
        elif isinstance(payload, dict):
            if isinstance(payload.get("loras"), list):
                loras = [LoRAInfo(filename=name) for name in payload["loras"] if isinstance(name, str)]
            elif isinstance(payload.get("data"), list):
                loras = [
                    LoRAInfo(filename=entry["name"])
                    for entry in payload["data"]
                    if isinstance(entry, dict) and isinstance(entry.get("name"), str)
                ]

        logger.info("Fetched %d LoRAs from Draw Things", len(loras))
        return loras

    def get_provider_info(self) -> dict[str, Any]:
        info = super().get_provider_info()
        info["base_url"] = self.config.provider_base_url
        info["authenticated"] = bool(self.config.shared_secret)
        return info


# Register the provider
provider_registry.register(DrawThingsHTTPProvider)
