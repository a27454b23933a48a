"""Client for the prediction API that renders illustrations.

A job is created once and then polled at a fixed interval until it
succeeds, fails, is canceled, or the attempt budget runs out.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from illustrated_book.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

PENDING_STATUSES = {"starting", "processing"}


class ImageGenerationError(RuntimeError):
    pass


class ImageGenerationFailed(ImageGenerationError):
    """The provider ended the job without an image; ``message`` is its own text."""

    def __init__(self, status: str, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


class ImageGenerationTimeout(ImageGenerationError):
    pass


@dataclass
class GenerationParams:
    width: int = 1024
    height: int = 1024
    num_inference_steps: int = 20
    guidance_scale: float = 7.5
    negative_prompt: str = "blurry, low quality, distorted, deformed"

    @classmethod
    def from_settings(cls, cfg: Settings) -> "GenerationParams":
        return cls(
            width=cfg.IMAGE_WIDTH,
            height=cfg.IMAGE_HEIGHT,
            num_inference_steps=cfg.IMAGE_STEPS,
            guidance_scale=cfg.IMAGE_GUIDANCE_SCALE,
            negative_prompt=cfg.IMAGE_NEGATIVE_PROMPT,
        )


@dataclass
class GeneratedImage:
    url: str
    prediction_id: str
    model: str
    model_version: str
    params: GenerationParams = field(default_factory=GenerationParams)


def _first_output(output: Any) -> Optional[str]:
    if isinstance(output, str):
        return output or None
    if isinstance(output, list) and output and isinstance(output[0], str):
        return output[0] or None
    return None


class ImageClient:
    def __init__(self, settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or default_settings
        self.transport = transport

    @property
    def model(self) -> str:
        return self.settings.REPLICATE_MODEL

    @property
    def model_version(self) -> str:
        return self.settings.REPLICATE_VERSION

    def _client(self) -> httpx.AsyncClient:
        token = self.settings.REPLICATE_API_TOKEN
        if not token:
            raise ImageGenerationError("REPLICATE_API_TOKEN is not configured")
        return httpx.AsyncClient(
            base_url=self.settings.REPLICATE_BASE_URL.rstrip("/"),
            headers={"Authorization": f"Token {token}"},
            timeout=self.settings.HTTP_TIMEOUT,
            transport=self.transport,
        )

    async def generate(self, prompt: str, params: Optional[GenerationParams] = None) -> GeneratedImage:
        if not prompt or not prompt.strip():
            raise ValueError("Prompt cannot be empty")
        params = params or GenerationParams.from_settings(self.settings)

        async with self._client() as client:
            prediction_id = await self._create(client, prompt, params)
            logger.info("Created prediction %s", prediction_id)
            url = await self._poll(client, prediction_id)

        return GeneratedImage(url=url, prediction_id=prediction_id, model=self.model,
                              model_version=self.model_version, params=params)

    async def _create(self, client: httpx.AsyncClient, prompt: str, params: GenerationParams) -> str:
        payload = {
            "version": self.model_version,
            "input": {
                "prompt": prompt,
                "width": params.width,
                "height": params.height,
                "num_inference_steps": params.num_inference_steps,
                "guidance_scale": params.guidance_scale,
                "negative_prompt": params.negative_prompt,
            },
        }
        data = await self._request(client, "POST", "/predictions", json=payload)
        prediction_id = data.get("id")
        if not prediction_id:
            raise ImageGenerationError("No prediction id in create response")
        return str(prediction_id)

    async def _poll(self, client: httpx.AsyncClient, prediction_id: str) -> str:
        attempts = self.settings.IMAGE_POLL_ATTEMPTS
        for attempt in range(attempts):
            if attempt > 0:
                await asyncio.sleep(self.settings.IMAGE_POLL_INTERVAL)

            data = await self._request(client, "GET", f"/predictions/{prediction_id}")
            status = data.get("status")

            if status == "succeeded":
                url = _first_output(data.get("output"))
                if not url:
                    raise ImageGenerationFailed(status, "No image URL found in successful prediction")
                logger.info("Prediction %s succeeded after %d polls", prediction_id, attempt + 1)
                return url
            if status == "failed":
                raise ImageGenerationFailed(status, str(data.get("error") or "Image generation failed"))
            if status == "canceled":
                raise ImageGenerationFailed(status, "Image generation was canceled")
            if status in PENDING_STATUSES:
                continue
            raise ImageGenerationFailed(str(status), f"Unknown prediction status: {status}")

        raise ImageGenerationTimeout(
            f"Prediction {prediction_id} did not finish after {attempts} attempts"
        )

    async def _request(self, client: httpx.AsyncClient, method: str, path: str, **kw) -> dict:
        try:
            r = await client.request(method, path, **kw)
        except httpx.TransportError as e:
            raise ImageGenerationError(f"Prediction request failed: {e}") from e
        if r.status_code >= 400:
            raise ImageGenerationError(f"Prediction API returned {r.status_code}: {r.text[:300]}")
        try:
            data = r.json()
        except ValueError as e:
            raise ImageGenerationError("Prediction API returned non-JSON body") from e
        if not isinstance(data, dict):
            raise ImageGenerationError("Prediction API returned an unexpected body")
        return data

    async def check(self) -> bool:
        try:
            return bool(await self.generate("A simple red circle on white background"))
        except (ImageGenerationError, ValueError):
            logger.exception("Image service check failed")
            return False


async def generate_image(prompt: str, *, settings: Optional[Settings] = None,
                         transport: Optional[httpx.AsyncBaseTransport] = None) -> str:
    """Render ``prompt`` and return the provider's URL for the first output."""
    result = await ImageClient(settings=settings, transport=transport).generate(prompt)
    return result.url
