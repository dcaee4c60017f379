"""Image generation provider boundary.

The provider is opaque to the engine: it is only called after a successful debit, and
its outcome decides whether the request completes or fails (and is refunded).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol
import logging

import httpx

from config import require_image_provider_url, settings

logger = logging.getLogger(__name__)


class ImageGenerationError(Exception):
    """Provider-side failure; the request will be marked failed and refunded."""


@dataclass
class GeneratedImage:
    image_url: str
    text: Optional[str] = None


class ImageGenerator(Protocol):
    async def generate(self, *, image_data: str, image_type: str, prompt: str, style: str) -> GeneratedImage:
        ...


class HttpImageGenerator:
    """Calls a JSON image-generation endpoint configured through IMAGE_PROVIDER_URL."""

    def __init__(self, url: Optional[str] = None, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.url = url
        self.api_key = api_key if api_key is not None else settings.IMAGE_PROVIDER_API_KEY
        self.timeout = float(timeout or settings.IMAGE_PROVIDER_TIMEOUT_SECONDS)

    async def generate(self, *, image_data: str, image_type: str, prompt: str, style: str) -> GeneratedImage:
        try:
            url = self.url or require_image_provider_url()
        except ValueError as exc:
            raise ImageGenerationError(str(exc)) from exc

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"image": {"data": image_data, "mime_type": image_type}, "prompt": prompt, "style": style}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("Image provider returned %s", exc.response.status_code)
            raise ImageGenerationError(f"Image provider error: {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Image provider call failed: %s", exc)
            raise ImageGenerationError(f"Image provider unreachable: {exc}") from exc

        image_url = str(body.get("image_url") or "").strip()
        if not image_url:
            raise ImageGenerationError("No image generated in response")
        return GeneratedImage(image_url=image_url, text=body.get("text"))


def get_image_generator() -> ImageGenerator:
    """FastAPI dependency; overridden in tests."""
    return HttpImageGenerator()
