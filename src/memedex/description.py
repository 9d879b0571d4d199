"""
Vision model client for memedex.

Turns an image file into a short natural-language description by calling
an Ollama-compatible ``/api/generate`` endpoint with the raw image bytes.
"""

import asyncio
import base64
import logging
import time
from typing import Optional

import httpx

from .config import Settings
from .errors import ImageIOError, UpstreamUnavailableError
from .models.schemas import DescriptionHealth
from .storage import resolve_image_path

logger = logging.getLogger(__name__)

DESCRIBE_PROMPT = (
    "Describe this meme image briefly and concisely for search purposes. "
    "Focus on the visual content, any text visible, and the apparent humor "
    "or message. Keep it under 100 words."
)


class DescriptionError(UpstreamUnavailableError):
    """Vision model unreachable or returned an error."""


class ImageFileError(ImageIOError):
    """Image file missing or unreadable."""


class DescriptionClient:
    """Ollama vision model client."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize description client.

        Args:
            settings: Application settings
            transport: Optional httpx transport, used to stub the endpoint
        """
        assert settings is not None, "Settings object is required"

        self.settings = settings
        self.base_url = settings.ollama_url
        self.model = settings.ollama_model
        self.timeout = settings.description_timeout
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or self.timeout,
            transport=self._transport,
        )

    async def _read_image(self, file_path: str) -> bytes:
        path = resolve_image_path(file_path)
        if path is None:
            raise ImageFileError(f"Image not found: {file_path}")
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise ImageFileError(f"Image not readable: {file_path}: {e}") from e

    async def describe(self, file_path: str) -> str:
        """
        Generate a description of an image file.

        Args:
            file_path: Path of the image to describe

        Returns:
            Description text

        Raises:
            ImageFileError: If the file is missing or unreadable
            DescriptionError: If the model endpoint fails
        """
        start_time = time.time()
        image_data = await self._read_image(file_path)

        payload = {
            "model": self.model,
            "prompt": DESCRIBE_PROMPT,
            "images": [base64.b64encode(image_data).decode("ascii")],
            "stream": False,
        }

        try:
            async with self._client() as client:
                response = await client.post("/api/generate", json=payload)
        except httpx.RequestError as e:
            logger.error(f"Vision model request failed: {e}")
            raise DescriptionError(f"Vision model request failed: {e}") from e

        if response.is_error:
            logger.error(f"Vision model error: {response.status_code}")
            raise DescriptionError(f"Vision model error: {response.status_code}")

        try:
            content = response.json()["response"]
        except (ValueError, KeyError, TypeError) as e:
            raise DescriptionError(f"Malformed vision model response: {e}") from e

        if not isinstance(content, str) or not content.strip():
            raise DescriptionError("Vision model returned an empty description")

        processing_time = int((time.time() - start_time) * 1000)
        logger.debug(f"Described {file_path} in {processing_time}ms")
        return content.strip()

    async def health(self) -> DescriptionHealth:
        """Check that the endpoint is reachable and the model is installed."""
        try:
            async with self._client(timeout=10.0) as client:
                response = await client.get("/api/tags")
            if response.is_error:
                return DescriptionHealth(
                    available=False, model=self.model, error="Cannot connect"
                )
            models = response.json().get("models") or []
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            # AttributeError: body is valid JSON but not an object
            logger.warning(f"Vision model health check failed: {e}")
            return DescriptionHealth(
                available=False, model=self.model, error="Connection failed"
            )

        base_name = self.model.split(":")[0]
        has_model = any(
            isinstance(m, dict) and base_name in str(m.get("name", "")) for m in models
        )
        return DescriptionHealth(
            available=has_model,
            model=self.model,
            error=None if has_model else "Model not found",
        )
