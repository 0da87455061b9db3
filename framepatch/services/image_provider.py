"""
Image provider - generates edited region images from a text instruction.

Uses the OpenAI images API over httpx. The provider is an external
collaborator; only its failure modes are mapped into the error taxonomy.
"""

import base64
import logging
from typing import Optional

import httpx

from framepatch.config import Settings, get_settings
from framepatch.errors import (
    InvalidInput,
    ProviderAuthError,
    ProviderError,
    ProviderNoImage,
    ProviderRateLimited,
)

logger = logging.getLogger(__name__)


class ImageProviderService:
    """
    Client for the image generation endpoint.

    A custom httpx transport can be injected for testing.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.openai_api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.provider_timeout_seconds,
            transport=self._transport,
            follow_redirects=True,
        )

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        size: Optional[str] = None,
    ) -> bytes:
        """
        Generate one image for the prompt.

        Args:
            prompt: Edit instruction
            model: Image model (defaults to the configured model)
            size: Requested image size, e.g. "1024x1024"

        Returns:
            Raw image bytes (PNG)

        Raises:
            InvalidInput: Empty prompt
            ProviderAuthError: Missing or rejected API key
            ProviderRateLimited: Upstream returned 429
            ProviderNoImage: Upstream answered without an image
            ProviderError: Network failure or any other upstream error
        """
        if not self.settings.openai_api_key:
            raise ProviderAuthError("OPENAI_API_KEY is not configured")

        prompt = (prompt or "").strip()
        if not prompt:
            raise InvalidInput("Prompt is required for image generation", stage="generating")

        model = model or self.settings.default_image_model
        size = size or self.settings.default_image_size
        url = f"{self.settings.image_api_base_url.rstrip('/')}/images/generations"

        logger.info(f"Generating image with {model} ({size}): {prompt[:80]}")

        async with self._client() as client:
            try:
                response = await client.post(
                    url,
                    headers={
                        "Authorization": f"Bearer {self.settings.openai_api_key}",
                        "Content-Type": "application/json",
                    },
                    json={"model": model, "prompt": prompt, "size": size, "n": 1},
                )
            except httpx.HTTPError as e:
                raise ProviderError(f"Image provider request failed: {e}")

            if response.status_code >= 400:
                self._raise_for_status(response)

            try:
                payload = response.json()
            except ValueError:
                raise ProviderNoImage("Image provider returned a non-JSON response")

            data = (payload.get("data") if isinstance(payload, dict) else None) or []
            first = data[0] if data and isinstance(data[0], dict) else {}

            if first.get("b64_json"):
                try:
                    return base64.b64decode(first["b64_json"])
                except (ValueError, TypeError) as e:
                    raise ProviderNoImage(f"Image provider returned invalid base64: {e}")

            if first.get("url"):
                return await self._fetch_image(client, first["url"])

        raise ProviderNoImage("Image provider returned no image")

    async def _fetch_image(self, client: httpx.AsyncClient, url: str) -> bytes:
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(f"Failed to download generated image: {e}")
        if not response.content:
            raise ProviderNoImage("Generated image download was empty")
        return response.content

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        message = self._error_message(response)
        logger.warning(f"Image provider returned {status}: {message}")

        if status in (401, 403):
            raise ProviderAuthError(
                f"Image provider rejected credentials: {message}", upstream_status=status
            )
        if status == 429:
            raise ProviderRateLimited(
                f"Image provider rate limited: {message}", upstream_status=status
            )
        raise ProviderError(
            f"Image provider error ({status}): {message}", upstream_status=status
        )

    def _error_message(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:300] or "unknown error"
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return str(error.get("message") or "unknown error")
        return str(error or "unknown error")
