import logging
from typing import Optional, Sequence

import openai
from openai import AsyncOpenAI

from ..errors import ErrorKind, classify_http_status, parse_retry_after
from ..models import ImageInput, ImageResult
from .base import MAX_ERROR_TEXT, ImageOnlyProvider

logger = logging.getLogger(__name__)

IMAGE_SIZE = "1024x1024"


class OpenAIImageProvider(ImageOnlyProvider):
    """Fallback that renders the sketch with the OpenAI Images API (text prompt only)."""

    name = "openai"
    credential_env = "OPENAI_API_KEY"

    def __init__(self, settings, **kwargs):
        super().__init__(settings, **kwargs)
        self._sdk_client: Optional[AsyncOpenAI] = None

    def _sdk(self) -> AsyncOpenAI:
        api_key = self._require_credentials()
        if self._sdk_client is None:
            # Retries are ours (services.retry); the SDK must not multiply them.
            self._sdk_client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.settings.endpoint,
                timeout=self.timeout_s,
                max_retries=0,
                http_client=self._http_client,
            )
        return self._sdk_client

    async def aclose(self) -> None:
        if self._sdk_client is not None:
            await self._sdk_client.close()
            self._sdk_client = None
        await super().aclose()

    def _classify(self, e: Exception):
        if isinstance(e, openai.APITimeoutError):
            return self._error(ErrorKind.TRANSIENT, f"Request timed out: {e}")
        if isinstance(e, openai.APIConnectionError):
            return self._error(ErrorKind.TRANSIENT, f"Network error: {e}")
        if isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return self._error(ErrorKind.UNAUTHORIZED, str(e)[:MAX_ERROR_TEXT])
        if isinstance(e, openai.RateLimitError):
            retry_after = parse_retry_after(e.response.headers.get("retry-after")) if e.response is not None else None
            return self._error(ErrorKind.RATE_LIMITED, str(e)[:MAX_ERROR_TEXT], retry_after_s=retry_after)
        if isinstance(e, openai.APIStatusError):
            return self._error(classify_http_status(e.status_code, str(e)), str(e)[:MAX_ERROR_TEXT])
        return self._error(ErrorKind.MALFORMED_RESPONSE, f"{type(e).__name__}: {e}"[:MAX_ERROR_TEXT])

    async def _generate_once(self, prompt: str) -> ImageResult:
        client = self._sdk()
        try:
            response = await self._bounded(
                lambda: client.images.generate(
                    model=self.settings.model,
                    prompt=prompt,
                    size=IMAGE_SIZE,
                    n=1,
                )
            )
        except openai.OpenAIError as e:
            logger.error(f"OpenAI image generation failed: {type(e).__name__}: {str(e)[:MAX_ERROR_TEXT]}")
            raise self._classify(e)

        data = list(response.data or [])
        if not data:
            raise self._error(ErrorKind.MALFORMED_RESPONSE, "No image data in OpenAI response")
        first = data[0]
        if getattr(first, "b64_json", None):
            return ImageResult(mime_type="image/png", data_b64=first.b64_json)
        if getattr(first, "url", None):
            return ImageResult(url=first.url)
        raise self._error(ErrorKind.MALFORMED_RESPONSE, "OpenAI image entry has neither b64_json nor url")

    async def illustrate(self, prompt: str, images: Sequence[ImageInput] = ()) -> ImageResult:
        image = await self._retrying(lambda: self._generate_once(prompt), "sketch")
        logger.info("OpenAI sketch received")
        return image
