import logging
from typing import Sequence

from ..errors import ErrorKind
from ..models import ImageInput, ImageResult
from .base import ImageOnlyProvider

logger = logging.getLogger(__name__)

# Stability caps prompts; anything longer is rejected with a 400.
MAX_PROMPT_CHARS = 10000

FILTERED_FINISH_REASONS = {"CONTENT_FILTERED", "ERROR"}


class StabilityProvider(ImageOnlyProvider):
    """Fallback using Stability AI's stable-image REST endpoint (multipart form, base64 JSON out)."""

    name = "stability"
    credential_env = "STABILITY_API_KEY"

    async def _generate_once(self, prompt: str) -> ImageResult:
        response = await self._post(
            self.settings.endpoint,
            headers={
                "Authorization": f"Bearer {self._require_credentials()}",
                "Accept": "application/json",
            },
            data={"prompt": prompt[:MAX_PROMPT_CHARS], "output_format": "png"},
            # Forces multipart/form-data, which the endpoint requires even without files.
            files={"none": (None, "")},
        )
        data = self._json(response)

        finish_reason = str(data.get("finish_reason") or "").upper()
        if finish_reason in FILTERED_FINISH_REASONS:
            raise self._error(ErrorKind.MALFORMED_RESPONSE, f"Stability refused the prompt: {finish_reason}")

        # Handle both the v2beta shape and the legacy v1 artifacts shape.
        image_b64 = data.get("image")
        if not image_b64:
            artifacts = data.get("artifacts")
            if isinstance(artifacts, list) and artifacts and isinstance(artifacts[0], dict):
                image_b64 = artifacts[0].get("base64")
        if not isinstance(image_b64, str) or not image_b64:
            logger.error(f"No image returned from Stability API. Keys: {list(data.keys())}")
            raise self._error(ErrorKind.MALFORMED_RESPONSE, "No image returned from Stability API")
        return ImageResult(mime_type="image/png", data_b64=image_b64)

    async def illustrate(self, prompt: str, images: Sequence[ImageInput] = ()) -> ImageResult:
        image = await self._retrying(lambda: self._generate_once(prompt), "sketch")
        logger.info("Stability sketch received")
        return image
