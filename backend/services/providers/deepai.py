import logging
from typing import Sequence

from ..models import ImageInput, ImageResult
from .base import MAX_ERROR_TEXT, ImageOnlyProvider, classify_error_text

logger = logging.getLogger(__name__)


class DeepAIProvider(ImageOnlyProvider):
    """Last-resort fallback: DeepAI text2img, which answers with a hosted image URL."""

    name = "deepai"
    credential_env = "DEEPAI_API_KEY"

    async def _generate_once(self, prompt: str) -> ImageResult:
        response = await self._post(
            self.settings.endpoint,
            headers={"api-key": self._require_credentials()},
            data={"text": prompt},
        )
        data = self._json(response)

        output_url = data.get("output_url")
        if not isinstance(output_url, str) or not output_url:
            # DeepAI reports credit/key problems as a 200 with a status message.
            message = str(data.get("status") or data.get("err") or "DeepAI failed to generate image")
            raise self._error(classify_error_text(message), message[:MAX_ERROR_TEXT])
        return ImageResult(url=output_url)

    async def illustrate(self, prompt: str, images: Sequence[ImageInput] = ()) -> ImageResult:
        image = await self._retrying(lambda: self._generate_once(prompt), "sketch")
        logger.info("DeepAI sketch received")
        return image
