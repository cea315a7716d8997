import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..errors import ErrorKind
from ..models import DesignResult, DesignText, ImageInput, ImageResult
from ..prompts import DESIGN_RESPONSE_SCHEMA, Brief
from .base import MAX_ERROR_TEXT, Provider, parse_design_text

logger = logging.getLogger(__name__)

# Direct REST calls to the Gemini API with API key authentication; no SDK needed.

CONTENT_REJECTION_FINISH_REASONS = {"IMAGE_SAFETY", "SAFETY", "CONTENT_FILTER", "PROHIBITED_CONTENT", "BLOCKLIST"}


async def _gemini_post_json(
    client: httpx.AsyncClient,
    *,
    url: str,
    headers: Dict[str, str],
    payload: Dict[str, Any],
) -> httpx.Response:
    """
    Thin wrapper for Gemini HTTP calls to make retry logic testable (can be monkeypatched).
    """
    return await client.post(url, headers=headers, json=payload)


def _inline_part(image: ImageInput) -> Dict[str, Any]:
    return {"inline_data": {"mime_type": image.mime_type, "data": image.to_base64()}}


def _first_candidate(data: Dict[str, Any]) -> Dict[str, Any]:
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return {}
    return candidates[0]


def _parts(candidate: Dict[str, Any]) -> List[Dict[str, Any]]:
    content = candidate.get("content")
    if not isinstance(content, dict) or not isinstance(content.get("parts"), list):
        return []
    return [p for p in content["parts"] if isinstance(p, dict)]


def _find_image(parts: List[Dict[str, Any]]) -> Optional[ImageResult]:
    for part in parts:
        # snake_case from the REST docs, camelCase from what the API actually echoes
        inline_data = part.get("inline_data") or part.get("inlineData")
        if isinstance(inline_data, dict) and isinstance(inline_data.get("data"), str) and inline_data["data"]:
            mime_type = str(inline_data.get("mime_type") or inline_data.get("mimeType") or "image/png")
            return ImageResult(mime_type=mime_type, data_b64=inline_data["data"])
    return None


class GeminiProvider(Provider):
    """
    Primary, multimodal backend. Design text comes from the text model with a
    response schema; the sketch comes from the image model, which also sees the
    fabric and customer photos.
    """

    name = "gemini"
    credential_env = "GEMINI_API_KEY"
    accepts_images = True

    def _url(self, model: str) -> str:
        return f"{self.settings.endpoint.rstrip('/')}/{model}:generateContent"

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self._require_credentials()}

    async def _generate(self, model: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = self._client()
        response = await self._bounded(
            lambda: _gemini_post_json(client, url=self._url(model), headers=self._headers(), payload=payload)
        )
        if not response.is_success:
            raise self._http_error(response)
        data = self._json(response)

        feedback = data.get("promptFeedback") or {}
        if not isinstance(feedback, dict):
            raise self._error(ErrorKind.MALFORMED_RESPONSE, "Unexpected promptFeedback in Gemini response")
        block_reason = feedback.get("blockReason")
        if block_reason:
            raise self._error(ErrorKind.MALFORMED_RESPONSE, f"Prompt blocked by safety filters: {block_reason}")
        if not _first_candidate(data):
            logger.error(f"No candidates in Gemini response from {model}")
            raise self._error(ErrorKind.MALFORMED_RESPONSE, "No candidates in response")

        finish_reason = str(_first_candidate(data).get("finishReason") or "").upper()
        if finish_reason in CONTENT_REJECTION_FINISH_REASONS:
            raise self._error(ErrorKind.MALFORMED_RESPONSE, f"Response blocked by safety filters: {finish_reason}")
        return data

    async def design(self, brief: Brief) -> DesignResult:
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [_inline_part(img) for img in brief.images] + [{"text": brief.text}],
                }
            ],
            "generationConfig": {
                "temperature": 0.9,
                "topP": 0.95,
                "responseMimeType": "application/json",
                "responseSchema": DESIGN_RESPONSE_SCHEMA,
            },
        }

        data = await self._retrying(lambda: self._generate(self.settings.model, payload), "design")
        parts = _parts(_first_candidate(data))
        text = "".join(str(p.get("text") or "") for p in parts if p.get("text"))
        if not text:
            raise self._error(ErrorKind.MALFORMED_RESPONSE, "No text in Gemini design response")

        design_text: DesignText = parse_design_text(self.name, text)
        logger.info(f"Gemini design received: {design_text.style_name}")
        # A text model does not return pictures, but keep one if it does.
        return DesignResult(text=design_text, provider=self.name, image=_find_image(parts))

    async def illustrate(self, prompt: str, images: Sequence[ImageInput] = ()) -> ImageResult:
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [_inline_part(img) for img in images] + [{"text": prompt}],
                }
            ],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
            },
        }

        model = self.settings.image_model or self.settings.model

        async def attempt() -> ImageResult:
            data = await self._generate(model, payload)
            parts = _parts(_first_candidate(data))
            image = _find_image(parts)
            if image is None:
                text_parts = [str(p.get("text"))[:MAX_ERROR_TEXT] for p in parts if p.get("text")]
                logger.warning(f"No image part in Gemini response. Text: {text_parts[:2]}")
                raise self._error(ErrorKind.MALFORMED_RESPONSE, "No image returned by Gemini")
            return image

        image = await self._retrying(attempt, "sketch")
        logger.info(f"Gemini sketch received ({len(image.data_b64 or '')} base64 chars, {image.mime_type})")
        return image
