import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, TypeVar

import httpx

from ..config import ProviderSettings
from ..errors import (
    CREDENTIAL_KEYWORDS,
    RATE_LIMIT_KEYWORDS,
    ErrorKind,
    ProviderError,
    classify_http_status,
    parse_retry_after,
)
from ..models import DesignResult, DesignText, ImageInput, ImageResult
from ..prompts import Brief
from ..retry import with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ERROR_TEXT = 300

_FENCE_OPEN = re.compile(r"^```[a-zA-Z0-9_-]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")


def strip_code_fences(text: str) -> str:
    """Removes a ```json ... ``` wrapper if the model ignored the no-markdown instruction."""
    out = (text or "").strip()
    if out.startswith("```"):
        out = _FENCE_OPEN.sub("", out).strip()
        out = _FENCE_CLOSE.sub("", out).strip()
    return out


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return ", ".join(str(v).strip() for v in value if str(v).strip())
    return str(value).strip()


def parse_design_text(provider: str, raw_text: Optional[str]) -> DesignText:
    """
    Defensively parses a design JSON object out of model output.
    Raises a malformed-response ProviderError if nothing usable remains after cleanup.
    """
    text = strip_code_fences(raw_text or "")
    if not text:
        raise ProviderError(provider, ErrorKind.MALFORMED_RESPONSE, "Empty design text in response")

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        # Fallback: pull the first {...} block out of surrounding prose.
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if not match:
            logger.warning(f"Could not parse {provider} design response as JSON. Raw: {text[:MAX_ERROR_TEXT]}")
            raise ProviderError(provider, ErrorKind.MALFORMED_RESPONSE, "Design response is not JSON")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            logger.warning(f"Could not parse {provider} design response as JSON. Raw: {text[:MAX_ERROR_TEXT]}")
            raise ProviderError(provider, ErrorKind.MALFORMED_RESPONSE, "Design response is not JSON")

    if isinstance(parsed, list) and parsed and isinstance(parsed[0], dict):
        parsed = parsed[0]
    if not isinstance(parsed, dict):
        raise ProviderError(provider, ErrorKind.MALFORMED_RESPONSE, "Design response is not a JSON object")

    style_name = _as_text(parsed.get("styleName") or parsed.get("style_name") or parsed.get("name"))
    description = _as_text(parsed.get("description"))
    occasions = _as_text(parsed.get("occasions") or parsed.get("occasion"))

    missing = [k for k, v in (("styleName", style_name), ("description", description), ("occasions", occasions)) if not v]
    if missing:
        raise ProviderError(
            provider,
            ErrorKind.MALFORMED_RESPONSE,
            f"Design response missing fields: {', '.join(missing)}",
        )
    return DesignText(style_name=style_name, description=description, occasions=occasions)


def classify_error_text(text: str) -> ErrorKind:
    """For backends that report failures inside a 200 body."""
    lowered = (text or "").lower()
    if any(k in lowered for k in RATE_LIMIT_KEYWORDS):
        return ErrorKind.RATE_LIMITED
    if any(k in lowered for k in CREDENTIAL_KEYWORDS):
        return ErrorKind.UNAUTHORIZED
    return ErrorKind.MALFORMED_RESPONSE


class Provider:
    """
    Uniform contract over one generative backend.

    design(brief) returns the structured style text (and, when the backend
    produced one in the same call, an image); illustrate(prompt, images)
    returns one image. Both raise ProviderError and nothing else.
    Adapters hold no per-call state, so one instance serves concurrent calls.
    """

    name = "provider"
    credential_env = "API_KEY"
    # Whether the backend can take the fabric/customer photos as grounding.
    accepts_images = False

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        timeout_s: float = 60.0,
        max_attempts: int = 3,
        backoff_base_s: float = 1.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self._http_client = http_client
        self._owns_client = http_client is None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.settings.model!r}, has_credentials={self.settings.has_credentials})"

    async def design(self, brief: Brief) -> DesignResult:
        raise NotImplementedError

    async def illustrate(self, prompt: str, images: Sequence[ImageInput] = ()) -> ImageResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def _error(self, kind: ErrorKind, message: str, **kwargs) -> ProviderError:
        return ProviderError(self.name, kind, message, **kwargs)

    def _require_credentials(self) -> str:
        if not self.settings.has_credentials:
            raise self._error(ErrorKind.UNAUTHORIZED, f"{self.credential_env} is not configured")
        return self.settings.api_key

    def _client(self) -> httpx.AsyncClient:
        # Created on first use and only once a credential exists.
        self._require_credentials()
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_s)
            self._owns_client = True
        return self._http_client

    async def _bounded(self, call: Callable[[], Awaitable[T]]) -> T:
        """Runs one network attempt under the per-attempt timeout, classifying transport errors."""
        try:
            return await asyncio.wait_for(call(), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            raise self._error(ErrorKind.TRANSIENT, f"Request timed out after {self.timeout_s:.0f}s")
        except httpx.TimeoutException as e:
            raise self._error(ErrorKind.TRANSIENT, f"Request timed out: {type(e).__name__}")
        except httpx.TransportError as e:
            raise self._error(ErrorKind.TRANSIENT, f"Network error: {type(e).__name__}: {e}")

    def _http_error(self, response: httpx.Response) -> ProviderError:
        error_text = response.text[:MAX_ERROR_TEXT] if response.content else ""
        kind = classify_http_status(response.status_code, error_text)
        logger.error(f"{self.name} API error: {response.status_code} - {error_text}")
        return self._error(
            kind,
            f"HTTP {response.status_code}: {error_text}",
            retry_after_s=parse_retry_after(response.headers.get("retry-after")),
        )

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        client = self._client()
        response = await self._bounded(lambda: client.post(url, **kwargs))
        if not response.is_success:
            raise self._http_error(response)
        return response

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            raise self._error(ErrorKind.MALFORMED_RESPONSE, f"Response is not JSON: {response.text[:MAX_ERROR_TEXT]}")
        if not isinstance(data, dict):
            raise self._error(ErrorKind.MALFORMED_RESPONSE, "Response JSON is not an object")
        return data

    async def _retrying(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        return await with_retry(
            operation,
            self.max_attempts,
            base_s=self.backoff_base_s,
            label=f"{self.name} {label}",
        )


class ImageOnlyProvider(Provider):
    """
    Backends that only turn a text prompt into an image. Their design() pairs
    the generated picture with the brief's template description, so a fallback
    success always carries both.
    """

    async def design(self, brief: Brief) -> DesignResult:
        image = await self.illustrate(brief.image_prompt)
        return DesignResult(text=brief.template, provider=self.name, image=image)
