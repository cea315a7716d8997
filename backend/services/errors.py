import re
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .models import ProviderFailure


class ErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    MALFORMED_RESPONSE = "malformed_response"
    ALL_PROVIDERS_FAILED = "all_providers_failed"


# Only transport-level failures are worth repeating against the same provider.
RETRYABLE_KINDS = {ErrorKind.TRANSIENT}

RATE_LIMIT_KEYWORDS = [
    "resource_exhausted",
    "quota",
    "rate limit",
    "rate_limit",
    "too many requests",
    "out of credits",
    "insufficient credits",
    "insufficient_quota",
]

CREDENTIAL_KEYWORDS = [
    "api key",
    "api_key",
    "apikey",
    "invalid key",
    "unauthorized",
    "permission_denied",
    "not authorized",
]


class DesignError(Exception):
    """Base class for every classified failure the design core raises."""

    kind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequest(DesignError):
    kind = ErrorKind.INVALID_REQUEST


class CooldownActive(InvalidRequest):
    """Raised locally while the post-exhaustion cooldown window is open."""

    def __init__(self, remaining_s: float):
        super().__init__(
            f"All design services are busy. Please wait {int(remaining_s + 0.999)} seconds before trying again."
        )
        self.remaining_s = remaining_s


class SuggestionNotFound(DesignError):
    kind = ErrorKind.INVALID_REQUEST

    def __init__(self, suggestion_id: str):
        super().__init__(f"No design suggestion with id {suggestion_id!r}")
        self.suggestion_id = suggestion_id


class ProviderError(DesignError):
    """
    A failure from one provider, already mapped onto the common taxonomy.
    Adapters raise this (and only this) past their boundary.
    """

    def __init__(
        self,
        provider: str,
        kind: ErrorKind,
        message: str,
        *,
        retry_after_s: Optional[float] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.kind = kind
        self.retry_after_s = retry_after_s

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def __repr__(self) -> str:
        return f"ProviderError(provider={self.provider!r}, kind={self.kind.value!r}, message={self.message!r})"


class AllProvidersFailed(DesignError):
    kind = ErrorKind.ALL_PROVIDERS_FAILED

    def __init__(self, failures: List["ProviderFailure"]):
        self.failures = list(failures)
        self.last_failure = self.failures[-1] if self.failures else None
        if self.last_failure is not None:
            detail = f"last failure from {self.last_failure.provider}: {self.last_failure.message}"
        else:
            detail = "no providers are configured"
        super().__init__(f"All design providers failed ({detail})")

    @property
    def rate_limited(self) -> bool:
        """True when exhaustion ended on a quota/backpressure signal."""
        return self.last_failure is not None and self.last_failure.kind == ErrorKind.RATE_LIMITED


def classify_http_status(status_code: Optional[int], error_text: Optional[str] = None) -> ErrorKind:
    """
    Maps an HTTP status (plus the provider's error body, which some backends use to
    signal quota problems on a 400) onto the common failure kinds.
    """
    text = (error_text or "").lower()
    if status_code == 429 or any(k in text for k in RATE_LIMIT_KEYWORDS):
        return ErrorKind.RATE_LIMITED
    if status_code in (401, 403):
        return ErrorKind.UNAUTHORIZED
    if status_code in (408, 425) or (status_code is not None and status_code >= 500):
        return ErrorKind.TRANSIENT
    if status_code == 400 and any(k in text for k in CREDENTIAL_KEYWORDS):
        # Gemini reports a bad key as 400 INVALID_ARGUMENT "API key not valid".
        return ErrorKind.UNAUTHORIZED
    if status_code is None:
        return ErrorKind.TRANSIENT
    return ErrorKind.MALFORMED_RESPONSE


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parses a Retry-After header given in seconds. HTTP-date values are ignored."""
    if not value:
        return None
    match = re.match(r"^\s*(\d+(?:\.\d+)?)\s*$", value)
    if not match:
        return None
    return float(match.group(1))
