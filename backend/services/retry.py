import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_S = 1.0


def backoff_delay(attempt: int, base_s: float = DEFAULT_BACKOFF_BASE_S, rng: Callable[[], float] = random.random) -> float:
    """
    Delay before 1-indexed attempt `attempt` (k >= 2): base * 2^(k-2) plus jitter in [0, base).
    The first attempt never waits.
    """
    if attempt < 2:
        return 0.0
    return base_s * (2 ** (attempt - 2)) + rng() * base_s


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    *,
    base_s: float = DEFAULT_BACKOFF_BASE_S,
    label: str = "provider call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """
    Runs `operation` up to `max_attempts` times, retrying only transient ProviderErrors.

    Unauthorized, rate-limited, invalid and malformed failures are re-raised on first
    occurrence. After the last attempt the final transient failure is re-raised as terminal.
    Cancelling the awaiting task interrupts a pending backoff wait, and no further
    attempt is scheduled.
    """
    max_attempts = max(1, int(max_attempts))
    last_error: Optional[ProviderError] = None

    for attempt in range(1, max_attempts + 1):
        if attempt > 1:
            delay = backoff_delay(attempt, base_s, rng)
            logger.info(f"Retrying {label} in {delay:.2f}s (attempt {attempt}/{max_attempts})")
            await sleep(delay)
        try:
            return await operation()
        except ProviderError as e:
            if not e.retryable:
                raise
            last_error = e
            logger.warning(f"{label} failed on attempt {attempt}/{max_attempts}: {e.kind.value} - {e.message}")

    raise last_error
