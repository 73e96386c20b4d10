"""Retry with exponential backoff for backend calls.

Transport failures and 5xx/429 responses are retried; client errors
(4xx other than 408/409/429) indicate a problem with the request itself and are
raised immediately. When attempts run out the last error is re-raised.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_CLIENT_STATUSES = frozenset({408, 409, 429})


@dataclass(frozen=True)
class RetryConfig:
    enabled: bool = True
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RetryConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", cls.enabled)),
            max_retries=int(data.get("max_retries", cls.max_retries)),
            initial_delay=float(data.get("initial_delay", cls.initial_delay)),
            max_delay=float(data.get("max_delay", cls.max_delay)),
            exponential_base=float(data.get("exponential_base", cls.exponential_base)),
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (0-based), jitter included."""
        base = min(self.max_delay, self.initial_delay * (self.exponential_base ** attempt))
        return min(self.max_delay, base + random.uniform(0, base * 0.25))


def _status_code(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable(error: BaseException) -> bool:
    status = _status_code(error)
    if status is not None and 400 <= status < 500:
        return status in _RETRYABLE_CLIENT_STATUSES
    return True


async def async_retry(
    config: RetryConfig,
    fn: Callable[[], Awaitable[T]],
    *,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call *fn* until it succeeds or the retry budget is spent."""
    if not config.enabled:
        return await fn()

    attempt = 0
    while True:
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not is_retryable(e):
                logger.error("Non-retryable backend error: %s", e)
                raise
            if attempt >= config.max_retries:
                logger.error("Backend call failed after %d retries. Last error: %s",
                             config.max_retries, e)
                raise
            delay = config.delay_for(attempt)
            attempt += 1
            logger.warning("Backend call failed (attempt %d/%d): %s; retrying in %.1fs",
                           attempt, config.max_retries, e, delay)
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)
