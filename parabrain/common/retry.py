"""
Retry Policy

Bounded exponential-backoff retries for outbound calls (classifier, vision,
page-title fetch, chat-reply delivery).

- Attempt budget is ``retries + 1``.
- Delay before retry n (0-based) is ``base_delay * 2**n``.
- Timeouts and HTTP 429 / 5xx are retryable; everything else propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from .config import CaptureSettings

logger = logging.getLogger("parabrain.common.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and per-attempt timeout"""
    retries: int = 2
    base_delay: float = 0.4
    timeout: float = 15.0

    @classmethod
    def from_settings(cls, settings: CaptureSettings) -> "RetryPolicy":
        return cls(
            retries=settings.retry_count,
            base_delay=settings.retry_base_delay,
            timeout=settings.api_timeout,
        )

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)


def is_retryable_status(status: Optional[int]) -> bool:
    """Rate limits and server errors are worth another attempt"""
    if status is None:
        return False
    return status == 429 or status >= 500


def _status_of(error: BaseException) -> Optional[int]:
    """Pull an HTTP status off SDK / httpx exceptions, if any"""
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable_error(error: BaseException) -> bool:
    """Timeouts and 429/5xx carrying errors are retryable"""
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, TimeoutError)):
        return True
    if isinstance(error, httpx.TransportError):
        return True
    return is_retryable_status(_status_of(error))


async def run_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    label: str = "call",
) -> T:
    """Run ``fn`` under the policy timeout, retrying retryable failures.

    The last error is re-raised once the attempt budget is exhausted.
    """
    attempts = policy.retries + 1
    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(fn(), timeout=policy.timeout)
        except Exception as e:
            if attempt >= attempts - 1 or not is_retryable(e):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                label, attempt + 1, attempts, e, delay,
            )
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")  # pragma: no cover


async def fetch_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    policy: RetryPolicy,
    **kwargs: Any,
) -> httpx.Response:
    """Issue an HTTP request, retrying on timeouts and retryable statuses.

    A retryable response status on the final attempt is returned to the
    caller rather than raised.
    """
    attempts = policy.retries + 1
    for attempt in range(attempts):
        try:
            response = await client.request(method, url, timeout=policy.timeout, **kwargs)
        except httpx.HTTPError as e:
            if attempt >= attempts - 1 or not is_retryable_error(e):
                raise
            logger.warning("%s %s failed: %s", method, url, e)
            await asyncio.sleep(policy.delay_for(attempt))
            continue

        if attempt < attempts - 1 and is_retryable_status(response.status_code):
            logger.warning("%s %s returned %d, retrying", method, url, response.status_code)
            await asyncio.sleep(policy.delay_for(attempt))
            continue
        return response
    raise RuntimeError("unreachable")  # pragma: no cover
