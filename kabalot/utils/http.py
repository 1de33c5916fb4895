"""Retry helper shared by the Document AI, pdf.co and exchange rate clients."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)


class RetryConfig:
    def __init__(
        self,
        *,
        attempts: int = 3,
        backoff_seconds: float = 1.0,
        max_retry_after: float = 30.0,
    ) -> None:
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.max_retry_after = max_retry_after


def _is_retryable(exc: httpx.HTTPError) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, httpx.TransportError)


def _retry_after(exc: httpx.HTTPError) -> Optional[float]:
    """Seconds requested by a throttling response, if it names any."""
    if not isinstance(exc, httpx.HTTPStatusError):
        return None
    value = exc.response.headers.get("Retry-After")
    try:
        return max(float(value), 0.0) if value is not None else None
    except ValueError:
        return None


async def request_with_retry(
    func: Callable[..., Awaitable[httpx.Response]],
    *args,
    retry_config: RetryConfig | None = None,
    **kwargs,
) -> httpx.Response:
    """Call ``func`` until it returns a 2xx response or attempts run out.

    429 and 5xx responses and transport errors are retried with linear
    backoff, or after the server's ``Retry-After`` delay (capped) when given.
    Other client errors are raised immediately.
    """
    config = retry_config or RetryConfig()
    for attempt in range(1, config.attempts + 1):
        try:
            response = await func(*args, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPError as exc:
            if attempt >= config.attempts or not _is_retryable(exc):
                raise
            delay = _retry_after(exc)
            if delay is None:
                delay = config.backoff_seconds * attempt
            delay = min(delay, config.max_retry_after)
            logger.warning(
                "Retrying request in %.1fs after %s (attempt %d/%d)",
                delay,
                exc,
                attempt,
                config.attempts,
            )
            await asyncio.sleep(delay)
    raise RuntimeError("RetryConfig.attempts must be at least 1")


__all__ = ["RetryConfig", "request_with_retry"]
