"""HTTP helpers with retry/backoff for integrations."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}

# Transport errors raised before the request reached the server
CONNECT_PHASE_ERRORS: tuple[type[Exception], ...] = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.PoolTimeout,
)


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: bool) -> float:
    """Delay before retry number ``attempt + 1`` (attempt is zero-based)."""
    delay = min(max_delay, base_delay * (2**attempt))
    if delay and jitter:
        delay = delay + random.uniform(0, delay / 2)
        delay = min(max_delay, delay)
    return delay


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
    retry_on: tuple[type[Exception], ...] = (httpx.RequestError,),
    jitter: bool = True,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> httpx.Response:
    """
    Execute an HTTP request with exponential backoff retries.

    Exceptions listed in ``retry_on`` and responses whose status is in
    ``retry_statuses`` are retried until ``max_attempts`` is reached; the
    last exception is re-raised, the last response is returned.
    """
    statuses = DEFAULT_RETRY_STATUSES if retry_statuses is None else retry_statuses

    for attempt in range(max_attempts):
        try:
            response = await request_fn()
        except retry_on as exc:
            if attempt >= max_attempts - 1:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay, jitter)
            logger.warning("HTTP request failed (%s), retrying", type(exc).__name__)
            if delay:
                await sleep(delay)
            continue

        if response.status_code in statuses and attempt < max_attempts - 1:
            delay = backoff_delay(attempt, base_delay, max_delay, jitter)
            logger.warning(
                "HTTP request returned %s, retrying", response.status_code
            )
            if delay:
                await sleep(delay)
            continue

        return response

    return response
