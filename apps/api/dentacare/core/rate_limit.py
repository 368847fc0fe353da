"""Rate limiting configuration for the Dentacare API."""

import logging
import os

import redis
from slowapi import Limiter
from slowapi.util import get_remote_address

from dentacare.core.config import settings

# Redis storage for multi-worker support.
# Falls back to in-memory if Redis is not available (dev/test mode)
IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")
DEFAULT_LIMITS = (
    []
    if IS_TESTING or settings.RATE_LIMIT_API <= 0
    else [f"{settings.RATE_LIMIT_API}/minute"]
)
REDEEM_VALIDATE_LIMIT = f"{settings.RATE_LIMIT_REDEEM_VALIDATE}/minute"


def _build_limiter() -> Limiter:
    if IS_TESTING:
        return Limiter(
            key_func=get_remote_address,
            storage_uri="memory://",
            default_limits=DEFAULT_LIMITS,
            enabled=False,
        )
    try:
        client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        client.ping()
    except (redis.RedisError, OSError) as e:
        logging.warning("Redis unavailable for rate limiting, using in-memory: %s", e)
        return Limiter(
            key_func=get_remote_address,
            storage_uri="memory://",
            default_limits=DEFAULT_LIMITS,
        )
    return Limiter(
        key_func=get_remote_address,
        storage_uri=settings.REDIS_URL,
        default_limits=DEFAULT_LIMITS,
    )


limiter = _build_limiter()
