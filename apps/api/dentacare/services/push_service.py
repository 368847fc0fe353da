"""Push transport (FCM HTTP)."""

from __future__ import annotations

import logging

import httpx

from dentacare.core.config import Settings, settings as default_settings
from dentacare.services.http_service import request_with_retries

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/fcm/send"
FCM_TIMEOUT_SECONDS = 10.0


class PushDeliveryError(Exception):
    """Raised when FCM rejects or cannot receive a message."""


async def send_push(
    device_token: str,
    title: str,
    body: str,
    *,
    data: dict | None = None,
    config: Settings = default_settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """Deliver one notification. Returns False for a dry run."""
    if not config.FCM_SERVER_KEY:
        logger.info("[DRY RUN] Push send skipped: title=%r", title)
        return False

    payload = {
        "to": device_token,
        "notification": {"title": title, "body": body},
        "data": {k: str(v) for k, v in (data or {}).items()},
    }
    headers = {
        "Authorization": f"key={config.FCM_SERVER_KEY}",
        "Content-Type": "application/json",
    }
    try:
        async with httpx.AsyncClient(
            timeout=FCM_TIMEOUT_SECONDS, transport=transport
        ) as client:

            async def request_fn() -> httpx.Response:
                return await client.post(FCM_SEND_URL, headers=headers, json=payload)

            response = await request_with_retries(request_fn, max_attempts=1)
    except httpx.RequestError as exc:
        raise PushDeliveryError(f"Connection error: {exc.__class__.__name__}") from exc

    if not 200 <= response.status_code < 300:
        raise PushDeliveryError(f"FCM error: {response.status_code}")
    try:
        result = response.json()
    except ValueError:
        result = {}
    if isinstance(result, dict) and result.get("failure"):
        raise PushDeliveryError("FCM rejected the device token")
    logger.info("Push delivered: title=%r", title)
    return True
