"""Email transport (Resend HTTP API).

Fire-and-forget: one attempt per job, failures are recorded on the job
row and never touch appointment or payment state.
"""

from __future__ import annotations

import html
import logging

import httpx

from dentacare.core.config import Settings, settings as default_settings
from dentacare.services.http_service import request_with_retries

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
RESEND_TIMEOUT_SECONDS = 20.0
RESEND_MAX_ATTEMPTS = 1


class EmailDeliveryError(Exception):
    """Raised when the provider rejects or cannot receive a message."""


def mask_email(email: str | None) -> str:
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."


def render_paragraphs(lines: list[str]) -> str:
    return "".join(f"<p>{html.escape(line)}</p>" for line in lines)


async def send_email(
    to: list[str],
    subject: str,
    body_html: str,
    *,
    idempotency_key: str | None = None,
    config: Settings = default_settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str | None:
    """
    Send one message. Returns the provider message id.

    If RESEND_API_KEY is not set, logs the email instead of sending.
    """
    if not to:
        return None
    if not config.RESEND_API_KEY:
        logger.info(
            "[DRY RUN] Email send skipped: subject=%r recipients=%s",
            subject,
            ",".join(mask_email(r) for r in to),
        )
        return None

    headers = {
        "Authorization": f"Bearer {config.RESEND_API_KEY}",
        "Content-Type": "application/json",
    }
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key
    payload = {
        "from": config.EMAIL_FROM,
        "to": to,
        "subject": subject,
        "html": body_html,
    }

    try:
        async with httpx.AsyncClient(
            timeout=RESEND_TIMEOUT_SECONDS, transport=transport
        ) as client:

            async def request_fn() -> httpx.Response:
                return await client.post(RESEND_SEND_URL, headers=headers, json=payload)

            response = await request_with_retries(
                request_fn, max_attempts=RESEND_MAX_ATTEMPTS
            )
    except httpx.RequestError as exc:
        raise EmailDeliveryError(f"Connection error: {exc.__class__.__name__}") from exc

    # 409 is an idempotency replay: the message already went out
    if 200 <= response.status_code < 300 or response.status_code == 409:
        message_id = None
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            message_id = data.get("id")
        logger.info(
            "Email sent to %s message_id=%s",
            ",".join(mask_email(r) for r in to),
            message_id,
        )
        return message_id

    raise EmailDeliveryError(f"Resend API error: {response.status_code}")
