"""Object store port (S3-compatible).

``put`` uploads bytes and returns a URL. boto3 is blocking, so the call
runs in a worker thread under a hard deadline; timeouts and client errors
surface as UPSTREAM_UNAVAILABLE.
"""

from __future__ import annotations

import logging
from functools import partial
from urllib.parse import quote

import anyio
import boto3
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from dentacare.core.config import Settings, settings as default_settings
from dentacare.core.errors import ErrorCode, UpstreamError

logger = logging.getLogger(__name__)


def _normalize_endpoint(endpoint_url: str | None) -> str | None:
    if endpoint_url:
        return endpoint_url.rstrip("/")
    return None


def _build_s3_config(config: Settings) -> Config:
    style = (config.S3_URL_STYLE or "").strip().lower()
    timeout = config.STORAGE_TIMEOUT_SECONDS
    options = {
        "connect_timeout": timeout,
        "read_timeout": timeout,
        "retries": {"max_attempts": 1},
    }
    if style in {"path", "virtual"}:
        options["s3"] = {"addressing_style": style}
    return Config(**options)


def get_s3_client(config: Settings = default_settings) -> BaseClient:
    """Return a configured S3 client (supports S3-compatible endpoints)."""
    return boto3.client(
        "s3",
        region_name=config.S3_REGION or None,
        aws_access_key_id=config.AWS_ACCESS_KEY_ID or None,
        aws_secret_access_key=config.AWS_SECRET_ACCESS_KEY or None,
        endpoint_url=_normalize_endpoint(config.S3_ENDPOINT_URL),
        config=_build_s3_config(config),
    )


def object_url(bucket: str, name: str, config: Settings = default_settings) -> str:
    key = quote(name)
    if config.S3_PUBLIC_BASE_URL:
        return f"{config.S3_PUBLIC_BASE_URL.rstrip('/')}/{key}"
    endpoint = _normalize_endpoint(config.S3_ENDPOINT_URL)
    if endpoint:
        return f"{endpoint}/{bucket}/{key}"
    region = config.S3_REGION or "us-east-1"
    return f"https://{bucket}.s3.{region}.amazonaws.com/{key}"


async def put(
    bucket: str,
    name: str,
    data: bytes,
    mime: str,
    *,
    client: BaseClient | None = None,
    config: Settings = default_settings,
) -> str:
    """Upload ``data`` to ``bucket/name`` and return its URL."""
    s3 = client or get_s3_client(config)
    upload = partial(
        s3.put_object, Bucket=bucket, Key=name, Body=data, ContentType=mime
    )
    try:
        with anyio.fail_after(config.STORAGE_TIMEOUT_SECONDS):
            await anyio.to_thread.run_sync(upload, abandon_on_cancel=True)
    except TimeoutError as exc:
        logger.warning("Object store upload timed out: bucket=%s", bucket)
        raise UpstreamError(
            "Object store timed out", ErrorCode.UPSTREAM_UNAVAILABLE, transient=True
        ) from exc
    except (BotoCoreError, ClientError) as exc:
        logger.warning("Object store upload failed: %s", type(exc).__name__)
        raise UpstreamError(
            "Object store unavailable", ErrorCode.UPSTREAM_UNAVAILABLE, transient=True
        ) from exc
    return object_url(bucket, name, config)
