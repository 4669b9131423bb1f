"""
R2 (S3-compatible) storage helpers for the pipeline.

Background presets are served from:
  backgrounds/{preset_id}.jpg

Pipeline artifacts (e.g. narration that came back inline) go under:
  training/{user_id}/{filename}
"""

import os
import base64
import asyncio
import logging
import binascii
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")


# ── Helpers ──────────────────────────────────────────────────────────────────

def background_key(preset_id: str) -> str:
    return f"backgrounds/{preset_id}.jpg"


def preset_background_url(preset_id: str, public_url: Optional[str] = None) -> str:
    """Public URL for a background preset image."""
    base = (public_url if public_url is not None else R2_PUBLIC_URL).rstrip("/")
    return f"{base}/{background_key(preset_id)}"


def decode_data_uri(uri: str) -> tuple[bytes, str]:
    """
    Split a data: URI into (bytes, mime type).

    Raises:
        ValueError: not a base64 data: URI or the payload does not decode.
    """
    if not uri.startswith("data:") or "," not in uri:
        raise ValueError("Not a data: URI")
    header, payload = uri[5:].split(",", 1)
    if not header.endswith(";base64"):
        raise ValueError("Only base64 data: URIs are supported")
    mime_type = header[: -len(";base64")] or "application/octet-stream"
    try:
        return base64.b64decode(payload, validate=True), mime_type
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e


def _s3_client():
    return boto3.client(
        "s3",
        endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
        aws_access_key_id=R2_ACCESS_KEY_ID,
        aws_secret_access_key=R2_SECRET_ACCESS_KEY,
        config=BotoConfig(signature_version="s3v4"),
        region_name="auto",
    )


def is_configured() -> bool:
    return bool(R2_ACCOUNT_ID and R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY and R2_PUBLIC_URL)


async def upload_to_r2(key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
    """Upload bytes to R2 and return the public URL of the object."""
    if not is_configured():
        raise RuntimeError("R2 storage is not configured")

    def _put():
        _s3_client().put_object(
            Bucket=R2_BUCKET_NAME,
            Key=key,
            Body=data,
            ContentType=content_type,
        )

    try:
        await asyncio.to_thread(_put)
    except Exception as e:
        logger.error(f"R2 upload failed for key={key}: {e}")
        raise

    public_url = f"{R2_PUBLIC_URL.rstrip('/')}/{key}"
    logger.info(f"Uploaded to R2: {public_url}")
    return public_url


async def upload_pipeline_artifact(
    user_id: str, filename: str, data: bytes, content_type: str = "application/octet-stream"
) -> str:
    key = f"training/{user_id}/{filename}"
    return await upload_to_r2(key, data, content_type)


async def persist_inline_audio(user_id: str, job_id: str, data_uri: str) -> str:
    """Upload inline narration so downstream services get a fetchable URL."""
    audio_bytes, mime_type = decode_data_uri(data_uri)
    return await upload_pipeline_artifact(user_id, f"{job_id}_narration.mp3", audio_bytes, mime_type)
