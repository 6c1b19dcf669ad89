"""
S3/R2 storage for generated media.

Generated outputs are re-hosted under:
  production/{kind}/{upload_id}.{ext}

Uses httpx to pull the generator's temporary URL and boto3 (R2 endpoint)
to store the bytes. When R2 is not configured the passthrough store keeps
the generator URL as-is, which is what local runs and tests want.
"""

import os
import json
import asyncio
import logging
import uuid
from typing import Any, Optional, Protocol

import httpx

from .models import AssetKind, UploadResult

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")

CONTENT_TYPES = {
    AssetKind.IMAGE: ("image/png", "png"),
    AssetKind.VIDEO: ("video/mp4", "mp4"),
    AssetKind.AUDIO: ("audio/mpeg", "mp3"),
}


class ObjectStore(Protocol):
    async def upload_from_url(self, source_url: str, kind: AssetKind, info: dict[str, Any]) -> UploadResult:
        ...


# ── Helpers ──────────────────────────────────────────────────────────────────

def object_key(kind: AssetKind, upload_id: str) -> str:
    return f"production/{kind.value}/{upload_id}.{CONTENT_TYPES[kind][1]}"


def _s3_metadata(info: dict[str, Any]) -> dict[str, str]:
    """S3 user metadata must be flat ASCII strings."""
    out = {}
    for key in ("prompt", "model", "aspect_ratio"):
        if info.get(key):
            out[key] = str(info[key]).encode("ascii", "ignore").decode()[:1024]
    if info.get("metadata"):
        out["metadata"] = json.dumps(info["metadata"], ensure_ascii=True, default=str)[:1024]
    return out


async def download_bytes(url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> bytes:
    """Download media from a public URL and return raw bytes."""
    async with httpx.AsyncClient(timeout=120, transport=transport, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content


# ── Stores ───────────────────────────────────────────────────────────────────

class R2ObjectStore:
    def __init__(
        self,
        bucket: str = R2_BUCKET_NAME,
        public_url: str = R2_PUBLIC_URL,
        s3_client=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self._s3 = s3_client
        self._transport = transport

    def _client(self):
        if self._s3 is None:
            import boto3
            from botocore.config import Config as BotoConfig

            self._s3 = boto3.client(
                "s3",
                endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
                aws_access_key_id=R2_ACCESS_KEY_ID,
                aws_secret_access_key=R2_SECRET_ACCESS_KEY,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._s3

    async def upload(self, data: bytes, kind: AssetKind, info: dict[str, Any]) -> UploadResult:
        """Store bytes plus {prompt, model, aspect_ratio, metadata}; returns {id, public_url}."""
        upload_id = uuid.uuid4().hex
        key = object_key(kind, upload_id)
        content_type = CONTENT_TYPES[kind][0]

        try:
            await asyncio.to_thread(
                self._client().put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=_s3_metadata(info),
            )
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise

        public_url = f"{self.public_url}/{key}"
        logger.info(f"Uploaded to R2: {public_url}")
        return UploadResult(id=upload_id, public_url=public_url)

    async def upload_from_url(self, source_url: str, kind: AssetKind, info: dict[str, Any]) -> UploadResult:
        data = await download_bytes(source_url, self._transport)
        return await self.upload(data, kind, info)


class PassthroughObjectStore:
    """Keeps the generator's URL; used when no bucket is configured."""

    async def upload_from_url(self, source_url: str, kind: AssetKind, info: dict[str, Any]) -> UploadResult:
        return UploadResult(id=uuid.uuid4().hex, public_url=source_url)


def object_store_from_env() -> ObjectStore:
    if R2_ACCOUNT_ID and R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY and R2_PUBLIC_URL:
        return R2ObjectStore()
    logger.warning("R2 not configured, generated media will keep generator URLs")
    return PassthroughObjectStore()
