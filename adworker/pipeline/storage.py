"""
S3/R2 storage gateway for the pipeline.

Layout:
  uploads/{user_id}/{timestamp_ms}-{random}.{ext}    client uploads
  jobs/{job_id}/{stage}.{ext}                         stage outputs

Provider URLs (fal.ai) expire after ~24h, so every stage output is copied
here before the stage is reported complete. Uses httpx for the download and
boto3 against the R2 S3 endpoint for everything else.
"""

import os
import time
import uuid
import asyncio
import logging
from typing import Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ENDPOINT = os.getenv(
    "R2_ENDPOINT",
    f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com" if R2_ACCOUNT_ID else "",
)
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")

DOWNLOAD_TIMEOUT = 120  # seconds, videos can be tens of MB
PRESIGN_TTL = 3600


# ── Key helpers ──────────────────────────────────────────────────────────────

def job_output_key(job_id: str, stage, extension: str) -> str:
    """Deterministic key for a stage output."""
    name = getattr(stage, "value", stage)
    return f"jobs/{job_id}/{name}.{extension.lstrip('.')}"


def upload_key(user_id: str, filename: str, now_ms: Optional[int] = None) -> str:
    """Unique key for a client upload, keeping the original extension."""
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    random_id = uuid.uuid4().hex[:13]
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    return f"uploads/{user_id}/{timestamp}-{random_id}.{extension}"


# ── Gateway ──────────────────────────────────────────────────────────────────

class ContentStore:
    """
    Permanent storage capability.

    The boto3 client is created lazily; tests pass `s3_client` and an httpx
    `transport` instead of touching the network.
    """

    def __init__(
        self,
        bucket: str = R2_BUCKET_NAME,
        public_base_url: str = R2_PUBLIC_URL,
        s3_client=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self._s3 = s3_client
        self._transport = transport

    def _client(self):
        if self._s3 is None:
            if not R2_ENDPOINT:
                raise RuntimeError("R2_ENDPOINT (or R2_ACCOUNT_ID) must be set")
            self._s3 = boto3.client(
                "s3",
                endpoint_url=R2_ENDPOINT,
                aws_access_key_id=R2_ACCESS_KEY_ID,
                aws_secret_access_key=R2_SECRET_ACCESS_KEY,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._s3

    # ── URLs ─────────────────────────────────────────────────────────────

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def key_from_url(self, url: Optional[str]) -> Optional[str]:
        """Reverse of public_url. None for URLs outside our bucket."""
        prefix = f"{self.public_base_url}/"
        if not url or not url.startswith(prefix):
            return None
        return url[len(prefix):]

    # ── Writes ───────────────────────────────────────────────────────────

    async def upload_bytes(self, data: bytes, key: str, content_type: str = "application/octet-stream") -> str:
        """Upload bytes under `key` and return the public URL."""
        try:
            await asyncio.to_thread(
                self._client().put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise

        public_url = self.public_url(key)
        logger.info(f"Uploaded to R2: {public_url} ({len(data)} bytes)")
        return public_url

    async def copy_from_url(self, source_url: str, dest_key: str) -> str:
        """Download `source_url` and store its body under `dest_key`."""
        async with httpx.AsyncClient(
            timeout=DOWNLOAD_TIMEOUT, follow_redirects=True, transport=self._transport
        ) as client:
            resp = await client.get(source_url)
            resp.raise_for_status()
            data = resp.content
            content_type = resp.headers.get("content-type", "application/octet-stream")

        return await self.upload_bytes(data, dest_key, content_type)

    async def delete_objects(self, keys: list[str]) -> dict:
        """Delete keys in batches of 1000. Returns {'deleted': [...], 'errors': [...]}."""
        deleted: list[str] = []
        errors: list[str] = []
        for i in range(0, len(keys), 1000):
            batch = keys[i:i + 1000]
            resp = await asyncio.to_thread(
                self._client().delete_objects,
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": False},
            )
            deleted.extend(obj["Key"] for obj in resp.get("Deleted", []))
            errors.extend(f"{err.get('Key')}: {err.get('Message')}" for err in resp.get("Errors", []))

        if errors:
            logger.warning(f"R2 delete finished with {len(errors)} error(s): {errors[:3]}")
        logger.info(f"Deleted {len(deleted)} object(s) from R2")
        return {"deleted": deleted, "errors": errors}

    # ── Reads ────────────────────────────────────────────────────────────

    async def list_keys(self, prefix: str = "") -> list[str]:
        def _list() -> list[str]:
            paginator = self._client().get_paginator("list_objects_v2")
            keys: list[str] = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
            return keys

        return await asyncio.to_thread(_list)

    async def presigned_upload_url(self, key: str, content_type: str, expires_in: int = PRESIGN_TTL) -> str:
        return await asyncio.to_thread(
            self._client().generate_presigned_url,
            "put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_in,
        )
