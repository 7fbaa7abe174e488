"""
Blob storage for processed uploads: "store bytes, get URL".

Two backends behind one interface:

  LocalBlobStore  files under UPLOADS_DIR, served by the app at /uploads
  S3BlobStore     Cloudflare R2 through the S3 API (boto3)

boto3 is synchronous, so every S3 call runs in a worker thread.
`delete` is best effort everywhere: failures are logged, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from pathlib import Path, PurePath
from typing import NamedTuple, Protocol
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import Settings

logger = logging.getLogger(__name__)


class StoredBlob(NamedTuple):
    url: str
    key: str
    size: int


class BlobStore(Protocol):
    backend: str

    async def store(self, data: bytes, suggested_name: str, content_type: str) -> StoredBlob: ...

    async def load(self, url: str) -> bytes: ...

    async def delete(self, url: str) -> None: ...


def _unique_key(suggested_name: str) -> str:
    extension = PurePath(suggested_name).suffix.lower()
    return f"uploads/{int(time.time() * 1000)}-{secrets.token_urlsafe(12)}{extension}"


class LocalBlobStore:
    backend = "local"

    def __init__(self, root: str | Path, url_prefix: str = "/uploads") -> None:
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def _path_for(self, url: str) -> Path:
        name = PurePath(urlparse(url).path).name
        if not name:
            raise FileNotFoundError(url)
        return self.root / name

    def _write(self, name: str, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / name).write_bytes(data)

    async def store(self, data: bytes, suggested_name: str, content_type: str) -> StoredBlob:
        key = _unique_key(suggested_name)
        name = PurePath(key).name
        await asyncio.to_thread(self._write, name, data)
        logger.info("Stored upload locally: %s (%.2f KB)", name, len(data) / 1024)
        return StoredBlob(url=f"{self.url_prefix}/{name}", key=key, size=len(data))

    async def load(self, url: str) -> bytes:
        return await asyncio.to_thread(self._path_for(url).read_bytes)

    async def delete(self, url: str) -> None:
        try:
            await asyncio.to_thread(self._path_for(url).unlink)
            logger.info("Deleted local upload: %s", url)
        except OSError as exc:
            logger.warning("Could not delete local upload %s: %s", url, exc)


class S3BlobStore:
    backend = "r2"

    def __init__(
        self,
        bucket: str,
        endpoint_url: str,
        access_key_id: str,
        secret_access_key: str,
        public_domain: str = "",
        client: object | None = None,
    ) -> None:
        self.bucket = bucket
        self.public_domain = public_domain
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name="auto",
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3BlobStore":
        if not settings.r2_configured:
            raise RuntimeError(
                "R2 storage is not configured. Set R2_ACCOUNT_ID, R2_ACCESS_KEY_ID "
                "and R2_SECRET_ACCESS_KEY, or use STORAGE_BACKEND=local."
            )
        return cls(
            bucket=settings.r2_bucket_name,
            endpoint_url=f"https://{settings.r2_account_id}.r2.cloudflarestorage.com",
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
            public_domain=settings.r2_public_domain,
        )

    def _url_for(self, key: str) -> str:
        if self.public_domain:
            return f"https://{self.public_domain}/{key}"
        return f"https://{self.bucket}.r2.cloudflarestorage.com/{key}"

    @staticmethod
    def _key_for(url: str) -> str:
        return urlparse(url).path.lstrip("/")

    async def store(self, data: bytes, suggested_name: str, content_type: str) -> StoredBlob:
        key = _unique_key(suggested_name)
        await asyncio.to_thread(
            self._client.put_object,  # type: ignore[attr-defined]
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        logger.info("Uploaded to R2: %s (%.2f KB)", key, len(data) / 1024)
        return StoredBlob(url=self._url_for(key), key=key, size=len(data))

    async def load(self, url: str) -> bytes:
        response = await asyncio.to_thread(
            self._client.get_object,  # type: ignore[attr-defined]
            Bucket=self.bucket,
            Key=self._key_for(url),
        )
        return await asyncio.to_thread(response["Body"].read)

    async def delete(self, url: str) -> None:
        key = self._key_for(url)
        try:
            await asyncio.to_thread(
                self._client.delete_object,  # type: ignore[attr-defined]
                Bucket=self.bucket,
                Key=key,
            )
            logger.info("Deleted from R2: %s", key)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Could not delete %s from R2: %s", key, exc)


def build_blob_store(settings: Settings) -> BlobStore:
    if settings.storage_backend == "r2":
        return S3BlobStore.from_settings(settings)
    return LocalBlobStore(settings.uploads_dir, settings.uploads_url_prefix)
