"""Object storage for receipt images.

Supports two backends selected via ``settings.STORAGE_BACKEND``:

1. **minio**: Uses the MinIO S3-compatible object storage.
2. **filesystem** (default): Stores files under ``settings.STORAGE_DIRECTORY``.

Every object is written under a fresh key
``receipts/<owner_id>/<UTC timestamp>-<random hex>.<ext>`` and the store
returns a URL the vision service can fetch. Any backend failure is raised
as ``StorageError``.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from io import BytesIO
from pathlib import Path
from typing import Optional, Protocol

from minio import Minio

from receiptflow.core.config import Settings, settings
from receiptflow.core.errors import StorageError
from receiptflow.utils.image_processing import CONTENT_TYPE_EXTENSIONS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredObject:
    key: str
    url: str


def build_object_key(owner_id: int, content_type: str, now: Optional[dt.datetime] = None) -> str:
    now = now or dt.datetime.now(dt.timezone.utc)
    ext = CONTENT_TYPE_EXTENSIONS.get(content_type, "bin")
    return f"receipts/{owner_id}/{now.strftime('%Y%m%dT%H%M%S%fZ')}-{secrets.token_hex(8)}.{ext}"


class ObjectStore(Protocol):
    async def put(self, data: bytes, content_type: str, owner_id: int, filename: str | None = None) -> StoredObject:
        ...

    async def delete(self, key: str) -> None:
        ...


class FilesystemObjectStore:
    """Stores objects on local disk; URLs are ``file://`` or under a public base URL."""

    def __init__(self, base_dir: str | Path | None = None, public_base_url: Optional[str] = None) -> None:
        base_path = Path(base_dir or settings.STORAGE_DIRECTORY)
        if not base_path.is_absolute():
            repo_root = Path(__file__).resolve().parents[3]
            base_path = repo_root / base_path
        self.base_dir = base_path.resolve()
        self.public_base_url = (public_base_url or "").rstrip("/") or None
        logger.info("[storage] Filesystem base_dir: %s", self.base_dir)

    def _path(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if self.base_dir not in path.parents:
            raise StorageError(f"Invalid object key: {key}")
        return path

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return self._path(key).as_uri()

    async def put(self, data: bytes, content_type: str, owner_id: int, filename: str | None = None) -> StoredObject:
        key = build_object_key(owner_id, content_type)
        path = self._path(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as exc:
            raise StorageError(f"Filesystem write failed: {exc}") from exc
        logger.debug("[storage] FS saved: %s bytes=%d", path, len(data))
        return StoredObject(key=key, url=self.url_for(key))

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as exc:
            raise StorageError(f"Filesystem delete failed: {exc}") from exc

    def read(self, key: str) -> bytes:
        return self._path(key).read_bytes()


class MinioObjectStore:
    """MinIO / S3 store. The blocking client runs in a worker thread."""

    def __init__(
        self,
        client: Minio,
        bucket: str,
        public_base_url: Optional[str] = None,
        url_expiry: timedelta = timedelta(hours=1),
    ) -> None:
        self._client = client
        self.bucket = bucket
        self.public_base_url = (public_base_url or "").rstrip("/") or None
        self.url_expiry = url_expiry
        self._bucket_checked = False

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "MinioObjectStore":
        client = Minio(
            config.MINIO_ENDPOINT,
            access_key=config.MINIO_ACCESS_KEY,
            secret_key=config.MINIO_SECRET_KEY,
            secure=bool(config.MINIO_USE_SSL),
        )
        return cls(client, config.MINIO_BUCKET_NAME, public_base_url=config.STORAGE_PUBLIC_BASE_URL)

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        if not self._client.bucket_exists(self.bucket):
            self._client.make_bucket(self.bucket)
        self._bucket_checked = True

    def _put_sync(self, key: str, data: bytes, content_type: str) -> str:
        self._ensure_bucket()
        self._client.put_object(self.bucket, key, BytesIO(data), len(data), content_type=content_type)
        if self.public_base_url:
            return f"{self.public_base_url}/{self.bucket}/{key}"
        return self._client.presigned_get_object(self.bucket, key, expires=self.url_expiry)

    async def put(self, data: bytes, content_type: str, owner_id: int, filename: str | None = None) -> StoredObject:
        key = build_object_key(owner_id, content_type)
        try:
            url = await asyncio.to_thread(self._put_sync, key, data, content_type)
        except Exception as exc:  # S3Error, urllib3 and socket errors alike
            raise StorageError(f"MinIO upload failed: {exc}") from exc
        logger.debug("[storage] MinIO object put: %s size=%d", key, len(data))
        return StoredObject(key=key, url=url)

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._client.remove_object, self.bucket, key)
        except Exception as exc:  # S3Error, urllib3 and socket errors alike
            raise StorageError(f"MinIO delete failed: {exc}") from exc


def build_object_store(config: Settings = settings) -> ObjectStore:
    backend = (config.STORAGE_BACKEND or "filesystem").lower()
    if backend == "minio":
        return MinioObjectStore.from_settings(config)
    return FilesystemObjectStore(config.STORAGE_DIRECTORY, public_base_url=config.STORAGE_PUBLIC_BASE_URL)
