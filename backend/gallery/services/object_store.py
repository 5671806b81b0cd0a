from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Protocol

import anyio
import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from gallery.core.config import Settings, settings as default_settings
from gallery.services.media_errors import ObjectNotFound
from gallery.services.retry import RetryPolicy, storage_retry_policy

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class ObjectStore(Protocol):
    async def get(self, key: str) -> bytes: ...

    async def put(self, key: str, data: bytes, content_type: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class LocalObjectStore:
    """Blobs stored as files below a root directory; keys are relative POSIX paths."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, key: str) -> Path:
        cleaned = str(key or "").strip()
        if not cleaned or cleaned.startswith(("/", "\\")) or "\\" in cleaned:
            raise ValueError(f"Invalid storage key: {key!r}")
        candidate = (self.root / cleaned).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError:
            raise ValueError(f"Invalid storage key: {key!r}") from None
        return candidate

    async def get(self, key: str) -> bytes:
        path = self._resolve(key)
        try:
            return await anyio.to_thread.run_sync(path.read_bytes)
        except FileNotFoundError:
            raise ObjectNotFound(key) from None

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        path = self._resolve(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
            try:
                temp.write_bytes(data)
                temp.replace(path)
            finally:
                temp.unlink(missing_ok=True)

        await anyio.to_thread.run_sync(_write)

    async def delete(self, key: str) -> None:
        path = self._resolve(key)
        await anyio.to_thread.run_sync(lambda: path.unlink(missing_ok=True))


def _client_error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


class S3ObjectStore:
    """S3-compatible bucket (AWS S3 or MinIO) accessed through a boto3 client."""

    def __init__(self, client: Any, bucket: str) -> None:
        self.client = client
        self.bucket = bucket

    async def get(self, key: str) -> bytes:
        def _read() -> bytes:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            body = response["Body"]
            try:
                return body.read()
            finally:
                body.close()

        try:
            return await anyio.to_thread.run_sync(_read)
        except ClientError as exc:
            if _client_error_code(exc) in _NOT_FOUND_CODES:
                raise ObjectNotFound(key) from None
            raise

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        await anyio.to_thread.run_sync(
            lambda: self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        )

    async def delete(self, key: str) -> None:
        await anyio.to_thread.run_sync(lambda: self.client.delete_object(Bucket=self.bucket, Key=key))


class RetryingObjectStore:
    """Routes every call to the wrapped store through a storage retry policy."""

    def __init__(self, inner: ObjectStore, policy: RetryPolicy) -> None:
        self.inner = inner
        self.policy = policy

    async def get(self, key: str) -> bytes:
        return await self.policy.run(lambda: self.inner.get(key))

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        await self.policy.run(lambda: self.inner.put(key, data, content_type))

    async def delete(self, key: str) -> None:
        await self.policy.run(lambda: self.inner.delete(key))


def get_s3_client(config: Settings | None = None) -> Any:
    cfg = config or default_settings
    session = boto3.session.Session(
        aws_access_key_id=cfg.s3_access_key,
        aws_secret_access_key=cfg.s3_secret_key,
        region_name=cfg.s3_region,
    )
    return session.client(
        "s3",
        endpoint_url=cfg.s3_endpoint_url,
        use_ssl=bool(cfg.s3_use_ssl),
        config=BotoConfig(s3={"addressing_style": "path"}, retries={"max_attempts": 1}),
    )


def build_object_store(config: Settings | None = None, *, policy: RetryPolicy | None = None) -> RetryingObjectStore:
    cfg = config or default_settings
    backend = (cfg.media_storage_backend or "local").strip().lower()
    if backend == "s3":
        inner: ObjectStore = S3ObjectStore(get_s3_client(cfg), cfg.s3_bucket)
    elif backend == "local":
        inner = LocalObjectStore(cfg.media_root)
    else:
        raise ValueError(f"Unknown media storage backend: {cfg.media_storage_backend}")
    logger.info("object_store_configured", extra={"backend": backend})
    return RetryingObjectStore(inner, policy or storage_retry_policy(cfg))
