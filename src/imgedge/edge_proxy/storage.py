"""Durable object storage for uploaded images, on local disk or S3-compatible storage."""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

import boto3
import structlog

from ..common.settings import EdgeProxySettings


LOGGER = structlog.get_logger("imgedge.edge_proxy.storage")


class ObjectStoreError(Exception):
    """Raised when an object could not be persisted."""


class ObjectStoreUnavailable(ObjectStoreError):
    pass


class ObjectStore:
    async def put(self, key: str, data: bytes, content_type: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> dict[str, object]:
        raise NotImplementedError


def object_digest(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class LocalObjectStore(ObjectStore):
    """Objects and content types kept under ``<root>`` by the sha256 of the key.

    Keys are a flat namespace: ``a`` and ``a/b.png`` never share a path. The
    metadata lands before the object, so a visible object always has one.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root).expanduser()
        self._objects = self._root / "objects"
        self._meta = self._root / "meta"

    def _paths(self, key: str) -> tuple[Path, Path]:
        digest = object_digest(key)
        return (
            self._objects / digest[:2] / digest,
            self._meta / digest[:2] / f"{digest}.json",
        )

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        path, meta_path = self._paths(key)
        metadata = json.dumps({"key": key, "content_type": content_type}).encode("utf-8")
        await asyncio.to_thread(_atomic_write, meta_path, metadata)
        await asyncio.to_thread(_atomic_write, path, data)

    def read(self, key: str) -> tuple[bytes, Optional[str]]:
        path, meta_path = self._paths(key)
        data = path.read_bytes()
        content_type = json.loads(meta_path.read_text(encoding="utf-8")).get("content_type")
        return data, content_type

    def status(self) -> dict[str, object]:
        self._root.mkdir(parents=True, exist_ok=True)
        return {
            "backend": "local",
            "storage_path": str(self._root),
            "writable": os.access(self._root, os.W_OK),
        }


def _atomic_write(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
    try:
        staging.write_bytes(payload)
        os.replace(staging, path)
    finally:
        staging.unlink(missing_ok=True)


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_reset(self) -> None:
        if self._opened_at is not None and time.monotonic() - self._opened_at >= self._reset_timeout:
            self._opened_at = None
            self._failure_count = 0

    def allow_request(self) -> bool:
        self._maybe_reset()
        return self._opened_at is None

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._opened_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._opened_at is not None


class S3ObjectStore(ObjectStore):
    def __init__(self, settings: EdgeProxySettings):
        self._settings = settings
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.s3_bucket
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            failure_threshold=settings.s3_circuit_breaker_failures,
            reset_timeout=settings.s3_circuit_breaker_reset_seconds,
        )

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        await self._call_with_retry(
            self._client.put_object,
            Bucket=self._bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )

    def status(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._settings.s3_endpoint_url,
            "circuit_open": self._breaker.is_open,
        }

    async def _call_with_retry(self, func: Callable[..., object], **kwargs) -> object:
        if not self._breaker.allow_request():
            raise ObjectStoreUnavailable("object store circuit open")

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
                self._breaker.record_success()
                return result
            except Exception as exc:  # noqa: BLE001
                attempt += 1
                if attempt > self._max_retries:
                    self._breaker.record_failure()
                    raise ObjectStoreUnavailable("object store write failed") from exc
                delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
                LOGGER.info("object_store_retry", attempt=attempt, delay_seconds=delay)
                if delay:
                    await asyncio.sleep(delay)


def build_object_store(settings: EdgeProxySettings) -> ObjectStore:
    if settings.s3_bucket:
        return S3ObjectStore(settings)
    return LocalObjectStore(settings.storage_path)
