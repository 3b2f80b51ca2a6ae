"""Direct image uploads: size limits, signature sniffing and persistence."""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .errors import EdgeProxyError, InternalError, PayloadTooLarge
from .keys import ContentKey, parse_content_key
from .sniffer import detect_mime_type
from .storage import ObjectStore


LOGGER = structlog.get_logger("imgedge.edge_proxy.uploads")
TRACER = trace.get_tracer("imgedge.edge_proxy.uploads")

UPLOADS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgedge_uploads_total", "Upload attempts by result status", labelnames=("status",))
)
UPLOAD_BYTES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgedge_upload_bytes_total", "Bytes persisted to the object store")
)


@dataclass(frozen=True)
class UploadResult:
    key: ContentKey
    content_type: str
    size: int

    def payload(self) -> dict[str, object]:
        return {"success": True, "key": str(self.key)}


def declared_size(value: Optional[str]) -> Optional[int]:
    """Parse a Content-Length style header; anything but a plain integer counts as absent."""
    if value is None:
        return None
    value = value.strip()
    if not (value.isascii() and value.isdigit()):
        return None
    return int(value)


async def read_limited(chunks: AsyncIterator[bytes], max_bytes: int) -> bytes:
    buffer = bytearray()
    async for chunk in chunks:
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            raise PayloadTooLarge(max_bytes)
    return bytes(buffer)


class UploadPipeline:
    def __init__(self, store: ObjectStore, max_bytes: int) -> None:
        self._store = store
        self._max_bytes = max_bytes

    async def upload(
        self,
        path: str,
        declared_length: Optional[str],
        chunks: AsyncIterator[bytes],
    ) -> UploadResult:
        try:
            result = await self._upload(path, declared_length, chunks)
        except EdgeProxyError as exc:
            UPLOADS_COUNTER.inc(status=str(exc.status_code))
            raise
        except Exception as exc:  # noqa: BLE001
            UPLOADS_COUNTER.inc(status="500")
            LOGGER.exception("upload_failed")
            raise InternalError() from exc
        UPLOADS_COUNTER.inc(status="201")
        UPLOAD_BYTES_COUNTER.inc(result.size)
        return result

    async def _upload(
        self,
        path: str,
        declared_length: Optional[str],
        chunks: AsyncIterator[bytes],
    ) -> UploadResult:
        key = parse_content_key(path)

        size_hint = declared_size(declared_length)
        if size_hint is not None and size_hint > self._max_bytes:
            LOGGER.info("upload_rejected_declared_size", declared_bytes=size_hint, max_bytes=self._max_bytes)
            raise PayloadTooLarge(self._max_bytes)

        with TRACER.start_as_current_span("edge_proxy.upload", attributes={"imgedge.key": str(key)}) as span:
            data = await read_limited(chunks, self._max_bytes)
            if len(data) > self._max_bytes:
                raise PayloadTooLarge(self._max_bytes)
            content_type = detect_mime_type(data)
            await self._store.put(key, data, content_type)
            span.set_attribute("imgedge.bytes", len(data))
            span.set_attribute("imgedge.content_type", content_type)

        LOGGER.info("upload_stored", key=str(key), content_type=content_type, bytes=len(data))
        return UploadResult(key=key, content_type=content_type, size=len(data))
