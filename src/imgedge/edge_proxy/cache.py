"""Response cache: canonical keys, Cache-Control policy and store backends."""

from __future__ import annotations

import base64
import hashlib
import json
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog
from opentelemetry import trace
from redis.asyncio import Redis

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .tasks import BackgroundWriter


LOGGER = structlog.get_logger("imgedge.edge_proxy.cache")
TRACER = trace.get_tracer("imgedge.edge_proxy.cache")

CACHE_LOOKUP_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgedge_cache_lookup_errors_total", "Cache lookups that failed and were served as misses")
)
CACHE_WRITES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgedge_cache_writes_total", "Cache write-back attempts by outcome", labelnames=("outcome",))
)

_MAX_AGE_ZERO = re.compile(r"\bmax-age\s*=\s*0\b")
_LIFETIME_DIRECTIVE = re.compile(r"\b(s-maxage|max-age)\s*=\s*\"?(\d+)\"?")


@dataclass(frozen=True)
class CachedResponse:
    status_code: int
    reason_phrase: str
    headers: tuple[tuple[str, str], ...]
    body: bytes

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return None

    def to_json(self) -> str:
        return json.dumps(
            {
                "status": self.status_code,
                "reason": self.reason_phrase,
                "headers": [list(item) for item in self.headers],
                "body": base64.b64encode(self.body).decode("ascii"),
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "CachedResponse":
        payload = json.loads(raw)
        return cls(
            status_code=int(payload["status"]),
            reason_phrase=str(payload.get("reason", "")),
            headers=tuple((str(key), str(value)) for key, value in payload["headers"]),
            body=base64.b64decode(payload["body"]),
        )


def canonical_cache_key(url: str) -> str:
    """Rewrite ``url`` with its query parameters stably sorted by name.

    Scheme, host, path and fragment are kept as given; repeated names keep
    their relative order.
    """
    parts = urlsplit(url)
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    ordered = sorted(pairs, key=lambda pair: pair[0])
    return urlunsplit(parts._replace(query=urlencode(ordered)))


def is_cacheable(cache_control: Optional[str]) -> bool:
    if not cache_control:
        return False
    directives = cache_control.lower()
    if "no-store" in directives or "private" in directives:
        return False
    return _MAX_AGE_ZERO.search(directives) is None


def freshness_lifetime(cache_control: Optional[str]) -> Optional[int]:
    """Seconds the shared cache may keep a response; ``s-maxage`` wins over ``max-age``."""
    if not cache_control:
        return None
    found = dict(_LIFETIME_DIRECTIVE.findall(cache_control.lower()))
    value = found.get("s-maxage", found.get("max-age"))
    return int(value) if value is not None else None


class CacheStore:
    async def lookup(self, canonical_key: str) -> Optional[CachedResponse]:  # pragma: no cover - interface
        raise NotImplementedError

    async def store(self, canonical_key: str, response: CachedResponse, ttl_seconds: Optional[int]) -> None:
        raise NotImplementedError

    def status(self) -> dict[str, object]:
        raise NotImplementedError


class MemoryCacheStore(CacheStore):
    """Per-process store; honours freshness lifetimes and an optional entry bound."""

    def __init__(self, max_entries: Optional[int] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: OrderedDict[str, tuple[CachedResponse, Optional[float]]] = OrderedDict()
        self._max_entries = max_entries if max_entries and max_entries > 0 else None
        self._clock = clock

    async def lookup(self, canonical_key: str) -> Optional[CachedResponse]:
        entry = self._entries.get(canonical_key)
        if entry is None:
            return None
        response, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._entries.pop(canonical_key, None)
            return None
        return response

    async def store(self, canonical_key: str, response: CachedResponse, ttl_seconds: Optional[int]) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            return
        now = self._clock()
        self._sweep(now)
        expires_at = now + ttl_seconds if ttl_seconds is not None else None
        self._entries.pop(canonical_key, None)
        self._entries[canonical_key] = (response, expires_at)
        if self._max_entries is not None:
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def _sweep(self, now: float) -> None:
        expired = [
            key for key, (_, expires_at) in self._entries.items() if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)

    def status(self) -> dict[str, object]:
        return {"backend": "memory", "entries": len(self._entries), "max_entries": self._max_entries}


class RedisCacheStore(CacheStore):
    def __init__(self, redis: Redis, prefix: str = "imgedge:cache:") -> None:
        self._redis = redis
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheStore":
        return cls(Redis.from_url(url))

    def _name(self, canonical_key: str) -> str:
        digest = hashlib.sha256(canonical_key.encode("utf-8")).hexdigest()
        return f"{self._prefix}{digest}"

    async def lookup(self, canonical_key: str) -> Optional[CachedResponse]:
        raw = await self._redis.get(self._name(canonical_key))
        if raw is None:
            return None
        return CachedResponse.from_json(raw)

    async def store(self, canonical_key: str, response: CachedResponse, ttl_seconds: Optional[int]) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            return
        await self._redis.set(self._name(canonical_key), response.to_json(), ex=ttl_seconds)

    async def close(self) -> None:
        await self._redis.aclose()

    def status(self) -> dict[str, object]:
        return {"backend": "redis", "prefix": self._prefix}


class CacheStoreAdapter:
    """Cache access for the read path.

    Lookups fail open: a store error is a miss. Write-backs run on the
    background writer and their failures never reach a caller.
    """

    def __init__(self, store: Optional[CacheStore], writer: BackgroundWriter) -> None:
        self._store = store
        self._writer = writer

    @property
    def enabled(self) -> bool:
        return self._store is not None

    async def lookup(self, url: str) -> Optional[CachedResponse]:
        if self._store is None:
            return None
        cache_key = canonical_cache_key(url)
        try:
            return await self._store.lookup(cache_key)
        except Exception:  # noqa: BLE001
            CACHE_LOOKUP_ERRORS_COUNTER.inc()
            LOGGER.warning("cache_lookup_failed", exc_info=True)
            return None

    async def store(self, url: str, response: CachedResponse) -> bool:
        if self._store is None:
            return False
        cache_control = response.header("cache-control")
        # responses that set cookies are never shared
        if not is_cacheable(cache_control) or response.header("set-cookie") is not None:
            CACHE_WRITES_COUNTER.inc(outcome="skipped")
            return False
        cache_key = canonical_cache_key(url)
        with TRACER.start_as_current_span("edge_proxy.cache_store") as span:
            span.set_attribute("imgedge.bytes", len(response.body))
            try:
                await self._store.store(cache_key, response, freshness_lifetime(cache_control))
            except Exception:  # noqa: BLE001
                CACHE_WRITES_COUNTER.inc(outcome="failed")
                LOGGER.warning("cache_store_failed", exc_info=True)
                return False
        CACHE_WRITES_COUNTER.inc(outcome="stored")
        LOGGER.debug("cache_stored", bytes=len(response.body))
        return True

    def schedule_store(self, url: str, response: CachedResponse) -> None:
        if self._store is None:
            return

        async def _write() -> None:
            await self.store(url, response)

        self._writer.submit(_write, name="cache_write_back")

    def status(self) -> dict[str, object]:
        if self._store is None:
            return {"backend": "none"}
        return self._store.status()
