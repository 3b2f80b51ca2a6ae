"""Forwarding of validated image requests to the transform origin."""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional, Sequence
from urllib.parse import quote, urlencode, urljoin

import httpx
import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .errors import BadGateway, GatewayTimeout, OriginMismatch
from .keys import ContentKey


LOGGER = structlog.get_logger("imgedge.edge_proxy.origin")
TRACER = trace.get_tracer("imgedge.edge_proxy.origin")

ORIGIN_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgedge_origin_errors_total", "Origin fetches that failed in transport", labelnames=("kind",))
)

TRANSFORM_ROUTE = "/transform/"
CACHE_STATUS_HEADER = "X-Cache"

# Never relayed: connection-scoped headers plus framing the proxy recomputes
# (httpx hands over the decoded body).
_UNRELAYED_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "content-length",
        "content-encoding",
    }
)


def origin_of(url: str | httpx.URL) -> str:
    """``scheme://host[:port]`` with the scheme's default port left out."""
    parsed = url if isinstance(url, httpx.URL) else httpx.URL(url)
    host = parsed.host
    if ":" in host:
        host = f"[{host}]"
    origin = f"{parsed.scheme}://{host}"
    if parsed.port is not None:
        origin = f"{origin}:{parsed.port}"
    return origin


def build_origin_url(origin_url: str, key: str, params: Sequence[tuple[str, str]]) -> str:
    encoded_key = quote(key, safe="/")
    target = urljoin(origin_url, f"{TRANSFORM_ROUTE}{encoded_key}")
    query = urlencode(list(params))
    return f"{target}?{query}" if query else target


def relay_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    return [(name, value) for name, value in headers if name.lower() not in _UNRELAYED_HEADERS]


class OriginGateway:
    """Dispatches ``GET <origin>/transform/<key>`` with SSRF and timeout guards.

    The origin is fixed at construction. Every outbound URL is re-parsed and
    its origin compared against that value before anything is sent.
    """

    def __init__(
        self,
        origin_url: str,
        timeout_seconds: float,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._origin_url = origin_url
        self._expected_origin = origin_of(origin_url)
        self._timeout = timeout_seconds
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=False)

    @property
    def expected_origin(self) -> str:
        return self._expected_origin

    def target_url(self, key: ContentKey, params: Sequence[tuple[str, str]]) -> httpx.URL:
        try:
            url = httpx.URL(build_origin_url(self._origin_url, key, params))
        except httpx.InvalidURL as exc:
            raise OriginMismatch() from exc
        if origin_of(url) != self._expected_origin:
            LOGGER.warning("origin_mismatch_rejected", expected=self._expected_origin)
            raise OriginMismatch()
        return url

    async def fetch(self, key: ContentKey, params: Sequence[tuple[str, str]]) -> httpx.Response:
        url = self.target_url(key, params)
        with TRACER.start_as_current_span("edge_proxy.origin_fetch") as span:
            try:
                response = await asyncio.wait_for(
                    self._client.get(url, follow_redirects=False),
                    timeout=self._timeout,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
                ORIGIN_ERRORS_COUNTER.inc(kind="timeout")
                LOGGER.warning("origin_timeout", timeout_seconds=self._timeout)
                raise GatewayTimeout() from exc
            except (httpx.HTTPError, OSError) as exc:
                ORIGIN_ERRORS_COUNTER.inc(kind="transport")
                LOGGER.warning("origin_unreachable", error_type=type(exc).__name__)
                raise BadGateway() from exc
            span.set_attribute("http.status_code", response.status_code)
            return response

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
