"""Edge image proxy: cached reads through the transform origin and direct uploads."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from opentelemetry import trace
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import EdgeProxySettings
from .cache import CachedResponse, CacheStore, CacheStoreAdapter, MemoryCacheStore, RedisCacheStore
from .errors import InternalError
from .keys import parse_content_key
from .origin import CACHE_STATUS_HEADER, OriginGateway, relay_headers
from .storage import ObjectStore, build_object_store
from .tasks import BackgroundWriter
from .uploads import UploadPipeline


REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgedge_requests_total", "Image requests by method", labelnames=("method",))
)
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("imgedge_cache_hits_total", "Image reads served from cache"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("imgedge_cache_misses_total", "Image reads forwarded to the origin"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "imgedge_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 30.0],
        description="Edge proxy request latency",
    )
)
TRACER = trace.get_tracer("imgedge.edge_proxy")

SHUTDOWN_DRAIN_SECONDS = 5.0


class EdgeProxyState:
    def __init__(
        self,
        settings: EdgeProxySettings,
        cache: CacheStoreAdapter,
        gateway: OriginGateway,
        uploads: UploadPipeline,
        writer: BackgroundWriter,
    ):
        self.settings = settings
        self.cache = cache
        self.gateway = gateway
        self.uploads = uploads
        self.writer = writer
        self.logger = structlog.get_logger("imgedge.edge_proxy").bind(cache_backend=cache.status().get("backend"))


def build_cache_store(settings: EdgeProxySettings) -> Optional[CacheStore]:
    if settings.cache_backend == "none":
        return None
    if settings.cache_backend == "redis":
        return RedisCacheStore.from_url(settings.redis_url)
    return MemoryCacheStore(max_entries=settings.cache_max_entries)


def get_state(request: Request) -> EdgeProxyState:
    return request.app.state.edge_state  # type: ignore[attr-defined]


def from_origin(response: httpx.Response) -> CachedResponse:
    return CachedResponse(
        status_code=response.status_code,
        reason_phrase=response.reason_phrase,
        headers=tuple(relay_headers(response.headers.multi_items())),
        body=response.content,
    )


def render(entry: CachedResponse, cache_status: str) -> Response:
    response = Response(content=entry.body, status_code=entry.status_code)
    for name, value in entry.headers:
        response.headers.append(name, value)
    response.headers[CACHE_STATUS_HEADER] = cache_status
    return response


def create_app(
    settings: Optional[EdgeProxySettings] = None,
    *,
    cache_store: Optional[CacheStore] = None,
    object_store: Optional[ObjectStore] = None,
    origin_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings or EdgeProxySettings()
    configure_logging("imgedge.edge_proxy", settings.log_level)
    configure_tracing(
        service_name="imgedge.edge_proxy",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    writer = BackgroundWriter()
    if cache_store is None:
        cache_store = build_cache_store(settings)
    state = EdgeProxyState(
        settings=settings,
        cache=CacheStoreAdapter(cache_store, writer),
        gateway=OriginGateway(settings.origin_url, settings.origin_timeout_seconds, client=origin_client),
        uploads=UploadPipeline(object_store or build_object_store(settings), settings.max_upload_bytes),
        writer=writer,
    )
    GLOBAL_REGISTRY.register(
        Gauge(
            "imgedge_background_writes_pending",
            "Cache write-backs scheduled but not finished",
            supplier=lambda: float(writer.pending),
        )
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            try:
                await asyncio.wait_for(writer.drain(), timeout=SHUTDOWN_DRAIN_SECONDS)
            except asyncio.TimeoutError:
                state.logger.warning("background_writes_abandoned", pending=writer.pending)
                await writer.cancel_all()
            await state.gateway.aclose()
            if isinstance(cache_store, RedisCacheStore):
                await cache_store.close()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)
    app.state.edge_state = state

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse({"error": InternalError.message}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "cache": response.headers.get(CACHE_STATUS_HEADER),
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.get("/images/{key:path}")
    async def get_image(request: Request, state: EdgeProxyState = Depends(get_state)) -> Response:
        key = parse_content_key(request.scope["path"])
        REQUEST_COUNTER.inc(method="GET")
        url = str(request.url)
        with TRACER.start_as_current_span("edge_proxy.get", attributes={"imgedge.key": str(key)}) as span:
            cached = await state.cache.lookup(url)
            if cached is not None:
                HIT_COUNTER.inc()
                span.set_attribute("imgedge.cache", "HIT")
                state.logger.info("cache_hit", key=str(key), bytes=len(cached.body))
                return render(cached, "HIT")

            MISS_COUNTER.inc()
            span.set_attribute("imgedge.cache", "MISS")
            origin_response = await state.gateway.fetch(key, request.query_params.multi_items())
            entry = from_origin(origin_response)
            response = render(entry, "MISS")
            state.logger.info("cache_miss", key=str(key), origin_status=entry.status_code, bytes=len(entry.body))
            if origin_response.is_success and state.cache.enabled:

                async def write_back() -> None:
                    state.cache.schedule_store(url, entry)

                response.background = BackgroundTask(write_back)
            return response

    @app.put("/images/{key:path}", status_code=status.HTTP_201_CREATED)
    async def put_image(request: Request, state: EdgeProxyState = Depends(get_state)) -> JSONResponse:
        REQUEST_COUNTER.inc(method="PUT")
        with TRACER.start_as_current_span("edge_proxy.put"):
            result = await state.uploads.upload(
                request.scope["path"],
                request.headers.get("content-length"),
                request.stream(),
            )
        return JSONResponse(result.payload(), status_code=status.HTTP_201_CREATED)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: EdgeProxyState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    return app
