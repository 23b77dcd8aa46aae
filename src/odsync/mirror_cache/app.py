"""HTTP front end for the mirror cache."""

from __future__ import annotations

import asyncio
import hmac
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from ipaddress import ip_address
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse

from .. import __version__
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import MirrorCacheSettings
from .coordinator import CacheCoordinator, FillOutcome
from .integrity import IntegrityValidator
from .paths import StorageLayout
from .stats import collect_stats
from .upstream import UpstreamFetcher


LOGGER = structlog.get_logger("odsync.mirror_cache.http")

BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("odsync_cache_bytes_served_total", "Bytes of cached objects handed to clients")
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "odsync_http_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0],
        description="Time to resolve a request to a file or an error",
    )
)


@dataclass
class MirrorCacheState:
    settings: MirrorCacheSettings
    coordinator: CacheCoordinator
    http_client: httpx.AsyncClient
    owns_client: bool


def build_http_client(settings: MirrorCacheSettings) -> httpx.AsyncClient:
    timeout = httpx.Timeout(settings.upstream_timeout_seconds, connect=settings.upstream_connect_timeout_seconds)
    return httpx.AsyncClient(
        timeout=timeout,
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        follow_redirects=True,
        headers={"User-Agent": f"odsync/{__version__}"},
    )


def build_coordinator(settings: MirrorCacheSettings, http_client: httpx.AsyncClient) -> CacheCoordinator:
    layout = StorageLayout(settings.storage_path, sidecar_suffix=settings.sidecar_suffix)
    fetcher = UpstreamFetcher(http_client, settings.upstream_url, chunk_size=settings.chunk_size_bytes)
    return CacheCoordinator(
        layout,
        fetcher,
        validator=IntegrityValidator(chunk_size=settings.chunk_size_bytes),
        orphan_grace_seconds=settings.orphan_grace_seconds,
    )


def get_state(request: Request) -> MirrorCacheState:
    return request.app.state.mirror_cache  # type: ignore[attr-defined]


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Metrics need the configured bearer token, or a loopback client when none is set."""
    if token:
        supplied = request.headers.get("authorization") or ""
        if not hmac.compare_digest(supplied, f"Bearer {token}"):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return
    host = request.client.host if request.client else None
    try:
        loopback = bool(host) and ip_address(host).is_loopback
    except ValueError:
        loopback = False
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")


def create_app(
    settings: Optional[MirrorCacheSettings] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings or MirrorCacheSettings()
    configure_logging("odsync.mirror_cache", settings.log_level)
    configure_tracing(
        service_name="odsync.mirror_cache",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.storage_path.mkdir(parents=True, exist_ok=True)
        client = http_client if http_client is not None else build_http_client(settings)
        state = MirrorCacheState(
            settings=settings,
            coordinator=build_coordinator(settings, client),
            http_client=client,
            owns_client=http_client is None,
        )
        app.state.mirror_cache = state
        LOGGER.info(
            "mirror_cache_ready",
            storage=str(state.coordinator.layout.root),
            upstream=settings.upstream_url,
            cache_limit_mb=settings.cache_size_mb,
        )
        try:
            yield
        finally:
            await state.coordinator.aclose()
            if state.owns_client:
                await client.aclose()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception(
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
            "cache": response.headers.get("x-cache"),
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.get("/api/health")
    async def health_check() -> dict:
        return {"status": "ok", "version": __version__}

    @app.get("/api/stats")
    async def storage_stats(state: MirrorCacheState = Depends(get_state)) -> dict:
        layout = state.coordinator.layout
        stats = await asyncio.to_thread(collect_stats, layout.root, layout.sidecar_suffix)
        limit_bytes = state.settings.cache_limit_bytes
        exceeded = limit_bytes > 0 and stats.total_bytes > limit_bytes
        if exceeded:
            LOGGER.warning(
                "cache_capacity_exceeded",
                total_bytes=stats.total_bytes,
                limit_bytes=limit_bytes,
            )
        return {
            "cached_files": stats.cached_files,
            "cache_size_bytes": stats.total_bytes,
            "cache_size_mb": stats.total_mb,
            "sidecars": stats.sidecars,
            "temp_artifacts": stats.temp_artifacts,
            "cache_limit_mb": state.settings.cache_size_mb,
            "capacity_exceeded": exceeded,
            "storage_dir": str(layout.root),
            "upstream": state.settings.upstream_url,
            "inflight_fills": state.coordinator.inflight_fills,
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: MirrorCacheState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{request_path:path}", methods=["GET", "HEAD"])
    async def serve_cached(request_path: str, state: MirrorCacheState = Depends(get_state)) -> Response:
        result = await state.coordinator.handle_request(request_path)
        if not result.ok or result.path is None:
            return JSONResponse({"error": result.message}, status_code=result.status_code)
        size = result.size if result.size is not None else result.path.stat().st_size
        BYTES_SERVED_COUNTER.inc(size)
        cache_header = "HIT" if result.outcome is FillOutcome.HIT else "MISS"
        return FileResponse(result.path, headers={"X-Cache": cache_header})

    return app
