"""Factory for the Live Poll realtime FastAPI application."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import router
from .config import Settings, get_settings
from .connections import ActivityCallback
from .observability import setup_logging, setup_observability
from .rate_limit import PublishRateLimiter
from .server import RealtimeModule
from .tallies import VoteCountSource
from .version import __version__

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    vote_counts: VoteCountSource | None = None,
    on_participant_activity: ActivityCallback | None = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    ``vote_counts`` and ``on_participant_activity`` let the host backend plug
    its vote store and participant tracker into the realtime module.
    """

    settings = settings or get_settings()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        setup_logging()
        realtime = RealtimeModule(
            settings,
            vote_counts=vote_counts,
            on_participant_activity=on_participant_activity,
        )
        await realtime.start()
        app.state.realtime = realtime
        try:
            yield
        finally:
            await realtime.stop()

    app = FastAPI(
        title="Live Poll Realtime",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=_lifespan,
    )
    app.state.settings = settings
    app.state.rate_limiter = PublishRateLimiter.from_settings(settings)
    setup_observability(app, service_name="livepoll-realtime")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.middleware("http")
    async def inject_trace_id(request: Request, call_next):  # type: ignore[override]
        """Attach `trace_id` to request and response headers for correlation."""

        incoming = request.headers.get("x-trace-id") or request.headers.get("x-request-id")
        trace_id = incoming or uuid4().hex
        request.state.trace_id = trace_id
        response: Response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        response.headers.setdefault("X-Request-Id", trace_id)
        return response

    @app.get("/config", tags=["system"])
    def read_config(request: Request) -> dict[str, str | int | float | bool]:
        """Return service config snapshot for diagnostics."""

        trace_id = getattr(request.state, "trace_id", "")
        return {
            "apiVersion": settings.api_version,
            "heartbeatIntervalSeconds": settings.heartbeat_interval_seconds,
            "connectionTimeoutSeconds": settings.connection_timeout_seconds,
            "maxConnectionsPerSession": settings.max_connections_per_session,
            "eventReplayEnabled": settings.event_replay_enabled,
            "traceId": trace_id,
        }

    @app.middleware("http")
    async def http_logger(request: Request, call_next):  # type: ignore[override]
        """Log method, path, status and elapsedMs with traceId."""

        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            trace_id = getattr(request.state, "trace_id", "")
            status_code = response.status_code if response else 500
            logging.getLogger("http").info(
                "method=%s path=%s status=%s elapsedMs=%s traceId=%s",
                request.method,
                request.url.path,
                status_code,
                elapsed_ms,
                trace_id,
            )

    logger.info("Realtime service initialised with API version %s", settings.api_version)
    return app
