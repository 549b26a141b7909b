from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .config.settings import Settings
from .devices.camera import CameraState, router as camera_router
from .devices.telescope import router as telescope_router
from .discovery import DiscoveryService
from .management.router import router as management_router
from .origin.poller import SessionPoller
from .origin.session import OriginSession

logger = structlog.get_logger(__name__)


def _access_level(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class AccessLogMiddleware:
    """ASGI middleware reporting every HTTP exchange that did not end in 200.

    Alpaca clients poll dozens of properties per second, so successful calls
    are not logged at all.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app
        self._logger = logging.getLogger("http.access")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        status: Optional[int] = None

        async def send_and_capture(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_and_capture)
        except Exception:
            self._logger.error("http.request.error", extra=_request_fields(scope, started), exc_info=True)
            raise

        if status is not None and status != 200:
            fields = _request_fields(scope, started)
            fields["status_code"] = status
            self._logger.log(_access_level(status), "http.request", extra=fields)


def _request_fields(scope: Scope, started: float) -> dict[str, object]:
    query = scope.get("query_string", b"").decode("latin-1")
    return {
        "method": scope.get("method"),
        "path": scope.get("path"),
        "query": query or None,
        "duration_ms": (time.perf_counter() - started) * 1000.0,
    }


def build_app(
    settings: Settings,
    session: Optional[OriginSession] = None,
    *,
    start_poller: bool = True,
) -> FastAPI:
    """Create the FastAPI application with the Alpaca devices bound to one Origin session."""
    app = FastAPI(title="Origin Alpaca Server", version="0.1.0")
    origin_session = session or OriginSession(settings)
    app.state.settings = settings
    app.state.origin_session = origin_session
    app.state.camera_state = CameraState(gain=settings.default_iso)

    app.include_router(management_router, prefix="/management")
    app.include_router(telescope_router, prefix="/api/v1/telescope/0")
    app.include_router(camera_router, prefix="/api/v1/camera/0")
    app.add_middleware(AccessLogMiddleware)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        async with AsyncExitStack() as stack:
            if start_poller:
                poller = SessionPoller(origin_session, interval=settings.poll_interval_seconds)
                app.state.poller = await stack.enter_async_context(poller)
            try:
                yield
            finally:
                await stack.aclose()
                await asyncio.to_thread(origin_session.shutdown)

    app.router.lifespan_context = _lifespan

    return app


async def run_server(settings: Settings, session: Optional[OriginSession] = None) -> None:
    """Launch the Alpaca server and discovery responder."""
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )

    app = build_app(settings, session)

    async with AsyncExitStack() as stack:
        if settings.discovery_enabled:
            discovery = DiscoveryService(settings)
            await stack.enter_async_context(discovery)

        config = uvicorn.Config(
            app=app,
            host=settings.http_host,
            port=settings.http_port,
            log_level="info",
            access_log=False,
        )
        if settings.enable_https and settings.tls_certfile and settings.tls_keyfile:
            config.ssl_certfile = str(settings.tls_certfile)
            config.ssl_keyfile = str(settings.tls_keyfile)

        server = uvicorn.Server(config)
        logger.info(
            "server.starting",
            host=settings.http_host,
            port=settings.http_port,
            scheme="https" if settings.enable_https else "http",
            origin_host=settings.origin_host,
            origin_port=settings.origin_port,
        )
        await server.serve()

    logger.info("server.stopped")
