from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bridge import __version__
from bridge.app.api.mcp import create_mcp_router
from bridge.app.core.config import Settings, get_settings
from bridge.app.core.logging import get_logger, setup_logging
from bridge.app.exceptions import BridgeException, InternalError, RateLimitError
from bridge.app.middleware.request_id import RequestIdMiddleware, get_request_id
from bridge.app.services.dispatcher import error_response
from bridge.app.services.runtime import BridgeRuntime


def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[BridgeRuntime] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use; defaults to the runtime's or the global ones
        runtime: Pre-built services, e.g. with registered capabilities

    Returns:
        Configured FastAPI application instance
    """
    if settings is None:
        settings = runtime.settings if runtime is not None else get_settings()
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger(__name__)

    if runtime is None:
        runtime = BridgeRuntime.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the session sweeper on startup; close streams and the host executor on shutdown."""
        await runtime.start()
        logger.info(
            "Application startup complete",
            extra={
                "endpoint": settings.endpoint,
                "sse_enabled": settings.sse_enabled,
                "api_key_enabled": settings.api_key_enabled,
            },
        )
        if not settings.api_key_enabled:
            logger.warning("API key authentication is DISABLED, every caller is trusted")

        yield

        await runtime.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.server_name,
        description="JSON-RPC bridge exposing host administration capabilities",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RequestIdMiddleware, access_logging=settings.access_logging)

    if settings.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["*"],
            expose_headers=["X-Request-ID", "X-Session-ID"],
            max_age=600,
        )

    app.include_router(create_mcp_router(settings.endpoint))

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Liveness check with session and subscriber counts."""
        return {
            "status": "ok",
            "server": settings.server_name,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sessions": runtime.sessions.count,
            "sse_connections": runtime.subscribers.count,
            "tools": len(runtime.registry),
        }

    @app.exception_handler(BridgeException)
    async def bridge_exception_handler(request: Request, exc: BridgeException) -> JSONResponse:
        """Return gate rejections as JSON-RPC error envelopes with their HTTP status."""
        headers = {}
        if isinstance(exc, RateLimitError) and exc.retry_after:
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(None, exc),
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        The traceback is logged server-side and never returned to the client.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )
        message = f"Internal error: {exc}" if settings.debug else "Internal error"
        return JSONResponse(status_code=500, content=error_response(None, InternalError(message)))

    return app
