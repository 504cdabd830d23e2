"""Process entry point: validate the bind configuration, then run uvicorn."""

import errno
import socket
from typing import Optional

from bridge.app.core.config import Settings, get_settings
from bridge.app.core.logging import get_logger, setup_logging
from bridge.app.exceptions import TransportError
from bridge.app.services.runtime import BridgeRuntime

logger = get_logger(__name__)

DEFAULT_API_KEY = "change-this-to-a-secure-value"


def validate_bind_config(settings: Settings) -> None:
    """Reject configurations the server cannot start with.

    Raises:
        TransportError: Misconfigured host, port or endpoint
    """
    if not 1 <= settings.port <= 65535:
        raise TransportError(f"Invalid port {settings.port}, must be between 1 and 65535")
    if not settings.endpoint.startswith("/"):
        raise TransportError(f"Invalid endpoint {settings.endpoint!r}, must start with '/'")
    if not settings.host:
        raise TransportError("Bind host must not be empty")

    if settings.api_key_enabled and settings.api_key == DEFAULT_API_KEY:
        logger.warning("Using the default API key, set BRIDGE_API_KEY before exposing this server")
    if settings.localhost_only and settings.host not in ("127.0.0.1", "::1", "localhost"):
        logger.info(f"Binding to {settings.host} but only loopback clients will be accepted")


def check_port_available(host: str, port: int) -> None:
    """Try to bind ``host:port`` so a busy port is reported before startup.

    Raises:
        TransportError: Port already in use, or the address cannot be bound
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                raise TransportError(
                    f"Port {port} is already in use. Stop the other process or change BRIDGE_PORT"
                ) from e
            raise TransportError(f"Cannot bind {host}:{port}: {e.strerror or e}") from e


def run_server(settings: Optional[Settings] = None, runtime: Optional[BridgeRuntime] = None) -> None:
    """Start the bridge (blocking).

    Nothing is started when the bind configuration is invalid, so the
    service is either fully up or not running at all.
    """
    import uvicorn

    from bridge.app.main import create_app

    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)

    validate_bind_config(settings)
    check_port_available(settings.host, settings.port)

    app = create_app(settings=settings, runtime=runtime)
    logger.info(f"MCP server listening on http://{settings.host}:{settings.port}{settings.endpoint}")
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=False,
    )
