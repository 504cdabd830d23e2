"""Request ID middleware.

Adds a unique request ID to each incoming request so log lines from the
transport, dispatcher and capabilities can be correlated, and optionally
writes one access log line per request.
"""

import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from bridge.app.core.logging import get_log_context, get_logger

logger = get_logger("bridge.access")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add a request ID to all requests.

    The request ID is:
    1. Extracted from X-Request-ID header if present
    2. Generated as UUID if not present
    3. Added to request.state for access in endpoints
    4. Returned in X-Request-ID response header
    """

    def __init__(self, app, header_name: str = "X-Request-ID", access_logging: bool = False):
        super().__init__(app)
        self.header_name = header_name
        self.access_logging = access_logging

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(self.header_name)
        if not request_id:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        response = await call_next(request)
        response.headers[self.header_name] = request_id

        if self.access_logging:
            elapsed_ms = (time.perf_counter() - start) * 1000
            source = request.client.host if request.client else "unknown"
            logger.info(
                f"{request.method} {request.url.path} {response.status_code} {elapsed_ms:.1f}ms",
                extra=get_log_context(source=source, request_id=request_id),
            )
        return response


def get_request_id(request: Request) -> str:
    """Get request ID from request state."""
    return getattr(request.state, "request_id", "unknown")
