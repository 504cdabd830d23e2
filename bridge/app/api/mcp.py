"""MCP transport endpoints.

``POST {endpoint}`` carries one JSON-RPC request per call, ``DELETE
{endpoint}`` ends a session and ``GET {endpoint}/sse`` opens the server push
stream. Every request passes the origin and credential gates before its
body is read; gate rejections are raised as ``BridgeException`` and turned
into error envelopes by the application's exception handler.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from bridge.app.core.logging import get_log_context, get_logger
from bridge.app.exceptions import AuthenticationError, InvalidRequestError, SessionError
from bridge.app.middleware.auth import (
    CredentialValidator,
    extract_api_key,
    get_client_source,
)
from bridge.app.middleware.request_id import get_request_id
from bridge.app.services.broadcaster import stream_events
from bridge.app.services.dispatcher import RequestContext
from bridge.app.services.runtime import BridgeRuntime

logger = get_logger(__name__)

SESSION_HEADER = "X-Session-ID"


def get_runtime(request: Request) -> BridgeRuntime:
    return request.app.state.runtime


async def authorize_transport(
    request: Request,
    runtime: BridgeRuntime,
    validate_session: bool = False,
) -> RequestContext:
    """Run the origin and credential gates for one HTTP request.

    A valid API key marks the context as authenticated. Without one, a
    session id header may stand in for it; it is checked here when
    ``validate_session`` is set and otherwise left to the dispatcher.

    Raises:
        OriginNotAllowedError: Source outside the allowed networks
        RateLimitError: Source banned or authentication bucket exhausted
        AuthenticationError: Missing or invalid API key
        SessionError: Unknown session id (only with ``validate_session``)
    """
    source = get_client_source(request, runtime.settings.trust_proxy_headers)
    ctx = RequestContext(
        source=source,
        session_id=request.headers.get(SESSION_HEADER) or None,
        request_id=get_request_id(request),
    )

    runtime.network.enforce(source)

    if not runtime.credentials.required:
        ctx.authenticated = True
        return ctx

    credential = extract_api_key(request)
    if credential is not None:
        result = await runtime.credentials.check(credential, source)
        CredentialValidator.raise_for_result(result)
        ctx.authenticated = True
        return ctx

    if ctx.session_id is None:
        logger.warning(
            f"Rejected request from {source}: missing API key",
            extra=get_log_context(source=source, category="authentication", outcome="missing_credential"),
        )
        raise AuthenticationError("Missing API key")

    if validate_session and not await runtime.sessions.validate(ctx.session_id):
        raise SessionError()
    return ctx


def _session_id_header(session_id: Optional[str]) -> dict[str, str]:
    return {SESSION_HEADER: session_id} if session_id else {}


def create_mcp_router(endpoint: str = "/mcp") -> APIRouter:
    """Build the transport router mounted at ``endpoint``."""
    router = APIRouter(prefix=endpoint, tags=["mcp"])

    @router.post("")
    async def handle_request(request: Request) -> Response:
        """Handle one JSON-RPC request.

        Dispatcher errors are returned with HTTP 200 inside the envelope.
        A notification produces 202 with no body.
        """
        runtime = get_runtime(request)
        ctx = await authorize_transport(request, runtime)

        body = await request.body()
        response = await runtime.dispatcher.dispatch(body, ctx)
        if response is None:
            return Response(status_code=202)
        return JSONResponse(content=response, headers=_session_id_header(ctx.session_id))

    @router.delete("", status_code=204)
    async def end_session(request: Request) -> Response:
        runtime = get_runtime(request)
        ctx = await authorize_transport(request, runtime, validate_session=True)
        if ctx.session_id is None:
            raise InvalidRequestError(f"Missing {SESSION_HEADER} header")

        await runtime.sessions.end(ctx.session_id)
        return Response(status_code=204)

    @router.get("/sse")
    async def stream(request: Request) -> StreamingResponse:
        """Open the server push stream.

        The first event identifies the subscriber; keep-alive comments
        follow until the client disconnects or the server shuts down.
        """
        runtime = get_runtime(request)
        if not runtime.settings.sse_enabled:
            raise HTTPException(status_code=404, detail="SSE transport is disabled")

        ctx = await authorize_transport(request, runtime, validate_session=True)
        subscriber = await runtime.subscribers.connect(ctx.source)

        return StreamingResponse(
            stream_events(runtime.subscribers, subscriber, runtime.settings.sse_keepalive_seconds),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return router
