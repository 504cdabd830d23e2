"""JSON-RPC request dispatcher.

Routes a decoded request to a registered method handler after enforcing the
security gates: authentication (credential or session), the ``api_requests``
rate limit and, for command-executing capabilities, the command policy and
the ``command_execution`` rate limit. Every outcome is a response envelope;
nothing raised by a handler escapes ``dispatch``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from bridge.app.core.config import Settings
from bridge.app.core.logging import get_log_context, get_logger
from bridge.app.exceptions import (
    AuthenticationError,
    AuthorizationError,
    BridgeException,
    CapabilityNotFoundError,
    InternalError,
    InvalidParamsError,
    InvalidRequestError,
    MethodNotFoundError,
    ParseError,
    RateLimitError,
    SessionError,
)
from bridge.app.middleware.rate_limit import (
    API_REQUESTS,
    COMMAND_EXECUTION,
    CategoryLimit,
    RateLimiter,
)
from bridge.app.services.capabilities import (
    CapabilityExecutor,
    CapabilityRegistry,
    resource_name_from_uri,
)
from bridge.app.services.command_policy import CommandPolicy, base_command
from bridge.app.services.session_store import SessionStore

logger = get_logger(__name__)

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"
NOTIFICATION_PREFIX = "notifications/"

RequestId = Union[str, int]


class ProtocolRequest(BaseModel):
    jsonrpc: str = JSONRPC_VERSION
    method: str = Field(..., min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    id: Optional[RequestId] = None

    @field_validator("params", mode="before")
    @classmethod
    def default_params(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def is_notification(self) -> bool:
        return self.id is None and self.method.startswith(NOTIFICATION_PREFIX)


class ProtocolResponse(BaseModel):
    """Response envelope. Exactly one of ``result`` and ``error`` is set."""
    jsonrpc: str = JSONRPC_VERSION
    id: Optional[RequestId] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude={"result"} if self.error is not None else {"error"})


def success_response(request_id: Optional[RequestId], result: dict[str, Any]) -> dict[str, Any]:
    return ProtocolResponse(id=request_id, result=result).to_dict()


def error_response(request_id: Optional[RequestId], exc: BridgeException) -> dict[str, Any]:
    return ProtocolResponse(id=request_id, error=exc.to_error()).to_dict()


@dataclass
class RequestContext:
    """Per-request security state established by the transport."""
    source: str
    authenticated: bool = False
    session_id: Optional[str] = None
    request_id: Optional[str] = None


MethodHandler = Callable[[dict[str, Any], RequestContext], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class _Route:
    handler: MethodHandler
    requires_auth: bool


def _extract_id(payload: Any) -> Optional[RequestId]:
    if isinstance(payload, dict):
        value = payload.get("id")
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            return value
    return None


class RequestDispatcher:
    """Method table plus the per-request security state machine.

    Methods are added with ``register``; the MCP methods are registered on
    construction. Handlers receive the request params and context and
    return the ``result`` object or raise a ``BridgeException``.
    """

    def __init__(
        self,
        settings: Settings,
        registry: CapabilityRegistry,
        executor: CapabilityExecutor,
        sessions: SessionStore,
        policy: CommandPolicy,
        rate_limiter: RateLimiter,
        server_version: str = "0.1.0",
    ):
        self._registry = registry
        self._executor = executor
        self._sessions = sessions
        self._policy = policy
        self._rate_limiter = rate_limiter
        self._server_version = server_version
        self._routes: dict[str, _Route] = {}
        self.configure(settings)
        self._register_builtin_methods()

    def configure(self, settings: Settings) -> None:
        """Apply (re)loaded settings."""
        self._server_name = settings.server_name
        self._debug = settings.debug
        self._rate_limiting = settings.rate_limiting_enabled
        self._api_limit = CategoryLimit(
            settings.rate_limit_api_capacity, settings.rate_limit_api_refill_per_minute
        ).scaled(settings.rate_limit_multiplier)
        self._command_limit = CategoryLimit(
            settings.rate_limit_command_capacity, settings.rate_limit_command_refill_per_minute
        ).scaled(settings.rate_limit_multiplier)
        self._tools_enabled = settings.tools_enabled
        self._resources_enabled = settings.resources_enabled
        self._capabilities = {
            "tools": settings.tools_enabled,
            "resources": settings.resources_enabled,
            "prompts": settings.prompts_enabled,
            "logging": settings.logging_enabled,
        }

    def register(self, method: str, handler: MethodHandler, requires_auth: bool = True) -> None:
        self._routes[method] = _Route(handler=handler, requires_auth=requires_auth)

    @property
    def methods(self) -> list[str]:
        return list(self._routes)

    def _register_builtin_methods(self) -> None:
        self.register("initialize", self._handle_initialize)
        self.register("ping", self._handle_ping, requires_auth=False)
        self.register("notifications/initialized", self._handle_ping, requires_auth=False)
        self.register("tools/list", self._handle_tools_list)
        self.register("tools/call", self._handle_tools_call)
        self.register("resources/list", self._handle_resources_list)
        self.register("resources/read", self._handle_resources_read)

    async def dispatch(self, raw_body: Union[bytes, str], ctx: RequestContext) -> Optional[dict[str, Any]]:
        """Decode and handle one request body.

        Returns:
            The response envelope, or None for a notification
        """
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            logger.debug("Rejected unparseable request body", extra=get_log_context(source=ctx.source))
            return error_response(None, ParseError())
        return await self.handle(payload, ctx)

    async def handle(self, payload: Any, ctx: RequestContext) -> Optional[dict[str, Any]]:
        """Handle an already decoded request payload."""
        request_id = _extract_id(payload)
        method = None
        try:
            request = self._parse(payload)
            method = request.method
            route = self._routes.get(method)
            if route is None:
                raise MethodNotFoundError(method)

            if self._debug:
                logger.info(f"Request: {method}", extra=get_log_context(source=ctx.source, method=method))

            if route.requires_auth:
                await self._authenticate(ctx)
                await self._consume(API_REQUESTS, ctx.source, self._api_limit)

            result = await route.handler(request.params, ctx)
        except BridgeException as e:
            self._log_rejection(e, ctx, method)
            return error_response(request_id, e)
        except Exception as e:
            logger.exception(
                f"Unhandled error in {method}: {e}",
                extra=get_log_context(source=ctx.source, method=method, request_id=ctx.request_id),
            )
            message = f"Internal error: {e}" if self._debug else "Internal error"
            return error_response(request_id, InternalError(message))

        if request.is_notification:
            return None
        return success_response(request_id, result)

    @staticmethod
    def _parse(payload: Any) -> ProtocolRequest:
        if not isinstance(payload, dict):
            raise InvalidRequestError("Request must be a JSON object")
        if "method" not in payload:
            raise InvalidRequestError("Missing method")
        try:
            return ProtocolRequest.model_validate(payload)
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid request: {e.errors()[0]['msg']}")

    async def _authenticate(self, ctx: RequestContext) -> None:
        if ctx.session_id:
            valid = await self._sessions.validate(ctx.session_id)
            if valid or ctx.authenticated:
                return
            raise SessionError()
        if not ctx.authenticated:
            raise AuthenticationError("Authentication required")

    async def _consume(self, category: str, source: str, limit: CategoryLimit) -> None:
        if not self._rate_limiting:
            return
        result = await self._rate_limiter.try_consume(f"{category}:{source}", limit)
        if not result.allowed:
            raise RateLimitError(category, retry_after=result.retry_after)

    @staticmethod
    def _log_rejection(exc: BridgeException, ctx: RequestContext, method: Optional[str]) -> None:
        context = get_log_context(
            source=ctx.source,
            method=method,
            request_id=ctx.request_id,
            category=type(exc).__name__,
        )
        if isinstance(exc, (AuthenticationError, SessionError, RateLimitError, AuthorizationError)):
            logger.warning(f"Rejected request from {ctx.source}: {exc.message}", extra=context)
        else:
            logger.info(f"Request error: {exc.message}", extra=context)

    async def _handle_initialize(self, params: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        client_info = params.get("clientInfo") or {}
        if isinstance(client_info, dict):
            client = f"{client_info.get('name', 'unknown')} {client_info.get('version', 'unknown')}"
        else:
            client = "unknown"

        session_id = await self._sessions.create(ctx.source)
        ctx.session_id = session_id
        logger.info(
            f"MCP client connected: {client}",
            extra=get_log_context(source=ctx.source, session_id=session_id),
        )
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "serverInfo": {"name": self._server_name, "version": self._server_version},
            "capabilities": {name: {} for name, enabled in self._capabilities.items() if enabled},
            "sessionId": session_id,
        }

    async def _handle_ping(self, params: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        return {}

    async def _handle_tools_list(self, params: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        if not self._tools_enabled:
            raise MethodNotFoundError("tools/list")
        return {"tools": self._registry.list_definitions()}

    async def _handle_tools_call(self, params: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        if not self._tools_enabled:
            raise MethodNotFoundError("tools/call")

        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidParamsError("Missing tool name")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InvalidParamsError("Tool arguments must be an object")

        capability = self._registry.get(name)
        if capability is None:
            raise CapabilityNotFoundError(name)

        if capability.executes_command:
            command = capability.command_for(arguments)
            # An empty command is reported by the capability itself
            if command is not None:
                if not self._policy.is_allowed(command):
                    raise AuthorizationError(base_command(command))
                await self._consume(COMMAND_EXECUTION, ctx.source, self._command_limit)

        result = await self._executor.execute(capability, arguments)
        if self._debug:
            logger.info(f"Executed tool: {name}", extra=get_log_context(source=ctx.source, tool=name))
        return result

    async def _handle_resources_list(self, params: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        if not self._resources_enabled:
            raise MethodNotFoundError("resources/list")
        return {"resources": self._registry.list_resource_definitions()}

    async def _handle_resources_read(self, params: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        if not self._resources_enabled:
            raise MethodNotFoundError("resources/read")

        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise InvalidParamsError("Missing resource uri")
        name = resource_name_from_uri(uri)
        resource = self._registry.get_resource(name)
        if resource is None:
            raise CapabilityNotFoundError(name, kind="Resource")
        return await self._executor.read(resource, uri, params)
