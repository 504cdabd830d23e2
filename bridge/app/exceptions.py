"""Exception taxonomy for the bridge.

Every exception carries the HTTP status used when it escapes a route and the
JSON-RPC error code used in the response envelope.
"""

from typing import Any, Optional


class BridgeException(Exception):
    """Base class for bridge exceptions with HTTP status and JSON-RPC code.

    All custom exceptions should inherit from this class and define
    their specific status_code and code.
    """
    status_code: int = 500
    code: int = -32603

    def __init__(self, message: str = "Bridge error"):
        self.message = message
        super().__init__(message)

    def to_error(self) -> dict[str, Any]:
        """Return the JSON-RPC ``error`` object for this exception."""
        return {"code": self.code, "message": self.message}


class ProtocolError(BridgeException):
    """Malformed envelope or unroutable request.

    Always recovered locally and answered with an error envelope.
    """
    status_code = 400
    code = -32600


class ParseError(ProtocolError):
    code = -32700

    def __init__(self, message: str = "Parse error"):
        super().__init__(message)


class InvalidRequestError(ProtocolError):
    code = -32600

    def __init__(self, message: str = "Invalid request"):
        super().__init__(message)


class MethodNotFoundError(ProtocolError):
    status_code = 404
    code = -32601

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Method not found: {method}")


class InvalidParamsError(ProtocolError):
    code = -32602

    def __init__(self, message: str = "Invalid params"):
        super().__init__(message)


class InternalError(BridgeException):
    status_code = 500
    code = -32603

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)


class AuthenticationError(BridgeException):
    """Raised when the credential is missing or wrong.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    code = -32001

    def __init__(self, detail: str = "Authentication failed"):
        self.detail = detail
        super().__init__(detail)


class RateLimitError(BridgeException):
    """Raised when a token bucket is exhausted or the source is banned.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    code = -32002

    def __init__(
        self,
        category: str,
        retry_after: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        self.category = category
        self.retry_after = retry_after
        message = detail or f"Rate limit exceeded for {category}"
        if retry_after:
            message += f". Retry after {retry_after}s"
        super().__init__(message)

    def to_error(self) -> dict[str, Any]:
        error = super().to_error()
        error["data"] = {"category": self.category, "retryAfter": self.retry_after}
        return error


class SessionError(BridgeException):
    """Raised for an unknown or expired session id.

    Clients should re-authenticate rather than retry.
    """
    status_code = 401
    code = -32003

    def __init__(self, detail: str = "Invalid or expired session"):
        super().__init__(detail)


class AuthorizationError(BridgeException):
    """Raised when a command is not on the allow-list.

    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    code = -32004

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"Command not allowed: {command}")


class CapabilityNotFoundError(BridgeException):
    status_code = 404
    code = -32005

    def __init__(self, name: str, kind: str = "Tool"):
        self.name = name
        super().__init__(f"{kind} not found: {name}")


class ToolExecutionError(BridgeException):
    """A capability raised, or the host did not answer within the bounded wait."""
    status_code = 500
    code = -32006

    def __init__(self, message: str = "Tool execution failed"):
        super().__init__(message)


class CapacityError(BridgeException):
    """Raised when the streaming subscriber cap is reached.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    code = -32007

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Maximum number of connections reached ({limit})")


class OriginNotAllowedError(BridgeException):
    status_code = 403
    code = -32008

    def __init__(self, source: str, detail: Optional[str] = None):
        self.source = source
        super().__init__(detail or f"Connections from {source} are not allowed")


class TransportError(BridgeException):
    """Bind/listen failure or a broken stream.

    Fatal only for the connection or subscriber involved.
    """
    status_code = 500
    code = -32603

    def __init__(self, message: str = "Transport error"):
        super().__init__(message)
