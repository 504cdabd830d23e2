"""Middleware package for the bridge."""

from bridge.app.middleware.auth import (
    AttemptTracker,
    AuthOutcome,
    CredentialValidator,
    NetworkPolicy,
    extract_api_key,
    get_client_source,
)
from bridge.app.middleware.rate_limit import CategoryLimit, RateLimiter
from bridge.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "AttemptTracker",
    "AuthOutcome",
    "CredentialValidator",
    "NetworkPolicy",
    "extract_api_key",
    "get_client_source",
    "CategoryLimit",
    "RateLimiter",
    "RequestIdMiddleware",
    "get_request_id",
]
