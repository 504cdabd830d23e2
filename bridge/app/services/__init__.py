"""Services package for the bridge.

This package provides:
- Session lifecycle with a background expiry sweep
- Command allow-listing with wildcard patterns
- Capability registry and serialized host execution
- JSON-RPC dispatch and SSE fan-out
"""

from bridge.app.services.broadcaster import StreamSubscriber, SubscriberRegistry
from bridge.app.services.capabilities import (
    Capability,
    CapabilityRegistry,
    HostExecutor,
    Resource,
    command_capability,
    text_result,
)
from bridge.app.services.command_policy import CommandPolicy
from bridge.app.services.dispatcher import RequestContext, RequestDispatcher
from bridge.app.services.runtime import BridgeRuntime
from bridge.app.services.session_store import Session, SessionStore

__all__ = [
    "StreamSubscriber",
    "SubscriberRegistry",
    "Capability",
    "CapabilityRegistry",
    "HostExecutor",
    "Resource",
    "command_capability",
    "text_result",
    "CommandPolicy",
    "RequestContext",
    "RequestDispatcher",
    "BridgeRuntime",
    "Session",
    "SessionStore",
]
