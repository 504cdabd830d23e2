"""Service wiring.

Every stateful service is an explicit instance owned by ``BridgeRuntime``
rather than module-level state, so tests can build isolated runtimes with
their own settings, clocks and capabilities.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from bridge import __version__
from bridge.app.core.config import Settings
from bridge.app.core.logging import get_logger
from bridge.app.middleware.auth import AttemptTracker, CredentialValidator, NetworkPolicy
from bridge.app.middleware.rate_limit import RateLimiter
from bridge.app.services.broadcaster import SubscriberRegistry
from bridge.app.services.capabilities import (
    CapabilityExecutor,
    CapabilityRegistry,
    HostExecutor,
    allowed_commands_capability,
)
from bridge.app.services.command_policy import CommandPolicy
from bridge.app.services.dispatcher import RequestDispatcher
from bridge.app.services.session_store import SessionStore

logger = get_logger(__name__)

# Buckets and authentication records untouched this long are dropped
IDLE_STATE_SECONDS = 600.0


@dataclass
class BridgeRuntime:
    settings: Settings
    rate_limiter: RateLimiter
    attempts: AttemptTracker
    credentials: CredentialValidator
    network: NetworkPolicy
    sessions: SessionStore
    policy: CommandPolicy
    registry: CapabilityRegistry
    host: HostExecutor
    dispatcher: RequestDispatcher
    subscribers: SubscriberRegistry
    _housekeeping_task: Optional[asyncio.Task] = field(default=None, init=False, repr=False)
    _stop_event: Optional[asyncio.Event] = field(default=None, init=False, repr=False)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: Optional[CapabilityRegistry] = None,
        rate_limiter: Optional[RateLimiter] = None,
        attempts: Optional[AttemptTracker] = None,
        sessions: Optional[SessionStore] = None,
    ) -> "BridgeRuntime":
        """Build every service from settings.

        ``rate_limiter``, ``attempts`` and ``sessions`` may be supplied to
        inject clocks in tests.
        """
        rate_limiter = rate_limiter or RateLimiter()
        attempts = attempts or AttemptTracker()
        sessions = sessions or SessionStore(
            timeout_seconds=settings.session_timeout_minutes * 60,
            sweep_interval=settings.session_sweep_interval_seconds,
        )
        policy = CommandPolicy(
            settings.allowed_commands,
            enabled=settings.command_whitelist_enabled,
            debug=settings.debug,
        )

        registry = registry or CapabilityRegistry()
        if "get_allowed_commands" not in registry:
            registry.register(allowed_commands_capability(policy))

        host = HostExecutor(timeout=settings.host_call_timeout_seconds)
        dispatcher = RequestDispatcher(
            settings=settings,
            registry=registry,
            executor=CapabilityExecutor(host),
            sessions=sessions,
            policy=policy,
            rate_limiter=rate_limiter,
            server_version=__version__,
        )
        return cls(
            settings=settings,
            rate_limiter=rate_limiter,
            attempts=attempts,
            credentials=CredentialValidator(settings, rate_limiter, attempts),
            network=NetworkPolicy.from_settings(settings),
            sessions=sessions,
            policy=policy,
            registry=registry,
            host=host,
            dispatcher=dispatcher,
            subscribers=SubscriberRegistry(max_connections=settings.max_sse_connections),
        )

    async def start(self) -> None:
        await self.sessions.start()
        if self._housekeeping_task is None:
            self._stop_event = asyncio.Event()
            self._housekeeping_task = asyncio.create_task(self._run_housekeeping())
        logger.info(
            f"Bridge runtime started ({len(self.registry)} tools, "
            f"{len(self.policy.entries)} command patterns)"
        )

    async def stop(self) -> None:
        await self.subscribers.close_all()
        await self._stop_housekeeping()
        await self.sessions.stop()
        self.host.shutdown()
        logger.info("Bridge runtime stopped")

    async def housekeeping(self) -> tuple[int, int]:
        """Drop idle rate limit buckets and authentication records.

        Returns:
            Number of buckets and records removed
        """
        idle_seconds = max(IDLE_STATE_SECONDS, self.settings.temp_ban_minutes * 60)
        buckets = await self.rate_limiter.cleanup(idle_seconds=idle_seconds)
        records = await self.attempts.prune(idle_seconds)
        return buckets, records

    async def _run_housekeeping(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.settings.session_sweep_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.housekeeping()
            except Exception as e:
                logger.error(f"Error during housekeeping: {e}")

    async def _stop_housekeeping(self) -> None:
        if self._housekeeping_task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._housekeeping_task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Housekeeping did not stop gracefully, cancelling")
            self._housekeeping_task.cancel()
            try:
                await self._housekeeping_task
            except asyncio.CancelledError:
                pass
        finally:
            self._housekeeping_task = None
            self._stop_event = None

    def reload(self, settings: Settings) -> None:
        """Apply new settings without a restart.

        Session and bucket tables are kept; the command patterns, credential
        configuration and limits are replaced.
        """
        self.settings = settings
        self.policy.reload(settings.allowed_commands, enabled=settings.command_whitelist_enabled)
        self.credentials.configure(settings)
        self.dispatcher.configure(settings)
        self.network = NetworkPolicy.from_settings(settings)
        self.sessions.timeout_seconds = settings.session_timeout_minutes * 60
        self.subscribers.max_connections = settings.max_sse_connections
        self.host.timeout = settings.host_call_timeout_seconds
        logger.info("Configuration reloaded")

    async def publish(self, event: str, data: Any) -> int:
        """Push a host event to every SSE subscriber."""
        return await self.subscribers.broadcast(event, data)
