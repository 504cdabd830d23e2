"""Tests for service wiring, reload and event publishing."""

import asyncio
import json

import pytest

from bridge.app.middleware.auth import AttemptTracker
from bridge.app.middleware.rate_limit import RateLimiter
from bridge.app.services.capabilities import CapabilityRegistry
from bridge.app.services.dispatcher import RequestContext
from bridge.app.services.runtime import BridgeRuntime
from tests.conftest import make_settings


def call(name, arguments=None) -> str:
    return json.dumps({
        "jsonrpc": "2.0",
        "id": 1,
        "method": "tools/call",
        "params": {"name": name, "arguments": arguments or {}},
    })


class TestBridgeRuntime:
    """Tests for BridgeRuntime."""

    def test_from_settings_registers_builtin_capability(self):
        runtime = BridgeRuntime.from_settings(make_settings())
        assert "get_allowed_commands" in runtime.registry

    def test_existing_registry_is_reused(self):
        registry = CapabilityRegistry()
        runtime = BridgeRuntime.from_settings(make_settings(), registry=registry)
        assert runtime.registry is registry

    def test_session_timeout_in_seconds(self):
        runtime = BridgeRuntime.from_settings(make_settings(session_timeout_minutes=2))
        assert runtime.sessions.timeout_seconds == 120

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        runtime = BridgeRuntime.from_settings(make_settings(session_sweep_interval_seconds=30))
        await runtime.start()
        assert runtime.sessions.running is True

        subscriber = await runtime.subscribers.connect("10.0.0.1")
        await runtime.stop()

        assert runtime.sessions.running is False
        assert runtime.subscribers.count == 0
        assert subscriber.closed is True

    @pytest.mark.asyncio
    async def test_reload_replaces_command_patterns(self):
        runtime = BridgeRuntime.from_settings(make_settings(allowed_commands=["list"]))
        ctx = RequestContext(source="10.0.0.1", authenticated=True)

        before = await runtime.dispatcher.dispatch(call("get_allowed_commands"), ctx)
        assert "Allowed commands (1 total)" in before["result"]["content"][0]["text"]

        runtime.reload(make_settings(allowed_commands=["*"], max_sse_connections=3))

        assert runtime.policy.is_allowed("stop") is True
        assert runtime.subscribers.max_connections == 3
        after = await runtime.dispatcher.dispatch(call("get_allowed_commands"), ctx)
        assert "Universal access enabled" in after["result"]["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_reload_rotates_api_key(self):
        runtime = BridgeRuntime.from_settings(make_settings(api_key="old"))
        runtime.reload(make_settings(api_key="new"))

        assert await runtime.credentials.validate("old", "10.0.0.1") is False
        assert await runtime.credentials.validate("new", "10.0.0.1") is True

    @pytest.mark.asyncio
    async def test_publish_reaches_subscribers(self):
        runtime = BridgeRuntime.from_settings(make_settings())
        subscriber = await runtime.subscribers.connect("10.0.0.1")

        delivered = await runtime.publish("player_join", {"player": "Steve"})

        assert delivered == 1
        frame = subscriber.queue.get_nowait()
        assert frame.startswith("event: player_join\n")

    @pytest.mark.asyncio
    async def test_housekeeping_drops_idle_state(self, clock):
        rate_limiter = RateLimiter(clock=clock)
        attempts = AttemptTracker(clock=clock)
        runtime = BridgeRuntime.from_settings(
            make_settings(api_key="secret"),
            rate_limiter=rate_limiter,
            attempts=attempts,
        )
        assert (await runtime.credentials.check("wrong", "10.0.0.1")).allowed is False
        clock.advance(700)
        assert (await runtime.credentials.check("wrong", "10.0.0.2")).allowed is False

        assert await runtime.housekeeping() == (1, 1)
        assert await attempts.get("10.0.0.1") is None
        assert await attempts.get("10.0.0.2") is not None
        assert len(rate_limiter) == 1

    @pytest.mark.asyncio
    async def test_housekeeping_runs_periodically(self):
        runtime = BridgeRuntime.from_settings(make_settings(session_sweep_interval_seconds=0.05))
        await runtime.attempts.record_failure("10.0.0.1", max_attempts=5, ban_seconds=1)
        record = await runtime.attempts.get("10.0.0.1")
        record.last_attempt_at -= 3600

        await runtime.start()
        try:
            await asyncio.sleep(0.2)
        finally:
            await runtime.stop()

        assert await runtime.attempts.get("10.0.0.1") is None
