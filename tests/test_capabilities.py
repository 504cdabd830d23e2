"""Tests for the capability registry, host executor and result helpers."""

import asyncio
import threading
import time

import pytest

from bridge.app.exceptions import ToolExecutionError
from bridge.app.services.capabilities import (
    Capability,
    CapabilityExecutor,
    CapabilityRegistry,
    HostExecutor,
    Resource,
    allowed_commands_capability,
    command_capability,
    normalize_result,
    resource_name_from_uri,
    text_result,
)
from bridge.app.services.command_policy import CommandPolicy


class TestResultHelpers:
    """Tests for tool result construction."""

    def test_text_result(self):
        assert text_result("ok") == {"content": [{"type": "text", "text": "ok"}]}
        assert text_result("bad", is_error=True)["isError"] is True

    def test_normalize_passes_through_tool_results(self):
        result = {"content": [{"type": "text", "text": "x"}], "isError": True}
        assert normalize_result(result) is result

    def test_normalize_wraps_plain_values(self):
        assert normalize_result("hello")["content"][0]["text"] == "hello"
        assert normalize_result(None)["content"][0]["text"] == ""
        assert '"players": 3' in normalize_result({"players": 3})["content"][0]["text"]


class TestCapabilityRegistry:
    """Tests for registration and listing."""

    def test_register_and_list(self):
        registry = CapabilityRegistry()
        registry.register(Capability(name="status", description="Server status", handler=lambda args: "up"))

        assert "status" in registry
        assert len(registry) == 1
        assert registry.get("missing") is None
        definition = registry.list_definitions()[0]
        assert definition["name"] == "status"
        assert definition["inputSchema"]["type"] == "object"

    def test_resources(self):
        registry = CapabilityRegistry()
        registry.register_resource(Resource(name="status", description="Status", reader=lambda uri, params: {}))

        definition = registry.list_resource_definitions()[0]
        assert definition["uri"] == "resource://status"
        assert definition["mimeType"] == "application/json"
        assert registry.get_resource("status") is not None

    def test_resource_name_from_uri(self):
        assert resource_name_from_uri("resource://status/players") == "status"
        assert resource_name_from_uri("status") == "status"

    def test_command_for(self):
        capability = command_capability("execute_command", lambda command: None)
        assert capability.command_for({"command": "  say hi "}) == "say hi"
        assert capability.command_for({"command": ""}) is None
        assert capability.command_for({}) is None

        plain = Capability(name="status", description="", handler=lambda args: None)
        assert plain.command_for({"command": "stop"}) is None


class TestHostExecutor:
    """Tests for serialized host execution with a bounded wait."""

    @pytest.mark.asyncio
    async def test_runs_on_single_worker_thread(self):
        host = HostExecutor(timeout=1.0)
        try:
            first = await host.run(lambda: threading.current_thread().name)
            second = await host.run(lambda: threading.current_thread().name)
        finally:
            host.shutdown()

        assert first == second
        assert first.startswith("host_")
        assert first != threading.current_thread().name

    @pytest.mark.asyncio
    async def test_timeout_raises_tool_execution_error(self):
        host = HostExecutor(timeout=0.05)
        try:
            with pytest.raises(ToolExecutionError):
                await host.run(time.sleep, 0.5)
        finally:
            host.shutdown()

    @pytest.mark.asyncio
    async def test_usable_after_shutdown(self):
        host = HostExecutor(timeout=1.0)
        host.shutdown()
        assert await host.run(lambda x: x * 2, 21) == 42
        host.shutdown()


class TestCapabilityExecutor:
    """Tests for invocation and failure conversion."""

    @pytest.fixture
    def executor(self):
        host = HostExecutor(timeout=0.2)
        yield CapabilityExecutor(host)
        host.shutdown()

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self, executor):
        async def async_handler(arguments):
            return f"async {arguments['x']}"

        sync_cap = Capability(name="s", description="", handler=lambda args: f"sync {args['x']}")
        async_cap = Capability(name="a", description="", handler=async_handler)

        assert (await executor.execute(sync_cap, {"x": 1}))["content"][0]["text"] == "sync 1"
        assert (await executor.execute(async_cap, {"x": 2}))["content"][0]["text"] == "async 2"

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_error_result(self, executor):
        def boom(arguments):
            raise RuntimeError("world not loaded")

        result = await executor.execute(Capability(name="b", description="", handler=boom), {})

        assert result["isError"] is True
        assert result["content"][0]["text"] == "Tool execution failed: world not loaded"

    @pytest.mark.asyncio
    async def test_host_timeout_becomes_error_result(self, executor):
        capability = Capability(
            name="slow",
            description="",
            handler=lambda args: time.sleep(1.0),
            runs_on_host=True,
        )

        result = await executor.execute(capability, {})

        assert result["isError"] is True
        assert "did not respond" in result["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_off_host_handlers_share_the_timeout(self, executor):
        async def hangs(arguments):
            await asyncio.sleep(5)

        blocking = Capability(name="blocking", description="", handler=lambda args: time.sleep(1.0))
        waiting = Capability(name="waiting", description="", handler=hangs)

        started = time.monotonic()
        blocked = await executor.execute(blocking, {})
        waited = await executor.execute(waiting, {})

        assert time.monotonic() - started < 0.9
        assert blocked["isError"] is True
        assert waited["isError"] is True
        assert waited["content"][0]["text"] == "Tool execution failed: Capability did not respond within 0.2s"

    @pytest.mark.asyncio
    async def test_sync_handler_runs_off_the_event_loop(self, executor):
        loop_thread = threading.get_ident()
        capability = Capability(name="where", description="", handler=lambda args: threading.get_ident())

        result = await executor.execute(capability, {})
        assert result["content"][0]["text"] != str(loop_thread)

    @pytest.mark.asyncio
    async def test_read_resource(self, executor):
        resource = Resource(name="status", description="", reader=lambda uri, params: {"online": True})
        result = await executor.read(resource, "resource://status", {})

        content = result["contents"][0]
        assert content["uri"] == "resource://status"
        assert '"online": true' in content["text"]

    @pytest.mark.asyncio
    async def test_read_failure_becomes_text(self, executor):
        def broken(uri, params):
            raise OSError("disk gone")

        result = await executor.read(Resource(name="logs", description="", reader=broken), "resource://logs", {})
        assert result["contents"][0]["text"] == "Resource fetch failed: disk gone"


class TestBuiltinCapabilities:
    """Tests for the command capabilities shipped with the bridge."""

    @pytest.mark.asyncio
    async def test_command_capability_runs_on_host(self):
        executed = []

        def run_command(command):
            executed.append((command, threading.current_thread().name))
            return "done"

        host = HostExecutor(timeout=1.0)
        try:
            result = await CapabilityExecutor(host).execute(
                command_capability("execute_command", run_command), {"command": "say hi"}
            )
        finally:
            host.shutdown()

        assert executed[0][0] == "say hi"
        assert executed[0][1].startswith("host_")
        assert result["content"][0]["text"] == "Command executed successfully: say hi\nResult: done"

    @pytest.mark.asyncio
    async def test_command_capability_requires_command(self):
        host = HostExecutor(timeout=1.0)
        try:
            result = await CapabilityExecutor(host).execute(
                command_capability("execute_command", lambda command: None), {}
            )
        finally:
            host.shutdown()

        assert result["isError"] is True
        assert result["content"][0]["text"] == "Command parameter is required"

    def test_allowed_commands_lists_patterns(self):
        capability = allowed_commands_capability(CommandPolicy(["list", "ban*"]))
        text = capability.handler({})["content"][0]["text"]

        assert "ENABLED" in text
        assert "Allowed commands (2 total)" in text
        assert "ban* (wildcard pattern)" in text

    def test_allowed_commands_follows_reload(self):
        policy = CommandPolicy(["list"])
        capability = allowed_commands_capability(policy)
        policy.reload(["*"])

        assert "Universal access enabled" in capability.handler({})["content"][0]["text"]

    def test_allowed_commands_when_disabled(self):
        capability = allowed_commands_capability(CommandPolicy([], enabled=False))
        assert "DISABLED" in capability.handler({})["content"][0]["text"]
