"""Capability registry and invocation.

A capability is a named operation behind a uniform ``execute(arguments)``
interface. The dispatcher never looks inside one; it only needs to know
whether the capability runs a host command (so the command policy applies)
and whether it must run on the host's serialized execution context.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from bridge.app.core.logging import get_log_context, get_logger
from bridge.app.exceptions import ToolExecutionError
from bridge.app.services.command_policy import CommandPolicy

logger = get_logger(__name__)

# Handlers receive the call arguments; they may be sync or async
CapabilityHandler = Callable[[dict[str, Any]], Any]
ResourceReader = Callable[[str, dict[str, Any]], Any]

RESOURCE_SCHEME = "resource://"

# Default bounded wait on the host execution context, in seconds
HOST_CALL_TIMEOUT_SECONDS = 2.0


def text_result(text: str, is_error: bool = False) -> dict[str, Any]:
    """Build a tool result with a single text content block."""
    result: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def normalize_result(value: Any) -> dict[str, Any]:
    """Coerce whatever a handler returned into a tool result."""
    if isinstance(value, dict) and "content" in value:
        return value
    if value is None:
        return text_result("")
    if isinstance(value, str):
        return text_result(value)
    return text_result(json.dumps(value, default=str, indent=2))


def empty_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


@dataclass
class Capability:
    """A registered operation that clients can invoke by name."""

    name: str
    description: str
    handler: CapabilityHandler
    input_schema: dict[str, Any] = field(default_factory=empty_schema)
    executes_command: bool = False
    command_argument: str = "command"
    runs_on_host: bool = False

    def command_for(self, arguments: dict[str, Any]) -> Optional[str]:
        """Return the command line this call would execute, if any."""
        if not self.executes_command:
            return None
        command = arguments.get(self.command_argument)
        if command is None:
            return None
        return str(command).strip() or None

    def to_definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class Resource:
    """A readable resource addressed as ``resource://<name>[/...]``."""

    name: str
    description: str
    reader: ResourceReader
    mime_type: str = "application/json"
    runs_on_host: bool = False

    @property
    def uri(self) -> str:
        return f"{RESOURCE_SCHEME}{self.name}"

    def to_definition(self) -> dict[str, Any]:
        return {
            "uri": self.uri,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
        }


def resource_name_from_uri(uri: str) -> str:
    """``resource://status/players`` -> ``status``"""
    if uri.startswith(RESOURCE_SCHEME):
        uri = uri[len(RESOURCE_SCHEME):]
    return uri.split("/", 1)[0]


class CapabilityRegistry:
    """Registry of capabilities and resources exposed to clients."""

    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}
        self._resources: dict[str, Resource] = {}

    def __len__(self) -> int:
        return len(self._capabilities)

    def __contains__(self, name: str) -> bool:
        return name in self._capabilities

    def register(self, capability: Capability) -> None:
        """Register a capability, replacing any with the same name."""
        if capability.name in self._capabilities:
            logger.warning(f"Replacing capability: {capability.name}")
        self._capabilities[capability.name] = capability

    def get(self, name: str) -> Optional[Capability]:
        return self._capabilities.get(name)

    def list_definitions(self) -> list[dict[str, Any]]:
        return [c.to_definition() for c in self._capabilities.values()]

    def register_resource(self, resource: Resource) -> None:
        self._resources[resource.name] = resource

    def get_resource(self, name: str) -> Optional[Resource]:
        return self._resources.get(name)

    def list_resource_definitions(self) -> list[dict[str, Any]]:
        return [r.to_definition() for r in self._resources.values()]


class HostExecutor:
    """Serialized execution context for calls into the host.

    The host's own state is not safe for concurrent use, so every call is
    handed to a single worker thread. The caller waits at most ``timeout``
    seconds; a timeout is reported as ``ToolExecutionError``. The worker
    thread may still finish the call after the caller has given up.
    """

    def __init__(self, timeout: float = HOST_CALL_TIMEOUT_SECONDS):
        self.timeout = timeout
        self._executor: Optional[ThreadPoolExecutor] = None

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="host_")
        return self._executor

    async def run(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run ``fn(*args)`` on the host context with a bounded wait."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._ensure_executor(), functools.partial(fn, *args)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Host call timed out after {self.timeout}s")
            raise ToolExecutionError(f"Host did not respond within {self.timeout}s")

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None


class CapabilityExecutor:
    """Invokes capabilities and resources, turning failures into error results."""

    def __init__(self, host: HostExecutor):
        self._host = host

    @property
    def host(self) -> HostExecutor:
        return self._host

    async def _call(self, fn: Callable[..., Any], runs_on_host: bool, *args: Any) -> Any:
        if runs_on_host:
            return await self._host.run(fn, *args)

        # Off-host handlers share the host timeout; sync ones run on the default pool
        timeout = self._host.timeout
        try:
            if inspect.iscoroutinefunction(fn):
                return await asyncio.wait_for(fn(*args), timeout=timeout)
            loop = asyncio.get_running_loop()
            value = await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(fn, *args)),
                timeout=timeout,
            )
            if inspect.isawaitable(value):
                value = await asyncio.wait_for(value, timeout=timeout)
            return value
        except asyncio.TimeoutError:
            logger.warning(f"Capability call timed out after {timeout}s")
            raise ToolExecutionError(f"Capability did not respond within {timeout}s")

    async def execute(self, capability: Capability, arguments: dict[str, Any]) -> dict[str, Any]:
        """Run a capability. Never raises for handler failures."""
        try:
            value = await self._call(capability.handler, capability.runs_on_host, arguments)
        except ToolExecutionError as e:
            return text_result(f"Tool execution failed: {e.message}", is_error=True)
        except Exception as e:
            logger.error(
                f"Error executing tool {capability.name}: {e}",
                extra=get_log_context(tool=capability.name),
            )
            return text_result(f"Tool execution failed: {e}", is_error=True)
        return normalize_result(value)

    async def read(self, resource: Resource, uri: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            value = await self._call(resource.reader, resource.runs_on_host, uri, params)
        except Exception as e:
            logger.error(f"Error fetching resource {uri}: {e}")
            return {"contents": [{"uri": uri, "mimeType": "text/plain", "text": f"Resource fetch failed: {e}"}]}

        if isinstance(value, dict) and "contents" in value:
            return value
        if isinstance(value, str):
            text = value
        else:
            text = json.dumps(value, default=str, indent=2)
        return {"contents": [{"uri": uri, "mimeType": resource.mime_type, "text": text}]}


def allowed_commands_capability(policy: CommandPolicy) -> Capability:
    """Built-in capability describing the current command whitelist."""

    def describe(arguments: dict[str, Any]) -> dict[str, Any]:
        entries = policy.describe()
        lines = ["Command Whitelist Status:", ""]
        if not policy.enabled:
            lines.append("Command whitelisting is DISABLED - All commands are allowed")
        elif len(entries) == 1 and entries[0].startswith("ALL_COMMANDS_ALLOWED"):
            lines.append(f"Universal access enabled: {entries[0]}")
        else:
            lines.append("Command whitelisting is ENABLED")
            lines.append(f"Allowed commands ({len(entries)} total):")
            lines.append("")
            for entry in entries:
                suffix = " (wildcard pattern)" if "*" in entry else ""
                lines.append(f"  - {entry}{suffix}")
            lines.append("")
            lines.append("Note: Wildcard patterns support * for any characters")
            lines.append("Example: 'ban*' matches 'ban', 'banlist', 'ban-ip', etc.")
        lines.append("")
        lines.append("To allow all commands, add '*' to the whitelist or disable command whitelisting.")
        return text_result("\n".join(lines))

    return Capability(
        name="get_allowed_commands",
        description="Get the list of commands that are currently allowed by the command whitelist",
        handler=describe,
    )


def command_capability(
    name: str,
    run_command: Callable[[str], Any],
    description: str = "Execute a host console command",
) -> Capability:
    """Build a capability that runs a console command on the host.

    ``run_command`` is called on the host execution context with the full
    command line and returns its output (or None).
    """

    def execute(arguments: dict[str, Any]) -> dict[str, Any]:
        command = str(arguments.get("command") or "").strip()
        if not command:
            return text_result("Command parameter is required", is_error=True)
        output = run_command(command)
        return text_result(
            f"Command executed successfully: {command}\nResult: {output if output is not None else 'Command completed'}"
        )

    return Capability(
        name=name,
        description=description,
        handler=execute,
        input_schema={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Console command to execute"},
            },
            "required": ["command"],
        },
        executes_command=True,
        runs_on_host=True,
    )
