import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list(raw: Any) -> list[str]:
    """Parse a list-valued setting.

    Accepts a real list, a JSON list, or a comma/whitespace separated string.
    Empty input yields an empty list.
    """
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate plain strings so a hand-edited .env file
    # does not crash the process at startup.
    if raw.startswith(("[", '"')):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()

    # Deduplicate while preserving order.
    seen: set[str] = set()
    result: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        if part and part not in seen:
            seen.add(part)
            result.append(part)
    return result


DEFAULT_ALLOWED_COMMANDS = [
    "list",
    "say",
    "tp",
    "kick",
    "ban",
    "pardon",
    "op",
    "deop",
    "gamemode",
    "time",
    "weather",
    "difficulty",
]


class Settings(BaseSettings):
    """Bridge settings loaded from environment variables.

    All settings can be configured via environment variables (prefixed with
    ``BRIDGE_``) or a .env file.
    """

    # Debug mode - enables detailed error responses and pattern logging
    debug: bool = False
    server_name: str = "HostBridge"

    # HTTP transport
    host: str = "0.0.0.0"
    port: int = 25575
    endpoint: str = "/mcp"
    sse_enabled: bool = True
    max_sse_connections: int = 20
    sse_keepalive_seconds: float = 15.0
    access_logging: bool = False
    trust_proxy_headers: bool = False  # Honour X-Forwarded-For for the source address

    # CORS settings
    cors_enabled: bool = False
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    # Authentication
    api_key_enabled: bool = True
    api_key: str = "change-this-to-a-secure-value"
    localhost_only: bool = False
    allowed_networks: Annotated[list[str], NoDecode] = []  # IPs or CIDRs, empty = any
    session_timeout_minutes: int = 30  # 0 = sessions never expire
    session_sweep_interval_seconds: float = 60.0

    # Command whitelisting
    command_whitelist_enabled: bool = True
    allowed_commands: Annotated[list[str], NoDecode] = DEFAULT_ALLOWED_COMMANDS

    # Rate limiting, one token bucket per (category, source)
    rate_limiting_enabled: bool = True
    rate_limit_multiplier: float = 1.0
    rate_limit_auth_capacity: int = 5
    rate_limit_auth_refill_per_minute: float = 5.0
    rate_limit_api_capacity: int = 100
    rate_limit_api_refill_per_minute: float = 60.0
    rate_limit_command_capacity: int = 30
    rate_limit_command_refill_per_minute: float = 20.0
    max_auth_attempts: int = 5  # 0 disables temporary bans
    temp_ban_minutes: float = 5.0

    # Host execution context
    host_call_timeout_seconds: float = 2.0

    # Advertised MCP capabilities
    tools_enabled: bool = True
    resources_enabled: bool = True
    prompts_enabled: bool = False
    logging_enabled: bool = True

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("cors_origins", "allowed_networks", "allowed_commands", mode="before")
    @classmethod
    def decode_list(cls, v: Any) -> list[str]:
        return _parse_list(v)

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate the port is a usable TCP port."""
        if v < 1 or v > 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Validate the endpoint is a non-empty absolute path."""
        v = v.strip()
        if not v or not v.startswith("/"):
            raise ValueError("endpoint must start with '/'")
        v = v.rstrip("/")
        if not v:
            raise ValueError("endpoint must not be the root path")
        return v

    @field_validator(
        "max_sse_connections",
        "rate_limit_auth_capacity",
        "rate_limit_api_capacity",
        "rate_limit_command_capacity",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate capacity values are positive."""
        if v < 1:
            raise ValueError("capacity values must be at least 1")
        return v

    @field_validator(
        "rate_limit_auth_refill_per_minute",
        "rate_limit_api_refill_per_minute",
        "rate_limit_command_refill_per_minute",
        "rate_limit_multiplier",
        "host_call_timeout_seconds",
        "session_sweep_interval_seconds",
        "sse_keepalive_seconds",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Validate rates and timeouts are positive."""
        if v <= 0:
            raise ValueError("rates and timeouts must be positive")
        return v

    @field_validator("session_timeout_minutes", "max_auth_attempts", "temp_ban_minutes")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    model_config = SettingsConfigDict(env_prefix="BRIDGE_", env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return settings


def reload_settings() -> Settings:
    """Re-read the environment and .env file and replace the global settings."""
    global settings
    settings = Settings()
    return settings
