"""API endpoints package for the bridge."""

from bridge.app.api.mcp import create_mcp_router

__all__ = [
    "create_mcp_router",
]
