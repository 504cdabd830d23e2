"""Host administration bridge: authenticated JSON-RPC (MCP) over HTTP and SSE."""

__version__ = "0.1.0"
