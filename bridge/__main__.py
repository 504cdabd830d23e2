import sys

from bridge.app.core.logging import get_logger
from bridge.app.exceptions import TransportError
from bridge.app.server import run_server


def main() -> int:
    try:
        run_server()
    except TransportError as e:
        get_logger("bridge").error(f"Failed to start MCP server: {e.message}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
