"""FastMCP server for tracker-mcp.

Exposes two unified tools, ``project`` and ``issue``, each routed by its
``action`` argument.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

from mcp.server.fastmcp import FastMCP

from tracker_mcp.config import ServerConfig, get_config
from tracker_mcp.core.observability import audit_log
from tracker_mcp.core.services import get_services, set_services
from tracker_mcp.tools.unified import register_unified_tools

logger = logging.getLogger(__name__)


def create_server(config: Optional[ServerConfig] = None) -> FastMCP:
    """Create and configure the FastMCP server instance."""

    if config is None:
        config = get_config()

    config.setup_logging()

    # Build the store and services up front so bad store settings fail at startup.
    services = get_services(config)
    logger.info("Document store: %s", type(services.store).__name__)

    mcp = FastMCP(name=config.server_name)
    register_unified_tools(mcp, config)

    logger.info("Server created: %s v%s", config.server_name, config.server_version)
    return mcp


def _close_store() -> None:
    close = getattr(get_services().store, "close", None)
    if callable(close):
        close()
    set_services(None)


def main() -> None:
    """Main entry point for the tracker-mcp server."""

    try:
        config = get_config()
        server = create_server(config)

        logger.info("Starting %s v%s", config.server_name, config.server_version)
        audit_log("tool_invocation", tool="server_start", version=config.server_version)

        server.run()

    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
        _close_store()
        sys.exit(0)
    except BaseException as exc:
        logger.error("Server error: %s: %s", type(exc).__name__, exc)
        audit_log("tool_invocation", tool="server_error", error=str(exc), success=False)
        sys.exit(1)


if __name__ == "__main__":
    main()
