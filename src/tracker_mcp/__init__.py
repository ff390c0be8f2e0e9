"""Tracker MCP - MCP server for issue tracking with cascading deletes and bulk operations."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("tracker-mcp")
except PackageNotFoundError:
    # Package not installed (development mode without editable install)
    __version__ = "0.1.0"

from tracker_mcp.server import create_server, main

__all__ = ["__version__", "create_server", "main"]
