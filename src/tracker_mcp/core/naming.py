"""Naming helpers for MCP tool registration."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from typing import Any, Callable

from mcp.server.fastmcp import FastMCP
from mcp.types import TextContent

from tracker_mcp.core.observability import mcp_tool

logger = logging.getLogger(__name__)


def _minify_response(result: dict[str, Any]) -> TextContent:
    """Convert dict to TextContent with minified JSON."""
    return TextContent(
        type="text",
        text=json.dumps(result, separators=(",", ":"), default=str),
    )


def canonical_tool(
    mcp: FastMCP,
    *,
    canonical_name: str,
    **tool_kwargs: Any,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator that registers a tool under its canonical name.

    This decorator wraps the tool function to:
    1. Serialize dict results as minified JSON text content
    2. Apply observability instrumentation via mcp_tool
    3. Register it with FastMCP under the canonical name

    Args:
        mcp: FastMCP instance
        canonical_name: The canonical name for the tool
        **tool_kwargs: Additional kwargs passed to mcp.tool()
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                result = await func(*args, **kwargs)
                if isinstance(result, dict):
                    return _minify_response(result)
                return result

            wrapper = async_wrapper
        else:

            @functools.wraps(func)
            def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
                result = func(*args, **kwargs)
                if isinstance(result, dict):
                    return _minify_response(result)
                return result

            wrapper = sync_wrapper

        # Apply mcp_tool first, then register with FastMCP
        instrumented = mcp_tool(tool_name=canonical_name)(wrapper)
        logger.debug(f"Registering tool '{canonical_name}'")
        # Results are already TextContent; skip output-schema inference from "-> dict".
        tool_kwargs.setdefault("structured_output", False)
        return mcp.tool(name=canonical_name, **tool_kwargs)(instrumented)

    return decorator
