"""
Observability utilities for tracker-mcp.

Provides metrics emission and audit logging for MCP tools. Both are
written to the standard logger as structured records, so the JSON
formatter in :mod:`tracker_mcp.core.logging_config` carries them to
whatever aggregates stderr.

FastMCP integration:
    The ``mcp_tool`` decorator is applied by ``canonical_tool`` to every
    registered tool. Destructive handlers add their own audit entries:

        from tracker_mcp.core.observability import audit_log

        audit_log("resource_deleted", resource_type="project", resource_id="ENG")
"""

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from tracker_mcp.core.context import (
    generate_correlation_id,
    get_client_id,
    get_correlation_id,
    sync_request_context,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MetricType(Enum):
    """Types of metrics that can be emitted."""

    COUNTER = "counter"
    HISTOGRAM = "histogram"
    TIMER = "timer"


class AuditEventType(Enum):
    """Types of audit events."""

    TOOL_INVOCATION = "tool_invocation"
    RESOURCE_CREATED = "resource_created"
    RESOURCE_DELETED = "resource_deleted"
    PROJECT_ARCHIVED = "project_archived"
    BULK_OPERATION = "bulk_operation"


@dataclass
class Metric:
    """Structured metric data."""

    name: str
    value: Union[int, float]
    metric_type: MetricType
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "value": self.value,
            "type": self.metric_type.value,
            "labels": self.labels,
            "timestamp": self.timestamp,
        }


@dataclass
class AuditEvent:
    """Structured audit event."""

    event_type: AuditEventType
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: Optional[str] = None
    client_id: Optional[str] = None

    def __post_init__(self) -> None:
        """Auto-populate correlation_id and client_id from context if not set."""
        if self.correlation_id is None:
            self.correlation_id = get_correlation_id() or None
        if self.client_id is None:
            ctx_client = get_client_id()
            if ctx_client and ctx_client != "anonymous":
                self.client_id = ctx_client

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "details": self.details,
        }
        if self.correlation_id:
            result["correlation_id"] = self.correlation_id
        if self.client_id:
            result["client_id"] = self.client_id
        return result


class MetricsCollector:
    """
    Collects and emits metrics to the standard logger.

    Metrics are logged as structured records for easy parsing by
    log aggregation systems.
    """

    def __init__(self, prefix: str = "tracker_mcp"):
        self.prefix = prefix
        self._logger = logging.getLogger(f"{__name__}.metrics")

    def emit(self, metric: Metric) -> None:
        """Emit a metric to the logger."""
        self._logger.info(
            f"METRIC: {self.prefix}.{metric.name}", extra={"metric": metric.to_dict()}
        )

    def counter(
        self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None
    ) -> None:
        """Emit a counter metric."""
        self.emit(
            Metric(
                name=name,
                value=value,
                metric_type=MetricType.COUNTER,
                labels=labels or {},
            )
        )

    def timer(
        self, name: str, duration_ms: float, labels: Optional[Dict[str, str]] = None
    ) -> None:
        """Emit a timer metric (duration in milliseconds)."""
        self.emit(
            Metric(
                name=name,
                value=duration_ms,
                metric_type=MetricType.TIMER,
                labels=labels or {},
            )
        )

    def histogram(
        self,
        name: str,
        value: Union[int, float],
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Emit a histogram metric for distribution tracking."""
        self.emit(
            Metric(
                name=name,
                value=value,
                metric_type=MetricType.HISTOGRAM,
                labels=labels or {},
            )
        )


# Global metrics collector
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


class AuditLogger:
    """
    Structured audit logging.

    Audit logs are written to a separate logger so they can be routed
    and retained apart from operational logs.
    """

    def __init__(self):
        self._logger = logging.getLogger(f"{__name__}.audit")

    def log(self, event: AuditEvent) -> None:
        """Log an audit event."""
        self._logger.info(
            f"AUDIT: {event.event_type.value}", extra={"audit": event.to_dict()}
        )

    def tool_invocation(
        self,
        tool_name: str,
        success: bool = True,
        duration_ms: Optional[float] = None,
        correlation_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Log tool invocation."""
        self.log(
            AuditEvent(
                event_type=AuditEventType.TOOL_INVOCATION,
                correlation_id=correlation_id,
                details={
                    "tool": tool_name,
                    "success": success,
                    "duration_ms": duration_ms,
                    **details,
                },
            )
        )


# Global audit logger
_audit = AuditLogger()


def audit_log(event_type: str, **details: Any) -> None:
    """
    Convenience function for audit logging.

    Args:
        event_type: Type of event (tool_invocation,
                    resource_created, resource_deleted, project_archived,
                    bulk_operation)
        **details: Additional details to include in the audit log
    """
    try:
        event_enum = AuditEventType(event_type)
    except ValueError:
        event_enum = AuditEventType.TOOL_INVOCATION
        details["original_event_type"] = event_type

    _audit.log(AuditEvent(event_type=event_enum, details=details))


def mcp_tool(
    tool_name: Optional[str] = None, emit_metrics: bool = True, audit: bool = True
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for MCP tool handlers with observability.

    Automatically:
    - Establishes a request context with a correlation ID
    - Emits invocation and latency metrics
    - Creates audit log entries

    Args:
        tool_name: Override tool name (defaults to function name)
        emit_metrics: Whether to emit metrics
        audit: Whether to create audit log entries
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        name = tool_name or func.__name__

        def _record(corr_id: str, start: float, success: bool, error_msg: Optional[str], action: Any) -> None:
            duration_ms = (time.perf_counter() - start) * 1000
            if emit_metrics:
                labels = {"tool": name, "status": "success" if success else "error"}
                if isinstance(action, str):
                    labels["action"] = action
                _metrics.counter("tool.invocations", labels=labels)
                _metrics.timer("tool.latency", duration_ms, labels={"tool": name})
            if audit:
                _audit.tool_invocation(
                    tool_name=name,
                    success=success,
                    duration_ms=round(duration_ms, 2),
                    error=error_msg,
                    correlation_id=corr_id,
                )

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> T:
            existing_corr_id = get_correlation_id()
            corr_id = existing_corr_id or generate_correlation_id(prefix="tool")
            if not existing_corr_id:
                with sync_request_context(correlation_id=corr_id):
                    return await _async_tool_impl(corr_id, args, kwargs)
            return await _async_tool_impl(corr_id, args, kwargs)

        async def _async_tool_impl(_corr_id: str, _args: tuple, _kwargs: dict) -> T:
            start = time.perf_counter()
            success = True
            error_msg = None
            try:
                return await func(*_args, **_kwargs)
            except Exception as e:
                success = False
                error_msg = str(e)
                raise
            finally:
                _record(_corr_id, start, success, error_msg, _kwargs.get("action"))

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            existing_corr_id = get_correlation_id()
            corr_id = existing_corr_id or generate_correlation_id(prefix="tool")
            if not existing_corr_id:
                with sync_request_context(correlation_id=corr_id):
                    return _sync_tool_impl(corr_id, args, kwargs)
            return _sync_tool_impl(corr_id, args, kwargs)

        def _sync_tool_impl(_corr_id: str, _args: tuple, _kwargs: dict) -> T:
            """Run the tool and record its outcome.

            Parameter names are prefixed with underscore to avoid
            conflicts with tool parameter names.
            """
            start = time.perf_counter()
            success = True
            error_msg = None
            try:
                return func(*_args, **_kwargs)
            except Exception as e:
                success = False
                error_msg = str(e)
                raise
            finally:
                _record(_corr_id, start, success, error_msg, _kwargs.get("action"))

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
