"""Tests for tracker_mcp.core.observability and logging_config modules."""

import io
import json
import logging

import pytest

from tracker_mcp.core.context import get_correlation_id, sync_request_context
from tracker_mcp.core.logging_config import configure_logging, get_logger
from tracker_mcp.core.observability import (
    AuditEvent,
    AuditEventType,
    MetricsCollector,
    audit_log,
    mcp_tool,
)

OBS_LOGGER = "tracker_mcp.core.observability"


def _records(caplog, prefix):
    return [r for r in caplog.records if r.getMessage().startswith(prefix)]


class TestAuditLog:
    def test_known_event_type(self, caplog):
        with caplog.at_level(logging.INFO, logger=OBS_LOGGER):
            audit_log("resource_deleted", resource_type="issue", resource_id="ENG-1")

        (record,) = _records(caplog, "AUDIT:")
        assert record.audit["event_type"] == "resource_deleted"
        assert record.audit["details"]["resource_id"] == "ENG-1"

    def test_unknown_event_type_is_kept(self, caplog):
        with caplog.at_level(logging.INFO, logger=OBS_LOGGER):
            audit_log("server_start", version="1.0")

        (record,) = _records(caplog, "AUDIT:")
        assert record.audit["event_type"] == "tool_invocation"
        assert record.audit["details"]["original_event_type"] == "server_start"

    def test_event_picks_up_request_context(self):
        with sync_request_context(correlation_id="req_abc", client_id="cli"):
            event = AuditEvent(event_type=AuditEventType.BULK_OPERATION)

        data = event.to_dict()
        assert data["correlation_id"] == "req_abc"
        assert data["client_id"] == "cli"

    def test_anonymous_client_omitted(self):
        event = AuditEvent(event_type=AuditEventType.PROJECT_ARCHIVED)
        assert "client_id" not in event.to_dict()


class TestMetrics:
    def test_counter_is_logged(self, caplog):
        with caplog.at_level(logging.INFO, logger=OBS_LOGGER):
            MetricsCollector(prefix="test").counter("deletes", labels={"kind": "issue"})

        (record,) = _records(caplog, "METRIC: test.deletes")
        assert record.metric["type"] == "counter"
        assert record.metric["labels"] == {"kind": "issue"}


class TestMcpTool:
    def test_sync_tool_records_invocation(self, caplog):
        seen = {}

        @mcp_tool(tool_name="issue")
        def tool(action):
            seen["corr"] = get_correlation_id()
            return {"ok": True}

        with caplog.at_level(logging.INFO, logger=OBS_LOGGER):
            assert tool(action="get") == {"ok": True}

        assert seen["corr"].startswith("tool_")
        (metric,) = _records(caplog, "METRIC: tracker_mcp.tool.invocations")
        assert metric.metric["labels"] == {"tool": "issue", "status": "success", "action": "get"}
        (audit,) = _records(caplog, "AUDIT:")
        assert audit.audit["correlation_id"] == seen["corr"]
        assert audit.audit["details"]["success"] is True

    def test_existing_correlation_id_is_reused(self):
        @mcp_tool(tool_name="project", emit_metrics=False, audit=False)
        def tool():
            return get_correlation_id()

        with sync_request_context(correlation_id="req_outer"):
            assert tool() == "req_outer"

    def test_exception_recorded_and_reraised(self, caplog):
        @mcp_tool(tool_name="broken")
        def tool():
            raise RuntimeError("nope")

        with caplog.at_level(logging.INFO, logger=OBS_LOGGER):
            with pytest.raises(RuntimeError):
                tool()

        (audit,) = _records(caplog, "AUDIT:")
        assert audit.audit["details"]["success"] is False
        assert audit.audit["details"]["error"] == "nope"

    @pytest.mark.asyncio
    async def test_async_tool(self):
        @mcp_tool(tool_name="async_tool", emit_metrics=False, audit=False)
        async def tool(value):
            return value * 2

        assert await tool(value=21) == 42


class TestLoggingConfig:
    def test_structured_output_carries_context(self):
        stream = io.StringIO()
        logger = configure_logging(level="INFO", format="structured", stream=stream)
        try:
            with sync_request_context(correlation_id="req_json"):
                get_logger("core.deletion").info("Deleted issue ENG-1", extra={"count": 1})

            entry = json.loads(stream.getvalue().strip())
            assert entry["logger"] == "tracker_mcp.core.deletion"
            assert entry["message"] == "Deleted issue ENG-1"
            assert entry["correlation_id"] == "req_json"
            assert entry["extra"]["count"] == 1
        finally:
            logger.handlers.clear()

    def test_human_output(self):
        stream = io.StringIO()
        logger = configure_logging(level="INFO", format="human", stream=stream)
        try:
            get_logger("tracker_mcp.core.sequence").warning("Healed sequence")
            assert "[WARNING] core.sequence: Healed sequence" in stream.getvalue()
        finally:
            logger.handlers.clear()
