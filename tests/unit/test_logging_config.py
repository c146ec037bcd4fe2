"""
Unit tests for structured log formatting and audit events.
"""

import json
import logging
import sys

import pytest

from huddle.lib.logging_config import AuditLogger, StructuredFormatter


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="huddle.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg="round %d finished",
        args=(3,),
        exc_info=None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """JSON output with extra fields."""

    def test_basic_fields(self):
        entry = json.loads(StructuredFormatter().format(make_record()))

        assert entry["message"] == "round 3 finished"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "huddle.test"
        assert "trace_id" not in entry

    def test_extra_and_static_fields(self):
        formatter = StructuredFormatter(extra_fields={"service": "huddle"})

        entry = json.loads(formatter.format(make_record(session_id="s1", target_ids=["a", "b"])))

        assert entry["session_id"] == "s1"
        assert entry["target_ids"] == ["a", "b"]
        assert entry["service"] == "huddle"

    def test_exception_details(self):
        try:
            raise ValueError("bad state")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["exception"]["type"] == "ValueError"
        assert entry["exception"]["message"] == "bad state"


class TestAuditLogger:
    """Audit events carry structured fields."""

    @pytest.fixture
    def audit(self):
        return AuditLogger("huddle.audit.test")

    def test_routing_event(self, audit, caplog):
        with caplog.at_level(logging.INFO, logger="huddle.audit.test"):
            audit.log_routing_event("s1", "tag_only", ["b"], "Tagged @b")

        record = caplog.records[-1]
        assert record.audit_type == "routing"
        assert record.target_ids == ["b"]
        assert record.fallback_used is False

    def test_rejected_budget_logs_warning(self, audit, caplog):
        with caplog.at_level(logging.INFO, logger="huddle.audit.test"):
            audit.log_budget_event("s1", "a", "rejected", reason="agent_ceiling_exceeded", consumed=10, limit=10)

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.reason == "agent_ceiling_exceeded"

    def test_approval_event(self, audit, caplog):
        with caplog.at_level(logging.INFO, logger="huddle.audit.test"):
            audit.log_approval_event(
                event_type="resolved",
                request_id="r1",
                session_id="s1",
                agent_id="a",
                kind="shell",
                decision="approved",
                decided_by="human",
                budget=3,
                tool_name="bash"
            )

        record = caplog.records[-1]
        assert record.audit_type == "approval"
        assert record.budget == 3
        assert record.tool_name == "bash"
