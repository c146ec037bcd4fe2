"""
Structured logging configuration with audit trail support for huddle.

Provides JSON-formatted logging with OpenTelemetry correlation and a
dedicated audit logger for scheduler decisions.
"""

import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from opentelemetry import trace


_RESERVED_RECORD_FIELDS = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "taskName"
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter with OpenTelemetry trace correlation."""

    def __init__(self, include_trace: bool = True, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_trace = include_trace
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        # Add trace context if available
        if self.include_trace:
            current_span = trace.get_current_span()
            if current_span and current_span.is_recording():
                span_context = current_span.get_span_context()
                log_entry.update({
                    "trace_id": format(span_context.trace_id, "032x"),
                    "span_id": format(span_context.span_id, "016x")
                })

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        # Fields passed through ``extra=``
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS and not key.startswith("_"):
                log_entry[key] = value

        log_entry.update(self.extra_fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class AuditLogger:
    """Logger for scheduler decisions that need an audit trail."""

    def __init__(self, logger_name: str = "huddle.audit"):
        self.logger = logging.getLogger(logger_name)

    def log_session_event(
        self,
        event_type: str,
        session_id: str,
        agent_id: Optional[str] = None,
        result: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a session lifecycle event (created, resumed, persisted)."""
        self.logger.info(
            f"Session event: {event_type}",
            extra={
                "audit_type": "session",
                "event_type": event_type,
                "session_id": session_id,
                "agent_id": agent_id,
                "result": result,
                "metadata": metadata or {}
            }
        )

    def log_routing_event(
        self,
        session_id: str,
        mode: str,
        target_ids,
        reason: str,
        fallback_used: bool = False
    ) -> None:
        self.logger.info(
            f"Routing event: {mode} -> {', '.join(target_ids) or 'none'}",
            extra={
                "audit_type": "routing",
                "session_id": session_id,
                "mode": mode,
                "target_ids": list(target_ids),
                "reason": reason,
                "fallback_used": fallback_used
            }
        )

    def log_budget_event(
        self,
        session_id: str,
        agent_id: str,
        decision: str,
        reason: Optional[str] = None,
        consumed: Optional[int] = None,
        limit: Optional[int] = None
    ) -> None:
        """Log a budget admission decision."""
        level = logging.INFO if decision == "admitted" else logging.WARNING
        self.logger.log(
            level,
            f"Budget event: {agent_id} {decision}",
            extra={
                "audit_type": "budget",
                "session_id": session_id,
                "agent_id": agent_id,
                "decision": decision,
                "reason": reason,
                "consumed": consumed,
                "limit": limit
            }
        )

    def log_approval_event(
        self,
        event_type: str,
        request_id: str,
        session_id: str,
        agent_id: str,
        kind: str,
        decision: str,
        decided_by: Optional[str] = None,
        budget: Optional[int] = None,
        tool_name: Optional[str] = None
    ) -> None:
        """Log an approval request or its resolution."""
        self.logger.info(
            f"Approval event: {event_type} - {kind} {decision}",
            extra={
                "audit_type": "approval",
                "event_type": event_type,
                "request_id": request_id,
                "session_id": session_id,
                "agent_id": agent_id,
                "kind": kind,
                "tool_name": tool_name,
                "decision": decision,
                "decided_by": decided_by,
                "budget": budget
            }
        )

    def log_compaction_event(
        self,
        session_id: str,
        message_index: int,
        summarized: bool,
        retained: int
    ) -> None:
        self.logger.info(
            f"Compaction event: checkpoint at {message_index}",
            extra={
                "audit_type": "compaction",
                "session_id": session_id,
                "message_index": message_index,
                "summarized": summarized,
                "retained_messages": retained
            }
        )


def setup_logging(config: Dict[str, Any]) -> None:
    """Setup structured logging configuration."""
    log_level = config.get("level", "INFO").upper()
    log_format = config.get("format", "structured")

    log_dir = Path(config.get("directory", "~/.huddle/logs")).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
                "include_trace": config.get("include_trace", True),
                "extra_fields": {
                    "service": "huddle",
                    "environment": config.get("environment", "development")
                }
            },
            "simple": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "structured" if log_format == "structured" else "simple",
                "stream": sys.stderr
            },
            "application_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": log_level,
                "formatter": "structured",
                "filename": str(log_dir / "huddle.log"),
                "maxBytes": config.get("max_file_size", 10 * 1024 * 1024),
                "backupCount": config.get("backup_count", 5)
            },
            "audit_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": "structured",
                "filename": str(log_dir / "audit.jsonl"),
                "maxBytes": config.get("max_file_size", 10 * 1024 * 1024),
                "backupCount": config.get("backup_count", 10)
            }
        },
        "loggers": {
            "huddle": {
                "level": log_level,
                "handlers": ["console", "application_file"],
                "propagate": False
            },
            "huddle.audit": {
                "level": "INFO",
                "handlers": ["audit_file"],
                "propagate": False
            },
            "opentelemetry": {
                "level": "WARNING",
                "handlers": ["console", "application_file"],
                "propagate": False
            }
        },
        "root": {
            "level": log_level,
            "handlers": ["console"]
        }
    }

    logging.config.dictConfig(logging_config)

    logger = logging.getLogger("huddle.logging")
    logger.info("Structured logging initialized", extra={
        "config": {
            "level": log_level,
            "format": log_format,
            "directory": str(log_dir)
        }
    })
