"""
Assist Core — Structured Logging with Trace IDs

JSON-lines logging for the orchestration engine. Every conversation turn
gets a trace_id so a turn, its domain invocations and any later resume
can be correlated in the log stream.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Schema: OTel-compatible field names (trace_id, span_id, service.name)
  - Configurable log level: DEBUG (payloads), INFO (turn events), WARNING (degradations)

Usage:
    from engine.logging import TurnLogger, configure_logging

    configure_logging(level="INFO")
    tlog = TurnLogger(thread_id="thread-1")
    tlog.on_turn_start(kind="message")
    tlog.on_domain_end("calendar", slot="calendar", outcome="approval", elapsed=0.42)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any


ROOT_LOGGER = "assist_core"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    Structured fields attached to a record under ``structured`` are
    merged into the top-level entry.
    """

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("ASSIST_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the assist_core logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured assist_core logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the assist_core namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def generate_trace_id() -> str:
    """Generate an OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """Generate an OTel-compatible span ID (16 hex chars)."""
    return uuid.uuid4().hex[:16]


# ═══════════════════════════════════════════════════════════════════
# Turn Logger
# ═══════════════════════════════════════════════════════════════════

class TurnLogger:
    """
    Structured event logger for one conversation turn.

    One instance per process_turn / process_resume call. Domain
    invocations get their own span_id so parallel fan-out stays
    readable when interleaved.
    """

    def __init__(self, thread_id: str = "", trace_id: str | None = None, metrics: Any = None):
        self.thread_id = thread_id
        self.metrics = metrics
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("turn")
        self._spans: dict[str, str] = {}

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {
            "trace_id": self.trace_id,
            "thread_id": self.thread_id,
            "action": action,
            **fields,
        }
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def on_turn_start(self, kind: str) -> None:
        self._emit(logging.INFO, "turn_start", kind=kind)

    def on_route_decision(self, parallel: list[str], sequential: list[str],
                          defaulted: bool = False) -> None:
        self._emit(
            logging.INFO, "route_decision",
            parallel=parallel,
            sequential=sequential,
            defaulted=defaulted,
        )

    def on_domain_start(self, domain: str, slot: str) -> None:
        span_id = generate_span_id()
        self._spans[slot] = span_id
        self._emit(logging.DEBUG, "domain_start",
                   domain=domain, slot=slot, span_id=span_id)

    def on_domain_end(self, domain: str, slot: str, outcome: str,
                      elapsed: float, error: str | None = None) -> None:
        if self.metrics is not None:
            self.metrics.record_domain(domain, outcome, elapsed, error)
        fields = {
            "domain": domain,
            "slot": slot,
            "outcome": outcome,
            "latency_ms": round(elapsed * 1000, 1),
        }
        if error is not None:
            fields["error"] = error
        if slot in self._spans:
            fields["span_id"] = self._spans[slot]
        self._emit(logging.INFO, "domain_end", **fields)

    def on_suspend(self, kind: str, domains: list[str]) -> None:
        self._emit(logging.INFO, "suspend", kind=kind, domains=domains)

    def on_resume(self, kind: str, domains: list[str]) -> None:
        self._emit(logging.INFO, "resume", kind=kind, domains=domains)

    def on_turn_end(self, status: str, elapsed_s: float) -> None:
        if self.metrics is not None:
            self.metrics.record_turn(status, elapsed_s)
        self._emit(
            logging.INFO, "turn_end",
            status=status,
            elapsed_s=round(elapsed_s, 3),
        )
