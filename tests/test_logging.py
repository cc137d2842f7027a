"""
Assist Core — Structured Logging Tests

Tests:
  - test_log_entry_schema — every entry has the required fields
  - test_json_parseable — every log line is valid JSON
  - test_turn_trace_id — one trace_id for every event of a turn
  - test_domain_span — domain start/end share a span_id
  - test_log_level_filtering — domain_start only at DEBUG
  - test_suspend_and_resume — suspension events carry kind and domains
  - test_controller_turn_logged — a real turn emits start, route, end
"""

import io
import json
import logging
import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from engine.logging import (
    ROOT_LOGGER,
    JSONFormatter,
    TurnLogger,
    configure_logging,
    generate_span_id,
    generate_trace_id,
    get_logger,
)


def _capture(level="DEBUG"):
    buf = io.StringIO()
    configure_logging(level=level, stream=buf)
    return buf


def _lines(buf):
    return [json.loads(line) for line in buf.getvalue().splitlines() if line.strip()]


class LoggingTestCase(unittest.TestCase):
    def tearDown(self):
        root = logging.getLogger(ROOT_LOGGER)
        root.handlers.clear()
        root.propagate = True


class TestFormatter(LoggingTestCase):
    def test_log_entry_schema(self):
        buf = _capture()
        get_logger("test").info("hello %s", "world")
        entry = _lines(buf)[0]
        for key in ("timestamp", "level", "logger", "message", "service.name", "service.version"):
            self.assertIn(key, entry)
        self.assertEqual(entry["message"], "hello world")
        self.assertEqual(entry["logger"], "assist_core.test")

    def test_exception_fields(self):
        record = logging.LogRecord("assist_core", logging.ERROR, "", 0, "boom", (), None)
        try:
            raise ValueError("bad")
        except ValueError:
            record.exc_info = sys.exc_info()
        entry = json.loads(JSONFormatter().format(record))
        self.assertEqual(entry["exception.type"], "ValueError")
        self.assertEqual(entry["exception.message"], "bad")

    def test_ids(self):
        self.assertEqual(len(generate_trace_id()), 32)
        self.assertEqual(len(generate_span_id()), 16)


class TestTurnLogger(LoggingTestCase):
    def test_json_parseable_and_trace_id(self):
        buf = _capture()
        tlog = TurnLogger(thread_id="t1")
        tlog.on_turn_start("message")
        tlog.on_route_decision(["calendar", "contact"], [], defaulted=False)
        tlog.on_turn_end("completed", 0.1234)
        entries = _lines(buf)
        self.assertEqual([e["action"] for e in entries], ["turn_start", "route_decision", "turn_end"])
        self.assertEqual({e["trace_id"] for e in entries}, {tlog.trace_id})
        self.assertEqual(entries[1]["parallel"], ["calendar", "contact"])
        self.assertEqual(entries[2]["elapsed_s"], 0.123)

    def test_domain_span(self):
        buf = _capture()
        tlog = TurnLogger(thread_id="t1")
        tlog.on_domain_start("contact", "contact#2")
        tlog.on_domain_end("contact", "contact#2", "success", 0.05)
        start, end = _lines(buf)
        self.assertEqual(start["span_id"], end["span_id"])
        self.assertEqual(end["latency_ms"], 50.0)
        self.assertEqual(end["slot"], "contact#2")

    def test_log_level_filtering(self):
        buf = _capture(level="INFO")
        tlog = TurnLogger()
        tlog.on_domain_start("task", "task")
        tlog.on_domain_end("task", "task", "success", 0.01)
        self.assertEqual([e["action"] for e in _lines(buf)], ["domain_end"])

    def test_suspend_and_resume(self):
        buf = _capture()
        tlog = TurnLogger(thread_id="t1")
        tlog.on_suspend("approval", ["calendar"])
        tlog.on_resume("approval", ["calendar"])
        suspend, resume = _lines(buf)
        self.assertEqual(suspend["kind"], "approval")
        self.assertEqual(resume["domains"], ["calendar"])


class TestControllerLogging(LoggingTestCase):
    def test_controller_turn_logged(self):
        from coordinator.controller import Controller
        from coordinator.dispatcher import DomainDispatcher
        from coordinator.types import DomainResult, RoutingPlan

        class Planner:
            def plan(self, query, memory_context, entity_stats, recent_messages):
                return RoutingPlan(parallel=["task"])

        buf = _capture()
        dispatcher = DomainDispatcher({"task": lambda ctx: DomainResult.success("task", "Task created")})
        Controller(Planner(), dispatcher).process_turn("t-log", "add a task")

        turn = [e for e in _lines(buf) if e["logger"] == "assist_core.turn"]
        actions = [e["action"] for e in turn]
        self.assertEqual(actions[0], "turn_start")
        self.assertIn("route_decision", actions)
        self.assertIn("domain_end", actions)
        self.assertEqual(turn[-1]["status"], "completed")
        self.assertTrue(all(e["thread_id"] == "t-log" for e in turn))


if __name__ == "__main__":
    unittest.main()
