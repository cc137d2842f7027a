"""
Assist Core — Turn Metrics

Thread-safe in-process aggregates fed by TurnLogger events:
per-domain call counts and latency, per-domain failures with the most
recent error, and turn outcomes. Errors older than the window are
dropped from the error report.

Usage:
    metrics = TurnMetrics()
    tlog = TurnLogger(thread_id="t1", metrics=metrics)
    ...
    metrics.performance_report()
    metrics.error_report(breakers.report())
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

DEFAULT_ERROR_WINDOW_SECONDS = 300.0
MAX_ERRORS_PER_DOMAIN = 50


@dataclass
class _DomainStats:
    calls: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    outcomes: dict[str, int] = field(default_factory=dict)


class TurnMetrics:
    """Per-domain timing and error aggregate shared by every turn of a controller."""

    def __init__(
        self,
        error_window: float = DEFAULT_ERROR_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.error_window = error_window
        self._clock = clock
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._domains: dict[str, _DomainStats] = {}
            self._errors: dict[str, deque] = {}
            self._turns: dict[str, int] = {}
            self._turn_total_s = 0.0

    # ─── Recording ───────────────────────────────────────────────────

    def record_domain(self, domain: str, outcome: str, elapsed: float,
                      error: str | None = None) -> None:
        ms = elapsed * 1000
        with self._lock:
            stats = self._domains.setdefault(domain, _DomainStats())
            stats.calls += 1
            stats.total_ms += ms
            stats.max_ms = max(stats.max_ms, ms)
            stats.outcomes[outcome] = stats.outcomes.get(outcome, 0) + 1
            if error is not None:
                errors = self._errors.setdefault(domain, deque(maxlen=MAX_ERRORS_PER_DOMAIN))
                errors.append({"timestamp": self._clock(), "outcome": outcome, "message": error})

    def record_turn(self, status: str, elapsed_s: float) -> None:
        # Suspended turns are bucketed together regardless of kind
        bucket = "suspended" if status.startswith("suspended") else status
        with self._lock:
            self._turns[bucket] = self._turns.get(bucket, 0) + 1
            self._turn_total_s += elapsed_s

    # ─── Reports ─────────────────────────────────────────────────────

    def performance_report(self) -> dict[str, Any]:
        with self._lock:
            total_turns = sum(self._turns.values())
            return {
                "turns": {
                    "total": total_turns,
                    **self._turns,
                    "avg_ms": round(self._turn_total_s * 1000 / total_turns, 1) if total_turns else 0.0,
                },
                "domains": {
                    domain: {
                        "calls": s.calls,
                        "avg_ms": round(s.total_ms / s.calls, 1) if s.calls else 0.0,
                        "max_ms": round(s.max_ms, 1),
                        "outcomes": dict(s.outcomes),
                    }
                    for domain, s in self._domains.items()
                },
            }

    def error_report(self, circuit_breakers: dict[str, str] | None = None) -> dict[str, Any]:
        cutoff = self._clock() - self.error_window
        recent: dict[str, Any] = {}
        with self._lock:
            for domain, errors in self._errors.items():
                while errors and errors[0]["timestamp"] < cutoff:
                    errors.popleft()
                if errors:
                    recent[domain] = {"count": len(errors), "last_error": dict(errors[-1])}
        total = sum(e["count"] for e in recent.values())
        return {
            "error_rate_per_min": round(total / (self.error_window / 60), 2),
            "recent_errors": recent,
            "circuit_breakers": dict(circuit_breakers or {}),
        }
