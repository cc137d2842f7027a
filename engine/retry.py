"""
Assist Core — Retry with Backoff & Circuit Breaker

Wraps calls to flaky external collaborators (memory recall, memory
synthesis) with:
  - Configurable retry on transient failures (timeout, rate limit, 5xx)
  - Exponential backoff between retries
  - Circuit breaker: N consecutive failures → stop accepting calls
  - Structured logging of every attempt

Usage:
    from engine.retry import BreakerRegistry, RetryPolicy, call_with_retry

    policy = RetryPolicy(max_attempts=3)
    breakers = BreakerRegistry()
    memories = call_with_retry(
        lambda: memory.recall(query, org_id, user_id),
        policy, operation="memory_recall", breaker=breakers.get("memory", policy),
    )
"""

from __future__ import annotations

import enum
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger("assist_core.retry")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    backoff_base: float = 0.5       # seconds; actual delay = base * 2^attempt + jitter
    backoff_max: float = 10.0       # cap on delay between retries
    jitter: float = 0.2             # ±20% randomization on backoff

    # Circuit breaker
    circuit_breaker_threshold: int = 5   # consecutive failures to open circuit
    circuit_breaker_reset_seconds: float = 60.0  # time before half-open

    # What counts as retryable
    retryable_exceptions: tuple = (
        TimeoutError,
        ConnectionError,
        OSError,
    )
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)

    @classmethod
    def with_retries(cls, retries: int) -> RetryPolicy:
        """A policy allowing ``retries`` extra attempts after the first."""
        return cls(max_attempts=max(1, retries + 1))


DEFAULT_POLICY = RetryPolicy()


# ═══════════════════════════════════════════════════════════════════
# Circuit Breaker
# ═══════════════════════════════════════════════════════════════════

class CircuitBreakerOpen(Exception):
    """A collaborator's breaker is refusing calls."""

    def __init__(self, name: str, failures: int, retry_in: float):
        self.name = name
        self.failures = failures
        self.retry_in = max(0.0, retry_in)
        super().__init__(
            f"{name or 'collaborator'} unavailable after {failures} consecutive failures; "
            f"next trial call in {self.retry_in:.0f}s"
        )


class BreakerState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Guards one external collaborator (the memory service, a CRM, ...).

    CLOSED     calls pass; consecutive failures are counted
    OPEN       calls refused until ``reset_seconds`` after the last failure
    HALF_OPEN  the next call is a trial: success closes, failure reopens
    """

    def __init__(
        self,
        threshold: int = 5,
        reset_seconds: float = 60.0,
        name: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.threshold = max(1, threshold)
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._failures = 0
        self._opened_at = 0.0
        self._state = BreakerState.CLOSED
        self._lock = threading.Lock()

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> BreakerState:
        if self._state == BreakerState.OPEN and self._clock() - self._opened_at >= self.reset_seconds:
            self._state = BreakerState.HALF_OPEN
            logger.info("Breaker %s half-open, allowing a trial call", self.name)
        return self._state

    def check(self) -> None:
        with self._lock:
            if self._current_state() != BreakerState.OPEN:
                return
            retry_in = self.reset_seconds - (self._clock() - self._opened_at)
            failures = self._failures
        raise CircuitBreakerOpen(self.name, failures, retry_in)

    def record_success(self) -> None:
        with self._lock:
            if self._state != BreakerState.CLOSED:
                logger.info("Breaker %s closed", self.name)
            self._failures = 0
            self._state = BreakerState.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            trial_failed = self._state == BreakerState.HALF_OPEN
            if trial_failed or self._failures >= self.threshold:
                if self._state != BreakerState.OPEN:
                    logger.warning("Breaker %s opened after %d failures", self.name, self._failures)
                self._state = BreakerState.OPEN
                self._opened_at = self._clock()

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = 0.0
            self._state = BreakerState.CLOSED


class BreakerRegistry:
    """Circuit breakers keyed by collaborator name. One per controller."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def get(self, key: str, policy: RetryPolicy = DEFAULT_POLICY) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = self._breakers[key] = CircuitBreaker(
                    threshold=policy.circuit_breaker_threshold,
                    reset_seconds=policy.circuit_breaker_reset_seconds,
                    name=key,
                    clock=self._clock,
                )
            return breaker

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for cb in breakers:
            cb.reset()

    def report(self) -> dict[str, str]:
        with self._lock:
            items = list(self._breakers.items())
        return {key: cb.state.value for key, cb in items}


# ═══════════════════════════════════════════════════════════════════
# Retry Logic
# ═══════════════════════════════════════════════════════════════════

_PERMANENT_MARKERS = ("401", "403", "unauthorized", "forbidden", "invalid api key")
_TRANSIENT_MARKERS = (
    "rate limit", "too many requests", "timeout", "timed out",
    "connection", "unavailable", "temporarily",
)


def is_retryable(error: Exception, policy: RetryPolicy) -> bool:
    """Transient failures are retried; credential problems never are."""
    if isinstance(error, policy.retryable_exceptions):
        return True
    text = str(error).lower()
    if any(marker in text for marker in _PERMANENT_MARKERS):
        return False
    if any(str(code) in text for code in policy.retryable_status_codes):
        return True
    return any(marker in text for marker in _TRANSIENT_MARKERS)



def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Calculate backoff delay with jitter."""
    base_delay = policy.backoff_base * (2 ** attempt)
    capped = min(base_delay, policy.backoff_max)
    jitter_range = capped * policy.jitter
    actual = capped + random.uniform(-jitter_range, jitter_range)
    return max(0.0, actual)


def call_with_retry(
    fn: Callable[[], Any],
    policy: RetryPolicy | None = None,
    operation: str = "",
    breaker: CircuitBreaker | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Call ``fn`` with retry, backoff, and an optional circuit breaker.

    Args:
        fn:        Zero-argument callable
        policy:    RetryPolicy (or default)
        operation: Name used in log lines
        breaker:   CircuitBreaker guarding the collaborator
        sleep_fn:  Sleep function (injectable for testing)

    Returns:
        Whatever ``fn`` returns

    Raises:
        CircuitBreakerOpen: If the breaker is open
        Exception: The last exception if all attempts are exhausted,
                   or immediately for non-retryable errors
    """
    if policy is None:
        policy = DEFAULT_POLICY

    if breaker is not None:
        breaker.check()

    last_error: Exception | None = None

    for attempt in range(policy.max_attempts):
        try:
            result = fn()
        except Exception as e:
            last_error = e
            if not is_retryable(e, policy):
                if breaker is not None:
                    breaker.record_failure()
                logger.error(
                    "Non-retryable error (operation=%s): %s",
                    operation, str(e)[:200],
                )
                raise

            logger.warning(
                "Retryable error (attempt %d/%d, operation=%s): %s",
                attempt + 1, policy.max_attempts, operation, str(e)[:200],
            )
            if attempt < policy.max_attempts - 1:
                sleep_fn(calculate_backoff(attempt, policy))
            continue

        if breaker is not None:
            breaker.record_success()
        if attempt:
            logger.info("Succeeded after %d attempts (operation=%s)", attempt + 1, operation)
        return result

    if breaker is not None:
        breaker.record_failure()
    logger.error(
        "All retry attempts exhausted (operation=%s, attempts=%d)",
        operation, policy.max_attempts,
    )
    raise last_error
