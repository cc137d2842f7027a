"""
Assist Core — Long-term Memory Adapter

Wraps an injected MemoryService with retry, a circuit breaker and
graceful degradation: a recall failure means "no memory this turn",
a synthesis failure is logged and dropped. Neither fails the turn.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from langchain_core.messages import BaseMessage

from coordinator.types import RecalledMemory
from engine.retry import BreakerRegistry, CircuitBreakerOpen, RetryPolicy, call_with_retry

logger = logging.getLogger("assist_core.memory")

# Turns shorter than this carry nothing worth remembering
MIN_MESSAGES_FOR_SYNTHESIS = 2

_SECTION_TITLES = [
    ("instruction", "Standing Instructions:"),
    ("preference", "User Preferences:"),
    ("fact", "Relevant Facts:"),
    ("context", "Previous Context:"),
]


class NullMemory:
    """MemoryService that remembers nothing."""

    def recall(self, query: str, org_id: str, user_id: str, limit: int = 5,
               threshold: float = 0.7) -> list[Any]:
        return []

    def synthesize(self, messages: list[BaseMessage], org_id: str, user_id: str,
                   metadata: dict[str, Any] | None = None) -> None:
        return None


class MemoryAdapter:
    """Fault-tolerant front for a MemoryService."""

    def __init__(
        self,
        service: Any = None,
        recall_limit: int = 5,
        recall_threshold: float = 0.7,
        max_retries: int = 2,
        breakers: BreakerRegistry | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.service = service if service is not None else NullMemory()
        self.recall_limit = recall_limit
        self.recall_threshold = recall_threshold
        self.policy = RetryPolicy.with_retries(max_retries)
        self.breakers = breakers or BreakerRegistry()
        self._sleep = sleep_fn

    def recall(self, query: str, org_id: str, user_id: str) -> list[RecalledMemory]:
        if not query:
            return []
        try:
            raw = call_with_retry(
                lambda: self.service.recall(
                    query, org_id, user_id,
                    limit=self.recall_limit, threshold=self.recall_threshold,
                ),
                self.policy,
                operation="memory_recall",
                breaker=self.breakers.get("memory", self.policy),
                sleep_fn=self._sleep,
            )
        except CircuitBreakerOpen as e:
            logger.warning("Memory recall skipped: %s", e)
            return []
        except Exception as e:
            logger.warning("Memory recall failed, continuing without memory: %s", e)
            return []

        memories = [RecalledMemory.coerce(m) for m in raw or []]
        logger.debug("Recalled %d memories", len(memories))
        return memories

    def synthesize(
        self,
        messages: list[BaseMessage],
        org_id: str,
        user_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        if len(messages) < MIN_MESSAGES_FOR_SYNTHESIS:
            return False
        try:
            call_with_retry(
                lambda: self.service.synthesize(messages, org_id, user_id, metadata or {}),
                self.policy,
                operation="memory_synthesize",
                breaker=self.breakers.get("memory", self.policy),
                sleep_fn=self._sleep,
            )
        except Exception as e:
            logger.warning("Memory synthesis failed: %s", e)
            return False
        return True


def format_memory_hint(memories: list[RecalledMemory]) -> str:
    """Group recalled memories by kind into a prompt-ready block."""
    if not memories:
        return ""
    grouped: dict[str, list[str]] = {kind: [] for kind, _ in _SECTION_TITLES}
    for m in memories:
        kind = m.metadata.get("kind", "fact")
        grouped.setdefault(kind, []).append(m.content)

    sections = []
    for kind, title in _SECTION_TITLES:
        if grouped[kind]:
            sections.append(title)
            sections.extend(f"- {text}" for text in grouped[kind])
    return "\n".join(sections)
