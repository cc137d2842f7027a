"""
Assist Core — Collaborator Contracts

Protocols for everything the orchestration engine consumes but does not
own. Concrete implementations are injected into the Controller; nothing
here is a module-level singleton.

  Planner          plan(query, memory_context, entity_stats, recent_messages) → RoutingPlan
  DomainHandler    __call__(context) → DomainResult | None   (may raise SuspendSignal)
  CheckpointStore  load / save / delete keyed by thread_id
  MemoryService    recall / synthesize, failures degrade to "no memory"
  ResponseWriter   write(query, entity_context, memory_hint) → str
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, runtime_checkable

from langchain_core.messages import BaseMessage

from coordinator.types import (
    ConversationState,
    DomainContext,
    DomainResult,
    RecalledMemory,
    RoutingPlan,
)


@runtime_checkable
class Planner(Protocol):
    def plan(
        self,
        query: str,
        memory_context: list[RecalledMemory],
        entity_stats: dict[str, Any],
        recent_messages: list[BaseMessage],
    ) -> RoutingPlan | dict[str, Any]:
        ...


DomainHandler = Callable[[DomainContext], "DomainResult | None"]


@runtime_checkable
class CheckpointStore(Protocol):
    def load(self, thread_id: str) -> ConversationState | None:
        ...

    def save(self, thread_id: str, state: ConversationState) -> None:
        ...

    def delete(self, thread_id: str) -> bool:
        ...


@runtime_checkable
class MemoryService(Protocol):
    def recall(self, query: str, org_id: str, user_id: str, limit: int = 5,
               threshold: float = 0.7) -> list[Any]:
        ...

    def synthesize(self, messages: list[BaseMessage], org_id: str, user_id: str,
                   metadata: dict[str, Any] | None = None) -> Any:
        ...


@runtime_checkable
class ResponseWriter(Protocol):
    def write(self, query: str, entity_context: str, memory_hint: str = "") -> str:
        ...
