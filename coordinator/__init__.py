"""
Assist Core — Orchestration Coordinator

Decides which domains handle a conversation turn, runs them (parallel
fan-out plus dependency-ordered steps), suspends for clarification or
approval with a durable checkpoint, and resumes exactly where it left
off.

Usage:
    from coordinator import Controller, DomainDispatcher, RulePlanner

    controller = Controller(planner=RulePlanner(), dispatcher=DomainDispatcher(handlers))
    out = controller.process_turn("thread-1", "Schedule a sync with Norman tomorrow")
"""

from coordinator.types import (
    ActionPreview,
    ApprovalDecision,
    ApprovalRequest,
    ApprovalStamp,
    ClarificationAnswer,
    ClarificationRequest,
    ConversationState,
    DecisionAction,
    DomainContext,
    DomainResult,
    PendingApprovalRecord,
    PendingClarificationRecord,
    PlanValidationError,
    PreviewDetail,
    ResumeError,
    RoutingPlan,
    SequentialStep,
    SuspendSignal,
    SuspensionKind,
    SuspensionPayload,
    TurnResponse,
    UnhandledSuspension,
)
from coordinator.approval import ApprovalBatcher
from coordinator.dispatcher import DispatchOutcome, DomainDispatcher
from coordinator.plan import RulePlanner, validate_plan
from coordinator.store import InMemoryCheckpointStore, SQLiteCheckpointStore
from coordinator.memory import MemoryAdapter, NullMemory
from coordinator.responses import ChatModelWriter, StaticWriter
from coordinator.controller import Controller

__all__ = [
    "Controller",
    "DomainDispatcher",
    "DispatchOutcome",
    "ApprovalBatcher",
    "RulePlanner",
    "validate_plan",
    "SQLiteCheckpointStore",
    "InMemoryCheckpointStore",
    "MemoryAdapter",
    "NullMemory",
    "ChatModelWriter",
    "StaticWriter",
    "ActionPreview",
    "ApprovalDecision",
    "ApprovalRequest",
    "ApprovalStamp",
    "ClarificationAnswer",
    "ClarificationRequest",
    "ConversationState",
    "DecisionAction",
    "DomainContext",
    "DomainResult",
    "PendingApprovalRecord",
    "PendingClarificationRecord",
    "PlanValidationError",
    "PreviewDetail",
    "ResumeError",
    "RoutingPlan",
    "SequentialStep",
    "SuspendSignal",
    "SuspensionKind",
    "SuspensionPayload",
    "TurnResponse",
    "UnhandledSuspension",
]
