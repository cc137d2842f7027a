"""
Assist Core — Coordinator Type Definitions

All data structures for one conversation turn: routing plans, domain
results and their tagged outcomes, clarification and approval requests,
pending suspension records, human decisions, suspension payloads, and
the conversation state that is checkpointed between turns.

Every record round-trips through to_dict()/from_dict() so it can be
stored as JSON by the checkpoint store.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    messages_from_dict,
    messages_to_dict,
)

from engine.entities import EntityMap


# ─── Routing Plan ───────────────────────────────────────────────────

@dataclass
class SequentialStep:
    """One ordered step; runs after every domain in depends_on."""
    domain: str
    depends_on: list[str] = field(default_factory=list)
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"domain": self.domain, "depends_on": list(self.depends_on), "reason": self.reason}

    @staticmethod
    def from_dict(data: dict[str, Any] | str) -> SequentialStep:
        if isinstance(data, str):
            return SequentialStep(domain=data)
        return SequentialStep(
            domain=data["domain"],
            depends_on=list(data.get("depends_on", data.get("dependsOn", [])) or []),
            reason=data.get("reason", ""),
        )


@dataclass
class RoutingPlan:
    """
    Output of the planner.

    ``parallel`` may name the same domain more than once; each
    occurrence is an independent invocation.
    """
    parallel: list[str] = field(default_factory=list)
    sequential: list[SequentialStep] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def all_domains(self) -> list[str]:
        seen: list[str] = []
        for name in [*self.parallel, *(s.domain for s in self.sequential)]:
            if name not in seen:
                seen.append(name)
        return seen

    def is_empty(self) -> bool:
        return not self.parallel and not self.sequential

    def to_dict(self) -> dict[str, Any]:
        return {
            "parallel": list(self.parallel),
            "sequential": [s.to_dict() for s in self.sequential],
            "metadata": dict(self.metadata),
        }

    @staticmethod
    def from_dict(data: dict[str, Any] | None) -> RoutingPlan:
        data = data or {}
        return RoutingPlan(
            parallel=list(data.get("parallel", []) or []),
            sequential=[SequentialStep.from_dict(s) for s in data.get("sequential", []) or []],
            metadata=dict(data.get("metadata", {}) or {}),
        )


# ─── Clarification & Approval Requests ──────────────────────────────

@dataclass
class ClarificationRequest:
    """A request to disambiguate a name or reference."""
    type: str
    message: str
    suggestions: list[Any] = field(default_factory=list)
    skippable: bool = False
    candidates: list[Any] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    domain: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "suggestions": list(self.suggestions),
            "skippable": self.skippable,
            "candidates": list(self.candidates),
            "data": dict(self.data),
            "domain": self.domain,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ClarificationRequest:
        return ClarificationRequest(
            type=data.get("type", "clarification"),
            message=data.get("message", ""),
            suggestions=list(data.get("suggestions", []) or []),
            skippable=bool(data.get("skippable", False)),
            candidates=list(data.get("candidates", []) or []),
            data=dict(data.get("data", {}) or {}),
            domain=data.get("domain", ""),
        )


@dataclass
class PreviewDetail:
    label: str
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "value": self.value}


@dataclass
class ActionPreview:
    """Human-readable preview of an action awaiting approval."""
    title: str
    details: list[PreviewDetail] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    type: str = ""
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def detail(self, label: str, default: Any = None) -> Any:
        for d in self.details:
            if d.label == label:
                return d.value
        return default

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "details": [d.to_dict() for d in self.details],
            "warnings": list(self.warnings),
            "type": self.type,
            "description": self.description,
            "metadata": dict(self.metadata),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ActionPreview:
        return ActionPreview(
            title=data.get("title", ""),
            details=[
                PreviewDetail(label=d.get("label", ""), value=d.get("value"))
                for d in data.get("details", []) or []
            ],
            warnings=list(data.get("warnings", []) or []),
            type=data.get("type", ""),
            description=data.get("description", ""),
            metadata=dict(data.get("metadata", {}) or {}),
        )


@dataclass
class ApprovalRequest:
    """A request for explicit confirmation before an action is applied."""
    action_id: str
    action: str
    preview: ActionPreview
    domain: str = ""
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def create(
        domain: str,
        action: str,
        preview: ActionPreview,
        message: str = "",
        data: dict[str, Any] | None = None,
    ) -> ApprovalRequest:
        return ApprovalRequest(
            action_id=f"act_{uuid.uuid4().hex[:12]}",
            action=action,
            preview=preview,
            domain=domain,
            message=message,
            data=data or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "action": self.action,
            "preview": self.preview.to_dict(),
            "domain": self.domain,
            "message": self.message,
            "data": dict(self.data),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ApprovalRequest:
        return ApprovalRequest(
            action_id=data["action_id"],
            action=data.get("action", ""),
            preview=ActionPreview.from_dict(data.get("preview", {}) or {}),
            domain=data.get("domain", ""),
            message=data.get("message", ""),
            data=dict(data.get("data", {}) or {}),
        )


# ─── Domain Results ─────────────────────────────────────────────────

class OutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CLARIFICATION = "clarification"
    APPROVAL = "approval"


@dataclass
class Success:
    response: str = ""
    data: dict[str, Any] | None = None
    informational: bool = False
    kind = OutcomeKind.SUCCESS


@dataclass
class Failure:
    error: str
    fallback_message: str = ""
    kind = OutcomeKind.FAILURE


@dataclass
class ClarificationNeeded:
    request: ClarificationRequest
    kind = OutcomeKind.CLARIFICATION


@dataclass
class ApprovalNeeded:
    request: ApprovalRequest
    kind = OutcomeKind.APPROVAL


DomainOutcome = Union[Success, Failure, ClarificationNeeded, ApprovalNeeded]


@dataclass
class ApprovalStamp:
    """The human decision as it applies to one domain result."""
    approved: bool
    rejected: bool
    timed_out: bool = False
    refinement: str | None = None
    reason: str | None = None
    approval_id: str = ""
    timestamp: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "approved": self.approved,
            "rejected": self.rejected,
            "timed_out": self.timed_out,
            "refinement": self.refinement,
            "reason": self.reason,
            "approval_id": self.approval_id,
            "timestamp": self.timestamp,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ApprovalStamp:
        return ApprovalStamp(
            approved=bool(data.get("approved", False)),
            rejected=bool(data.get("rejected", False)),
            timed_out=bool(data.get("timed_out", False)),
            refinement=data.get("refinement"),
            reason=data.get("reason"),
            approval_id=data.get("approval_id", ""),
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass
class DomainResult:
    """
    Outcome of one handler invocation.

    Exactly one outcome per result. ``resolved`` is set on results that
    carry a clarification/approval request which no longer needs to
    suspend the turn (carried over from a snapshot during resume).
    """
    domain: str
    outcome: DomainOutcome
    entity_updates: dict[str, Any] = field(default_factory=dict)
    approval: ApprovalStamp | None = None
    resolved: bool = False

    # ─── Constructors ─────────────────────────────────────────────

    @staticmethod
    def success(
        domain: str,
        response: str = "",
        data: dict[str, Any] | None = None,
        informational: bool = False,
        entity_updates: dict[str, Any] | None = None,
    ) -> DomainResult:
        return DomainResult(
            domain=domain,
            outcome=Success(response=response, data=data, informational=informational),
            entity_updates=entity_updates or {},
        )

    @staticmethod
    def failure(domain: str, error: str, fallback_message: str = "") -> DomainResult:
        return DomainResult(domain=domain, outcome=Failure(error=error, fallback_message=fallback_message))

    @staticmethod
    def clarification(
        domain: str,
        request: ClarificationRequest,
        entity_updates: dict[str, Any] | None = None,
    ) -> DomainResult:
        if not request.domain:
            request.domain = domain
        return DomainResult(
            domain=domain,
            outcome=ClarificationNeeded(request=request),
            entity_updates=entity_updates or {},
        )

    @staticmethod
    def needs_approval_for(
        domain: str,
        request: ApprovalRequest,
        entity_updates: dict[str, Any] | None = None,
    ) -> DomainResult:
        if not request.domain:
            request.domain = domain
        return DomainResult(
            domain=domain,
            outcome=ApprovalNeeded(request=request),
            entity_updates=entity_updates or {},
        )

    # ─── Queries ──────────────────────────────────────────────────

    @property
    def kind(self) -> OutcomeKind:
        return self.outcome.kind

    @property
    def is_success(self) -> bool:
        return isinstance(self.outcome, Success)

    @property
    def is_failure(self) -> bool:
        return isinstance(self.outcome, Failure)

    @property
    def is_informational(self) -> bool:
        return isinstance(self.outcome, Success) and self.outcome.informational

    @property
    def needs_clarification(self) -> bool:
        return isinstance(self.outcome, ClarificationNeeded) and not self.resolved

    @property
    def needs_approval(self) -> bool:
        return (
            isinstance(self.outcome, ApprovalNeeded)
            and not self.resolved
            and self.approval is None
        )

    @property
    def requires_suspension(self) -> bool:
        return self.needs_clarification or self.needs_approval

    # ─── Serialization ────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind.value}
        o = self.outcome
        if isinstance(o, Success):
            out.update(response=o.response, data=o.data, informational=o.informational)
        elif isinstance(o, Failure):
            out.update(error=o.error, fallback_message=o.fallback_message)
        elif isinstance(o, ClarificationNeeded):
            out["request"] = o.request.to_dict()
        else:
            out["request"] = o.request.to_dict()
        return {
            "domain": self.domain,
            "outcome": out,
            "entity_updates": self.entity_updates,
            "approval": self.approval.to_dict() if self.approval else None,
            "resolved": self.resolved,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> DomainResult:
        raw = data.get("outcome", {}) or {}
        kind = OutcomeKind(raw.get("kind", OutcomeKind.SUCCESS.value))
        outcome: DomainOutcome
        if kind == OutcomeKind.SUCCESS:
            outcome = Success(
                response=raw.get("response", ""),
                data=raw.get("data"),
                informational=bool(raw.get("informational", False)),
            )
        elif kind == OutcomeKind.FAILURE:
            outcome = Failure(error=raw.get("error", ""), fallback_message=raw.get("fallback_message", ""))
        elif kind == OutcomeKind.CLARIFICATION:
            outcome = ClarificationNeeded(request=ClarificationRequest.from_dict(raw["request"]))
        else:
            outcome = ApprovalNeeded(request=ApprovalRequest.from_dict(raw["request"]))
        approval = data.get("approval")
        return DomainResult(
            domain=data["domain"],
            outcome=outcome,
            entity_updates=dict(data.get("entity_updates", {}) or {}),
            approval=ApprovalStamp.from_dict(approval) if approval else None,
            resolved=bool(data.get("resolved", False)),
        )


def results_to_dict(results: dict[str, DomainResult]) -> dict[str, Any]:
    return {slot: r.to_dict() for slot, r in results.items()}


def results_from_dict(data: dict[str, Any] | None) -> dict[str, DomainResult]:
    return {slot: DomainResult.from_dict(r) for slot, r in (data or {}).items()}


# ─── Pending Suspension Records ─────────────────────────────────────

@dataclass
class PendingApprovalRecord:
    """
    Approval requests gathered from one dispatch pass, plus a snapshot
    of every result computed so far so completed domains are not re-run.
    """
    requests: list[ApprovalRequest]
    domains: list[str]
    results: dict[str, DomainResult]
    approval_id: str
    created_at: float
    timeout_seconds: float = 30.0
    processed: bool = False
    refinements: dict[str, dict[str, Any]] = field(default_factory=dict)

    @staticmethod
    def create(
        requests: list[ApprovalRequest],
        domains: list[str],
        results: dict[str, DomainResult],
        timeout_seconds: float = 30.0,
    ) -> PendingApprovalRecord:
        return PendingApprovalRecord(
            requests=list(requests),
            domains=list(domains),
            results=dict(results),
            approval_id=f"approval_{uuid.uuid4().hex[:12]}",
            created_at=time.time(),
            timeout_seconds=timeout_seconds,
        )

    def elapsed(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.created_at

    def has_timed_out(self, now: float | None = None) -> bool:
        return self.elapsed(now) > self.timeout_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": [r.to_dict() for r in self.requests],
            "domains": list(self.domains),
            "results": results_to_dict(self.results),
            "approval_id": self.approval_id,
            "created_at": self.created_at,
            "timeout_seconds": self.timeout_seconds,
            "processed": self.processed,
            "refinements": dict(self.refinements),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> PendingApprovalRecord:
        return PendingApprovalRecord(
            requests=[ApprovalRequest.from_dict(r) for r in data.get("requests", [])],
            domains=list(data.get("domains", [])),
            results=results_from_dict(data.get("results")),
            approval_id=data["approval_id"],
            created_at=float(data["created_at"]),
            timeout_seconds=float(data.get("timeout_seconds", 30.0)),
            processed=bool(data.get("processed", False)),
            refinements=dict(data.get("refinements", {}) or {}),
        )


@dataclass
class PendingClarificationRecord:
    """Clarification requests gathered from one dispatch pass."""
    requests: list[ClarificationRequest]
    domains: list[str]
    results: dict[str, DomainResult]
    fresh: bool = True
    processed: bool = False

    @property
    def current(self) -> ClarificationRequest | None:
        """Requests are resolved one at a time, in list order."""
        return self.requests[0] if self.requests else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": [r.to_dict() for r in self.requests],
            "domains": list(self.domains),
            "results": results_to_dict(self.results),
            "fresh": self.fresh,
            "processed": self.processed,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> PendingClarificationRecord:
        return PendingClarificationRecord(
            requests=[ClarificationRequest.from_dict(r) for r in data.get("requests", [])],
            domains=list(data.get("domains", [])),
            results=results_from_dict(data.get("results")),
            # A record read back from storage is never fresh
            fresh=False,
            processed=bool(data.get("processed", False)),
        )


# ─── Human Decisions ────────────────────────────────────────────────

class DecisionAction(str, enum.Enum):
    APPROVE_ALL = "approve_all"
    REJECT_ALL = "reject_all"
    SELECTIVE = "selective"


@dataclass
class ApprovalDecision:
    """
    Human response to a consolidated approval request.

    ``selective`` maps action_id to either a bool or a dict with
    ``approved`` and optional ``refinement`` / ``reason``.
    """
    action: DecisionAction
    selective: dict[str, Any] = field(default_factory=dict)
    timed_out: bool = False
    reason: str | None = None
    approval_id: str = ""

    @staticmethod
    def approve_all(approval_id: str = "") -> ApprovalDecision:
        return ApprovalDecision(action=DecisionAction.APPROVE_ALL, approval_id=approval_id)

    @staticmethod
    def reject_all(approval_id: str = "", reason: str | None = None) -> ApprovalDecision:
        return ApprovalDecision(action=DecisionAction.REJECT_ALL, approval_id=approval_id, reason=reason)

    @staticmethod
    def timeout(approval_id: str = "") -> ApprovalDecision:
        return ApprovalDecision(
            action=DecisionAction.REJECT_ALL,
            timed_out=True,
            reason="Approval timeout",
            approval_id=approval_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "selective": dict(self.selective),
            "timed_out": self.timed_out,
            "reason": self.reason,
            "approval_id": self.approval_id,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ApprovalDecision:
        return ApprovalDecision(
            action=DecisionAction(data.get("action", DecisionAction.REJECT_ALL.value)),
            selective=dict(data.get("selective", {}) or {}),
            timed_out=bool(data.get("timed_out", data.get("timedOut", False))),
            reason=data.get("reason"),
            approval_id=data.get("approval_id", ""),
        )


@dataclass
class ClarificationAnswer:
    """
    Human response to a clarification request. ``domain`` defaults to
    the first pending request's domain when left empty.
    """
    value: Any = None
    domain: str = ""
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "domain": self.domain, "skipped": self.skipped}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ClarificationAnswer:
        return ClarificationAnswer(
            value=data.get("value"),
            domain=data.get("domain", ""),
            skipped=bool(data.get("skipped", False)),
        )


# ─── Caller-facing Payloads ─────────────────────────────────────────

class SuspensionKind(str, enum.Enum):
    CLARIFICATION = "clarification"
    APPROVAL = "approval"


@dataclass
class SuspensionPayload:
    """Returned instead of a response while the turn awaits a human."""
    kind: SuspensionKind
    thread_id: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "thread_id": self.thread_id,
            "message": self.message,
            "data": self.data,
        }


@dataclass
class TurnResponse:
    """Normal completion of a turn."""
    success: bool
    response: str
    thread_id: str = ""
    entities: dict[str, Any] = field(default_factory=dict)
    domains: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "response": self.response,
            "thread_id": self.thread_id,
            "entities": self.entities,
            "domains": list(self.domains),
            "error": self.error,
        }


# ─── Memory & Handler Context ───────────────────────────────────────

@dataclass
class RecalledMemory:
    content: str
    score: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def coerce(raw: Any) -> RecalledMemory:
        if isinstance(raw, RecalledMemory):
            return raw
        if isinstance(raw, str):
            return RecalledMemory(content=raw)
        return RecalledMemory(
            content=str(raw.get("content", raw.get("memory", ""))),
            score=raw.get("score"),
            metadata=dict(raw.get("metadata", {}) or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "score": self.score, "metadata": dict(self.metadata)}


@dataclass
class DomainContext:
    """
    Independent per-invocation context handed to a domain handler.

    Built fresh (deep-copied) for every slot so concurrent handlers never
    share anything mutable. Credentials are only reachable through
    ``get_credentials``.
    """
    domain: str
    slot: str
    query: str
    messages: list[BaseMessage]
    entities: EntityMap
    memory_context: list[RecalledMemory] = field(default_factory=list)
    org_id: str = ""
    user_id: str = ""
    session_id: str = ""
    thread_id: str = ""
    timezone: str = "UTC"
    occurrence: int = 1
    get_credentials: Callable[[], Any] | None = None
    dependencies: dict[str, DomainResult] = field(default_factory=dict)
    clarification_answer: ClarificationAnswer | None = None
    approval_decision: ApprovalDecision | None = None
    approval: ApprovalStamp | None = None
    previous_result: DomainResult | None = None
    refinement: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_resume(self) -> bool:
        return self.clarification_answer is not None or self.approval is not None


# ─── Conversation State ─────────────────────────────────────────────

@dataclass
class ConversationState:
    """
    Full mutable context of one conversation thread.

    At most one of pending_clarification / pending_approval is active
    (unprocessed and surfaced) at a time; clarification wins.
    """
    thread_id: str = ""
    messages: list[BaseMessage] = field(default_factory=list)
    plan: RoutingPlan | None = None
    results: dict[str, DomainResult] = field(default_factory=dict)
    entities: EntityMap = field(default_factory=EntityMap)
    pending_clarification: PendingClarificationRecord | None = None
    pending_approval: PendingApprovalRecord | None = None
    approval_decision: ApprovalDecision | None = None
    clarification_answer: ClarificationAnswer | None = None
    org_id: str = ""
    user_id: str = ""
    session_id: str = ""
    timezone: str = "UTC"
    memory_context: list[RecalledMemory] = field(default_factory=list)
    domains: list[str] = field(default_factory=list)
    final_response: str = ""
    error: str | None = None
    finalized: bool = False

    def last_user_message(self) -> str:
        for msg in reversed(self.messages):
            if isinstance(msg, HumanMessage):
                return str(msg.content)
        return ""

    def recent_messages(self, n: int) -> list[BaseMessage]:
        return list(self.messages[-n:]) if n > 0 else []

    def add_user_message(self, content: str) -> None:
        self.messages.append(HumanMessage(content=content))

    def add_assistant_message(self, content: str) -> None:
        self.messages.append(AIMessage(content=content))

    def clear_suspension(self) -> None:
        self.pending_clarification = None
        self.pending_approval = None
        self.approval_decision = None
        self.clarification_answer = None

    @property
    def is_suspended(self) -> bool:
        clar = self.pending_clarification
        appr = self.pending_approval
        return bool((clar and not clar.processed) or (appr and not appr.processed))

    def to_dict(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "messages": messages_to_dict(self.messages),
            "plan": self.plan.to_dict() if self.plan else None,
            "results": results_to_dict(self.results),
            "entities": self.entities.to_dict(),
            "pending_clarification": (
                self.pending_clarification.to_dict() if self.pending_clarification else None
            ),
            "pending_approval": self.pending_approval.to_dict() if self.pending_approval else None,
            "approval_decision": self.approval_decision.to_dict() if self.approval_decision else None,
            "clarification_answer": (
                self.clarification_answer.to_dict() if self.clarification_answer else None
            ),
            "org_id": self.org_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "timezone": self.timezone,
            "memory_context": [m.to_dict() for m in self.memory_context],
            "domains": list(self.domains),
            "final_response": self.final_response,
            "error": self.error,
            "finalized": self.finalized,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ConversationState:
        clar = data.get("pending_clarification")
        appr = data.get("pending_approval")
        decision = data.get("approval_decision")
        answer = data.get("clarification_answer")
        plan = data.get("plan")
        return ConversationState(
            thread_id=data.get("thread_id", ""),
            messages=messages_from_dict(data.get("messages", []) or []),
            plan=RoutingPlan.from_dict(plan) if plan else None,
            results=results_from_dict(data.get("results")),
            entities=EntityMap.from_dict(data.get("entities")),
            pending_clarification=PendingClarificationRecord.from_dict(clar) if clar else None,
            pending_approval=PendingApprovalRecord.from_dict(appr) if appr else None,
            approval_decision=ApprovalDecision.from_dict(decision) if decision else None,
            clarification_answer=ClarificationAnswer.from_dict(answer) if answer else None,
            org_id=data.get("org_id", ""),
            user_id=data.get("user_id", ""),
            session_id=data.get("session_id", ""),
            timezone=data.get("timezone", "UTC"),
            memory_context=[RecalledMemory.coerce(m) for m in data.get("memory_context", []) or []],
            domains=list(data.get("domains", []) or []),
            final_response=data.get("final_response", ""),
            error=data.get("error"),
            finalized=bool(data.get("finalized", False)),
        )


# ─── Errors ─────────────────────────────────────────────────────────

class PlanValidationError(ValueError):
    """Routing plan is structurally invalid (unknown step shape, cycle)."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid routing plan")


class SuspendSignal(Exception):
    """
    Transport-level suspension raised from deep inside a handler, e.g.
    several contacts match a name mid-search. The dispatcher converts
    clarification and approval kinds into a result for that one slot.
    """

    CLARIFICATION_KINDS = frozenset({
        "clarification",
        "contact_clarification",
        "contact_disambiguation",
        "contact_not_found",
        "user_clarification",
        "user_disambiguation",
        "user_not_found",
    })
    APPROVAL_KINDS = frozenset({"approval", "approval_required"})

    def __init__(self, kind: str, payload: dict[str, Any] | None = None, message: str = ""):
        self.kind = kind
        self.payload = payload or {}
        self.message = message or self.payload.get("message", "")
        super().__init__(f"suspend[{kind}]: {self.message}")

    @property
    def is_clarification(self) -> bool:
        return self.kind in self.CLARIFICATION_KINDS

    @property
    def is_approval(self) -> bool:
        return self.kind in self.APPROVAL_KINDS


class UnhandledSuspension(RuntimeError):
    """A SuspendSignal escaped from a context that cannot interpret it."""

    def __init__(self, signal: SuspendSignal, slot: str = ""):
        self.signal = signal
        self.slot = slot
        super().__init__(f"Unhandled suspension '{signal.kind}' from {slot or 'unknown domain'}")


class ResumeError(RuntimeError):
    """A resume call does not match the stored suspension."""
