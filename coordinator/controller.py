"""
Assist Core — Suspension/Resume Controller

Top-level control loop for one conversation turn, compiled as a
LangGraph StateGraph:

    START ─┬─ message ──────→ recall → route → dispatch ─┬→ clarify ─┬→ END (suspended)
           ├─ clarification ─────────────────→ clarify   │           └→ dispatch
           └─ approval ──────────────────────→ approve   ├→ approve ─┬→ END (suspended)
                                                         │           └→ dispatch
                                                         └→ finalize → END
    recall / route / dispatch ──(error)──→ error → END

Suspension is a returned value, not an exception: CLARIFY and APPROVE
put a SuspensionPayload into the graph state and the router sends the
run to END. The checkpoint written at that point is what the next
process_resume call loads.

Usage:
    controller = Controller(
        planner=RulePlanner(),
        dispatcher=DomainDispatcher(handlers={"calendar": calendar_handler}),
        store=SQLiteCheckpointStore("assist.db"),
    )
    out = controller.process_turn("thread-1", "Schedule a sync with Norman")
    if isinstance(out, SuspensionPayload):
        out = controller.process_resume("thread-1", ApprovalDecision.approve_all())
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from coordinator.approval import ApprovalBatcher
from coordinator.dispatcher import DomainDispatcher
from coordinator.memory import MemoryAdapter, format_memory_hint
from coordinator.plan import base_domain, coerce_plan, ensure_domains, validate_plan
from coordinator.responses import (
    StaticWriter,
    aggregate_results,
    build_entity_context,
    quick_entity_answer,
    should_use_writer,
)
from coordinator.store import InMemoryCheckpointStore, SQLiteCheckpointStore
from coordinator.types import (
    ApprovalDecision,
    ClarificationAnswer,
    ConversationState,
    PlanValidationError,
    ResumeError,
    SuspensionKind,
    SuspensionPayload,
    TurnResponse,
    UnhandledSuspension,
)
from engine.config import OrchestratorSettings
from engine.entities import EntityStore
from engine.logging import TurnLogger
from engine.metrics import TurnMetrics

logger = logging.getLogger("assist_core.controller")

ENTRY_MESSAGE = "message"
ENTRY_CLARIFICATION = "clarification"
ENTRY_APPROVAL = "approval"


class TurnState(TypedDict, total=False):
    conv: ConversationState
    entry: str
    payload: SuspensionPayload | None
    turn_log: TurnLogger


class Controller:
    """
    Owns the compiled graph and the injected collaborators. Construct
    once per process; every call is keyed by thread_id and carries no
    state between calls except through the checkpoint store.
    """

    def __init__(
        self,
        planner: Any,
        dispatcher: DomainDispatcher,
        store: Any = None,
        memory: Any = None,
        writer: Any = None,
        settings: OrchestratorSettings | None = None,
        batcher: ApprovalBatcher | None = None,
        entity_store: EntityStore | None = None,
        metrics: TurnMetrics | None = None,
    ):
        self.settings = settings or OrchestratorSettings()
        self.planner = planner
        self.dispatcher = dispatcher
        self.batcher = batcher or dispatcher.batcher
        self.entity_store = entity_store or dispatcher.entity_store
        self.store = store if store is not None else InMemoryCheckpointStore()
        self.memory = memory if isinstance(memory, MemoryAdapter) else MemoryAdapter(
            memory,
            recall_limit=self.settings.memory_recall_limit,
            recall_threshold=self.settings.memory_recall_threshold,
            max_retries=self.settings.memory_max_retries,
        )
        self.writer = writer or StaticWriter()
        self.breakers = self.memory.breakers
        self.metrics = metrics or TurnMetrics()
        self.graph = self._build_graph()

    @classmethod
    def from_settings(
        cls,
        settings: OrchestratorSettings,
        planner: Any,
        handlers: dict[str, Any],
        store: Any = None,
        memory: Any = None,
        writer: Any = None,
        get_credentials: Any = None,
    ) -> Controller:
        """Wire every collaborator from one settings object."""
        entity_store = EntityStore(max_history_per_type=settings.entity_history_cap)
        batcher = ApprovalBatcher(default_timeout=settings.approval_timeout_seconds)
        dispatcher = DomainDispatcher(
            handlers=handlers,
            entity_store=entity_store,
            batcher=batcher,
            max_workers=settings.max_parallel_workers,
            get_credentials=get_credentials,
        )
        if store is None:
            store = SQLiteCheckpointStore(settings.checkpoint_path)
        return cls(
            planner=planner,
            dispatcher=dispatcher,
            store=store,
            memory=memory,
            writer=writer,
            settings=settings,
            batcher=batcher,
            entity_store=entity_store,
        )

    # ═══════════════════════════════════════════════════════════════
    # Graph
    # ═══════════════════════════════════════════════════════════════

    def _build_graph(self):
        graph = StateGraph(TurnState)
        graph.add_node("recall", self._recall_node)
        graph.add_node("route", self._route_node)
        graph.add_node("dispatch", self._dispatch_node)
        graph.add_node("clarify", self._clarify_node)
        graph.add_node("approve", self._approve_node)
        graph.add_node("finalize", self._finalize_node)
        graph.add_node("error", self._error_node)

        graph.add_conditional_edges(START, self._route_entry, {
            ENTRY_MESSAGE: "recall",
            ENTRY_CLARIFICATION: "clarify",
            ENTRY_APPROVAL: "approve",
        })
        graph.add_conditional_edges("recall", self._route_or_error("route"), {
            "route": "route", "error": "error",
        })
        graph.add_conditional_edges("route", self._route_or_error("dispatch"), {
            "dispatch": "dispatch", "error": "error",
        })
        graph.add_conditional_edges("dispatch", self._route_after_dispatch, {
            "clarify": "clarify", "approve": "approve",
            "finalize": "finalize", "error": "error",
        })
        graph.add_conditional_edges("clarify", self._route_after_suspension_node, {
            "end": END, "dispatch": "dispatch", "finalize": "finalize",
        })
        graph.add_conditional_edges("approve", self._route_after_suspension_node, {
            "end": END, "dispatch": "dispatch", "finalize": "finalize",
        })
        graph.add_edge("finalize", END)
        graph.add_edge("error", END)
        return graph.compile()

    # ─── Routers ─────────────────────────────────────────────────────

    @staticmethod
    def _route_entry(state: TurnState) -> str:
        return state.get("entry", ENTRY_MESSAGE)

    @staticmethod
    def _route_or_error(next_node: str):
        def router(state: TurnState) -> str:
            return "error" if state["conv"].error else next_node
        return router

    @staticmethod
    def _route_after_dispatch(state: TurnState) -> str:
        conv = state["conv"]
        if conv.error:
            return "error"
        clar = conv.pending_clarification
        if clar is not None and clar.fresh and not clar.processed:
            return "clarify"
        appr = conv.pending_approval
        if appr is not None and not appr.processed:
            return "approve"
        return "finalize"

    @staticmethod
    def _route_after_suspension_node(state: TurnState) -> str:
        if state.get("payload") is not None:
            return "end"
        conv = state["conv"]
        clar = conv.pending_clarification
        appr = conv.pending_approval
        if (clar is not None and clar.processed) or (appr is not None and appr.processed):
            return "dispatch"
        return "finalize"

    # ═══════════════════════════════════════════════════════════════
    # Nodes
    # ═══════════════════════════════════════════════════════════════

    def _recall_node(self, state: TurnState) -> dict[str, Any]:
        conv = state["conv"]
        # A new message always starts a clean suspension cycle
        if conv.pending_approval is not None:
            self.batcher.clear(conv.pending_approval.approval_id)
        if conv.is_suspended:
            logger.info("New message on %s abandons pending suspension", conv.thread_id)
        conv.clear_suspension()
        conv.results = {}
        conv.plan = None
        conv.final_response = ""
        conv.error = None
        conv.finalized = False

        conv.memory_context = self.memory.recall(conv.last_user_message(), conv.org_id, conv.user_id)
        return {"conv": conv}

    def _route_node(self, state: TurnState) -> dict[str, Any]:
        conv = state["conv"]
        turn_log = state.get("turn_log")
        known = set(self.settings.known_domains) | set(self.dispatcher.handlers)
        try:
            raw = self.planner.plan(
                conv.last_user_message(),
                conv.memory_context,
                self.entity_store.get_stats(conv.entities),
                conv.recent_messages(self.settings.recent_message_window),
            )
            plan = coerce_plan(raw)
            check = validate_plan(plan, known_domains=known)
            for warning in check.warnings:
                logger.warning("Plan warning: %s", warning)
            if not check.valid:
                raise PlanValidationError(check.errors)
        except Exception as e:
            logger.error("Planning failed for %s: %s", conv.thread_id, e)
            conv.error = f"Planning failed: {e}"
            return {"conv": conv}

        plan, defaulted = ensure_domains(plan, self.settings.default_domain)
        conv.plan = plan
        conv.domains = plan.all_domains()
        if turn_log:
            turn_log.on_route_decision(
                list(plan.parallel), [s.domain for s in plan.sequential], defaulted,
            )
        return {"conv": conv}

    def _dispatch_node(self, state: TurnState) -> dict[str, Any]:
        conv = state["conv"]
        try:
            outcome = self.dispatcher.execute(conv.plan, conv, state.get("turn_log"))
        except UnhandledSuspension as e:
            logger.error("Structural fault in %s: %s", conv.thread_id, e)
            conv.error = str(e)
            return {"conv": conv}
        except Exception as e:
            logger.error("Dispatch failed for %s: %s", conv.thread_id, e, exc_info=True)
            conv.error = f"Failed to execute domains: {e}"
            return {"conv": conv}

        conv.results = outcome.results
        conv.entities = outcome.entities

        clar = conv.pending_clarification
        if clar is not None and clar.processed:
            # Answer consumed
            conv.pending_clarification = None
            conv.clarification_answer = None
        if outcome.clarification is not None:
            conv.pending_clarification = outcome.clarification
        if outcome.approval is not None:
            prior = conv.pending_approval
            if prior is not None and prior.processed:
                # A revised preview is a new request; the old decision is spent
                conv.approval_decision = None
            conv.pending_approval = outcome.approval
        return {"conv": conv}

    def _clarify_node(self, state: TurnState) -> dict[str, Any]:
        conv = state["conv"]
        turn_log = state.get("turn_log")
        clar = conv.pending_clarification
        if clar is None or clar.current is None:
            return {"conv": conv}

        answer = conv.clarification_answer
        if answer is None:
            request = clar.current
            payload = SuspensionPayload(
                kind=SuspensionKind.CLARIFICATION,
                thread_id=conv.thread_id,
                message=request.message,
                data={**request.to_dict(), "slot": clar.domains[0], "remaining": len(clar.requests) - 1},
            )
            self.store.save(conv.thread_id, conv)
            if turn_log:
                turn_log.on_suspend(SuspensionKind.CLARIFICATION.value, list(clar.domains))
            return {"conv": conv, "payload": payload}

        if not answer.domain:
            answer.domain = clar.domains[0]
        clar.processed = True
        clar.fresh = False
        if turn_log:
            turn_log.on_resume(SuspensionKind.CLARIFICATION.value, list(clar.domains))
        return {"conv": conv}

    def _approve_node(self, state: TurnState) -> dict[str, Any]:
        conv = state["conv"]
        turn_log = state.get("turn_log")
        appr = conv.pending_approval
        if appr is None:
            return {"conv": conv}

        decision = conv.approval_decision
        if decision is None:
            # The window opens when the human first sees the request
            appr.created_at = self.batcher.now()
            payload = self.batcher.present(
                appr.requests,
                conv.thread_id,
                timeout=appr.timeout_seconds,
                approval_id=appr.approval_id,
                created_at=appr.created_at,
            )
            self.store.save(conv.thread_id, conv)
            if turn_log:
                turn_log.on_suspend(SuspensionKind.APPROVAL.value, list(appr.domains))
            return {"conv": conv, "payload": payload}

        logger.info("Approval decision for %s: %s", conv.thread_id, self.batcher.summarize_decision(decision))
        appr.results = self.batcher.distribute_decision(decision, appr.results)
        appr.results, appr.refinements = self.batcher.apply_refinements(appr.results)
        appr.processed = True
        if turn_log:
            turn_log.on_resume(SuspensionKind.APPROVAL.value, list(appr.domains))
        return {"conv": conv}

    def _finalize_node(self, state: TurnState) -> dict[str, Any]:
        self.finalize(state["conv"])
        return {"conv": state["conv"]}

    def _error_node(self, state: TurnState) -> dict[str, Any]:
        conv = state["conv"]
        conv.final_response = (
            f"I encountered an error: {conv.error}. Please try again or rephrase your request."
        )
        return {"conv": conv}

    # ═══════════════════════════════════════════════════════════════
    # Finalize
    # ═══════════════════════════════════════════════════════════════

    def finalize(self, conv: ConversationState) -> TurnResponse:
        """
        Produce the turn's single assistant message. Idempotent: a state
        that is already finalized is returned unchanged.
        """
        if conv.finalized:
            return self._response(conv)

        query = conv.last_user_message()
        results = conv.results

        quick = quick_entity_answer(query, conv.entities)
        if quick:
            response = quick
        elif should_use_writer(results):
            response = self._write(conv, query)
        else:
            response = aggregate_results(results)

        conv.add_assistant_message(response)
        conv.final_response = response
        if results:
            conv.domains = list(dict.fromkeys(base_domain(slot) for slot in results))

        # End-of-turn hygiene: nothing carries into the next turn
        conv.clear_suspension()
        conv.results = {}
        conv.finalized = True

        self.memory.synthesize(
            conv.messages, conv.org_id, conv.user_id,
            {"domains": list(conv.domains), "timestamp": datetime.now(timezone.utc).isoformat()},
        )
        if self.settings.checkpoint_on_finalize and conv.thread_id:
            try:
                self.store.save(conv.thread_id, conv)
            except Exception as e:
                logger.warning("Could not save finalized turn for %s: %s", conv.thread_id, e)
        return self._response(conv)

    def _write(self, conv: ConversationState, query: str) -> str:
        memory_hint = format_memory_hint(conv.memory_context[:1])
        try:
            return self.writer.write(query, build_entity_context(conv.entities), memory_hint)
        except Exception as e:
            logger.warning("Response writer failed: %s", e)
            return "I couldn't process your request. Please try again."

    # ═══════════════════════════════════════════════════════════════
    # Public API
    # ═══════════════════════════════════════════════════════════════

    def process_turn(
        self,
        thread_id: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> TurnResponse | SuspensionPayload:
        conv = self._load(thread_id)
        self._apply_context(conv, context)
        conv.add_user_message(message)
        return self._run(conv, ENTRY_MESSAGE)

    def process_resume(
        self,
        thread_id: str,
        decision: ApprovalDecision | ClarificationAnswer | dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> TurnResponse | SuspensionPayload:
        if isinstance(decision, dict):
            decision = (
                ApprovalDecision.from_dict(decision) if "action" in decision
                else ClarificationAnswer.from_dict(decision)
            )

        conv = self.store.load(thread_id)
        if conv is None:
            raise ResumeError(f"No suspended conversation for thread {thread_id}")
        self._apply_context(conv, context)

        if isinstance(decision, ClarificationAnswer):
            clar = conv.pending_clarification
            if clar is None or clar.processed:
                raise ResumeError(f"Thread {thread_id} is not awaiting a clarification")
            conv.clarification_answer = decision
            return self._run(conv, ENTRY_CLARIFICATION)

        appr = conv.pending_approval
        clar = conv.pending_clarification
        if appr is None or appr.processed:
            raise ResumeError(f"Thread {thread_id} is not awaiting an approval")
        if clar is not None and not clar.processed:
            raise ResumeError(f"Thread {thread_id} must resolve its clarification first")
        if decision.approval_id and decision.approval_id != appr.approval_id:
            raise ResumeError(
                f"Decision for {decision.approval_id} does not match pending approval {appr.approval_id}"
            )
        decision.approval_id = appr.approval_id

        if not decision.timed_out and self.batcher.has_timed_out(appr):
            logger.info("Approval %s expired before the decision arrived", appr.approval_id)
            decision = ApprovalDecision.timeout(appr.approval_id)
        conv.approval_decision = decision
        return self._run(conv, ENTRY_APPROVAL)

    def check_timeout(self, thread_id: str, now: float | None = None) -> TurnResponse | SuspensionPayload | None:
        """
        Poll-driven auto-reject. If the thread's pending approval has
        outlived its timeout, resume it with a timed-out reject-all.
        """
        conv = self._load(thread_id)
        appr = conv.pending_approval
        clar = conv.pending_clarification
        if appr is None or appr.processed or (clar is not None and not clar.processed):
            return None
        if not self.batcher.has_timed_out(appr, now):
            return None
        logger.info("Approval %s on %s timed out", appr.approval_id, thread_id)
        return self.process_resume(thread_id, self.batcher.timeout_decision(appr.approval_id))

    def sweep_timeouts(self, now: float | None = None) -> dict[str, TurnResponse | SuspensionPayload]:
        """Resolve every expired approval the store knows about."""
        finder = getattr(self.store, "find_expired_approvals", None)
        if finder is None:
            return {}
        resolved = {}
        for thread_id in finder(now):
            out = self.check_timeout(thread_id, now)
            if out is not None:
                resolved[thread_id] = out
        return resolved

    # ─── Operations ──────────────────────────────────────────────────

    def performance_report(self) -> dict[str, Any]:
        """Per-domain call counts and latency, plus turn outcomes."""
        return self.metrics.performance_report()

    def error_report(self) -> dict[str, Any]:
        return self.metrics.error_report(self.breakers.report())

    def reset_metrics(self) -> None:
        self.metrics.reset()

    def reset_circuit_breakers(self) -> None:
        logger.info("Resetting all circuit breakers")
        self.breakers.reset_all()

    # ─── Internals ───────────────────────────────────────────────────

    def _load(self, thread_id: str) -> ConversationState:
        try:
            conv = self.store.load(thread_id)
        except Exception as e:
            logger.warning("Checkpoint load failed for %s, starting fresh: %s", thread_id, e)
            conv = None
        if conv is None:
            conv = ConversationState(thread_id=thread_id)
        conv.thread_id = thread_id
        return conv

    @staticmethod
    def _apply_context(conv: ConversationState, context: dict[str, Any] | None) -> None:
        for key in ("org_id", "user_id", "session_id", "timezone"):
            if context and context.get(key):
                setattr(conv, key, context[key])

    def _run(self, conv: ConversationState, entry: str) -> TurnResponse | SuspensionPayload:
        turn_log = TurnLogger(thread_id=conv.thread_id, metrics=self.metrics)
        turn_log.on_turn_start(entry)
        start = time.monotonic()

        out = self.graph.invoke({"conv": conv, "entry": entry, "payload": None, "turn_log": turn_log})

        payload = out.get("payload")
        if payload is not None:
            turn_log.on_turn_end(f"suspended_{payload.kind.value}", time.monotonic() - start)
            return payload

        conv = out["conv"]
        turn_log.on_turn_end("error" if conv.error else "completed", time.monotonic() - start)
        return self._response(conv)

    def _response(self, conv: ConversationState) -> TurnResponse:
        return TurnResponse(
            success=conv.error is None,
            response=conv.final_response,
            thread_id=conv.thread_id,
            entities=dict(conv.entities.latest),
            domains=list(conv.domains),
            error=conv.error,
        )
