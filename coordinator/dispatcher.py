"""
Assist Core — Domain Dispatcher

Runs the domains named by a routing plan and settles their results.

  - Parallel set: one ThreadPoolExecutor task per slot, each with its own
    deep-copied DomainContext. All-settled join: every invocation runs
    to completion before anything is inspected.
  - Sequential steps: strictly in listed order on the calling thread,
    each step seeing the results of its declared dependencies.
  - After the join: entity updates are merged in plan order, then
    results are scanned for clarification requests (priority) and
    approval requests.
  - Resume: when the state carries a processed suspension record with a
    human decision attached, only that record's slots (and sequential
    steps downstream of them) re-run; every other result is carried over
    from the record's snapshot.

A domain named twice in the parallel set produces two slots, "contact"
and "contact#2". Handlers are looked up by the bare domain name.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

from coordinator.approval import ApprovalBatcher
from coordinator.plan import base_domain, slot_keys
from coordinator.types import (
    ActionPreview,
    ApprovalRequest,
    ClarificationAnswer,
    ClarificationRequest,
    ConversationState,
    DomainContext,
    DomainResult,
    Failure,
    PendingApprovalRecord,
    PendingClarificationRecord,
    RoutingPlan,
    SequentialStep,
    SuspendSignal,
    UnhandledSuspension,
)
from engine.entities import EntityMap, EntityStore
from engine.logging import TurnLogger

logger = logging.getLogger("assist_core.dispatcher")


@dataclass
class Slot:
    key: str
    domain: str
    occurrence: int
    step: SequentialStep | None = None

    @property
    def sequential(self) -> bool:
        return self.step is not None


@dataclass
class DispatchOutcome:
    results: dict[str, DomainResult]
    entities: EntityMap
    clarification: PendingClarificationRecord | None = None
    approval: PendingApprovalRecord | None = None
    executed: list[str] = field(default_factory=list)
    carried: list[str] = field(default_factory=list)

    @property
    def suspension(self) -> PendingClarificationRecord | PendingApprovalRecord | None:
        """Clarification always wins over approval."""
        return self.clarification or self.approval


@dataclass
class _Invocation:
    slot: Slot
    result: DomainResult | None
    signal: SuspendSignal | None = None
    elapsed: float = 0.0


def plan_slots(plan: RoutingPlan) -> list[Slot]:
    """Parallel slots first, then sequential steps, in plan order."""
    names = [*plan.parallel, *(s.domain for s in plan.sequential)]
    keyed = slot_keys(names)
    slots = [Slot(k, d, n) for k, d, n in keyed[:len(plan.parallel)]]
    for (k, d, n), step in zip(keyed[len(plan.parallel):], plan.sequential):
        slots.append(Slot(k, d, n, step))
    return slots


class DomainDispatcher:
    """
    Injected into the Controller. Holds the handler registry and the
    shared collaborators (entity store, approval batcher, credential
    accessor); holds no per-conversation state.
    """

    def __init__(
        self,
        handlers: dict[str, Callable[[DomainContext], DomainResult | None]] | None = None,
        entity_store: EntityStore | None = None,
        batcher: ApprovalBatcher | None = None,
        max_workers: int = 8,
        get_credentials: Callable[[], Any] | None = None,
    ):
        self.handlers = dict(handlers or {})
        self.entity_store = entity_store or EntityStore()
        self.batcher = batcher or ApprovalBatcher()
        self.max_workers = max(1, max_workers)
        self.get_credentials = get_credentials

    def register(self, domain: str, handler: Callable[[DomainContext], DomainResult | None]) -> None:
        self.handlers[domain] = handler

    # ═══════════════════════════════════════════════════════════════
    # Execute
    # ═══════════════════════════════════════════════════════════════

    def execute(
        self,
        plan: RoutingPlan,
        state: ConversationState,
        turn_log: TurnLogger | None = None,
    ) -> DispatchOutcome:
        slots = plan_slots(plan)
        resume_record, answer = self._resume_target(state)

        results: dict[str, DomainResult] = {}
        carried: list[str] = []
        snapshot: dict[str, DomainResult] = {}

        if resume_record is not None:
            targets = self._expand_downstream(slots, set(resume_record.domains))
            snapshot = resume_record.results
            for slot in slots:
                if slot.key in targets or slot.key not in snapshot:
                    continue
                prior = snapshot[slot.key]
                # Carried results must not re-queue a suspension
                results[slot.key] = (
                    dataclasses.replace(prior, resolved=True) if prior.requires_suspension else prior
                )
                carried.append(slot.key)
            to_run = [s for s in slots if s.key in targets]
            logger.info(
                "Resuming: re-running %s, carrying %s",
                [s.key for s in to_run], carried,
            )
        else:
            to_run = slots

        parallel = [s for s in to_run if not s.sequential]
        sequential = [s for s in to_run if s.sequential]
        executed: list[str] = []

        # ─── Parallel fan-out, all-settled ───────────────────────────
        invocations: list[_Invocation] = []
        if parallel:
            contexts = [
                self._build_context(s, state, results, answer, snapshot, resume_record)
                for s in parallel
            ]
            workers = min(self.max_workers, len(parallel))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="assist-domain") as pool:
                futures = [
                    pool.submit(self._invoke, s, ctx, turn_log)
                    for s, ctx in zip(parallel, contexts)
                ]
                invocations = [f.result() for f in futures]

        self._raise_unhandled(invocations)
        for inv in invocations:
            results[inv.slot.key] = inv.result
            executed.append(inv.slot.key)

        # ─── Sequential pipeline ─────────────────────────────────────
        for s in sequential:
            ctx = self._build_context(s, state, results, answer, snapshot, resume_record)
            inv = self._invoke(s, ctx, turn_log)
            self._raise_unhandled([inv])
            results[s.key] = inv.result
            executed.append(s.key)

        # A handler that re-issues its request on resume keeps the decision,
        # unless the decision asked it for a revised preview
        if isinstance(resume_record, PendingApprovalRecord):
            for key in executed:
                prior = snapshot.get(key)
                stamp = prior.approval if prior is not None else None
                if not results[key].needs_approval or stamp is None:
                    continue
                refinement = resume_record.refinements.get(key)
                if stamp.refinement and refinement is not None:
                    request = results[key].outcome.request
                    request.data["refinement_attempts"] = refinement["attempt"]
                    logger.info("Domain %s revised its preview (attempt %d)", key, refinement["attempt"])
                else:
                    results[key] = dataclasses.replace(results[key], approval=stamp)

        # Plan order, independent of completion order
        ordered = {s.key: results[s.key] for s in slots if s.key in results}

        # ─── Merge entity updates after settle ───────────────────────
        entities = state.entities
        for key in executed:
            updates = ordered[key].entity_updates
            if updates:
                entities = self.entity_store.merge(entities, updates)

        # ─── Suspension scan ─────────────────────────────────────────
        clarification = self._clarification_record(ordered)

        approval = self.batcher.build_record(ordered)
        stored = self._refresh_stored_approval(state.pending_approval, ordered)
        if approval is None:
            approval = stored
        elif stored is not None:
            approval = self._merge_approvals(stored, approval, list(ordered))

        return DispatchOutcome(
            results=ordered,
            entities=entities,
            clarification=clarification,
            approval=approval,
            executed=executed,
            carried=carried,
        )

    # ═══════════════════════════════════════════════════════════════
    # Resume narrowing
    # ═══════════════════════════════════════════════════════════════

    @staticmethod
    def _resume_target(
        state: ConversationState,
    ) -> tuple[PendingClarificationRecord | PendingApprovalRecord | None, ClarificationAnswer | None]:
        clar = state.pending_clarification
        if clar is not None and clar.processed and state.clarification_answer is not None:
            return clar, state.clarification_answer
        appr = state.pending_approval
        if appr is not None and appr.processed and state.approval_decision is not None:
            return appr, None
        return None, None

    @staticmethod
    def _expand_downstream(slots: list[Slot], targets: set[str]) -> set[str]:
        """Sequential steps whose dependencies re-run must re-run too."""
        targets = set(targets)
        for s in slots:
            if s.step is None or s.key in targets:
                continue
            rerun = {base_domain(t) for t in targets}
            if any(base_domain(dep) in rerun for dep in s.step.depends_on):
                targets.add(s.key)
        return targets

    @staticmethod
    def _refresh_stored_approval(
        record: PendingApprovalRecord | None,
        results: dict[str, DomainResult],
    ) -> PendingApprovalRecord | None:
        """
        An approval record left waiting behind a clarification keeps its
        own approval slots but picks up the newest results for the rest.
        """
        if record is None or record.processed:
            return None
        merged = dict(record.results)
        for key, result in results.items():
            if key not in record.domains:
                merged[key] = result
        return dataclasses.replace(record, results=merged)

    @staticmethod
    def _merge_approvals(
        stored: PendingApprovalRecord,
        fresh: PendingApprovalRecord,
        order: list[str],
    ) -> PendingApprovalRecord:
        """
        Fold approvals raised after a clarification resume into the record
        parked behind that clarification, so both go out as one batch
        under the stored approval_id.
        """
        by_slot = dict(zip(stored.domains, stored.requests))
        by_slot.update(zip(fresh.domains, fresh.requests))
        domains = [key for key in order if key in by_slot]
        domains += [key for key in by_slot if key not in domains]
        results = dict(stored.results)
        for key in fresh.domains:
            results[key] = fresh.results[key]
        logger.info("Merged approval requests from %s into %s", fresh.domains, stored.approval_id)
        return dataclasses.replace(
            stored,
            requests=[by_slot[key] for key in domains],
            domains=domains,
            results=results,
        )

    # ═══════════════════════════════════════════════════════════════
    # Invocation
    # ═══════════════════════════════════════════════════════════════

    def _build_context(
        self,
        slot: Slot,
        state: ConversationState,
        results: dict[str, DomainResult],
        answer: ClarificationAnswer | None,
        snapshot: dict[str, DomainResult],
        resume_record: PendingClarificationRecord | PendingApprovalRecord | None,
    ) -> DomainContext:
        dependencies: dict[str, DomainResult] = {}
        if slot.step is not None:
            for dep in slot.step.depends_on:
                if dep in results:
                    dependencies[dep] = results[dep]

        slot_answer = None
        if answer is not None and answer.domain in (slot.key, slot.domain):
            slot_answer = answer

        stamp = None
        decision = None
        refinement = None
        if isinstance(resume_record, PendingApprovalRecord):
            prior = snapshot.get(slot.key)
            stamp = prior.approval if prior is not None else None
            decision = state.approval_decision
            refinement = resume_record.refinements.get(slot.key)

        previous = snapshot.get(slot.key)
        return DomainContext(
            domain=slot.domain,
            slot=slot.key,
            query=state.last_user_message(),
            messages=copy.deepcopy(state.messages),
            entities=EntityMap.from_dict(state.entities.to_dict()),
            memory_context=copy.deepcopy(state.memory_context),
            org_id=state.org_id,
            user_id=state.user_id,
            session_id=state.session_id,
            thread_id=state.thread_id,
            timezone=state.timezone,
            occurrence=slot.occurrence,
            get_credentials=self.get_credentials,
            dependencies=copy.deepcopy(dependencies),
            clarification_answer=copy.deepcopy(slot_answer),
            approval_decision=copy.deepcopy(decision),
            approval=copy.deepcopy(stamp),
            refinement=copy.deepcopy(refinement),
            previous_result=copy.deepcopy(previous),
        )

    def _invoke(self, slot: Slot, ctx: DomainContext, turn_log: TurnLogger | None) -> _Invocation:
        """Run one handler. Never raises; outcomes are folded into a DomainResult."""
        domain = slot.domain
        if turn_log:
            turn_log.on_domain_start(domain, slot.key)
        start = time.monotonic()

        handler = self.handlers.get(domain)
        signal: SuspendSignal | None = None
        result: DomainResult | None
        if handler is None:
            logger.warning("No handler registered for domain %s", domain)
            result = DomainResult.failure(
                domain,
                "Domain not implemented",
                f"The {domain} feature is currently unavailable. Please try again later.",
            )
        else:
            try:
                result = handler(ctx)
                if result is None:
                    result = DomainResult.failure(domain, f"{domain} returned no result")
                elif not isinstance(result, DomainResult):
                    result = DomainResult.failure(
                        domain, f"{domain} returned unsupported result type {type(result).__name__}"
                    )
            except SuspendSignal as sig:
                result = self._convert_signal(domain, sig)
                if result is None:
                    logger.error("Domain %s raised uninterpretable suspension '%s'", slot.key, sig.kind)
                    signal = sig
                else:
                    logger.info("Domain %s suspended via signal '%s'", slot.key, sig.kind)
            except Exception as e:
                logger.error("Domain %s failed: %s", slot.key, e, exc_info=True)
                result = DomainResult.failure(domain, str(e) or type(e).__name__)

        elapsed = time.monotonic() - start
        if turn_log:
            error = None
            if signal:
                outcome = "unhandled_suspension"
                error = f"Unhandled suspension '{signal.kind}'"
            else:
                outcome = result.kind.value
                if isinstance(result.outcome, Failure):
                    error = result.outcome.error
            turn_log.on_domain_end(domain, slot.key, outcome, elapsed, error)
        return _Invocation(slot=slot, result=result, signal=signal, elapsed=elapsed)

    @staticmethod
    def _raise_unhandled(invocations: list[_Invocation]) -> None:
        for inv in invocations:
            if inv.signal is not None:
                raise UnhandledSuspension(inv.signal, inv.slot.key) from inv.signal

    @staticmethod
    def _convert_signal(domain: str, sig: SuspendSignal) -> DomainResult | None:
        payload = sig.payload
        if sig.is_clarification:
            request = ClarificationRequest(
                type=sig.kind,
                message=sig.message or f"I need more information to continue with {domain}.",
                suggestions=list(payload.get("suggestions", []) or []),
                skippable=bool(payload.get("skippable", False)),
                candidates=list(payload.get("candidates", []) or []),
                data={k: v for k, v in payload.items()
                      if k not in ("suggestions", "skippable", "candidates", "message")},
                domain=domain,
            )
            return DomainResult.clarification(domain, request)

        if sig.is_approval:
            raw = payload.get("request")
            if isinstance(raw, ApprovalRequest):
                request = raw
            elif isinstance(raw, dict):
                request = ApprovalRequest.from_dict({"action_id": "", **raw})
            else:
                preview = payload.get("preview", {})
                request = ApprovalRequest.create(
                    domain=domain,
                    action=payload.get("action", "create"),
                    preview=preview if isinstance(preview, ActionPreview)
                    else ActionPreview.from_dict(preview or {"title": sig.message}),
                    message=sig.message,
                    data=dict(payload.get("data", {}) or {}),
                )
            if not request.action_id:
                request.action_id = ApprovalRequest.create(domain, request.action, request.preview).action_id
            return DomainResult.needs_approval_for(domain, request)
        return None

    # ═══════════════════════════════════════════════════════════════
    # Suspension records
    # ═══════════════════════════════════════════════════════════════

    @staticmethod
    def _clarification_record(results: dict[str, DomainResult]) -> PendingClarificationRecord | None:
        slots = [key for key, r in results.items() if r.needs_clarification]
        if not slots:
            return None
        requests = [results[key].outcome.request for key in slots]
        logger.info("Clarification needed from %s", slots)
        return PendingClarificationRecord(
            requests=requests,
            domains=slots,
            results=dict(results),
            fresh=True,
            processed=False,
        )
