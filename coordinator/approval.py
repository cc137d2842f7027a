"""
Assist Core — Approval Batcher

Consolidates approval requests produced by domains that ran in the same
pass into one human-facing request, tracks a timeout per batch, and
redistributes the human's decision back to each originating result.

Timeouts are advisory: a batch is never preempted. Whoever checks
(process_resume, check_timeout, a polling endpoint or a watchdog calling
sweep_expired) compares elapsed time against the stored timeout and
feeds a reject-all decision back in.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from coordinator.types import (
    ApprovalDecision,
    ApprovalNeeded,
    ApprovalRequest,
    ApprovalStamp,
    DecisionAction,
    DomainResult,
    PendingApprovalRecord,
    SuspensionKind,
    SuspensionPayload,
)

logger = logging.getLogger("assist_core.approval")

DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_REFINEMENT_ATTEMPTS = 3

DECISION_ACTIONS = {
    "approve_all": "Approve All",
    "reject_all": "Reject All",
    "selective": "Review Each",
}


@dataclass
class ApprovalBatch:
    """Registry entry for a presented batch."""
    approval_id: str
    action_ids: list[str]
    created_at: float
    timeout_seconds: float
    timed_out: bool = False

    def expired(self, now: float) -> bool:
        return self.timed_out or (now - self.created_at) > self.timeout_seconds


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class ApprovalBatcher:
    """
    One instance per process, injected into the dispatcher and the
    controller. The batch registry is in-memory; the durable copy of a
    batch lives in the checkpointed PendingApprovalRecord.
    """

    def __init__(
        self,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.default_timeout = default_timeout
        self._clock = clock
        self._pending: dict[str, ApprovalBatch] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    # ─── Collection ──────────────────────────────────────────────────

    def collect(self, results: dict[str, DomainResult]) -> list[ApprovalRequest]:
        """Unresolved approval requests, in result order."""
        requests = [
            r.outcome.request for r in results.values()
            if r.needs_approval and isinstance(r.outcome, ApprovalNeeded)
        ]
        if requests:
            logger.info("Collected %d approval request(s)", len(requests))
        return requests

    def needs_approval(self, results: dict[str, DomainResult]) -> bool:
        return any(r.needs_approval for r in results.values())

    def build_record(
        self,
        results: dict[str, DomainResult],
        timeout: float | None = None,
    ) -> PendingApprovalRecord | None:
        slots = [slot for slot, r in results.items() if r.needs_approval]
        if not slots:
            return None
        record = PendingApprovalRecord.create(
            requests=self.collect(results),
            domains=slots,
            results=results,
            timeout_seconds=timeout if timeout is not None else self.default_timeout,
        )
        record.created_at = self._clock()
        return record

    # ─── Presentation ────────────────────────────────────────────────

    def present(
        self,
        requests: list[ApprovalRequest],
        thread_id: str,
        timeout: float | None = None,
        approval_id: str = "",
        created_at: float | None = None,
    ) -> SuspensionPayload:
        """
        Build the consolidated approval payload and register the batch.
        Returns the payload; the caller ends the turn with it.
        """
        if not requests:
            raise ValueError("present() requires at least one approval request")

        timeout = timeout if timeout is not None else self.default_timeout
        created_at = created_at if created_at is not None else self._clock()
        approval_id = approval_id or f"approval_{int(created_at * 1000)}"

        with self._lock:
            self._pending[approval_id] = ApprovalBatch(
                approval_id=approval_id,
                action_ids=[r.action_id for r in requests],
                created_at=created_at,
                timeout_seconds=timeout,
            )

        previews = [
            {
                "index": i + 1,
                "action_id": req.action_id,
                "action": req.action,
                "domain": req.domain,
                "title": req.preview.title,
                "type": req.preview.type,
                "summary": self.format_preview_summary(req),
                "preview": req.preview.to_dict(),
                "data": dict(req.data),
            }
            for i, req in enumerate(requests)
        ]

        if len(requests) > 1:
            message = "Multiple actions require your approval:"
        else:
            message = requests[0].message or "Please review the following action:"

        logger.info(
            "Presenting %d action(s) for approval (approval_id=%s, timeout=%.0fs)",
            len(requests), approval_id, timeout,
        )
        return SuspensionPayload(
            kind=SuspensionKind.APPROVAL,
            thread_id=thread_id,
            message=message,
            data={
                "approval_id": approval_id,
                "previews": previews,
                "domains": [req.domain for req in requests],
                "actions": dict(DECISION_ACTIONS),
                "metadata": {
                    "count": len(requests),
                    "timeout": timeout,
                    "created_at": _iso(created_at),
                    "auto_reject_at": _iso(created_at + timeout),
                },
            },
        )

    # ─── Timeouts ────────────────────────────────────────────────────

    def has_timed_out(self, target: str | PendingApprovalRecord, now: float | None = None) -> bool:
        now = now if now is not None else self._clock()
        if isinstance(target, PendingApprovalRecord):
            with self._lock:
                batch = self._pending.get(target.approval_id)
            if batch is not None and batch.timed_out:
                return True
            return target.has_timed_out(now)
        with self._lock:
            batch = self._pending.get(target)
        return batch.expired(now) if batch is not None else False

    def timeout_decision(self, approval_id: str) -> ApprovalDecision:
        """Reject-all decision for an expired batch; drops the registration."""
        with self._lock:
            known = self._pending.pop(approval_id, None) is not None
        if known:
            logger.info("Auto-rejecting approval %s after timeout", approval_id)
        else:
            logger.warning("Timeout requested for unknown approval %s", approval_id)
        return ApprovalDecision.timeout(approval_id)

    def sweep_expired(self, now: float | None = None) -> list[str]:
        """Flag every registered batch past its timeout. Returns flagged ids."""
        now = now if now is not None else self._clock()
        flagged = []
        with self._lock:
            for batch in self._pending.values():
                if not batch.timed_out and batch.expired(now):
                    batch.timed_out = True
                    flagged.append(batch.approval_id)
        for approval_id in flagged:
            logger.info("Approval %s timed out", approval_id)
        return flagged

    def clear(self, approval_id: str) -> None:
        with self._lock:
            if self._pending.pop(approval_id, None) is not None:
                logger.debug("Cleared pending approval %s", approval_id)

    def pending_ids(self) -> list[str]:
        with self._lock:
            return list(self._pending.keys())

    # ─── Distribution ────────────────────────────────────────────────

    def stamp_for(self, decision: ApprovalDecision, request: ApprovalRequest,
                  now: float | None = None) -> ApprovalStamp:
        """The decision as it applies to one action."""
        ts = now if now is not None else self._clock()
        base = dict(approval_id=decision.approval_id, timestamp=ts)

        if decision.timed_out:
            return ApprovalStamp(
                approved=False, rejected=True, timed_out=True,
                reason="Approval request timed out", **base,
            )
        if decision.action == DecisionAction.APPROVE_ALL:
            return ApprovalStamp(approved=True, rejected=False, reason=decision.reason, **base)
        if decision.action == DecisionAction.REJECT_ALL:
            return ApprovalStamp(
                approved=False, rejected=True,
                reason=decision.reason or "User rejected all actions", **base,
            )

        choice = decision.selective.get(request.action_id)
        if choice is None:
            return ApprovalStamp(approved=False, rejected=True, reason="No decision provided", **base)
        if isinstance(choice, bool):
            return ApprovalStamp(approved=choice, rejected=not choice, **base)

        approved = bool(choice.get("approved", False))
        refinement = choice.get("refinement")
        return ApprovalStamp(
            approved=approved,
            # A refinement request is neither an approval nor a final rejection
            rejected=not approved and not refinement,
            refinement=refinement,
            reason=choice.get("reason"),
            **base,
        )

    def distribute_decision(
        self,
        decision: ApprovalDecision,
        results: dict[str, DomainResult],
    ) -> dict[str, DomainResult]:
        """
        Stamp every result awaiting approval with the decision.

        Returns a new mapping. Stamped results are copies; all other
        results are the same objects that were passed in.
        """
        if decision.approval_id:
            self.clear(decision.approval_id)

        now = self._clock()
        updated: dict[str, DomainResult] = {}
        counts = {"approved": 0, "rejected": 0, "refined": 0}
        for slot, result in results.items():
            if not result.needs_approval or not isinstance(result.outcome, ApprovalNeeded):
                updated[slot] = result
                continue
            stamp = self.stamp_for(decision, result.outcome.request, now)
            updated[slot] = dataclasses.replace(result, approval=stamp)
            if stamp.approved:
                counts["approved"] += 1
            elif stamp.refinement:
                counts["refined"] += 1
            else:
                counts["rejected"] += 1

        logger.info(
            "Distributed %s decision: %d approved, %d rejected, %d need refinement%s",
            decision.action.value, counts["approved"], counts["rejected"], counts["refined"],
            " (timed out)" if decision.timed_out else "",
        )
        return updated

    def process_refinements(
        self,
        refinements: dict[str, str],
        results: dict[str, DomainResult],
    ) -> dict[str, dict[str, Any]]:
        """Instructions for domains asked to regenerate their preview."""
        out: dict[str, dict[str, Any]] = {}
        for slot, instructions in refinements.items():
            result = results.get(slot)
            if result is None or not isinstance(result.outcome, ApprovalNeeded):
                continue
            request = result.outcome.request
            attempt = int(request.data.get("refinement_attempts", 0)) + 1
            if attempt > MAX_REFINEMENT_ATTEMPTS:
                logger.warning("Refinement limit reached for %s (%d attempts)", slot, attempt - 1)
                continue
            out[slot] = {
                "original_preview": request.preview.to_dict(),
                "instructions": instructions,
                "attempt": attempt,
                "max_attempts": MAX_REFINEMENT_ATTEMPTS,
            }
        logger.info("Processing refinements for %d domain(s)", len(out))
        return out

    def apply_refinements(
        self,
        results: dict[str, DomainResult],
    ) -> tuple[dict[str, DomainResult], dict[str, dict[str, Any]]]:
        """
        Turn refinement stamps into per-slot instructions. A slot that
        has used up its attempts gets a final rejection instead.
        """
        requested = {
            slot: r.approval.refinement for slot, r in results.items()
            if r.approval is not None and r.approval.refinement
        }
        if not requested:
            return results, {}
        instructions = self.process_refinements(requested, results)
        updated = dict(results)
        for slot in requested:
            if slot in instructions:
                continue
            stamp = dataclasses.replace(
                results[slot].approval,
                refinement=None,
                rejected=True,
                reason=f"Refinement limit of {MAX_REFINEMENT_ATTEMPTS} attempts reached",
            )
            updated[slot] = dataclasses.replace(results[slot], approval=stamp)
        return updated, instructions

    # ─── Formatting ──────────────────────────────────────────────────

    @staticmethod
    def format_preview_summary(request: ApprovalRequest) -> str:
        preview = request.preview
        meta = preview.metadata
        kind = preview.type or request.domain
        if kind == "appointment":
            date = meta.get("date") or preview.detail("Date") or "TBD"
            return f'Schedule "{preview.title}" on {date}'
        if kind == "task":
            due = meta.get("due_date") or preview.detail("Due")
            return f'Create task "{preview.title}"' + (f" due {due}" if due else "")
        if kind == "workflow":
            steps = meta.get("step_count") or "multiple"
            return f'Build workflow "{preview.title}" with {steps} steps'
        return preview.description or f"{kind}: {preview.title}"

    @staticmethod
    def summarize_decision(decision: ApprovalDecision) -> str:
        if decision.timed_out:
            return "All actions rejected (approval timed out)"
        if decision.action == DecisionAction.APPROVE_ALL:
            return "All actions approved"
        if decision.action == DecisionAction.REJECT_ALL:
            return "All actions rejected"

        approved, rejected = [], []
        for action_id, choice in decision.selective.items():
            ok = choice if isinstance(choice, bool) else bool(choice.get("approved"))
            (approved if ok else rejected).append(action_id)
        lines = []
        if approved:
            lines.append(f"Approved: {', '.join(approved)}")
        if rejected:
            lines.append(f"Rejected: {', '.join(rejected)}")
        return "\n".join(lines)
