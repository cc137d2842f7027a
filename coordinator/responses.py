"""
Assist Core — Response Assembly

Everything FINALIZE needs to turn settled domain results into the one
assistant message for the turn:

  quick_entity_answer   "who was it with?" answered from entity memory
  build_entity_context  short entity summary for pronoun resolution
  aggregate_results     per-domain text joined into one response
  ChatModelWriter       free-form answer from a langchain chat model
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from coordinator.types import (
    ApprovalNeeded,
    ClarificationNeeded,
    DomainResult,
    Failure,
    Success,
)
from engine.entities import EntityMap

logger = logging.getLogger("assist_core.responses")

_WHO = re.compile(r"\bwho\b")
_ABOUT_MEETING = re.compile(r"with|attendee|attendees|appointment")

WRITER_SYSTEM_PROMPT = (
    "You are a business assistant. Provide a concise, direct answer "
    "using the context when relevant."
)


def quick_entity_answer(query: str, entities: EntityMap) -> str | None:
    """Participants of the last appointment for "who ..." follow-ups."""
    appointment = entities.latest.get("appointment")
    if not appointment or not query:
        return None
    text = query.lower()
    if not (_WHO.search(text) and _ABOUT_MEETING.search(text)):
        return None
    names = [n for n in appointment.get("participants") or [] if n]
    return ", ".join(str(n) for n in names) if names else None


def build_entity_context(entities: EntityMap) -> str:
    parts = []
    appointment = entities.latest.get("appointment")
    if appointment:
        parts.append(f"Last appointment: {appointment.get('name') or appointment.get('title') or 'Untitled'}")
        if appointment.get("time"):
            parts.append(f"at {appointment['time']}")
        participants = [p for p in appointment.get("participants") or [] if p]
        if participants:
            parts.append(f"with {', '.join(str(p) for p in participants)}")
    contact = entities.latest.get("contact")
    if contact:
        parts.append(f"Last contact: {contact.get('name') or contact.get('id')}")
    task = entities.latest.get("task")
    if task:
        parts.append(f"Last task: {task.get('name') or task.get('title') or 'Untitled'}")
    workflow = entities.latest.get("workflow")
    if workflow:
        parts.append(
            f"Last workflow: {workflow.get('name') or 'Untitled'} "
            f"({workflow.get('step_count', 0)} steps)"
        )
    return f"Context: {'; '.join(parts)}" if parts else ""


def should_use_writer(results: dict[str, DomainResult]) -> bool:
    """No results at all, or nothing but informational ones."""
    return not results or all(r.is_informational for r in results.values())


def describe_result(slot: str, result: DomainResult) -> str:
    outcome = result.outcome
    stamp = result.approval

    if isinstance(outcome, Failure):
        return f"{slot}: Error - {outcome.error}"

    if stamp is not None and not isinstance(outcome, Success):
        title = outcome.request.preview.title if isinstance(outcome, ApprovalNeeded) else slot
        if stamp.timed_out:
            return f"{slot}: Action not taken - the approval request for \"{title}\" timed out"
        if stamp.refinement:
            return f"{slot}: Refinement requested for \"{title}\" - {stamp.refinement}"
        if stamp.rejected:
            reason = f" ({stamp.reason})" if stamp.reason else ""
            return f"{slot}: \"{title}\" was not approved{reason}"
        return f"{slot}: \"{title}\" approved"

    if isinstance(outcome, ApprovalNeeded):
        return f"{slot}: Awaiting approval for \"{outcome.request.preview.title}\""
    if isinstance(outcome, ClarificationNeeded):
        return f"{slot}: {outcome.request.message}"

    if outcome.response:
        return outcome.response
    if outcome.data:
        return f"{slot}: {json.dumps(outcome.data, default=str)}"
    logger.warning("Result for %s has neither response nor data", slot)
    return f"{slot}: Processing incomplete"


def aggregate_results(results: dict[str, DomainResult]) -> str:
    lines = [describe_result(slot, r) for slot, r in results.items()]
    return "\n\n".join(lines) if lines else "I couldn't process your request. Please try again."


# ═══════════════════════════════════════════════════════════════════
# Writers
# ═══════════════════════════════════════════════════════════════════

class ChatModelWriter:
    """ResponseWriter backed by any langchain-core chat model."""

    def __init__(self, model: BaseChatModel, system_prompt: str = WRITER_SYSTEM_PROMPT):
        self.model = model
        self.system_prompt = system_prompt

    def build_prompt(self, query: str, entity_context: str, memory_hint: str = "") -> str:
        parts = [f'User query: "{query}"']
        if entity_context:
            parts.append(entity_context)
        if memory_hint:
            parts.append(f"Memory hint: {memory_hint}")
        return "\n".join(parts)

    def write(self, query: str, entity_context: str, memory_hint: str = "") -> str:
        response = self.model.invoke([
            SystemMessage(content=self.system_prompt),
            HumanMessage(content=self.build_prompt(query, entity_context, memory_hint)),
        ])
        content: Any = response.content
        if isinstance(content, list):
            content = "".join(
                c.get("text", "") if isinstance(c, dict) else str(c) for c in content
            )
        return str(content).strip()


class StaticWriter:
    """ResponseWriter with a fixed reply, used when no model is configured."""

    def __init__(self, reply: str = "I'm not sure how to help with that yet. Could you rephrase?"):
        self.reply = reply

    def write(self, query: str, entity_context: str, memory_hint: str = "") -> str:
        return self.reply
