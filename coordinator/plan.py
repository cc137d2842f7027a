"""
Assist Core — Routing Plans

Validation and normalization of planner output, plus a rule-based
planner that needs no language model.

Validation levels:
  error    — the plan cannot be executed (malformed shape, dependency cycle)
  warning  — the plan runs but looks suspicious (unknown domain, entity
             resolution requested without the contact domain)

Usage:
    from coordinator.plan import coerce_plan, validate_plan, RulePlanner

    plan = coerce_plan(planner.plan(query, memories, stats, recent))
    check = validate_plan(plan, known_domains=settings.known_domains)
    if not check.valid:
        raise PlanValidationError(check.errors)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from coordinator.types import (
    PlanValidationError,
    RecalledMemory,
    RoutingPlan,
    SequentialStep,
)

logger = logging.getLogger("assist_core.plan")


# ═══════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════

@dataclass
class PlanValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return len(self.errors) == 0


def coerce_plan(raw: Any) -> RoutingPlan:
    """Accept a RoutingPlan or its dict form; anything else is invalid."""
    if isinstance(raw, RoutingPlan):
        return raw
    if raw is None:
        return RoutingPlan()
    if not isinstance(raw, dict):
        raise PlanValidationError([f"Planner returned {type(raw).__name__}, expected a routing plan"])

    parallel = raw.get("parallel", []) or []
    sequential = raw.get("sequential", []) or []
    if not isinstance(parallel, (list, tuple)) or not all(isinstance(d, str) for d in parallel):
        raise PlanValidationError(["'parallel' must be a list of domain names"])
    if not isinstance(sequential, (list, tuple)):
        raise PlanValidationError(["'sequential' must be a list of steps"])
    for step in sequential:
        if isinstance(step, dict) and not step.get("domain"):
            raise PlanValidationError(["sequential step is missing 'domain'"])
        if not isinstance(step, (dict, str)):
            raise PlanValidationError([f"sequential step has unsupported shape: {step!r}"])
    return RoutingPlan.from_dict(raw)


def find_cycles(steps: Iterable[SequentialStep]) -> list[str]:
    """Domains among sequential steps that sit on a dependency cycle."""
    dep_map: dict[str, list[str]] = {}
    for step in steps:
        dep_map.setdefault(step.domain, []).extend(step.depends_on)

    on_cycle: list[str] = []
    visited: set[str] = set()

    def visit(domain: str, stack: list[str]) -> None:
        if domain in stack:
            for d in stack[stack.index(domain):]:
                if d not in on_cycle:
                    on_cycle.append(d)
            return
        if domain in visited:
            return
        visited.add(domain)
        stack.append(domain)
        for dep in dep_map.get(domain, []):
            visit(dep, stack)
        stack.pop()

    for domain in dep_map:
        visit(domain, [])
    return on_cycle


def validate_plan(plan: RoutingPlan, known_domains: Iterable[str] | None = None) -> PlanValidation:
    result = PlanValidation()

    for domain in find_cycles(plan.sequential):
        result.errors.append(f"Circular dependency detected involving {domain}")

    all_domains = plan.all_domains()
    if known_domains is not None:
        known = set(known_domains)
        for domain in all_domains:
            if domain not in known:
                result.warnings.append(f"Unknown domain: {domain}")

    for step in plan.sequential:
        for dep in step.depends_on:
            if dep not in all_domains:
                result.warnings.append(f"{step.domain} depends on {dep}, which is not in the plan")

    if plan.metadata.get("requires_entity_resolution") and "contact" not in all_domains:
        result.warnings.append("Entity resolution required but contact domain not included")

    return result


def ensure_domains(plan: RoutingPlan, default_domain: str = "general") -> tuple[RoutingPlan, bool]:
    """Replace a zero-domain plan with the default domain. Returns (plan, defaulted)."""
    if not plan.is_empty():
        return plan, False
    logger.warning("Planner returned no domains, defaulting to %s", default_domain)
    metadata = dict(plan.metadata)
    metadata["defaulted"] = True
    return RoutingPlan(parallel=[default_domain], sequential=[], metadata=metadata), True


def slot_keys(domains: Iterable[str]) -> list[tuple[str, str, int]]:
    """
    (slot, domain, occurrence) for each entry of a parallel set.
    The first occurrence keeps the bare domain name; repeats get "#n".
    """
    counts: dict[str, int] = {}
    out = []
    for domain in domains:
        counts[domain] = counts.get(domain, 0) + 1
        n = counts[domain]
        out.append((domain if n == 1 else f"{domain}#{n}", domain, n))
    return out


def base_domain(slot: str) -> str:
    return slot.split("#", 1)[0]


# ═══════════════════════════════════════════════════════════════════
# Rule-based planner
# ═══════════════════════════════════════════════════════════════════

_NAME = r"([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"

DEPENDENCY_RULES: dict[str, dict[str, Any]] = {
    "contact_before_calendar": {
        "pattern": re.compile(r"(?:with|meet|call|schedule.*(?:with)?)\s+" + _NAME),
        "requires": ["contact", "calendar"],
        "order": "sequential",
        "reason": "Need to resolve contact before creating appointment",
    },
    "task_from_calendar": {
        "pattern": re.compile(
            r"(?:create|add|make).*task.*(?:for|from|after).*(?:meeting|appointment|event)", re.I
        ),
        "requires": ["calendar", "task"],
        "order": "sequential",
        "reason": "Need calendar event details to create related task",
    },
    "workflow_multi_domain": {
        "pattern": re.compile(r"workflow.*(?:meetings?|tasks?|contacts?)", re.I),
        "requires": ["workflow"],
        "order": "parallel",
        "reason": "Workflow can coordinate other domains internally",
    },
}

ENTITY_PATTERNS: dict[str, dict[str, Any]] = {
    "person": {
        "pattern": re.compile(r"(?:with|meet|call|email|contact)\s+" + _NAME),
        "category": "contact",
    },
    "time": {
        "pattern": re.compile(r"(?:at|by|before|after|around)\s+(\d{1,2}(?::\d{2})?\s*(?:am|pm|AM|PM))"),
        "category": "temporal",
    },
    "date": {
        "pattern": re.compile(r"(?:tomorrow|today|yesterday|next\s+\w+|this\s+\w+|\d{1,2}/\d{1,2})", re.I),
        "category": "temporal",
    },
    "duration": {
        "pattern": re.compile(r"(?:for\s+)?(\d+)\s*(?:hours?|mins?|minutes?)", re.I),
        "category": "temporal",
    },
}

DOMAIN_INDICATORS: list[tuple[str, list[re.Pattern]]] = [
    ("calendar", [
        re.compile(r"calendar|schedule|appointment|meeting|event", re.I),
        re.compile(r"(?:create|book|set up|arrange).*(?:at|on|for)\s+\d", re.I),
    ]),
    ("task", [re.compile(r"task|todo|to-do|reminder|action item", re.I)]),
    ("workflow", [re.compile(r"workflow|process|automation|sequence", re.I)]),
    ("contact", [re.compile(r"contact|person|client|prospect", re.I)]),
]


@dataclass
class QueryAnalysis:
    query: str
    domains: list[str] = field(default_factory=list)
    entities: list[dict[str, Any]] = field(default_factory=list)
    dependencies: list[dict[str, str]] = field(default_factory=list)

    def add_domain(self, domain: str) -> None:
        if domain not in self.domains:
            self.domains.append(domain)


class RulePlanner:
    """
    Keyword/regex planner. Picks domains from indicator words, extracts
    people and temporal phrases, and orders dependent domains with a
    topological sort. Independent domains run in parallel.
    """

    def __init__(self, rules: dict[str, dict[str, Any]] | None = None):
        self.rules = rules if rules is not None else DEPENDENCY_RULES

    def analyze(self, query: str, memory_context: list[RecalledMemory] | None = None) -> QueryAnalysis:
        analysis = QueryAnalysis(query=query)

        for entity_type, cfg in ENTITY_PATTERNS.items():
            for match in cfg["pattern"].finditer(query):
                analysis.entities.append({
                    "type": entity_type,
                    "value": match.group(1) if match.groups() and match.group(1) else match.group(0),
                    "category": cfg["category"],
                    "position": match.start(),
                })

        for domain, patterns in DOMAIN_INDICATORS:
            if any(p.search(query) for p in patterns):
                analysis.add_domain(domain)
        if any(e["type"] == "person" for e in analysis.entities):
            analysis.add_domain("contact")

        for name, rule in self.rules.items():
            if not rule["pattern"].search(query):
                continue
            logger.debug("Matched dependency rule: %s", name)
            for domain in rule["requires"]:
                analysis.add_domain(domain)
            if rule["order"] == "sequential":
                required = rule["requires"]
                for prev, nxt in zip(required, required[1:]):
                    analysis.dependencies.append({
                        "domain": nxt, "depends_on": prev, "reason": rule["reason"],
                    })

        for memory in memory_context or []:
            content = memory.content.lower()
            if "calendar" in content or "appointment" in content:
                analysis.add_domain("calendar")
            if "task" in content or "todo" in content:
                analysis.add_domain("task")

        return analysis

    def build(self, analysis: QueryAnalysis) -> RoutingPlan:
        plan = RoutingPlan(metadata={
            "total_domains": len(analysis.domains),
            "has_dependencies": bool(analysis.dependencies),
            "entities_found": len(analysis.entities),
        })

        if not analysis.dependencies:
            plan.parallel = list(analysis.domains)
        else:
            graph: dict[str, list[str]] = {d: [] for d in analysis.domains}
            in_degree: dict[str, int] = {d: 0 for d in analysis.domains}
            for dep in analysis.dependencies:
                graph.setdefault(dep["depends_on"], [])
                in_degree.setdefault(dep["depends_on"], 0)
                graph[dep["depends_on"]].append(dep["domain"])
                in_degree[dep["domain"]] = in_degree.get(dep["domain"], 0) + 1

            queue = [d for d, deg in in_degree.items() if deg == 0]
            while queue:
                batch, queue = queue, []
                if len(batch) > 1:
                    plan.parallel.extend(batch)
                else:
                    for domain in batch:
                        deps = [d for d in analysis.dependencies if d["domain"] == domain]
                        plan.sequential.append(SequentialStep(
                            domain=domain,
                            depends_on=[d["depends_on"] for d in deps],
                            reason=deps[0]["reason"] if deps else "",
                        ))
                for domain in batch:
                    for neighbor in graph.get(domain, []):
                        in_degree[neighbor] -= 1
                        if in_degree[neighbor] == 0:
                            queue.append(neighbor)

        if any(e["category"] == "contact" for e in analysis.entities):
            plan.metadata["requires_entity_resolution"] = True
            plan.metadata["entity_types"] = ["contact"]
        plan.metadata["entities"] = analysis.entities
        return plan

    def plan(
        self,
        query: str,
        memory_context: list[RecalledMemory],
        entity_stats: dict[str, Any],
        recent_messages: list[Any],
    ) -> RoutingPlan:
        analysis = self.analyze(query, memory_context)
        plan = self.build(analysis)
        logger.info(
            "Rule plan: parallel=%s sequential=%s",
            plan.parallel, [s.domain for s in plan.sequential],
        )
        return plan
