"""
Assist Core — Routing Plan Tests

Tests:
  - coerce_plan accepts RoutingPlan / dict, rejects malformed shapes
  - cycle detection among sequential steps
  - warnings for unknown domains and missing contact resolution
  - empty plan defaults to the general domain
  - slot keys for repeated parallel domains
  - RulePlanner domain detection, entity extraction, dependency ordering
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from coordinator.plan import (
    RulePlanner,
    base_domain,
    coerce_plan,
    ensure_domains,
    find_cycles,
    slot_keys,
    validate_plan,
)
from coordinator.types import PlanValidationError, RecalledMemory, RoutingPlan, SequentialStep

KNOWN = ("calendar", "task", "workflow", "contact", "general")


class TestCoerce(unittest.TestCase):
    def test_dict_plan(self):
        plan = coerce_plan({
            "parallel": ["calendar", "contact"],
            "sequential": [{"domain": "task", "depends_on": ["calendar"]}],
        })
        self.assertEqual(plan.parallel, ["calendar", "contact"])
        self.assertEqual(plan.sequential[0].depends_on, ["calendar"])

    def test_plan_passthrough(self):
        plan = RoutingPlan(parallel=["task"])
        self.assertIs(coerce_plan(plan), plan)

    def test_none_is_empty(self):
        self.assertTrue(coerce_plan(None).is_empty())

    def test_malformed(self):
        for raw in ("calendar", {"parallel": "calendar"}, {"sequential": [{"depends_on": []}]},
                    {"parallel": [1, 2]}):
            with self.assertRaises(PlanValidationError, msg=repr(raw)):
                coerce_plan(raw)


class TestValidate(unittest.TestCase):
    def test_valid_plan(self):
        plan = RoutingPlan(
            parallel=["contact"],
            sequential=[SequentialStep("calendar", ["contact"])],
        )
        check = validate_plan(plan, KNOWN)
        self.assertTrue(check.valid)
        self.assertEqual(check.warnings, [])

    def test_cycle_is_error(self):
        plan = RoutingPlan(sequential=[
            SequentialStep("calendar", ["task"]),
            SequentialStep("task", ["calendar"]),
        ])
        check = validate_plan(plan, KNOWN)
        self.assertFalse(check.valid)
        self.assertIn("Circular dependency detected involving calendar", check.errors)

    def test_self_dependency_is_cycle(self):
        self.assertEqual(find_cycles([SequentialStep("task", ["task"])]), ["task"])

    def test_unknown_domain_is_warning(self):
        check = validate_plan(RoutingPlan(parallel=["weather"]), KNOWN)
        self.assertTrue(check.valid)
        self.assertIn("Unknown domain: weather", check.warnings)

    def test_missing_contact_resolution_warning(self):
        plan = RoutingPlan(parallel=["calendar"], metadata={"requires_entity_resolution": True})
        check = validate_plan(plan, KNOWN)
        self.assertIn("Entity resolution required but contact domain not included", check.warnings)

    def test_dependency_outside_plan_warning(self):
        plan = RoutingPlan(sequential=[SequentialStep("task", ["calendar"])])
        self.assertEqual(len(validate_plan(plan, KNOWN).warnings), 1)


class TestDefaults(unittest.TestCase):
    def test_empty_plan_defaults_to_general(self):
        plan, defaulted = ensure_domains(RoutingPlan())
        self.assertTrue(defaulted)
        self.assertEqual(plan.parallel, ["general"])
        self.assertTrue(plan.metadata["defaulted"])

    def test_non_empty_plan_unchanged(self):
        original = RoutingPlan(parallel=["task"])
        plan, defaulted = ensure_domains(original)
        self.assertFalse(defaulted)
        self.assertIs(plan, original)

    def test_slot_keys(self):
        self.assertEqual(
            slot_keys(["contact", "calendar", "contact", "contact"]),
            [("contact", "contact", 1), ("calendar", "calendar", 1),
             ("contact#2", "contact", 2), ("contact#3", "contact", 3)],
        )
        self.assertEqual(base_domain("contact#2"), "contact")
        self.assertEqual(base_domain("contact"), "contact")


class TestRulePlanner(unittest.TestCase):
    def setUp(self):
        self.planner = RulePlanner()

    def plan(self, query, memories=None):
        return self.planner.plan(query, memories or [], {}, [])

    def test_task_only(self):
        plan = self.plan("add a reminder to call the bank")
        self.assertEqual(plan.parallel, ["task"])
        self.assertEqual(plan.sequential, [])

    def test_contact_before_calendar(self):
        plan = self.plan("Schedule a meeting with Norman tomorrow at 3pm")
        self.assertEqual([s.domain for s in plan.sequential], ["contact", "calendar"])
        self.assertEqual(plan.sequential[1].depends_on, ["contact"])
        self.assertTrue(plan.metadata["requires_entity_resolution"])
        values = {e["value"] for e in plan.metadata["entities"]}
        self.assertIn("Norman", values)
        self.assertIn("3pm", values)

    def test_parallel_independent_domains(self):
        plan = self.plan("show my calendar and my tasks")
        self.assertEqual(sorted(plan.parallel), ["calendar", "task"])

    def test_no_match_gives_empty_plan(self):
        self.assertTrue(self.plan("hello there").is_empty())

    def test_memory_hints(self):
        plan = self.plan("what about that?", [RecalledMemory("Prefers appointment reminders")])
        self.assertIn("calendar", plan.all_domains())

    def test_plan_is_valid(self):
        plan = self.plan("Create a task for after the meeting with Norman")
        self.assertTrue(validate_plan(plan, KNOWN).valid)


if __name__ == "__main__":
    unittest.main()
