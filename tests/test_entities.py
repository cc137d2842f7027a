"""
Assist Core — Entity Store Tests

Tests:
  - store sets latest and pushes onto history
  - history is most-recent-first and deduplicated by id
  - history cap retains exactly the N most recent (P6)
  - index pruned together with history
  - merge never mutates its inputs
  - same-type writes from parallel domains are all retained, even same-name ones without ids
  - get_by_id / search / get_types / get_stats
  - to_dict / from_dict
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from engine.entities import EntityMap, EntityStore


def contact(i, name=None):
    return {"id": str(i), "name": name or f"Contact {i}"}


class TestStore(unittest.TestCase):
    def setUp(self):
        self.es = EntityStore()
        self.em = EntityMap()

    def test_store_sets_latest(self):
        self.es.store(self.em, "contact", contact(42, "Norman"))
        latest = self.es.get_latest(self.em, "contact")
        self.assertEqual(latest["id"], "42")
        self.assertEqual(latest["name"], "Norman")
        self.assertIn("created_at", latest)

    def test_history_most_recent_first(self):
        for i in range(3):
            self.es.store(self.em, "contact", contact(i))
        ids = [e["id"] for e in self.es.get_history(self.em, "contact")]
        self.assertEqual(ids, ["2", "1", "0"])

    def test_duplicate_id_moves_to_front(self):
        self.es.store(self.em, "contact", contact(1))
        self.es.store(self.em, "contact", contact(2))
        self.es.store(self.em, "contact", contact(1, "Renamed"))
        history = self.es.get_history(self.em, "contact")
        self.assertEqual([e["id"] for e in history], ["1", "2"])
        self.assertEqual(history[0]["name"], "Renamed")

    def test_get_history_limit(self):
        for i in range(5):
            self.es.store(self.em, "task", {"id": i})
        self.assertEqual(len(self.es.get_history(self.em, "task", 2)), 2)

    def test_unknown_type(self):
        self.assertIsNone(self.es.get_latest(self.em, "workflow"))
        self.assertEqual(self.es.get_history(self.em, "workflow"), [])

    def test_invalid_cap(self):
        with self.assertRaises(ValueError):
            EntityStore(max_history_per_type=0)


class TestHistoryBound(unittest.TestCase):
    def test_cap_retains_most_recent(self):
        es = EntityStore(max_history_per_type=10)
        em = EntityMap()
        for i in range(15):
            em = es.merge(em, {"contact": contact(i)})
        history = es.get_history(em, "contact")
        self.assertEqual(len(history), 10)
        self.assertEqual([e["id"] for e in history], [str(i) for i in range(14, 4, -1)])
        self.assertEqual(es.get_latest(em, "contact")["id"], "14")

    def test_index_pruned_with_history(self):
        es = EntityStore(max_history_per_type=3)
        em = EntityMap()
        for i in range(5):
            es.store(em, "contact", contact(i))
        self.assertIsNone(es.get_by_id(em, "contact", "0"))
        self.assertIsNone(es.get_by_id(em, "contact", "1"))
        self.assertIsNotNone(es.get_by_id(em, "contact", "4"))
        self.assertEqual(len(em.index), 3)

    def test_custom_cap(self):
        es = EntityStore(max_history_per_type=2)
        em = es.merge(EntityMap(), {"task": [{"id": 1}, {"id": 2}, {"id": 3}]})
        self.assertEqual([e["id"] for e in es.get_history(em, "task")], [3, 2])


class TestMerge(unittest.TestCase):
    def setUp(self):
        self.es = EntityStore()

    def test_merge_does_not_mutate_inputs(self):
        old = self.es.merge(EntityMap(), {"contact": contact(1)})
        before = old.to_dict()
        updates = {"contact": contact(2)}
        new = self.es.merge(old, updates)
        self.assertEqual(old.to_dict(), before)
        self.assertEqual(updates, {"contact": contact(2)})
        self.assertNotIn("created_at", updates["contact"])
        self.assertEqual(self.es.get_latest(new, "contact")["id"], "2")

    def test_merge_disjoint_types(self):
        em = self.es.merge(EntityMap(), {"contact": contact(1)})
        em = self.es.merge(em, {"appointment": {"id": "a1", "name": "Team Sync"}})
        self.assertEqual(self.es.get_latest(em, "contact")["id"], "1")
        self.assertEqual(self.es.get_latest(em, "appointment")["name"], "Team Sync")

    def test_same_type_parallel_writers_both_retained(self):
        # Two slots of the same domain merged after the join
        em = EntityMap()
        em = self.es.merge(em, {"contact": contact(1, "Norman")})
        em = self.es.merge(em, {"contact": contact(2, "Alice")})
        self.assertEqual(self.es.get_latest(em, "contact")["name"], "Alice")
        names = {e["name"] for e in self.es.get_history(em, "contact")}
        self.assertEqual(names, {"Norman", "Alice"})

    def test_merge_list_last_is_latest(self):
        em = self.es.merge(EntityMap(), {"contact": [contact(1), contact(2)]})
        self.assertEqual(self.es.get_latest(em, "contact")["id"], "2")

    def test_merge_none_old_and_empty_updates(self):
        em = self.es.merge(None, None)
        self.assertTrue(em.is_empty())

    def test_merge_extracted(self):
        em = self.es.merge(EntityMap(), {"extracted": [{"type": "person", "value": "Norman"}]})
        self.assertEqual(em.extracted[0]["value"], "Norman")
        self.assertEqual(em.types(), [])

    def test_same_name_without_id_both_retained(self):
        em = self.es.merge(EntityMap(), {"contact": {"name": "Norman", "email": "n@acme.test"}})
        em = self.es.merge(em, {"contact": {"name": "Norman", "email": "norman@other.test"}})
        emails = [e["email"] for e in self.es.get_history(em, "contact")]
        self.assertEqual(emails, ["norman@other.test", "n@acme.test"])
        self.assertEqual(em.index, {})

    def test_entities_without_identity_not_deduplicated(self):
        em = self.es.merge(EntityMap(), {"note": [{"text": "a"}, {"text": "b"}]})
        self.assertEqual(len(self.es.get_history(em, "note")), 2)
        self.assertEqual(em.index, {})


class TestQueries(unittest.TestCase):
    def setUp(self):
        self.es = EntityStore()
        self.em = self.es.merge(EntityMap(), {
            "contact": [contact(1, "Norman Bates"), contact(2, "Alice Smith")],
            "appointment": {"id": "a1", "name": "Team Sync", "participants": ["Norman"]},
        })

    def test_get_by_id(self):
        self.assertEqual(self.es.get_by_id(self.em, "contact", "1")["name"], "Norman Bates")
        self.assertIsNone(self.es.get_by_id(self.em, "contact", "99"))

    def test_search_substring_case_insensitive(self):
        found = self.es.search(self.em, "contact", {"name": "norman"})
        self.assertEqual([e["id"] for e in found], ["1"])

    def test_search_equality(self):
        found = self.es.search(self.em, "contact", {"id": "2"})
        self.assertEqual(len(found), 1)

    def test_get_types(self):
        self.assertEqual(sorted(self.es.get_types(self.em)), ["appointment", "contact"])

    def test_get_stats(self):
        stats = self.es.get_stats(self.em)
        self.assertEqual(stats["total_entities"], 3)
        self.assertEqual(stats["by_type"], {"contact": 2, "appointment": 1})
        self.assertLessEqual(stats["oldest_entity"], stats["newest_entity"])

    def test_get_stats_empty(self):
        self.assertEqual(self.es.get_stats(EntityMap())["total_entities"], 0)
        self.assertEqual(self.es.get_stats(None)["by_type"], {})


class TestSerialization(unittest.TestCase):
    def test_round_trip_preserves_latest_and_history(self):
        es = EntityStore()
        em = es.merge(EntityMap(), {"contact": [contact(1), contact(2)]})
        restored = EntityMap.from_dict(em.to_dict())
        self.assertEqual(es.get_latest(restored, "contact")["id"], "2")
        self.assertEqual(len(es.get_history(restored, "contact")), 2)
        self.assertIsNotNone(es.get_by_id(restored, "contact", "1"))

    def test_from_empty(self):
        self.assertTrue(EntityMap.from_dict(None).is_empty())


if __name__ == "__main__":
    unittest.main()
