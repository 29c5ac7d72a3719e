"""
Unit tests for the SQLite relational store: projects, facts, FTS5
keyword search and active-model pointers.
"""
import os
import shutil
import tempfile
import unittest

from project_memory.errors import StorageError, ValidationError
from project_memory.store.models import (
    CodePattern,
    Decision,
    ProgressItem,
    ProgressStatus,
    make_reference,
)
from project_memory.store.relational import RelationalStore, build_match_expression


class _StoreTestCase(unittest.TestCase):

    def setUp(self):
        self._tmpdir = tempfile.mkdtemp()
        self.store = RelationalStore(os.path.join(self._tmpdir, "memory.db"))

    def tearDown(self):
        shutil.rmtree(self._tmpdir, ignore_errors=True)

    def _add(self, fact, project="alpha"):
        fact.validate()
        fact.project = project
        with self.store.transaction() as conn:
            project_id = self.store.ensure_project(conn, project)
            self.store.insert_fact(conn, project_id, fact)
            self.store.set_embedding_ref(conn, fact.table, fact.id,
                                         make_reference(fact.table, fact.id))
        fact.embedding_ref = make_reference(fact.table, fact.id)
        return fact


# ---------------------------------------------------------------------------
# Test: projects and fact CRUD
# ---------------------------------------------------------------------------

class TestFacts(_StoreTestCase):

    def test_insert_and_get(self):
        d = self._add(Decision(decision="Use PostgreSQL", context="need ACID",
                               alternatives=["MySQL"], impact="ops"))
        fetched = self.store.get_fact("decisions", d.id)
        self.assertEqual(fetched.decision, "Use PostgreSQL")
        self.assertEqual(fetched.alternatives, ["MySQL"])
        self.assertEqual(fetched.project, "alpha")
        self.assertEqual(fetched.embedding_ref, f"decisions:{d.id}")
        self.assertTrue(fetched.created_at)

    def test_get_scoped_to_project(self):
        d = self._add(Decision(decision="Use PostgreSQL"))
        self.assertIsNone(self.store.get_fact("decisions", d.id, project="beta"))
        self.assertIsNotNone(self.store.get_fact("decisions", d.id, project="alpha"))

    def test_ensure_project_is_idempotent(self):
        with self.store.transaction() as conn:
            first = self.store.ensure_project(conn, "alpha")
            second = self.store.ensure_project(conn, "alpha")
        self.assertEqual(first, second)
        self.assertEqual([p.name for p in self.store.list_projects()], ["alpha"])
        self.assertEqual(self.store.get_project("alpha").id, first)
        self.assertIsNone(self.store.get_project("missing"))

    def test_progress_round_trip(self):
        item = self._add(ProgressItem(milestone="Auth", status="blocked",
                                      blockers=["waiting on keys"]))
        fetched = self.store.get_fact("progress", item.id)
        self.assertIs(fetched.status, ProgressStatus.BLOCKED)
        self.assertEqual(fetched.blockers, ["waiting on keys"])

    def test_duplicate_milestone_violates_constraint(self):
        self._add(ProgressItem(milestone="Auth"))
        with self.assertRaises(ValidationError):
            self._add(ProgressItem(milestone="Auth"))
        self.assertEqual(self.store.count("progress"), 1)

    def test_same_milestone_in_other_project(self):
        self._add(ProgressItem(milestone="Auth"))
        self._add(ProgressItem(milestone="Auth"), project="beta")
        self.assertEqual(self.store.count("progress"), 2)
        self.assertEqual(self.store.count("progress", project="beta"), 1)

    def test_find_progress(self):
        item = self._add(ProgressItem(milestone="Auth"))
        with self.store.transaction() as conn:
            found = self.store.find_progress(conn, "alpha", "Auth")
            missing = self.store.find_progress(conn, "beta", "Auth")
        self.assertEqual(found.id, item.id)
        self.assertIsNone(missing)

    def test_find_pattern(self):
        p = self._add(CodePattern(file_path="a.py", content="def f(): pass"))
        self.assertEqual(self.store.find_pattern("alpha", p.pattern_hash).id, p.id)
        self.assertIsNone(self.store.find_pattern("beta", p.pattern_hash))

    def test_update_fact(self):
        d = self._add(Decision(decision="Use MySQL"))
        d.decision = "Use PostgreSQL"
        with self.store.transaction() as conn:
            self.store.update_fact(conn, d)
        self.assertEqual(self.store.get_fact("decisions", d.id).decision, "Use PostgreSQL")

    def test_update_without_id(self):
        with self.assertRaises(ValidationError):
            with self.store.transaction() as conn:
                self.store.update_fact(conn, Decision(decision="x"))

    def test_delete_fact(self):
        d = self._add(Decision(decision="Use PostgreSQL"))
        with self.store.transaction() as conn:
            self.assertIsNone(self.store.delete_fact(conn, "decisions", d.id, "beta"))
            ref = self.store.delete_fact(conn, "decisions", d.id, "alpha")
        self.assertEqual(ref, f"decisions:{d.id}")
        self.assertIsNone(self.store.get_fact("decisions", d.id))

    def test_transaction_rolls_back_on_error(self):
        with self.assertRaises(RuntimeError):
            with self.store.transaction() as conn:
                project_id = self.store.ensure_project(conn, "alpha")
                self.store.insert_fact(conn, project_id, Decision(decision="Use X"))
                raise RuntimeError("boom")
        self.assertEqual(self.store.count("decisions"), 0)
        self.assertEqual(self.store.list_projects(), [])

    def test_list_facts_newest_first(self):
        first = self._add(Decision(decision="First"))
        second = self._add(Decision(decision="Second"))
        self._add(Decision(decision="Other project"), project="beta")
        ids = [f.id for f in self.store.list_facts("decisions", "alpha")]
        self.assertEqual(ids, [second.id, first.id])
        self.assertEqual(len(self.store.list_facts("decisions", "alpha", limit=1)), 1)

    def test_get_facts_and_refs(self):
        a = self._add(Decision(decision="A"))
        b = self._add(Decision(decision="B"))
        facts = self.store.get_facts("decisions", [a.id, b.id, 999], "alpha")
        self.assertEqual(set(facts), {a.id, b.id})
        self.assertEqual(self.store.embedding_refs("decisions"),
                         {a.id: f"decisions:{a.id}", b.id: f"decisions:{b.id}"})
        self.assertEqual(self.store.fact_ids("decisions"), {a.id, b.id})

    def test_unopenable_database(self):
        with self.assertRaises(StorageError):
            RelationalStore(self._tmpdir)


# ---------------------------------------------------------------------------
# Test: keyword search
# ---------------------------------------------------------------------------

class TestKeywordSearch(_StoreTestCase):

    def test_match_expression_quotes_tokens(self):
        self.assertEqual(build_match_expression('login() AND "x" login'),
                         '"login" OR "and" OR "x"')
        self.assertEqual(build_match_expression("!!! ???"), "")

    def test_finds_matching_rows(self):
        pg = self._add(Decision(decision="Use PostgreSQL for storage", context="need ACID"))
        self._add(Decision(decision="Use React for the frontend"))
        hits = self.store.keyword_search("decisions", "postgresql", "alpha", 10)
        self.assertEqual([f.id for f, _ in hits], [pg.id])

    def test_better_match_scores_higher(self):
        both = self._add(Decision(decision="Redis cache", context="cache sessions in redis"))
        one = self._add(Decision(decision="Session storage", context="redis"))
        hits = self.store.keyword_search("decisions", "redis cache", "alpha", 10)
        self.assertEqual(hits[0][0].id, both.id)
        self.assertGreater(hits[0][1], hits[1][1])
        self.assertEqual({f.id for f, _ in hits}, {both.id, one.id})

    def test_scoped_to_project(self):
        self._add(Decision(decision="Use PostgreSQL"), project="beta")
        self.assertEqual(self.store.keyword_search("decisions", "postgresql", "alpha", 10), [])

    def test_operators_are_not_interpreted(self):
        self._add(Decision(decision="Use PostgreSQL"))
        hits = self.store.keyword_search("decisions", 'postgresql NOT "(', "alpha", 10)
        self.assertEqual(len(hits), 1)

    def test_no_tokens(self):
        self._add(Decision(decision="Use PostgreSQL"))
        self.assertEqual(self.store.keyword_search("decisions", "...", "alpha", 10), [])

    def test_index_follows_updates_and_deletes(self):
        d = self._add(Decision(decision="Use MySQL"))
        d.decision = "Use PostgreSQL"
        with self.store.transaction() as conn:
            self.store.update_fact(conn, d)
        self.assertEqual(self.store.keyword_search("decisions", "mysql", "alpha", 10), [])
        self.assertEqual(len(self.store.keyword_search("decisions", "postgresql", "alpha", 10)), 1)

        with self.store.transaction() as conn:
            self.store.delete_fact(conn, "decisions", d.id, "alpha")
        self.assertEqual(self.store.keyword_search("decisions", "postgresql", "alpha", 10), [])

    def test_searches_list_fields(self):
        item = self._add(ProgressItem(milestone="Billing", blockers=["stripe sandbox down"]))
        hits = self.store.keyword_search("progress", "stripe", "alpha", 10)
        self.assertEqual([f.id for f, _ in hits], [item.id])


# ---------------------------------------------------------------------------
# Test: active model pointers
# ---------------------------------------------------------------------------

class TestModelPointers(_StoreTestCase):

    def test_init_once(self):
        self.assertIsNone(self.store.get_pointer("decisions"))
        first = self.store.init_pointer("decisions", "model-a", 8, "decisions__model_a__v1")
        again = self.store.init_pointer("decisions", "model-b", 16, "decisions__model_b__v1")
        self.assertEqual(first.version, 1)
        self.assertEqual(again.model_id, "model-a")

    def test_compare_and_swap(self):
        self.store.init_pointer("decisions", "model-a", 8, "c1")
        self.assertTrue(self.store.swap_pointer("decisions", 1, "model-b", 16, "c2"))
        pointer = self.store.get_pointer("decisions")
        self.assertEqual((pointer.model_id, pointer.dimension, pointer.collection,
                          pointer.version), ("model-b", 16, "c2", 2))
        # Stale version: nothing changes
        self.assertFalse(self.store.swap_pointer("decisions", 1, "model-c", 4, "c3"))
        self.assertEqual(self.store.get_pointer("decisions").model_id, "model-b")


if __name__ == "__main__":
    unittest.main()
