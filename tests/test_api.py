"""
Tests for the programmatic API (project_memory.api.MemoryService).
"""

from __future__ import annotations

import pytest

from project_memory import MemoryService
from project_memory.errors import InvalidTarget, ValidationError
from project_memory.retrieval.query_analyzer import Strategy
from project_memory.store.models import CodePattern, Decision, FactKind, ProgressItem


class TestRecordFact:

    def test_record_fact_by_kind(self, memory):
        result = memory.record_fact("decision", {
            "decision": "Use PostgreSQL for storage",
            "context": "need ACID",
            "alternatives": ["MySQL", "SQLite"],
        })
        assert result.kind is FactKind.DECISION
        fact = memory.relational.get_fact("decisions", result.fact_id)
        assert fact.alternatives == ["MySQL", "SQLite"]

    def test_record_fact_project(self, memory):
        result = memory.record_fact("progress", {"milestone": "Auth"}, project="billing")
        assert result.project == "billing"
        assert [p.name for p in memory.list_projects()] == ["billing"]

    def test_unknown_kind(self, memory):
        with pytest.raises(InvalidTarget):
            memory.record_fact("ticket", {"title": "x"})

    def test_unknown_field(self, memory):
        with pytest.raises(ValidationError):
            memory.record_fact("pattern", {"file_path": "a.py", "content": "x", "owner": "me"})

    def test_invalid_status(self, memory):
        with pytest.raises(ValidationError):
            memory.track_progress("Auth", status="almost")
        assert memory.relational.count("progress") == 0

    def test_track_progress_defaults_to_in_progress(self, memory):
        memory.track_progress("Auth")
        (item,) = memory.get_progress()
        assert item.status.value == "in_progress"

    def test_add_code_pattern_accepts_raw_text(self, memory):
        result = memory.add_code_pattern("docs/notes.md", "Remember to rotate keys")
        assert result.created
        assert result.table == "code_patterns"


class TestQueryMemory:

    def test_without_text_lists_recent_facts(self, memory):
        memory.record_decision("First decision")
        memory.track_progress("Milestone")
        last = memory.record_decision("Latest decision")
        facts = memory.query_memory()
        assert len(facts) == 3
        assert facts[0].id == last.fact_id
        assert isinstance(facts[0], Decision)

    def test_category_filter(self, memory):
        memory.record_decision("A decision")
        memory.track_progress("Milestone")
        facts = memory.query_memory(category="milestones")
        assert [type(f) for f in facts] == [ProgressItem]

    def test_limit(self, memory):
        for i in range(4):
            memory.record_decision(f"Decision {i}")
        assert len(memory.query_memory(limit=2)) == 2

    def test_with_text_runs_hybrid_search(self, memory):
        memory.record_decision("Use PostgreSQL for storage", context="need ACID")
        memory.add_code_pattern("web/button.tsx", "export const Button = () => null")
        facts = memory.query_memory("PostgreSQL storage")
        assert isinstance(facts[0], Decision)
        assert all(not isinstance(f, CodePattern) for f in facts)

    def test_unknown_category(self, memory):
        with pytest.raises(InvalidTarget):
            memory.query_memory(category="tickets")

    def test_scoped_to_project(self, memory):
        memory.record_decision("Use PostgreSQL", project="alpha")
        assert memory.query_memory(project="beta") == []
        assert len(memory.get_decisions(project="alpha")) == 1


class TestServiceLifecycle:

    def test_semantic_search_defaults_to_vector(self, memory):
        memory.record_decision("Use PostgreSQL for storage", context="need ACID")
        response = memory.semantic_search("database choice for transactions",
                                          tables="decisions", min_similarity=0.2)
        assert response.strategy is Strategy.VECTOR
        assert len(response) == 1
        assert response.to_dict()["results"][0]["kind"] == "decision"

    def test_classify(self, memory):
        assert memory.classify("function login()").strategy is Strategy.KEYWORD

    def test_delete_fact(self, memory):
        result = memory.record_decision("Use PostgreSQL")
        assert memory.delete_fact("decisions", result.fact_id) is True
        assert memory.delete_fact("decisions", result.fact_id) is False

    def test_data_survives_reopen(self, config, provider):
        with MemoryService(config, provider=provider) as memory:
            memory.record_decision("Use PostgreSQL for storage", context="need ACID")

        with MemoryService(config, provider=provider) as reopened:
            response = reopened.semantic_search("database choice for transactions",
                                                min_similarity=0.2)
            assert len(response) == 1
            assert reopened.health().healthy
