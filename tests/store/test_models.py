"""
Unit tests for project_memory.store.models

Fact variants, validation and table name resolution.
"""

from __future__ import annotations

import pytest

from project_memory.errors import InvalidTarget, ValidationError
from project_memory.store.models import (
    EXCERPT_CHARS,
    TABLES,
    CodePattern,
    Decision,
    FactKind,
    ProgressItem,
    ProgressStatus,
    build_fact,
    make_reference,
    parse_reference,
    resolve_table,
    resolve_tables,
)


# ---------------------------------------------------------------------------
# Names and references
# ---------------------------------------------------------------------------

class TestResolveTable:

    @pytest.mark.parametrize("name,expected", [
        ("decision", "decisions"),
        ("Decisions", "decisions"),
        ("milestone", "progress"),
        ("pattern", "code_patterns"),
        ("code-patterns", "code_patterns"),
        (FactKind.PROGRESS, "progress"),
    ])
    def test_aliases(self, name, expected):
        assert resolve_table(name) == expected

    def test_unknown_table(self):
        with pytest.raises(InvalidTarget):
            resolve_table("tasks")

    def test_invalid_target_is_validation_error(self):
        with pytest.raises(ValidationError):
            resolve_table("")

    def test_none_and_all_mean_every_table(self):
        assert resolve_tables(None) == TABLES
        assert resolve_tables("all") == TABLES
        assert resolve_tables(["decisions", "ALL"]) == TABLES

    def test_duplicates_collapse(self):
        assert resolve_tables(["decision", "decisions", "patterns"]) == (
            "decisions", "code_patterns")

    def test_empty_list_rejected(self):
        with pytest.raises(InvalidTarget):
            resolve_tables([])


class TestReferences:

    def test_round_trip(self):
        ref = make_reference("progress", 7)
        assert ref == "progress:7"
        assert parse_reference(ref) == ("progress", 7)

    def test_malformed(self):
        with pytest.raises(ValidationError):
            parse_reference("progress:seven")


# ---------------------------------------------------------------------------
# Progress status
# ---------------------------------------------------------------------------

class TestProgressStatus:

    @pytest.mark.parametrize("raw", ["in_progress", "in-progress", "In Progress", " IN_PROGRESS "])
    def test_spellings(self, raw):
        assert ProgressStatus.parse(raw) is ProgressStatus.IN_PROGRESS

    def test_invalid(self):
        with pytest.raises(ValidationError, match="Valid"):
            ProgressStatus.parse("done-ish")


# ---------------------------------------------------------------------------
# Fact variants
# ---------------------------------------------------------------------------

class TestDecision:

    def test_validate_strips_and_cleans(self):
        d = Decision(decision="  Use PostgreSQL  ", context=" need ACID ",
                     alternatives=["MySQL", "  ", "MongoDB"])
        d.validate()
        assert d.decision == "Use PostgreSQL"
        assert d.context == "need ACID"
        assert d.alternatives == ["MySQL", "MongoDB"]

    def test_requires_decision_text(self):
        with pytest.raises(ValidationError):
            Decision(decision="   ").validate()

    def test_embedding_text_joins_decision_and_context(self):
        d = Decision(decision="Use PostgreSQL for storage", context="need ACID")
        assert d.embedding_text() == "Use PostgreSQL for storage need ACID"

    def test_excerpt_is_bounded(self):
        d = Decision(decision="x" * (EXCERPT_CHARS + 50))
        assert len(d.excerpt()) == EXCERPT_CHARS

    def test_to_dict(self):
        data = Decision(decision="Use Redis", alternatives=["memcached"]).to_dict()
        assert data["kind"] == "decision"
        assert data["alternatives"] == ["memcached"]
        assert data["id"] is None

    def test_to_dict_keys_are_fields_only(self):
        data = ProgressItem(milestone="Auth").to_dict()
        assert set(data) == {"kind", "milestone", "status", "notes", "blockers", "id",
                             "project", "created_at", "updated_at", "embedding_ref"}
        assert data["status"] == "not_started"

    def test_field_texts_skip_empty(self):
        d = Decision(decision="Use Redis", alternatives=["memcached", "none"])
        assert d.field_texts() == {"decision": "Use Redis", "alternatives": "memcached, none"}


class TestProgressItem:

    def test_status_parsed_on_validate(self):
        item = ProgressItem(milestone="Auth flow", status="Testing")
        item.validate()
        assert item.status is ProgressStatus.TESTING
        assert item.to_dict()["status"] == "testing"

    def test_embedding_text(self):
        item = ProgressItem(milestone="Auth flow", notes="JWT done")
        assert item.embedding_text() == "Auth flow JWT done"


class TestCodePattern:

    def test_hash_depends_on_path_and_content(self):
        a = CodePattern(file_path="a.py", content="def f(): pass")
        b = CodePattern(file_path="b.py", content="def f(): pass")
        again = CodePattern(file_path="a.py", content="def f(): pass")
        assert a.pattern_hash == again.pattern_hash
        assert a.pattern_hash != b.pattern_hash
        assert len(a.pattern_hash) == 16

    def test_embeds_raw_content(self):
        p = CodePattern(file_path="notes.txt", content="any raw text")
        assert p.embedding_text() == "any raw text"

    def test_requires_content(self):
        with pytest.raises(ValidationError):
            CodePattern(file_path="a.py", content="  \n").validate()

    def test_language_lowercased(self):
        p = CodePattern(file_path="a.py", content="x = 1", language=" Python ")
        p.validate()
        assert p.language == "python"


# ---------------------------------------------------------------------------
# build_fact
# ---------------------------------------------------------------------------

class TestBuildFact:

    def test_builds_variant_for_kind(self):
        fact = build_fact("progress", {"milestone": "M1", "status": "completed"}, project="p")
        assert isinstance(fact, ProgressItem)
        assert fact.status is ProgressStatus.COMPLETED
        assert fact.project == "p"
        assert fact.table == "progress"

    def test_json_encoded_list_accepted(self):
        fact = build_fact("decision", {"decision": "Use X", "alternatives": '["A", ""]'})
        assert fact.alternatives == ["A"]

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError, match="Unknown field"):
            build_fact("decision", {"decision": "Use X", "priority": "high"})

    def test_missing_required_field(self):
        with pytest.raises(ValidationError):
            build_fact("pattern", {"content": "x"})

    def test_unknown_kind(self):
        with pytest.raises(InvalidTarget):
            build_fact("note", {"text": "x"})

    def test_bookkeeping_fields_not_settable(self):
        with pytest.raises(ValidationError):
            build_fact("decision", {"decision": "Use X", "id": 4})

    @pytest.mark.parametrize("name", ["kind", "text_fields"])
    def test_class_attributes_not_settable(self, name):
        with pytest.raises(ValidationError, match="Unknown field"):
            build_fact("decision", {"decision": "Use X", name: "x"})
