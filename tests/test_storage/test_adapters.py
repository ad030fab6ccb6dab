"""Behaviour every storage adapter shares, run against both backends."""

from datetime import date

import pytest

from knowsys_mcp.errors import (
    EmptyQuery,
    InvalidScope,
    InvalidStatus,
    MalformedDocument,
    RootNotFound,
    UnsupportedOperation,
    ValidationFailed,
)
from knowsys_mcp.storage import PlanFilters, SessionFilters, StorageAdapter, create_storage

PLAN_API = """---
id: PLAN_api_redesign
title: API Redesign
status: ACTIVE
author: alice
topics: [api, Backend]
created: "2026-02-01T09:00:00Z"
updated: "2026-02-05T09:00:00Z"
---
# API Redesign

Replace the authentication system with token based auth.
"""

PLAN_CACHE = """---
id: PLAN_cache_layer
title: Cache Layer
status: PLANNED
author: bob
topics: [performance]
created: "2026-02-03T09:00:00Z"
---
# Cache Layer

Add a read-through cache in front of the API.
"""

SESSION_0210 = """---
date: "2026-02-10"
title: Token refresh
topics: [auth, api]
plan: PLAN_api_redesign
status: in-progress
---
# Session

Worked on auth token refresh.
"""

SESSION_0209 = """---
date: "2026-02-09"
title: Cache spike
topics: [performance]
status: complete
---
# Session

Benchmarked the cache.
"""

LEARNED = """# Retry with backoff

Wrap flaky API calls in exponential backoff.
"""

TODAY = date(2026, 2, 10)


@pytest.fixture
def populated(storage, write_doc):
    write_doc("PLAN_api_redesign.md", PLAN_API)
    write_doc("PLAN_cache_layer.md", PLAN_CACHE)
    write_doc("sessions/2026-02-10-session.md", SESSION_0210)
    write_doc("sessions/2026-02-09-session.md", SESSION_0209)
    write_doc("learned/retry-with-backoff.md", LEARNED)
    storage.rebuild_index()
    return storage


class TestInit:
    @pytest.mark.parametrize("adapter", ["json", "sqlite"])
    def test_missing_root(self, tmp_path, adapter):
        with pytest.raises(RootNotFound):
            create_storage(tmp_path, adapter=adapter)

    def test_unknown_adapter(self, workspace):
        with pytest.raises(ValidationFailed, match="choose one of: json, sqlite"):
            create_storage(workspace, adapter="redis")

    def test_reopen_sees_existing_documents(self, populated, workspace):
        populated.close()
        with create_storage(workspace, adapter=populated.name) as reopened:
            assert len(reopened.query_plans()) == 2


class TestBaseAdapter:
    def test_unimplemented_operations_raise(self, tmp_path):
        adapter = StorageAdapter()
        with pytest.raises(UnsupportedOperation, match="base adapter does not implement init"):
            adapter.init(tmp_path)
        with pytest.raises(UnsupportedOperation):
            adapter.query_plans()
        with pytest.raises(UnsupportedOperation):
            adapter.search("anything")
        with pytest.raises(UnsupportedOperation):
            adapter.rebuild_index()

    def test_validation_precedes_unsupported(self):
        adapter = StorageAdapter()
        with pytest.raises(EmptyQuery):
            adapter.search("   ")


class TestQueryPlans:
    def test_all_plans_in_file_order(self, populated):
        plans = populated.query_plans()
        assert [p.id for p in plans] == ["PLAN_api_redesign", "PLAN_cache_layer"]
        assert plans[0].topics == ["api", "Backend"]

    def test_status_filter(self, populated):
        assert [p.id for p in populated.query_plans(PlanFilters(status="PLANNED"))] == [
            "PLAN_cache_layer"
        ]

    def test_author_is_exact(self, populated):
        assert populated.query_plans(PlanFilters(author="ali")) == []
        assert len(populated.query_plans(PlanFilters(author="alice"))) == 1

    def test_topic_substring_case_insensitive(self, populated):
        plans = populated.query_plans(PlanFilters(topic_contains="BACK"))
        assert [p.id for p in plans] == ["PLAN_api_redesign"]

    def test_invalid_status(self, populated):
        with pytest.raises(InvalidStatus):
            populated.query_plans(PlanFilters(status="DONE"))


class TestQuerySessions:
    def test_newest_first(self, populated):
        sessions = populated.query_sessions(today=TODAY)
        assert [s.date for s in sessions] == ["2026-02-10", "2026-02-09"]

    def test_since_days_window(self, populated):
        sessions = populated.query_sessions(SessionFilters(since_days=1), today=TODAY)
        assert [s.file for s in sessions] == ["sessions/2026-02-10-session.md"]

    def test_since_days_zero_is_empty(self, populated):
        assert populated.query_sessions(SessionFilters(since_days=0), today=TODAY) == []

    def test_default_window_excludes_old(self, populated):
        assert populated.query_sessions(today=date(2026, 6, 1)) == []

    def test_plan_filter(self, populated):
        sessions = populated.query_sessions(
            SessionFilters(plan_id="PLAN_api_redesign"), today=TODAY
        )
        assert [s.title for s in sessions] == ["Token refresh"]

    def test_topic_filter(self, populated):
        sessions = populated.query_sessions(SessionFilters(topic_contains="perf"), today=TODAY)
        assert [s.title for s in sessions] == ["Cache spike"]

    @pytest.mark.parametrize("since_days", [-1, "7", 1.5, True])
    def test_invalid_since_days(self, populated, since_days):
        with pytest.raises(ValidationFailed, match="since_days"):
            populated.query_sessions(SessionFilters(since_days=since_days), today=TODAY)


class TestSearch:
    def test_empty_query(self, populated):
        with pytest.raises(EmptyQuery):
            populated.search("")

    def test_wordless_query(self, populated):
        with pytest.raises(EmptyQuery, match="no searchable words"):
            populated.search("!!")

    def test_invalid_scope(self, populated):
        with pytest.raises(InvalidScope, match="choose one of"):
            populated.search("api", scope="tasks")

    def test_prefix_match_in_plans(self, populated):
        matches = populated.search("auth", scope="plans")
        assert len(matches) == 1
        assert matches[0].type == "plan"
        assert matches[0].file == "PLAN_api_redesign.md"
        assert "authentication" in matches[0].context

    def test_all_words_required(self, populated):
        assert [m.file for m in populated.search("cache benchmarked")] == [
            "sessions/2026-02-09-session.md"
        ]

    def test_scope_learned(self, populated):
        matches = populated.search("backoff", scope="learned")
        assert [m.type for m in matches] == ["learned"]

    def test_relevance_ordering(self, populated):
        matches = populated.search("api")
        assert len(matches) >= 3
        for first, second in zip(matches, matches[1:]):
            assert first.relevance >= second.relevance
        # Title hit plus body hit beats body-only hits
        assert matches[0].file == "PLAN_api_redesign.md"

    def test_no_match(self, populated):
        assert populated.search("kubernetes") == []


class TestRebuild:
    def test_report(self, populated):
        report = populated.rebuild_index()
        assert (report.plans, report.sessions, report.learned) == (2, 2, 1)
        assert report.total == 5
        assert report.errors == []

    def test_malformed_document_is_reported_not_fatal(self, populated, write_doc):
        write_doc("sessions/2026-02-08-session.md", "---\ntopics: not-a-list\n---\n")
        report = populated.rebuild_index()
        assert report.sessions == 2
        assert [e["file"] for e in report.errors] == ["sessions/2026-02-08-session.md"]
        assert populated.errors == report.errors

    def test_non_utf8_document_is_reported(self, populated, workspace):
        (workspace / ".knowsys" / "learned" / "binary.md").write_bytes(b"\xff\xfe\x00")
        report = populated.rebuild_index()
        assert report.learned == 1
        assert "not valid UTF-8" in report.errors[0]["error"]


class TestIndexDocument:
    def test_new_document_visible_immediately(self, populated, write_doc):
        path = write_doc(
            "sessions/2026-02-10-pairing.md", "---\ndate: '2026-02-10'\ntopics: [x]\n---\n"
        )
        populated.index_document(path)
        sessions = populated.query_sessions(SessionFilters(topic_contains="x"), today=TODAY)
        assert [s.file for s in sessions] == ["sessions/2026-02-10-pairing.md"]

    def test_updated_document_replaces_entry(self, populated, write_doc):
        path = write_doc("PLAN_cache_layer.md", PLAN_CACHE.replace("PLANNED", "CANCELLED"))
        populated.index_document(path)
        assert [p.status for p in populated.query_plans() if p.id == "PLAN_cache_layer"] == [
            "CANCELLED"
        ]
        assert len(populated.search("cache", scope="plans")) == 1

    def test_deleted_document_is_removed(self, populated, workspace):
        path = workspace / ".knowsys" / "PLAN_cache_layer.md"
        path.unlink()
        populated.index_document(path)
        assert [p.id for p in populated.query_plans()] == ["PLAN_api_redesign"]
        assert populated.search("read through cache") == []

    def test_malformed_update_drops_entry_and_raises(self, populated, write_doc):
        path = write_doc("PLAN_cache_layer.md", "---\nstatus: [\n---\n")
        with pytest.raises(MalformedDocument):
            populated.index_document(path)
        assert [p.id for p in populated.query_plans()] == ["PLAN_api_redesign"]
        assert [e["file"] for e in populated.errors] == ["PLAN_cache_layer.md"]

    def test_pointer_is_ignored(self, populated, write_doc):
        path = write_doc("plans/active-alice.md", "---\nplan: PLAN_api_redesign\n---\n")
        populated.index_document(path)
        assert populated.rebuild_index().total == 5
