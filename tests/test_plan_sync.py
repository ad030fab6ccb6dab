"""Tests for CURRENT_PLAN.md generation."""

import logging

import pytest

from knowsys_mcp.errors import RootNotFound
from knowsys_mcp.plan_sync import DeveloperPlan, render_team_index, sync_plan_index


def plan_doc(plan_id, title, status="ACTIVE", updated="2026-02-10T09:00:00Z"):
    return (
        f"---\nid: {plan_id}\ntitle: {title}\nstatus: {status}\nauthor: x\n"
        f"created: '2026-02-01T00:00:00Z'\nupdated: '{updated}'\n---\n# {title}\n"
    )


def pointer_doc(author, plan, status="ACTIVE", last_updated="2026-02-09T00:00:00Z"):
    return (
        f"---\nauthor: {author}\nplan: '{plan}'\nstatus: {status}\n"
        f"last_updated: '{last_updated}'\n---\n"
    )


def team_index(workspace):
    return (workspace / ".knowsys" / "CURRENT_PLAN.md").read_text(encoding="utf-8")


class TestSync:
    def test_no_pointers(self, workspace):
        result = sync_plan_index(workspace)
        assert result["success"] is True
        assert result["plan_count"] == 0
        assert result["developers"] == []
        assert team_index(workspace).endswith("No active plans.\n")

    def test_renders_each_author(self, workspace, write_doc):
        write_doc("PLAN_api.md", plan_doc("PLAN_api", "API Redesign"))
        write_doc("PLAN_cache.md", plan_doc("PLAN_cache", "Cache Layer", status="PAUSED"))
        write_doc("plans/active-bob.md", pointer_doc("bob", "PLAN_cache"))
        write_doc("plans/active-alice.md", pointer_doc("alice", "PLAN_api"))

        result = sync_plan_index(workspace)
        assert result["plan_count"] == 2
        assert result["output_path"] == str(workspace / ".knowsys" / "CURRENT_PLAN.md")
        assert [d["author"] for d in result["developers"]] == ["alice", "bob"]
        assert result["developers"][1]["status"] == "PAUSED"
        assert team_index(workspace).splitlines()[4:] == [
            "| Developer | Plan | Status | Last Updated |",
            "|-----------|------|--------|--------------|",
            "| alice | [API Redesign](PLAN_api.md) | ACTIVE | 2026-02-10T09:00:00Z |",
            "| bob | [Cache Layer](PLAN_cache.md) | PAUSED | 2026-02-10T09:00:00Z |",
        ]

    def test_dangling_pointer_is_omitted_with_warning(self, workspace, write_doc, caplog):
        write_doc("PLAN_api.md", plan_doc("PLAN_api", "API Redesign"))
        write_doc("plans/active-alice.md", pointer_doc("alice", "PLAN_api"))
        write_doc("plans/active-bob.md", pointer_doc("bob", "PLAN_deleted"))

        with caplog.at_level(logging.WARNING, logger="knowsys_mcp.plan_sync"):
            result = sync_plan_index(workspace)

        assert result["success"] is True
        assert result["plan_count"] == 1
        assert len(result["warnings"]) == 1
        warning = result["warnings"][0]
        assert warning["author"] == "bob"
        assert warning["plan_id"] == "PLAN_deleted"
        assert "missing plan PLAN_deleted" in warning["error"]
        assert "bob" not in team_index(workspace)
        assert "Skipping pointer for bob" in caplog.text

    def test_idle_pointer(self, workspace, write_doc):
        write_doc("plans/active-alice.md", pointer_doc("alice", "", status="COMPLETE"))
        result = sync_plan_index(workspace)
        assert result["plan_count"] == 0
        assert result["developers"][0]["plan"] == ""
        assert "| alice | _idle_ | COMPLETE | 2026-02-09T00:00:00Z |" in team_index(workspace)

    def test_malformed_pointer_is_reported(self, workspace, write_doc):
        write_doc("plans/active-carol.md", "---\nplan: [\n---\n")
        result = sync_plan_index(workspace)
        assert result["warnings"][0]["author"] == "carol"
        assert result["warnings"][0]["plan_id"] is None

    def test_invalid_plan_id_is_dangling(self, workspace, write_doc):
        write_doc("plans/active-alice.md", pointer_doc("alice", "../../etc/passwd"))
        result = sync_plan_index(workspace)
        assert len(result["warnings"]) == 1
        assert result["developers"] == []

    def test_output_is_deterministic(self, workspace, write_doc):
        write_doc("PLAN_api.md", plan_doc("PLAN_api", "API Redesign"))
        write_doc("plans/active-alice.md", pointer_doc("alice", "PLAN_api"))
        sync_plan_index(workspace)
        first = team_index(workspace)
        sync_plan_index(workspace)
        assert team_index(workspace) == first

    def test_requires_knowledge_dir(self, tmp_path):
        with pytest.raises(RootNotFound):
            sync_plan_index(tmp_path)


class TestRender:
    def test_missing_timestamp_renders_dash(self):
        dev = DeveloperPlan("alice", "", "", "IDLE", "", "plans/active-alice.md")
        assert "| alice | _idle_ | IDLE | - |" in render_team_index([dev])

    def test_header_marks_file_as_generated(self):
        text = render_team_index([])
        assert text.startswith("# Current Plans\n")
        assert "Do not edit" in text
