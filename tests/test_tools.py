"""Tests for the MCP read and write tools."""

import pytest
from fastmcp import FastMCP

from knowsys_mcp.config import Config
from knowsys_mcp.errors import EmptyQuery, ReadOnlyMode
from knowsys_mcp.storage import create_storage
from knowsys_mcp.tools import register_tools
from knowsys_mcp.tools_write import check_write_permission, register_tools_write

READ_TOOLS = {"query_plans", "query_sessions", "search_context", "rebuild_index", "sync_plan_index"}
WRITE_TOOLS = {"create_session", "update_session", "create_plan", "update_plan", "init_workspace"}


def make_config(root, read_only=False):
    return Config(
        root=root,
        adapter="json",
        db_path=root / ".knowsys" / "knowledge.db",
        port=8080,
        read_only=read_only,
    )


@pytest.fixture
def tools(workspace):
    """Register every tool against a fresh workspace and expose the functions."""
    config = make_config(workspace)
    storage = create_storage(workspace)
    mcp = FastMCP()
    register_tools(mcp, config, storage)
    register_tools_write(mcp, config, storage)

    registered = {}
    for tool in mcp._tool_manager._tools.values():
        registered[tool.fn.__name__] = tool.fn

    yield registered
    storage.close()


@pytest.fixture
def read_only_tools(workspace):
    config = make_config(workspace, read_only=True)
    storage = create_storage(workspace)
    mcp = FastMCP()
    register_tools_write(mcp, config, storage)
    yield {tool.fn.__name__: tool.fn for tool in mcp._tool_manager._tools.values()}
    storage.close()


def test_all_tools_registered(tools):
    assert set(tools) == READ_TOOLS | WRITE_TOOLS


def test_plan_workflow(tools, workspace):
    """Test creating a plan, moving it and finding it again."""
    created = tools["create_plan"](title="API Redesign", author="alice", topics=["api"])
    assert created["plan_id"] == "PLAN_api_redesign"

    updated = tools["update_plan"](plan_id="PLAN_api_redesign", set_status="ACTIVE")
    assert updated["plan"]["status"] == "ACTIVE"
    assert updated["plan"]["started"] is not None

    plans = tools["query_plans"](status="ACTIVE")
    assert plans["count"] == 1
    assert plans["plans"][0]["file"] == "PLAN_api_redesign.md"

    synced = tools["sync_plan_index"]()
    assert synced["plan_count"] == 1
    assert (workspace / ".knowsys" / "CURRENT_PLAN.md").exists()


def test_session_workflow(tools):
    """Test logging a session and searching its body."""
    created = tools["create_session"](title="Login fixes", topics=["auth"], goal="Fix SSO redirect")
    path = created["path"]

    tools["update_session"](path=path, content="Patched the redirect loop", append_section="## Changes made")

    sessions = tools["query_sessions"](topic_contains="auth")
    assert [s["file"] for s in sessions["sessions"]] == [path]

    result = tools["search_context"](query="redirect", scope="sessions")
    assert result["count"] == 1
    assert result["matches"][0]["file"] == path


def test_search_errors_propagate(tools):
    with pytest.raises(EmptyQuery):
        tools["search_context"](query="  ")


def test_rebuild_index_tool(tools, write_doc):
    write_doc("learned/retry.md", "# Retry\n\nBack off exponentially.\n")
    result = tools["rebuild_index"]()
    assert result["adapter"] == "json"
    assert result["learned"] == 1


def test_init_workspace_tool(tools, workspace):
    result = tools["init_workspace"]()
    assert result["root"] == str(workspace)
    assert result["created"] == []


def test_check_write_permission_allows_writes(workspace):
    check_write_permission(make_config(workspace))


@pytest.mark.parametrize(
    "name,kwargs",
    [
        ("create_session", {}),
        ("update_session", {"add_topic": "x"}),
        ("create_plan", {"title": "API Redesign", "author": "alice"}),
        ("update_plan", {"plan_id": "PLAN_x", "set_status": "ACTIVE"}),
        ("init_workspace", {}),
    ],
)
def test_read_only_blocks_writes(read_only_tools, workspace, name, kwargs):
    """Test every write tool refuses to run in read-only mode."""
    with pytest.raises(ReadOnlyMode, match="KNOWSYS_READ_ONLY"):
        read_only_tools[name](**kwargs)
    assert list((workspace / ".knowsys" / "sessions").iterdir()) == []
    assert not (workspace / ".knowsys" / "PLAN_api_redesign.md").exists()
