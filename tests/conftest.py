"""Shared fixtures: a workspace on disk and a storage adapter over it."""

from pathlib import Path

import pytest

from knowsys_mcp.mutations import init_workspace
from knowsys_mcp.storage import create_storage


@pytest.fixture
def workspace(tmp_path):
    """An initialized, empty workspace root."""
    root = tmp_path / "project"
    root.mkdir()
    init_workspace(root)
    return root


@pytest.fixture
def write_doc(workspace):
    """Write a document under <workspace>/.knowsys/ and return its path."""

    def write(relative: str, content: str) -> Path:
        path = workspace / ".knowsys" / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return write


@pytest.fixture(params=["json", "sqlite"])
def storage(request, workspace):
    """An initialized adapter of each kind over the workspace."""
    adapter = create_storage(workspace, adapter=request.param)
    yield adapter
    adapter.close()
