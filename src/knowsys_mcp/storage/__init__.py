"""
Storage module for knowsys-mcp.

Two interchangeable backends implement StorageAdapter: a JSON cache file and
an SQLite database. Both are derived from the documents and can be deleted
and rebuilt at any time.
"""

from pathlib import Path

from knowsys_mcp.errors import ValidationFailed
from knowsys_mcp.storage.base import (
    PlanFilters,
    RebuildReport,
    SessionFilters,
    StorageAdapter,
)
from knowsys_mcp.storage.json_storage import JsonStorage
from knowsys_mcp.storage.sqlite_storage import SqliteStorage

ADAPTERS = ("json", "sqlite")


def create_storage(
    root: Path,
    adapter: str = "json",
    db_path: Path | None = None,
) -> StorageAdapter:
    """
    Create and initialize the configured storage adapter.

    Args:
        root: Workspace root containing .knowsys/
        adapter: "json" or "sqlite"
        db_path: SQLite database file, ignored by the JSON adapter

    Returns:
        An initialized adapter; the caller owns it and must close() it.

    Raises:
        ValidationFailed: If adapter is not a known backend
        RootNotFound: If root has no .knowsys directory
    """
    if adapter == "json":
        storage: StorageAdapter = JsonStorage()
    elif adapter == "sqlite":
        storage = SqliteStorage(db_path)
    else:
        raise ValidationFailed(
            f"unknown storage adapter {adapter!r}",
            operation="create_storage",
            hint=f"choose one of: {', '.join(ADAPTERS)}",
        )
    storage.init(root)
    return storage


__all__ = [
    "ADAPTERS",
    "JsonStorage",
    "PlanFilters",
    "RebuildReport",
    "SessionFilters",
    "SqliteStorage",
    "StorageAdapter",
    "create_storage",
]
