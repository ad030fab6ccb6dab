"""Query and search operations over whichever storage adapter is configured.

Each function validates its input, delegates to the adapter and shapes the
result into plain dicts that the MCP tools and the CLI return unchanged.
"""

import logging
from datetime import date
from typing import Any

from knowsys_mcp.storage.base import PlanFilters, SessionFilters, StorageAdapter

logger = logging.getLogger(__name__)


def query_plans(
    storage: StorageAdapter,
    status: str | None = None,
    author: str | None = None,
    topic_contains: str | None = None,
) -> dict[str, Any]:
    """
    List plans matching every given filter.

    Args:
        storage: Initialized storage adapter
        status: Exact plan status (PLANNED, ACTIVE, PAUSED, COMPLETE, CANCELLED)
        author: Exact author name
        topic_contains: Case-insensitive substring of any topic

    Returns:
        Dict with count and plans, ordered by file path

    Raises:
        InvalidStatus: If status is not a plan status
    """
    filters = PlanFilters(status=status, author=author, topic_contains=topic_contains)
    plans = storage.query_plans(filters)
    logger.debug("query_plans %s -> %d", filters, len(plans))
    return {"count": len(plans), "plans": [plan.to_dict() for plan in plans]}


def query_sessions(
    storage: StorageAdapter,
    since_days: int | None = None,
    topic_contains: str | None = None,
    plan_id: str | None = None,
    today: date | None = None,
) -> dict[str, Any]:
    """
    List recent sessions, newest first.

    Args:
        storage: Initialized storage adapter
        since_days: Lookback window in days (default 30)
        topic_contains: Case-insensitive substring of any topic
        plan_id: Exact plan id the session belongs to
        today: Reference date for the window, UTC today when omitted

    Raises:
        ValidationFailed: If since_days is negative or not an integer
    """
    filters = SessionFilters(
        since_days=since_days,
        topic_contains=topic_contains,
        plan_id=plan_id,
    )
    sessions = storage.query_sessions(filters, today=today)
    logger.debug("query_sessions %s -> %d", filters, len(sessions))
    return {"count": len(sessions), "sessions": [s.to_dict() for s in sessions]}


def search_context(
    storage: StorageAdapter,
    query: str,
    scope: str = "all",
) -> dict[str, Any]:
    """
    Full-text search across documents.

    Every query word must occur in a document, as a word or a word prefix.

    Raises:
        EmptyQuery: If the query has no searchable words
        InvalidScope: If scope is not all, plans, sessions or learned
    """
    matches = storage.search(query, scope)
    logger.debug("search %r in %s -> %d", query, scope, len(matches))
    return {
        "query": query,
        "scope": scope,
        "count": len(matches),
        "matches": [match.to_dict() for match in matches],
    }


def rebuild_index(storage: StorageAdapter) -> dict[str, Any]:
    """Rebuild the derived index and report what was indexed."""
    report = storage.rebuild_index()
    result = report.to_dict()
    result["adapter"] = storage.name
    return result
