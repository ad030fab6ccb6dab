"""MCP read tools for knowsys-mcp server.

This module defines the read tools exposed by the MCP server:
- query_plans: List plans filtered by status, author or topic
- query_sessions: List recent sessions filtered by topic or plan
- search_context: Full-text search across plans, sessions and learned notes
- rebuild_index: Recompute the derived index from the documents
- sync_plan_index: Regenerate CURRENT_PLAN.md from the plan pointers
"""

from fastmcp import FastMCP

from knowsys_mcp import query as engine
from knowsys_mcp.config import Config
from knowsys_mcp.plan_sync import sync_plan_index as sync_plans
from knowsys_mcp.storage import StorageAdapter


def register_tools(mcp: FastMCP, config: Config, storage: StorageAdapter) -> None:
    """Register all read tools with the FastMCP server.

    Args:
        mcp: FastMCP server instance
        config: Config instance for the workspace root
        storage: Initialized storage adapter for queries
    """

    @mcp.tool()
    def query_plans(
        status: str | None = None,
        author: str | None = None,
        topic_contains: str | None = None,
    ) -> dict:
        """List plans matching every given filter.

        Args:
            status: Exact status (PLANNED, ACTIVE, PAUSED, COMPLETE, CANCELLED)
            author: Exact author name
            topic_contains: Case-insensitive substring of any plan topic

        Returns:
            Dict with:
            - count: Number of plans
            - plans: id, title, status, author, topics, created, updated,
              started, completed and file for each plan
        """
        return engine.query_plans(
            storage,
            status=status,
            author=author,
            topic_contains=topic_contains,
        )

    @mcp.tool()
    def query_sessions(
        since_days: int | None = None,
        topic_contains: str | None = None,
        plan_id: str | None = None,
    ) -> dict:
        """List recent sessions, newest first.

        Args:
            since_days: Lookback window in days (default: 30)
            topic_contains: Case-insensitive substring of any session topic
            plan_id: Only sessions that worked on this plan

        Returns:
            Dict with count and sessions (date, title, topics, plan, phases,
            duration_minutes, status, file)
        """
        return engine.query_sessions(
            storage,
            since_days=since_days,
            topic_contains=topic_contains,
            plan_id=plan_id,
        )

    @mcp.tool()
    def search_context(query: str, scope: str = "all") -> dict:
        """Search plans, sessions and learned notes.

        Every word of the query must appear in a document, either as a word
        or as the start of one ("auth" finds "authentication"). Title hits
        weigh more than body hits.

        Args:
            query: Words to search for
            scope: all, plans, sessions or learned (default: all)

        Returns:
            Dict with query, scope, count and matches. Each match has:
            - type: plan, session or learned
            - file: Path relative to .knowsys/
            - context: Excerpt around the strongest match
            - relevance: Score, higher is better
        """
        return engine.search_context(storage, query, scope)

    @mcp.tool()
    def rebuild_index() -> dict:
        """Rebuild the derived index from the documents on disk.

        Use this after editing documents by hand.

        Returns:
            Dict with adapter, per-kind counts, total and per-file parse errors
        """
        return engine.rebuild_index(storage)

    @mcp.tool()
    def sync_plan_index() -> dict:
        """Regenerate CURRENT_PLAN.md from every author's plan pointer.

        Returns:
            Dict with success, plan_count, output_path, developers and
            warnings for pointers that reference a missing plan
        """
        return sync_plans(config.root)
