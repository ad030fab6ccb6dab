"""Write tools for knowsys-mcp - create and update documents in the workspace."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from knowsys_mcp import mutations
from knowsys_mcp.config import Config
from knowsys_mcp.errors import ReadOnlyMode
from knowsys_mcp.storage import StorageAdapter

if TYPE_CHECKING:
    from fastmcp import FastMCP

logger = logging.getLogger(__name__)


def check_write_permission(config: Config) -> None:
    """
    Check if write operations are allowed.

    Args:
        config: Config instance to check read_only setting

    Raises:
        ReadOnlyMode: If server is in read-only mode
    """
    if config.read_only:
        logger.warning("Write operation blocked: server is in read-only mode")
        raise ReadOnlyMode(
            "server is in read-only mode",
            operation="write",
            hint="unset KNOWSYS_READ_ONLY to enable write tools",
        )


def register_tools_write(
    mcp: "FastMCP",
    config: Config,
    storage: StorageAdapter,
) -> None:
    """Register all write tools with the FastMCP server.

    Args:
        mcp: FastMCP server instance
        config: Config instance for the workspace root and read-only mode
        storage: Storage adapter refreshed after every write
    """

    @mcp.tool()
    def create_session(
        title: str = "Work Session",
        date: str | None = None,
        topics: list[str] | None = None,
        plan: str | None = None,
        phases: list[str] | None = None,
        duration_minutes: int | None = None,
        author: str | None = None,
        suffix: str | None = None,
        force: bool = False,
        goal: str | None = None,
    ) -> dict:
        """Create the session log for a date.

        Args:
            title: Session title
            date: YYYY-MM-DD, today (UTC) when omitted
            topics: Topics covered; duplicates are dropped
            plan: Optional plan id this session works on
            phases: Optional phases touched
            duration_minutes: Optional session length
            author: Optional author name
            suffix: Create <date>-<suffix>.md next to an existing session
            force: Overwrite an existing session file
            goal: Optional text for the Goal section

        Returns:
            Dict with path, created and metadata
        """
        check_write_permission(config)
        return mutations.create_session(
            storage,
            date=date,
            title=title,
            topics=topics or (),
            plan=plan,
            phases=phases or (),
            duration_minutes=duration_minutes,
            author=author,
            suffix=suffix,
            force=force,
            goal=goal,
        )

    @mcp.tool()
    def update_session(
        path: str | None = None,
        date: str | None = None,
        add_topic: str | None = None,
        add_file: str | None = None,
        add_phase: str | None = None,
        set_status: str | None = None,
        content: str | None = None,
        append_section: str | None = None,
        prepend_section: str | None = None,
        insert_after: str | None = None,
        insert_before: str | None = None,
    ) -> dict:
        """Update a session's metadata or body.

        Args:
            path: Session file relative to .knowsys/ (e.g. "sessions/2026-02-10-session.md")
            date: Select <date>-session.md instead of a path (default: today)
            add_topic: Topic to add; no-op when already present
            add_file: File to add; no-op when already present
            add_phase: Phase to add; no-op when already present
            set_status: in-progress, complete or abandoned
            content: Text to insert, requires one of the section options
            append_section: Heading appended at the end, or the heading for an
                insert (defaults to "## Update")
            prepend_section: Heading inserted at the top
            insert_after: Insert at the end of the section containing this text
            insert_before: Insert right before this text

        Returns:
            Dict with updated, path and changes
        """
        check_write_permission(config)
        return mutations.update_session(
            storage,
            path=path,
            date=date,
            add_topic=add_topic,
            add_file=add_file,
            add_phase=add_phase,
            set_status=set_status,
            content=content,
            append_section=append_section,
            prepend_section=prepend_section,
            insert_after=insert_after,
            insert_before=insert_before,
        )

    @mcp.tool()
    def create_plan(
        title: str,
        author: str,
        topics: list[str] | None = None,
        goal: str | None = None,
    ) -> dict:
        """Create a PLANNED plan and make it the author's active plan.

        Args:
            title: Plan title (at least 3 characters); the id is derived from it
            author: Plan author
            topics: Optional topics
            goal: Optional text for the Goal section

        Returns:
            Dict with plan_id, path, pointer_path and created
        """
        check_write_permission(config)
        return mutations.create_plan(
            storage,
            title=title,
            author=author,
            topics=topics or (),
            goal=goal,
        )

    @mcp.tool()
    def update_plan(
        plan_id: str,
        set_status: str | None = None,
        append_progress: str | None = None,
    ) -> dict:
        """Change a plan's status and/or log progress.

        Allowed moves: PLANNED -> ACTIVE or CANCELLED; ACTIVE -> PAUSED,
        COMPLETE or CANCELLED; PAUSED -> ACTIVE or CANCELLED.

        Args:
            plan_id: Plan id (e.g. "PLAN_api_redesign")
            set_status: New status
            append_progress: Progress note, timestamped automatically

        Returns:
            Dict with plan_id, path, updated, changes and the plan
        """
        check_write_permission(config)
        return mutations.update_plan(
            storage,
            plan_id=plan_id,
            set_status=set_status,
            append_progress=append_progress,
        )

    @mcp.tool()
    def init_workspace() -> dict:
        """Create the .knowsys/ folders under the workspace root.

        Returns:
            Dict with root, knowledge_dir and the folders created
        """
        check_write_permission(config)
        return mutations.init_workspace(config.root)
