"""Main entry point for knowsys-mcp: MCP server and command line."""

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from datetime import date
from pathlib import Path
from typing import Any

from fastmcp import FastMCP

from knowsys_mcp import __version__, mutations, query
from knowsys_mcp.config import Config
from knowsys_mcp.documents.walker import knowledge_dir
from knowsys_mcp.errors import KnowsysError, ValidationFailed
from knowsys_mcp.plan_sync import sync_plan_index
from knowsys_mcp.storage import StorageAdapter, create_storage
from knowsys_mcp.tools import register_tools
from knowsys_mcp.tools_write import check_write_permission, register_tools_write

logger = logging.getLogger(__name__)


def open_storage(config: Config) -> StorageAdapter:
    """Create the adapter selected by the configuration."""
    return create_storage(config.root, adapter=config.adapter, db_path=config.db_path)


def create_server(config: Config) -> FastMCP:
    """Create and configure the MCP server with all components.

    Args:
        config: Configuration instance with all settings.
    """
    mcp = FastMCP(
        name="knowsys-mcp",
        instructions=(
            "knowsys-mcp gives access to a project's plans, work sessions and learned "
            "notes. Use search_context to find prior work, query_plans and "
            "query_sessions to list documents, and the write tools to log sessions "
            "and move plans through their status machine."
        ),
    )

    if not knowledge_dir(config.root).is_dir() and not config.read_only:
        logger.info("No knowledge directory under %s, initializing workspace...", config.root)
        mutations.init_workspace(config.root)

    logger.info("Opening %s storage for %s", config.adapter, config.root)
    storage = open_storage(config)

    logger.info("Registering read tools...")
    register_tools(mcp, config, storage)

    logger.info("Registering write tools...")
    register_tools_write(mcp, config, storage)

    logger.info("Server configured successfully")
    return mcp


def _serve(config: Config, args: argparse.Namespace) -> None:
    logger.info("=" * 50)
    logger.info("knowsys-mcp %s starting...", __version__)
    logger.info("  KNOWSYS_ROOT:    %s", config.root)
    logger.info("  KNOWSYS_ADAPTER: %s", config.adapter)
    logger.info("  KNOWSYS_DB:      %s", config.db_path)
    logger.info("  KNOWSYS_PORT:    %s", config.port)
    logger.info("  READ_ONLY:       %s", config.read_only)
    logger.info("=" * 50)

    mcp = create_server(config)
    if args.transport == "stdio":
        mcp.run(transport="stdio")
    else:
        logger.info("Starting MCP server on port %s...", config.port)
        mcp.run(transport="sse", host=args.host, port=config.port)


def _with_storage(config: Config, action: Any) -> dict[str, Any]:
    with open_storage(config) as storage:
        return action(storage)


def _parse_today(value: str | None) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationFailed(
            f"--today must be YYYY-MM-DD, got {value!r}",
            operation="query_sessions",
        ) from None


def _run_command(config: Config, args: argparse.Namespace) -> dict[str, Any]:
    """Dispatch one CLI command to the core operation it names."""
    command = args.command
    if command == "init":
        return mutations.init_workspace(config.root)
    if command == "sync-plans":
        return sync_plan_index(config.root)
    if command == "rebuild-index":
        return _with_storage(config, query.rebuild_index)
    if command == "query-plans":
        return _with_storage(
            config,
            lambda s: query.query_plans(
                s, status=args.status, author=args.author, topic_contains=args.topic
            ),
        )
    if command == "query-sessions":
        today = _parse_today(args.today)
        return _with_storage(
            config,
            lambda s: query.query_sessions(
                s,
                since_days=args.since_days,
                topic_contains=args.topic,
                plan_id=args.plan,
                today=today,
            ),
        )
    if command == "search":
        return _with_storage(config, lambda s: query.search_context(s, args.query, args.scope))
    if command == "create-session":
        return _with_storage(
            config,
            lambda s: mutations.create_session(
                s,
                date=args.date,
                title=args.title,
                topics=args.topic,
                plan=args.plan,
                phases=args.phase,
                duration_minutes=args.duration,
                author=args.author,
                suffix=args.suffix,
                force=args.force,
                goal=args.goal,
            ),
        )
    if command == "update-session":
        return _with_storage(
            config,
            lambda s: mutations.update_session(
                s,
                path=args.path,
                date=args.date,
                add_topic=args.add_topic,
                add_file=args.add_file,
                add_phase=args.add_phase,
                set_status=args.set_status,
                content=args.content,
                append_section=args.append_section,
                prepend_section=args.prepend_section,
                insert_after=args.insert_after,
                insert_before=args.insert_before,
            ),
        )
    if command == "create-plan":
        return _with_storage(
            config,
            lambda s: mutations.create_plan(
                s, title=args.title, author=args.author, topics=args.topic, goal=args.goal
            ),
        )
    if command == "update-plan":
        return _with_storage(
            config,
            lambda s: mutations.update_plan(
                s,
                plan_id=args.plan_id,
                set_status=args.set_status,
                append_progress=args.progress,
            ),
        )
    raise ValueError(f"Unknown command: {command}")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for every subcommand."""
    parser = argparse.ArgumentParser(
        prog="knowsys-mcp",
        description="knowsys-mcp - plans, sessions and learned notes for a project",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--root", type=Path, help="Workspace root (overrides KNOWSYS_ROOT)")
    parser.add_argument(
        "--read-only",
        action="store_true",
        help="Run in read-only mode (disable write tools)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the MCP server")
    serve.add_argument("--transport", choices=("sse", "stdio"), default="sse")
    serve.add_argument("--host", default="0.0.0.0")

    sub.add_parser("init", help="Create the .knowsys/ folders")
    sub.add_parser("rebuild-index", help="Rebuild the derived index")
    sub.add_parser("sync-plans", help="Regenerate CURRENT_PLAN.md")

    plans = sub.add_parser("query-plans", help="List plans")
    plans.add_argument("--status")
    plans.add_argument("--author")
    plans.add_argument("--topic", help="Substring of any topic")

    sessions = sub.add_parser("query-sessions", help="List recent sessions")
    sessions.add_argument("--since-days", type=int)
    sessions.add_argument("--topic", help="Substring of any topic")
    sessions.add_argument("--plan", help="Plan id")
    sessions.add_argument("--today", help="Reference date YYYY-MM-DD (default: UTC today)")

    search = sub.add_parser("search", help="Full-text search")
    search.add_argument("query")
    search.add_argument("--scope", default="all", help="all, plans, sessions or learned")

    create_session = sub.add_parser("create-session", help="Create a session log")
    create_session.add_argument("--date")
    create_session.add_argument("--title", default="Work Session")
    create_session.add_argument("--topic", action="append", default=[])
    create_session.add_argument("--plan")
    create_session.add_argument("--phase", action="append", default=[])
    create_session.add_argument("--duration", type=int, help="Duration in minutes")
    create_session.add_argument("--author")
    create_session.add_argument("--suffix")
    create_session.add_argument("--goal")
    create_session.add_argument("--force", action="store_true")

    update_session = sub.add_parser("update-session", help="Update a session log")
    update_session.add_argument("--path")
    update_session.add_argument("--date")
    update_session.add_argument("--add-topic")
    update_session.add_argument("--add-file")
    update_session.add_argument("--add-phase")
    update_session.add_argument("--set-status")
    update_session.add_argument("--content")
    update_session.add_argument("--append-section")
    update_session.add_argument("--prepend-section")
    update_session.add_argument("--insert-after")
    update_session.add_argument("--insert-before")

    create_plan = sub.add_parser("create-plan", help="Create a plan")
    create_plan.add_argument("title")
    create_plan.add_argument("--author", required=True)
    create_plan.add_argument("--topic", action="append", default=[])
    create_plan.add_argument("--goal")

    update_plan = sub.add_parser("update-plan", help="Update a plan")
    update_plan.add_argument("plan_id")
    update_plan.add_argument("--set-status")
    update_plan.add_argument("--progress", help="Progress note to append")

    return parser


WRITE_COMMANDS = frozenset(
    {"init", "create-session", "update-session", "create-plan", "update-plan"}
)


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, run one command and return the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging here to avoid side effects on import
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = Config.from_env(
            root_override=args.root,
            read_only_override=True if args.read_only else None,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.command == "serve":
        try:
            _serve(config, args)
        except KeyboardInterrupt:
            logger.info("Server stopped by user")
        except KnowsysError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0

    try:
        if args.command in WRITE_COMMANDS:
            check_write_permission(config)
        result = _run_command(config, args)
    except KnowsysError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
