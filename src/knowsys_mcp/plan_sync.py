"""Plan synchronizer: folds per-author plan pointers into CURRENT_PLAN.md.

The team index is a generated artifact. Every sync overwrites it from the
pointer and plan documents alone, so two syncs over the same documents write
identical bytes.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from knowsys_mcp.documents.models import PLAN_ID_PATTERN, Plan, PlanPointer
from knowsys_mcp.documents.parser import parse
from knowsys_mcp.documents.walker import (
    TEAM_INDEX_FILE,
    atomic_write_text,
    iter_pointer_files,
    knowledge_dir,
    plan_path,
    require_knowledge_dir,
)
from knowsys_mcp.errors import DanglingPointer, MalformedDocument

logger = logging.getLogger(__name__)


@dataclass
class DeveloperPlan:
    """One resolved pointer row in the team index."""

    author: str
    plan: str  # plan id, empty when idle
    title: str
    status: str
    last_updated: str
    file: str  # pointer file, relative to the knowledge directory

    def to_dict(self) -> dict[str, str]:
        return {
            "author": self.author,
            "plan": self.plan,
            "title": self.title,
            "status": self.status,
            "last_updated": self.last_updated,
            "file": self.file,
        }


def _warning(author: str, plan_id: str | None, error: Exception) -> dict[str, Any]:
    logger.warning("Skipping pointer for %s: %s", author, error)
    return {"author": author, "plan_id": plan_id, "error": str(error)}


def _read_pointer(path: Path) -> PlanPointer:
    doc = parse(path.read_text(encoding="utf-8"), path.name)
    return PlanPointer.from_document(doc, path.name)


def _resolve(root: Path, pointer: PlanPointer, relative: str) -> DeveloperPlan:
    """
    Resolve a pointer against its plan document.

    Raises:
        DanglingPointer: If the plan id is invalid or has no plan document
        MalformedDocument: If the plan document cannot be parsed
    """
    if not pointer.plan:
        return DeveloperPlan(
            author=pointer.author,
            plan="",
            title="",
            status=pointer.status or "IDLE",
            last_updated=pointer.last_updated,
            file=relative,
        )

    path = plan_path(root, pointer.plan)
    if not PLAN_ID_PATTERN.match(pointer.plan) or not path.is_file():
        raise DanglingPointer(
            f"{relative} references missing plan {pointer.plan}",
            operation="sync_plan_index",
            hint="point it at an existing plan or clear its 'plan' field",
        )

    plan = Plan.from_document(parse(path.read_text(encoding="utf-8"), path.name), path.name)
    return DeveloperPlan(
        author=pointer.author,
        plan=plan.id,
        title=plan.title,
        status=plan.status.value,
        last_updated=plan.updated or plan.created or pointer.last_updated,
        file=relative,
    )


def render_team_index(developers: list[DeveloperPlan]) -> str:
    """Render CURRENT_PLAN.md for the resolved pointers."""
    lines = [
        "# Current Plans",
        "",
        "<!-- Generated by knowsys-mcp from plans/active-*.md. Do not edit. -->",
        "",
    ]
    if not developers:
        lines.append("No active plans.")
        return "\n".join(lines) + "\n"

    lines.extend(
        [
            "| Developer | Plan | Status | Last Updated |",
            "|-----------|------|--------|--------------|",
        ]
    )
    for dev in developers:
        if dev.plan:
            plan_cell = f"[{dev.title}]({dev.plan}.md)"
        else:
            plan_cell = "_idle_"
        lines.append(
            f"| {dev.author} | {plan_cell} | {dev.status} | {dev.last_updated or '-'} |"
        )
    return "\n".join(lines) + "\n"


def sync_plan_index(root: Path) -> dict[str, Any]:
    """
    Regenerate CURRENT_PLAN.md from every author's plan pointer.

    Pointers that reference a missing plan, or that cannot be read, are left
    out of the index and reported in ``warnings``; the rest still render.

    Args:
        root: Workspace root containing .knowsys/

    Returns:
        Dict with success, plan_count (pointers resolved to a plan),
        output_path, developers and warnings

    Raises:
        RootNotFound: If root has no .knowsys directory
    """
    base = require_knowledge_dir(root, operation="sync_plan_index")
    developers: list[DeveloperPlan] = []
    warnings: list[dict[str, Any]] = []

    for path in iter_pointer_files(root):
        relative = path.relative_to(base).as_posix()
        try:
            pointer = _read_pointer(path)
        except (MalformedDocument, UnicodeDecodeError) as e:
            author = path.name[len("active-") : -len(".md")]
            warnings.append(_warning(author, None, e))
            continue
        try:
            developers.append(_resolve(root, pointer, relative))
        except (DanglingPointer, MalformedDocument, UnicodeDecodeError) as e:
            warnings.append(_warning(pointer.author, pointer.plan or None, e))

    output_path = knowledge_dir(root) / TEAM_INDEX_FILE
    atomic_write_text(output_path, render_team_index(developers))

    plan_count = sum(1 for dev in developers if dev.plan)
    logger.info(
        "Synced %d developer plan(s) into %s (%d warning(s))",
        plan_count,
        output_path,
        len(warnings),
    )
    return {
        "success": True,
        "plan_count": plan_count,
        "output_path": str(output_path),
        "developers": [dev.to_dict() for dev in developers],
        "warnings": warnings,
    }
