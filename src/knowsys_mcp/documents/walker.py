"""File walker for discovering documents in a knowsys workspace."""

import os
import re
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from knowsys_mcp.errors import RootNotFound

KNOWLEDGE_DIR = ".knowsys"
SESSIONS_DIR = "sessions"
POINTERS_DIR = "plans"
LEARNED_DIR = "learned"
TEAM_INDEX_FILE = "CURRENT_PLAN.md"
INDEX_FILE = "context-index.json"
DATABASE_FILE = "knowledge.db"

SESSION_FILE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}.*\.md$")
PLAN_FILE_PATTERN = re.compile(r"^PLAN_.+\.md$")
POINTER_FILE_PATTERN = re.compile(r"^active-(.+)\.md$")


@dataclass
class FileInfo:
    """Information about a discovered document."""

    path: Path  # Absolute path
    relative_path: str  # Relative to the knowledge directory, always "/" separated
    kind: str  # plan, session, learned
    filename: str


def knowledge_dir(root: Path) -> Path:
    """Return the knowledge directory for a workspace root."""
    return root / KNOWLEDGE_DIR


def require_knowledge_dir(root: Path, operation: str = "init") -> Path:
    """
    Resolve the knowledge directory, failing if the layout is missing.

    Raises:
        RootNotFound: If root or root/.knowsys is not a directory
    """
    base = knowledge_dir(root)
    if not base.is_dir():
        raise RootNotFound(
            f"no {KNOWLEDGE_DIR}/ directory under {root}",
            operation=operation,
            hint="run 'knowsys-mcp init' in the workspace root first",
        )
    return base


def classify(relative_path: str) -> str | None:
    """
    Determine the document kind from a path relative to the knowledge directory.

    Returns "plan", "session", "learned", "pointer" or None for files that are
    not documents (team index, caches, anything else).
    """
    parts = Path(relative_path).parts
    if len(parts) == 1:
        return "plan" if PLAN_FILE_PATTERN.match(parts[0]) else None
    if len(parts) == 2:
        folder, filename = parts
        if folder == SESSIONS_DIR and SESSION_FILE_PATTERN.match(filename):
            return "session"
        if folder == POINTERS_DIR and POINTER_FILE_PATTERN.match(filename):
            return "pointer"
        if folder == LEARNED_DIR and filename.endswith(".md"):
            return "learned"
    return None


def _file_info(path: Path, base: Path, kind: str) -> FileInfo:
    return FileInfo(
        path=path,
        relative_path=path.relative_to(base).as_posix(),
        kind=kind,
        filename=path.name,
    )


def describe_file(path: Path, base: Path) -> FileInfo | None:
    """Build FileInfo for one indexable document, or None if it is not one."""
    relative = path.relative_to(base).as_posix()
    kind = classify(relative)
    if kind is None or kind == "pointer":
        return None
    return _file_info(path, base, kind)


def walk_workspace(root: Path) -> Iterator[FileInfo]:
    """
    Walk the knowledge directory and yield FileInfo for each indexable document.

    Structure expected:
    <root>/.knowsys/
    ├── PLAN_api_redesign.md
    ├── sessions/
    │   └── 2026-02-10-session.md
    └── learned/
        └── retry-with-backoff.md

    Files are yielded plans first, then sessions, then learned notes, each in
    sorted filename order so that every walk of the same tree is identical.
    Pointers are not indexed; see iter_pointer_files.
    """
    base = knowledge_dir(root)
    if not base.is_dir():
        return

    for path in sorted(base.glob("PLAN_*.md")):
        if path.is_file():
            yield _file_info(path, base, "plan")

    for folder, kind in ((SESSIONS_DIR, "session"), (LEARNED_DIR, "learned")):
        directory = base / folder
        if not directory.is_dir():
            continue
        for path in sorted(directory.iterdir()):
            if not path.is_file() or path.name.startswith("."):
                continue
            if classify(f"{folder}/{path.name}") == kind:
                yield _file_info(path, base, kind)


def iter_pointer_files(root: Path) -> Iterator[Path]:
    """Yield every plans/active-<author>.md file in sorted order."""
    directory = knowledge_dir(root) / POINTERS_DIR
    if not directory.is_dir():
        return
    for path in sorted(directory.glob("active-*.md")):
        if path.is_file():
            yield path


def session_path(root: Path, session_date: str, suffix: str | None = None) -> Path:
    """Path of the session file for a date, optionally disambiguated."""
    name = f"{session_date}-{suffix}.md" if suffix else f"{session_date}-session.md"
    return knowledge_dir(root) / SESSIONS_DIR / name


def plan_path(root: Path, plan_id: str) -> Path:
    """Path of a plan document."""
    return knowledge_dir(root) / f"{plan_id}.md"


def pointer_path(root: Path, author: str) -> Path:
    """Path of an author's plan pointer."""
    return knowledge_dir(root) / POINTERS_DIR / f"active-{author}.md"


def atomic_write_text(path: Path, data: str, *, encoding: str = "utf-8") -> None:
    """Write text via a temporary file and rename so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding=encoding,
        newline="\n",
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    temp_name = handle.name
    try:
        with handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    finally:
        if os.path.exists(temp_name):
            os.remove(temp_name)
