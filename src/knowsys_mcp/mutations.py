"""Mutation engine: create and update sessions, plans and plan pointers.

Every write goes through a temporary file and a rename, then refreshes the
storage adapter before returning so a query issued right after a mutation
sees it. Mutations on the same file are serialized within the process.
"""

import logging
import re
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from knowsys_mcp.documents.models import (
    AUTHOR_PATTERN,
    DATE_PATTERN,
    PLAN_ID_PATTERN,
    PLAN_TRANSITIONS,
    TERMINAL_PLAN_STATUSES,
    Plan,
    PlanPointer,
    PlanStatus,
    ProgressEntry,
    Session,
    SessionStatus,
    parse_plan_status,
    parse_session_status,
    plan_id_for_title,
    utc_timestamp,
)
from knowsys_mcp.documents.parser import parse, serialize
from knowsys_mcp.documents.walker import (
    KNOWLEDGE_DIR,
    LEARNED_DIR,
    POINTERS_DIR,
    SESSIONS_DIR,
    atomic_write_text,
    classify,
    knowledge_dir,
    plan_path,
    pointer_path,
    require_knowledge_dir,
    session_path,
)
from knowsys_mcp.errors import (
    DuplicatePlan,
    DuplicateSession,
    InvalidStatusTransition,
    PatternNotFound,
    PlanNotFound,
    RootNotFound,
    SessionNotFound,
    ValidationFailed,
)
from knowsys_mcp.plan_sync import sync_plan_index
from knowsys_mcp.storage.base import StorageAdapter

logger = logging.getLogger(__name__)

MIN_TITLE_LENGTH = 3
SUFFIX_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
NEXT_SECTION_PATTERN = re.compile(r"\n## ")
PROGRESS_HEADING = "## Progress"
UPDATE_HEADING = "## Update"

# Per-path locks with the number of callers holding or waiting on each
_locks: dict[Path, tuple[threading.Lock, int]] = {}
_locks_guard = threading.Lock()


@contextmanager
def document_lock(path: Path) -> Iterator[None]:
    """
    Serialize mutations of one document within this process.

    A path's lock is dropped once no caller holds or waits on it.
    """
    key = path.resolve()
    with _locks_guard:
        lock, users = _locks.get(key, (threading.Lock(), 0))
        _locks[key] = (lock, users + 1)
    try:
        with lock:
            yield
    finally:
        with _locks_guard:
            lock, users = _locks[key]
            if users == 1:
                del _locks[key]
            else:
                _locks[key] = (lock, users - 1)


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


def _root(storage: StorageAdapter, operation: str) -> Path:
    if storage.root is None:
        raise RootNotFound(
            "storage adapter has not been initialized",
            operation=operation,
            hint="create it with create_storage(root)",
        )
    require_knowledge_dir(storage.root, operation=operation)
    return storage.root


def _relative(root: Path, path: Path) -> str:
    return path.resolve().relative_to(knowledge_dir(root).resolve()).as_posix()


def _unique(values: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        value = str(value).strip()
        if value:
            seen.setdefault(value, None)
    return list(seen)


def _write_document(
    storage: StorageAdapter, path: Path, metadata: dict[str, Any], body: str
) -> None:
    atomic_write_text(path, serialize(metadata, body))
    storage.index_document(path)


def _validate_date(value: str | None, operation: str) -> str:
    if value is None:
        return datetime.now(timezone.utc).date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not DATE_PATTERN.match(value):
        raise ValidationFailed(
            f"date must be YYYY-MM-DD, got {value!r}",
            operation=operation,
        )
    try:
        date.fromisoformat(value)
    except ValueError:
        raise ValidationFailed(f"{value!r} is not a calendar date", operation=operation) from None
    return value


def _validate_author(author: str, operation: str) -> str:
    if not author or not AUTHOR_PATTERN.match(author):
        raise ValidationFailed(
            f"invalid author {author!r}",
            operation=operation,
            hint="use letters, digits, '.', '_' or '-'",
        )
    return author


def _validate_plan_id(plan_id: str, operation: str) -> str:
    if not plan_id or not PLAN_ID_PATTERN.match(plan_id):
        raise ValidationFailed(
            f"invalid plan id {plan_id!r}",
            operation=operation,
            hint="plan ids look like PLAN_api_redesign",
        )
    return plan_id


# Workspace


def init_workspace(root: Path) -> dict[str, Any]:
    """
    Create the .knowsys layout under an existing directory.

    Existing folders and documents are left untouched.

    Raises:
        RootNotFound: If root is not a directory
    """
    if not root.is_dir():
        raise RootNotFound(
            f"workspace root {root} is not a directory",
            operation="init_workspace",
        )
    base = knowledge_dir(root)
    created: list[str] = []
    for folder in (None, SESSIONS_DIR, POINTERS_DIR, LEARNED_DIR):
        directory = base / folder if folder else base
        if not directory.is_dir():
            directory.mkdir(parents=True)
            created.append(directory.relative_to(root).as_posix())
    logger.info("Initialized workspace at %s (%d folder(s) created)", root, len(created))
    return {"root": str(root), "knowledge_dir": KNOWLEDGE_DIR, "created": created}


# Sessions


def _session_body(title: str, session_date: str, goal: str | None) -> str:
    return (
        f"# Session: {title} ({session_date})\n"
        "\n"
        "## Goal\n"
        f"{goal or ''}\n"
        "\n"
        "## Changes\n"
        "\n"
        "## Notes for Next Session\n"
    )


def create_session(
    storage: StorageAdapter,
    date: str | None = None,
    title: str = "Work Session",
    topics: Iterable[str] = (),
    plan: str | None = None,
    phases: Iterable[str] = (),
    duration_minutes: int | None = None,
    author: str | None = None,
    suffix: str | None = None,
    force: bool = False,
    goal: str | None = None,
) -> dict[str, Any]:
    """
    Create the session document for a date.

    Args:
        storage: Initialized storage adapter
        date: Session date (YYYY-MM-DD), UTC today when omitted
        title: Session title
        topics: Topics, de-duplicated in order
        plan: Optional id of the plan this session works on
        phases: Phases, de-duplicated in order
        duration_minutes: Optional non-negative duration
        author: Optional author name
        suffix: Writes <date>-<suffix>.md instead of <date>-session.md
        force: Overwrite an existing session for the same file
        goal: Optional text for the Goal section

    Returns:
        Dict with path, created and metadata

    Raises:
        ValidationFailed: For a bad date, suffix, plan id or duration
        DuplicateSession: If the session file exists and force is not set
    """
    operation = "create_session"
    session_date = _validate_date(date, operation)
    if suffix is not None and not SUFFIX_PATTERN.match(suffix):
        raise ValidationFailed(
            f"invalid session suffix {suffix!r}",
            operation=operation,
            hint="use letters, digits, '_' or '-'",
        )
    if plan is not None:
        _validate_plan_id(plan, operation)
    if duration_minutes is not None and (
        isinstance(duration_minutes, bool)
        or not isinstance(duration_minutes, int)
        or duration_minutes < 0
    ):
        raise ValidationFailed(
            f"duration_minutes must be a non-negative integer, got {duration_minutes!r}",
            operation=operation,
        )
    if author is not None:
        _validate_author(author, operation)

    root = _root(storage, operation)
    path = session_path(root, session_date, suffix)
    session = Session(
        date=session_date,
        title=title.strip() or "Work Session",
        topics=_unique(topics),
        plan=plan,
        phases=_unique(phases),
        duration_minutes=duration_minutes,
        status=SessionStatus.IN_PROGRESS,
        author=author,
    )

    with document_lock(path):
        existed = path.exists()
        if existed and not force:
            raise DuplicateSession(
                f"a session already exists for {session_date} at {_relative(root, path)}",
                operation=operation,
                hint="pass a suffix for a separate session or force to overwrite",
            )
        metadata = session.to_metadata()
        _write_document(storage, path, metadata, _session_body(session.title, session_date, goal))

    relative = _relative(root, path)
    logger.info("%s session %s", "Overwrote" if existed else "Created", relative)
    return {"path": relative, "created": not existed, "metadata": metadata}


def _resolve_session(root: Path, path: str | None, session_date: str) -> Path:
    if path is None:
        candidate = session_path(root, session_date)
    else:
        raw = Path(path)
        candidate = raw if raw.is_absolute() else knowledge_dir(root) / raw
        try:
            relative = _relative(root, candidate)
        except ValueError:
            raise ValidationFailed(
                f"session path {path!r} is outside {KNOWLEDGE_DIR}/",
                operation="update_session",
            ) from None
        if classify(relative) != "session":
            raise ValidationFailed(
                f"{path!r} is not a session document",
                operation="update_session",
                hint=f"sessions live in {KNOWLEDGE_DIR}/{SESSIONS_DIR}/YYYY-MM-DD-*.md",
            )
    if not candidate.is_file():
        raise SessionNotFound(
            f"no session file at {candidate}",
            operation="update_session",
            hint="create it with create_session first",
        )
    return candidate


def _find_unique(body: str, pattern: str, operation: str) -> int:
    """Index of the single occurrence of pattern in body."""
    index = body.find(pattern)
    if index == -1:
        raise PatternNotFound(f"pattern not found: {pattern!r}", operation=operation)
    if body.find(pattern, index + 1) != -1:
        lines = [str(n) for n, line in enumerate(body.split("\n"), 1) if pattern in line]
        raise ValidationFailed(
            f"pattern {pattern!r} found {len(lines)} times at lines: {', '.join(lines)}",
            operation=operation,
            hint="use a more specific pattern",
        )
    return index


def _edit_body(
    body: str,
    content: str,
    append_section: str | None,
    prepend_section: str | None,
    insert_after: str | None,
    insert_before: str | None,
) -> tuple[str, str | None]:
    """Apply one body edit, returning the new body and a change description."""
    operation = "update_session"
    if prepend_section:
        return f"\n{prepend_section}\n{content}\n{body}", f"Prepended section: {prepend_section}"

    if insert_after:
        after = _find_unique(body, insert_after, operation) + len(insert_after)
        # Insert at the end of the section holding the pattern
        next_section = NEXT_SECTION_PATTERN.search(body, after)
        position = next_section.start() if next_section else len(body)
        heading = append_section or UPDATE_HEADING
        addition = f"\n\n{heading}\n{content}"
        edited = body[:position] + addition + body[position:]
        return edited, f"Inserted content after: {insert_after}"

    if insert_before:
        position = _find_unique(body, insert_before, operation)
        heading = append_section or UPDATE_HEADING
        addition = f"{heading}\n{content}\n\n"
        edited = body[:position] + addition + body[position:]
        return edited, f"Inserted content before: {insert_before}"

    if append_section:
        edited = f"{body.rstrip()}\n\n{append_section}\n{content}\n"
        return edited, f"Appended section: {append_section}"

    return body, None


def update_session(
    storage: StorageAdapter,
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
) -> dict[str, Any]:
    """
    Update a session's metadata and body.

    The session is found by path (relative to .knowsys/ or absolute) or by
    date, which selects <date>-session.md. Adding a topic, file or phase
    that is already present changes nothing.

    Returns:
        Dict with updated, path and changes

    Raises:
        InvalidStatus: If set_status is not a session status
        ValidationFailed: If content has no section option, or an insertion
            pattern matches more than once
        SessionNotFound: If the session document does not exist
        PatternNotFound: If an insertion pattern does not occur in the body
    """
    operation = "update_session"
    status = parse_session_status(set_status, operation) if set_status is not None else None
    has_section = any((append_section, prepend_section, insert_after, insert_before))
    if content and not has_section:
        raise ValidationFailed(
            "content requires a section option",
            operation=operation,
            hint="add append_section, prepend_section, insert_after or insert_before",
        )
    session_date = _validate_date(date, operation)

    root = _root(storage, operation)
    file_path = _resolve_session(root, path, session_date)

    with document_lock(file_path):
        doc = parse(file_path.read_text(encoding="utf-8"), file_path.name)
        session = Session.from_document(doc, file_path.name)
        changes: list[str] = []

        for value, values, label in (
            (add_topic, session.topics, "topic"),
            (add_file, session.files, "file"),
            (add_phase, session.phases, "phase"),
        ):
            if value and value not in values:
                values.append(value)
                changes.append(f"Added {label}: {value}")

        if status is not None and status != session.status:
            changes.append(f"Status changed: {session.status.value} -> {status.value}")
            session.status = status

        body, change = _edit_body(
            session.body,
            content or "",
            append_section,
            prepend_section,
            insert_after,
            insert_before,
        )
        if change:
            changes.append(change)
            session.body = body

        relative = _relative(root, file_path)
        if not changes:
            logger.debug("No changes for session %s", relative)
            return {"updated": False, "path": relative, "changes": []}

        _write_document(storage, file_path, session.to_metadata(), session.body)

    logger.info("Updated session %s: %s", relative, "; ".join(changes))
    return {"updated": True, "path": relative, "changes": changes}


# Plans and pointers


def _plan_body(title: str, goal: str | None) -> str:
    return f"# {title}\n\n## Goal\n{goal or ''}\n\n{PROGRESS_HEADING}\n"


def _append_progress_line(body: str, line: str) -> str:
    """Append a line to the Progress section, creating it at the end if missing."""
    heading = re.search(rf"^{re.escape(PROGRESS_HEADING)}[ \t]*$", body, re.MULTILINE)
    if heading is None:
        return f"{body.rstrip()}\n\n{PROGRESS_HEADING}\n\n{line}\n"
    next_section = NEXT_SECTION_PATTERN.search(body, heading.end())
    end = next_section.start() if next_section else len(body)
    section = body[heading.end() : end].rstrip()
    separator = "\n" if section.strip() else "\n\n"
    rest = body[end:]
    return f"{body[: heading.end()]}{section}{separator}{line}\n{rest}"


def _pointer_body(pointer: PlanPointer, plan: Plan) -> str:
    if pointer.plan:
        working_on = f"[{plan.title}](../{plan.id}.md)"
    else:
        working_on = "None"
    lines = [
        f"# Active Plan: {pointer.author}",
        "",
        f"**Currently Working On:** {working_on}",
        f"**Status:** {pointer.status}",
        f"**Last Updated:** {pointer.last_updated}",
    ]
    if not pointer.plan:
        lines.extend(["", f"Previously: **{plan.title}** ({plan.status.value})"])
    return "\n".join(lines) + "\n"


def write_pointer(root: Path, plan: Plan, active: bool, timestamp: str) -> Path:
    """
    Point the plan author's pointer at plan, or mark the author idle.

    Unknown front matter keys already in the pointer are kept.
    """
    path = pointer_path(root, plan.author)
    with document_lock(path):
        extra: dict[str, Any] = {}
        if path.is_file():
            existing = PlanPointer.from_document(
                parse(path.read_text(encoding="utf-8"), path.name), path.name
            )
            extra = existing.extra
        pointer = PlanPointer(
            author=plan.author,
            plan=plan.id if active else "",
            status=plan.status.value,
            last_updated=timestamp,
            extra=extra,
        )
        atomic_write_text(path, serialize(pointer.to_metadata(), _pointer_body(pointer, plan)))
    logger.debug("Wrote pointer %s -> %s", path.name, pointer.plan or "idle")
    return path


def _current_pointer_plan(root: Path, author: str) -> str | None:
    path = pointer_path(root, author)
    if not path.is_file():
        return None
    document = parse(path.read_text(encoding="utf-8"), path.name)
    pointer = PlanPointer.from_document(document, path.name)
    return pointer.plan


def create_plan(
    storage: StorageAdapter,
    title: str,
    author: str,
    topics: Iterable[str] = (),
    goal: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Create a PLANNED plan and point its author's pointer at it.

    The team index is synced afterwards.

    Returns:
        Dict with plan_id, path, pointer_path and created

    Raises:
        ValidationFailed: If the title is shorter than 3 characters or the
            author is not a valid file name part
        DuplicatePlan: If a plan with the same id already exists
    """
    operation = "create_plan"
    title = (title or "").strip()
    if len(title) < MIN_TITLE_LENGTH:
        raise ValidationFailed(
            f"plan title must be at least {MIN_TITLE_LENGTH} characters, got {title!r}",
            operation=operation,
        )
    plan_id = plan_id_for_title(title)
    if plan_id == "PLAN_":
        raise ValidationFailed(
            f"plan title {title!r} has no letters or digits",
            operation=operation,
        )
    _validate_author(author, operation)

    root = _root(storage, operation)
    path = plan_path(root, plan_id)
    timestamp = utc_timestamp(_now(now))
    plan = Plan(
        id=plan_id,
        title=title,
        status=PlanStatus.PLANNED,
        author=author,
        topics=_unique(topics),
        created=timestamp,
        updated=timestamp,
    )

    with document_lock(path):
        if path.exists():
            raise DuplicatePlan(
                f"plan {plan_id} already exists",
                operation=operation,
                hint="choose a different title or update the existing plan",
            )
        _write_document(storage, path, plan.to_metadata(), _plan_body(title, goal))

    pointer = write_pointer(root, plan, active=True, timestamp=timestamp)
    sync_plan_index(root)
    logger.info("Created plan %s for %s", plan_id, author)
    return {
        "plan_id": plan_id,
        "path": _relative(root, path),
        "pointer_path": _relative(root, pointer),
        "created": timestamp,
    }


def update_plan(
    storage: StorageAdapter,
    plan_id: str,
    set_status: str | None = None,
    append_progress: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Move a plan through its status machine and/or log progress.

    Entering ACTIVE for the first time stamps ``started``; entering COMPLETE
    or CANCELLED stamps ``completed``. Setting the current status again is a
    no-op. Progress notes are appended with a UTC timestamp.

    Returns:
        Dict with plan_id, path, updated, changes and the plan record

    Raises:
        InvalidStatus: If set_status is not a plan status
        ValidationFailed: If the plan id or progress note is invalid
        PlanNotFound: If no plan document exists for plan_id
        InvalidStatusTransition: If the status machine forbids the move
    """
    operation = "update_plan"
    _validate_plan_id(plan_id, operation)
    target = parse_plan_status(set_status, operation) if set_status is not None else None
    if append_progress is not None and not append_progress.strip():
        raise ValidationFailed("progress note cannot be empty", operation=operation)

    root = _root(storage, operation)
    path = plan_path(root, plan_id)
    timestamp = utc_timestamp(_now(now))

    with document_lock(path):
        if not path.is_file():
            raise PlanNotFound(
                f"plan {plan_id} not found",
                operation=operation,
                hint="list plans with query_plans",
            )
        plan = Plan.from_document(parse(path.read_text(encoding="utf-8"), path.name), path.name)
        changes: list[str] = []
        status_changed = False

        if target is not None and target != plan.status:
            if target not in PLAN_TRANSITIONS[plan.status]:
                allowed = ", ".join(sorted(s.value for s in PLAN_TRANSITIONS[plan.status]))
                raise InvalidStatusTransition(
                    f"cannot move {plan_id} from {plan.status.value} to {target.value}",
                    operation=operation,
                    hint=f"allowed: {allowed}" if allowed else f"{plan.status.value} is final",
                )
            changes.append(f"Status: {plan.status.value} -> {target.value}")
            plan.status = target
            status_changed = True
            if target == PlanStatus.ACTIVE and plan.started is None:
                plan.started = timestamp
            if target in TERMINAL_PLAN_STATUSES:
                plan.completed = timestamp

        if append_progress is not None:
            note = append_progress.strip()
            plan.progress.append(ProgressEntry(at=timestamp, note=note))
            plan.body = _append_progress_line(plan.body, f"- **{timestamp}:** {note}")
            changes.append("Added progress note")

        if changes:
            plan.updated = timestamp
            _write_document(storage, path, plan.to_metadata(), plan.body)

    if changes:
        pointed_at = _current_pointer_plan(root, plan.author)
        if status_changed and plan.status not in TERMINAL_PLAN_STATUSES:
            write_pointer(root, plan, active=True, timestamp=timestamp)
        elif pointed_at in (None, plan.id):
            write_pointer(
                root,
                plan,
                active=plan.status not in TERMINAL_PLAN_STATUSES,
                timestamp=timestamp,
            )
        sync_plan_index(root)
        logger.info("Updated plan %s: %s", plan_id, "; ".join(changes))

    return {
        "plan_id": plan_id,
        "path": _relative(root, path),
        "updated": bool(changes),
        "changes": changes,
        "plan": plan.to_dict(),
    }
