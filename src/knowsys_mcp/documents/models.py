"""Data models for plans, sessions, plan pointers and learned notes."""

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from knowsys_mcp.documents.parser import ParsedDocument, first_heading
from knowsys_mcp.errors import InvalidStatus, MalformedDocument


class SessionStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"
    ABANDONED = "abandoned"


class PlanStatus(str, Enum):
    PLANNED = "PLANNED"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"


TERMINAL_PLAN_STATUSES = frozenset({PlanStatus.COMPLETE, PlanStatus.CANCELLED})

# Allowed plan status moves; terminal statuses have no exits
PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.PLANNED: frozenset({PlanStatus.ACTIVE, PlanStatus.CANCELLED}),
    PlanStatus.ACTIVE: frozenset(
        {PlanStatus.PAUSED, PlanStatus.COMPLETE, PlanStatus.CANCELLED}
    ),
    PlanStatus.PAUSED: frozenset({PlanStatus.ACTIVE, PlanStatus.CANCELLED}),
    PlanStatus.COMPLETE: frozenset(),
    PlanStatus.CANCELLED: frozenset(),
}

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
PLAN_ID_PATTERN = re.compile(r"^PLAN_[A-Za-z0-9_-]+$")
# Authors name files (plans/active-<author>.md)
AUTHOR_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def parse_session_status(value: str, operation: str = "update_session") -> SessionStatus:
    """Convert a raw value into a SessionStatus or raise InvalidStatus."""
    try:
        return SessionStatus(value)
    except ValueError:
        choices = ", ".join(s.value for s in SessionStatus)
        raise InvalidStatus(
            f"invalid session status {value!r}",
            operation=operation,
            hint=f"choose one of: {choices}",
        ) from None


def parse_plan_status(value: str, operation: str = "update_plan") -> PlanStatus:
    """Convert a raw value into a PlanStatus or raise InvalidStatus."""
    try:
        return PlanStatus(value)
    except ValueError:
        choices = ", ".join(s.value for s in PlanStatus)
        raise InvalidStatus(
            f"invalid plan status {value!r}",
            operation=operation,
            hint=f"choose one of: {choices}",
        ) from None


def utc_timestamp(moment: datetime | None = None) -> str:
    """Format a moment as an ISO-8601 UTC string with seconds precision."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace(
        "+00:00", "Z"
    )


def slugify_title(title: str) -> str:
    """Normalize a title into a plan slug ("Bug Fix: API" -> "bug_fix_api")."""
    slug = re.sub(r"[^a-z0-9]+", "_", title.lower())
    return slug.strip("_")


def plan_id_for_title(title: str) -> str:
    """Build the full plan id for a title ("API Redesign" -> "PLAN_api_redesign")."""
    return f"PLAN_{slugify_title(title)}"


def _text(value: Any) -> str | None:
    # YAML turns bare dates and timestamps into date/datetime objects
    if value is None:
        return None
    if isinstance(value, datetime):
        return utc_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _string_list(value: Any) -> list[str]:
    if not value:
        return []
    return [str(item) for item in value]


@dataclass
class ProgressEntry:
    """A timestamped progress note on a plan."""

    at: str
    note: str

    def to_dict(self) -> dict[str, str]:
        return {"at": self.at, "note": self.note}


@dataclass
class Session:
    """A dated work-log entry."""

    KNOWN_FIELDS = (
        "date",
        "title",
        "topics",
        "plan",
        "phases",
        "duration_minutes",
        "status",
        "files",
        "author",
    )

    date: str
    title: str = ""
    topics: list[str] = field(default_factory=list)
    plan: str | None = None
    phases: list[str] = field(default_factory=list)
    duration_minutes: int | None = None
    status: SessionStatus = SessionStatus.IN_PROGRESS
    files: list[str] = field(default_factory=list)
    author: str | None = None
    body: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: ParsedDocument, filename: str) -> "Session":
        """
        Build a Session from a parsed document.

        The date falls back to the ``YYYY-MM-DD`` prefix of the filename.

        Raises:
            MalformedDocument: If no date can be determined or a field has
                the wrong shape.
        """
        meta = doc.metadata
        session_date = _text(meta.get("date")) or filename[:10]
        if not DATE_PATTERN.match(session_date):
            raise MalformedDocument(
                f"session {filename} has no valid date (got {session_date!r})",
                operation="parse",
                hint="set 'date: YYYY-MM-DD' in the front matter",
            )

        raw_status = meta.get("status") or SessionStatus.IN_PROGRESS.value
        try:
            status = SessionStatus(str(raw_status))
        except ValueError:
            raise MalformedDocument(
                f"session {filename} has unknown status {raw_status!r}",
                operation="parse",
            ) from None

        duration = meta.get("duration_minutes")
        if duration is not None and not isinstance(duration, int):
            raise MalformedDocument(
                f"session {filename} duration_minutes must be an integer",
                operation="parse",
            )

        title = _text(meta.get("title")) or first_heading(doc.body) or "Session"
        return cls(
            date=session_date,
            title=title,
            topics=_string_list(meta.get("topics")),
            plan=_text(meta.get("plan")) or None,
            phases=_string_list(meta.get("phases")),
            duration_minutes=duration,
            status=status,
            files=_string_list(meta.get("files")),
            author=_text(meta.get("author")),
            body=doc.body,
            extra={k: v for k, v in meta.items() if k not in cls.KNOWN_FIELDS},
        )

    def to_metadata(self) -> dict[str, Any]:
        """Render the front matter mapping, known fields first, extras after."""
        meta: dict[str, Any] = {"date": self.date, "title": self.title}
        meta["topics"] = list(self.topics)
        if self.plan:
            meta["plan"] = self.plan
        meta["phases"] = list(self.phases)
        if self.duration_minutes is not None:
            meta["duration_minutes"] = self.duration_minutes
        meta["status"] = self.status.value
        meta["files"] = list(self.files)
        if self.author:
            meta["author"] = self.author
        meta.update(self.extra)
        return meta


@dataclass
class Plan:
    """A longer-lived unit of work."""

    KNOWN_FIELDS = (
        "id",
        "title",
        "status",
        "author",
        "topics",
        "created",
        "updated",
        "started",
        "completed",
        "progress",
    )

    id: str
    title: str
    status: PlanStatus = PlanStatus.PLANNED
    author: str = "unknown"
    topics: list[str] = field(default_factory=list)
    created: str | None = None
    updated: str | None = None
    started: str | None = None
    completed: str | None = None
    progress: list[ProgressEntry] = field(default_factory=list)
    body: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: ParsedDocument, filename: str) -> "Plan":
        """
        Build a Plan from a parsed document.

        The id falls back to the filename stem and the title to the first
        heading of the body.
        """
        meta = doc.metadata
        stem = filename[:-3] if filename.endswith(".md") else filename
        plan_id = _text(meta.get("id")) or stem
        title = _text(meta.get("title")) or first_heading(doc.body) or plan_id

        raw_status = meta.get("status") or PlanStatus.PLANNED.value
        try:
            status = PlanStatus(str(raw_status))
        except ValueError:
            raise MalformedDocument(
                f"plan {filename} has unknown status {raw_status!r}",
                operation="parse",
            ) from None

        progress: list[ProgressEntry] = []
        for entry in meta.get("progress") or []:
            if not isinstance(entry, dict) or "note" not in entry:
                raise MalformedDocument(
                    f"plan {filename} has a progress entry without a note: {entry!r}",
                    operation="parse",
                )
            progress.append(ProgressEntry(at=_text(entry.get("at")) or "", note=str(entry["note"])))

        return cls(
            id=plan_id,
            title=title,
            status=status,
            author=_text(meta.get("author")) or "unknown",
            topics=_string_list(meta.get("topics")),
            created=_text(meta.get("created")),
            updated=_text(meta.get("updated")),
            started=_text(meta.get("started")),
            completed=_text(meta.get("completed")),
            progress=progress,
            body=doc.body,
            extra={k: v for k, v in meta.items() if k not in cls.KNOWN_FIELDS},
        )

    def to_metadata(self) -> dict[str, Any]:
        """Render the front matter mapping, known fields first, extras after."""
        meta: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "author": self.author,
            "topics": list(self.topics),
        }
        for key in ("created", "updated", "started", "completed"):
            value = getattr(self, key)
            if value is not None:
                meta[key] = value
        if self.progress:
            meta["progress"] = [entry.to_dict() for entry in self.progress]
        meta.update(self.extra)
        return meta

    def to_dict(self) -> dict[str, Any]:
        data = self.to_metadata()
        data["progress"] = [entry.to_dict() for entry in self.progress]
        return data


@dataclass
class PlanPointer:
    """Per-author pointer at the plan that author is working on."""

    author: str
    plan: str = ""
    status: str = ""
    last_updated: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: ParsedDocument, filename: str) -> "PlanPointer":
        meta = doc.metadata
        author = _text(meta.get("author"))
        if not author:
            # active-<author>.md
            author = filename[len("active-") : -len(".md")]
        return cls(
            author=author,
            plan=_text(meta.get("plan")) or "",
            status=_text(meta.get("status")) or "",
            last_updated=_text(meta.get("last_updated")) or "",
            extra={
                k: v
                for k, v in meta.items()
                if k not in ("author", "plan", "status", "last_updated")
            },
        )

    def to_metadata(self) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "author": self.author,
            "plan": self.plan,
            "status": self.status,
            "last_updated": self.last_updated,
        }
        meta.update(self.extra)
        return meta


@dataclass
class LearnedNote:
    """A free-form learned pattern note."""

    name: str
    title: str
    topics: list[str] = field(default_factory=list)
    created: str | None = None
    body: str = ""

    @classmethod
    def from_document(cls, doc: ParsedDocument, filename: str) -> "LearnedNote":
        meta = doc.metadata
        name = filename[:-3] if filename.endswith(".md") else filename
        return cls(
            name=name,
            title=_text(meta.get("title")) or first_heading(doc.body) or name,
            topics=_string_list(meta.get("topics")),
            created=_text(meta.get("created")),
            body=doc.body,
        )


# Index records: the subset of fields kept in the derived index


@dataclass
class IndexedPlan:
    id: str
    title: str
    status: str
    author: str
    topics: list[str]
    created: str | None
    updated: str | None
    started: str | None
    completed: str | None
    file: str

    @classmethod
    def from_plan(cls, plan: Plan, file: str) -> "IndexedPlan":
        return cls(
            id=plan.id,
            title=plan.title,
            status=plan.status.value,
            author=plan.author,
            topics=list(plan.topics),
            created=plan.created,
            updated=plan.updated,
            started=plan.started,
            completed=plan.completed,
            file=file,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class IndexedSession:
    date: str
    title: str
    topics: list[str]
    plan: str | None
    phases: list[str]
    duration_minutes: int | None
    status: str
    file: str

    @classmethod
    def from_session(cls, session: Session, file: str) -> "IndexedSession":
        return cls(
            date=session.date,
            title=session.title,
            topics=list(session.topics),
            plan=session.plan,
            phases=list(session.phases),
            duration_minutes=session.duration_minutes,
            status=session.status.value,
            file=file,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class IndexedLearned:
    name: str
    title: str
    topics: list[str]
    created: str | None
    file: str

    @classmethod
    def from_note(cls, note: LearnedNote, file: str) -> "IndexedLearned":
        return cls(
            name=note.name,
            title=note.title,
            topics=list(note.topics),
            created=note.created,
            file=file,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SearchMatch:
    """A full-text search hit."""

    type: str  # plan, session, learned
    file: str
    context: str
    relevance: int
    recency: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "file": self.file,
            "context": self.context,
            "relevance": self.relevance,
        }
