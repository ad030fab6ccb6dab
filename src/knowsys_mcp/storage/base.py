"""Storage adapter contract shared by every backend.

The contract validates input before touching storage, then hands the concrete
adapter already-normalized filters. Adapters override the underscore methods;
an adapter that leaves one out fails with UnsupportedOperation instead of
returning an empty result.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from knowsys_mcp.documents.models import (
    IndexedLearned,
    IndexedPlan,
    IndexedSession,
    LearnedNote,
    Plan,
    SearchMatch,
    Session,
    parse_plan_status,
)
from knowsys_mcp.documents.parser import parse
from knowsys_mcp.documents.walker import FileInfo, walk_workspace
from knowsys_mcp.errors import (
    EmptyQuery,
    InvalidScope,
    MalformedDocument,
    RootNotFound,
    UnsupportedOperation,
    ValidationFailed,
)
from knowsys_mcp.storage.scoring import query_terms

logger = logging.getLogger(__name__)

SEARCH_SCOPES = ("all", "plans", "sessions", "learned")
SCOPE_TYPES = {
    "all": ("plan", "session", "learned"),
    "plans": ("plan",),
    "sessions": ("session",),
    "learned": ("learned",),
}
DEFAULT_SINCE_DAYS = 30


@dataclass
class PlanFilters:
    status: str | None = None
    author: str | None = None
    topic_contains: str | None = None


@dataclass
class SessionFilters:
    since_days: int | None = None
    topic_contains: str | None = None
    plan_id: str | None = None


@dataclass
class RebuildReport:
    """Counts per document kind plus per-file parse errors."""

    plans: int = 0
    sessions: int = 0
    learned: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.plans + self.sessions + self.learned

    def to_dict(self) -> dict[str, Any]:
        return {
            "plans": self.plans,
            "sessions": self.sessions,
            "learned": self.learned,
            "total": self.total,
            "errors": list(self.errors),
        }


@dataclass
class IngestedDocument:
    """A parsed document reduced to what the index needs."""

    kind: str
    file: str
    record: IndexedPlan | IndexedSession | IndexedLearned
    title: str
    body: str
    recency: str


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def ingest(file_info: FileInfo) -> IngestedDocument:
    """
    Parse one document into its index form.

    Raises:
        MalformedDocument: If the file is not UTF-8 or cannot be parsed.
    """
    try:
        content = file_info.path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise MalformedDocument(
            f"{file_info.relative_path} is not valid UTF-8: {e}",
            operation="parse",
        ) from e

    doc = parse(content, file_info.relative_path)
    file = file_info.relative_path
    if file_info.kind == "plan":
        plan = Plan.from_document(doc, file_info.filename)
        return IngestedDocument(
            kind="plan",
            file=file,
            record=IndexedPlan.from_plan(plan, file),
            title=plan.title,
            body=plan.body,
            recency=plan.updated or plan.created or "",
        )
    if file_info.kind == "session":
        session = Session.from_document(doc, file_info.filename)
        return IngestedDocument(
            kind="session",
            file=file,
            record=IndexedSession.from_session(session, file),
            title=session.title,
            body=session.body,
            recency=session.date,
        )
    note = LearnedNote.from_document(doc, file_info.filename)
    return IngestedDocument(
        kind="learned",
        file=file,
        record=IndexedLearned.from_note(note, file),
        title=note.title,
        body=note.body,
        recency=note.created or "",
    )


def collect_documents(root: Path) -> tuple[list[IngestedDocument], RebuildReport]:
    """
    Parse every document under root.

    Parse failures are logged and collected per file; they never stop the
    remaining documents from being indexed.
    """
    documents: list[IngestedDocument] = []
    report = RebuildReport()
    for file_info in walk_workspace(root):
        try:
            ingested = ingest(file_info)
        except MalformedDocument as e:
            logger.warning("Skipping malformed document %s: %s", file_info.relative_path, e)
            report.errors.append({"file": file_info.relative_path, "error": str(e)})
            continue
        documents.append(ingested)
        if ingested.kind == "plan":
            report.plans += 1
        elif ingested.kind == "session":
            report.sessions += 1
        else:
            report.learned += 1
    return documents, report


def newest_document_mtime(root: Path) -> float:
    """Modification time of the most recently changed document, 0.0 if none."""
    newest = 0.0
    for file_info in walk_workspace(root):
        try:
            newest = max(newest, file_info.path.stat().st_mtime)
        except FileNotFoundError:
            # Deleted between the walk and the stat
            continue
    return newest


def validate_plan_filters(filters: PlanFilters) -> None:
    if filters.status is not None:
        parse_plan_status(filters.status, operation="query_plans")


def validate_session_filters(filters: SessionFilters) -> None:
    days = filters.since_days
    if days is not None and (isinstance(days, bool) or not isinstance(days, int) or days < 0):
        raise ValidationFailed(
            f"since_days must be a non-negative integer, got {days!r}",
            operation="query_sessions",
        )


def validate_search(query: str, scope: str) -> list[str]:
    """
    Validate a search request and return its query words.

    Raises:
        EmptyQuery: If the query is empty, whitespace or has no words
        InvalidScope: If scope is not one of SEARCH_SCOPES
    """
    if not query or not query.strip():
        raise EmptyQuery(
            "search query cannot be empty",
            operation="search",
            hint="pass at least one word",
        )
    if scope not in SEARCH_SCOPES:
        raise InvalidScope(
            f"invalid scope {scope!r}",
            operation="search",
            hint=f"choose one of: {', '.join(SEARCH_SCOPES)}",
        )
    terms = query_terms(query)
    if not terms:
        raise EmptyQuery(
            f"search query {query!r} contains no searchable words",
            operation="search",
            hint="use letters or digits",
        )
    return terms


def session_cutoff(filters: SessionFilters, today: date | None = None) -> str:
    """Sessions dated strictly after the returned YYYY-MM-DD are in range."""
    days = DEFAULT_SINCE_DAYS if filters.since_days is None else filters.since_days
    today = today or utc_today()
    return (today - timedelta(days=days)).isoformat()


class StorageAdapter:
    """
    Base storage adapter.

    Documents under <root>/.knowsys are always the source of truth. An adapter
    holds a derived, disposable representation of them that can be rebuilt
    at any time.
    """

    name = "base"

    def __init__(self) -> None:
        self.root: Path | None = None

    def __enter__(self) -> "StorageAdapter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _unsupported(self, operation: str) -> UnsupportedOperation:
        return UnsupportedOperation(
            f"the {self.name} adapter does not implement {operation}",
            operation=operation,
            hint="configure a different adapter",
        )

    def init(self, root: Path) -> None:
        """Prepare the adapter against a workspace root."""
        raise self._unsupported("init")

    def query_plans(self, filters: PlanFilters | None = None) -> list[IndexedPlan]:
        """Plans matching filters, in document order."""
        filters = filters or PlanFilters()
        validate_plan_filters(filters)
        return self._query_plans(filters)

    def query_sessions(
        self,
        filters: SessionFilters | None = None,
        today: date | None = None,
    ) -> list[IndexedSession]:
        """Sessions matching filters, newest first. Default lookback is 30 days."""
        filters = filters or SessionFilters()
        validate_session_filters(filters)
        return self._query_sessions(filters, session_cutoff(filters, today))

    def search(self, query: str, scope: str = "all") -> list[SearchMatch]:
        """Full-text search, ranked by relevance."""
        terms = validate_search(query, scope)
        return self._search(terms, SCOPE_TYPES[scope])

    def rebuild_index(self) -> RebuildReport:
        """Recompute the derived index from the documents on disk."""
        raise self._unsupported("rebuild_index")

    def index_document(self, path: Path) -> None:
        """Refresh the index entry for one document after it was written."""
        raise self._unsupported("index_document")

    def remove_document(self, path: Path) -> None:
        """Drop the index entry for a document deleted from disk."""
        raise self._unsupported("remove_document")

    def close(self) -> None:
        """Release held resources."""
        raise self._unsupported("close")

    def _query_plans(self, filters: PlanFilters) -> list[IndexedPlan]:
        raise self._unsupported("query_plans")

    def _query_sessions(self, filters: SessionFilters, cutoff: str) -> list[IndexedSession]:
        raise self._unsupported("query_sessions")

    def _search(self, terms: list[str], types: tuple[str, ...]) -> list[SearchMatch]:
        raise self._unsupported("search")

    def _require_root(self, operation: str) -> Path:
        if self.root is None:
            raise RootNotFound(
                f"{self.name} adapter used before init()",
                operation=operation,
                hint="call init(root) first",
            )
        return self.root
