"""Derived-index adapter backed by a single JSON cache file."""

import json
import logging
import threading
from pathlib import Path
from typing import Any

from knowsys_mcp.documents.models import (
    IndexedLearned,
    IndexedPlan,
    IndexedSession,
    SearchMatch,
)
from knowsys_mcp.documents.walker import (
    INDEX_FILE,
    atomic_write_text,
    describe_file,
    knowledge_dir,
    require_knowledge_dir,
)
from knowsys_mcp.errors import MalformedDocument
from knowsys_mcp.storage.base import (
    IngestedDocument,
    PlanFilters,
    RebuildReport,
    SessionFilters,
    StorageAdapter,
    collect_documents,
    ingest,
    newest_document_mtime,
)
from knowsys_mcp.storage.scoring import rank, score_document, token_counts

logger = logging.getLogger(__name__)

INDEX_VERSION = 1

# Index section per document kind
SECTIONS = {"plan": "plans", "session": "sessions", "learned": "learned"}
RECORD_TYPES = {"plan": IndexedPlan, "session": IndexedSession, "learned": IndexedLearned}


def _entry(doc: IngestedDocument) -> dict[str, Any]:
    return {
        "file": doc.file,
        "record": doc.record.to_dict(),
        "title": doc.title,
        "body": doc.body,
        "recency": doc.recency,
        "tokens": {
            "title": token_counts(doc.title),
            "body": token_counts(doc.body),
        },
    }


def _empty_index() -> dict[str, Any]:
    return {"version": INDEX_VERSION, "plans": [], "sessions": [], "learned": [], "errors": []}


def _topic_match(topics: list[str], needle: str) -> bool:
    needle = needle.lower()
    return any(needle in topic.lower() for topic in topics)


class JsonStorage(StorageAdapter):
    """
    Storage adapter whose queryable state is <root>/.knowsys/context-index.json.

    The cache is loaded once on init and every query runs against the
    in-memory copy. A cache older than the newest document is stale and is
    rebuilt instead of loaded. Writers hold a lock and swap in new section lists, so a
    concurrent query sees either the old or the new entries. The cache is
    written through a temporary file and a rename so a crash never leaves a
    truncated cache behind.
    """

    name = "json"

    def __init__(self) -> None:
        super().__init__()
        self._index: dict[str, Any] = _empty_index()
        self._index_path: Path | None = None
        self._lock = threading.RLock()

    def init(self, root: Path) -> None:
        """
        Load the cache if it is present, valid and fresh, otherwise rebuild it.

        Raises:
            RootNotFound: If root has no .knowsys directory
        """
        base = require_knowledge_dir(root)
        self.root = root
        self._index_path = base / INDEX_FILE

        loaded = self._load()
        if loaded is None:
            logger.info("No usable index at %s, rebuilding", self._index_path)
            self.rebuild_index()
        elif self._is_stale(root):
            logger.info("Index at %s is older than its documents, rebuilding", self._index_path)
            self.rebuild_index()
        else:
            self._index = loaded
            logger.debug("Loaded index from %s", self._index_path)

    def _cache_path(self, operation: str) -> Path:
        if self._index_path is None:
            raise self._unsupported(f"{operation} after close()")
        return self._index_path

    def _is_stale(self, root: Path) -> bool:
        try:
            indexed_at = self._cache_path("init").stat().st_mtime
        except FileNotFoundError:
            return True
        return newest_document_mtime(root) > indexed_at

    def _load(self) -> dict[str, Any] | None:
        index_path = self._cache_path("init")
        if not index_path.exists():
            return None
        try:
            data = json.loads(index_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable index %s: %s", self._index_path, e)
            return None

        if not isinstance(data, dict) or data.get("version") != INDEX_VERSION:
            logger.warning("Ignoring index with unsupported version at %s", self._index_path)
            return None
        try:
            for kind, section in SECTIONS.items():
                for entry in data[section]:
                    RECORD_TYPES[kind](**entry["record"])
                    if not isinstance(entry["tokens"]["body"], dict):
                        raise TypeError(f"bad token map for {entry['file']}")
            if not isinstance(data["errors"], list):
                raise TypeError("errors must be a list")
        except (KeyError, TypeError) as e:
            logger.warning("Ignoring index with unexpected shape at %s: %s", self._index_path, e)
            return None
        return data

    def _save(self, index: dict[str, Any], operation: str) -> None:
        index_path = self._cache_path(operation)
        payload = json.dumps(index, indent=2, sort_keys=True, ensure_ascii=False)
        atomic_write_text(index_path, payload + "\n")

    def rebuild_index(self) -> RebuildReport:
        """Walk the documents, rebuild the whole index and replace the cache."""
        root = self._require_root("rebuild_index")
        self._cache_path("rebuild_index")
        logger.info("Rebuilding JSON index for %s", root)

        with self._lock:
            documents, report = collect_documents(root)
            index = _empty_index()
            for doc in documents:
                index[SECTIONS[doc.kind]].append(_entry(doc))
            index["errors"] = sorted(report.errors, key=lambda e: e["file"])

            self._save(index, "rebuild_index")
            self._index = index
        logger.info(
            "Index rebuilt: %d plans, %d sessions, %d learned, %d errors",
            report.plans,
            report.sessions,
            report.learned,
            len(report.errors),
        )
        return report

    def _relative(self, path: Path) -> str:
        root = self._require_root("index_document")
        return path.resolve().relative_to(knowledge_dir(root).resolve()).as_posix()

    def _drop(self, relative_path: str) -> bool:
        dropped = False
        for section in SECTIONS.values():
            entries = self._index[section]
            kept = [e for e in entries if e["file"] != relative_path]
            if len(kept) != len(entries):
                self._index[section] = kept
                dropped = True
        errors = self._index["errors"]
        self._index["errors"] = [e for e in errors if e["file"] != relative_path]
        return dropped or len(errors) != len(self._index["errors"])

    def index_document(self, path: Path) -> None:
        """
        Re-read one document and update its entry.

        Raises:
            MalformedDocument: If the document no longer parses. Its stale
                entry is dropped and the error recorded before raising.
        """
        root = self._require_root("index_document")
        self._cache_path("index_document")
        if not path.exists():
            self.remove_document(path)
            return

        file_info = describe_file(path.resolve(), knowledge_dir(root).resolve())
        if file_info is None:
            logger.debug("Not an indexable document: %s", path)
            return

        with self._lock:
            self._drop(file_info.relative_path)
            try:
                doc = ingest(file_info)
            except MalformedDocument as e:
                errors = self._index["errors"] + [
                    {"file": file_info.relative_path, "error": str(e)}
                ]
                self._index["errors"] = sorted(errors, key=lambda entry: entry["file"])
                self._save(self._index, "index_document")
                raise

            key = SECTIONS[doc.kind]
            entries = self._index[key] + [_entry(doc)]
            self._index[key] = sorted(entries, key=lambda entry: entry["file"])
            self._save(self._index, "index_document")
        logger.debug("Indexed %s", doc.file)

    def remove_document(self, path: Path) -> None:
        """Drop the entry for a document that no longer exists."""
        relative_path = self._relative(path)
        self._cache_path("remove_document")
        with self._lock:
            if self._drop(relative_path):
                self._save(self._index, "remove_document")

    def close(self) -> None:
        """Detach from the cache file. Later writes raise UnsupportedOperation."""
        self._index_path = None

    # Queries

    def _records(self, kind: str) -> list[Any]:
        record_type = RECORD_TYPES[kind]
        return [record_type(**entry["record"]) for entry in self._index[SECTIONS[kind]]]

    def _query_plans(self, filters: PlanFilters) -> list[IndexedPlan]:
        plans: list[IndexedPlan] = self._records("plan")
        if filters.status:
            plans = [p for p in plans if p.status == filters.status]
        if filters.author:
            plans = [p for p in plans if p.author == filters.author]
        if filters.topic_contains:
            plans = [p for p in plans if _topic_match(p.topics, filters.topic_contains)]
        return plans

    def _query_sessions(self, filters: SessionFilters, cutoff: str) -> list[IndexedSession]:
        sessions: list[IndexedSession] = [s for s in self._records("session") if s.date > cutoff]
        if filters.topic_contains:
            sessions = [s for s in sessions if _topic_match(s.topics, filters.topic_contains)]
        if filters.plan_id:
            sessions = [s for s in sessions if s.plan == filters.plan_id]
        sessions.sort(key=lambda s: s.file)
        sessions.sort(key=lambda s: s.date, reverse=True)
        return sessions

    def _search(self, terms: list[str], types: tuple[str, ...]) -> list[SearchMatch]:
        matches: list[SearchMatch] = []
        for kind in types:
            for entry in self._index[SECTIONS[kind]]:
                match = score_document(
                    terms,
                    kind,
                    entry["file"],
                    entry["title"],
                    entry["body"],
                    entry["recency"],
                    title_counts=entry["tokens"]["title"],
                    body_counts=entry["tokens"]["body"],
                )
                if match is not None:
                    matches.append(match)
        return rank(matches)

    @property
    def errors(self) -> list[dict[str, str]]:
        """Per-file parse errors recorded by the last rebuild or update."""
        return list(self._index["errors"])
