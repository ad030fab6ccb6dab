"""Embedded-database adapter backed by SQLite with an FTS5 search table."""

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from knowsys_mcp.documents.models import (
    IndexedPlan,
    IndexedSession,
    SearchMatch,
)
from knowsys_mcp.documents.walker import (
    DATABASE_FILE,
    describe_file,
    knowledge_dir,
    require_knowledge_dir,
)
from knowsys_mcp.errors import MalformedDocument, SchemaVersionMismatch
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
from knowsys_mcp.storage.scoring import rank, score_document

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# The workspace is the only project a database holds
PROJECT_ID = 1

SCHEMA_SQL = """
-- knowsys-mcp index schema v1
-- This database is disposable: it regenerates from <root>/.knowsys/

CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS projects (
    id    INTEGER PRIMARY KEY,
    name  TEXT NOT NULL,
    path  TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS plans (
    file        TEXT PRIMARY KEY,
    project_id  INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    id          TEXT NOT NULL,
    title       TEXT NOT NULL,
    status      TEXT NOT NULL,
    author      TEXT NOT NULL,
    topics      TEXT NOT NULL,
    created     TEXT,
    updated     TEXT,
    started     TEXT,
    completed   TEXT
);

CREATE INDEX IF NOT EXISTS idx_plans_status ON plans(status);
CREATE INDEX IF NOT EXISTS idx_plans_author ON plans(author);

CREATE TABLE IF NOT EXISTS sessions (
    file              TEXT PRIMARY KEY,
    project_id        INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    date              TEXT NOT NULL,
    title             TEXT NOT NULL,
    topics            TEXT NOT NULL,
    plan              TEXT,
    phases            TEXT NOT NULL,
    duration_minutes  INTEGER,
    status            TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_date ON sessions(date DESC);
CREATE INDEX IF NOT EXISTS idx_sessions_plan ON sessions(plan);

CREATE TABLE IF NOT EXISTS learned (
    file        TEXT PRIMARY KEY,
    project_id  INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name        TEXT NOT NULL,
    title       TEXT NOT NULL,
    topics      TEXT NOT NULL,
    created     TEXT
);

CREATE TABLE IF NOT EXISTS parse_errors (
    file   TEXT PRIMARY KEY,
    error  TEXT NOT NULL
);

-- Searchable text for every document kind, kept in step with the tables above
CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
    kind UNINDEXED,
    file UNINDEXED,
    recency UNINDEXED,
    title,
    body,
    tokenize = 'unicode61 remove_diacritics 0'
);
"""

DERIVED_TABLES = ("plans", "sessions", "learned", "parse_errors", "documents_fts")
ALL_TABLES = ("documents_fts", "parse_errors", "learned", "sessions", "plans", "projects", "meta")


def _fts_query(terms: list[str]) -> str:
    # Terms are alphanumeric runs, so quoting needs no escaping
    return " AND ".join(f'"{term}"*' for term in terms)


class SqliteStorage(StorageAdapter):
    """
    Storage adapter whose queryable state is an SQLite database.

    One connection is opened per instance, shared by every thread and closed
    by close(). Cursors are handed out one at a time under a lock. Every write
    runs inside a single transaction so a failure leaves the previous rows.
    """

    name = "sqlite"

    def __init__(self, db_path: Path | None = None) -> None:
        """
        Args:
            db_path: Database file. Defaults to <root>/.knowsys/knowledge.db.
        """
        super().__init__()
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _connection(self, operation: str) -> sqlite3.Connection:
        self._require_root(operation)
        if self._conn is None:
            raise self._unsupported(f"{operation} after close()")
        return self._conn

    @contextmanager
    def _read_cursor(self, operation: str) -> Iterator[sqlite3.Cursor]:
        """Get a cursor for read operations."""
        with self._lock:
            cursor = self._connection(operation).cursor()
            try:
                yield cursor
            finally:
                cursor.close()

    @contextmanager
    def _write_cursor(self, operation: str) -> Iterator[sqlite3.Cursor]:
        """Get a cursor inside an explicit transaction, committed on success."""
        with self._lock:
            conn = self._connection(operation)
            cursor = conn.cursor()
            cursor.execute("BEGIN")
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    # Lifecycle

    def init(self, root: Path) -> None:
        """
        Open the database and make sure the schema is current.

        A missing or older schema is recreated and repopulated; the database
        holds nothing that cannot be rebuilt from the documents.

        Raises:
            RootNotFound: If root has no .knowsys directory
            SchemaVersionMismatch: If the database was written by a newer version
        """
        base = require_knowledge_dir(root)
        self.root = root
        if self.db_path is None:
            self.db_path = base / DATABASE_FILE
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Transactions are managed explicitly in _write_cursor
        conn = sqlite3.connect(
            str(self.db_path), isolation_level=None, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        self._conn = conn

        try:
            stored = self._stored_version()
            if stored is not None and stored > SCHEMA_VERSION:
                raise SchemaVersionMismatch(
                    f"{self.db_path} has schema version {stored}, "
                    f"this version supports up to {SCHEMA_VERSION}",
                    operation="init",
                    hint="upgrade knowsys-mcp or delete the database to rebuild it",
                )
            if stored == SCHEMA_VERSION:
                if self._is_stale(root):
                    logger.info("Index database %s is older than its documents", self.db_path)
                    self.rebuild_index()
                else:
                    logger.debug("Opened index database %s", self.db_path)
                return
            if stored is None:
                logger.info("Creating index database at %s", self.db_path)
            else:
                logger.info(
                    "Migrating index database %s from schema %d to %d",
                    self.db_path,
                    stored,
                    SCHEMA_VERSION,
                )
            self._create_schema(drop_existing=stored is not None)
            self.rebuild_index()
        except Exception:
            self.close()
            raise

    def _meta(self, key: str) -> str | None:
        with self._read_cursor("init") as cursor:
            cursor.execute("SELECT value FROM meta WHERE key = ?", (key,))
            row = cursor.fetchone()
        return None if row is None else row["value"]

    @staticmethod
    def _set_meta(cursor: sqlite3.Cursor, key: str, value: str) -> None:
        cursor.execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value))

    def _is_stale(self, root: Path) -> bool:
        indexed_at = self._meta("indexed_at")
        if indexed_at is None:
            return True
        try:
            return newest_document_mtime(root) > float(indexed_at)
        except ValueError:
            return True

    def _stored_version(self) -> int | None:
        with self._read_cursor("init") as cursor:
            cursor.execute("SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'meta'")
            if cursor.fetchone() is None:
                return None
        value = self._meta("schema_version")
        if value is None:
            # Schema created but never populated
            return 0
        try:
            return int(value)
        except ValueError:
            # Pre-release databases stored versions like "1.0"
            return 0

    def _create_schema(self, drop_existing: bool) -> None:
        with self._write_cursor("init") as cursor:
            if drop_existing:
                for table in ALL_TABLES:
                    cursor.execute(f"DROP TABLE IF EXISTS {table}")
            for statement in SCHEMA_SQL.split(";"):
                if statement.strip():
                    cursor.execute(statement)

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # Writes

    def _insert(self, cursor: sqlite3.Cursor, doc: IngestedDocument) -> None:
        record = doc.record
        if isinstance(record, IndexedPlan):
            cursor.execute(
                """INSERT INTO plans
                (file, project_id, id, title, status, author, topics,
                 created, updated, started, completed)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.file,
                    PROJECT_ID,
                    record.id,
                    record.title,
                    record.status,
                    record.author,
                    json.dumps(record.topics),
                    record.created,
                    record.updated,
                    record.started,
                    record.completed,
                ),
            )
        elif isinstance(record, IndexedSession):
            cursor.execute(
                """INSERT INTO sessions
                (file, project_id, date, title, topics, plan, phases, duration_minutes, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.file,
                    PROJECT_ID,
                    record.date,
                    record.title,
                    json.dumps(record.topics),
                    record.plan,
                    json.dumps(record.phases),
                    record.duration_minutes,
                    record.status,
                ),
            )
        else:
            cursor.execute(
                """INSERT INTO learned (file, project_id, name, title, topics, created)
                VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    record.file,
                    PROJECT_ID,
                    record.name,
                    record.title,
                    json.dumps(record.topics),
                    record.created,
                ),
            )
        cursor.execute(
            "INSERT INTO documents_fts (kind, file, recency, title, body) VALUES (?, ?, ?, ?, ?)",
            (doc.kind, doc.file, doc.recency, doc.title, doc.body),
        )

    def _delete(self, cursor: sqlite3.Cursor, relative_path: str) -> int:
        removed = 0
        for table in DERIVED_TABLES:
            cursor.execute(f"DELETE FROM {table} WHERE file = ?", (relative_path,))
            removed += cursor.rowcount
        return removed

    def _ensure_project(self, cursor: sqlite3.Cursor, root: Path) -> None:
        cursor.execute(
            "INSERT OR REPLACE INTO projects (id, name, path) VALUES (?, ?, ?)",
            (PROJECT_ID, root.resolve().name, str(root.resolve())),
        )

    def rebuild_index(self) -> RebuildReport:
        """Truncate and repopulate every derived table in one transaction."""
        root = self._require_root("rebuild_index")
        logger.info("Rebuilding SQLite index for %s", root)

        # Edits made while the walk runs leave the index stale for the next init
        started = time.time()
        documents, report = collect_documents(root)
        with self._write_cursor("rebuild_index") as cursor:
            for table in DERIVED_TABLES:
                cursor.execute(f"DELETE FROM {table}")
            # Recorded with the rows so an interrupted first build is redone
            self._set_meta(cursor, "schema_version", str(SCHEMA_VERSION))
            self._set_meta(cursor, "indexed_at", repr(started))
            self._ensure_project(cursor, root)
            for doc in documents:
                self._insert(cursor, doc)
            cursor.executemany(
                "INSERT INTO parse_errors (file, error) VALUES (?, ?)",
                [(e["file"], e["error"]) for e in report.errors],
            )

        report.errors.sort(key=lambda e: e["file"])
        logger.info(
            "Index rebuilt: %d plans, %d sessions, %d learned, %d errors",
            report.plans,
            report.sessions,
            report.learned,
            len(report.errors),
        )
        return report

    def index_document(self, path: Path) -> None:
        """
        Replace the rows for one document in a single transaction.

        Raises:
            MalformedDocument: If the document no longer parses. Its old rows
                are removed and the error recorded before raising.
        """
        root = self._require_root("index_document")
        if not path.exists():
            self.remove_document(path)
            return

        file_info = describe_file(path.resolve(), knowledge_dir(root).resolve())
        if file_info is None:
            logger.debug("Not an indexable document: %s", path)
            return

        try:
            doc = ingest(file_info)
        except MalformedDocument as e:
            with self._write_cursor("index_document") as cursor:
                self._delete(cursor, file_info.relative_path)
                self._set_meta(cursor, "indexed_at", repr(time.time()))
                cursor.execute(
                    "INSERT INTO parse_errors (file, error) VALUES (?, ?)",
                    (file_info.relative_path, str(e)),
                )
            raise

        with self._write_cursor("index_document") as cursor:
            self._ensure_project(cursor, root)
            self._delete(cursor, doc.file)
            self._insert(cursor, doc)
            self._set_meta(cursor, "indexed_at", repr(time.time()))
        logger.debug("Indexed %s", doc.file)

    def remove_document(self, path: Path) -> None:
        """Drop the rows for a document that no longer exists."""
        root = self._require_root("remove_document")
        relative_path = path.resolve().relative_to(knowledge_dir(root).resolve()).as_posix()
        with self._write_cursor("remove_document") as cursor:
            removed = self._delete(cursor, relative_path)
            self._set_meta(cursor, "indexed_at", repr(time.time()))
        if removed:
            logger.debug("Removed %s from index", relative_path)

    # Queries

    @staticmethod
    def _topic_clause(alias: str) -> str:
        return (
            f"EXISTS (SELECT 1 FROM json_each({alias}.topics) t "
            "WHERE instr(lower(t.value), lower(?)) > 0)"
        )

    def _query_plans(self, filters: PlanFilters) -> list[IndexedPlan]:
        query = "SELECT * FROM plans p WHERE 1=1"
        params: list[Any] = []
        if filters.status:
            query += " AND p.status = ?"
            params.append(filters.status)
        if filters.author:
            query += " AND p.author = ?"
            params.append(filters.author)
        if filters.topic_contains:
            query += f" AND {self._topic_clause('p')}"
            params.append(filters.topic_contains)
        query += " ORDER BY p.file"

        with self._read_cursor("query_plans") as cursor:
            cursor.execute(query, params)
            return [self._row_to_plan(row) for row in cursor.fetchall()]

    def _query_sessions(self, filters: SessionFilters, cutoff: str) -> list[IndexedSession]:
        query = "SELECT * FROM sessions s WHERE s.date > ?"
        params: list[Any] = [cutoff]
        if filters.topic_contains:
            query += f" AND {self._topic_clause('s')}"
            params.append(filters.topic_contains)
        if filters.plan_id:
            query += " AND s.plan = ?"
            params.append(filters.plan_id)
        query += " ORDER BY s.date DESC, s.file"

        with self._read_cursor("query_sessions") as cursor:
            cursor.execute(query, params)
            return [self._row_to_session(row) for row in cursor.fetchall()]

    def _search(self, terms: list[str], types: tuple[str, ...]) -> list[SearchMatch]:
        placeholders = ", ".join("?" for _ in types)
        with self._read_cursor("search") as cursor:
            cursor.execute(
                f"""SELECT kind, file, recency, title, body FROM documents_fts
                WHERE documents_fts MATCH ? AND kind IN ({placeholders})""",
                [_fts_query(terms), *types],
            )
            rows = cursor.fetchall()

        # FTS narrows the candidates; scoring decides the actual matches
        matches: list[SearchMatch] = []
        for row in rows:
            match = score_document(
                terms,
                row["kind"],
                row["file"],
                row["title"],
                row["body"],
                row["recency"],
            )
            if match is not None:
                matches.append(match)
        return rank(matches)

    @property
    def errors(self) -> list[dict[str, str]]:
        """Per-file parse errors recorded by the last rebuild or update."""
        with self._read_cursor("errors") as cursor:
            cursor.execute("SELECT file, error FROM parse_errors ORDER BY file")
            return [{"file": row["file"], "error": row["error"]} for row in cursor.fetchall()]

    def dump(self) -> dict[str, list[tuple[Any, ...]]]:
        """Every derived row in a stable order, for comparing two databases."""
        dumped: dict[str, list[tuple[Any, ...]]] = {}
        with self._read_cursor("dump") as cursor:
            for table in ("projects", *DERIVED_TABLES):
                order = "id" if table == "projects" else "file"
                cursor.execute(f"SELECT * FROM {table} ORDER BY {order}")
                dumped[table] = [tuple(row) for row in cursor.fetchall()]
        return dumped

    @staticmethod
    def _row_to_plan(row: sqlite3.Row) -> IndexedPlan:
        return IndexedPlan(
            id=row["id"],
            title=row["title"],
            status=row["status"],
            author=row["author"],
            topics=json.loads(row["topics"]),
            created=row["created"],
            updated=row["updated"],
            started=row["started"],
            completed=row["completed"],
            file=row["file"],
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> IndexedSession:
        return IndexedSession(
            date=row["date"],
            title=row["title"],
            topics=json.loads(row["topics"]),
            plan=row["plan"],
            phases=json.loads(row["phases"]),
            duration_minutes=row["duration_minutes"],
            status=row["status"],
            file=row["file"],
        )

