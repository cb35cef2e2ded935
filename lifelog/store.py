"""
Relational store for lifelog entries, segments and analyses, using SQLite.

All writes are upserts keyed by natural identifiers, so re-running a sync
or an analysis never duplicates rows:
- entries by provider id
- segments by node id ("{entry_id}:{path}"), replaced wholesale per entry
- analyses by (entry_id, version)
- sync state by key

Schema setup is an explicit, idempotent step (initialize()) with an
external check (schema_ready()). Nothing is memoized in-process.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Sequence

from .errors import PartialBatchFailure
from .types import (
    SEGMENT_COLUMNS,
    AnalysisEvent,
    AnalysisRecord,
    Candidate,
    ContentSegment,
    LifelogEntry,
    utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Bound-parameter ceiling per statement on the deployment store
MAX_BOUND_PARAMETERS = 100


def max_rows_per_statement(columns: int, limit: int = MAX_BOUND_PARAMETERS) -> int:
    """Largest row count whose bound parameters fit under limit."""
    return max(1, limit // columns)


DEFAULT_SEGMENT_BATCH = max_rows_per_statement(len(SEGMENT_COLUMNS))

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS lifelog_entries (
        id TEXT PRIMARY KEY,
        title TEXT,
        markdown TEXT,
        start_time TEXT,
        end_time TEXT,
        start_epoch_ms INTEGER,
        end_epoch_ms INTEGER,
        is_starred INTEGER DEFAULT 0,
        updated_at TEXT,
        ingested_at TEXT,
        timezone TEXT,
        summary_hash TEXT,
        last_analyzed_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_entries_start
    ON lifelog_entries(start_time)
    """,
    """
    CREATE TABLE IF NOT EXISTS lifelog_segments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entry_id TEXT NOT NULL
            REFERENCES lifelog_entries(id) ON DELETE CASCADE,
        node_id TEXT NOT NULL,
        path TEXT,
        node_type TEXT,
        content TEXT,
        start_time TEXT,
        end_time TEXT,
        start_offset_ms INTEGER,
        end_offset_ms INTEGER,
        speaker_name TEXT,
        speaker_identifier TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_segments_node
    ON lifelog_segments(node_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_segments_entry
    ON lifelog_segments(entry_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS lifelog_analyses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entry_id TEXT NOT NULL
            REFERENCES lifelog_entries(id) ON DELETE CASCADE,
        model TEXT NOT NULL,
        version TEXT NOT NULL DEFAULT 'v1',
        payload_hash TEXT,
        insights_json TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_analyses_entry_version
    ON lifelog_analyses(entry_id, version)
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        key TEXT PRIMARY KEY,
        value TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS analysis_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entry_id TEXT,
        status TEXT NOT NULL,
        details TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS schema_meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)

REQUIRED_TABLES = frozenset({
    "lifelog_entries",
    "lifelog_segments",
    "lifelog_analyses",
    "sync_state",
    "analysis_events",
    "schema_meta",
})

_ENTRY_COLUMNS = (
    "id, title, markdown, start_time, end_time, start_epoch_ms, end_epoch_ms, "
    "is_starred, updated_at, ingested_at, timezone, summary_hash, last_analyzed_at"
)


def _row_to_entry(row: sqlite3.Row) -> LifelogEntry:
    return LifelogEntry(
        id=row["id"],
        title=row["title"],
        markdown=row["markdown"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        start_epoch_ms=row["start_epoch_ms"],
        end_epoch_ms=row["end_epoch_ms"],
        is_starred=bool(row["is_starred"]),
        updated_at=row["updated_at"],
        ingested_at=row["ingested_at"],
        timezone=row["timezone"],
        summary_hash=row["summary_hash"],
        last_analyzed_at=row["last_analyzed_at"],
    )


def _row_to_segment(row: sqlite3.Row) -> ContentSegment:
    return ContentSegment(**{col: row[col] for col in SEGMENT_COLUMNS})


class LifelogStore:
    """
    SQLite-backed store for the sync and analysis pipeline.

    Safe to share between the request thread and background
    continuations: writes are serialized with a lock, and WAL mode lets
    separate processes read while one writes.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path)
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives manual transaction control
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA foreign_keys=ON")

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        """Create tables and indexes if missing. Safe to run repeatedly."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                for statement in SCHEMA_STATEMENTS:
                    self._conn.execute(statement)
                self._conn.execute(
                    "INSERT INTO schema_meta (key, value) VALUES ('version', ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (str(SCHEMA_VERSION),),
                )
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        logger.info("Schema ready at %s (version %d)", self._db_path, SCHEMA_VERSION)

    def schema_ready(self) -> bool:
        """Check the database itself for the expected tables and version."""
        rows = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        ).fetchall()
        if not REQUIRED_TABLES <= {row["name"] for row in rows}:
            return False
        row = self._conn.execute(
            "SELECT value FROM schema_meta WHERE key = 'version'"
        ).fetchone()
        return row is not None and row["value"] == str(SCHEMA_VERSION)

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def upsert_entry(self, entry: LifelogEntry) -> None:
        """
        Insert or update an entry by id.

        Preserves ingested_at and last_analyzed_at on update; every other
        field is overwritten with the provider's current values.
        """
        with self._lock:
            self._conn.execute("""
                INSERT INTO lifelog_entries
                (id, title, markdown, start_time, end_time, start_epoch_ms,
                 end_epoch_ms, is_starred, updated_at, ingested_at, timezone,
                 summary_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    markdown = excluded.markdown,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    start_epoch_ms = excluded.start_epoch_ms,
                    end_epoch_ms = excluded.end_epoch_ms,
                    is_starred = excluded.is_starred,
                    updated_at = excluded.updated_at,
                    timezone = excluded.timezone,
                    summary_hash = excluded.summary_hash
            """, (
                entry.id, entry.title, entry.markdown, entry.start_time,
                entry.end_time, entry.start_epoch_ms, entry.end_epoch_ms,
                int(entry.is_starred), entry.updated_at,
                entry.ingested_at or utc_now(), entry.timezone, entry.summary_hash,
            ))

    def get_entry(self, entry_id: str) -> Optional[LifelogEntry]:
        row = self._conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM lifelog_entries WHERE id = ?", (entry_id,)
        ).fetchone()
        return _row_to_entry(row) if row else None

    def count_entries(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM lifelog_entries").fetchone()[0]

    def list_entries(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[LifelogEntry]:
        """Entries whose start falls in [start, end), newest first."""
        clauses = []
        params: list[Any] = []
        if start is not None:
            clauses.append("start_epoch_ms >= ?")
            params.append(int(start.timestamp() * 1000))
        if end is not None:
            clauses.append("start_epoch_ms < ?")
            params.append(int(end.timestamp() * 1000))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {_ENTRY_COLUMNS} FROM lifelog_entries {where} ORDER BY start_time DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_entry(row) for row in self._conn.execute(sql, params).fetchall()]

    def mark_analyzed(self, entry_id: str, at: Optional[str] = None) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE lifelog_entries SET last_analyzed_at = ? WHERE id = ?",
                (at or utc_now(), entry_id),
            )

    # -------------------------------------------------------------------------
    # Segments
    # -------------------------------------------------------------------------

    def _insert_segment_batch(self, batch: Sequence[ContentSegment]) -> None:
        row_placeholder = "(" + ", ".join("?" for _ in SEGMENT_COLUMNS) + ")"
        updates = ", ".join(
            f"{col} = excluded.{col}" for col in SEGMENT_COLUMNS if col != "node_id"
        )
        sql = (
            f"INSERT INTO lifelog_segments ({', '.join(SEGMENT_COLUMNS)}) "
            f"VALUES {', '.join(row_placeholder for _ in batch)} "
            f"ON CONFLICT(node_id) DO UPDATE SET {updates}"
        )
        params = [value for segment in batch for value in segment.as_row()]
        self._conn.execute(sql, params)

    def replace_segments(
        self,
        entry_id: str,
        segments: Sequence[ContentSegment],
        *,
        batch_size: Optional[int] = None,
        atomic: bool = False,
    ) -> int:
        """
        Replace all segments of an entry.

        Deletes the existing set, then inserts the new one in multi-row
        statements of at most batch_size rows, keeping bound parameters
        under MAX_BOUND_PARAMETERS.

        Non-atomic (default): the delete and every batch commit on their
        own. A failing batch raises PartialBatchFailure and leaves the
        rows inserted so far; the next sync replaces them.

        Atomic: delete and all batches share one transaction, rolled back
        on failure.

        Returns:
            Number of insert batches issued
        """
        size = batch_size or DEFAULT_SEGMENT_BATCH
        if size * len(SEGMENT_COLUMNS) > MAX_BOUND_PARAMETERS:
            raise ValueError(
                f"batch_size {size} binds {size * len(SEGMENT_COLUMNS)} parameters; "
                f"limit is {MAX_BOUND_PARAMETERS}"
            )
        batches = [segments[i:i + size] for i in range(0, len(segments), size)]

        with self._lock:
            if atomic:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    self._conn.execute(
                        "DELETE FROM lifelog_segments WHERE entry_id = ?", (entry_id,)
                    )
                    for batch in batches:
                        self._insert_segment_batch(batch)
                    self._conn.execute("COMMIT")
                except Exception:
                    self._conn.execute("ROLLBACK")
                    raise
            else:
                self._conn.execute(
                    "DELETE FROM lifelog_segments WHERE entry_id = ?", (entry_id,)
                )
                inserted = 0
                for batch in batches:
                    try:
                        self._insert_segment_batch(batch)
                    except sqlite3.Error as e:
                        raise PartialBatchFailure(entry_id, inserted, len(segments), e) from e
                    inserted += len(batch)

        logger.debug(
            "Replaced %d segments for %s in %d batches (size %d)",
            len(segments), entry_id, len(batches), size,
        )
        return len(batches)

    def get_segments(self, entry_id: str, limit: Optional[int] = None) -> list[ContentSegment]:
        """Segments of an entry in reading order."""
        sql = f"SELECT {', '.join(SEGMENT_COLUMNS)} FROM lifelog_segments WHERE entry_id = ? ORDER BY id"
        params: list[Any] = [entry_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_segment(row) for row in self._conn.execute(sql, params).fetchall()]

    def count_segments(self, entry_id: Optional[str] = None) -> int:
        if entry_id is None:
            return self._conn.execute("SELECT COUNT(*) FROM lifelog_segments").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM lifelog_segments WHERE entry_id = ?", (entry_id,)
        ).fetchone()[0]

    # -------------------------------------------------------------------------
    # Analyses
    # -------------------------------------------------------------------------

    def upsert_analysis(
        self,
        entry_id: str,
        version: str,
        payload: dict[str, Any],
        payload_hash: Optional[str],
        model: str,
    ) -> AnalysisRecord:
        """Insert or supersede the analysis for (entry_id, version)."""
        now = utc_now()
        insights_json = json.dumps(payload, ensure_ascii=False)
        with self._lock:
            self._conn.execute("""
                INSERT INTO lifelog_analyses
                (entry_id, model, version, payload_hash, insights_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(entry_id, version) DO UPDATE SET
                    model = excluded.model,
                    payload_hash = excluded.payload_hash,
                    insights_json = excluded.insights_json,
                    created_at = excluded.created_at
            """, (entry_id, model, version, payload_hash, insights_json, now))
        return AnalysisRecord(
            entry_id=entry_id,
            version=version,
            model=model,
            payload_hash=payload_hash,
            payload=payload,
            created_at=now,
        )

    def get_analysis(self, entry_id: str, version: str = "v1") -> Optional[AnalysisRecord]:
        row = self._conn.execute("""
            SELECT entry_id, version, model, payload_hash, insights_json, created_at
            FROM lifelog_analyses
            WHERE entry_id = ? AND version = ?
        """, (entry_id, version)).fetchone()
        if row is None:
            return None
        try:
            payload = json.loads(row["insights_json"])
        except json.JSONDecodeError:
            logger.warning("Stored analysis for %s is not valid JSON", entry_id)
            payload = {}
        return AnalysisRecord(
            entry_id=row["entry_id"],
            version=row["version"],
            model=row["model"],
            payload_hash=row["payload_hash"],
            payload=payload,
            created_at=row["created_at"],
        )

    def count_analyses(self, version: Optional[str] = None) -> int:
        if version is None:
            return self._conn.execute("SELECT COUNT(*) FROM lifelog_analyses").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM lifelog_analyses WHERE version = ?", (version,)
        ).fetchone()[0]

    def select_candidates(
        self,
        version: str,
        limit: int,
        entry_ids: Optional[Sequence[str]] = None,
        force: bool = False,
    ) -> list[Candidate]:
        """
        Entries that need (re)analysis for a schema version, newest first.

        An entry is a candidate when it has no analysis row for the
        version, or the row's payload hash differs from the entry's
        current fingerprint. With explicit entry_ids and force=True the
        staleness filter is skipped and the limit becomes len(entry_ids).
        """
        ids = [i for i in (entry_ids or []) if i and i.strip()]
        clauses = []
        params: list[Any] = [version]
        if ids:
            clauses.append(f"e.id IN ({', '.join('?' for _ in ids)})")
            params.extend(ids)
        if not (ids and force):
            clauses.append("(a.id IS NULL OR a.payload_hash IS NOT e.summary_hash)")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(len(ids) if ids else limit)

        rows = self._conn.execute(f"""
            SELECT e.id, e.title, e.markdown, e.start_time, e.end_time, e.summary_hash
            FROM lifelog_entries e
            LEFT JOIN lifelog_analyses a
                ON a.entry_id = e.id AND a.version = ?
            {where}
            ORDER BY e.start_time DESC
            LIMIT ?
        """, params).fetchall()
        return [
            Candidate(
                id=row["id"],
                title=row["title"],
                markdown=row["markdown"],
                start_time=row["start_time"],
                end_time=row["end_time"],
                summary_hash=row["summary_hash"],
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Sync state
    # -------------------------------------------------------------------------

    def get_state(self, key: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT value FROM sync_state WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        with self._lock:
            self._conn.execute("""
                INSERT INTO sync_state (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
            """, (key, value, utc_now()))

    def delete_state(self, key: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM sync_state WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def list_state(self) -> dict[str, dict[str, str]]:
        rows = self._conn.execute(
            "SELECT key, value, updated_at FROM sync_state ORDER BY key"
        ).fetchall()
        return {row["key"]: {"value": row["value"], "updated_at": row["updated_at"]} for row in rows}

    # -------------------------------------------------------------------------
    # Analysis events
    # -------------------------------------------------------------------------

    def log_event(self, entry_id: Optional[str], status: str, details: Optional[str] = None) -> None:
        """Append an analysis outcome. Events are never updated."""
        if status not in ("success", "error"):
            raise ValueError(f"Unknown event status: {status}")
        with self._lock:
            self._conn.execute(
                "INSERT INTO analysis_events (entry_id, status, details, created_at) "
                "VALUES (?, ?, ?, ?)",
                (entry_id, status, details, utc_now()),
            )

    def list_events(self, limit: int = 10) -> list[AnalysisEvent]:
        rows = self._conn.execute("""
            SELECT id, entry_id, status, details, created_at
            FROM analysis_events
            ORDER BY id DESC
            LIMIT ?
        """, (limit,)).fetchall()
        return [
            AnalysisEvent(
                id=row["id"],
                entry_id=row["entry_id"],
                status=row["status"],
                details=row["details"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
