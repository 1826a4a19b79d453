"""
Database module for Catchr.

SQLite storage for thoughts, pipeline status items, queued jobs and the
read-only integration settings the pipeline consults.
"""

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from catchr.config import get_db_path
from catchr.models import (
    CalendarCredentials,
    CalendarEventRecord,
    ClassificationResult,
    IntegrationSettings,
    Thought,
    ThoughtCategory,
    ThoughtSuggestions,
)

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Captured thoughts
CREATE TABLE IF NOT EXISTS thoughts (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    content TEXT NOT NULL,
    transcribed_text TEXT,
    audio_reference TEXT,
    category TEXT NOT NULL DEFAULT '{"main": "uncategorized"}',  -- JSON
    confidence REAL CHECK(confidence IS NULL OR (confidence >= 0 AND confidence <= 1)),
    suggestions TEXT,                       -- JSON
    processed INTEGER NOT NULL DEFAULT 0,
    processed_at TEXT,
    reminder_at TEXT,
    calendar_event TEXT,                    -- JSON, set once
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Tags (many-to-many)
CREATE TABLE IF NOT EXISTS tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL
);

CREATE TABLE IF NOT EXISTS thought_tags (
    thought_id TEXT REFERENCES thoughts(id) ON DELETE CASCADE,
    tag_id INTEGER REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (thought_id, tag_id)
);

-- One row per (thought, stage) attempt lineage
CREATE TABLE IF NOT EXISTS processing_queue (
    id TEXT PRIMARY KEY,
    thought_id TEXT NOT NULL REFERENCES thoughts(id),
    owner_id TEXT NOT NULL,
    stage TEXT NOT NULL CHECK(stage IN ('transcribe', 'enrich', 'calendar')),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK(status IN ('pending', 'processing', 'completed', 'failed')),
    attempt_count INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    last_error TEXT,
    outcome TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK(attempt_count >= 0 AND attempt_count <= max_attempts)
);

-- Durable job queue
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    stage TEXT NOT NULL CHECK(stage IN ('transcribe', 'enrich', 'calendar')),
    item_id TEXT NOT NULL REFERENCES processing_queue(id),
    payload TEXT NOT NULL,                  -- JSON
    state TEXT NOT NULL DEFAULT 'queued'
        CHECK(state IN ('queued', 'running', 'done', 'dead')),
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    available_at TEXT NOT NULL,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Integration settings (written by the account layer, read by the pipeline)
CREATE TABLE IF NOT EXISTS user_settings (
    owner_id TEXT PRIMARY KEY,
    calendar_integration_enabled INTEGER NOT NULL DEFAULT 0,
    auto_calendar_events_enabled INTEGER NOT NULL DEFAULT 0,
    timezone TEXT NOT NULL DEFAULT 'America/Los_Angeles',
    default_calendar_id TEXT,
    google_access_token TEXT,
    google_refresh_token TEXT,
    google_token_expires_at TEXT,
    preferences TEXT,                       -- JSON
    updated_at TEXT NOT NULL
);

-- User-facing notification records
CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    thought_id TEXT REFERENCES thoughts(id),
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Classifier audit log
CREATE TABLE IF NOT EXISTS classifier_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    thought_id TEXT REFERENCES thoughts(id),
    timestamp TEXT NOT NULL,
    raw_input TEXT NOT NULL,
    llm_output TEXT NOT NULL,               -- Full JSON response
    llm_model TEXT NOT NULL,
    confidence REAL NOT NULL,
    processing_time_ms INTEGER,
    status TEXT NOT NULL                    -- classified, error
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_thoughts_owner ON thoughts(owner_id);
CREATE INDEX IF NOT EXISTS idx_thoughts_processed ON thoughts(owner_id, processed);
CREATE INDEX IF NOT EXISTS idx_queue_owner ON processing_queue(owner_id);
CREATE INDEX IF NOT EXISTS idx_queue_thought ON processing_queue(thought_id, stage);
CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(stage, state, available_at);

-- At most one non-terminal item per (thought, stage)
CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_single_active
    ON processing_queue(thought_id, stage)
    WHERE status IN ('pending', 'processing');
"""


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime for storage (UTC, ISO 8601)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def new_id() -> str:
    """Generate a unique row ID."""
    return str(uuid.uuid4())


class Database:
    """SQLite database wrapper for Catchr."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or get_db_path()
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Ensure database exists and schema is current."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
            # Set schema version
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,)
            )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Thoughts

    def insert_thought(
        self,
        owner_id: str,
        content: str,
        audio_reference: str | None = None,
        thought_id: str | None = None,
    ) -> Thought:
        """Insert a freshly captured thought."""
        now = to_iso(utcnow())
        thought_id = thought_id or new_id()

        with self._connect() as conn:
            conn.execute("""
                INSERT INTO thoughts (
                    id, owner_id, content, audio_reference, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
            """, (thought_id, owner_id, content, audio_reference, now, now))

        thought = self.get_thought(thought_id)
        assert thought is not None
        return thought

    def get_thought(self, thought_id: str) -> Thought | None:
        """Get a single thought by ID."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM thoughts WHERE id = ?", (thought_id,)
            ).fetchone()
            if row is None:
                return None
            tags = self._get_tags(conn, thought_id)
        return _row_to_thought(row, tags)

    def _get_tags(self, conn: sqlite3.Connection, thought_id: str) -> list[str]:
        rows = conn.execute("""
            SELECT t.name FROM tags t
            JOIN thought_tags tt ON tt.tag_id = t.id
            WHERE tt.thought_id = ?
            ORDER BY t.name
        """, (thought_id,)).fetchall()
        return [row[0] for row in rows]

    def set_transcription(self, thought_id: str, owner_id: str, text: str) -> bool:
        """Write transcribed text onto a thought. Returns True if a row changed."""
        now = to_iso(utcnow())

        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE thoughts
                SET transcribed_text = ?, updated_at = ?
                WHERE id = ? AND owner_id = ?
            """, (text, now, thought_id, owner_id))
            return cursor.rowcount > 0

    def apply_enrichment(
        self, thought_id: str, owner_id: str, result: ClassificationResult
    ) -> bool:
        """
        Persist classification results and mark the thought processed.

        Category, tags, confidence and the processed flag are written in a
        single transaction; a failure leaves the thought as it was.
        """
        now = to_iso(utcnow())

        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE thoughts
                SET category = ?, confidence = ?, suggestions = ?,
                    reminder_at = COALESCE(?, reminder_at),
                    processed = 1, processed_at = ?, updated_at = ?
                WHERE id = ? AND owner_id = ?
            """, (
                result.category.model_dump_json(),
                result.confidence,
                result.suggestions.model_dump_json(),
                to_iso(result.reminder_at),
                now,
                now,
                thought_id,
                owner_id,
            ))
            if cursor.rowcount == 0:
                return False

            # Replace tags
            conn.execute("DELETE FROM thought_tags WHERE thought_id = ?", (thought_id,))
            for tag_name in result.tags:
                conn.execute(
                    "INSERT OR IGNORE INTO tags (name) VALUES (?)",
                    (tag_name.lower(),)
                )
                tag_id = conn.execute(
                    "SELECT id FROM tags WHERE name = ?",
                    (tag_name.lower(),)
                ).fetchone()[0]
                conn.execute(
                    "INSERT OR IGNORE INTO thought_tags (thought_id, tag_id) VALUES (?, ?)",
                    (thought_id, tag_id)
                )
        return True

    def record_calendar_event(self, thought_id: str, record: CalendarEventRecord) -> bool:
        """Attach a calendar event reference. Only the first write wins."""
        now = to_iso(utcnow())

        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE thoughts
                SET calendar_event = ?, updated_at = ?
                WHERE id = ? AND calendar_event IS NULL
            """, (record.model_dump_json(), now, thought_id))
            return cursor.rowcount > 0

    def get_recent_processed(self, owner_id: str, limit: int = 5) -> list[dict[str, Any]]:
        """Most recent processed thoughts for an owner, newest first."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT content, category, created_at FROM thoughts
                WHERE owner_id = ? AND processed = 1
                ORDER BY created_at DESC
                LIMIT ?
            """, (owner_id, limit)).fetchall()

        return [
            {
                "content": row["content"],
                "category": json.loads(row["category"]).get("main"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    # Settings (read-only for the pipeline)

    def get_integration_settings(self, owner_id: str) -> IntegrationSettings:
        """Integration settings for an owner. Missing row means all disabled."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_settings WHERE owner_id = ?", (owner_id,)
            ).fetchone()

        if row is None:
            return IntegrationSettings(owner_id=owner_id)

        return IntegrationSettings(
            owner_id=owner_id,
            calendar_integration_enabled=bool(row["calendar_integration_enabled"]),
            auto_calendar_events_enabled=bool(row["auto_calendar_events_enabled"]),
            timezone=row["timezone"],
            default_calendar_id=row["default_calendar_id"] or "primary",
            credentials=CalendarCredentials(
                access_token=row["google_access_token"],
                refresh_token=row["google_refresh_token"],
                expires_at=row["google_token_expires_at"],
            ),
        )

    def get_preferences(self, owner_id: str) -> dict[str, Any]:
        """Stored classification preferences for an owner."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT preferences FROM user_settings WHERE owner_id = ?", (owner_id,)
            ).fetchone()
        if row is None or not row["preferences"]:
            return {}
        return json.loads(row["preferences"])

    def save_integration_settings(
        self,
        settings: IntegrationSettings,
        preferences: dict[str, Any] | None = None,
    ) -> None:
        """Upsert integration settings. Used by the account layer and the CLI."""
        now = to_iso(utcnow())

        with self._connect() as conn:
            conn.execute("""
                INSERT INTO user_settings (
                    owner_id, calendar_integration_enabled, auto_calendar_events_enabled,
                    timezone, default_calendar_id, google_access_token,
                    google_refresh_token, google_token_expires_at, preferences, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    calendar_integration_enabled = excluded.calendar_integration_enabled,
                    auto_calendar_events_enabled = excluded.auto_calendar_events_enabled,
                    timezone = excluded.timezone,
                    default_calendar_id = excluded.default_calendar_id,
                    google_access_token = excluded.google_access_token,
                    google_refresh_token = excluded.google_refresh_token,
                    google_token_expires_at = excluded.google_token_expires_at,
                    preferences = COALESCE(excluded.preferences, user_settings.preferences),
                    updated_at = excluded.updated_at
            """, (
                settings.owner_id,
                int(settings.calendar_integration_enabled),
                int(settings.auto_calendar_events_enabled),
                settings.timezone,
                settings.default_calendar_id,
                settings.credentials.access_token,
                settings.credentials.refresh_token,
                to_iso(settings.credentials.expires_at),
                json.dumps(preferences) if preferences is not None else None,
                now,
            ))

    def update_calendar_credentials(self, owner_id: str, credentials: CalendarCredentials) -> bool:
        """Store refreshed OAuth tokens, leaving the rest of the settings alone."""
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE user_settings
                SET google_access_token = ?, google_refresh_token = ?,
                    google_token_expires_at = ?, updated_at = ?
                WHERE owner_id = ?
            """, (
                credentials.access_token,
                credentials.refresh_token,
                to_iso(credentials.expires_at),
                to_iso(utcnow()),
                owner_id,
            ))
            return cursor.rowcount > 0

    # Notifications and audit

    def insert_notification(
        self,
        owner_id: str,
        thought_id: str | None,
        notification_type: str,
        title: str,
        message: str,
    ) -> int:
        """Persist a user-facing notification record. Returns its ID."""
        now = to_iso(utcnow())

        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT INTO notifications (owner_id, thought_id, type, title, message, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (owner_id, thought_id, notification_type, title, message, now))
            return int(cursor.lastrowid)

    def get_notifications(self, owner_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Recent notification records for an owner."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM notifications
                WHERE owner_id = ?
                ORDER BY id DESC
                LIMIT ?
            """, (owner_id, limit)).fetchall()
            return [dict(row) for row in rows]

    def log_classification(
        self,
        thought_id: str,
        raw_input: str,
        llm_output: str,
        llm_model: str,
        confidence: float,
        processing_time_ms: int,
        status: str,
    ) -> None:
        """Log a classification attempt for auditing."""
        now = to_iso(utcnow())

        with self._connect() as conn:
            conn.execute("""
                INSERT INTO classifier_logs (
                    thought_id, timestamp, raw_input, llm_output,
                    llm_model, confidence, processing_time_ms, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                thought_id, now, raw_input, llm_output,
                llm_model, confidence, processing_time_ms, status
            ))

    def get_stats(self) -> dict[str, Any]:
        """Get database statistics."""
        with self._connect() as conn:
            total = conn.execute("SELECT COUNT(*) FROM thoughts").fetchone()[0]
            processed = conn.execute(
                "SELECT COUNT(*) FROM thoughts WHERE processed = 1"
            ).fetchone()[0]
            with_events = conn.execute(
                "SELECT COUNT(*) FROM thoughts WHERE calendar_event IS NOT NULL"
            ).fetchone()[0]

            return {
                "total_thoughts": total,
                "processed": processed,
                "calendar_events": with_events,
            }


def _row_to_thought(row: sqlite3.Row, tags: list[str]) -> Thought:
    """Build a Thought model from a thoughts row."""
    suggestions = row["suggestions"]
    calendar_event = row["calendar_event"]
    return Thought(
        id=row["id"],
        owner_id=row["owner_id"],
        content=row["content"],
        transcribed_text=row["transcribed_text"],
        audio_reference=row["audio_reference"],
        category=ThoughtCategory.model_validate_json(row["category"]),
        tags=tags,
        confidence=row["confidence"],
        suggestions=(
            ThoughtSuggestions.model_validate_json(suggestions) if suggestions else None
        ),
        processed=bool(row["processed"]),
        processed_at=row["processed_at"],
        reminder_at=row["reminder_at"],
        calendar_event=(
            CalendarEventRecord.model_validate_json(calendar_event) if calendar_event else None
        ),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
