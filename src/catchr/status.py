"""
Processing status store for Catchr.

One row per (thought, stage) lineage. Every transition is a
compare-and-set on the current status so concurrent retries cannot
overwrite each other:

    pending -> processing -> completed
                          -> pending   (retry, attempts remain)
                          -> failed    (attempts exhausted or non-retryable)

completed and failed are terminal.
"""

import logging
import sqlite3
from typing import Any

from catchr.db import Database, new_id, to_iso, utcnow
from catchr.models import ItemStatus, ProcessingQueueItem, StageType

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


class ProcessingStatusStore:
    """Queryable record of pipeline progress per (thought, stage)."""

    def __init__(self, db: Database, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.db = db
        self.max_attempts = max_attempts

    def create_or_get_pending(
        self, thought_id: str, owner_id: str, stage: StageType
    ) -> tuple[ProcessingQueueItem, bool]:
        """
        Admit a (thought, stage) pair.

        Returns the latest item and whether it was created by this call.
        A pending, processing or completed item is returned untouched; a new
        pending item is only created when there is none yet or the latest
        one failed.
        """
        try:
            with self.db._connect() as conn:
                item, created = self.admit(conn, thought_id, owner_id, stage)
        except sqlite3.IntegrityError:
            # Lost an admission race: the unique index holds the winner
            winner = self._latest(thought_id, stage)
            if winner is None or winner.status == ItemStatus.FAILED:
                raise
            return winner, False

        if created:
            logger.debug("Admitted %s item %s for thought %s", stage.value, item.id, thought_id)
        return item, created

    def admit(
        self, conn: sqlite3.Connection, thought_id: str, owner_id: str, stage: StageType
    ) -> tuple[ProcessingQueueItem, bool]:
        """create_or_get_pending on an open connection, inside the caller's transaction."""
        existing = _latest_on(conn, thought_id, stage)
        if existing is not None and existing.status != ItemStatus.FAILED:
            return existing, False

        now = to_iso(utcnow())
        item_id = new_id()
        conn.execute("""
            INSERT INTO processing_queue (
                id, thought_id, owner_id, stage, status,
                attempt_count, max_attempts, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 'pending', 0, ?, ?, ?)
        """, (
            item_id, thought_id, owner_id, stage.value,
            self.max_attempts, now, now,
        ))
        row = conn.execute(
            "SELECT * FROM processing_queue WHERE id = ?", (item_id,)
        ).fetchone()
        return ProcessingQueueItem.model_validate(dict(row)), True

    def get(self, item_id: str) -> ProcessingQueueItem | None:
        """Get a single item by ID."""
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT * FROM processing_queue WHERE id = ?", (item_id,)
            ).fetchone()
        return ProcessingQueueItem.model_validate(dict(row)) if row else None

    def items_for_thought(self, thought_id: str) -> list[ProcessingQueueItem]:
        """All items for a thought, oldest first."""
        with self.db._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM processing_queue
                WHERE thought_id = ?
                ORDER BY created_at ASC, rowid ASC
            """, (thought_id,)).fetchall()
        return [ProcessingQueueItem.model_validate(dict(row)) for row in rows]

    def _latest(self, thought_id: str, stage: StageType) -> ProcessingQueueItem | None:
        with self.db._connect() as conn:
            return _latest_on(conn, thought_id, stage)

    def mark_processing(self, item_id: str) -> bool:
        """pending -> processing. Returns False if the item was not pending."""
        return self._transition(item_id, ItemStatus.PENDING, ItemStatus.PROCESSING)

    def mark_completed(self, item_id: str, outcome: str | None = None) -> bool:
        """processing -> completed. Returns False if the item was not processing."""
        with self.db._connect() as conn:
            changed = self.complete(conn, item_id, outcome)

        if not changed:
            logger.warning("Item %s was not processing, completion ignored", item_id)
        return changed

    def complete(
        self, conn: sqlite3.Connection, item_id: str, outcome: str | None = None
    ) -> bool:
        """mark_completed on an open connection, inside the caller's transaction."""
        cursor = conn.execute("""
            UPDATE processing_queue
            SET status = 'completed', outcome = ?, updated_at = ?
            WHERE id = ? AND status = 'processing'
        """, (outcome, to_iso(utcnow()), item_id))
        return cursor.rowcount > 0

    def mark_failed(
        self, item_id: str, error_message: str, retryable: bool = True
    ) -> ProcessingQueueItem | None:
        """
        Record a failed attempt.

        Increments the attempt count; the item goes back to pending while
        attempts remain and the error is retryable, otherwise it becomes
        terminally failed. Returns the updated item, or None if the item
        was not processing.
        """
        now = to_iso(utcnow())

        with self.db._connect() as conn:
            cursor = conn.execute("""
                UPDATE processing_queue
                SET attempt_count = attempt_count + 1,
                    status = CASE
                        WHEN ? AND attempt_count + 1 < max_attempts THEN 'pending'
                        ELSE 'failed'
                    END,
                    last_error = ?,
                    updated_at = ?
                WHERE id = ? AND status = 'processing'
            """, (int(retryable), error_message, now, item_id))
            changed = cursor.rowcount > 0

        if not changed:
            logger.warning("Item %s was not processing, failure ignored", item_id)
            return None

        item = self.get(item_id)
        if item is not None and item.status == ItemStatus.FAILED:
            logger.error(
                "%s item %s failed permanently after %d attempt(s): %s",
                item.stage.value, item_id, item.attempt_count, error_message,
            )
        return item

    def release_interrupted(self, item_ids: list[str]) -> int:
        """processing -> pending for items whose worker died mid-attempt."""
        released = 0
        for item_id in item_ids:
            if self._transition(item_id, ItemStatus.PROCESSING, ItemStatus.PENDING):
                released += 1
        return released

    def _transition(self, item_id: str, expected: ItemStatus, new: ItemStatus) -> bool:
        now = to_iso(utcnow())

        with self.db._connect() as conn:
            cursor = conn.execute("""
                UPDATE processing_queue
                SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
            """, (new.value, now, item_id, expected.value))
            return cursor.rowcount > 0

    def summary(self, owner_id: str) -> dict[str, Any]:
        """Aggregate status counts for an owner, overall and per stage."""
        counts = {status.value: 0 for status in ItemStatus}
        by_stage: dict[str, dict[str, int]] = {
            stage.value: {status.value: 0 for status in ItemStatus}
            for stage in StageType
        }

        with self.db._connect() as conn:
            rows = conn.execute("""
                SELECT stage, status, COUNT(*) AS n FROM processing_queue
                WHERE owner_id = ?
                GROUP BY stage, status
            """, (owner_id,)).fetchall()

        for row in rows:
            counts[row["status"]] += row["n"]
            by_stage[row["stage"]][row["status"]] = row["n"]

        return {
            "owner_id": owner_id,
            "pending": counts["pending"],
            "processing": counts["processing"],
            "completed": counts["completed"],
            "failed": counts["failed"],
            "by_stage": by_stage,
        }


def _latest_on(
    conn: sqlite3.Connection, thought_id: str, stage: StageType
) -> ProcessingQueueItem | None:
    row = conn.execute("""
        SELECT * FROM processing_queue
        WHERE thought_id = ? AND stage = ?
        ORDER BY created_at DESC, rowid DESC
        LIMIT 1
    """, (thought_id, stage.value)).fetchone()
    return ProcessingQueueItem.model_validate(dict(row)) if row else None
