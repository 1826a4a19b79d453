"""
Stage transitions for Catchr.

The only way work enters the queue. Each stage is admitted through the
status store first, so a (thought, stage) pair is enqueued at most once
while it is in flight. Each worker finishes through an explicit
transition that completes its item and admits the next stage in the
same transaction:

    capture --(audio)--> transcribe --on_transcribe_success--> enrich
    capture --(text)-----------------------------------------> enrich
    enrich --on_enrich_success (event candidate)--> calendar
"""

import logging
import sqlite3
from typing import Any

from catchr.db import Database
from catchr.errors import EmptyContentError, QueueUnavailableError, ThoughtNotFoundError
from catchr.models import (
    CalendarPayload,
    EnrichPayload,
    ItemStatus,
    ProcessingQueueItem,
    StagePayload,
    StageType,
    Thought,
    TranscribePayload,
)
from catchr.queue import JobQueue
from catchr.status import ProcessingStatusStore

logger = logging.getLogger(__name__)


class Pipeline:
    """Admission and stage-to-stage hand-off."""

    def __init__(self, db: Database, queue: JobQueue, status: ProcessingStatusStore):
        self.db = db
        self.queue = queue
        self.status = status

    def submit(self, stage: StageType, payload: StagePayload) -> ProcessingQueueItem | None:
        """
        Admit and enqueue one stage for a thought.

        Returns the new item, or None when the pair was already admitted
        (in flight or completed). The item and its job are written in one
        transaction; QueueUnavailableError means neither was stored.
        """
        try:
            with self.db._connect() as conn:
                item, created = self._hand_off(conn, stage, payload)
        except sqlite3.IntegrityError as e:
            # Lost an admission race: the unique index holds the winner
            winner = self.status._latest(payload.thought_id, stage)
            if winner is None or winner.status == ItemStatus.FAILED:
                raise QueueUnavailableError(f"Could not submit {stage.value}: {e}") from e
            item, created = winner, False
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Could not submit {stage.value}: {e}") from e

        if not created:
            logger.info(
                "%s for thought %s already %s, not enqueued",
                stage.value, payload.thought_id, item.status.value,
            )
            return None

        logger.info("Submitted %s for thought %s", stage.value, payload.thought_id)
        return item

    def _hand_off(
        self, conn: sqlite3.Connection, stage: StageType, payload: StagePayload
    ) -> tuple[ProcessingQueueItem, bool]:
        item, created = self.status.admit(conn, payload.thought_id, payload.owner_id, stage)
        if created:
            self.queue.insert_job(conn, stage, payload, item.id, item.max_attempts)
        return item, created

    def complete(
        self,
        item_id: str,
        outcome: str,
        next_stage: StageType | None = None,
        next_payload: StagePayload | None = None,
    ) -> bool:
        """
        Mark an item completed and admit the next stage in one transaction.

        The next stage only ever exists once this one has completed. Returns
        False, chaining nothing, if the item was not processing.
        """
        try:
            with self.db._connect() as conn:
                if not self.status.complete(conn, item_id, outcome):
                    logger.warning("Item %s was not processing, completion ignored", item_id)
                    return False
                if next_stage is not None and next_payload is not None:
                    self._hand_off(conn, next_stage, next_payload)
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Could not complete item {item_id}: {e}") from e
        return True

    def submit_transcribe(
        self, thought_id: str, owner_id: str, audio_reference: str
    ) -> ProcessingQueueItem | None:
        return self.submit(
            StageType.TRANSCRIBE,
            TranscribePayload(
                thought_id=thought_id, owner_id=owner_id, audio_reference=audio_reference
            ),
        )

    def submit_enrich(
        self, thought_id: str, owner_id: str, content: str
    ) -> ProcessingQueueItem | None:
        return self.submit(
            StageType.ENRICH,
            EnrichPayload(thought_id=thought_id, owner_id=owner_id, content=content),
        )

    def submit_calendar(
        self, thought_id: str, owner_id: str, content: str
    ) -> ProcessingQueueItem | None:
        return self.submit(
            StageType.CALENDAR,
            CalendarPayload(thought_id=thought_id, owner_id=owner_id, content=content),
        )

    # Transitions

    def on_transcribe_success(
        self, item_id: str, thought_id: str, owner_id: str, text: str
    ) -> bool:
        """Transcription done: complete it and enrich the transcribed text."""
        return self.complete(
            item_id,
            "transcribed",
            StageType.ENRICH,
            EnrichPayload(thought_id=thought_id, owner_id=owner_id, content=text),
        )

    def on_enrich_success(
        self, item_id: str, thought_id: str, owner_id: str, content: str, event_candidate: bool
    ) -> bool:
        """Enrichment done: complete it and hand event candidates to the calendar stage."""
        if not event_candidate:
            return self.complete(item_id, "classified")
        return self.complete(
            item_id,
            "calendar_candidate",
            StageType.CALENDAR,
            CalendarPayload(thought_id=thought_id, owner_id=owner_id, content=content),
        )

    def on_calendar_done(self, item_id: str, outcome: str) -> bool:
        """Calendar stage finished (event created or a gate skipped it)."""
        return self.complete(item_id, outcome)

    # Capture path

    def capture(
        self, owner_id: str, content: str, audio_reference: str | None = None
    ) -> Thought:
        """
        Store a new thought and start its pipeline.

        Audio goes to transcription first; text goes straight to enrichment.
        """
        if not content.strip() and not audio_reference:
            raise EmptyContentError("Empty thought")

        thought = self.db.insert_thought(owner_id, content, audio_reference=audio_reference)

        if audio_reference:
            self.submit_transcribe(thought.id, owner_id, audio_reference)
        else:
            self.submit_enrich(thought.id, owner_id, content)

        return thought

    def retry(self, thought_id: str, stage: StageType) -> ProcessingQueueItem | None:
        """
        Re-admit a stage whose latest item failed.

        Returns None if the stage has no failed item to retry.
        """
        thought = self.db.get_thought(thought_id)
        if thought is None:
            raise ThoughtNotFoundError(f"Thought not found: {thought_id}")

        items = [i for i in self.status.items_for_thought(thought_id) if i.stage == stage]
        if not items or items[-1].status != ItemStatus.FAILED:
            return None

        if stage == StageType.TRANSCRIBE:
            if not thought.audio_reference:
                return None
            return self.submit_transcribe(thought.id, thought.owner_id, thought.audio_reference)

        content = thought.transcribed_text or thought.content
        if stage == StageType.ENRICH:
            return self.submit_enrich(thought.id, thought.owner_id, content)
        return self.submit_calendar(thought.id, thought.owner_id, content)

    def summary(self, owner_id: str) -> dict[str, Any]:
        return self.status.summary(owner_id)


def build_pipeline(config: dict[str, Any], db: Database | None = None) -> Pipeline:
    """Pipeline wiring without external clients, for the capture surfaces."""
    pipeline_config = config.get("pipeline", {})
    db = db or Database()
    queue = JobQueue(
        db,
        backoff_strategy=pipeline_config.get("backoff_strategy", "exponential"),
        backoff_base_seconds=float(pipeline_config.get("backoff_base_seconds", 2.0)),
        poll_interval=float(pipeline_config.get("poll_interval_seconds", 1.0)),
    )
    status = ProcessingStatusStore(db, max_attempts=int(pipeline_config.get("max_attempts", 3)))
    return Pipeline(db, queue, status)
