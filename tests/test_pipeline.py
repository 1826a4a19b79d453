"""
End-to-end tests for the enrichment pipeline.

Drives a WorkerManager wired to fake collaborators through `drain()`:
capture -> transcribe -> enrich -> calendar, with retries, failure
handling and the calendar gates.

Run with: pytest tests/test_pipeline.py -v
"""

import asyncio
import sqlite3
from datetime import timedelta

import pytest

from catchr.errors import (
    CalendarAuthorizationError,
    ClassificationError,
    EmptyContentError,
    QueueUnavailableError,
    RunnerBusyError,
    TranscriptionError,
)
from catchr.db import utcnow
from catchr.models import (
    CalendarCredentials,
    CalendarEventRecord,
    CreatedEvent,
    EnrichPayload,
    ItemStatus,
    MainCategory,
    StageType,
    TranscribePayload,
)

from conftest import (
    FakeCalendar,
    FakeClassifier,
    FakeDetector,
    FakeTranscriber,
    enable_calendar,
)

OWNER = "user-1"


def _items(manager, thought_id):
    return {
        item.stage: item
        for item in manager.status.items_for_thought(thought_id)
    }


@pytest.mark.asyncio
async def test_event_above_threshold_creates_calendar_event(db, make_manager, channel):
    enable_calendar(db, OWNER)
    detector = FakeDetector(confidence=0.85, text="Meeting with Sarah tomorrow 3pm")
    calendar = FakeCalendar()
    manager = make_manager(detector=detector, calendar=calendar)

    thought = manager.pipeline.capture(OWNER, "Meeting with Sarah tomorrow at 3pm")
    await manager.drain()

    items = _items(manager, thought.id)
    assert items[StageType.ENRICH].status == ItemStatus.COMPLETED
    assert items[StageType.ENRICH].outcome == "calendar_candidate"
    assert items[StageType.CALENDAR].status == ItemStatus.COMPLETED
    assert items[StageType.CALENDAR].outcome == "event_created"

    stored = db.get_thought(thought.id)
    assert stored.calendar_event.event_id == "evt-1"
    assert stored.calendar_event.text == "Meeting with Sarah tomorrow 3pm"
    assert calendar.calls == [{
        "calendar_id": "primary", "timezone": "Europe/London",
        "text": "Meeting with Sarah tomorrow 3pm",
    }]

    notifications = db.get_notifications(OWNER)
    assert len(notifications) == 1
    assert notifications[0]["type"] == "calendar_event_created"
    assert channel.types() == ["enrichment_complete", "calendar_event_created"]


@pytest.mark.asyncio
async def test_event_below_threshold_is_skipped(db, make_manager, channel):
    enable_calendar(db, OWNER)
    calendar = FakeCalendar()
    manager = make_manager(detector=FakeDetector(confidence=0.5), calendar=calendar)

    thought = manager.pipeline.capture(OWNER, "Lunch with Sam tomorrow")
    await manager.drain()

    item = _items(manager, thought.id)[StageType.CALENDAR]
    assert item.status == ItemStatus.COMPLETED
    assert item.outcome == "skipped:low_confidence"
    assert calendar.calls == []
    assert db.get_thought(thought.id).calendar_event is None
    assert db.get_notifications(OWNER) == []
    assert "calendar_event_created" not in channel.types()


@pytest.mark.asyncio
async def test_disabled_integration_skips_detection(db, make_manager):
    enable_calendar(db, OWNER, enabled=False)
    detector = FakeDetector()
    calendar = FakeCalendar()
    manager = make_manager(detector=detector, calendar=calendar)

    thought = manager.pipeline.capture(OWNER, "Team meeting on Friday at 10am")
    await manager.drain()

    item = _items(manager, thought.id)[StageType.CALENDAR]
    assert item.status == ItemStatus.COMPLETED
    assert item.outcome == "skipped:integration_disabled"
    assert detector.calls == []
    assert calendar.calls == []


@pytest.mark.asyncio
async def test_disabled_auto_events_skips_detection(db, make_manager):
    enable_calendar(db, OWNER, auto=False)
    detector = FakeDetector()
    manager = make_manager(detector=detector)

    thought = manager.pipeline.capture(OWNER, "Team meeting on Friday at 10am")
    await manager.drain()

    assert _items(manager, thought.id)[StageType.CALENDAR].outcome == "skipped:auto_events_disabled"
    assert detector.calls == []


@pytest.mark.asyncio
async def test_no_settings_row_means_disabled(make_manager):
    detector = FakeDetector()
    manager = make_manager(detector=detector)

    thought = manager.pipeline.capture(OWNER, "Call the plumber tomorrow")
    await manager.drain()

    assert _items(manager, thought.id)[StageType.CALENDAR].outcome == "skipped:integration_disabled"
    assert detector.calls == []


@pytest.mark.asyncio
async def test_detector_finding_no_event_creates_nothing(db, make_manager):
    enable_calendar(db, OWNER)
    calendar = FakeCalendar()
    manager = make_manager(detector=FakeDetector(has_event=False), calendar=calendar)

    thought = manager.pipeline.capture(OWNER, "Remember that tomorrow never comes")
    await manager.drain()

    assert _items(manager, thought.id)[StageType.CALENDAR].outcome == "skipped:no_event"
    assert calendar.calls == []


@pytest.mark.asyncio
async def test_existing_event_is_not_created_twice(db, make_manager):
    enable_calendar(db, OWNER)
    calendar = FakeCalendar()
    manager = make_manager(calendar=calendar)

    thought = manager.pipeline.capture(OWNER, "Dentist appointment tomorrow at 3pm")
    db.record_calendar_event(thought.id, CalendarEventRecord(
        event_id="existing", text="Dentist", created_at=utcnow(),
    ))
    await manager.drain()

    assert _items(manager, thought.id)[StageType.CALENDAR].outcome == "skipped:already_created"
    assert calendar.calls == []
    assert db.get_thought(thought.id).calendar_event.event_id == "existing"


@pytest.mark.asyncio
async def test_transcription_fails_after_three_attempts(db, make_manager, channel):
    observed = []

    class FlakyTranscriber(FakeTranscriber):
        async def transcribe(self, audio_reference):
            with db._connect() as conn:
                row = conn.execute(
                    "SELECT status, attempt_count FROM processing_queue WHERE stage = 'transcribe'"
                ).fetchone()
            observed.append((row["status"], row["attempt_count"]))
            raise TranscriptionError("provider timeout")

    transcriber = FlakyTranscriber()
    manager = make_manager(transcriber=transcriber)

    thought = manager.pipeline.capture(OWNER, "", audio_reference="memo.m4a")
    await manager.drain()

    # Each attempt starts from pending and runs as processing
    assert observed == [("processing", 0), ("processing", 1), ("processing", 2)]

    items = _items(manager, thought.id)
    item = items[StageType.TRANSCRIBE]
    assert item.status == ItemStatus.FAILED
    assert item.attempt_count == 3
    assert item.last_error == "provider timeout"
    assert StageType.ENRICH not in items

    assert manager.queue.counts()["transcribe"]["dead"] == 1
    assert channel.types() == ["transcribe_failed"]


@pytest.mark.asyncio
async def test_voice_note_flows_into_enrichment(db, make_manager, channel):
    classifier = FakeClassifier(main="task", tags=["Groceries", "#shopping"], confidence=0.92)
    manager = make_manager(transcriber=FakeTranscriber("Buy milk"), classifier=classifier)

    thought = manager.pipeline.capture(OWNER, "", audio_reference="/tmp/memo.m4a")
    await manager.drain()

    items = manager.status.items_for_thought(thought.id)
    assert [(i.stage, i.status) for i in items] == [
        (StageType.TRANSCRIBE, ItemStatus.COMPLETED),
        (StageType.ENRICH, ItemStatus.COMPLETED),
    ]
    assert classifier.calls[0][0] == "Buy milk"

    stored = db.get_thought(thought.id)
    assert stored.transcribed_text == "Buy milk"
    assert stored.category.main == MainCategory.TASK
    assert stored.tags == ["groceries", "shopping"]
    assert stored.confidence == 0.92
    assert stored.processed is True
    assert channel.types() == ["transcription_complete", "enrichment_complete"]


@pytest.mark.asyncio
async def test_text_capture_skips_transcription(make_manager):
    transcriber = FakeTranscriber()
    manager = make_manager(transcriber=transcriber)

    thought = manager.pipeline.capture(OWNER, "An idea about gardens")
    await manager.drain()

    assert list(_items(manager, thought.id)) == [StageType.ENRICH]
    assert transcriber.calls == []


def test_empty_capture_is_rejected(make_manager):
    manager = make_manager()

    with pytest.raises(EmptyContentError):
        manager.pipeline.capture(OWNER, "   ")


@pytest.mark.asyncio
async def test_empty_transcript_fails_without_retry(make_manager):
    transcriber = FakeTranscriber("   ")
    manager = make_manager(transcriber=transcriber)

    thought = manager.pipeline.capture(OWNER, "", audio_reference="silence.wav")
    await manager.drain()

    item = _items(manager, thought.id)[StageType.TRANSCRIBE]
    assert item.status == ItemStatus.FAILED
    assert item.attempt_count == 1
    assert len(transcriber.calls) == 1


@pytest.mark.asyncio
async def test_expired_calendar_authorization_fails_immediately(db, make_manager, channel):
    enable_calendar(db, OWNER)
    calendar = FakeCalendar(error=CalendarAuthorizationError("token revoked"))
    manager = make_manager(calendar=calendar)

    thought = manager.pipeline.capture(OWNER, "Dentist appointment tomorrow at 3pm")
    await manager.drain()

    item = _items(manager, thought.id)[StageType.CALENDAR]
    assert item.status == ItemStatus.FAILED
    assert item.attempt_count == 1
    assert item.last_error == "token revoked"
    assert len(calendar.calls) == 1
    assert manager.queue.counts()["calendar"]["dead"] == 1
    assert "calendar_failed" in channel.types()
    assert db.get_notifications(OWNER) == []


@pytest.mark.asyncio
async def test_classifier_errors_are_retried_and_logged(db, make_manager):
    observed = []

    class FailingClassifier(FakeClassifier):
        async def categorize(self, content, context):
            with db._connect() as conn:
                row = conn.execute(
                    "SELECT status, attempt_count FROM processing_queue WHERE stage = 'enrich'"
                ).fetchone()
            observed.append((row["status"], row["attempt_count"]))
            return await super().categorize(content, context)

    classifier = FailingClassifier(error=ClassificationError("invalid JSON"))
    manager = make_manager(classifier=classifier)

    thought = manager.pipeline.capture(OWNER, "Meeting notes from tomorrow")
    await manager.drain()

    items = _items(manager, thought.id)
    assert items[StageType.ENRICH].status == ItemStatus.FAILED
    assert items[StageType.ENRICH].attempt_count == 3
    assert StageType.CALENDAR not in items
    assert len(classifier.calls) == 3
    assert observed == [("processing", 0), ("processing", 1), ("processing", 2)]
    assert items[StageType.ENRICH].last_error == "invalid JSON"
    assert db.get_thought(thought.id).processed is False

    with db._connect() as conn:
        statuses = [
            row["status"] for row in conn.execute(
                "SELECT status FROM classifier_logs WHERE thought_id = ?", (thought.id,)
            )
        ]
    assert statuses == ["error", "error", "error"]


@pytest.mark.asyncio
async def test_classifier_context_includes_recent_thoughts(make_manager):
    classifier = FakeClassifier()
    manager = make_manager(classifier=classifier)

    manager.pipeline.capture(OWNER, "First idea")
    await manager.drain()
    manager.pipeline.capture(OWNER, "Second idea")
    await manager.drain()

    context = classifier.calls[1][1]
    assert [t["content"] for t in context.recent_thoughts] == ["First idea"]


@pytest.mark.asyncio
async def test_redelivered_job_for_completed_item_is_dropped(make_manager):
    classifier = FakeClassifier()
    manager = make_manager(classifier=classifier)

    thought = manager.pipeline.capture(OWNER, "Buy milk")
    await manager.drain()

    item = _items(manager, thought.id)[StageType.ENRICH]
    payload = EnrichPayload(thought_id=thought.id, owner_id=OWNER, content="Buy milk")
    manager.queue.enqueue(StageType.ENRICH, payload, item.id)
    await manager.drain()

    assert len(classifier.calls) == 1
    assert manager.queue.counts()["enrich"]["done"] == 2
    assert manager.status.get(item.id).status == ItemStatus.COMPLETED


@pytest.mark.asyncio
async def test_resubmitting_a_stage_is_a_no_op(make_manager):
    manager = make_manager()

    thought = manager.pipeline.capture(OWNER, "Buy milk")

    assert manager.pipeline.submit_enrich(thought.id, OWNER, "Buy milk") is None
    assert manager.queue.counts()["enrich"]["queued"] == 1


@pytest.mark.asyncio
async def test_manual_retry_of_failed_stage(make_manager):
    transcriber = FakeTranscriber(
        TranscriptionError("down"), TranscriptionError("down"), TranscriptionError("down"),
    )
    manager = make_manager(transcriber=transcriber)

    thought = manager.pipeline.capture(OWNER, "", audio_reference="memo.m4a")
    await manager.drain()
    assert _items(manager, thought.id)[StageType.TRANSCRIBE].status == ItemStatus.FAILED

    transcriber.results = ["Call the bank"]
    retried = manager.pipeline.retry(thought.id, StageType.TRANSCRIBE)
    assert retried is not None
    await manager.drain()

    items = _items(manager, thought.id)
    assert items[StageType.TRANSCRIBE].id == retried.id
    assert items[StageType.TRANSCRIBE].status == ItemStatus.COMPLETED
    assert items[StageType.ENRICH].status == ItemStatus.COMPLETED


def test_retry_requires_a_failed_stage(make_manager):
    manager = make_manager()
    thought = manager.pipeline.capture(OWNER, "Buy milk")

    assert manager.pipeline.retry(thought.id, StageType.ENRICH) is None
    assert manager.pipeline.retry(thought.id, StageType.CALENDAR) is None


def test_enqueue_failure_rolls_back_admission(make_manager, monkeypatch):
    manager = make_manager()

    def unavailable(*args, **kwargs):
        raise sqlite3.OperationalError("disk full")

    monkeypatch.setattr(manager.queue, "insert_job", unavailable)

    with pytest.raises(QueueUnavailableError):
        manager.pipeline.capture(OWNER, "Buy milk")

    with manager.db._connect() as conn:
        assert conn.execute("SELECT COUNT(*) FROM processing_queue").fetchone()[0] == 0


@pytest.mark.asyncio
async def test_notification_failures_do_not_fail_stages(make_manager, channel):
    channel.fail = True
    manager = make_manager()

    thought = manager.pipeline.capture(OWNER, "Buy milk")
    await manager.drain()

    assert _items(manager, thought.id)[StageType.ENRICH].status == ItemStatus.COMPLETED
    assert channel.types() == ["enrichment_complete"]


@pytest.mark.asyncio
async def test_interrupted_work_is_recovered(make_manager):
    classifier = FakeClassifier()
    manager = make_manager(classifier=classifier)

    thought = manager.pipeline.capture(OWNER, "Buy milk")
    # Simulate a crash mid-attempt
    job = manager.queue.claim(StageType.ENRICH)
    assert manager.status.mark_processing(job.item_id)

    await manager.drain()

    item = _items(manager, thought.id)[StageType.ENRICH]
    assert item.status == ItemStatus.COMPLETED
    assert len(classifier.calls) == 1


@pytest.mark.asyncio
async def test_start_and_shutdown(make_manager):
    closed = []

    class Resource:
        async def aclose(self):
            closed.append(True)

    manager = make_manager(resources=[Resource()])
    thought = manager.pipeline.capture(OWNER, "Buy milk")

    await manager.start()
    with pytest.raises(RuntimeError):
        await manager.start()

    for _ in range(200):
        item = _items(manager, thought.id).get(StageType.ENRICH)
        if item and item.status == ItemStatus.COMPLETED:
            break
        await asyncio.sleep(0.01)

    await asyncio.wait_for(manager.shutdown(), timeout=2)

    assert _items(manager, thought.id)[StageType.ENRICH].status == ItemStatus.COMPLETED
    assert closed == [True]


@pytest.mark.asyncio
async def test_crash_mid_attempt_still_fails_the_item(make_manager, channel):
    transcriber = FakeTranscriber(TranscriptionError("provider timeout"))
    manager = make_manager(transcriber=transcriber)

    thought = manager.pipeline.capture(OWNER, "", audio_reference="memo.m4a")
    # Simulate a crash mid-attempt
    job = manager.queue.claim(StageType.TRANSCRIBE)
    assert manager.status.mark_processing(job.item_id)

    await manager.drain()

    item = _items(manager, thought.id)[StageType.TRANSCRIBE]
    assert item.status == ItemStatus.FAILED
    assert item.attempt_count == 3
    assert len(transcriber.calls) == 3
    assert manager.queue.counts()["transcribe"]["dead"] == 1
    assert not manager.queue.has_pending()
    assert channel.types() == ["transcribe_failed"]


@pytest.mark.asyncio
async def test_second_runner_cannot_take_over_live_work(db, make_manager):
    enable_calendar(db, OWNER)
    entered = asyncio.Event()
    release = asyncio.Event()

    class SlowCalendar(FakeCalendar):
        async def create_from_natural_language(self, credentials, calendar_id, timezone, text):
            entered.set()
            await release.wait()
            return await super().create_from_natural_language(
                credentials, calendar_id, timezone, text
            )

    calendar = SlowCalendar()
    daemon = make_manager(calendar=calendar)
    thought = daemon.pipeline.capture(OWNER, "Dentist appointment tomorrow at 3pm")
    await daemon.start()
    try:
        await asyncio.wait_for(entered.wait(), timeout=2)

        one_shot = make_manager(calendar=calendar)
        with pytest.raises(RunnerBusyError):
            await one_shot.drain()

        release.set()
        for _ in range(200):
            item = _items(daemon, thought.id)[StageType.CALENDAR]
            if item.status == ItemStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
    finally:
        release.set()
        await asyncio.wait_for(daemon.shutdown(), timeout=2)

    assert len(calendar.calls) == 1
    assert _items(daemon, thought.id)[StageType.CALENDAR].outcome == "event_created"


@pytest.mark.asyncio
async def test_runner_lock_is_released_after_drain(make_manager):
    first = make_manager()
    first.pipeline.capture(OWNER, "Buy milk")
    await first.drain()

    second = make_manager()
    second.pipeline.capture(OWNER, "Call mom")
    await second.drain()

    assert not first.lock.held
    assert not second.lock.held
    assert second.queue.counts()["enrich"]["done"] == 2


@pytest.mark.asyncio
async def test_next_stage_is_admitted_with_completion(db, make_manager, channel):
    seen = []
    record = channel.broadcast

    async def broadcast(owner_id, event_type, payload):
        if event_type == "transcription_complete":
            with db._connect() as conn:
                seen.extend(
                    (row["stage"], row["status"])
                    for row in conn.execute(
                        "SELECT stage, status FROM processing_queue ORDER BY rowid"
                    )
                )
        await record(owner_id, event_type, payload)

    channel.broadcast = broadcast
    manager = make_manager(transcriber=FakeTranscriber("Buy milk"))

    manager.pipeline.capture(OWNER, "", audio_reference="memo.m4a")
    await manager.drain()

    assert seen == [("transcribe", "completed"), ("enrich", "pending")]


@pytest.mark.asyncio
async def test_failed_hand_off_leaves_stage_incomplete(make_manager, monkeypatch):
    manager = make_manager(transcriber=FakeTranscriber("Buy milk"))
    thought = manager.pipeline.capture(OWNER, "", audio_reference="memo.m4a")

    def unavailable(*args, **kwargs):
        raise sqlite3.OperationalError("disk full")

    monkeypatch.setattr(manager.queue, "insert_job", unavailable)
    await manager.drain()

    items = _items(manager, thought.id)
    assert list(items) == [StageType.TRANSCRIBE]
    assert items[StageType.TRANSCRIBE].status == ItemStatus.FAILED
    assert items[StageType.TRANSCRIBE].attempt_count == 3
    assert manager.queue.counts()["enrich"]["queued"] == 0


@pytest.mark.asyncio
async def test_malformed_payload_fails_the_item(db, make_manager):
    manager = make_manager()
    thought = db.insert_thought(OWNER, "Buy milk")
    item, _ = manager.status.create_or_get_pending(thought.id, OWNER, StageType.ENRICH)
    payload = TranscribePayload(thought_id=thought.id, owner_id=OWNER, audio_reference="memo.m4a")
    manager.queue.enqueue(StageType.ENRICH, payload, item.id)

    await manager.drain()

    stored = manager.status.get(item.id)
    assert stored.status == ItemStatus.FAILED
    assert "Malformed enrich payload" in stored.last_error
    assert manager.queue.counts()["enrich"]["dead"] == 1
    assert not manager.queue.has_pending()


@pytest.mark.asyncio
async def test_refreshed_calendar_token_is_stored(db, make_manager):
    enable_calendar(db, OWNER)
    refreshed = CalendarCredentials(
        access_token="fresh",
        refresh_token="refresh",
        expires_at=utcnow() + timedelta(hours=1),
    )

    class RefreshingCalendar(FakeCalendar):
        async def create_from_natural_language(self, credentials, calendar_id, timezone, text):
            created = await super().create_from_natural_language(
                credentials, calendar_id, timezone, text
            )
            return CreatedEvent(
                event_id=created.event_id,
                event_link=created.event_link,
                refreshed_credentials=refreshed,
            )

    manager = make_manager(calendar=RefreshingCalendar())
    thought = manager.pipeline.capture(OWNER, "Dentist appointment tomorrow at 3pm")
    await manager.drain()

    assert _items(manager, thought.id)[StageType.CALENDAR].outcome == "event_created"
    stored = db.get_integration_settings(OWNER).credentials
    assert stored.access_token == "fresh"
    assert stored.refresh_token == "refresh"
    assert stored.expires_at is not None
