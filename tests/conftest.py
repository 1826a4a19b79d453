"""Pytest fixtures for Catchr tests."""

from pathlib import Path
from typing import Any

import pytest

from catchr.db import Database
from catchr.errors import CatchrError
from catchr.manager import WorkerManager
from catchr.models import (
    CalendarCredentials,
    CalendarEventSuggestion,
    ClassificationContext,
    ClassificationResult,
    CreatedEvent,
    IntegrationSettings,
    ThoughtCategory,
    TranscriptionResult,
)
from catchr.notify import NotificationDispatcher
from catchr.queue import JobQueue
from catchr.status import ProcessingStatusStore


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep config and data directories inside the test's tmp_path."""
    home = tmp_path / "home"
    monkeypatch.setenv("CATCHR_HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    return home


@pytest.fixture
def db(tmp_path: Path) -> Database:
    return Database(tmp_path / "catchr.db")


@pytest.fixture
def queue(db: Database) -> JobQueue:
    return JobQueue(db, backoff_strategy="none", poll_interval=0.01)


@pytest.fixture
def status(db: Database) -> ProcessingStatusStore:
    return ProcessingStatusStore(db, max_attempts=3)


# Fakes for external collaborators

class FakeTranscriber:
    """Returns queued results in order; exceptions in the queue are raised."""

    def __init__(self, *results: Any):
        self.results = list(results) or ["transcribed text"]
        self.calls: list[str] = []

    async def transcribe(self, audio_reference: str) -> TranscriptionResult:
        self.calls.append(audio_reference)
        result = self.results[0] if len(self.results) == 1 else self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return TranscriptionResult(text=result, confidence=0.9)


class FakeClassifier:
    model = "fake-model"
    last_processing_time_ms = 5

    def __init__(
        self,
        main: str = "note",
        tags: list[str] | None = None,
        confidence: float = 0.9,
        error: Exception | None = None,
    ):
        self.main = main
        self.tags = tags if tags is not None else ["misc"]
        self.confidence = confidence
        self.error = error
        self.calls: list[tuple[str, ClassificationContext]] = []

    async def categorize(
        self, content: str, context: ClassificationContext
    ) -> ClassificationResult:
        self.calls.append((content, context))
        if self.error is not None:
            raise self.error
        return ClassificationResult(
            category=ThoughtCategory(main=self.main),
            tags=self.tags,
            confidence=self.confidence,
        )


class FakeDetector:
    def __init__(self, has_event: bool = True, confidence: float = 0.85, text: str = "Event"):
        self.suggestion = CalendarEventSuggestion(
            has_event=has_event,
            natural_language_text=text if has_event else None,
            confidence=confidence,
            reason="test",
        )
        self.calls: list[str] = []

    async def detect_event(self, content: str) -> CalendarEventSuggestion:
        self.calls.append(content)
        return self.suggestion


class FakeCalendar:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def create_from_natural_language(
        self, credentials: CalendarCredentials, calendar_id: str, timezone: str, text: str
    ) -> CreatedEvent:
        self.calls.append({
            "calendar_id": calendar_id, "timezone": timezone, "text": text,
        })
        if self.error is not None:
            raise self.error
        return CreatedEvent(event_id=f"evt-{len(self.calls)}", event_link="https://cal/evt")


class RecordingChannel:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    async def broadcast(self, owner_id: str, event_type: str, payload: dict[str, Any]) -> None:
        self.sent.append((owner_id, event_type, payload))
        if self.fail:
            raise CatchrError("channel down")

    def types(self) -> list[str]:
        return [event_type for _, event_type, _ in self.sent]


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def make_manager(db: Database, queue: JobQueue, status: ProcessingStatusStore, channel: RecordingChannel):
    """Factory for a WorkerManager wired to fakes."""

    def _make(
        transcriber: FakeTranscriber | None = None,
        classifier: FakeClassifier | None = None,
        detector: FakeDetector | None = None,
        calendar: FakeCalendar | None = None,
        **kwargs: Any,
    ) -> WorkerManager:
        return WorkerManager(
            db=db,
            queue=queue,
            status=status,
            notifier=NotificationDispatcher([channel]),
            transcriber=transcriber or FakeTranscriber(),
            classifier=classifier or FakeClassifier(),
            detector=detector or FakeDetector(),
            calendar=calendar or FakeCalendar(),
            **kwargs,
        )

    return _make


def enable_calendar(db: Database, owner_id: str, enabled: bool = True, auto: bool = True) -> None:
    db.save_integration_settings(IntegrationSettings(
        owner_id=owner_id,
        calendar_integration_enabled=enabled,
        auto_calendar_events_enabled=auto,
        timezone="Europe/London",
        credentials=CalendarCredentials(access_token="token"),
    ))
