"""
Stage workers for Catchr.

Each worker is a queue handler for one stage. The shared base takes the
status item into processing and records failed attempts; subclasses
implement `process`, which finishes through a pipeline transition so the
item completes in the same transaction that admits the next stage.
"""

import asyncio
import logging
import re
from typing import Any, Awaitable, Protocol, TypeVar

from pydantic import ValidationError

from catchr.db import Database, utcnow
from catchr.errors import (
    AttemptsExhaustedError,
    EmptyContentError,
    InvalidPayloadError,
    StageError,
    ThoughtNotFoundError,
    is_retryable,
)
from catchr.models import (
    CalendarCredentials,
    CalendarEventRecord,
    CalendarEventSuggestion,
    CalendarPayload,
    ClassificationContext,
    ClassificationResult,
    CreatedEvent,
    EnrichPayload,
    ItemStatus,
    Job,
    ProcessingQueueItem,
    StagePayload,
    StageType,
    Thought,
    TranscribePayload,
    TranscriptionResult,
)
from catchr.notify import NotificationDispatcher
from catchr.pipeline import Pipeline
from catchr.status import ProcessingStatusStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CALL_TIMEOUT = 120.0
CALENDAR_CONFIDENCE_THRESHOLD = 0.7
RECENT_CONTEXT_LIMIT = 5


# Collaborator contracts

class SpeechToText(Protocol):
    async def transcribe(self, audio_reference: str) -> TranscriptionResult: ...


class ThoughtClassifier(Protocol):
    model: str
    last_processing_time_ms: int

    async def categorize(
        self, content: str, context: ClassificationContext
    ) -> ClassificationResult: ...


class CalendarDetector(Protocol):
    async def detect_event(self, content: str) -> CalendarEventSuggestion: ...


class CalendarCreator(Protocol):
    async def create_from_natural_language(
        self, credentials: CalendarCredentials, calendar_id: str, timezone: str, text: str
    ) -> CreatedEvent: ...


# Event heuristic

EVENT_PATTERNS = [
    r"\bremind(?:er|ers|s)?\b",
    r"\bremember\b",
    r"\b(?:today|tonight|tomorrow|tmrw)\b",
    r"\bnext\s+(?:week|month|year|monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b",
    r"\bthis\s+(?:week|weekend|morning|afternoon|evening)\b",
    r"\b(?:mon|tues|wednes|thurs|fri|satur|sun)day\b",
    r"\b(?:meeting|appointment|deadline|call with|lunch with|dinner with)\b",
    r"\bdue\s+(?:on|by|at)\b",
    r"\b\d{1,2}(?::\d{2})?\s*(?:am|pm)\b",
    r"\bat\s+\d{1,2}:\d{2}\b",
    r"\b\d{4}-\d{2}-\d{2}\b",
    r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b",
    r"\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?\s+\d{1,2}(?:st|nd|rd|th)?\b",
    r"\bin\s+\d+\s+(?:minutes?|hours?|days?|weeks?)\b",
]

_EVENT_RE = re.compile("|".join(EVENT_PATTERNS), re.IGNORECASE)


def looks_like_event(content: str) -> bool:
    """Keyword/temporal match deciding whether a thought is a calendar candidate."""
    return bool(_EVENT_RE.search(content))


class StageWorker:
    """Base queue handler: status bookkeeping around one attempt."""

    stage: StageType

    def __init__(
        self,
        db: Database,
        status: ProcessingStatusStore,
        pipeline: Pipeline,
        notifier: NotificationDispatcher,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
    ):
        self.db = db
        self.status = status
        self.pipeline = pipeline
        self.notifier = notifier
        self.call_timeout = call_timeout

    async def __call__(self, job: Job) -> None:
        try:
            payload = job.typed_payload()
        except ValidationError as e:
            raise InvalidPayloadError(
                f"Malformed {job.stage.value} payload in job {job.id} ({e.error_count()} error(s))"
            ) from e

        item = self.status.get(job.item_id)
        if item is None:
            raise ThoughtNotFoundError(f"No status item {job.item_id} for job {job.id}")

        if item.status.is_terminal:
            logger.info("Item %s already %s, dropping redelivery", item.id, item.status.value)
            return
        if not self.status.mark_processing(item.id):
            logger.warning("Item %s is being processed elsewhere, dropping delivery", item.id)
            return

        try:
            outcome = await self.process(item, payload)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            retryable = is_retryable(e)
            updated = self.status.mark_failed(item.id, message, retryable=retryable)

            if updated is not None and updated.status == ItemStatus.FAILED:
                await self.notifier.send(payload.owner_id, f"{self.stage.value}_failed", {
                    "thought_id": payload.thought_id,
                    "error": message,
                    "attempts": updated.attempt_count,
                })
                if retryable:
                    raise AttemptsExhaustedError(message) from e
            raise

        logger.info("%s done for thought %s: %s", self.stage.value, payload.thought_id, outcome)

    async def process(self, item: ProcessingQueueItem, payload: StagePayload) -> str:
        """
        Run one attempt and finish it through a pipeline transition.

        Returns the outcome recorded on the item.
        """
        raise NotImplementedError

    async def call(self, awaitable: Awaitable[T], what: str) -> T:
        """Await a collaborator call with a bounded timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise StageError(f"{what} timed out after {self.call_timeout:.0f}s") from e

    def load_thought(self, thought_id: str) -> Thought:
        thought = self.db.get_thought(thought_id)
        if thought is None:
            raise ThoughtNotFoundError(f"Thought not found: {thought_id}")
        return thought


class TranscriptionWorker(StageWorker):
    """Audio -> text, then hands the text to enrichment."""

    stage = StageType.TRANSCRIBE

    def __init__(self, *args: Any, transcriber: SpeechToText, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.transcriber = transcriber

    async def process(self, item: ProcessingQueueItem, payload: TranscribePayload) -> str:
        self.load_thought(payload.thought_id)

        result = await self.call(
            self.transcriber.transcribe(payload.audio_reference), "Transcription"
        )
        text = result.text.strip()
        if not text:
            raise EmptyContentError("Transcription returned no text")

        if not self.db.set_transcription(payload.thought_id, payload.owner_id, text):
            raise ThoughtNotFoundError(f"Thought not found: {payload.thought_id}")

        self.pipeline.on_transcribe_success(item.id, payload.thought_id, payload.owner_id, text)

        await self.notifier.send(payload.owner_id, "transcription_complete", {
            "thought_id": payload.thought_id,
            "transcribed_text": text,
            "confidence": result.confidence,
        })
        return "transcribed"


class EnrichmentWorker(StageWorker):
    """Classifies and tags a thought; flags calendar candidates."""

    stage = StageType.ENRICH

    def __init__(self, *args: Any, classifier: ThoughtClassifier, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.classifier = classifier

    def gather_context(self, owner_id: str) -> ClassificationContext:
        """Recent processed thoughts and stored preferences for an owner."""
        recent = self.db.get_recent_processed(owner_id, limit=RECENT_CONTEXT_LIMIT)
        return ClassificationContext(
            recent_thoughts=recent,
            preferences=self.db.get_preferences(owner_id),
        )

    async def process(self, item: ProcessingQueueItem, payload: EnrichPayload) -> str:
        content = payload.content.strip()
        if not content:
            raise EmptyContentError("Nothing to enrich")

        self.load_thought(payload.thought_id)
        context = self.gather_context(payload.owner_id)

        try:
            result = await self.call(
                self.classifier.categorize(content, context), "Classification"
            )
        except Exception as e:
            self.db.log_classification(
                thought_id=payload.thought_id,
                raw_input=content,
                llm_output=str(e),
                llm_model=self.classifier.model,
                confidence=0.0,
                processing_time_ms=self.classifier.last_processing_time_ms,
                status="error",
            )
            raise

        if not self.db.apply_enrichment(payload.thought_id, payload.owner_id, result):
            raise ThoughtNotFoundError(f"Thought not found: {payload.thought_id}")

        self.db.log_classification(
            thought_id=payload.thought_id,
            raw_input=content,
            llm_output=result.model_dump_json(),
            llm_model=self.classifier.model,
            confidence=result.confidence,
            processing_time_ms=self.classifier.last_processing_time_ms,
            status="classified",
        )

        # Classification confidence is informational; the calendar stage
        # runs its own detection and threshold.
        candidate = looks_like_event(content)
        self.pipeline.on_enrich_success(
            item.id, payload.thought_id, payload.owner_id, content, event_candidate=candidate
        )

        await self.notifier.send(payload.owner_id, "enrichment_complete", {
            "thought_id": payload.thought_id,
            "category": result.category.main.value,
            "tags": result.tags,
            "confidence": result.confidence,
            "event_candidate": candidate,
        })
        return "calendar_candidate" if candidate else "classified"


class CalendarWorker(StageWorker):
    """Creates a calendar event when every gate passes."""

    stage = StageType.CALENDAR

    def __init__(
        self,
        *args: Any,
        detector: CalendarDetector,
        calendar: CalendarCreator,
        confidence_threshold: float = CALENDAR_CONFIDENCE_THRESHOLD,
        default_timezone: str = "America/Los_Angeles",
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.detector = detector
        self.calendar = calendar
        self.confidence_threshold = confidence_threshold
        self.default_timezone = default_timezone

    async def process(self, item: ProcessingQueueItem, payload: CalendarPayload) -> str:
        outcome, event = await self.create_event(payload)
        self.pipeline.on_calendar_done(item.id, outcome)

        if event is not None:
            await self.notifier.send(payload.owner_id, "calendar_event_created", {
                "thought_id": payload.thought_id,
                "event_id": event.event_id,
                "event_link": event.event_link,
                "text": event.text,
            })
        return outcome

    async def create_event(
        self, payload: CalendarPayload
    ) -> tuple[str, CalendarEventRecord | None]:
        """Apply the gates in order; create the event if all of them pass."""
        settings = self.db.get_integration_settings(payload.owner_id)
        if not settings.calendar_integration_enabled:
            return "skipped:integration_disabled", None
        if not settings.auto_calendar_events_enabled:
            return "skipped:auto_events_disabled", None

        thought = self.load_thought(payload.thought_id)
        if thought.calendar_event is not None:
            return "skipped:already_created", None

        suggestion = await self.call(
            self.detector.detect_event(payload.content), "Event detection"
        )
        if not suggestion.has_event or not suggestion.natural_language_text:
            logger.info("No calendar event in thought %s: %s", payload.thought_id, suggestion.reason)
            return "skipped:no_event", None
        if suggestion.confidence < self.confidence_threshold:
            logger.info(
                "Event confidence too low for thought %s (%.2f < %.2f)",
                payload.thought_id, suggestion.confidence, self.confidence_threshold,
            )
            return "skipped:low_confidence", None

        text = suggestion.natural_language_text
        created = await self.call(
            self.calendar.create_from_natural_language(
                settings.credentials,
                settings.default_calendar_id,
                settings.timezone or self.default_timezone,
                text,
            ),
            "Calendar event creation",
        )
        if created.refreshed_credentials is not None:
            self.db.update_calendar_credentials(payload.owner_id, created.refreshed_credentials)

        record = CalendarEventRecord(
            event_id=created.event_id,
            event_link=created.event_link,
            text=text,
            created_at=utcnow(),
        )
        self.db.record_calendar_event(payload.thought_id, record)
        self.db.insert_notification(
            owner_id=payload.owner_id,
            thought_id=payload.thought_id,
            notification_type="calendar_event_created",
            title="Calendar Event Created",
            message=f"Created calendar event: {text}",
        )
        return "event_created", record
