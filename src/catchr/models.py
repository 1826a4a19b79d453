"""
Data models for the enrichment pipeline.

Pydantic models for thoughts, processing status items, queue jobs and
the payloads exchanged with external collaborators.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class StageType(str, Enum):
    """Pipeline stages, in forward order."""

    TRANSCRIBE = "transcribe"
    ENRICH = "enrich"
    CALENDAR = "calendar"


STAGE_ORDER = (StageType.TRANSCRIBE, StageType.ENRICH, StageType.CALENDAR)


class ItemStatus(str, Enum):
    """Processing status of one (thought, stage) item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.COMPLETED, ItemStatus.FAILED)


class JobState(str, Enum):
    """Delivery state of a queued job."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    DEAD = "dead"


class MainCategory(str, Enum):
    """Closed set of top-level thought categories."""

    TASK = "task"
    IDEA = "idea"
    NOTE = "note"
    REMINDER = "reminder"
    MEETING = "meeting"
    LEARNING = "learning"
    PERSONAL = "personal"
    UNCATEGORIZED = "uncategorized"


# Presentation metadata per category: (color, icon)
CATEGORY_STYLE: dict[MainCategory, tuple[str, str]] = {
    MainCategory.TASK: ("#F59E0B", "✅"),
    MainCategory.IDEA: ("#8B5CF6", "💡"),
    MainCategory.NOTE: ("#3B82F6", "🗒️"),
    MainCategory.REMINDER: ("#EF4444", "⏰"),
    MainCategory.MEETING: ("#10B981", "📅"),
    MainCategory.LEARNING: ("#06B6D4", "📚"),
    MainCategory.PERSONAL: ("#EC4899", "🏠"),
    MainCategory.UNCATEGORIZED: ("#6B7280", "📝"),
}


class ThoughtCategory(BaseModel):
    """Category of a thought. Color and icon follow from the main category."""

    main: MainCategory = MainCategory.UNCATEGORIZED
    subcategory: str | None = None
    color: str = ""
    icon: str = ""

    @field_validator("main", mode="before")
    @classmethod
    def _coerce_main(cls, value: Any) -> Any:
        # Unknown labels from the model collapse to uncategorized
        if isinstance(value, str):
            value = value.strip().lower()
            if value not in MainCategory._value2member_map_:
                return MainCategory.UNCATEGORIZED
        return value

    @model_validator(mode="after")
    def _apply_style(self) -> "ThoughtCategory":
        color, icon = CATEGORY_STYLE[self.main]
        self.color = self.color or color
        self.icon = self.icon or icon
        return self


class Entity(BaseModel):
    """An entity extracted from a thought."""

    type: str = Field(description="person, date, amount, location or task")
    value: str


class ThoughtSuggestions(BaseModel):
    """Free-form suggestions returned by the classifier."""

    expansion_prompts: list[str] = Field(default_factory=list)
    related_topics: list[str] = Field(default_factory=list)
    entities: list[Entity] = Field(default_factory=list)


class CalendarEventRecord(BaseModel):
    """Reference to a calendar event created from a thought."""

    event_id: str
    event_link: str | None = None
    text: str
    created_at: datetime


class Thought(BaseModel):
    """A captured note."""

    id: str
    owner_id: str
    content: str
    transcribed_text: str | None = None
    audio_reference: str | None = None
    category: ThoughtCategory = Field(default_factory=ThoughtCategory)
    tags: list[str] = Field(default_factory=list)
    confidence: float | None = Field(default=None, ge=0, le=1)
    suggestions: ThoughtSuggestions | None = None
    processed: bool = False
    processed_at: datetime | None = None
    reminder_at: datetime | None = None
    calendar_event: CalendarEventRecord | None = None
    created_at: datetime
    updated_at: datetime


class ProcessingQueueItem(BaseModel):
    """Progress record for one (thought, stage) attempt lineage."""

    id: str
    thought_id: str
    owner_id: str
    stage: StageType
    status: ItemStatus = ItemStatus.PENDING
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    last_error: str | None = None
    outcome: str | None = None
    created_at: datetime
    updated_at: datetime


# Job payloads, one per stage

class TranscribePayload(BaseModel):
    thought_id: str
    owner_id: str
    audio_reference: str


class EnrichPayload(BaseModel):
    thought_id: str
    owner_id: str
    content: str


class CalendarPayload(BaseModel):
    thought_id: str
    owner_id: str
    content: str


StagePayload = TranscribePayload | EnrichPayload | CalendarPayload

PAYLOAD_TYPES: dict[StageType, type[BaseModel]] = {
    StageType.TRANSCRIBE: TranscribePayload,
    StageType.ENRICH: EnrichPayload,
    StageType.CALENDAR: CalendarPayload,
}


class Job(BaseModel):
    """A unit of queued work for one stage."""

    id: str
    stage: StageType
    item_id: str
    payload: dict[str, Any]
    state: JobState = JobState.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    available_at: datetime
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime

    def typed_payload(self) -> StagePayload:
        """Validate the raw payload against this stage's payload model."""
        return PAYLOAD_TYPES[self.stage].model_validate(self.payload)


# Collaborator results

class TranscriptionResult(BaseModel):
    text: str
    confidence: float = Field(default=1.0, ge=0, le=1)


class ClassificationContext(BaseModel):
    """Light context used to bias classification."""

    recent_thoughts: list[dict[str, Any]] = Field(default_factory=list)
    preferences: dict[str, Any] = Field(default_factory=dict)


class ClassificationResult(BaseModel):
    """Schema for classifier output."""

    category: ThoughtCategory
    tags: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0, le=1)
    suggestions: ThoughtSuggestions = Field(default_factory=ThoughtSuggestions)
    reminder_at: datetime | None = None

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, tags: list[str]) -> list[str]:
        seen: list[str] = []
        for tag in tags:
            tag = tag.strip().lstrip("#").lower()
            if tag and tag not in seen:
                seen.append(tag)
        return seen


class CalendarEventSuggestion(BaseModel):
    """Result of calendar-worthiness detection. Never persisted."""

    has_event: bool = False
    natural_language_text: str | None = None
    confidence: float = Field(default=0.0, ge=0, le=1)
    reason: str = ""


class CalendarCredentials(BaseModel):
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class IntegrationSettings(BaseModel):
    """Per-user integration settings. Owned by the account layer."""

    owner_id: str
    calendar_integration_enabled: bool = False
    auto_calendar_events_enabled: bool = False
    timezone: str = "America/Los_Angeles"
    default_calendar_id: str = "primary"
    credentials: CalendarCredentials = Field(default_factory=CalendarCredentials)


class CreatedEvent(BaseModel):
    event_id: str
    event_link: str | None = None
    # Set when the access token had to be refreshed to create the event
    refreshed_credentials: CalendarCredentials | None = None
