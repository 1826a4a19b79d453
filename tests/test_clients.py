"""
Tests for the HTTP collaborator clients.

Uses httpx.MockTransport so no request leaves the process.
"""

import json
from datetime import timedelta
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest

from catchr.calendar import GoogleCalendarClient
from catchr.classifier import Classifier, EventDetector, LLMClient, strip_code_fence
from catchr.db import utcnow
from catchr.errors import (
    CalendarAuthorizationError,
    CalendarError,
    ClassificationError,
    TranscriptionError,
    UnsupportedAudioError,
)
from catchr.models import CalendarCredentials, ClassificationContext, MainCategory
from catchr.transcriber import WhisperTranscriber, audio_format

CONFIG = {
    "llm": {"provider": "anthropic", "anthropic_api_key": "test-key", "model": "test-model"},
    "transcription": {"api_key": "test-key", "base_url": "https://stt.test/v1"},
    "calendar": {
        "base_url": "https://cal.test/v3",
        "token_url": "https://auth.test/token",
        "client_id": "client-id",
        "client_secret": "client-secret",
    },
}


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _anthropic_reply(text: str):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["x-api-key"] == "test-key"
        return httpx.Response(200, json={"content": [{"type": "text", "text": text}]})
    return handler


# Classifier

def test_strip_code_fence():
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('{"a": 1}') == '{"a": 1}'


@pytest.mark.asyncio
async def test_categorize_parses_fenced_json():
    reply = '```json\n' + json.dumps({
        "category": {"main": "Task", "subcategory": "errand"},
        "tags": ["#Groceries", "groceries", "dairy"],
        "confidence": 0.9,
        "reminder_at": None,
        "suggestions": {"expansion_prompts": ["Which store?"]},
    }) + '\n```'
    classifier = Classifier(LLMClient(CONFIG, http_client=_client(_anthropic_reply(reply))))

    result = await classifier.categorize("Buy milk", ClassificationContext())

    assert result.category.main == MainCategory.TASK
    assert result.category.icon
    assert result.tags == ["groceries", "dairy"]
    assert result.suggestions.expansion_prompts == ["Which store?"]
    assert classifier.model == "test-model"


@pytest.mark.asyncio
async def test_unknown_category_becomes_uncategorized():
    reply = json.dumps({"category": {"main": "recipe"}, "tags": [], "confidence": 0.4})
    classifier = Classifier(LLMClient(CONFIG, http_client=_client(_anthropic_reply(reply))))

    result = await classifier.categorize("Pancakes", ClassificationContext())

    assert result.category.main == MainCategory.UNCATEGORIZED


@pytest.mark.asyncio
async def test_invalid_json_raises_classification_error():
    classifier = Classifier(LLMClient(CONFIG, http_client=_client(_anthropic_reply("not json"))))

    with pytest.raises(ClassificationError):
        await classifier.categorize("Buy milk", ClassificationContext())


@pytest.mark.asyncio
async def test_out_of_range_confidence_raises_classification_error():
    reply = json.dumps({"category": {"main": "task"}, "confidence": 3})
    classifier = Classifier(LLMClient(CONFIG, http_client=_client(_anthropic_reply(reply))))

    with pytest.raises(ClassificationError):
        await classifier.categorize("Buy milk", ClassificationContext())


@pytest.mark.asyncio
async def test_provider_error_raises_classification_error():
    def handler(request):
        return httpx.Response(529, json={"error": "overloaded"})

    classifier = Classifier(LLMClient(CONFIG, http_client=_client(handler)))

    with pytest.raises(ClassificationError):
        await classifier.categorize("Buy milk", ClassificationContext())


@pytest.mark.asyncio
async def test_detect_event():
    reply = json.dumps({
        "has_event": True,
        "natural_language_text": "Dentist tomorrow at 3pm",
        "confidence": 0.88,
        "reason": "appointment with a time",
    })
    detector = EventDetector(LLMClient(CONFIG, http_client=_client(_anthropic_reply(reply))))

    suggestion = await detector.detect_event("Dentist appointment tomorrow at 3pm")

    assert suggestion.has_event is True
    assert suggestion.natural_language_text == "Dentist tomorrow at 3pm"
    assert suggestion.confidence == 0.88


def test_missing_api_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

    with pytest.raises(ValueError):
        LLMClient({"llm": {"provider": "anthropic"}})


# Transcriber

def test_audio_format():
    assert audio_format("/tmp/memo.M4A") == "m4a"
    assert audio_format("https://files.test/voice.ogg?sig=1") == "ogg"
    assert audio_format("memo") == ""


@pytest.mark.asyncio
async def test_transcribe_local_file(tmp_path: Path):
    audio = tmp_path / "memo.wav"
    audio.write_bytes(b"RIFF....")

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/audio/transcriptions"
        return httpx.Response(200, json={
            "text": " Buy milk ",
            "segments": [{"avg_logprob": 0.0}],
        })

    transcriber = WhisperTranscriber(CONFIG, http_client=_client(handler))
    result = await transcriber.transcribe(str(audio))

    assert result.text == "Buy milk"
    assert result.confidence == 1.0


@pytest.mark.asyncio
async def test_unsupported_format_is_rejected_without_request():
    def handler(request):
        raise AssertionError("no request expected")

    transcriber = WhisperTranscriber(CONFIG, http_client=_client(handler))

    with pytest.raises(UnsupportedAudioError):
        await transcriber.transcribe("/tmp/notes.txt")


@pytest.mark.asyncio
async def test_missing_audio_file_is_not_retryable(tmp_path: Path):
    transcriber = WhisperTranscriber(CONFIG, http_client=_client(lambda r: httpx.Response(200)))

    with pytest.raises(UnsupportedAudioError):
        await transcriber.transcribe(str(tmp_path / "gone.mp3"))


@pytest.mark.asyncio
async def test_provider_failure_is_retryable(tmp_path: Path):
    audio = tmp_path / "memo.mp3"
    audio.write_bytes(b"ID3")
    transcriber = WhisperTranscriber(
        CONFIG, http_client=_client(lambda r: httpx.Response(503, text="busy"))
    )

    with pytest.raises(TranscriptionError):
        await transcriber.transcribe(str(audio))


@pytest.mark.asyncio
async def test_provider_rejecting_audio_is_not_retryable(tmp_path: Path):
    audio = tmp_path / "memo.mp3"
    audio.write_bytes(b"garbage")
    transcriber = WhisperTranscriber(
        CONFIG, http_client=_client(lambda r: httpx.Response(400, text="could not decode"))
    )

    with pytest.raises(UnsupportedAudioError):
        await transcriber.transcribe(str(audio))


# Calendar

@pytest.mark.asyncio
async def test_quick_add_creates_event():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v3/calendars/primary/events/quickAdd"
        assert request.url.params["text"] == "Dentist tomorrow 3pm"
        assert request.headers["Authorization"] == "Bearer tok"
        return httpx.Response(200, json={"id": "evt-9", "htmlLink": "https://cal/evt-9"})

    client = GoogleCalendarClient(CONFIG, http_client=_client(handler))
    event = await client.create_from_natural_language(
        CalendarCredentials(access_token="tok"), "primary", "UTC", "Dentist tomorrow 3pm"
    )

    assert event.event_id == "evt-9"
    assert event.event_link == "https://cal/evt-9"


@pytest.mark.asyncio
async def test_expired_token_raises_authorization_error():
    client = GoogleCalendarClient(CONFIG, http_client=_client(lambda r: httpx.Response(401)))

    with pytest.raises(CalendarAuthorizationError):
        await client.create_from_natural_language(
            CalendarCredentials(access_token="old"), "primary", "UTC", "Dentist"
        )


@pytest.mark.asyncio
async def test_missing_token_raises_authorization_error():
    client = GoogleCalendarClient(CONFIG, http_client=_client(lambda r: httpx.Response(200)))

    with pytest.raises(CalendarAuthorizationError):
        await client.create_from_natural_language(CalendarCredentials(), "primary", "UTC", "x")


@pytest.mark.asyncio
async def test_server_error_is_retryable_calendar_error():
    client = GoogleCalendarClient(CONFIG, http_client=_client(lambda r: httpx.Response(500)))

    with pytest.raises(CalendarError):
        await client.create_from_natural_language(
            CalendarCredentials(access_token="tok"), "primary", "UTC", "Dentist"
        )


@pytest.mark.asyncio
async def test_forbidden_is_retryable_calendar_error():
    client = GoogleCalendarClient(CONFIG, http_client=_client(lambda r: httpx.Response(403)))

    with pytest.raises(CalendarError) as excinfo:
        await client.create_from_natural_language(
            CalendarCredentials(access_token="tok"), "primary", "UTC", "Dentist"
        )
    assert not isinstance(excinfo.value, CalendarAuthorizationError)


@pytest.mark.asyncio
async def test_calendar_id_is_quoted():
    def handler(request: httpx.Request) -> httpx.Response:
        assert b"/calendars/family%23home@group.calendar.google.com/" in request.url.raw_path
        assert request.url.path == (
            "/v3/calendars/family#home@group.calendar.google.com/events/quickAdd"
        )
        return httpx.Response(200, json={"id": "evt-1"})

    client = GoogleCalendarClient(CONFIG, http_client=_client(handler))
    event = await client.create_from_natural_language(
        CalendarCredentials(access_token="tok"),
        "family#home@group.calendar.google.com", "UTC", "Dentist",
    )

    assert event.event_id == "evt-1"


def _token_endpoint(calls: list[dict], status_code: int = 200, **body):
    """Handler serving both the token endpoint and quickAdd."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "auth.test":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            calls.append(form)
            return httpx.Response(status_code, json=body)
        if request.headers["Authorization"] != "Bearer fresh":
            return httpx.Response(401)
        return httpx.Response(200, json={"id": "evt-2"})

    return handler


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_before_the_call():
    calls = []
    client = GoogleCalendarClient(
        CONFIG, http_client=_client(_token_endpoint(calls, access_token="fresh", expires_in=600))
    )
    credentials = CalendarCredentials(
        access_token="old",
        refresh_token="refresh-1",
        expires_at=utcnow() - timedelta(minutes=5),
    )

    event = await client.create_from_natural_language(credentials, "primary", "UTC", "Dentist")

    assert calls == [{
        "grant_type": "refresh_token",
        "refresh_token": "refresh-1",
        "client_id": "client-id",
        "client_secret": "client-secret",
    }]
    assert event.event_id == "evt-2"
    refreshed = event.refreshed_credentials
    assert refreshed.access_token == "fresh"
    assert refreshed.refresh_token == "refresh-1"
    assert refreshed.expires_at > utcnow()


@pytest.mark.asyncio
async def test_rejected_token_is_refreshed_once_and_retried():
    calls = []
    client = GoogleCalendarClient(
        CONFIG,
        http_client=_client(_token_endpoint(
            calls, access_token="fresh", refresh_token="refresh-2", expires_in=3600,
        )),
    )

    event = await client.create_from_natural_language(
        CalendarCredentials(access_token="old", refresh_token="refresh-1"),
        "primary", "UTC", "Dentist",
    )

    assert len(calls) == 1
    assert event.event_id == "evt-2"
    assert event.refreshed_credentials.refresh_token == "refresh-2"


@pytest.mark.asyncio
async def test_valid_token_is_not_refreshed():
    calls = []
    client = GoogleCalendarClient(
        CONFIG, http_client=_client(_token_endpoint(calls, access_token="unused"))
    )

    event = await client.create_from_natural_language(
        CalendarCredentials(
            access_token="fresh",
            refresh_token="refresh-1",
            expires_at=utcnow() + timedelta(hours=1),
        ),
        "primary", "UTC", "Dentist",
    )

    assert calls == []
    assert event.refreshed_credentials is None


@pytest.mark.asyncio
async def test_revoked_refresh_raises_authorization_error():
    calls = []
    client = GoogleCalendarClient(
        CONFIG, http_client=_client(_token_endpoint(calls, 400, error="invalid_grant"))
    )

    with pytest.raises(CalendarAuthorizationError, match="revoked"):
        await client.create_from_natural_language(
            CalendarCredentials(access_token="old", refresh_token="refresh-1"),
            "primary", "UTC", "Dentist",
        )
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_token_endpoint_outage_is_retryable():
    client = GoogleCalendarClient(
        CONFIG, http_client=_client(_token_endpoint([], 503, error="unavailable"))
    )

    with pytest.raises(CalendarError) as excinfo:
        await client.create_from_natural_language(
            CalendarCredentials(refresh_token="refresh-1"), "primary", "UTC", "Dentist"
        )
    assert not isinstance(excinfo.value, CalendarAuthorizationError)
