"""
LLM classifier for Catchr.

Two calls share one provider client:
- categorize: category, tags, confidence and suggestions for a thought
- detect_event: whether a thought is calendar-worthy
Supports both Anthropic and OpenAI APIs.
"""

import json
import os
import time
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import ValidationError

from catchr.config import load_config
from catchr.errors import ClassificationError
from catchr.models import (
    CalendarEventSuggestion,
    ClassificationContext,
    ClassificationResult,
    MainCategory,
)

# Default models for each provider
DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",  # Fast and cheap for classification
    "openai": "gpt-4o-mini",
}


CATEGORIZE_PROMPT = """You categorize captured thoughts for a personal note-taking app called Catchr.

## Categories (ONLY these exist)
{categories}

## Thought
```
{input}
```

## Context
Today's date: {today}
Recent thoughts from this user (newest first):
{recent}
User preferences: {preferences}

## Rules
- Pick ONE main category. Add a short subcategory only if it is obvious.
- 1 to 5 lowercase tags; extract #hashtags as tags
- confidence is how sure you are of the category (0.0-1.0)
- reminder_at only when the thought names a specific time (ISO 8601, else null)
- Keep expansion_prompts to at most 3 short questions

## Output
Return ONLY valid JSON matching this schema:
```json
{{
  "category": {{"main": "one of the categories", "subcategory": "string or null"}},
  "tags": ["tag1", "tag2"],
  "confidence": 0.0-1.0,
  "reminder_at": "ISO 8601 datetime or null",
  "suggestions": {{
    "expansion_prompts": ["question"],
    "related_topics": ["topic"],
    "entities": [{{"type": "person|date|amount|location|task", "value": "text"}}]
  }}
}}
```

Return ONLY the JSON object, no explanation or markdown."""


EVENT_PROMPT = """You are Catchr's calendar event detector. Decide whether a thought is calendar-worthy.

Calendar-worthy thoughts contain:
1. Meetings (with people, times or dates)
2. Appointments (doctor, dentist, etc.)
3. Events (concerts, conferences, parties)
4. Deadlines with specific dates
5. Time-based reminders

## Thought
```
{input}
```

Today's date: {today}

## Output
Return ONLY valid JSON:
```json
{{
  "has_event": true,
  "natural_language_text": "quick-add text, e.g. Meeting with Sarah tomorrow at 3pm",
  "confidence": 0.0-1.0,
  "reason": "why this is or is not a calendar event"
}}
```

Be precise. Only report events for time-specific activities."""


def strip_code_fence(response: str) -> str:
    """Strip markdown code blocks if present."""
    text = response.strip()
    if text.startswith("```"):
        # Remove opening ``` and optional language tag
        lines = text.split("\n")
        lines = lines[1:]
        # Remove closing ```
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)
    return text


class LLMClient:
    """Async chat client for Anthropic or OpenAI, configured from config.toml."""

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config or load_config()
        self.llm_config = self.config.get("llm", {})
        self.timeout = float(self.llm_config.get("timeout_seconds", 30.0))
        self._client = http_client

        # Determine provider (anthropic is default)
        self.provider = self.llm_config.get("provider", "anthropic")

        if self.provider == "anthropic":
            self.api_key = (
                self.llm_config.get("anthropic_api_key")
                or os.environ.get("ANTHROPIC_API_KEY")
            )
            self.model = self.llm_config.get("model", DEFAULT_MODELS["anthropic"])
            self.base_url = "https://api.anthropic.com/v1"
            if not self.api_key:
                raise ValueError(
                    "Anthropic API key not found. Set ANTHROPIC_API_KEY env var or add to config."
                )
        else:  # openai
            self.api_key = (
                self.llm_config.get("openai_api_key")
                or os.environ.get("OPENAI_API_KEY")
            )
            self.model = self.llm_config.get("model", DEFAULT_MODELS["openai"])
            self.base_url = self.llm_config.get("base_url", "https://api.openai.com/v1")
            if not self.api_key:
                raise ValueError(
                    "OpenAI API key not found. Set OPENAI_API_KEY env var or add to config."
                )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def complete(self, prompt: str) -> str:
        """Send one prompt and return the raw text reply."""
        try:
            if self.provider == "anthropic":
                return await self._call_anthropic(prompt)
            return await self._call_openai(prompt)
        except httpx.HTTPError as e:
            raise ClassificationError(f"{self.provider} request failed: {e}") from e
        except (KeyError, IndexError, ValueError) as e:
            raise ClassificationError(f"Unexpected {self.provider} response: {e}") from e

    async def _call_anthropic(self, prompt: str) -> str:
        """Call Anthropic API."""
        response = await self.client.post(
            f"{self.base_url}/messages",
            headers={
                "x-api-key": self.api_key,
                "Content-Type": "application/json",
                "anthropic-version": "2023-06-01",
            },
            json={
                "model": self.model,
                "max_tokens": 1024,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": 0.3,  # Lower temp for consistent classification
            },
        )
        response.raise_for_status()
        return response.json()["content"][0]["text"]

    async def _call_openai(self, prompt: str) -> str:
        """Call OpenAI API."""
        response = await self.client.post(
            f"{self.base_url}/chat/completions",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": 0.3,
                "response_format": {"type": "json_object"},
            },
        )
        response.raise_for_status()
        return response.json()["choices"][0]["message"]["content"]


def _parse_json(response: str) -> dict[str, Any]:
    try:
        data = json.loads(strip_code_fence(response))
    except json.JSONDecodeError as e:
        raise ClassificationError(f"Model returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ClassificationError("Model returned JSON that is not an object")
    return data


class Classifier:
    """Categorizes thoughts. Stateless per call."""

    def __init__(self, llm: LLMClient):
        self.llm = llm
        self.last_processing_time_ms = 0

    @property
    def model(self) -> str:
        return self.llm.model

    async def categorize(
        self, content: str, context: ClassificationContext
    ) -> ClassificationResult:
        """
        Classify raw content.

        Raises ClassificationError when the call fails or the reply does not
        validate; the caller decides whether to retry.
        """
        start_time = time.time()
        prompt = CATEGORIZE_PROMPT.format(
            categories="\n".join(f"- {c.value}" for c in MainCategory),
            input=content,
            today=datetime.now(timezone.utc).strftime("%Y-%m-%d"),
            recent="\n".join(
                f"- [{t.get('category')}] {t.get('content', '')[:80]}"
                for t in context.recent_thoughts
            ) or "- none",
            preferences=json.dumps(context.preferences) if context.preferences else "none",
        )

        response = await self.llm.complete(prompt)
        self.last_processing_time_ms = int((time.time() - start_time) * 1000)

        try:
            return ClassificationResult.model_validate(_parse_json(response))
        except ValidationError as e:
            raise ClassificationError(f"Classifier output failed validation: {e}") from e


class EventDetector:
    """Decides whether a thought should become a calendar event."""

    def __init__(self, llm: LLMClient):
        self.llm = llm

    async def detect_event(self, content: str) -> CalendarEventSuggestion:
        prompt = EVENT_PROMPT.format(
            input=content,
            today=datetime.now(timezone.utc).strftime("%Y-%m-%d"),
        )
        response = await self.llm.complete(prompt)

        try:
            return CalendarEventSuggestion.model_validate(_parse_json(response))
        except ValidationError as e:
            raise ClassificationError(f"Event detector output failed validation: {e}") from e
