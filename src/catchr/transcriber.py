"""
Speech-to-text client for Catchr.

Sends audio to the OpenAI transcription endpoint (Whisper). Audio
references are http(s) URLs, file:// URLs or local paths.
"""

import logging
import math
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

from catchr.config import load_config
from catchr.errors import TranscriptionError, UnsupportedAudioError
from catchr.models import TranscriptionResult

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = {
    "flac", "m4a", "mp3", "mp4", "mpeg", "mpga", "oga", "ogg", "wav", "webm",
}

# Provider limit on upload size
MAX_AUDIO_BYTES = 25 * 1024 * 1024


def audio_format(audio_reference: str) -> str:
    """File extension of an audio reference, lower-cased, without the dot."""
    path = urlparse(audio_reference).path or audio_reference
    return Path(path).suffix.lstrip(".").lower()


class WhisperTranscriber:
    """Transcribes audio through the OpenAI audio API."""

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config or load_config()
        tr_config = self.config.get("transcription", {})
        llm_config = self.config.get("llm", {})

        self.model = tr_config.get("model", "whisper-1")
        self.base_url = tr_config.get("base_url", "https://api.openai.com/v1")
        self.timeout = float(tr_config.get("timeout_seconds", 60.0))
        self.language = tr_config.get("language")
        self.api_key = (
            tr_config.get("api_key")
            or llm_config.get("openai_api_key")
            or os.environ.get("OPENAI_API_KEY")
        )
        if not self.api_key:
            raise ValueError(
                "OpenAI API key not found. Set OPENAI_API_KEY env var or add to config."
            )
        self._client = http_client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def transcribe(self, audio_reference: str) -> TranscriptionResult:
        """
        Transcribe the audio behind a reference.

        Raises UnsupportedAudioError for input that will never succeed
        (unknown format, missing file, rejected by the provider) and
        TranscriptionError for anything worth retrying.
        """
        fmt = audio_format(audio_reference)
        if fmt not in SUPPORTED_FORMATS:
            raise UnsupportedAudioError(f"Unsupported audio format: {fmt or 'unknown'}")

        audio = await self._load_audio(audio_reference)
        if len(audio) > MAX_AUDIO_BYTES:
            raise UnsupportedAudioError(f"Audio too large ({len(audio)} bytes)")

        data = {"model": self.model, "response_format": "verbose_json"}
        if self.language:
            data["language"] = self.language

        try:
            response = await self.client.post(
                f"{self.base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                data=data,
                files={"file": (f"audio.{fmt}", audio, f"audio/{fmt}")},
            )
        except httpx.HTTPError as e:
            raise TranscriptionError(f"Transcription request failed: {e}") from e

        if response.status_code in (400, 415):
            raise UnsupportedAudioError(f"Provider rejected audio: {response.text[:200]}")
        if response.is_error:
            raise TranscriptionError(
                f"Transcription failed with HTTP {response.status_code}"
            )

        body = response.json()
        text = (body.get("text") or "").strip()
        return TranscriptionResult(text=text, confidence=_confidence(body))

    async def _load_audio(self, audio_reference: str) -> bytes:
        parsed = urlparse(audio_reference)

        if parsed.scheme in ("http", "https"):
            try:
                response = await self.client.get(audio_reference, follow_redirects=True)
            except httpx.HTTPError as e:
                raise TranscriptionError(f"Failed to download audio: {e}") from e
            if response.status_code == 404:
                raise UnsupportedAudioError(f"Audio not found: {audio_reference}")
            if response.is_error:
                raise TranscriptionError(
                    f"Failed to download audio: HTTP {response.status_code}"
                )
            return response.content

        path = Path(parsed.path if parsed.scheme == "file" else audio_reference)
        if not path.exists():
            raise UnsupportedAudioError(f"Audio not found: {path}")
        return path.read_bytes()


def _confidence(body: dict[str, Any]) -> float:
    """Mean segment probability from a verbose_json response (1.0 if absent)."""
    segments = body.get("segments") or []
    logprobs = [s["avg_logprob"] for s in segments if "avg_logprob" in s]
    if not logprobs:
        return 1.0
    mean = sum(math.exp(lp) for lp in logprobs) / len(logprobs)
    return max(0.0, min(1.0, mean))
