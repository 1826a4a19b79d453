"""
Notification dispatcher for Catchr.

Best-effort, per-user signals on stage completion and failure. Losing a
notification is never a pipeline error: channel failures are logged and
swallowed.
"""

import asyncio
import logging
import os
from typing import Any, Protocol

logger = logging.getLogger(__name__)

SEND_TIMEOUT_SECONDS = 5.0


class NotificationChannel(Protocol):
    async def broadcast(self, owner_id: str, event_type: str, payload: dict[str, Any]) -> None:
        ...


def format_notification(event_type: str, payload: dict[str, Any]) -> str:
    """Human-readable one-liner for a pipeline event."""
    if event_type == "transcription_complete":
        return f"Transcribed: {payload.get('transcribed_text', '')[:200]}"
    if event_type == "enrichment_complete":
        tags = ", ".join(payload.get("tags", []))
        line = f"Filed under {payload.get('category', 'uncategorized')}"
        return f"{line} [{tags}]" if tags else line
    if event_type == "calendar_event_created":
        link = payload.get("event_link")
        line = f"Calendar event created: {payload.get('text', '')}"
        return f"{line}\n{link}" if link else line
    if event_type.endswith("_failed"):
        stage = event_type.removesuffix("_failed")
        return f"Could not finish {stage}: {payload.get('error', 'unknown error')}"
    return f"{event_type}: {payload}"


class LogChannel:
    """Writes notifications to the log."""

    async def broadcast(self, owner_id: str, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("[%s] %s %s", owner_id, event_type, payload.get("thought_id", ""))


class TelegramChannel:
    """Sends notifications to a user's Telegram chat."""

    def __init__(self, token: str, chats: dict[str, int] | None = None):
        # Lazy import keeps telegram optional for CLI-only use
        from telegram import Bot

        self.bot = Bot(token)
        self.chats = {str(k): int(v) for k, v in (chats or {}).items()}
        self._initialized = False

    def chat_for(self, owner_id: str) -> int | None:
        """Chat ID for an owner: configured mapping, else telegram:<user id>."""
        if owner_id in self.chats:
            return self.chats[owner_id]
        if owner_id.startswith("telegram:"):
            try:
                return int(owner_id.split(":", 1)[1])
            except ValueError:
                return None
        return None

    async def broadcast(self, owner_id: str, event_type: str, payload: dict[str, Any]) -> None:
        chat_id = self.chat_for(owner_id)
        if chat_id is None:
            return
        if not self._initialized:
            await self.bot.initialize()
            self._initialized = True
        await self.bot.send_message(chat_id=chat_id, text=format_notification(event_type, payload))

    async def aclose(self) -> None:
        if self._initialized:
            await self.bot.shutdown()
            self._initialized = False


class NotificationDispatcher:
    """Fans a notification out to every channel; never raises."""

    def __init__(self, channels: list[NotificationChannel] | None = None):
        self.channels = channels if channels is not None else [LogChannel()]

    async def send(self, owner_id: str, event_type: str, payload: dict[str, Any]) -> None:
        for channel in self.channels:
            try:
                await asyncio.wait_for(
                    channel.broadcast(owner_id, event_type, payload),
                    timeout=SEND_TIMEOUT_SECONDS,
                )
            except Exception as e:
                logger.warning(
                    "Notification %s for %s via %s failed: %s",
                    event_type, owner_id, type(channel).__name__, e,
                )

    async def aclose(self) -> None:
        for channel in self.channels:
            close = getattr(channel, "aclose", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    logger.warning("Closing %s failed: %s", type(channel).__name__, e)


def build_dispatcher(config: dict[str, Any]) -> NotificationDispatcher:
    """Log channel always; Telegram when a bot token is configured."""
    channels: list[NotificationChannel] = [LogChannel()]
    tg_config = config.get("telegram", {})
    token = tg_config.get("token") or os.environ.get("CATCHR_TELEGRAM_TOKEN")
    if token:
        channels.append(TelegramChannel(token, tg_config.get("chats", {})))
    return NotificationDispatcher(channels)
