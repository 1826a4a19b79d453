"""
Telegram bot for Catchr.

Mobile ingress: text and voice notes go straight into the pipeline.
Workers run separately (`catchr run`); this process only captures.
"""

import logging
import os
from pathlib import Path
from typing import Any

from telegram import Update
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from catchr.config import ensure_dirs, get_catchr_home, load_config
from catchr.pipeline import Pipeline, build_pipeline

logger = logging.getLogger(__name__)


def get_bot_config() -> dict[str, Any]:
    """Get bot configuration."""
    config = load_config()
    bot_config = config.get("telegram", {})

    # Token from config or environment
    token = bot_config.get("token") or os.environ.get("CATCHR_TELEGRAM_TOKEN")
    if not token:
        raise ValueError(
            "Telegram bot token not found. "
            "Set CATCHR_TELEGRAM_TOKEN env var or add to config.toml"
        )

    # Authorized user IDs (comma-separated in env, list in config)
    authorized = bot_config.get("authorized_users", [])
    if not authorized:
        env_users = os.environ.get("CATCHR_TELEGRAM_USERS", "")
        if env_users:
            authorized = [int(uid.strip()) for uid in env_users.split(",") if uid.strip()]

    return {
        "token": token,
        "authorized_users": {int(uid) for uid in authorized},
        "config": config,
    }


def is_authorized(user_id: int, authorized_users: set[int]) -> bool:
    """Check if user is authorized."""
    # If no users configured, deny all (secure default)
    if not authorized_users:
        return False
    return user_id in authorized_users


def owner_for(user_id: int) -> str:
    """Owner id for a Telegram user."""
    return f"telegram:{user_id}"


def get_audio_dir() -> Path:
    """Where downloaded voice notes are kept until transcribed."""
    path = get_catchr_home() / "audio"
    path.mkdir(parents=True, exist_ok=True)
    return path


def format_status(summary: dict[str, Any]) -> str:
    """Format a status summary for Telegram (plain text, compact)."""
    lines = [
        "STATUS",
        "",
        f"pending {summary['pending']} | processing {summary['processing']}",
        f"completed {summary['completed']} | failed {summary['failed']}",
    ]
    for stage, counts in summary["by_stage"].items():
        active = {k: v for k, v in counts.items() if v}
        if active:
            parts = ", ".join(f"{k} {v}" for k, v in active.items())
            lines.append(f"{stage}: {parts}")
    return "\n".join(lines)


async def _authorized(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    user_id = update.effective_user.id
    if is_authorized(user_id, context.bot_data.get("authorized_users", set())):
        return True
    logger.warning("Unauthorized message attempt from user %s", user_id)
    await update.message.reply_text(f"Unauthorized. Your ID: {user_id}")
    return False


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start command."""
    if not update.effective_user or not update.message:
        return

    user_id = update.effective_user.id
    authorized_users = context.bot_data.get("authorized_users", set())

    if is_authorized(user_id, authorized_users):
        await update.message.reply_text(
            "Catchr ready. Send text or a voice note to capture it.\n\n"
            "Commands:\n"
            "/status - Processing status\n"
            "/id - Show your user ID"
        )
    else:
        await update.message.reply_text(
            f"Unauthorized. Your user ID: {user_id}\n"
            "Add this ID to CATCHR_TELEGRAM_USERS to authorize."
        )


async def id_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /id command - show user's Telegram ID."""
    if not update.effective_user or not update.message:
        return

    await update.message.reply_text(f"Your Telegram user ID: {update.effective_user.id}")


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /status command - processing status for the sender."""
    if not update.effective_user or not update.message:
        return
    if not await _authorized(update, context):
        return

    pipeline: Pipeline = context.bot_data["pipeline"]
    try:
        summary = pipeline.summary(owner_for(update.effective_user.id))
        await update.message.reply_text(format_status(summary))
    except Exception as e:
        await update.message.reply_text(f"Error: {e}")


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle incoming text - capture straight to enrichment."""
    if not update.effective_user or not update.message:
        return
    if not await _authorized(update, context):
        return

    text = update.message.text
    if not text or not text.strip():
        await update.message.reply_text("Nothing to capture.")
        return

    pipeline: Pipeline = context.bot_data["pipeline"]
    try:
        thought = pipeline.capture(owner_for(update.effective_user.id), text)
        await update.message.reply_text(f"Captured: {thought.id[:8]}")
        logger.info("Captured from Telegram user %s: %s", update.effective_user.id, thought.id)
    except Exception as e:
        logger.error("Failed to capture: %s", e)
        await update.message.reply_text(f"Error capturing thought: {e}")


async def handle_voice(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle voice notes - download, then capture for transcription."""
    if not update.effective_user or not update.message:
        return
    if not await _authorized(update, context):
        return

    voice = update.message.voice or update.message.audio
    if voice is None:
        return

    pipeline: Pipeline = context.bot_data["pipeline"]
    try:
        tg_file = await voice.get_file()
        path = get_audio_dir() / f"{voice.file_unique_id}.ogg"
        await tg_file.download_to_drive(path)

        caption = update.message.caption or ""
        thought = pipeline.capture(
            owner_for(update.effective_user.id), caption, audio_reference=str(path)
        )
        await update.message.reply_text(f"Voice note captured: {thought.id[:8]}")
        logger.info("Captured voice note from %s: %s", update.effective_user.id, thought.id)
    except Exception as e:
        logger.error("Failed to capture voice note: %s", e)
        await update.message.reply_text(f"Error capturing voice note: {e}")


def run_bot() -> None:
    """Run the Telegram bot."""
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.INFO,
    )
    config = get_bot_config()
    ensure_dirs()

    # Create application
    app = Application.builder().token(config["token"]).build()

    app.bot_data["authorized_users"] = config["authorized_users"]
    app.bot_data["pipeline"] = build_pipeline(config["config"])

    # Add handlers
    app.add_handler(CommandHandler("start", start_command))
    app.add_handler(CommandHandler("id", id_command))
    app.add_handler(CommandHandler("status", status_command))
    app.add_handler(MessageHandler(filters.VOICE | filters.AUDIO, handle_voice))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))

    # Log startup info
    if config["authorized_users"]:
        logger.info("Bot starting. Authorized users: %s", config["authorized_users"])
    else:
        logger.warning("No authorized users configured! Bot will deny all messages.")

    app.run_polling(allowed_updates=Update.ALL_TYPES)


def main() -> int:
    """Entry point for CLI."""
    try:
        run_bot()
        return 0
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nBot stopped.")
        return 0


if __name__ == "__main__":
    import sys
    sys.exit(main())
