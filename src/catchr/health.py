"""
Health check module for Catchr.

Reports system status across all components.
"""

import os
from typing import Any

from catchr.config import get_db_path, load_config


def check_database() -> tuple[str, str]:
    """Check database status."""
    db_path = get_db_path()
    if not db_path.exists():
        return "✗", "Not found"

    try:
        from catchr.db import Database
        db = Database()
        stats = db.get_stats()
        return "✓", f"OK ({stats['total_thoughts']} thoughts, {stats['processed']} processed)"
    except Exception as e:
        return "✗", f"Error: {e}"


def check_queue() -> tuple[str, str]:
    """Check job queue backlog and dead jobs."""
    if not get_db_path().exists():
        return "-", "N/A"

    try:
        from catchr.db import Database
        from catchr.queue import JobQueue
        counts = JobQueue(Database()).counts()
    except Exception as e:
        return "✗", f"Error: {e}"

    queued = sum(c["queued"] for c in counts.values())
    running = sum(c["running"] for c in counts.values())
    dead = sum(c["dead"] for c in counts.values())

    if dead:
        return "!", f"{queued} queued, {running} running, {dead} dead"
    return "✓", f"OK ({queued} queued, {running} running)"


def check_classifier(config: dict[str, Any]) -> tuple[str, str]:
    """Check classifier credentials, resolved the way the workers resolve them."""
    from catchr.classifier import LLMClient

    try:
        llm = LLMClient(config)
    except ValueError:
        return "✗", "No API key"
    return "✓", f"OK ({llm.provider}, {llm.model})"


def check_transcription(config: dict[str, Any]) -> tuple[str, str]:
    """Check speech-to-text credentials."""
    from catchr.transcriber import WhisperTranscriber

    try:
        transcriber = WhisperTranscriber(config)
    except ValueError:
        return "✗", "No API key"
    return "✓", f"OK ({transcriber.model})"


def check_telegram(config: dict[str, Any]) -> tuple[str, str]:
    """Check Telegram bot status."""
    tg_config = config.get("telegram", {})

    token = tg_config.get("token") or os.environ.get("CATCHR_TELEGRAM_TOKEN")
    if not token:
        return "-", "Not configured"

    users = tg_config.get("authorized_users", [])
    if not users:
        env_users = os.environ.get("CATCHR_TELEGRAM_USERS", "")
        if env_users:
            users = [u.strip() for u in env_users.split(",") if u.strip()]

    if not users:
        return "!", "No authorized users"

    return "✓", f"OK ({len(users)} users)"


def run_health_check() -> dict[str, tuple[str, str]]:
    """Run all health checks."""
    config = load_config()
    return {
        "Database": check_database(),
        "Queue": check_queue(),
        "Classifier": check_classifier(config),
        "Transcription": check_transcription(config),
        "Telegram": check_telegram(config),
    }


def format_health_report(checks: dict[str, tuple[str, str]]) -> str:
    """Format health check results."""
    lines = ["Catchr Health Check", "-" * 40]

    for name, (status, message) in checks.items():
        lines.append(f"{status} {name}: {message}")

    return "\n".join(lines)
