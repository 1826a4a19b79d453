"""
CLI for Catchr.

Minimal CLI using stdlib for fast startup on the capture path.
Subcommands are imported lazily to avoid startup overhead.

Usage:
    catchr "your thought here"      # Capture (primary interface)
    catchr run                      # Run the pipeline workers
    catchr --help                   # Show help
"""

import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def print_help() -> None:
    """Print help message."""
    print("""catchr - capture thoughts, enrich them in the background

Usage:
    catchr "your thought here"    Capture a thought

Commands:
    catchr capture --audio <ref> [text]
                                  Capture a voice note (path or URL)
    catchr run                    Run the pipeline workers until stopped
    catchr process                Work through queued jobs, then exit
    catchr status [owner]         Processing status counts
    catchr items <thought_id>     Status items for one thought
    catchr retry <thought_id> <stage>
                                  Retry a failed stage (transcribe, enrich, calendar)
    catchr settings [options]     Show or change calendar integration settings
                                  (--owner, --calendar on|off, --auto-events on|off,
                                   --timezone, --calendar-id, --token)
    catchr bot                    Run the Telegram bot
    catchr health                 Show component health

Options:
    catchr --help, -h             Show this help
    catchr --version, -v          Show version

Examples:
    catchr "Buy milk"
    catchr "Dentist appointment tomorrow at 3pm"
    catchr capture --audio ~/notes/memo.m4a
    catchr retry 7c1e... enrich

The thought is stored instantly. Transcription, classification and
calendar events happen in the background.""")


def print_version() -> None:
    """Print version."""
    from catchr import __version__
    print(f"catchr {__version__}")


def get_owner_id(config: dict) -> str:
    return str(config.get("user", {}).get("id", "local"))


def capture(text: str, audio_reference: str | None = None) -> str:
    """
    Capture a thought and start its pipeline.

    Returns the thought ID.
    """
    from catchr.config import ensure_dirs, load_config
    from catchr.pipeline import build_pipeline

    ensure_dirs()
    config = load_config()
    pipeline = build_pipeline(config)
    thought = pipeline.capture(get_owner_id(config), text, audio_reference=audio_reference)
    return thought.id


def cmd_capture(args: list[str]) -> int:
    """Capture text, or audio with --audio."""
    audio_reference = None
    words = []

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("--audio", "-a") and i + 1 < len(args):
            audio_reference = args[i + 1]
            i += 2
        else:
            words.append(arg)
            i += 1

    text = " ".join(words)
    if not text.strip() and not audio_reference:
        print("Usage: catchr capture [--audio <ref>] [text]", file=sys.stderr)
        return 1

    try:
        print(capture(text, audio_reference))
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _run_manager(drain: bool) -> int:
    import asyncio
    import logging
    import signal

    from catchr.config import ensure_dirs, load_config
    from catchr.errors import RunnerBusyError
    from catchr.manager import WorkerManager

    logging.basicConfig(format=LOG_FORMAT, level=logging.INFO)

    async def main() -> None:
        manager = WorkerManager.from_config(load_config())
        if drain:
            try:
                await manager.drain()
            finally:
                await manager.shutdown()
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, manager.queue.stop)

        await manager.start()
        try:
            await manager.wait()
        finally:
            await manager.shutdown()

    try:
        ensure_dirs()
        asyncio.run(main())
        return 0
    except (ValueError, RunnerBusyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nStopped.")
        return 0


def cmd_run() -> int:
    """Run the workers until SIGINT/SIGTERM."""
    return _run_manager(drain=False)


def cmd_process() -> int:
    """Work through everything queued, then exit."""
    return _run_manager(drain=True)


def format_summary(summary: dict) -> str:
    """Format a status summary for the terminal."""
    lines = [f"Catchr Status ({summary['owner_id']})", "-" * 30]
    lines.append(f"Pending:    {summary['pending']}")
    lines.append(f"Processing: {summary['processing']}")
    lines.append(f"Completed:  {summary['completed']}")
    lines.append(f"Failed:     {summary['failed']}")
    lines.append("\nBy stage:")
    for stage, counts in summary["by_stage"].items():
        parts = ", ".join(f"{k} {v}" for k, v in counts.items() if v)
        lines.append(f"  {stage}: {parts or '-'}")
    return "\n".join(lines)


def cmd_status(args: list[str]) -> int:
    """Show processing status counts."""
    from catchr.config import load_config
    from catchr.db import Database
    from catchr.status import ProcessingStatusStore

    try:
        config = load_config()
        owner_id = args[0] if args else get_owner_id(config)
        store = ProcessingStatusStore(Database())
        print(format_summary(store.summary(owner_id)))
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_items(args: list[str]) -> int:
    """Show status items for one thought."""
    from catchr.db import Database
    from catchr.status import ProcessingStatusStore

    if not args:
        print("Usage: catchr items <thought_id>", file=sys.stderr)
        return 1

    thought_id = args[0]

    try:
        db = Database()
        thought = db.get_thought(thought_id)
        if thought is None:
            print(f"Thought not found: {thought_id}", file=sys.stderr)
            return 1

        print(f"{thought.category.icon} {thought.content[:60]}")
        if thought.tags:
            print("   " + " ".join(f"#{t}" for t in thought.tags))
        if thought.calendar_event:
            print(f"   event: {thought.calendar_event.event_link or thought.calendar_event.event_id}")
        print()

        for item in ProcessingStatusStore(db).items_for_thought(thought_id):
            line = (
                f"  {item.stage.value:10} {item.status.value:10} "
                f"{item.attempt_count}/{item.max_attempts}"
            )
            if item.outcome:
                line += f"  {item.outcome}"
            if item.last_error:
                line += f"  error: {item.last_error[:60]}"
            print(line)
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_retry(args: list[str]) -> int:
    """Retry a failed stage for a thought."""
    from catchr.config import load_config
    from catchr.models import StageType
    from catchr.pipeline import build_pipeline

    if len(args) < 2:
        print("Usage: catchr retry <thought_id> <stage>", file=sys.stderr)
        return 1

    thought_id, stage_name = args[0], args[1].lower()
    try:
        stage = StageType(stage_name)
    except ValueError:
        print(f"Invalid stage: {stage_name} (transcribe, enrich, calendar)", file=sys.stderr)
        return 1

    try:
        item = build_pipeline(load_config()).retry(thought_id, stage)
        if item is None:
            print(f"Nothing to retry: {stage.value} has not failed for {thought_id}", file=sys.stderr)
            return 1
        print(f"Requeued {stage.value}: {item.id}")
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _parse_switch(value: str) -> bool:
    if value.lower() in ("on", "true", "yes", "1"):
        return True
    if value.lower() in ("off", "false", "no", "0"):
        return False
    raise ValueError(f"Expected on/off, got: {value}")


def cmd_settings(args: list[str]) -> int:
    """Show or change calendar integration settings."""
    from catchr.config import load_config
    from catchr.db import Database

    options: dict[str, str] = {}
    flags = {
        "--owner": "owner",
        "--calendar": "calendar",
        "--auto-events": "auto_events",
        "--timezone": "timezone",
        "--calendar-id": "calendar_id",
        "--token": "token",
    }

    # Parse arguments
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in flags and i + 1 < len(args):
            options[flags[arg]] = args[i + 1]
            i += 2
        else:
            print(f"Unknown option: {arg}", file=sys.stderr)
            return 1

    try:
        owner_id = options.pop("owner", None) or get_owner_id(load_config())
        db = Database()
        settings = db.get_integration_settings(owner_id)

        if options:
            updates: dict = {}
            if "calendar" in options:
                updates["calendar_integration_enabled"] = _parse_switch(options["calendar"])
            if "auto_events" in options:
                updates["auto_calendar_events_enabled"] = _parse_switch(options["auto_events"])
            if "timezone" in options:
                updates["timezone"] = options["timezone"]
            if "calendar_id" in options:
                updates["default_calendar_id"] = options["calendar_id"]
            if "token" in options:
                updates["credentials"] = settings.credentials.model_copy(
                    update={"access_token": options["token"]}
                )
            settings = settings.model_copy(update=updates)
            db.save_integration_settings(settings)

        print(f"Settings for {owner_id}")
        print("-" * 30)
        print(f"Calendar integration: {'on' if settings.calendar_integration_enabled else 'off'}")
        print(f"Auto calendar events: {'on' if settings.auto_calendar_events_enabled else 'off'}")
        print(f"Timezone:             {settings.timezone}")
        print(f"Calendar:             {settings.default_calendar_id}")
        print(f"Access token:         {'set' if settings.credentials.access_token else 'not set'}")
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_bot() -> int:
    """Run the Telegram bot."""
    from catchr.telegram_bot import main as bot_main
    return bot_main()


def cmd_health() -> int:
    """Show component health."""
    from catchr.health import format_health_report, run_health_check

    checks = run_health_check()
    print(format_health_report(checks))
    return 0 if all(status != "✗" for status, _ in checks.values()) else 1


def main() -> int:
    """
    Main entry point.

    Optimized for minimal startup time on the capture path.
    """
    args = sys.argv[1:]

    # No args - check for piped input
    if not args:
        if not sys.stdin.isatty():
            # Reading from pipe
            text = sys.stdin.read().strip()
            if text:
                return cmd_capture([text])
        print_help()
        return 0

    # Handle flags and commands
    first_arg = args[0]

    if first_arg in ("--help", "-h", "help"):
        print_help()
        return 0

    if first_arg in ("--version", "-v", "version"):
        print_version()
        return 0

    # Subcommands (lazy import to keep startup fast)
    if first_arg == "capture":
        return cmd_capture(args[1:])

    if first_arg == "run":
        return cmd_run()

    if first_arg == "process":
        return cmd_process()

    if first_arg == "status":
        return cmd_status(args[1:])

    if first_arg == "items":
        return cmd_items(args[1:])

    if first_arg == "retry":
        return cmd_retry(args[1:])

    if first_arg == "settings":
        return cmd_settings(args[1:])

    if first_arg == "bot":
        return cmd_bot()

    if first_arg == "health":
        return cmd_health()

    # Everything else is a thought to capture
    # Join all args (allows: catchr Buy milk)
    text = " ".join(args)

    if not text.strip():
        print("Error: Empty thought", file=sys.stderr)
        return 1

    return cmd_capture([text])


if __name__ == "__main__":
    sys.exit(main())
