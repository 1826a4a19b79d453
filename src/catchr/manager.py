"""
Worker manager for Catchr.

Built once at process start and passed to whatever needs to submit work
or read status. Owns one consumer pool per stage.
"""

import asyncio
import fcntl
import logging
from pathlib import Path
from typing import IO, Any

from catchr.db import Database
from catchr.errors import RunnerBusyError
from catchr.models import STAGE_ORDER, StageType
from catchr.notify import NotificationDispatcher
from catchr.pipeline import Pipeline
from catchr.queue import JobQueue
from catchr.status import ProcessingStatusStore
from catchr.workers import (
    CALENDAR_CONFIDENCE_THRESHOLD,
    CalendarCreator,
    CalendarDetector,
    CalendarWorker,
    EnrichmentWorker,
    SpeechToText,
    StageWorker,
    ThoughtClassifier,
    TranscriptionWorker,
)

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = {
    StageType.TRANSCRIBE: 2,
    StageType.ENRICH: 3,
    StageType.CALENDAR: 1,
}


class RunnerLock:
    """
    Exclusive lock held by the one process that runs workers for a database.

    Recovering `running` jobs is only safe when no other process can be
    running them, so `start()` and `drain()` take this lock first.
    """

    def __init__(self, path: Path):
        self.path = path
        self._file: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._file is not None

    def acquire(self) -> None:
        if self._file is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        f = open(self.path, "a", encoding="utf-8")
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            f.close()
            raise RunnerBusyError(
                f"Workers are already running for this database ({self.path})"
            ) from e
        self._file = f

    def release(self) -> None:
        if self._file is None:
            return
        fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        self._file.close()
        self._file = None


class WorkerManager:
    """Pipeline wiring plus the per-stage worker pools."""

    def __init__(
        self,
        db: Database,
        queue: JobQueue,
        status: ProcessingStatusStore,
        notifier: NotificationDispatcher,
        transcriber: SpeechToText,
        classifier: ThoughtClassifier,
        detector: CalendarDetector,
        calendar: CalendarCreator,
        concurrency: dict[StageType, int] | None = None,
        confidence_threshold: float = CALENDAR_CONFIDENCE_THRESHOLD,
        default_timezone: str = "America/Los_Angeles",
        resources: list[Any] | None = None,
    ):
        self.db = db
        self.queue = queue
        self.status = status
        self.notifier = notifier
        self.pipeline = Pipeline(db, queue, status)
        self.concurrency = {**DEFAULT_CONCURRENCY, **(concurrency or {})}
        # Objects with an async aclose(), closed on shutdown
        self.resources = resources or []
        self._tasks: list[asyncio.Task[None]] = []
        self.lock = RunnerLock(db.db_path.with_name(db.db_path.name + ".lock"))

        common = dict(db=db, status=status, pipeline=self.pipeline, notifier=notifier)
        self.workers: dict[StageType, StageWorker] = {
            StageType.TRANSCRIBE: TranscriptionWorker(transcriber=transcriber, **common),
            StageType.ENRICH: EnrichmentWorker(classifier=classifier, **common),
            StageType.CALENDAR: CalendarWorker(
                detector=detector,
                calendar=calendar,
                confidence_threshold=confidence_threshold,
                default_timezone=default_timezone,
                **common,
            ),
        }

    @classmethod
    def from_config(cls, config: dict[str, Any], db: Database | None = None) -> "WorkerManager":
        """Build the manager and real collaborator clients from configuration."""
        # Imported here so tests can build a manager without HTTP clients
        from catchr.calendar import GoogleCalendarClient
        from catchr.classifier import Classifier, EventDetector, LLMClient
        from catchr.notify import build_dispatcher
        from catchr.transcriber import WhisperTranscriber

        db = db or Database()
        pipeline_config = config.get("pipeline", {})
        calendar_config = config.get("calendar", {})
        max_attempts = int(pipeline_config.get("max_attempts", 3))

        queue = JobQueue(
            db,
            backoff_strategy=pipeline_config.get("backoff_strategy", "exponential"),
            backoff_base_seconds=float(pipeline_config.get("backoff_base_seconds", 2.0)),
            poll_interval=float(pipeline_config.get("poll_interval_seconds", 1.0)),
        )
        status = ProcessingStatusStore(db, max_attempts=max_attempts)

        llm = LLMClient(config)
        transcriber = WhisperTranscriber(config)
        calendar = GoogleCalendarClient(config)
        notifier = build_dispatcher(config)

        concurrency = {
            StageType(stage): int(n)
            for stage, n in pipeline_config.get("concurrency", {}).items()
        }

        return cls(
            db=db,
            queue=queue,
            status=status,
            notifier=notifier,
            transcriber=transcriber,
            classifier=Classifier(llm),
            detector=EventDetector(llm),
            calendar=calendar,
            concurrency=concurrency,
            confidence_threshold=float(
                calendar_config.get("confidence_threshold", CALENDAR_CONFIDENCE_THRESHOLD)
            ),
            default_timezone=calendar_config.get("default_timezone", "America/Los_Angeles"),
            resources=[llm, transcriber, calendar, notifier],
        )

    def recover(self) -> None:
        """Requeue work interrupted by a previous crash. Requires the runner lock."""
        if not self.lock.held:
            raise RuntimeError("recover() needs the runner lock")
        item_ids = self.queue.recover_stale()
        if item_ids:
            released = self.status.release_interrupted(item_ids)
            logger.info("Released %d interrupted item(s)", released)

    async def start(self) -> None:
        """
        Start one consumer pool per stage.

        Raises RunnerBusyError if another process already runs workers.
        """
        if self._tasks:
            raise RuntimeError("Workers already started")
        self.lock.acquire()
        self.recover()
        for stage in STAGE_ORDER:
            task = asyncio.create_task(
                self.queue.consume(stage, self.concurrency[stage], self.workers[stage]),
                name=f"catchr-{stage.value}",
            )
            self._tasks.append(task)
        logger.info("Workers started: %s", {s.value: n for s, n in self.concurrency.items()})

    async def wait(self) -> None:
        """Block until every pool has stopped."""
        if self._tasks:
            await asyncio.gather(*self._tasks)

    async def shutdown(self) -> None:
        """Stop admitting jobs, let in-flight jobs finish, release clients."""
        logger.info("Shutting down workers...")
        self.queue.stop()
        await self.wait()
        self._tasks = []
        self.lock.release()

        for resource in self.resources:
            await resource.aclose()
        logger.info("Workers shutdown complete")

    async def drain(self) -> None:
        """
        Process queued work stage by stage until nothing is left.

        Used for one-shot runs (`catchr process`) and tests. Raises
        RunnerBusyError if another process already runs workers.
        """
        if self._tasks:
            raise RuntimeError("Workers already started")
        already_held = self.lock.held
        self.lock.acquire()
        try:
            self.recover()
            while self.queue.has_pending() and not self.queue.stopping:
                for stage in STAGE_ORDER:
                    await self.queue.consume(
                        stage, self.concurrency[stage], self.workers[stage], until_idle=True
                    )
        finally:
            if not already_held:
                self.lock.release()

    def summary(self, owner_id: str) -> dict[str, Any]:
        return self.status.summary(owner_id)
