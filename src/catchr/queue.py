"""
Durable job queue for Catchr.

Jobs live in the SQLite `jobs` table so nothing is lost across restarts.
Delivery is at-least-once: a job is done only when its handler returns.
A failing job goes back to the queue after a backoff delay until its
attempt budget is spent, then it is dead and never redelivered.
"""

import asyncio
import json
import logging
import sqlite3
from datetime import timedelta
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from catchr.db import Database, new_id, to_iso, utcnow
from catchr.errors import QueueUnavailableError, is_retryable
from catchr.models import Job, JobState, StageType

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]

BACKOFF_STRATEGIES = ("none", "fixed", "exponential")


def compute_backoff_delay_seconds(
    backoff_strategy: str,
    attempt: int,
    backoff_base_seconds: float,
) -> float:
    """Delay before redelivering a job that has failed `attempt` times."""
    if attempt <= 0:
        raise ValueError("attempt must be >= 1.")
    if backoff_strategy not in BACKOFF_STRATEGIES:
        raise ValueError(f"Unsupported backoff_strategy: {backoff_strategy}")
    if backoff_base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
    if backoff_strategy == "none":
        return 0.0
    if backoff_strategy == "fixed":
        return backoff_base_seconds
    return backoff_base_seconds * (2 ** (attempt - 1))


class JobQueue:
    """Typed work queue with per-stage consumers."""

    def __init__(
        self,
        db: Database,
        backoff_strategy: str = "exponential",
        backoff_base_seconds: float = 2.0,
        poll_interval: float = 1.0,
    ):
        if backoff_strategy not in BACKOFF_STRATEGIES:
            raise ValueError(f"Unsupported backoff_strategy: {backoff_strategy}")
        self.db = db
        self.backoff_strategy = backoff_strategy
        self.backoff_base_seconds = backoff_base_seconds
        self.poll_interval = poll_interval
        self._stopping = asyncio.Event()

    def enqueue(
        self,
        stage: StageType,
        payload: BaseModel,
        item_id: str,
        max_attempts: int = 3,
    ) -> str:
        """
        Add a job for a stage. Returns the job ID.

        Raises QueueUnavailableError if the store cannot take the job;
        work is never dropped silently.
        """
        try:
            with self.db._connect() as conn:
                job_id = self.insert_job(conn, stage, payload, item_id, max_attempts)
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Could not enqueue {stage.value} job: {e}") from e

        logger.debug("Enqueued %s job %s (item %s)", stage.value, job_id, item_id)
        return job_id

    def insert_job(
        self,
        conn: sqlite3.Connection,
        stage: StageType,
        payload: BaseModel,
        item_id: str,
        max_attempts: int = 3,
    ) -> str:
        """enqueue on an open connection, inside the caller's transaction."""
        now = to_iso(utcnow())
        job_id = new_id()
        conn.execute("""
            INSERT INTO jobs (
                id, stage, item_id, payload, state, attempts,
                max_attempts, available_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 'queued', 0, ?, ?, ?, ?)
        """, (
            job_id, stage.value, item_id, payload.model_dump_json(),
            max_attempts, now, now, now,
        ))
        return job_id

    def claim(self, stage: StageType) -> Job | None:
        """Atomically take the next available job for a stage."""
        now = to_iso(utcnow())

        try:
            with self.db._connect() as conn:
                rows = conn.execute("""
                    UPDATE jobs
                    SET state = 'running', attempts = attempts + 1, updated_at = ?
                    WHERE id = (
                        SELECT id FROM jobs
                        WHERE stage = ? AND state = 'queued' AND available_at <= ?
                        ORDER BY available_at ASC, created_at ASC
                        LIMIT 1
                    )
                    RETURNING *
                """, (now, stage.value, now)).fetchall()
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Could not claim {stage.value} job: {e}") from e

        return _row_to_job(rows[0]) if rows else None

    def complete(self, job_id: str) -> None:
        """Mark a job done."""
        with self.db._connect() as conn:
            conn.execute(
                "UPDATE jobs SET state = 'done', updated_at = ? WHERE id = ?",
                (to_iso(utcnow()), job_id),
            )

    def fail(self, job: Job, error: BaseException) -> JobState:
        """
        Record a failed delivery.

        Requeues with backoff while attempts remain and the error is
        retryable; otherwise the job is dead and its status item, if still
        live, is failed with it. Returns the new state.
        """
        message = str(error) or error.__class__.__name__

        if is_retryable(error) and job.attempts < job.max_attempts:
            delay = compute_backoff_delay_seconds(
                self.backoff_strategy, job.attempts, self.backoff_base_seconds
            )
            available_at = to_iso(utcnow() + timedelta(seconds=delay))
            with self.db._connect() as conn:
                conn.execute("""
                    UPDATE jobs
                    SET state = 'queued', available_at = ?, last_error = ?, updated_at = ?
                    WHERE id = ?
                """, (available_at, message, to_iso(utcnow()), job.id))
            logger.warning(
                "%s job %s failed (attempt %d/%d), retrying in %.1fs: %s",
                job.stage.value, job.id, job.attempts, job.max_attempts, delay, message,
            )
            return JobState.QUEUED

        self._bury(job, message)
        logger.error(
            "%s job %s dead after %d attempt(s): %s",
            job.stage.value, job.id, job.attempts, message,
        )
        return JobState.DEAD

    def _bury(self, job: Job, message: str) -> None:
        """Mark a job dead and fail its status item with it."""
        now = to_iso(utcnow())

        with self.db._connect() as conn:
            conn.execute("""
                UPDATE jobs SET state = 'dead', last_error = ?, updated_at = ?
                WHERE id = ?
            """, (message, now, job.id))
            # A live item with no job would never be delivered again
            conn.execute("""
                UPDATE processing_queue
                SET status = 'failed', last_error = ?, updated_at = ?
                WHERE id = ? AND status IN ('pending', 'processing')
            """, (message, now, job.item_id))

    def recover_stale(self) -> list[str]:
        """
        Requeue jobs left running by a previous process.

        Only safe while holding the runner lock: a running job is then known
        to belong to a dead process. The interrupted delivery never reached
        a verdict, so its attempt is given back. Returns the status item IDs
        of the recovered jobs.
        """
        now = to_iso(utcnow())

        with self.db._connect() as conn:
            rows = conn.execute("""
                UPDATE jobs
                SET state = 'queued', attempts = MAX(attempts - 1, 0),
                    available_at = ?, updated_at = ?
                WHERE state = 'running'
                RETURNING item_id
            """, (now, now)).fetchall()

        item_ids = [row["item_id"] for row in rows]
        if item_ids:
            logger.info("Recovered %d interrupted job(s)", len(item_ids))
        return item_ids

    def has_pending(self, stage: StageType | None = None) -> bool:
        """Whether any queued job exists (optionally for one stage)."""
        query = "SELECT 1 FROM jobs WHERE state = 'queued'"
        params: list[Any] = []
        if stage is not None:
            query += " AND stage = ?"
            params.append(stage.value)

        with self.db._connect() as conn:
            return conn.execute(query + " LIMIT 1", params).fetchone() is not None

    def counts(self) -> dict[str, dict[str, int]]:
        """Job counts per stage and state."""
        counts = {
            stage.value: {state.value: 0 for state in JobState}
            for stage in StageType
        }
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT stage, state, COUNT(*) AS n FROM jobs GROUP BY stage, state"
            ).fetchall()
        for row in rows:
            counts[row["stage"]][row["state"]] = row["n"]
        return counts

    def stop(self) -> None:
        """Stop admitting new jobs. In-flight jobs run to completion."""
        self._stopping.set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    async def consume(
        self,
        stage: StageType,
        concurrency: int,
        handler: JobHandler,
        until_idle: bool = False,
    ) -> None:
        """
        Run `handler` on jobs of one stage, at most `concurrency` at a time.

        Runs until stop() is called, or, with until_idle, until the stage
        has nothing queued and nothing in flight. In-flight jobs are always
        awaited before returning.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        semaphore = asyncio.Semaphore(concurrency)
        in_flight: set[asyncio.Task[None]] = set()
        logger.info("Consuming %s jobs (concurrency=%d)", stage.value, concurrency)

        try:
            while not self._stopping.is_set():
                await semaphore.acquire()
                if self._stopping.is_set():
                    semaphore.release()
                    break
                try:
                    job = self.claim(stage)
                except QueueUnavailableError:
                    semaphore.release()
                    logger.exception("Queue unavailable while polling %s", stage.value)
                    await self._sleep()
                    continue

                if job is None:
                    semaphore.release()
                    if until_idle and not in_flight and not self.has_pending(stage):
                        break
                    await self._sleep()
                    continue

                task = asyncio.create_task(self._deliver(job, handler, semaphore))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            logger.info("Stopped consuming %s jobs", stage.value)

    async def _sleep(self) -> None:
        """Wait one poll interval, waking early on stop()."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _deliver(self, job: Job, handler: JobHandler, semaphore: asyncio.Semaphore) -> None:
        try:
            try:
                await handler(job)
            except Exception as e:
                self.fail(job, e)
            else:
                self.complete(job.id)
        except sqlite3.Error:
            # Job stays running; recover_stale() picks it up on next start
            logger.exception("Could not record outcome of %s job %s", job.stage.value, job.id)
        finally:
            semaphore.release()


def _row_to_job(row: sqlite3.Row) -> Job:
    data = dict(row)
    data["payload"] = json.loads(data["payload"])
    return Job.model_validate(data)
