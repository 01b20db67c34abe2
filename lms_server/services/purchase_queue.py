"""
Sequential retry queue for purchase events.

Serializes incoming purchases into one-at-a-time calls of an injected async
processor. Exactly one job is in flight at any moment; failed jobs are retried
a fixed number of times after a fixed delay and jump back to the head of the
queue. Terminal outcomes are kept in memory for a retention window and purged
by a periodic sweep. Nothing is persisted: pending jobs are lost on restart.

Usage:
    queue = PurchaseQueue(hotmart.process_purchase, prefix="hotmart",
                          key_func=lambda p: p.transaction_id)
    queue.start()
    result = await queue.submit(purchase)
    stats = queue.get_stats()
"""
import asyncio
import contextvars
import itertools
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Generic, Optional, TypeVar

from lms_server.schemas.queue import QueueStats
from lms_server.utils.logger import get_logger
from lms_server.utils.metrics import inc, track_duration

log = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class PermanentJobError(Exception):
    """Raised by a processor when retrying the job cannot succeed."""


class JobCancelledError(Exception):
    """A processor call was cancelled while the queue was still running."""


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3            # retries beyond the first attempt
    retry_delay: float = 2.0        # seconds, fixed, no backoff or jitter
    retention_seconds: float = 3600.0
    sweep_interval: float = 3600.0


@dataclass
class Job(Generic[T, R]):
    id: str
    payload: T
    created_at: float
    future: "asyncio.Future[R]"
    max_retries: int = 3
    attempt: int = 0


def job_timestamp(job_id: str) -> Optional[float]:
    """Submission time (epoch seconds) embedded in a job id, or None if malformed."""
    try:
        _, millis, _ = job_id.rsplit("_", 2)
        return int(millis) / 1000.0
    except ValueError:
        return None


class PurchaseQueue(Generic[T, R]):
    """In-memory, single-worker retry queue around an async processor."""

    def __init__(
        self,
        processor: Callable[[T], Awaitable[R]],
        *,
        policy: Optional[RetryPolicy] = None,
        prefix: str = "job",
        key_func: Optional[Callable[[T], str]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._processor = processor
        self.policy = policy or RetryPolicy()
        self.prefix = prefix
        self._key_func = key_func
        self._clock = clock

        self._queue: Deque[Job[T, R]] = deque()
        self._completed: Dict[str, R] = {}
        self._failed: Dict[str, str] = {}
        self._is_processing = False
        self._seq = itertools.count(1)

        self._drain_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def enqueue(self, payload: T) -> Job[T, R]:
        """
        Wrap the payload in a job, append it to the tail and wake the worker.

        Must be called from the running event loop. Never blocks.
        """
        loop = asyncio.get_running_loop()
        now = self._clock()
        key = str(self._key_func(payload)) if self._key_func else ""
        job_id = f"{self.prefix}_{key or 'anon'}_{int(now * 1000)}_{next(self._seq)}"

        job: Job[T, R] = Job(
            id=job_id,
            payload=payload,
            created_at=now,
            future=loop.create_future(),
            max_retries=self.policy.max_retries,
        )
        self._queue.append(job)
        inc("queue.enqueued")
        log.info("queue.job_enqueued", extra={"job_id": job.id, "queue_length": len(self._queue)})

        # Flag flip and task creation happen in one synchronous step.
        # The worker runs in a fresh context, outside any request correlation id.
        if not self._is_processing:
            self._is_processing = True
            self._drain_task = contextvars.Context().run(loop.create_task, self._drain())

        return job

    def submit(self, payload: T) -> "asyncio.Future[R]":
        """Enqueue a payload; the returned future settles with its terminal outcome."""
        return self.enqueue(payload).future

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _drain(self) -> None:
        log.info("queue.drain_started", extra={"queue_length": len(self._queue)})
        try:
            while self._queue:
                job = self._queue.popleft()
                try:
                    await self._process_job(job)
                except asyncio.CancelledError:
                    job.future.cancel()
                    raise
                except Exception as exc:
                    # Bookkeeping broke, not the processor. Settle the job and keep draining.
                    log.exception("queue.drain_error", extra={"job_id": job.id})
                    self._completed.pop(job.id, None)
                    self._failed[job.id] = str(exc) or type(exc).__name__
                    if not job.future.done():
                        job.future.set_exception(exc)
        finally:
            self._is_processing = False
            self._drain_task = None
        log.info("queue.drain_finished")

    async def _process_job(self, job: Job[T, R]) -> None:
        log.info(
            "queue.job_started",
            extra={"job_id": job.id, "attempt": job.attempt + 1, "max_attempts": job.max_retries + 1},
        )
        start = time.monotonic()

        try:
            async with track_duration("queue.job"):
                result = await self._processor(job.payload)
        except asyncio.CancelledError:
            if asyncio.current_task().cancelling():
                raise
            # Cancelled inside the processor while the worker itself keeps running
            await self._handle_failure(job, JobCancelledError("processor was cancelled"), start)
            return
        except Exception as exc:
            await self._handle_failure(job, exc, start)
            return

        self._completed[job.id] = result
        inc("queue.completed")
        log.info(
            "queue.job_completed",
            extra={
                "job_id": job.id,
                "attempt": job.attempt + 1,
                "duration_ms": round((time.monotonic() - start) * 1000),
            },
        )
        if not job.future.done():
            job.future.set_result(result)

    async def _handle_failure(self, job: Job[T, R], exc: Exception, start: float) -> None:
        job.attempt += 1
        duration_ms = round((time.monotonic() - start) * 1000)

        if job.attempt <= job.max_retries and not isinstance(exc, PermanentJobError):
            inc("queue.retried")
            log.warning(
                "queue.job_retry",
                extra={
                    "job_id": job.id,
                    "attempt": job.attempt,
                    "duration_ms": duration_ms,
                    "retry_in": self.policy.retry_delay,
                    "error": str(exc)[:500],
                    "error_type": type(exc).__name__,
                },
            )
            # Only the worker waits; submissions keep landing behind this job
            await asyncio.sleep(self.policy.retry_delay)
            self._queue.appendleft(job)
            return

        message = str(exc) or type(exc).__name__
        self._failed[job.id] = message
        inc("queue.failed")
        log.error(
            "queue.job_failed",
            extra={
                "job_id": job.id,
                "attempt": job.attempt,
                "duration_ms": duration_ms,
                "error": message[:500],
                "error_type": type(exc).__name__,
            },
        )
        if not job.future.done():
            job.future.set_exception(exc)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    def get_stats(self) -> QueueStats:
        return QueueStats(
            queue_length=len(self._queue),
            is_processing=self._is_processing,
            completed_count=len(self._completed),
            failed_count=len(self._failed),
            completed_ids=list(self._completed),
            failed_ids=list(self._failed),
        )

    def get_result(self, job_id: str) -> Optional[R]:
        return self._completed.get(job_id)

    def get_error(self, job_id: str) -> Optional[str]:
        return self._failed.get(job_id)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Drop terminal entries older than the retention window. Returns the count removed."""
        cutoff = self._clock() - self.policy.retention_seconds
        removed = 0

        for store in (self._completed, self._failed):
            for job_id in list(store):
                ts = job_timestamp(job_id)
                if ts is None:
                    log.debug("queue.sweep_skipped", extra={"job_id": job_id})
                    continue
                if ts < cutoff:
                    del store[job_id]
                    removed += 1

        if removed:
            inc("queue.swept", removed)
        log.info("queue.sweep_completed", extra={"removed": removed})
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.policy.sweep_interval)
            try:
                self.sweep()
            except Exception as exc:
                log.error("queue.sweep_error", extra={"error": str(exc)[:200]})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic sweeper. Safe to call more than once."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the sweeper and the worker; jobs still waiting are cancelled."""
        for task in (self._sweep_task, self._drain_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._sweep_task = None
        # A drain task cancelled before its first step never reaches its finally block
        self._drain_task = None
        self._is_processing = False

        dropped = 0
        while self._queue:
            job = self._queue.popleft()
            job.future.cancel()
            dropped += 1
        if dropped:
            log.warning("queue.stopped_with_pending", extra={"queue_length": dropped})
