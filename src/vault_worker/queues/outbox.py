"""
Outbox queue drivers.

Two drivers share one contract (enqueue, register_processor, start,
shutdown):

- SQLiteOutboxDriver: durable. enqueue() commits before returning and a
  ticker per queue drains claimable jobs. Delivery is at-least-once.
- InMemoryQueueDriver: no durability. enqueue() runs the processor inline.
  Only used when no durable store is configured.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Optional

from ..config import Config
from ..state_store import StateStore
from ..state_store.sqlite_store import OutboxJob, OutboxState, utc_now
from .scheduler import Ticker

logger = logging.getLogger(__name__)

Processor = Callable[[dict[str, Any]], None]

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_MAX_BACKOFF = 60.0
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_STALE_CLAIM_MINUTES = 15


class QueueError(Exception):
    """Queue misuse (e.g. enqueue with no processor on the inline driver)."""

    pass


def backoff_seconds(attempts: int, max_backoff: float = DEFAULT_MAX_BACKOFF) -> float:
    """min(max_backoff, 2**attempts) seconds."""
    return min(max_backoff, float(2**attempts))


class QueueDriver(ABC):
    """Common contract of the queue drivers."""

    def __init__(self) -> None:
        self._processors: dict[str, Processor] = {}

    def register_processor(self, queue: str, fn: Processor) -> None:
        self._processors[queue] = fn

    @property
    def queues(self) -> list[str]:
        return list(self._processors)

    @abstractmethod
    def enqueue(
        self,
        queue: str,
        payload: dict[str, Any],
        dedupe_key: Optional[str] = None,
    ) -> Optional[int]:
        """Persist (or run) a job. Returns the job id when durable."""

    def start(self) -> None:
        pass

    def shutdown(self) -> None:
        pass

    def queue_stats(self, queue: str) -> dict[str, int]:
        return {state.value: 0 for state in OutboxState}


class InMemoryQueueDriver(QueueDriver):
    """Runs the registered processor synchronously on enqueue."""

    def enqueue(
        self,
        queue: str,
        payload: dict[str, Any],
        dedupe_key: Optional[str] = None,
    ) -> Optional[int]:
        processor = self._processors.get(queue)
        if processor is None:
            raise QueueError(f"No processor registered for queue '{queue}'")
        processor(payload)
        return None


class SQLiteOutboxDriver(QueueDriver):
    """
    Durable outbox backed by the state store.

    One drain per queue runs at a time: the per-queue lock is taken
    non-blocking, so a second concurrent drain returns immediately.
    """

    def __init__(
        self,
        store: StateStore,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        stale_claim_minutes: float = DEFAULT_STALE_CLAIM_MINUTES,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__()
        self.store = store
        self.poll_interval = poll_interval
        self.max_backoff = max_backoff
        self.max_attempts = max_attempts
        self.stale_after = timedelta(minutes=stale_claim_minutes)
        self._clock = clock
        self._drain_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._tickers: dict[str, Ticker] = {}

    def enqueue(
        self,
        queue: str,
        payload: dict[str, Any],
        dedupe_key: Optional[str] = None,
    ) -> Optional[int]:
        job_id = self.store.enqueue_outbox_job(
            queue, payload, dedupe_key=dedupe_key, now=self._clock()
        )
        logger.debug(f"Enqueued job {job_id} on {queue}")
        return job_id

    def _drain_lock(self, queue: str) -> threading.Lock:
        with self._locks_guard:
            return self._drain_locks.setdefault(queue, threading.Lock())

    def drain(self, queue: str) -> int:
        """
        Process claimable jobs of a queue until none remain.

        Returns:
            Number of jobs claimed (0 if another drain was already running)
        """
        lock = self._drain_lock(queue)
        if not lock.acquire(blocking=False):
            return 0
        try:
            processor = self._processors.get(queue)
            if processor is None:
                logger.warning(f"Draining queue '{queue}' with no processor registered")
                return 0

            claimed = 0
            while True:
                now = self._clock()
                job = self.store.claim_outbox_job(
                    queue, now=now, stale_before=now - self.stale_after
                )
                if job is None:
                    return claimed
                claimed += 1
                self._run_job(job, processor)
        finally:
            lock.release()

    def _run_job(self, job: OutboxJob, processor: Processor) -> None:
        if job.attempts > self.max_attempts:
            # Reclaimed from a crashed worker after its last attempt
            self._fail(job, job.last_error or "claim expired with no attempts left")
            return

        try:
            processor(job.payload)
        except Exception as e:
            if job.attempts >= self.max_attempts:
                self._fail(job, str(e))
                return
            now = self._clock()
            delay = backoff_seconds(job.attempts, self.max_backoff)
            self.store.retry_outbox_job(
                job.id, str(e), available_at=now + timedelta(seconds=delay), now=now
            )
            logger.warning(
                f"Job {job.id} on {job.queue} failed (attempt {job.attempts}), "
                f"retrying in {delay:.0f}s: {e}"
            )
            return

        self.store.complete_outbox_job(job.id, now=self._clock())
        logger.debug(f"Job {job.id} on {job.queue} completed")

    def _fail(self, job: OutboxJob, error: str) -> None:
        self.store.fail_outbox_job(job.id, error, now=self._clock())
        logger.error(
            f"Job {job.id} on {job.queue} failed permanently after "
            f"{min(job.attempts, self.max_attempts)} attempts: {error}"
        )

    def start(self) -> None:
        for queue in self._processors:
            if queue in self._tickers:
                continue
            ticker = Ticker(
                name=f"outbox-{queue}",
                interval=self.poll_interval,
                fn=lambda q=queue: self.drain(q),
            )
            self._tickers[queue] = ticker
            ticker.start()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        for ticker in self._tickers.values():
            ticker.stop(timeout)
        self._tickers.clear()
        logger.info("Outbox driver stopped")

    def queue_stats(self, queue: str) -> dict[str, int]:
        return self.store.get_outbox_stats(queue)


def create_queue_driver(config: Config, store: Optional[StateStore]) -> QueueDriver:
    """Durable driver when a store is configured, otherwise in-memory."""
    if store is not None and config.queue.driver == "sqlite":
        return SQLiteOutboxDriver(
            store,
            poll_interval=config.queue.poll_interval_seconds,
            max_backoff=config.queue.max_backoff_seconds,
            max_attempts=config.queue.max_attempts,
            stale_claim_minutes=config.queue.stale_claim_minutes,
        )
    logger.warning("No durable queue store configured; using in-memory queue driver")
    return InMemoryQueueDriver()
