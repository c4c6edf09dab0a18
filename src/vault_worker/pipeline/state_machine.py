"""
Pipeline job state machine.

Steps move strictly forward:

    Uploaded -> Queued -> Classified -> Standardized -> Post-Processed
             -> Indexed -> Ready

A step's ended_at is set exactly when it becomes completed or failed. A
terminal failure fails every step that has not completed, in place; a
retryable failure puts the interrupted step back to pending so the next
attempt re-runs it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from ..config import PipelineConfig
from ..schemas.pipeline import (
    DeadLetterReason,
    JobStatus,
    PipelineJob,
    PipelineStep,
    StepName,
    StepStatus,
    initial_steps,
)
from ..state_store import StateStore
from ..state_store.sqlite_store import format_ts, utc_now

logger = logging.getLogger(__name__)

DEFAULT_BASE_BACKOFF = 1.0
DEFAULT_MAX_BACKOFF = 30.0


def _find(steps: list[PipelineStep], name: StepName | str) -> PipelineStep:
    key = name.value if isinstance(name, StepName) else name
    for step in steps:
        if step.name == key:
            return step
    raise KeyError(f"Unknown pipeline step: {key}")


def apply_step_update(
    steps: list[PipelineStep],
    name: StepName | str,
    status: StepStatus,
    ts: str,
    message: Optional[str] = None,
) -> None:
    """
    Idempotent upsert of one step's status.

    - running stamps started_at if unset
    - completed/failed stamp ended_at (and started_at if it was never set)
    - a completed step is never reopened; repeating the same status is a no-op
    """
    step = _find(steps, name)
    if step.status == StepStatus.COMPLETED:
        if status != StepStatus.COMPLETED:
            logger.debug(f"Step {step.name} already completed, ignoring {status.value}")
        return
    if step.status == status:
        if message is not None:
            step.message = message
        return

    step.status = status
    if status == StepStatus.RUNNING and step.started_at is None:
        step.started_at = ts
    if status.is_terminal:
        if step.started_at is None:
            step.started_at = ts
        step.ended_at = ts
    if message is not None:
        step.message = message


def fail_remaining(steps: list[PipelineStep], ts: str, message: Optional[str] = None) -> None:
    """Short-circuit every non-completed step to failed."""
    first = True
    for step in steps:
        if step.status in (StepStatus.COMPLETED, StepStatus.FAILED):
            continue
        step.status = StepStatus.FAILED
        step.started_at = step.started_at or ts
        step.ended_at = ts
        # The message belongs on the step that actually failed
        if first and message is not None:
            step.message = message
        first = False


def reset_running(steps: list[PipelineStep]) -> None:
    """Put interrupted (running) steps back to pending for the next attempt."""
    for step in steps:
        if step.status == StepStatus.RUNNING:
            step.status = StepStatus.PENDING
            step.started_at = None
            step.ended_at = None


def backoff_delay(
    attempt: int,
    base: float = DEFAULT_BASE_BACKOFF,
    maximum: float = DEFAULT_MAX_BACKOFF,
) -> float:
    """min(base * 2**(attempt-1), maximum) seconds, attempt counted from 1."""
    return min(base * 2 ** (max(1, attempt) - 1), maximum)


@dataclass
class RetryOutcome:
    status: JobStatus  # FAILED (will retry) or DEAD_LETTER
    delay_seconds: float

    @property
    def dead_letter(self) -> bool:
        return self.status == JobStatus.DEAD_LETTER


def determine_retry_outcome(
    attempts: int,
    max_attempts: int,
    base: float = DEFAULT_BASE_BACKOFF,
    maximum: float = DEFAULT_MAX_BACKOFF,
) -> RetryOutcome:
    if attempts >= max_attempts:
        return RetryOutcome(JobStatus.DEAD_LETTER, 0.0)
    return RetryOutcome(JobStatus.FAILED, backoff_delay(attempts, base, maximum))


class PipelineStateMachine:
    """
    Store-backed transitions of pipeline jobs.

    Every transition is one store call; the store serialises claims and
    step updates with immediate transactions.
    """

    def __init__(
        self,
        store: StateStore,
        max_attempts: int = 5,
        base_backoff: float = DEFAULT_BASE_BACKOFF,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        stale_after: timedelta = timedelta(minutes=15),
        clock=utc_now,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.stale_after = stale_after
        self._clock = clock

    @classmethod
    def from_config(
        cls, store: StateStore, config: PipelineConfig, clock=utc_now
    ) -> "PipelineStateMachine":
        return cls(
            store,
            max_attempts=config.max_attempts,
            base_backoff=config.base_backoff_seconds,
            max_backoff=config.max_backoff_seconds,
            stale_after=timedelta(minutes=config.stale_claim_minutes),
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    def create_job(
        self,
        document_id: str,
        user_id: str,
        file_id: str,
        original_name: str,
        collection_id: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> PipelineJob:
        now = self.now()
        return self.store.create_pipeline_job(
            document_id=document_id,
            user_id=user_id,
            file_id=file_id,
            original_name=original_name,
            steps=initial_steps(format_ts(now)),
            max_attempts=self.max_attempts,
            collection_id=collection_id,
            display_name=display_name,
            now=now,
        )

    def claim_job(self) -> Optional[PipelineJob]:
        now = self.now()
        return self.store.claim_pipeline_job(stale_before=now - self.stale_after, now=now)

    def mark_step(
        self,
        document_id: str,
        name: StepName | str,
        status: StepStatus,
        message: Optional[str] = None,
    ) -> PipelineJob:
        now = self.now()
        ts = format_ts(now)
        return self.store.update_pipeline_steps(
            document_id,
            lambda steps: apply_step_update(steps, name, status, ts, message),
            now=now,
        )

    def fail_remaining_steps(self, document_id: str, message: Optional[str] = None) -> PipelineJob:
        now = self.now()
        ts = format_ts(now)
        return self.store.update_pipeline_steps(
            document_id, lambda steps: fail_remaining(steps, ts, message), now=now
        )

    def finalize_job(self, document_id: str, outcome: JobStatus, error: Optional[str] = None) -> None:
        if not outcome.is_terminal:
            raise ValueError(f"Not a terminal outcome: {outcome.value}")
        self.store.update_pipeline_job(
            document_id, now=self.now(), status=outcome, retry_at=None, last_error=error
        )

    def dead_letter(
        self,
        job: PipelineJob,
        reason: DeadLetterReason,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Fail the remaining steps, record the dead letter and finalize."""
        self.fail_remaining_steps(job.document_id, reason.description)
        self.store.add_dead_letter(
            job.document_id, job.user_id, reason.value, details or {}, now=self.now()
        )
        self.finalize_job(job.document_id, JobStatus.DEAD_LETTER, error=reason.value)
        logger.warning(f"Dead-lettered document {job.document_id}: {reason.value}")

    def handle_failure(
        self,
        job: PipelineJob,
        error: str,
        reason: DeadLetterReason,
        details: Optional[dict[str, Any]] = None,
    ) -> RetryOutcome:
        """
        Retry-or-dead-letter decision for a retryable failure.

        With attempts left, the interrupted step goes back to pending and the
        job waits for retry_at; otherwise the job is dead-lettered.
        """
        outcome = determine_retry_outcome(
            job.attempts, job.max_attempts, self.base_backoff, self.max_backoff
        )
        if outcome.dead_letter:
            merged = {"error": error, "attempts": job.attempts, **(details or {})}
            self.dead_letter(job, reason, merged)
            return outcome

        now = self.now()
        self.store.update_pipeline_steps(job.document_id, reset_running, now=now)
        self.store.update_pipeline_job(
            job.document_id,
            now=now,
            status=JobStatus.FAILED,
            retry_at=format_ts(now + timedelta(seconds=outcome.delay_seconds)),
            last_error=error,
        )
        logger.info(
            f"Document {job.document_id} failed attempt {job.attempts}/{job.max_attempts}, "
            f"retrying in {outcome.delay_seconds:.0f}s: {error}"
        )
        return outcome

    def reap_stale_jobs(self) -> int:
        """Dead-letter stale in-progress jobs that have no attempts left."""
        stale = self.store.find_exhausted_stale_jobs(self.now() - self.stale_after)
        for job in stale:
            self.dead_letter(
                job,
                DeadLetterReason.PROCESSING_ERROR,
                {"error": "worker stopped responding", "attempts": job.attempts},
            )
        return len(stale)

    def requeue(self, document_id: str) -> bool:
        """Reset a dead-lettered job to pending with fresh steps and attempts."""
        now = self.now()
        if not self.store.reset_pipeline_job(document_id, initial_steps(format_ts(now)), now=now):
            return False
        self.store.resolve_dead_letters(document_id, now=now)
        logger.info(f"Requeued dead-lettered document {document_id}")
        return True
