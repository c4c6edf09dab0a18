"""
Pipeline job and step models.

A pipeline job tracks one uploaded document through a fixed, ordered list
of steps. Steps only move forward; a failure marks the failing step and
every step after it as failed in place.
"""

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class StepName(str, Enum):
    """Ordered pipeline steps."""

    UPLOADED = "Uploaded"
    QUEUED = "Queued"
    CLASSIFIED = "Classified"
    STANDARDIZED = "Standardized"
    POST_PROCESSED = "Post-Processed"
    INDEXED = "Indexed"
    READY = "Ready"


PIPELINE_STEPS: tuple[StepName, ...] = tuple(StepName)


class StepStatus(str, Enum):
    """Status of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED)


class JobStatus(str, Enum):
    """Claim-level status of a pipeline job.

    PENDING and FAILED are claimable (FAILED waits for retry_at).
    COMPLETED and DEAD_LETTER are terminal.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.DEAD_LETTER)

    def overall(self) -> str:
        """Map to the overall status shown to users: queued/running/completed/failed."""
        return {
            JobStatus.PENDING: "queued",
            JobStatus.IN_PROGRESS: "running",
            # A retryable failure is still on its way through the pipeline
            JobStatus.FAILED: "queued",
            JobStatus.COMPLETED: "completed",
            JobStatus.DEAD_LETTER: "failed",
        }[self]


class DeadLetterReason(str, Enum):
    """Reason codes for dead-lettered documents."""

    UNSUPPORTED_DOCUMENT = "unsupported_document"
    NET_IDENTITY_FAILED = "net_identity_failed"
    BALANCE_MISMATCH = "balance_mismatch"
    DOCUPIPE_TIMEOUT = "docupipe_timeout"
    DOCUPIPE_ERROR = "docupipe_error"
    INVALID_FILE = "invalid_file"
    PROCESSING_ERROR = "processing_error"

    @property
    def description(self) -> str:
        return DEAD_LETTER_DESCRIPTIONS[self]


DEAD_LETTER_DESCRIPTIONS = {
    DeadLetterReason.UNSUPPORTED_DOCUMENT: "Unsupported or low confidence document",
    DeadLetterReason.NET_IDENTITY_FAILED: "Payslip totals do not add up to the net pay",
    DeadLetterReason.BALANCE_MISMATCH: "Statement transactions do not reconcile with the balances",
    DeadLetterReason.DOCUPIPE_TIMEOUT: "Document standardization timed out",
    DeadLetterReason.DOCUPIPE_ERROR: "Document standardization failed",
    DeadLetterReason.INVALID_FILE: "File is not a readable PDF",
    DeadLetterReason.PROCESSING_ERROR: "Document processing failed repeatedly",
}


@dataclass
class PipelineStep:
    """One named step with its timestamps."""

    name: str
    status: StepStatus = StepStatus.PENDING
    started_at: str | None = None
    ended_at: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineStep":
        return cls(
            name=data["name"],
            status=StepStatus(data.get("status", "pending")),
            started_at=data.get("started_at"),
            ended_at=data.get("ended_at"),
            message=data.get("message"),
        )


def initial_steps(uploaded_at: str) -> list[PipelineStep]:
    """Steps for a freshly enqueued document: Uploaded done, Queued running."""
    steps = [PipelineStep(name=step.value) for step in PIPELINE_STEPS]
    steps[0].status = StepStatus.COMPLETED
    steps[0].started_at = uploaded_at
    steps[0].ended_at = uploaded_at
    steps[1].status = StepStatus.RUNNING
    steps[1].started_at = uploaded_at
    return steps


def steps_to_json(steps: list[PipelineStep]) -> str:
    return json.dumps([step.to_dict() for step in steps])


def steps_from_json(raw: str | None) -> list[PipelineStep]:
    if not raw:
        return []
    return [PipelineStep.from_dict(item) for item in json.loads(raw)]


@dataclass
class PipelineJob:
    """A document's trip through the pipeline."""

    document_id: str
    user_id: str
    file_id: str
    original_name: str
    status: JobStatus
    attempts: int
    max_attempts: int
    steps: list[PipelineStep] = field(default_factory=list)
    collection_id: str | None = None
    display_name: str | None = None
    retry_at: str | None = None
    last_error: str | None = None
    catalogue_key: str | None = None
    classification_confidence: float | None = None
    docupipe_document_id: str | None = None
    docupipe_job_id: str | None = None
    content_hash: str | None = None
    last_update_key: str | None = None
    created_at: str = ""
    updated_at: str = ""
    heartbeat_at: str | None = None

    def step(self, name: StepName | str) -> PipelineStep:
        key = name.value if isinstance(name, StepName) else name
        for step in self.steps:
            if step.name == key:
                return step
        raise KeyError(f"Unknown pipeline step: {key}")

    def status_view(self) -> dict[str, Any]:
        """Status payload polled by the UI."""
        return {
            "document_id": self.document_id,
            "status": self.status.overall(),
            "job_status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "steps": [step.to_dict() for step in self.steps],
        }
