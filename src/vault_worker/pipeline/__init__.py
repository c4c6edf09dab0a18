"""
Document pipeline: step state machine, insight building and the job loop.
"""

from .insights import build_insight
from .job_loop import DeadLettered, DocumentJobLoop
from .state_machine import (
    PipelineStateMachine,
    RetryOutcome,
    apply_step_update,
    backoff_delay,
    determine_retry_outcome,
    fail_remaining,
    reset_running,
)

__all__ = [
    "build_insight",
    "DeadLettered",
    "DocumentJobLoop",
    "PipelineStateMachine",
    "RetryOutcome",
    "apply_step_update",
    "backoff_delay",
    "determine_retry_outcome",
    "fail_remaining",
    "reset_running",
]
