"""
Docupipe document standardization client.
"""

from .client import (
    DocupipeAPIError,
    DocupipeClient,
    DocupipeConnectionError,
    DocupipeError,
    DocupipeResponseError,
    DocupipeTimeoutError,
    PollResult,
    SubmitResult,
    WorkflowJob,
)

__all__ = [
    "DocupipeClient",
    "DocupipeError",
    "DocupipeAPIError",
    "DocupipeConnectionError",
    "DocupipeTimeoutError",
    "DocupipeResponseError",
    "SubmitResult",
    "WorkflowJob",
    "PollResult",
]
