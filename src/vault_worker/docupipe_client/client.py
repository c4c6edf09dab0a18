"""
Docupipe workflow API client implementation.
"""

import base64
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

TERMINAL_JOB_STATES = frozenset({"completed", "failed"})


class DocupipeError(Exception):
    """Base exception for Docupipe client errors."""

    code = "docupipe_error"


class DocupipeAPIError(DocupipeError):
    """API returned an error response."""

    def __init__(self, status_code: int, message: str, response_body: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Docupipe API error {status_code}: {message}")


class DocupipeConnectionError(DocupipeError):
    """Failed to connect to Docupipe."""

    pass


class DocupipeTimeoutError(DocupipeError):
    """A workflow job did not finish within the polling window."""

    code = "docupipe_timeout"


class DocupipeResponseError(DocupipeError):
    """Docupipe answered 2xx with a payload we cannot use."""

    pass


@dataclass
class SubmitResult:
    document_id: str
    job_id: Optional[str] = None
    run_id: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "SubmitResult":
        document_id = data.get("documentId")
        if not document_id:
            raise DocupipeResponseError("Docupipe submission missing documentId")
        return cls(
            document_id=str(document_id),
            job_id=data.get("jobId"),
            run_id=data.get("runId"),
        )


@dataclass
class WorkflowJob:
    """Status of a workflow job."""

    status: str
    error: Optional[str] = None
    document_id: Optional[str] = None
    job_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATES

    @classmethod
    def from_api_response(cls, data: dict) -> "WorkflowJob":
        status = data.get("status")
        if not status:
            raise DocupipeResponseError("Docupipe job response missing status")
        return cls(
            status=str(status).lower(),
            error=data.get("error"),
            document_id=data.get("documentId"),
            job_id=data.get("jobId"),
        )


@dataclass
class PollResult:
    status: str  # completed | failed
    error: Optional[str] = None
    polls: int = 0

    @property
    def completed(self) -> bool:
        return self.status == "completed"


class DocupipeClient:
    """
    Client for the Docupipe workflow API.

    Features:
    - Submit documents to a workflow (base64 upload)
    - Poll workflow jobs at a fixed interval with a hard timeout
    - Fetch standardized payloads

    Transport retries cover idempotent GETs only. Business retries (backoff
    across attempts, dead-lettering) belong to the pipeline.
    """

    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        default_workflow_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize Docupipe client.

        Args:
            base_url: API origin (e.g., "https://app.docupipe.ai")
            api_key: API key sent as X-API-Key
            timeout: Request timeout in seconds
            max_retries: Maximum transport retries for GET requests
            backoff_factor: Backoff factor for transport retries
            default_workflow_id: Workflow used when submit() gets none
            clock: Monotonic clock, injectable for tests
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.default_workflow_id = default_workflow_id
        self._clock = clock

        self.session = requests.Session()
        self.session.headers.update(
            {
                "X-API-Key": api_key,
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Make an API request with error handling."""
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.request(
                method=method,
                url=url,
                json=json_data,
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            raise DocupipeConnectionError(f"Failed to connect to Docupipe at {self.base_url}: {e}")
        except requests.exceptions.Timeout as e:
            raise DocupipeConnectionError(f"Request to Docupipe timed out: {e}")
        except requests.exceptions.RequestException as e:
            raise DocupipeError(f"Request failed: {e}")

        if not response.ok:
            raise DocupipeAPIError(
                status_code=response.status_code,
                message=response.reason or "",
                response_body=response.text,
            )

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            raise DocupipeResponseError(f"Docupipe returned invalid JSON: {e}")
        if not isinstance(payload, dict):
            raise DocupipeResponseError("Docupipe returned a non-object payload")
        return payload

    def submit(
        self,
        document_bytes: bytes,
        filename: str,
        workflow_id: Optional[str] = None,
    ) -> SubmitResult:
        """
        Submit a document to a workflow.

        Args:
            document_bytes: Raw file contents
            filename: Original filename (sent to Docupipe for display)
            workflow_id: Workflow to run (falls back to the client default)

        Returns:
            SubmitResult with the Docupipe document id and job id
        """
        workflow = workflow_id or self.default_workflow_id
        if not workflow:
            raise DocupipeError("Docupipe workflow id not configured")

        payload = {
            "workflowId": workflow,
            "document": {
                "file": {
                    "contents": base64.b64encode(document_bytes).decode("ascii"),
                    "filename": filename or "document.pdf",
                }
            },
        }
        data = self._request("POST", f"/v2/workflows/{quote(workflow, safe='')}/documents", payload)
        result = SubmitResult.from_api_response(data)
        logger.info(f"Submitted {filename} to Docupipe: document={result.document_id} job={result.job_id}")
        return result

    def get_job(self, job_id: str) -> WorkflowJob:
        if not job_id:
            raise DocupipeError("Docupipe job id is required")
        data = self._request("GET", f"/v2/workflows/jobs/{quote(job_id, safe='')}")
        return WorkflowJob.from_api_response(data)

    def poll(
        self,
        job_id: str,
        interval: float,
        timeout: float,
        stop_event: Optional[threading.Event] = None,
    ) -> PollResult:
        """
        Poll a workflow job until it completes or fails.

        Waits a fixed interval between polls. The wait is on stop_event when
        one is given, so worker shutdown interrupts it.

        Raises:
            DocupipeTimeoutError: the job was still running after timeout
                seconds, or the wait was interrupted by stop_event
        """
        waiter = stop_event or threading.Event()
        started = self._clock()
        polls = 0

        while True:
            job = self.get_job(job_id)
            polls += 1
            if job.is_terminal:
                logger.debug(f"Docupipe job {job_id} finished as {job.status} after {polls} polls")
                return PollResult(status=job.status, error=job.error, polls=polls)

            elapsed = self._clock() - started
            if elapsed >= timeout:
                raise DocupipeTimeoutError(
                    f"Docupipe job {job_id} still {job.status} after {elapsed:.0f}s"
                )
            if waiter.wait(min(interval, max(timeout - elapsed, 0))):
                raise DocupipeTimeoutError(f"Polling of Docupipe job {job_id} interrupted by shutdown")

    def fetch_result(self, document_id: str) -> dict[str, Any]:
        """
        Fetch the standardized payload for a document.

        Returns the top-level payload when it carries data, otherwise the
        first standardization that does.
        """
        if not document_id:
            raise DocupipeError("Docupipe document id is required")
        payload = self._request("GET", f"/v2/workflows/documents/{quote(document_id, safe='')}")

        if payload.get("data") is not None:
            return payload

        for standardization in payload.get("standardizations") or []:
            if isinstance(standardization, dict) and standardization.get("data") is not None:
                return standardization

        raise DocupipeResponseError(f"Docupipe document {document_id} has no standardized data")

    def close(self) -> None:
        self.session.close()
