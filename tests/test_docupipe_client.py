"""
Tests for the Docupipe workflow API client.

These tests use responses library to mock HTTP requests.
"""

import base64
import json
import threading

import pytest
import requests
import responses

from vault_worker.docupipe_client import (
    DocupipeAPIError,
    DocupipeClient,
    DocupipeConnectionError,
    DocupipeError,
    DocupipeResponseError,
    DocupipeTimeoutError,
)

BASE_URL = "https://docupipe.test"
JOB_URL = f"{BASE_URL}/v2/workflows/jobs/job-1"
DOCUMENT_URL = f"{BASE_URL}/v2/workflows/documents/dp-1"


def ticking_clock(step: float):
    """Monotonic clock that moves `step` seconds per call."""
    state = {"now": 0.0}

    def clock() -> float:
        current = state["now"]
        state["now"] += step
        return current

    return clock


@pytest.fixture
def client():
    return DocupipeClient(BASE_URL, "test-key", max_retries=0, default_workflow_id="wf-1")


class TestSubmit:
    """Test document submission."""

    @responses.activate
    def test_submit_sends_base64_document(self, client):
        """Submission posts the file to the workflow endpoint."""
        responses.add(
            responses.POST,
            f"{BASE_URL}/v2/workflows/wf-1/documents",
            json={"documentId": "dp-1", "jobId": "job-1", "runId": "run-1"},
            status=200,
        )

        result = client.submit(b"%PDF-1.4 body", "Payslip_March.pdf")

        assert (result.document_id, result.job_id, result.run_id) == ("dp-1", "job-1", "run-1")
        request = responses.calls[0].request
        assert request.headers["X-API-Key"] == "test-key"
        body = json.loads(request.body)
        assert body["workflowId"] == "wf-1"
        assert body["document"]["file"]["filename"] == "Payslip_March.pdf"
        assert base64.b64decode(body["document"]["file"]["contents"]) == b"%PDF-1.4 body"

    @responses.activate
    def test_explicit_workflow_overrides_default(self, client):
        responses.add(
            responses.POST,
            f"{BASE_URL}/v2/workflows/wf-2/documents",
            json={"documentId": "dp-2"},
        )

        assert client.submit(b"x", "a.pdf", workflow_id="wf-2").job_id is None

    def test_missing_workflow_id(self):
        client = DocupipeClient(BASE_URL, "test-key")
        with pytest.raises(DocupipeError):
            client.submit(b"x", "a.pdf")

    @responses.activate
    def test_missing_document_id(self, client):
        responses.add(responses.POST, f"{BASE_URL}/v2/workflows/wf-1/documents", json={"jobId": "j"})

        with pytest.raises(DocupipeResponseError):
            client.submit(b"x", "a.pdf")

    @responses.activate
    def test_api_error(self, client):
        """Non-2xx responses raise DocupipeAPIError with the status."""
        responses.add(
            responses.POST,
            f"{BASE_URL}/v2/workflows/wf-1/documents",
            json={"error": "bad key"},
            status=401,
        )

        with pytest.raises(DocupipeAPIError) as exc_info:
            client.submit(b"x", "a.pdf")

        assert exc_info.value.status_code == 401
        assert "bad key" in exc_info.value.response_body

    @responses.activate
    def test_connection_error(self, client):
        responses.add(
            responses.POST,
            f"{BASE_URL}/v2/workflows/wf-1/documents",
            body=requests.exceptions.ConnectionError("refused"),
        )

        with pytest.raises(DocupipeConnectionError):
            client.submit(b"x", "a.pdf")


class TestPoll:
    """Test workflow job polling."""

    @responses.activate
    def test_polls_until_completed(self, client):
        responses.add(responses.GET, JOB_URL, json={"status": "processing"})
        responses.add(responses.GET, JOB_URL, json={"status": "processing"})
        responses.add(responses.GET, JOB_URL, json={"status": "COMPLETED"})

        result = client.poll("job-1", interval=0, timeout=5)

        assert result.completed
        assert result.polls == 3

    @responses.activate
    def test_failed_job_is_returned(self, client):
        responses.add(responses.GET, JOB_URL, json={"status": "failed", "error": "unreadable"})

        result = client.poll("job-1", interval=0, timeout=5)

        assert not result.completed
        assert result.error == "unreadable"

    @responses.activate
    def test_timeout(self):
        client = DocupipeClient(BASE_URL, "test-key", max_retries=0, clock=ticking_clock(10))
        responses.add(responses.GET, JOB_URL, json={"status": "processing"})

        with pytest.raises(DocupipeTimeoutError):
            client.poll("job-1", interval=1, timeout=5)

    @responses.activate
    def test_stop_event_interrupts_wait(self):
        client = DocupipeClient(BASE_URL, "test-key", max_retries=0, clock=ticking_clock(0))
        responses.add(responses.GET, JOB_URL, json={"status": "processing"})
        stop = threading.Event()
        stop.set()

        with pytest.raises(DocupipeTimeoutError, match="interrupted"):
            client.poll("job-1", interval=30, timeout=600, stop_event=stop)

        assert len(responses.calls) == 1

    @responses.activate
    def test_response_without_status(self, client):
        responses.add(responses.GET, JOB_URL, json={"jobId": "job-1"})

        with pytest.raises(DocupipeResponseError):
            client.poll("job-1", interval=0, timeout=5)

    def test_job_id_required(self, client):
        with pytest.raises(DocupipeError):
            client.get_job("")


class TestFetchResult:
    """Test standardized payload retrieval."""

    @responses.activate
    def test_top_level_data(self, client):
        responses.add(responses.GET, DOCUMENT_URL, json={"data": {"net": 1900}})

        assert client.fetch_result("dp-1") == {"data": {"net": 1900}}

    @responses.activate
    def test_first_standardization_with_data(self, client):
        responses.add(
            responses.GET,
            DOCUMENT_URL,
            json={
                "data": None,
                "standardizations": [{"id": "s0"}, {"id": "s1", "data": {"net": 1900}}],
            },
        )

        assert client.fetch_result("dp-1") == {"id": "s1", "data": {"net": 1900}}

    @responses.activate
    def test_no_data(self, client):
        responses.add(responses.GET, DOCUMENT_URL, json={"standardizations": []})

        with pytest.raises(DocupipeResponseError):
            client.fetch_result("dp-1")

    @responses.activate
    def test_not_found(self, client):
        responses.add(responses.GET, DOCUMENT_URL, json={"error": "missing"}, status=404)

        with pytest.raises(DocupipeAPIError) as exc_info:
            client.fetch_result("dp-1")

        assert exc_info.value.status_code == 404

    @responses.activate
    def test_invalid_json(self, client):
        responses.add(responses.GET, DOCUMENT_URL, body="<html>", status=200)

        with pytest.raises(DocupipeResponseError):
            client.fetch_result("dp-1")
