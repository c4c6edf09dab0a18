"""
Tests for the document job loop.

Docupipe is replaced by a mock; files live in a filesystem object store
under tmp_path and analytics rebuilds run inline on the in-memory queue.
"""

import time
from unittest.mock import Mock

import pytest
from conftest import SAMPLE_PDF_BYTES, fixed_clock

from vault_worker.docupipe_client import (
    DocupipeAPIError,
    DocupipeClient,
    DocupipeTimeoutError,
    PollResult,
    SubmitResult,
)
from vault_worker.normalization import merchant_key
from vault_worker.pipeline import DocumentJobLoop, PipelineStateMachine
from vault_worker.queues import InMemoryQueueDriver
from vault_worker.schemas.pipeline import JobStatus, StepName, StepStatus
from vault_worker.services import VaultWorkerService
from vault_worker.storage import FilesystemObjectStore, file_key


@pytest.fixture
def clock():
    return fixed_clock()


@pytest.fixture
def docupipe(sample_payslip):
    client = Mock(spec=DocupipeClient)
    client.submit.return_value = SubmitResult(document_id="dp-1", job_id="job-1")
    client.poll.return_value = PollResult(status="completed", polls=1)
    client.fetch_result.return_value = {"data": sample_payslip}
    return client


@pytest.fixture
def objects(config):
    return FilesystemObjectStore(config.storage_root)


@pytest.fixture
def queue():
    return InMemoryQueueDriver()


@pytest.fixture
def service(config, store, queue, clock):
    return VaultWorkerService(config, store, queue=queue, clock=clock)


@pytest.fixture
def loop(config, store, objects, docupipe, queue, clock):
    return DocumentJobLoop(
        config,
        store,
        objects,
        docupipe,
        queue,
        state_machine=PipelineStateMachine.from_config(store, config.pipeline, clock=clock),
    )


def upload(objects, file_id="file-1", data=SAMPLE_PDF_BYTES, user_id="user-1"):
    objects.put_object(file_key(user_id, file_id), data)


def step_statuses(store, document_id):
    return {step.name: step.status for step in store.get_pipeline_job(document_id).steps}


class TestHappyPath:
    """Documents that make it all the way to Ready."""

    def test_payslip_reaches_ready_and_snapshot(self, service, loop, objects, store):
        upload(objects)
        document_id = service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")

        assert loop.process_next()

        status = service.get_pipeline_status(document_id)
        assert status["status"] == "completed"
        assert all(step["status"] == "completed" for step in status["steps"])
        assert all(step["ended_at"] for step in status["steps"])

        insight = store.get_insight("user-1", "file-1", "v1")
        assert insight.catalogue_key == "payslip"
        assert insight.document_month == "2024-03"
        assert insight.metrics["net"] == 1900.0

        snapshot = service.get_monthly_snapshot("user-1", "2024-03")
        assert snapshot["income"]["net"] == 1900.0
        assert snapshot["sources"]["payslips"] == 1
        assert not loop.process_next()

    def test_job_records_classification_and_docupipe_ids(self, service, loop, objects, store):
        upload(objects)
        document_id = service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")

        loop.process_next()

        job = store.get_pipeline_job(document_id)
        assert job.catalogue_key == "payslip"
        assert job.classification_confidence == 0.85
        assert job.docupipe_document_id == "dp-1"
        assert job.content_hash
        record = store.get_document_record(document_id)
        assert record["integrity"] == {"status": "pass"}
        assert record["pii"] == {"ni_last3": "56C"}

    def test_statement_creates_account(self, service, loop, objects, store, docupipe, sample_statement):
        docupipe.fetch_result.return_value = {"data": sample_statement}
        upload(objects)
        service.enqueue_document_job("user-1", "file-1", "Monzo_Statement_March.pdf")

        loop.process_next()

        [account] = store.list_accounts("user-1")
        assert account.institution_name == "Monzo"
        assert account.account_number_masked == "••••5678"
        assert account.raw_institution_names == ["Monzo Bank Ltd"]
        snapshot = service.get_monthly_snapshot("user-1", "2024-03")
        assert snapshot["spend"]["total"] == 150.0

    def test_statement_uses_learned_categories(self, service, loop, objects, store, docupipe, sample_statement):
        store.remember_merchant_category("user-1", merchant_key("NETFLIX"), "Entertainment")
        docupipe.fetch_result.return_value = {"data": sample_statement}
        upload(objects)
        service.enqueue_document_job("user-1", "file-1", "Monzo_Statement_March.pdf")

        loop.process_next()

        insight = store.get_insight("user-1", "file-1", "v1")
        categories = {tx["description"]: tx["category"] for tx in insight.transactions}
        assert categories["Netflix"] == "Entertainment"
        assert categories["Tesco Stores"] == "Groceries"

    def test_drain_processes_every_claimable_job(self, service, loop, objects):
        upload(objects, "file-1")
        upload(objects, "file-2")
        service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")
        service.enqueue_document_job("user-1", "file-2", "Payslip_April.pdf")

        assert loop.drain() == 2

    def test_same_file_is_processed_once(self, service, loop, objects, docupipe):
        upload(objects)
        service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")
        loop.process_next()

        second = service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")
        loop.process_next()

        status = service.get_pipeline_status(second)
        assert status["status"] == "completed"
        assert status["steps"][-1]["message"] == "already processed"
        assert docupipe.submit.call_count == 1

    def test_background_loop(self, service, loop, objects):
        upload(objects)
        document_id = service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")

        loop.start()
        try:
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if service.get_pipeline_status(document_id)["status"] == "completed":
                    break
                time.sleep(0.02)
        finally:
            loop.stop(timeout=5)

        assert service.get_pipeline_status(document_id)["status"] == "completed"


class TestDeadLetters:
    """Permanent failures."""

    def test_payslip_integrity_failure(self, service, loop, objects, docupipe, sample_payslip):
        sample_payslip["totals"]["net"] = 2000.00
        docupipe.fetch_result.return_value = {"data": sample_payslip}
        upload(objects)
        document_id = service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")

        loop.process_next()

        [letter] = service.list_dead_letters()
        assert letter["document_id"] == document_id
        assert letter["reason"] == "net_identity_failed"
        assert letter["details"] == {"delta": 100.0, "document_type": "payslip"}

        statuses = step_statuses(loop.store, document_id)
        assert statuses["Standardized"] == StepStatus.COMPLETED
        assert statuses["Post-Processed"] == StepStatus.FAILED
        assert statuses["Ready"] == StepStatus.FAILED
        assert service.get_pipeline_status(document_id)["status"] == "failed"
        assert loop.store.get_insight("user-1", "file-1", "v1") is None

    def test_statement_balance_mismatch(self, service, loop, objects, docupipe, sample_statement):
        sample_statement["balances"]["closing"] = 1000.00
        docupipe.fetch_result.return_value = {"data": sample_statement}
        upload(objects)
        service.enqueue_document_job("user-1", "file-1", "Monzo_Statement_March.pdf")

        loop.process_next()

        [letter] = service.list_dead_letters()
        assert letter["reason"] == "balance_mismatch"
        assert letter["details"]["delta"] == -850.0
        assert loop.store.list_accounts("user-1") == []

    def test_unsupported_document(self, service, loop, objects, docupipe):
        upload(objects)
        document_id = service.enqueue_document_job("user-1", "file-1", "random.pdf")

        loop.process_next()

        [letter] = service.list_dead_letters()
        assert letter["reason"] == "unsupported_document"
        assert letter["description"] == "Unsupported or low confidence document"
        assert step_statuses(loop.store, document_id)["Classified"] == StepStatus.FAILED
        docupipe.submit.assert_not_called()

    def test_missing_file(self, service, loop):
        service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")

        loop.process_next()

        assert service.list_dead_letters()[0]["reason"] == "invalid_file"

    def test_file_that_is_not_a_pdf(self, service, loop, objects):
        upload(objects, data=b"GIF89a...")
        service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")

        loop.process_next()

        assert service.list_dead_letters()[0]["reason"] == "invalid_file"

    def test_requeue_after_fix(self, service, loop, objects):
        document_id = service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")
        loop.process_next()
        upload(objects)

        assert service.requeue_dead_letter(document_id)
        loop.process_next()

        assert service.get_pipeline_status(document_id)["status"] == "completed"
        assert service.list_dead_letters() == []


class TestRetries:
    """Transient Docupipe failures."""

    def test_api_error_is_retried_after_backoff(self, service, loop, objects, docupipe, clock):
        docupipe.submit.side_effect = [
            DocupipeAPIError(503, "Service Unavailable"),
            SubmitResult(document_id="dp-1", job_id="job-1"),
        ]
        upload(objects)
        document_id = service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")

        loop.process_next()

        status = service.get_pipeline_status(document_id)
        assert status["status"] == "queued"
        assert status["job_status"] == "failed"
        assert "503" in status["last_error"]
        assert not loop.process_next()

        clock.advance(1)
        assert loop.process_next()
        status = service.get_pipeline_status(document_id)
        assert status["status"] == "completed"
        assert status["attempts"] == 2

    def test_timeouts_exhaust_into_dead_letter(self, service, loop, objects, docupipe, clock):
        docupipe.poll.side_effect = DocupipeTimeoutError("still processing")
        upload(objects)
        document_id = service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")

        for _ in range(3):
            assert loop.process_next()
            clock.advance(60)

        [letter] = service.list_dead_letters()
        assert letter["reason"] == "docupipe_timeout"
        assert letter["details"]["attempts"] == 3
        assert service.get_pipeline_status(document_id)["status"] == "failed"

    def test_retry_resumes_polling_without_resubmitting(self, service, loop, objects, docupipe, clock):
        docupipe.poll.side_effect = [
            DocupipeTimeoutError("still processing"),
            PollResult(status="completed", polls=1),
        ]
        upload(objects)
        service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")

        loop.process_next()
        clock.advance(1)
        loop.process_next()

        assert docupipe.submit.call_count == 1
        assert docupipe.poll.call_args.args[0] == "job-1"
        docupipe.fetch_result.assert_called_once_with("dp-1")

    def test_failed_workflow_is_resubmitted(self, service, loop, objects, docupipe, clock):
        docupipe.poll.side_effect = [
            PollResult(status="failed", error="unreadable scan"),
            PollResult(status="completed"),
        ]
        upload(objects)
        document_id = service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")

        loop.process_next()
        job = loop.store.get_pipeline_job(document_id)
        assert job.docupipe_job_id is None
        assert "unreadable scan" in job.last_error

        clock.advance(1)
        loop.process_next()

        assert docupipe.submit.call_count == 2
        assert service.get_pipeline_status(document_id)["status"] == "completed"

    def test_unexpected_error_is_retried(self, service, loop, objects, docupipe):
        docupipe.fetch_result.side_effect = RuntimeError("disk full")
        upload(objects)
        document_id = service.enqueue_document_job("user-1", "file-1", "Payslip_March.pdf")

        loop.process_next()

        job = loop.store.get_pipeline_job(document_id)
        assert job.status == JobStatus.FAILED
        assert job.last_error == "disk full"
        assert job.step(StepName.STANDARDIZED).status == StepStatus.PENDING
        assert service.list_dead_letters() == []
