"""
Document job loop.

Claims pipeline jobs and drives each document through:

    Classified -> Standardized -> Post-Processed -> Indexed -> Ready

Error policy (the only place exceptions become retry or dead-letter):
- classification rejected          -> dead letter, unsupported_document
- file missing or not a PDF        -> dead letter, invalid_file
- integrity check failed           -> dead letter, net_identity_failed /
                                      balance_mismatch (with the delta)
- Docupipe timeout / API failure   -> retry with backoff, then dead letter
                                      as docupipe_timeout / docupipe_error
- anything else                    -> retry, then processing_error
"""

import logging
import threading
from dataclasses import asdict
from typing import Any, Optional

from ..analytics import ANALYTICS_QUEUE, AnalyticsRebuilder
from ..classifiers import Classification, DocumentClassifier
from ..config import Config
from ..docupipe_client import (
    DocupipeClient,
    DocupipeError,
    DocupipeResponseError,
    DocupipeTimeoutError,
)
from ..normalization import (
    PiiHasher,
    detect_document_type,
    normalize_hmrc,
    normalize_payslip,
    normalize_statement,
)
from ..queues import QueueDriver, Ticker
from ..schemas.dedupe import compute_content_hash
from ..schemas.document_types import DocumentType
from ..schemas.normalized import NormalizationResult, to_float
from ..schemas.pipeline import DeadLetterReason, JobStatus, PipelineJob, StepName, StepStatus
from ..services.accounts import AccountService
from ..state_store import StateStore
from ..state_store.sqlite_store import utc_now
from ..storage import ObjectNotFoundError, ObjectStore, file_key
from .insights import build_insight
from .state_machine import PipelineStateMachine

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"

# Step order after Queued
PROCESSING_STEPS = (
    StepName.CLASSIFIED,
    StepName.STANDARDIZED,
    StepName.POST_PROCESSED,
    StepName.INDEXED,
    StepName.READY,
)

INTEGRITY_REASONS = {
    "net_identity_failed": DeadLetterReason.NET_IDENTITY_FAILED,
    "balance_mismatch": DeadLetterReason.BALANCE_MISMATCH,
}


class DeadLettered(Exception):
    """Processing stopped for good; raised to unwind out of a job."""

    def __init__(self, reason: DeadLetterReason, details: Optional[dict[str, Any]] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason.value)


class DocumentJobLoop:
    """
    Worker for pipeline jobs.

    Several loops (threads or processes) may share one store: claims are
    atomic, and a claim whose worker stops making step progress is taken
    over after the stale-claim timeout.
    """

    def __init__(
        self,
        config: Config,
        store: StateStore,
        object_store: ObjectStore,
        docupipe: DocupipeClient,
        queue: QueueDriver,
        rebuilder: Optional[AnalyticsRebuilder] = None,
        classifier: Optional[DocumentClassifier] = None,
        hasher: Optional[PiiHasher] = None,
        state_machine: Optional[PipelineStateMachine] = None,
    ):
        self.config = config
        self.store = store
        self.object_store = object_store
        self.docupipe = docupipe
        self.queue = queue
        self.rebuilder = rebuilder or AnalyticsRebuilder(store)
        self.classifier = classifier or DocumentClassifier(config.pipeline.classification_threshold)
        self.hasher = hasher or PiiHasher(config.security.hash_pepper)
        self.machine = state_machine or PipelineStateMachine.from_config(store, config.pipeline)
        self.accounts = AccountService(store, clock=self.machine.now)
        if ANALYTICS_QUEUE not in queue.queues:
            queue.register_processor(ANALYTICS_QUEUE, self.rebuilder.process)
        self._ticker: Optional[Ticker] = None
        self._stop = threading.Event()

    # Loop control

    def start(self) -> None:
        self._stop.clear()
        self._ticker = Ticker(
            name="document-job-loop",
            interval=self.config.pipeline.poll_interval_seconds,
            fn=self.drain,
            error_interval=self.config.pipeline.error_sleep_seconds,
        )
        self._stop = self._ticker.stop_event
        self._ticker.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._ticker is not None:
            self._ticker.stop(timeout)
            self._ticker = None

    def drain(self) -> int:
        """Process claimable jobs until none remain or the loop is stopped."""
        processed = 0
        while not self._stop.is_set() and self.process_next():
            processed += 1
        return processed

    def process_next(self) -> bool:
        """
        Claim and process one job.

        Returns:
            True if a job was claimed
        """
        reaped = self.machine.reap_stale_jobs()
        if reaped:
            logger.warning(f"Dead-lettered {reaped} stale job(s) with no attempts left")

        job = self.machine.claim_job()
        if job is None:
            return False
        logger.info(
            f"Processing document {job.document_id} ({job.original_name}) "
            f"attempt {job.attempts}/{job.max_attempts}"
        )
        self.process(job)
        return True

    # Job processing

    def process(self, job: PipelineJob) -> None:
        try:
            self._run(job)
        except DeadLettered as e:
            self.machine.dead_letter(job, e.reason, e.details)
        except DocupipeTimeoutError as e:
            self.machine.handle_failure(job, str(e), DeadLetterReason.DOCUPIPE_TIMEOUT)
        except DocupipeError as e:
            self.machine.handle_failure(job, str(e), DeadLetterReason.DOCUPIPE_ERROR)
        except Exception as e:
            logger.exception(f"Unexpected error processing document {job.document_id}: {e}")
            self.machine.handle_failure(job, str(e), DeadLetterReason.PROCESSING_ERROR)

    def _run(self, job: PipelineJob) -> None:
        machine = self.machine
        machine.mark_step(job.document_id, StepName.QUEUED, StepStatus.COMPLETED)

        if self.store.insight_exists(job.user_id, job.file_id, self.config.pipeline.schema_version):
            self._complete_as_duplicate(job)
            return

        content = self._load_file(job)
        content_hash = compute_content_hash(content)
        self.store.update_pipeline_job(job.document_id, content_hash=content_hash)

        machine.mark_step(job.document_id, StepName.CLASSIFIED, StepStatus.RUNNING)
        classification = self._classify(job)
        machine.mark_step(
            job.document_id,
            StepName.CLASSIFIED,
            StepStatus.COMPLETED,
            f"{classification.type.value} ({classification.confidence})",
        )

        machine.mark_step(job.document_id, StepName.STANDARDIZED, StepStatus.RUNNING)
        payload, docupipe_document_id = self._standardize(job, content)
        machine.mark_step(job.document_id, StepName.STANDARDIZED, StepStatus.COMPLETED)

        machine.mark_step(job.document_id, StepName.POST_PROCESSED, StepStatus.RUNNING)
        result = self._normalize(job, classification, payload, docupipe_document_id)
        machine.mark_step(
            job.document_id,
            StepName.POST_PROCESSED,
            StepStatus.COMPLETED,
            f"integrity {result.integrity.status.value}",
        )

        machine.mark_step(job.document_id, StepName.INDEXED, StepStatus.RUNNING)
        month = self._index(job, classification, result, content_hash)
        machine.mark_step(job.document_id, StepName.INDEXED, StepStatus.COMPLETED)

        machine.mark_step(job.document_id, StepName.READY, StepStatus.RUNNING)
        self.rebuilder.trigger(self.queue, job.user_id, month)
        machine.mark_step(job.document_id, StepName.READY, StepStatus.COMPLETED)
        machine.finalize_job(job.document_id, JobStatus.COMPLETED)
        logger.info(f"Document {job.document_id} ready ({classification.type.value}, {month})")

    def _complete_as_duplicate(self, job: PipelineJob) -> None:
        logger.info(
            f"Insight already exists for file {job.file_id} "
            f"(schema {self.config.pipeline.schema_version}); skipping"
        )
        for step in PROCESSING_STEPS:
            self.machine.mark_step(job.document_id, step, StepStatus.COMPLETED, "already processed")
        self.machine.finalize_job(job.document_id, JobStatus.COMPLETED)

    def _load_file(self, job: PipelineJob) -> bytes:
        key = file_key(job.user_id, job.file_id)
        try:
            content = self.object_store.read_bytes(key)
        except ObjectNotFoundError:
            raise DeadLettered(DeadLetterReason.INVALID_FILE, {"error": f"object {key} not found"})
        if not content.startswith(PDF_MAGIC):
            raise DeadLettered(DeadLetterReason.INVALID_FILE, {"error": "file is not a PDF"})
        return content

    def _classify(self, job: PipelineJob) -> Classification:
        classification = self.classifier.classify(job.original_name)
        if not classification.accepted:
            raise DeadLettered(
                DeadLetterReason.UNSUPPORTED_DOCUMENT,
                {
                    "type": classification.type.value,
                    "confidence": classification.confidence,
                    "threshold": classification.threshold,
                },
            )
        self.store.update_pipeline_job(
            job.document_id,
            catalogue_key=classification.type.value,
            classification_confidence=classification.confidence,
        )
        return classification

    def _standardize(self, job: PipelineJob, content: bytes) -> tuple[dict[str, Any], str]:
        """Submit (or resume) the Docupipe workflow; returns its payload and document id."""
        docupipe_config = self.config.docupipe
        document_id = job.docupipe_document_id
        job_id = job.docupipe_job_id

        if document_id and job_id:
            logger.info(f"Resuming Docupipe job {job_id} for document {job.document_id}")
        else:
            submitted = self.docupipe.submit(content, job.original_name, docupipe_config.workflow_id)
            document_id, job_id = submitted.document_id, submitted.job_id
            if not job_id:
                raise DocupipeResponseError("Docupipe submission missing jobId")
            self.store.update_pipeline_job(
                job.document_id, docupipe_document_id=document_id, docupipe_job_id=job_id
            )

        outcome = self.docupipe.poll(
            job_id,
            interval=docupipe_config.poll_interval_seconds,
            timeout=docupipe_config.poll_timeout_seconds,
            stop_event=self._stop,
        )
        if not outcome.completed:
            # A failed workflow run cannot be resumed; the next attempt resubmits
            self.store.update_pipeline_job(
                job.document_id, docupipe_document_id=None, docupipe_job_id=None
            )
            raise DocupipeError(f"Docupipe job {job_id} failed: {outcome.error or 'unknown error'}")

        standardized = self.docupipe.fetch_result(document_id)
        data = standardized.get("data")
        if not isinstance(data, dict):
            raise DocupipeResponseError(f"Docupipe document {document_id} data is not an object")
        return data, document_id

    def _normalize(
        self,
        job: PipelineJob,
        classification: Classification,
        payload: dict[str, Any],
        docupipe_document_id: Optional[str] = None,
    ) -> NormalizationResult:
        doc_type = classification.type
        if doc_type == DocumentType.PAYSLIP:
            result: NormalizationResult = normalize_payslip(payload, self.hasher)
        elif doc_type.is_statement:
            result = normalize_statement(
                payload,
                self.hasher,
                file_id=job.file_id,
                learned_categories=self.store.get_merchant_categories(job.user_id),
            )
        elif doc_type == DocumentType.HMRC_CORRESPONDENCE:
            result = normalize_hmrc(payload)
        else:
            raise DeadLettered(DeadLetterReason.UNSUPPORTED_DOCUMENT, {"type": doc_type.value})

        detected = detect_document_type(payload)
        expected = {"payslip": "payslip", "statement": "bank_statement"}.get(result.kind)
        if detected != "unknown" and expected and detected != expected:
            logger.warning(
                f"Document {job.document_id} classified as {doc_type.value} "
                f"but payload looks like {detected}"
            )

        self.store.save_document_record(
            document_id=job.document_id,
            user_id=job.user_id,
            document_type=doc_type.value,
            normalized=_normalized_dict(result),
            integrity=result.integrity.to_dict(),
            pii=result.pii.to_dict(),
            sources=result.sources,
            docupipe_document_id=docupipe_document_id,
            now=self.machine.now(),
        )

        if not result.integrity.passed:
            reason = INTEGRITY_REASONS.get(result.integrity.reason or "", DeadLetterReason.PROCESSING_ERROR)
            raise DeadLettered(
                reason,
                {"delta": to_float(result.integrity.delta), "document_type": doc_type.value},
            )
        return result

    def _index(
        self,
        job: PipelineJob,
        classification: Classification,
        result: NormalizationResult,
        content_hash: str,
    ) -> str:
        """Upsert the account (statements) and save the insight; returns its month."""
        if result.kind == "statement":
            statement = result.normalized
            ensured = self.accounts.ensure_account(
                job_id=job.document_id,
                file_id=job.file_id,
                user_id=job.user_id,
                catalogue_key=classification.type.value,
                institution_name=statement.institution_name or classification.institution_name,
                account_last4=statement.account_last4,
                last_update_key=job.last_update_key,
            )
            if ensured.idempotency_key and not ensured.skipped:
                self.store.update_pipeline_job(
                    job.document_id, last_update_key=ensured.idempotency_key
                )

        insight = build_insight(
            job,
            classification,
            result,
            self.config.pipeline,
            content_hash,
            fallback_date=(job.created_at or utc_now().isoformat())[:10],
        )
        if not self.store.save_insight(insight, now=self.machine.now()):
            logger.info(f"Insight for file {job.file_id} already stored; left unchanged")
        return insight.document_month


def _normalized_dict(result: NormalizationResult) -> dict[str, Any]:
    """Plain view of a normalized record for the document store."""
    return asdict(result.normalized)
