"""
Vault Worker Service.

The operations exposed to the rest of the platform:

- enqueue_document_job: register an uploaded file for processing
- get_pipeline_status: step-by-step progress of one document
- get_monthly_snapshot: the stored analytics snapshot of a month
- list_dead_letters: documents that could not be processed

plus the remediation helpers used by operators (requeue, overrides,
synchronous rebuilds).
"""

import logging
import uuid
from typing import Any, Optional

from ..analytics import ANALYTICS_QUEUE, AnalyticsRebuilder, month_bounds
from ..analytics.aggregator import OVERRIDE_SCOPES
from ..catalogue import validate_collection_id
from ..config import Config
from ..normalization.amounts import parse_date
from ..normalization.categories import merchant_key, normalise_category, sanitise_description
from ..pipeline.state_machine import PipelineStateMachine
from ..queues import QueueDriver, create_queue_driver
from ..schemas.pipeline import DeadLetterReason
from ..state_store import StateStore
from ..state_store.sqlite_store import utc_now

logger = logging.getLogger(__name__)


class VaultWorkerService:
    """
    Facade over the state store, the pipeline and analytics.

    Holds no state of its own; every call reads or writes the store, so
    several service instances can share one database.
    """

    def __init__(
        self,
        config: Config,
        store: StateStore,
        queue: Optional[QueueDriver] = None,
        rebuilder: Optional[AnalyticsRebuilder] = None,
        clock=utc_now,
    ):
        """
        Initialize the service.

        Args:
            config: Application configuration
            store: State store shared with the workers
            queue: Queue driver used to trigger analytics rebuilds
            rebuilder: Rebuilder shared with the job loop (per-key locks)
            clock: Returns the current UTC datetime
        """
        self.config = config
        self.store = store
        self.queue = queue or create_queue_driver(config, store)
        self.rebuilder = rebuilder or AnalyticsRebuilder(store)
        self.machine = PipelineStateMachine.from_config(store, config.pipeline, clock=clock)
        if ANALYTICS_QUEUE not in self.queue.queues:
            self.queue.register_processor(ANALYTICS_QUEUE, self.rebuilder.process)

    def enqueue_document_job(
        self,
        user_id: str,
        file_id: str,
        original_name: str,
        collection_id: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> str:
        """
        Create a pipeline job for an uploaded file.

        The job starts with Uploaded completed and Queued running;
        a worker loop picks it up on its next tick.

        Returns:
            The new document id

        Raises:
            ValueError: missing ids, or a collection id naming an unknown
                catalogue key
        """
        if not user_id or not file_id:
            raise ValueError("user_id and file_id are required")
        if not original_name:
            raise ValueError("original_name is required")
        validate_collection_id(collection_id)

        document_id = uuid.uuid4().hex
        self.machine.create_job(
            document_id=document_id,
            user_id=user_id,
            file_id=file_id,
            original_name=original_name,
            collection_id=collection_id,
            display_name=display_name,
        )
        logger.info(f"Enqueued document {document_id} ({original_name}) for user {user_id}")
        return document_id

    def get_pipeline_status(self, document_id: str) -> Optional[dict[str, Any]]:
        """Overall status and step list of a document, or None if unknown."""
        job = self.store.get_pipeline_job(document_id)
        if job is None:
            return None
        return job.status_view()

    def get_monthly_snapshot(self, user_id: str, month: str) -> Optional[dict[str, Any]]:
        """
        Stored analytics snapshot of a month.

        Raises:
            InvalidMonthError: month is not a real YYYY-MM month
        """
        month_bounds(month)
        record = self.store.get_analytics_snapshot(user_id, month)
        if record is None:
            return None
        return record.snapshot

    def list_dead_letters(self, user_id: Optional[str] = None) -> list[dict[str, Any]]:
        """Open dead letters, oldest first."""
        letters = []
        for record in self.store.list_dead_letters(user_id=user_id):
            try:
                description = DeadLetterReason(record.reason).description
            except ValueError:
                description = record.reason
            letters.append(
                {
                    "document_id": record.document_id,
                    "user_id": record.user_id,
                    "reason": record.reason,
                    "description": description,
                    "details": record.details,
                    "created_at": record.created_at,
                }
            )
        return letters

    # Remediation

    def requeue_dead_letter(self, document_id: str) -> bool:
        """Send a dead-lettered document through the pipeline again."""
        return self.machine.requeue(document_id)

    def add_override(
        self,
        user_id: str,
        scope: str,
        target_id: str,
        patch: Any,
        applies_from: str,
        note: Optional[str] = None,
    ) -> int:
        """
        Record a user correction and trigger rebuilds of the affected months.

        Args:
            scope: "transaction" (patch merged into the transaction with id
                target_id) or "metric" (patch replaces the value at the
                dotted path target_id)
                A transaction category correction is also remembered for
                the merchant, so later statements are categorised the same way
            applies_from: First day (YYYY-MM-DD) the override is effective

        Returns:
            Override id
        """
        if scope not in OVERRIDE_SCOPES:
            raise ValueError(f"Unknown override scope: {scope}")
        if not target_id:
            raise ValueError("target_id is required")
        effective = parse_date(applies_from)
        if effective is None:
            raise ValueError(f"Invalid applies_from date: {applies_from!r}")

        override_id = self.store.add_user_override(
            user_id, scope, target_id, patch, effective, note=note, now=self.machine.now()
        )
        if scope == "transaction" and isinstance(patch, dict) and patch.get("category"):
            self._learn_category(user_id, target_id, patch["category"])
        # The override reaches every month from its first one onwards
        first_month = effective[:7]
        months = {first_month}
        months.update(m for m in self.store.list_analytics_periods(user_id) if m >= first_month)
        for month in sorted(months):
            self.rebuilder.trigger(self.queue, user_id, month)
        logger.info(f"Added {scope} override {override_id} for user {user_id} from {effective}")
        return override_id

    def _learn_category(self, user_id: str, transaction_id: str, category: Any) -> None:
        """Remember a corrected category so later statements from the merchant use it."""
        tx = self.store.find_insight_transaction(user_id, transaction_id)
        key = merchant_key(tx.get("description")) if tx else None
        if key is None:
            logger.debug(f"No stored description for transaction {transaction_id}; nothing to learn")
            return
        canonical = normalise_category(category)
        self.store.remember_merchant_category(
            user_id,
            key,
            canonical,
            description_sample=sanitise_description(tx.get("description")),
            last_amount=tx.get("amount"),
            last_direction=tx.get("direction"),
            now=self.machine.now(),
        )
        logger.info(f"Learned category {canonical} for a merchant of user {user_id}")

    def rebuild_monthly_analytics(self, user_id: str, month: str) -> dict[str, Any]:
        """Rebuild one snapshot synchronously and return it."""
        return self.rebuilder.rebuild(user_id, month)
