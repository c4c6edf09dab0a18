"""
SQLite-based state store implementation.

Tables:
- outbox_jobs: Durable queue records (at-least-once delivery)
- pipeline_jobs: One per uploaded document, with ordered steps
- document_insights: Canonical insights, immutable per (user, file, schema)
- user_overrides: User-authored transaction/metric patches
- user_analytics: Monthly snapshots, replaced wholesale on rebuild
- accounts: Canonical institution accounts with raw-name variants
- dead_letters: Terminal failures awaiting remediation
- document_records: Normalized record of each processed document
- merchant_categories: Categories users taught per merchant
"""

import json
import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ..accounts.update_planner import (
    ROOT_OPERATORS,
    ensure_single_operator,
    split_positional_path,
)
from ..schemas.insight import DocumentInsight
from ..schemas.pipeline import JobStatus, PipelineJob, PipelineStep, steps_from_json, steps_to_json

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    """Fixed-width UTC timestamp; lexical order equals chronological order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class OutboxState(str, Enum):
    """State of an outbox job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class OutboxJob:
    """Record of a durable queue job."""

    id: int
    queue: str
    payload: dict[str, Any]
    state: OutboxState
    attempts: int
    available_at: str
    created_at: str
    updated_at: str
    last_error: str | None
    dedupe_key: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "OutboxJob":
        """Create from database row."""
        return cls(
            id=row["id"],
            queue=row["queue"],
            payload=json.loads(row["payload_json"]) if row["payload_json"] else {},
            state=OutboxState(row["state"]),
            attempts=row["attempts"],
            available_at=row["available_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_error=row["last_error"],
            dedupe_key=row["dedupe_key"],
        )


@dataclass
class AccountRecord:
    """Record of a canonical institution account."""

    id: int
    user_id: str
    institution_name: str
    account_type: str
    account_number_masked: str
    display_name: str | None
    raw_institution_names: list[str]
    fingerprints: list[str]
    first_seen_at: str | None
    last_seen_at: str | None
    last_update_key: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AccountRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            institution_name=row["institution_name"],
            account_type=row["account_type"],
            account_number_masked=row["account_number_masked"],
            display_name=row["display_name"],
            raw_institution_names=json.loads(row["raw_institution_names"] or "[]"),
            fingerprints=json.loads(row["fingerprints"] or "[]"),
            first_seen_at=row["first_seen_at"],
            last_seen_at=row["last_seen_at"],
            last_update_key=row["last_update_key"],
        )


@dataclass
class DeadLetterRecord:
    """Record of a dead-lettered document."""

    id: int
    document_id: str
    user_id: str
    reason: str
    details: dict[str, Any]
    created_at: str
    resolved_at: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DeadLetterRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            document_id=row["document_id"],
            user_id=row["user_id"],
            reason=row["reason"],
            details=json.loads(row["details_json"]) if row["details_json"] else {},
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
        )


@dataclass
class UserOverrideRecord:
    """Record of a user-authored override."""

    id: int
    user_id: str
    scope: str  # transaction | metric
    target_id: str
    patch: Any
    applies_from: str  # YYYY-MM-DD
    note: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "UserOverrideRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            scope=row["scope"],
            target_id=row["target_id"],
            patch=json.loads(row["patch_json"]),
            applies_from=row["applies_from"],
            note=row["note"],
            created_at=row["created_at"],
        )


@dataclass
class AnalyticsSnapshotRecord:
    """Stored monthly snapshot."""

    user_id: str
    period: str
    snapshot_json: str
    built_at: str

    @property
    def snapshot(self) -> dict[str, Any]:
        return json.loads(self.snapshot_json)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AnalyticsSnapshotRecord":
        """Create from database row."""
        return cls(
            user_id=row["user_id"],
            period=row["period"],
            snapshot_json=row["snapshot_json"],
            built_at=row["built_at"],
        )


# Columns of pipeline_jobs the pipeline layer may set directly
PIPELINE_JOB_FIELDS = frozenset(
    {
        "status",
        "retry_at",
        "last_error",
        "catalogue_key",
        "classification_confidence",
        "docupipe_document_id",
        "docupipe_job_id",
        "content_hash",
        "last_update_key",
    }
)

# Account fields addressable by update documents
ACCOUNT_UPDATE_FIELDS = frozenset(
    {
        "display_name",
        "raw_institution_names",
        "fingerprints",
        "first_seen_at",
        "last_seen_at",
        "last_update_key",
    }
)
ACCOUNT_ARRAY_FIELDS = frozenset({"raw_institution_names", "fingerprints"})


def _pipeline_job_from_row(row: sqlite3.Row) -> PipelineJob:
    keys = row.keys()
    return PipelineJob(
        document_id=row["document_id"],
        user_id=row["user_id"],
        file_id=row["file_id"],
        original_name=row["original_name"],
        status=JobStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        steps=steps_from_json(row["steps_json"]),
        collection_id=row["collection_id"],
        display_name=row["display_name"],
        retry_at=row["retry_at"],
        last_error=row["last_error"],
        catalogue_key=row["catalogue_key"],
        classification_confidence=row["classification_confidence"],
        docupipe_document_id=row["docupipe_document_id"],
        docupipe_job_id=row["docupipe_job_id"],
        content_hash=row["content_hash"],
        last_update_key=row["last_update_key"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        heartbeat_at=row["heartbeat_at"] if "heartbeat_at" in keys else None,
    )


class StateStore:
    """
    SQLite-based state store for the worker.

    Provides persistent tracking of:
    - Outbox queue jobs
    - Pipeline jobs and their steps
    - Document insights and normalized records
    - User overrides and monthly analytics snapshots
    - Canonical accounts
    - Dead letters

    Every claim runs inside a BEGIN IMMEDIATE transaction, so several worker
    processes can share one database file.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _immediate_transaction(self) -> Iterator[sqlite3.Connection]:
        """Transaction holding the write lock from its first statement.

        Used for every find-and-update so two processes never claim the
        same row.
        """
        conn = self._get_connection()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode = WAL")

            # Schema version tracking
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            # Outbox queue
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS outbox_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    state TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    available_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_error TEXT,
                    dedupe_key TEXT
                )
            """
            )

            # Pipeline jobs (one per document)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pipeline_jobs (
                    document_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    file_id TEXT NOT NULL,
                    original_name TEXT NOT NULL,
                    collection_id TEXT,
                    display_name TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 5,
                    retry_at TEXT,
                    last_error TEXT,
                    steps_json TEXT NOT NULL,
                    catalogue_key TEXT,
                    classification_confidence REAL,
                    docupipe_document_id TEXT,
                    docupipe_job_id TEXT,
                    content_hash TEXT,
                    last_update_key TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            # Insights (immutable per user/file/schema version)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS document_insights (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    file_id TEXT NOT NULL,
                    document_id TEXT NOT NULL,
                    catalogue_key TEXT NOT NULL,
                    schema_version TEXT NOT NULL,
                    parser_version TEXT NOT NULL,
                    prompt_version TEXT NOT NULL,
                    model TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    content_hash TEXT NOT NULL,
                    document_date TEXT NOT NULL,
                    document_month TEXT NOT NULL,
                    metadata_json TEXT NOT NULL,
                    metrics_json TEXT NOT NULL,
                    transactions_json TEXT NOT NULL,
                    narrative_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (user_id, file_id, schema_version)
                )
            """
            )

            # User overrides
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_overrides (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    scope TEXT NOT NULL,  -- transaction | metric
                    target_id TEXT NOT NULL,
                    patch_json TEXT NOT NULL,
                    applies_from TEXT NOT NULL,
                    note TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            # Monthly analytics snapshots
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_analytics (
                    user_id TEXT NOT NULL,
                    period TEXT NOT NULL,
                    snapshot_json TEXT NOT NULL,
                    built_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, period)
                )
            """
            )

            # Canonical accounts
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    institution_name TEXT NOT NULL,
                    account_type TEXT NOT NULL,
                    account_number_masked TEXT NOT NULL,
                    display_name TEXT,
                    raw_institution_names TEXT NOT NULL DEFAULT '[]',  -- JSON array
                    fingerprints TEXT NOT NULL DEFAULT '[]',  -- JSON array
                    first_seen_at TEXT,
                    last_seen_at TEXT,
                    last_update_key TEXT,
                    UNIQUE (user_id, institution_name, account_type, account_number_masked)
                )
            """
            )

            # Dead letters
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS dead_letters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    details_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    resolved_at TEXT
                )
            """
            )

            # Create indexes
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_outbox_claim "
                "ON outbox_jobs(queue, state, available_at, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_outbox_dedupe ON outbox_jobs(queue, dedupe_key, state)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pipeline_claim "
                "ON pipeline_jobs(status, retry_at, created_at)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_pipeline_user ON pipeline_jobs(user_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_insights_month "
                "ON document_insights(user_id, document_month)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_overrides_user ON user_overrides(user_id, scope)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_dead_letters_user ON dead_letters(user_id)"
            )

            # Set schema version
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Outbox methods

    def enqueue_outbox_job(
        self,
        queue: str,
        payload: dict[str, Any],
        dedupe_key: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """
        Durably persist a queue job.

        When dedupe_key is given and a pending job with the same queue and
        key already exists, no new job is created and the existing id is
        returned.
        """
        ts = format_ts(now or utc_now())
        with self._immediate_transaction() as conn:
            if dedupe_key is not None:
                row = conn.execute(
                    """
                    SELECT id FROM outbox_jobs
                    WHERE queue = ? AND dedupe_key = ? AND state = ?
                    ORDER BY created_at LIMIT 1
                    """,
                    (queue, dedupe_key, OutboxState.PENDING.value),
                ).fetchone()
                if row:
                    return row["id"]

            cursor = conn.execute(
                """
                INSERT INTO outbox_jobs
                (queue, payload_json, state, attempts, available_at, created_at, updated_at,
                 dedupe_key)
                VALUES (?, ?, ?, 0, ?, ?, ?, ?)
                """,
                (
                    queue,
                    json.dumps(payload),
                    OutboxState.PENDING.value,
                    ts,
                    ts,
                    ts,
                    dedupe_key,
                ),
            )
            return cursor.lastrowid

    def claim_outbox_job(
        self,
        queue: str,
        now: datetime | None = None,
        stale_before: datetime | None = None,
    ) -> OutboxJob | None:
        """
        Atomically claim the oldest available job of a queue.

        Claimable: pending with available_at due, or processing since before
        stale_before (the worker that held it is presumed dead). A job whose
        dedupe_key is held by another live processing job is skipped, so one
        key never runs in two workers at once.

        The claim flips the job to processing and increments attempts.
        """
        ts = format_ts(now or utc_now())
        # Without stale_before no processing row is reclaimable
        stale_ts = format_ts(stale_before) if stale_before else ""
        with self._immediate_transaction() as conn:
            row = conn.execute(
                """
                SELECT j.id, j.state FROM outbox_jobs j
                WHERE j.queue = ?
                  AND (
                    (j.state = ? AND j.available_at <= ?)
                    OR (j.state = ? AND j.updated_at <= ?)
                  )
                  AND NOT EXISTS (
                    SELECT 1 FROM outbox_jobs held
                    WHERE held.queue = j.queue
                      AND held.dedupe_key = j.dedupe_key
                      AND held.id != j.id
                      AND held.state = ?
                      AND held.updated_at > ?
                  )
                ORDER BY j.created_at, j.id
                LIMIT 1
                """,
                (
                    queue,
                    OutboxState.PENDING.value,
                    ts,
                    OutboxState.PROCESSING.value,
                    stale_ts,
                    OutboxState.PROCESSING.value,
                    stale_ts,
                ),
            ).fetchone()
            if row is None:
                return None

            if row["state"] == OutboxState.PROCESSING.value:
                logger.warning(f"Reclaiming stale outbox job {row['id']} on {queue}")

            conn.execute(
                """
                UPDATE outbox_jobs
                SET state = ?, attempts = attempts + 1, updated_at = ?
                WHERE id = ?
                """,
                (OutboxState.PROCESSING.value, ts, row["id"]),
            )
            claimed = conn.execute("SELECT * FROM outbox_jobs WHERE id = ?", (row["id"],)).fetchone()
            return OutboxJob.from_row(claimed)

    def complete_outbox_job(self, job_id: int, now: datetime | None = None) -> None:
        """Mark a job completed and clear its last error."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE outbox_jobs SET state = ?, last_error = NULL, updated_at = ?
                WHERE id = ?
                """,
                (OutboxState.COMPLETED.value, format_ts(now or utc_now()), job_id),
            )

    def retry_outbox_job(
        self,
        job_id: int,
        error: str,
        available_at: datetime,
        now: datetime | None = None,
    ) -> None:
        """Return a failed job to pending, gated until available_at."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE outbox_jobs
                SET state = ?, available_at = ?, last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    OutboxState.PENDING.value,
                    format_ts(available_at),
                    error,
                    format_ts(now or utc_now()),
                    job_id,
                ),
            )

    def fail_outbox_job(self, job_id: int, error: str, now: datetime | None = None) -> None:
        """Mark a job permanently failed. The row and its error are kept for audit."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE outbox_jobs SET state = ?, last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (OutboxState.FAILED.value, error, format_ts(now or utc_now()), job_id),
            )

    def get_outbox_job(self, job_id: int) -> OutboxJob | None:
        """Get an outbox job by id."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM outbox_jobs WHERE id = ?", (job_id,)).fetchone()
            return OutboxJob.from_row(row) if row else None

    def get_outbox_stats(self, queue: str | None = None) -> dict[str, int]:
        """Count outbox jobs per state."""
        stats = {state.value: 0 for state in OutboxState}
        with self._transaction() as conn:
            if queue is None:
                rows = conn.execute(
                    "SELECT state, COUNT(*) AS n FROM outbox_jobs GROUP BY state"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT state, COUNT(*) AS n FROM outbox_jobs WHERE queue = ? GROUP BY state",
                    (queue,),
                ).fetchall()
        for row in rows:
            stats[row["state"]] = row["n"]
        return stats

    # Pipeline job methods

    def create_pipeline_job(
        self,
        document_id: str,
        user_id: str,
        file_id: str,
        original_name: str,
        steps: list[PipelineStep],
        max_attempts: int,
        collection_id: str | None = None,
        display_name: str | None = None,
        now: datetime | None = None,
    ) -> PipelineJob:
        """Create a pending pipeline job for a document."""
        ts = format_ts(now or utc_now())
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO pipeline_jobs
                (document_id, user_id, file_id, original_name, collection_id, display_name,
                 status, attempts, max_attempts, steps_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
                """,
                (
                    document_id,
                    user_id,
                    file_id,
                    original_name,
                    collection_id,
                    display_name,
                    JobStatus.PENDING.value,
                    max_attempts,
                    steps_to_json(steps),
                    ts,
                    ts,
                ),
            )
            row = conn.execute(
                "SELECT * FROM pipeline_jobs WHERE document_id = ?", (document_id,)
            ).fetchone()
            return _pipeline_job_from_row(row)

    def get_pipeline_job(self, document_id: str) -> PipelineJob | None:
        """Get a pipeline job by document id."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pipeline_jobs WHERE document_id = ?", (document_id,)
            ).fetchone()
            return _pipeline_job_from_row(row) if row else None

    def list_pipeline_jobs(
        self,
        user_id: str | None = None,
        status: JobStatus | None = None,
    ) -> list[PipelineJob]:
        """List pipeline jobs, oldest first."""
        query = "SELECT * FROM pipeline_jobs WHERE 1 = 1"
        params: list[Any] = []
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY created_at, document_id"
        with self._transaction() as conn:
            return [_pipeline_job_from_row(row) for row in conn.execute(query, params).fetchall()]

    def claim_pipeline_job(
        self,
        stale_before: datetime,
        now: datetime | None = None,
    ) -> PipelineJob | None:
        """
        Atomically claim the next pipeline job.

        Claimable: status pending/failed with attempts left and retry_at due
        (or unset), or status in_progress whose heartbeat is older than
        stale_before (the worker that held it is presumed dead).

        The claim flips the job to in_progress, increments attempts and
        clears the last error.
        """
        current = now or utc_now()
        ts = format_ts(current)
        stale_ts = format_ts(stale_before)
        with self._immediate_transaction() as conn:
            row = conn.execute(
                """
                SELECT document_id, status FROM pipeline_jobs
                WHERE attempts < max_attempts
                  AND (
                    (status IN (?, ?) AND (retry_at IS NULL OR retry_at <= ?))
                    OR (status = ? AND COALESCE(heartbeat_at, updated_at) <= ?)
                  )
                ORDER BY retry_at, created_at
                LIMIT 1
                """,
                (
                    JobStatus.PENDING.value,
                    JobStatus.FAILED.value,
                    ts,
                    JobStatus.IN_PROGRESS.value,
                    stale_ts,
                ),
            ).fetchone()
            if row is None:
                return None

            if row["status"] == JobStatus.IN_PROGRESS.value:
                logger.warning(f"Reclaiming stale pipeline job {row['document_id']}")

            conn.execute(
                """
                UPDATE pipeline_jobs
                SET status = ?, attempts = attempts + 1, last_error = NULL,
                    heartbeat_at = ?, updated_at = ?
                WHERE document_id = ?
                """,
                (JobStatus.IN_PROGRESS.value, ts, ts, row["document_id"]),
            )
            claimed = conn.execute(
                "SELECT * FROM pipeline_jobs WHERE document_id = ?", (row["document_id"],)
            ).fetchone()
            return _pipeline_job_from_row(claimed)

    def find_exhausted_stale_jobs(self, stale_before: datetime) -> list[PipelineJob]:
        """In-progress jobs that went stale with no attempts left."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM pipeline_jobs
                WHERE status = ? AND attempts >= max_attempts
                  AND COALESCE(heartbeat_at, updated_at) <= ?
                ORDER BY created_at
                """,
                (JobStatus.IN_PROGRESS.value, format_ts(stale_before)),
            ).fetchall()
            return [_pipeline_job_from_row(row) for row in rows]

    def update_pipeline_steps(
        self,
        document_id: str,
        mutate: Callable[[list[PipelineStep]], None],
        now: datetime | None = None,
    ) -> PipelineJob:
        """
        Read-modify-write the step list of a job in one transaction.

        Also refreshes the heartbeat: step progress is what keeps a claim
        from going stale.
        """
        ts = format_ts(now or utc_now())
        with self._immediate_transaction() as conn:
            row = conn.execute(
                "SELECT steps_json FROM pipeline_jobs WHERE document_id = ?", (document_id,)
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown pipeline job: {document_id}")
            steps = steps_from_json(row["steps_json"])
            mutate(steps)
            conn.execute(
                """
                UPDATE pipeline_jobs SET steps_json = ?, heartbeat_at = ?, updated_at = ?
                WHERE document_id = ?
                """,
                (steps_to_json(steps), ts, ts, document_id),
            )
            updated = conn.execute(
                "SELECT * FROM pipeline_jobs WHERE document_id = ?", (document_id,)
            ).fetchone()
            return _pipeline_job_from_row(updated)

    def update_pipeline_job(
        self,
        document_id: str,
        now: datetime | None = None,
        **fields: Any,
    ) -> None:
        """Set whitelisted columns on a pipeline job."""
        unknown = set(fields) - PIPELINE_JOB_FIELDS
        if unknown:
            raise ValueError(f"Cannot update pipeline job fields: {sorted(unknown)}")

        values = {
            key: (value.value if isinstance(value, Enum) else value)
            for key, value in fields.items()
        }
        values["updated_at"] = format_ts(now or utc_now())
        assignments = ", ".join(f"{key} = ?" for key in values)
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE pipeline_jobs SET {assignments} WHERE document_id = ?",
                (*values.values(), document_id),
            )

    def reset_pipeline_job(
        self,
        document_id: str,
        steps: list[PipelineStep],
        now: datetime | None = None,
    ) -> bool:
        """Put a dead-lettered job back to pending with a fresh attempt budget."""
        ts = format_ts(now or utc_now())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_jobs
                SET status = ?, attempts = 0, retry_at = NULL, last_error = NULL,
                    steps_json = ?, docupipe_document_id = NULL, docupipe_job_id = NULL,
                    updated_at = ?
                WHERE document_id = ? AND status = ?
                """,
                (
                    JobStatus.PENDING.value,
                    steps_to_json(steps),
                    ts,
                    document_id,
                    JobStatus.DEAD_LETTER.value,
                ),
            )
            return cursor.rowcount > 0

    def get_pipeline_stats(self) -> dict[str, int]:
        """Count pipeline jobs per status."""
        stats = {status.value: 0 for status in JobStatus}
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM pipeline_jobs GROUP BY status"
            ).fetchall()
        for row in rows:
            stats[row["status"]] = row["n"]
        return stats

    # Insight methods

    def insight_exists(self, user_id: str, file_id: str, schema_version: str) -> bool:
        """Check whether an insight was already written for the triple."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM document_insights
                WHERE user_id = ? AND file_id = ? AND schema_version = ?
                """,
                (user_id, file_id, schema_version),
            ).fetchone()
            return row is not None

    def save_insight(self, insight: DocumentInsight, now: datetime | None = None) -> bool:
        """
        Insert an insight.

        Returns:
            True if inserted, False if one already existed for the triple
            (existing insights are never mutated).
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO document_insights
                (user_id, file_id, document_id, catalogue_key, schema_version, parser_version,
                 prompt_version, model, confidence, content_hash, document_date, document_month,
                 metadata_json, metrics_json, transactions_json, narrative_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    insight.user_id,
                    insight.file_id,
                    insight.document_id,
                    insight.catalogue_key,
                    insight.schema_version,
                    insight.parser_version,
                    insight.prompt_version,
                    insight.model,
                    insight.confidence,
                    insight.content_hash,
                    insight.document_date,
                    insight.document_month,
                    json.dumps(insight.metadata, sort_keys=True),
                    json.dumps(insight.metrics, sort_keys=True),
                    json.dumps(insight.transactions, sort_keys=True),
                    json.dumps(insight.narrative),
                    format_ts(now or utc_now()),
                ),
            )
            return cursor.rowcount > 0

    def get_insight(
        self, user_id: str, file_id: str, schema_version: str
    ) -> DocumentInsight | None:
        """Get the insight for a (user, file, schema_version) triple."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM document_insights
                WHERE user_id = ? AND file_id = ? AND schema_version = ?
                """,
                (user_id, file_id, schema_version),
            ).fetchone()
            return DocumentInsight.from_row(row) if row else None

    def get_insights_for_month(self, user_id: str, month: str) -> list[DocumentInsight]:
        """All insights for a user and month, in a stable order."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM document_insights
                WHERE user_id = ? AND document_month = ?
                ORDER BY document_date, file_id, schema_version
                """,
                (user_id, month),
            ).fetchall()
            return [DocumentInsight.from_row(row) for row in rows]

    # Override methods

    def add_user_override(
        self,
        user_id: str,
        scope: str,
        target_id: str,
        patch: Any,
        applies_from: str,
        note: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """Store a user override."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO user_overrides
                (user_id, scope, target_id, patch_json, applies_from, note, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    scope,
                    target_id,
                    json.dumps(patch, sort_keys=True),
                    applies_from,
                    note,
                    format_ts(now or utc_now()),
                ),
            )
            return cursor.lastrowid

    def get_user_overrides(self, user_id: str, applies_until: str) -> list[UserOverrideRecord]:
        """Overrides effective on or before a date (YYYY-MM-DD), oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_overrides
                WHERE user_id = ? AND applies_from <= ?
                ORDER BY created_at, id
                """,
                (user_id, applies_until),
            ).fetchall()
            return [UserOverrideRecord.from_row(row) for row in rows]

    def find_insight_transaction(self, user_id: str, transaction_id: str) -> dict[str, Any] | None:
        """The stored transaction with this id, from any of the user's insights."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT transactions_json FROM document_insights
                WHERE user_id = ? AND transactions_json LIKE ?
                ORDER BY created_at DESC
                """,
                (user_id, f"%{transaction_id}%"),
            ).fetchall()
        for row in rows:
            for tx in json.loads(row["transactions_json"] or "[]"):
                if str(tx.get("id")) == transaction_id:
                    return tx
        return None

    # Merchant category methods

    def remember_merchant_category(
        self,
        user_id: str,
        merchant_hash: str,
        category: str,
        description_sample: str | None = None,
        last_amount: float | None = None,
        last_direction: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Store (or replace) the category a user taught for a merchant."""
        ts = format_ts(now or utc_now())
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO merchant_categories
                (user_id, merchant_hash, category, description_sample, last_amount,
                 last_direction, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, merchant_hash) DO UPDATE SET
                    category = excluded.category,
                    description_sample = excluded.description_sample,
                    last_amount = excluded.last_amount,
                    last_direction = excluded.last_direction,
                    updated_at = excluded.updated_at
                """,
                (
                    user_id,
                    merchant_hash,
                    category,
                    description_sample,
                    last_amount,
                    last_direction,
                    ts,
                    ts,
                ),
            )

    def get_merchant_categories(self, user_id: str) -> dict[str, str]:
        """Learned categories for a user, by merchant hash."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT merchant_hash, category FROM merchant_categories WHERE user_id = ?",
                (user_id,),
            ).fetchall()
            return {row["merchant_hash"]: row["category"] for row in rows}

    # Analytics methods

    def replace_analytics_snapshot(
        self,
        user_id: str,
        period: str,
        snapshot_json: str,
        now: datetime | None = None,
    ) -> None:
        """Upsert-replace a monthly snapshot as a single row write."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO user_analytics (user_id, period, snapshot_json, built_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (user_id, period) DO UPDATE SET
                    snapshot_json = excluded.snapshot_json,
                    built_at = excluded.built_at
                """,
                (user_id, period, snapshot_json, format_ts(now or utc_now())),
            )

    def get_analytics_snapshot(self, user_id: str, period: str) -> AnalyticsSnapshotRecord | None:
        """Get a stored monthly snapshot."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM user_analytics WHERE user_id = ? AND period = ?",
                (user_id, period),
            ).fetchone()
            return AnalyticsSnapshotRecord.from_row(row) if row else None

    def list_analytics_periods(self, user_id: str) -> list[str]:
        """Months (YYYY-MM) with a stored snapshot, ascending."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT period FROM user_analytics WHERE user_id = ? ORDER BY period",
                (user_id,),
            ).fetchall()
            return [row["period"] for row in rows]

    # Account methods

    def get_account(
        self,
        user_id: str,
        institution_name: str,
        account_type: str,
        account_number_masked: str,
    ) -> AccountRecord | None:
        """Look up an account by its identity columns."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM accounts
                WHERE user_id = ? AND institution_name = ? AND account_type = ?
                  AND account_number_masked = ?
                """,
                (user_id, institution_name, account_type, account_number_masked),
            ).fetchone()
            return AccountRecord.from_row(row) if row else None

    def list_accounts(self, user_id: str) -> list[AccountRecord]:
        """All accounts of a user."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM accounts WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
            return [AccountRecord.from_row(row) for row in rows]

    def apply_account_update(
        self,
        user_id: str,
        institution_name: str,
        account_type: str,
        account_number_masked: str,
        update: dict[str, dict[str, Any]],
        array_filters: list[dict[str, Any]] | None = None,
    ) -> AccountRecord:
        """
        Upsert an account with an operator update document.

        Supported operators: $set, $setOnInsert (insert only), $addToSet
        (single value or {"$each": [...]}), and positional
        "field.$[id]" paths resolved through array_filters
        ([{"id": {"$eq": value}}]).

        The update is validated with ensure_single_operator before anything
        is written; a conflicting document raises UpdateConflictError.
        """
        ensure_single_operator(update)

        unknown = set(update) - ROOT_OPERATORS
        if unknown:
            raise ValueError(f"Unsupported update operators: {sorted(unknown)}")

        filters: dict[str, Any] = {}
        for entry in array_filters or []:
            for identifier, condition in entry.items():
                if not isinstance(condition, dict) or "$eq" not in condition:
                    raise ValueError(f"Unsupported array filter: {entry}")
                filters[identifier] = condition["$eq"]

        with self._immediate_transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM accounts
                WHERE user_id = ? AND institution_name = ? AND account_type = ?
                  AND account_number_masked = ?
                """,
                (user_id, institution_name, account_type, account_number_masked),
            ).fetchone()
            inserting = row is None

            doc: dict[str, Any] = {
                "display_name": None,
                "raw_institution_names": [],
                "fingerprints": [],
                "first_seen_at": None,
                "last_seen_at": None,
                "last_update_key": None,
            }
            if row is not None:
                existing = AccountRecord.from_row(row)
                doc.update(
                    display_name=existing.display_name,
                    raw_institution_names=list(existing.raw_institution_names),
                    fingerprints=list(existing.fingerprints),
                    first_seen_at=existing.first_seen_at,
                    last_seen_at=existing.last_seen_at,
                    last_update_key=existing.last_update_key,
                )

            for operator, fields in update.items():
                if operator == "$setOnInsert" and not inserting:
                    continue
                for path, value in fields.items():
                    self._apply_account_operator(doc, operator, path, value, filters)

            if inserting:
                conn.execute(
                    """
                    INSERT INTO accounts
                    (user_id, institution_name, account_type, account_number_masked, display_name,
                     raw_institution_names, fingerprints, first_seen_at, last_seen_at,
                     last_update_key)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        institution_name,
                        account_type,
                        account_number_masked,
                        doc["display_name"],
                        json.dumps(doc["raw_institution_names"]),
                        json.dumps(doc["fingerprints"]),
                        doc["first_seen_at"],
                        doc["last_seen_at"],
                        doc["last_update_key"],
                    ),
                )
            else:
                conn.execute(
                    """
                    UPDATE accounts
                    SET display_name = ?, raw_institution_names = ?, fingerprints = ?,
                        first_seen_at = ?, last_seen_at = ?, last_update_key = ?
                    WHERE id = ?
                    """,
                    (
                        doc["display_name"],
                        json.dumps(doc["raw_institution_names"]),
                        json.dumps(doc["fingerprints"]),
                        doc["first_seen_at"],
                        doc["last_seen_at"],
                        doc["last_update_key"],
                        row["id"],
                    ),
                )

            saved = conn.execute(
                """
                SELECT * FROM accounts
                WHERE user_id = ? AND institution_name = ? AND account_type = ?
                  AND account_number_masked = ?
                """,
                (user_id, institution_name, account_type, account_number_masked),
            ).fetchone()
            return AccountRecord.from_row(saved)

    @staticmethod
    def _apply_account_operator(
        doc: dict[str, Any],
        operator: str,
        path: str,
        value: Any,
        filters: dict[str, Any],
    ) -> None:
        field_name, identifier = split_positional_path(path)
        if field_name not in ACCOUNT_UPDATE_FIELDS:
            raise ValueError(f"Unknown account field in update: {path}")

        if identifier is not None:
            if field_name not in ACCOUNT_ARRAY_FIELDS or operator != "$set":
                raise ValueError(f"Positional update not supported for {operator} {path}")
            if identifier not in filters:
                raise ValueError(f"No array filter for identifier '{identifier}'")
            match = filters[identifier]
            doc[field_name] = [value if item == match else item for item in doc[field_name]]
            return

        if operator in ("$set", "$setOnInsert"):
            doc[field_name] = list(value) if field_name in ACCOUNT_ARRAY_FIELDS else value
            return

        if operator == "$addToSet":
            if field_name not in ACCOUNT_ARRAY_FIELDS:
                raise ValueError(f"$addToSet requires an array field, got {path}")
            additions = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
            for item in additions:
                if item not in doc[field_name]:
                    doc[field_name].append(item)
            return

        raise ValueError(f"Unsupported update operator: {operator}")

    # Dead letter methods

    def add_dead_letter(
        self,
        document_id: str,
        user_id: str,
        reason: str,
        details: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> int:
        """Record a dead-lettered document."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO dead_letters (document_id, user_id, reason, details_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    document_id,
                    user_id,
                    reason,
                    json.dumps(details or {}, sort_keys=True, default=str),
                    format_ts(now or utc_now()),
                ),
            )
            return cursor.lastrowid

    def list_dead_letters(
        self,
        user_id: str | None = None,
        include_resolved: bool = False,
    ) -> list[DeadLetterRecord]:
        """List dead letters, oldest first."""
        query = "SELECT * FROM dead_letters WHERE 1 = 1"
        params: list[Any] = []
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if not include_resolved:
            query += " AND resolved_at IS NULL"
        query += " ORDER BY created_at, id"
        with self._transaction() as conn:
            return [DeadLetterRecord.from_row(row) for row in conn.execute(query, params).fetchall()]

    def resolve_dead_letters(self, document_id: str, now: datetime | None = None) -> int:
        """Mark every open dead letter of a document as resolved."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE dead_letters SET resolved_at = ?
                WHERE document_id = ? AND resolved_at IS NULL
                """,
                (format_ts(now or utc_now()), document_id),
            )
            return cursor.rowcount

    # Document record methods

    def save_document_record(
        self,
        document_id: str,
        user_id: str,
        document_type: str,
        normalized: dict[str, Any],
        integrity: dict[str, Any],
        pii: dict[str, Any],
        sources: dict[str, str],
        docupipe_document_id: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Store (or replace) the normalized record of a document."""
        ts = format_ts(now or utc_now())
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO document_records
                (document_id, user_id, document_type, normalized_json, integrity_json, pii_json,
                 sources_json, docupipe_document_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (document_id) DO UPDATE SET
                    document_type = excluded.document_type,
                    normalized_json = excluded.normalized_json,
                    integrity_json = excluded.integrity_json,
                    pii_json = excluded.pii_json,
                    sources_json = excluded.sources_json,
                    docupipe_document_id = excluded.docupipe_document_id,
                    updated_at = excluded.updated_at
                """,
                (
                    document_id,
                    user_id,
                    document_type,
                    json.dumps(normalized, sort_keys=True, default=str),
                    json.dumps(integrity, sort_keys=True, default=str),
                    json.dumps(pii, sort_keys=True),
                    json.dumps(sources, sort_keys=True),
                    docupipe_document_id,
                    ts,
                    ts,
                ),
            )

    def get_document_record(self, document_id: str) -> dict[str, Any] | None:
        """Get the normalized record of a document."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM document_records WHERE document_id = ?", (document_id,)
            ).fetchone()
            if row is None:
                return None
            return {
                "document_id": row["document_id"],
                "user_id": row["user_id"],
                "document_type": row["document_type"],
                "normalized": json.loads(row["normalized_json"]),
                "integrity": json.loads(row["integrity_json"]),
                "pii": json.loads(row["pii_json"]),
                "sources": json.loads(row["sources_json"]),
                "docupipe_document_id": row["docupipe_document_id"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
            }
