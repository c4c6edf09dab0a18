"""
Account upserts for statement documents.

The canonical institution, account type and masked number identify an
account. The raw institution spelling is added to the account's variant
list through the array-update planner, and each write carries an
idempotency key so replaying the same job is a no-op.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..accounts.canonicalise import canonicalise_institution
from ..accounts.update_planner import (
    UpdateConflictError,
    UpdateMode,
    UpdateSummary,
    build_update,
    create_noop_summary,
    ensure_single_operator,
    normalize_raw_names_input,
    summarize_for_logging,
)
from ..catalogue import account_type_for
from ..normalization.pii import MASK_CHAR
from ..schemas.dedupe import compute_update_key
from ..state_store import AccountRecord, StateStore
from ..state_store.sqlite_store import format_ts, utc_now

logger = logging.getLogger(__name__)

# Masked number used when a statement does not show one
UNKNOWN_ACCOUNT_MASK = MASK_CHAR * 4 + "0000"


@dataclass
class EnsureAccountResult:
    account: Optional[AccountRecord]
    summary: UpdateSummary
    idempotency_key: Optional[str]
    skipped: bool


def merge_updates(base: dict[str, dict[str, Any]], addition: dict[str, dict[str, Any]]) -> dict:
    """Merge operator documents operator by operator."""
    merged = {operator: dict(fields) for operator, fields in base.items()}
    for operator, fields in addition.items():
        merged.setdefault(operator, {}).update(fields)
    return merged


class AccountService:
    def __init__(self, store: StateStore, clock=utc_now):
        self.store = store
        self._clock = clock

    def ensure_account(
        self,
        job_id: str,
        file_id: str,
        user_id: str,
        catalogue_key: str,
        institution_name: Optional[str],
        account_last4: Optional[str] = None,
        last_update_key: Optional[str] = None,
    ) -> EnsureAccountResult:
        """
        Create or refresh the account a statement belongs to.

        Args:
            job_id: Pipeline job (document) id, part of the idempotency key
            file_id: Source file id
            user_id: Owner
            catalogue_key: Statement type (drives the account type)
            institution_name: Raw institution name as found on the document
            account_last4: Last four digits of the account number, if known
            last_update_key: Key of the last update this job applied

        Returns:
            EnsureAccountResult; skipped when there is no institution or the
            same update was already applied by this job.
        """
        name = canonicalise_institution(institution_name)
        if not name.canonical:
            summary = create_noop_summary(UpdateMode.APPEND_UNIQUE, [])
            return EnsureAccountResult(None, summary, None, skipped=True)

        account_type = account_type_for(catalogue_key)
        masked = MASK_CHAR * 4 + account_last4 if account_last4 else UNKNOWN_ACCOUNT_MASK
        identity = (user_id, name.canonical, account_type, masked)
        existing = self.store.get_account(*identity)
        current = normalize_raw_names_input(existing.raw_institution_names if existing else [])

        plan = None
        if existing is None:
            plan = build_update(UpdateMode.REPLACE, current, [name.raw] if name.raw else current)
            summary = plan.summary
        elif name.raw:
            plan = build_update(UpdateMode.APPEND_UNIQUE, current, [name.raw])
            summary = plan.summary
        else:
            summary = create_noop_summary(UpdateMode.APPEND_UNIQUE, current)

        key = compute_update_key(job_id, file_id, summary.to_dict())
        if existing is not None and (plan is None or not plan.applied) and last_update_key == key:
            logger.info(
                f"Account update already applied for job {job_id}: "
                f"{summarize_for_logging(summary)}"
            )
            return EnsureAccountResult(existing, summary, key, skipped=True)

        now = format_ts(self._clock())
        base = {
            "$set": {"last_seen_at": now, "last_update_key": key},
            "$setOnInsert": {
                "display_name": f"{name.canonical} - {account_type} ({masked})",
                "fingerprints": [f"{name.canonical}|{masked}|{account_type}"],
                "first_seen_at": now,
            },
        }
        update = merge_updates(base, plan.update) if plan is not None else base

        try:
            ensure_single_operator(update)
        except UpdateConflictError:
            logger.warning(
                f"Conflicting account update blocked for job {job_id}: "
                f"{summarize_for_logging(summary)}"
            )
            raise

        logger.debug(f"Account update plan for job {job_id}: {summarize_for_logging(summary)}")
        account = self.store.apply_account_update(
            *identity,
            update=update,
            array_filters=plan.array_filters if plan is not None else None,
        )
        return EnsureAccountResult(account, summary, key, skipped=False)
