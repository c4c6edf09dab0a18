"""
Deterministic identity keys (CRITICAL).

This module defines THE hashing functions used for identity and
idempotency across the worker:

1. Content hash: SHA256 of the stored file bytes
2. Transaction id: SHA256(file_id|index|amount|date|description)[:16]
   - Stable across re-runs of the same document, so transaction overrides
     keep targeting the same row
3. Account update key: {job_id}:{file_id}:{sha256(update summary)}
   - Replaying the same account update for the same job is a no-op
4. Inputs fingerprint: SHA256 over the canonical JSON of analytics inputs
"""

import hashlib
import json
from decimal import Decimal
from typing import Any

# ============================================================================
# SSOT Constants
# ============================================================================

# Length of transaction id (hex chars of SHA256)
TRANSACTION_ID_LENGTH = 16

# Separator used in composite keys
KEY_SEPARATOR = ":"


def _normalize_amount(amount: Decimal | str | float) -> str:
    """Normalize amount to 2 decimal places with dot separator."""
    if isinstance(amount, float):
        amount = Decimal(str(amount))
    elif isinstance(amount, str):
        amount = Decimal(amount)
    return f"{amount:.2f}"


def _normalize_string(value: str | None) -> str:
    """Normalize a string for hashing (lowercase, collapse whitespace)."""
    if not value:
        return ""
    return " ".join(value.split()).lower()


def canonical_json(value: Any) -> str:
    """Serialize to a byte-stable JSON string (sorted keys, no whitespace)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_content_hash(file_bytes: bytes) -> str:
    """
    Compute SHA256 hash of file bytes.

    Args:
        file_bytes: Raw file content

    Returns:
        64-character lowercase hex string
    """
    return hashlib.sha256(file_bytes).hexdigest()


def compute_transaction_id(
    file_id: str,
    index: int,
    amount: Decimal | str | float,
    date: str | None,
    description: str | None,
) -> str:
    """
    Compute a stable id for a statement transaction.

    The position within the statement is part of the key so two identical
    card payments on the same day stay distinct.
    """
    canonical = (
        f"{file_id}|{index}|{_normalize_amount(amount)}|{(date or '').strip()}"
        f"|{_normalize_string(description)}"
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:TRANSACTION_ID_LENGTH]


def compute_update_key(job_id: str, file_id: str, summary: dict[str, Any]) -> str:
    """Idempotency key for an account update issued while processing a job."""
    digest = hashlib.sha256(canonical_json(summary).encode("utf-8")).hexdigest()
    return KEY_SEPARATOR.join([job_id, file_id, digest])


def compute_inputs_fingerprint(value: Any) -> str:
    """SHA256 over the canonical JSON of an arbitrary input structure."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()
