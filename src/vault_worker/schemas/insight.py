"""
DocumentInsight: the canonical, integrity-checked record of one document.

Insights are immutable once written for a (user, file, schema_version)
triple. A new schema version produces a new insight instead of rewriting
history.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any


@dataclass
class DocumentInsight:
    """Canonical extraction output for one document."""

    user_id: str
    file_id: str
    document_id: str
    catalogue_key: str
    schema_version: str
    parser_version: str
    prompt_version: str
    model: str
    confidence: float
    content_hash: str
    document_date: str  # YYYY-MM-DD
    document_month: str  # YYYY-MM
    metadata: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    transactions: list[dict[str, Any]] = field(default_factory=list)
    narrative: list[str] = field(default_factory=list)
    id: int | None = None
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DocumentInsight":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            file_id=row["file_id"],
            document_id=row["document_id"],
            catalogue_key=row["catalogue_key"],
            schema_version=row["schema_version"],
            parser_version=row["parser_version"],
            prompt_version=row["prompt_version"],
            model=row["model"],
            confidence=row["confidence"],
            content_hash=row["content_hash"],
            document_date=row["document_date"],
            document_month=row["document_month"],
            metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
            metrics=json.loads(row["metrics_json"]) if row["metrics_json"] else {},
            transactions=json.loads(row["transactions_json"]) if row["transactions_json"] else [],
            narrative=json.loads(row["narrative_json"]) if row["narrative_json"] else [],
            created_at=row["created_at"],
        )
