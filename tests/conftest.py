"""Test fixtures and utilities."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from vault_worker.config import Config, DocupipeConfig, PipelineConfig, QueueConfig, SecurityConfig
from vault_worker.normalization import PiiHasher
from vault_worker.schemas.insight import DocumentInsight
from vault_worker.state_store import StateStore

TEST_PEPPER = "test-pepper"

# Minimal bytes that pass the PDF header check
SAMPLE_PDF_BYTES = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\ntrailer\n%%EOF\n"

# Scenario payslip: gross 2500, deductions 600, net 1900 balances
SAMPLE_PAYSLIP = {
    "employer": {"name": "Acme Widgets Ltd"},
    "employee": {"nationalInsuranceNumber": "QQ 12 34 56 C", "taxCode": "1257l"},
    "payDate": "2024-03-28",
    "period": {"start": "2024-03-01", "end": "2024-03-31"},
    "payFrequency": "Monthly",
    "totals": {
        "gross": "2,500.00",
        "incomeTax": 300.00,
        "nationalInsurance": 150.00,
        "pension": 100.00,
        "studentLoan": 50.00,
        "net": 1900.00,
    },
}

# Scenario statement: opening 0, in 2000, out 150, closing 1850
SAMPLE_STATEMENT = {
    "institution": {"name": "Monzo Bank Ltd"},
    "account": {"number": "12345678", "sortCode": "04-00-04"},
    "period": {"start": "2024-03-01", "end": "2024-03-31"},
    "currency": "gbp",
    "balances": {"opening": 0, "closing": 1850.00},
    "transactions": [
        {"date": "2024-03-28", "description": "ACME WIDGETS SALARY", "amount": 1900.00},
        {"date": "2024-03-02", "description": "Tesco Stores", "amount": -100.00},
        {"date": "2024-03-05", "description": "Netflix", "amount": -50.00},
        {"date": "2024-03-15", "description": "Refund", "amount": 100.00},
    ],
}


def fixed_clock(start: datetime | None = None):
    """A settable clock: call it for the time, .advance(seconds) to move it."""
    state = {"now": start or datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)}

    def clock() -> datetime:
        return state["now"]

    def advance(seconds: float) -> None:
        state["now"] = state["now"] + timedelta(seconds=seconds)

    clock.advance = advance
    return clock


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store."""
    return StateStore(temp_db)


@pytest.fixture
def hasher() -> PiiHasher:
    return PiiHasher(TEST_PEPPER)


@pytest.fixture
def config(tmp_path) -> Config:
    """Valid configuration with fast timings."""
    return Config(
        queue=QueueConfig(driver="memory", poll_interval_seconds=0.05),
        pipeline=PipelineConfig(
            max_attempts=3,
            base_backoff_seconds=1.0,
            max_backoff_seconds=30.0,
            poll_interval_seconds=0.05,
            error_sleep_seconds=0.05,
        ),
        docupipe=DocupipeConfig(
            base_url="https://docupipe.test",
            api_key="test-key",
            workflow_id="wf-1",
            poll_interval_seconds=0.0,
            poll_timeout_seconds=5.0,
        ),
        security=SecurityConfig(hash_pepper=TEST_PEPPER),
        state_db_path=tmp_path / "state.db",
        storage_root=tmp_path / "objects",
    )


@pytest.fixture
def sample_payslip() -> dict:
    """Standardized payslip payload that passes the net identity."""
    return {**SAMPLE_PAYSLIP, "totals": dict(SAMPLE_PAYSLIP["totals"])}


@pytest.fixture
def sample_statement() -> dict:
    """Standardized current account statement that reconciles."""
    return {
        **SAMPLE_STATEMENT,
        "balances": dict(SAMPLE_STATEMENT["balances"]),
        "transactions": [dict(t) for t in SAMPLE_STATEMENT["transactions"]],
    }


def make_insight(
    file_id: str = "file-1",
    catalogue_key: str = "payslip",
    document_date: str = "2024-03-28",
    user_id: str = "user-1",
    metrics: dict | None = None,
    transactions: list | None = None,
    metadata: dict | None = None,
    schema_version: str = "v1",
) -> DocumentInsight:
    """Build an insight with sensible defaults."""
    return DocumentInsight(
        user_id=user_id,
        file_id=file_id,
        document_id=f"doc-{file_id}",
        catalogue_key=catalogue_key,
        schema_version=schema_version,
        parser_version="test",
        prompt_version="test",
        model="test",
        confidence=0.9,
        content_hash=f"hash-{file_id}",
        document_date=document_date,
        document_month=document_date[:7],
        metadata=metadata or {},
        metrics=metrics or {},
        transactions=transactions or [],
    )
