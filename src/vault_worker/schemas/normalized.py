"""
Canonical normalization results.

One result type per document family. Consumers (insight builder, analytics)
dispatch on the concrete type, so every family is handled explicitly:

    PayslipResult | StatementResult | HmrcResult

Monetary values are Decimal, already rounded to minor units.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Union


class IntegrityStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class AmountSource(str, Enum):
    """Where a derived amount came from."""

    PROVIDED = "provided"
    COMPUTED = "computed"


def to_float(value: Decimal | None) -> float | None:
    """Convert a rounded Decimal to a JSON-friendly float."""
    if value is None:
        return None
    return float(value)


@dataclass
class Integrity:
    """Outcome of a numeric cross-check."""

    status: IntegrityStatus
    reason: str | None = None
    # Signed difference: reported value minus expected value
    delta: Decimal | None = None

    @property
    def passed(self) -> bool:
        return self.status == IntegrityStatus.PASS

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.reason:
            data["reason"] = self.reason
        if self.delta is not None:
            data["delta"] = to_float(self.delta)
        return data


@dataclass
class PiiSummary:
    """Display-safe fragments of identifiers (never the raw values)."""

    account_last4: str | None = None
    ni_last3: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in (("account_last4", self.account_last4), ("ni_last3", self.ni_last3)) if v}


# ---------------------------------------------------------------------------
# Payslips
# ---------------------------------------------------------------------------


@dataclass
class PayslipTotals:
    gross: Decimal
    income_tax: Decimal
    national_insurance: Decimal
    pension: Decimal
    student_loan: Decimal
    other_deductions: Decimal
    other_source: AmountSource
    net: Decimal
    expected_net: Decimal

    @property
    def total_deductions(self) -> Decimal:
        return (
            self.income_tax
            + self.national_insurance
            + self.pension
            + self.student_loan
            + self.other_deductions
        )


@dataclass
class CanonicalPayslip:
    totals: PayslipTotals
    pay_date: str | None = None
    period_start: str | None = None
    period_end: str | None = None
    employer_name: str | None = None
    pay_frequency: str | None = None
    tax_code: str | None = None
    ni_number_masked: str | None = None
    ni_hash: str | None = None

    @property
    def document_date(self) -> str | None:
        return self.pay_date or self.period_end or self.period_start


@dataclass
class PayslipResult:
    normalized: CanonicalPayslip
    integrity: Integrity
    pii: PiiSummary = field(default_factory=PiiSummary)
    # canonical field -> alias that supplied it
    sources: dict[str, str] = field(default_factory=dict)
    kind: Literal["payslip"] = "payslip"


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------


@dataclass
class CanonicalTransaction:
    id: str
    date: str | None
    description: str | None
    # Signed: positive for inflows, negative for outflows
    amount: Decimal
    direction: Literal["inflow", "outflow"]
    category: str = "Misc"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "description": self.description,
            "amount": to_float(self.amount),
            "direction": self.direction,
            "category": self.category,
        }


@dataclass
class CanonicalStatement:
    currency: str
    transactions: list[CanonicalTransaction]
    inflow_total: Decimal
    outflow_total: Decimal
    institution_name: str | None = None
    sort_code_masked: str | None = None
    account_last4: str | None = None
    account_hash: str | None = None
    period_start: str | None = None
    period_end: str | None = None
    opening_balance: Decimal | None = None
    closing_balance: Decimal | None = None
    expected_closing: Decimal | None = None
    contributions: Decimal | None = None
    interest_or_dividends: Decimal | None = None
    est_return: Decimal | None = None

    @property
    def document_date(self) -> str | None:
        return self.period_end or self.period_start


@dataclass
class StatementResult:
    normalized: CanonicalStatement
    integrity: Integrity
    pii: PiiSummary = field(default_factory=PiiSummary)
    sources: dict[str, str] = field(default_factory=dict)
    kind: Literal["statement"] = "statement"


# ---------------------------------------------------------------------------
# HMRC correspondence
# ---------------------------------------------------------------------------


@dataclass
class CanonicalHmrc:
    tax_year: str | None = None
    issued_date: str | None = None
    total_pay: Decimal | None = None
    tax_paid: Decimal | None = None
    ni_paid: Decimal | None = None
    student_loan: Decimal | None = None
    pension: Decimal | None = None

    @property
    def document_date(self) -> str | None:
        return self.issued_date


@dataclass
class HmrcResult:
    normalized: CanonicalHmrc
    integrity: Integrity
    pii: PiiSummary = field(default_factory=PiiSummary)
    sources: dict[str, str] = field(default_factory=dict)
    kind: Literal["hmrc"] = "hmrc"


NormalizationResult = Union[PayslipResult, StatementResult, HmrcResult]
