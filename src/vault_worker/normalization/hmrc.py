"""
HMRC correspondence (P60s, tax calculations, coding notices).

No identity check exists for these documents; integrity is always pass and
the figures are carried through for the tax section of analytics.
"""

from typing import Any

from ..schemas.normalized import CanonicalHmrc, HmrcResult, Integrity, IntegrityStatus
from .accessors import accessors, as_text, first_present, record_source
from .amounts import parse_amount, parse_date

TAX_YEAR = accessors("taxYear", "summary.taxYear", "period.taxYear")
ISSUED_DATE = accessors("issuedDate", "issueDate", "date", "summary.date")
TOTAL_PAY = accessors("totalPay", "pay.total", "summary.totalPay", "payInThisEmployment")
TAX_PAID = accessors("taxPaid", "tax.total", "summary.taxPaid", "taxDeducted")
NI_PAID = accessors("niPaid", "nationalInsurance.total", "summary.nationalInsurance")
STUDENT_LOAN = accessors("studentLoan", "studentLoanDeductions", "summary.studentLoan")
PENSION = accessors("pension", "pensionContributions", "summary.pension")


def normalize_hmrc(raw: dict[str, Any]) -> HmrcResult:
    sources: dict[str, str] = {}

    def resolve(field_name, candidates, coerce):
        resolved = first_present(raw, candidates, coerce)
        record_source(sources, field_name, resolved)
        return resolved.value

    normalized = CanonicalHmrc(
        tax_year=resolve("tax_year", TAX_YEAR, as_text),
        issued_date=resolve("issued_date", ISSUED_DATE, parse_date),
        total_pay=resolve("total_pay", TOTAL_PAY, parse_amount),
        tax_paid=resolve("tax_paid", TAX_PAID, parse_amount),
        ni_paid=resolve("ni_paid", NI_PAID, parse_amount),
        student_loan=resolve("student_loan", STUDENT_LOAN, parse_amount),
        pension=resolve("pension", PENSION, parse_amount),
    )
    return HmrcResult(
        normalized=normalized,
        integrity=Integrity(IntegrityStatus.PASS),
        sources=sources,
    )
