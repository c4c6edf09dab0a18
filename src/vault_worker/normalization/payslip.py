"""
Payslip normalization and net-pay identity check.

    expected_net = gross - (income_tax + ni + pension + student_loan + other)

Other deductions are frequently missing from extractions. When absent, or
when the supplied figure disagrees with the residual by more than 0.01,
they are derived as gross - known deductions - net, floored at zero (a
deduction cannot be negative). The check passes iff |net - expected_net|
<= 0.01; otherwise it fails with reason net_identity_failed and the signed
delta (net - expected_net).
"""

import logging
from decimal import Decimal
from typing import Any

from ..schemas.normalized import (
    AmountSource,
    CanonicalPayslip,
    Integrity,
    IntegrityStatus,
    PayslipResult,
    PayslipTotals,
    PiiSummary,
)
from .accessors import accessors, as_text, first_present, nested, record_source
from .amounts import MONEY_TOLERANCE, parse_amount, parse_date, round_money
from .pii import PiiHasher, mask_ni, ni_last3

logger = logging.getLogger(__name__)

NET_IDENTITY_FAILED = "net_identity_failed"

_TOTALS = ("totals", "summary", "paySummary")

PAY_DATE = accessors("payDate", "paymentDate", "summary.payDate")
PERIOD_START = accessors("period.start", "periodStart", "summary.period.start")
PERIOD_END = accessors("period.end", "periodEnd", "summary.period.end")
EMPLOYER = accessors("employer.name", "employerName", "company.name", "organisation.name")
PAY_FREQUENCY = accessors("payFrequency", "summary.payFrequency", "period.frequency")
TAX_CODE = accessors("employee.taxCode", "taxCode")

GROSS = nested(_TOTALS, "gross", "totalGross") + accessors("grossPay", "earnings.total")
INCOME_TAX = nested(_TOTALS, "incomeTax", "tax", "payAsYouEarn") + accessors(
    "incomeTax", "deductions.incomeTax"
)
NATIONAL_INSURANCE = nested(
    _TOTALS, "nationalInsurance", "ni", "nationalInsuranceContributions"
) + accessors("nationalInsurance", "deductions.nationalInsurance")
PENSION = nested(_TOTALS, "pension", "pensionContribution") + accessors(
    "deductions.pension", "pension"
)
STUDENT_LOAN = nested(_TOTALS, "studentLoan") + accessors("deductions.studentLoan", "studentLoan")
NET = nested(_TOTALS, "net", "netPay") + accessors("netPay")
OTHER_DEDUCTIONS = nested(_TOTALS, "otherDeductions", "other") + accessors("deductions.other")

NI_NUMBER = accessors(
    "employee.nationalInsuranceNumber",
    "nationalInsuranceNumber",
    "employee.niNumber",
    "employee.ni",
    "niNumber",
)

ZERO = Decimal("0.00")


def derive_other_deductions(
    gross: Decimal,
    known_deductions: Decimal,
    net: Decimal,
    provided: Decimal | None,
) -> tuple[Decimal, AmountSource]:
    """Keep a provided figure that agrees with the residual, else derive it."""
    residual = round_money(gross - known_deductions - net)
    if provided is not None and abs(provided - residual) <= MONEY_TOLERANCE:
        return provided, AmountSource.PROVIDED
    return max(residual, ZERO), AmountSource.COMPUTED


def normalize_payslip(raw: dict[str, Any], hasher: PiiHasher) -> PayslipResult:
    """
    Normalize a standardized payslip payload.

    Args:
        raw: Standardized payload (field names vary by upstream schema)
        hasher: Peppered hasher for the NI number

    Returns:
        PayslipResult with canonical totals, integrity outcome and masked PII
    """
    sources: dict[str, str] = {}

    def money(field_name: str, candidates) -> Decimal:
        resolved = first_present(raw, candidates, parse_amount)
        record_source(sources, field_name, resolved)
        return resolved.value if resolved.value is not None else ZERO

    gross = money("gross", GROSS)
    income_tax = money("income_tax", INCOME_TAX)
    national_insurance = money("national_insurance", NATIONAL_INSURANCE)
    pension = money("pension", PENSION)
    student_loan = money("student_loan", STUDENT_LOAN)
    net = money("net", NET)

    other_resolved = first_present(raw, OTHER_DEDUCTIONS, parse_amount)
    record_source(sources, "other_deductions", other_resolved)

    known = income_tax + national_insurance + pension + student_loan
    other, other_source = derive_other_deductions(gross, known, net, other_resolved.value)
    if other_source == AmountSource.COMPUTED:
        sources["other_deductions"] = "computed"

    expected_net = round_money(gross - (known + other))
    delta = round_money(net - expected_net)
    if abs(delta) <= MONEY_TOLERANCE:
        integrity = Integrity(IntegrityStatus.PASS)
    else:
        integrity = Integrity(IntegrityStatus.FAIL, reason=NET_IDENTITY_FAILED, delta=delta)
        logger.debug(f"Payslip net identity failed: expected {expected_net}, net {net}")

    text_fields = {}
    for field_name, candidates, coerce in (
        ("pay_date", PAY_DATE, parse_date),
        ("period_start", PERIOD_START, parse_date),
        ("period_end", PERIOD_END, parse_date),
        ("employer_name", EMPLOYER, as_text),
        ("pay_frequency", PAY_FREQUENCY, as_text),
        ("tax_code", TAX_CODE, as_text),
    ):
        resolved = first_present(raw, candidates, coerce)
        record_source(sources, field_name, resolved)
        text_fields[field_name] = resolved.value

    ni_resolved = first_present(raw, NI_NUMBER, as_text)
    record_source(sources, "ni_number", ni_resolved)
    ni_raw = ni_resolved.value

    normalized = CanonicalPayslip(
        totals=PayslipTotals(
            gross=gross,
            income_tax=income_tax,
            national_insurance=national_insurance,
            pension=pension,
            student_loan=student_loan,
            other_deductions=other,
            other_source=other_source,
            net=net,
            expected_net=expected_net,
        ),
        pay_date=text_fields["pay_date"],
        period_start=text_fields["period_start"],
        period_end=text_fields["period_end"],
        employer_name=text_fields["employer_name"],
        pay_frequency=text_fields["pay_frequency"].lower() if text_fields["pay_frequency"] else None,
        tax_code=text_fields["tax_code"].upper() if text_fields["tax_code"] else None,
        ni_number_masked=mask_ni(ni_raw),
        ni_hash=hasher.hash(ni_raw) if ni_raw else None,
    )

    return PayslipResult(
        normalized=normalized,
        integrity=integrity,
        pii=PiiSummary(ni_last3=ni_last3(ni_raw)),
        sources=sources,
    )
