"""Shape-based detection of a standardized payload's document family."""

from typing import Any, Literal

DetectedType = Literal["payslip", "bank_statement", "unknown"]

_PAYSLIP_KEYS = frozenset(
    {"grossPay", "netPay", "payDate", "taxCode", "employer", "employerName", "paySummary"}
)
_STATEMENT_KEYS = frozenset(
    {"transactions", "activity", "balances", "openingBalance", "closingBalance", "sortCode"}
)


def _keys(payload: dict[str, Any]) -> set[str]:
    keys = set(payload)
    for nested in ("totals", "summary", "statement", "account"):
        value = payload.get(nested)
        if isinstance(value, dict):
            keys.update(value)
    return keys


def detect_document_type(payload: Any) -> DetectedType:
    """
    Guess the family from the keys present.

    Used to cross-check the classifier: a payslip-classified file whose
    payload looks like a statement is worth a warning.
    """
    if not isinstance(payload, dict):
        return "unknown"
    keys = _keys(payload)
    payslip_hits = len(keys & _PAYSLIP_KEYS)
    statement_hits = len(keys & _STATEMENT_KEYS)
    if payslip_hits == 0 and statement_hits == 0:
        return "unknown"
    return "payslip" if payslip_hits >= statement_hits else "bank_statement"
