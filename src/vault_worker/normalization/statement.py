"""
Statement normalization and balance reconciliation.

    expected_closing = opening + inflow - outflow

The check passes iff both balances are present and |closing -
expected_closing| <= 0.01. A missing balance fails with balance_mismatch
and no delta; unstated balances are never assumed to be zero.
"""

import logging
from decimal import Decimal
from collections.abc import Mapping
from typing import Any

from ..schemas.dedupe import compute_transaction_id
from ..schemas.normalized import (
    CanonicalStatement,
    CanonicalTransaction,
    Integrity,
    IntegrityStatus,
    PiiSummary,
    StatementResult,
)
from .accessors import accessors, as_text, first_present, record_source
from .amounts import MONEY_TOLERANCE, parse_amount, parse_date, round_money, sum_money
from .categories import categorise
from .pii import PiiHasher, account_last4, mask_sort_code

logger = logging.getLogger(__name__)

BALANCE_MISMATCH = "balance_mismatch"

INSTITUTION = accessors(
    "institution.name", "bank.name", "account.institution", "institutionName", "provider.name"
)
SORT_CODE = accessors("account.sortCode", "sortCode", "account.routingNumber")
ACCOUNT_NUMBER = accessors("account.number", "accountNumber", "account.accountNumber", "account.iban")
PERIOD_START = accessors("period.start", "statement.period.from", "fromDate", "periodStart")
PERIOD_END = accessors("period.end", "statement.period.to", "toDate", "periodEnd")
OPENING = accessors("balances.opening", "openingBalance", "statement.openingBalance")
CLOSING = accessors("balances.closing", "closingBalance", "statement.closingBalance")
CURRENCY = accessors("currency", "statement.currency")
MONEY_IN = accessors("totals.moneyIn", "summary.moneyIn", "totalIn", "paidIn")
MONEY_OUT = accessors("totals.moneyOut", "summary.moneyOut", "totalOut", "paidOut")
CONTRIBUTIONS = accessors("contributions", "summary.contributions", "totalContributions")
INTEREST = accessors("interestOrDividends", "interest", "dividends", "summary.interest")
EST_RETURN = accessors("estReturn", "investmentReturn", "summary.return")

TRANSACTION_LISTS = accessors("transactions", "statement.transactions", "activity")
TX_DATE = accessors("date", "postedDate", "transactionDate")
TX_DESCRIPTION = accessors("description", "narrative", "merchant", "summary", "details")
TX_CATEGORY = accessors("category", "categoryName")

_OUTFLOW_MARKERS = frozenset({"debit", "outflow", "dr", "out", "withdrawal"})


def _transaction_amount(entry: dict[str, Any]) -> Decimal | None:
    amount = parse_amount(entry.get("amount"))
    if amount is not None:
        marker = str(entry.get("direction") or entry.get("type") or "").strip().lower()
        if marker in _OUTFLOW_MARKERS and amount > 0:
            amount = -amount
        return amount

    credit = parse_amount(entry.get("credit"))
    debit = parse_amount(entry.get("debit"))
    if credit is None and debit is None:
        return None
    return round_money((credit or Decimal("0")) - abs(debit or Decimal("0")))


def extract_transactions(
    raw: dict[str, Any],
    file_id: str,
    learned_categories: Mapping[str, str] | None = None,
) -> list[CanonicalTransaction]:
    """Canonical transactions from the first transaction list present."""
    entries = first_present(raw, TRANSACTION_LISTS, lambda v: v if isinstance(v, list) else None)
    transactions = []
    for index, entry in enumerate(entries.value or []):
        if not isinstance(entry, dict):
            continue
        amount = _transaction_amount(entry)
        if amount is None:
            continue
        direction = "inflow" if amount >= 0 else "outflow"
        date = first_present(entry, TX_DATE, parse_date).value
        description = first_present(entry, TX_DESCRIPTION, as_text).value
        raw_category = first_present(entry, TX_CATEGORY, as_text).value
        transactions.append(
            CanonicalTransaction(
                id=compute_transaction_id(file_id, index, amount, date, description),
                date=date,
                description=description,
                amount=amount,
                direction=direction,
                category=categorise(description, direction, raw_category, learned_categories),
            )
        )
    return transactions


def normalize_statement(
    raw: dict[str, Any],
    hasher: PiiHasher,
    file_id: str = "",
    learned_categories: Mapping[str, str] | None = None,
) -> StatementResult:
    """
    Normalize a standardized account statement payload.

    Args:
        raw: Standardized payload
        hasher: Peppered hasher for the account number
        file_id: Source file id (seeds stable transaction ids)
        learned_categories: The user's merchant categories, by merchant_key

    Returns:
        StatementResult with canonical transactions, totals and integrity
    """
    sources: dict[str, str] = {}

    def resolve(field_name: str, candidates, coerce):
        resolved = first_present(raw, candidates, coerce)
        record_source(sources, field_name, resolved)
        return resolved.value

    transactions = extract_transactions(raw, file_id, learned_categories)
    if transactions:
        inflow = sum_money([t.amount for t in transactions if t.direction == "inflow"])
        outflow = sum_money([abs(t.amount) for t in transactions if t.direction == "outflow"])
        sources["transactions"] = "transactions"
    else:
        inflow = abs(resolve("inflow_total", MONEY_IN, parse_amount) or Decimal("0.00"))
        outflow = abs(resolve("outflow_total", MONEY_OUT, parse_amount) or Decimal("0.00"))

    opening = resolve("opening_balance", OPENING, parse_amount)
    closing = resolve("closing_balance", CLOSING, parse_amount)

    expected_closing = None
    if opening is not None and closing is not None:
        expected_closing = round_money(opening + inflow - outflow)
        delta = round_money(closing - expected_closing)
        if abs(delta) <= MONEY_TOLERANCE:
            integrity = Integrity(IntegrityStatus.PASS)
        else:
            integrity = Integrity(IntegrityStatus.FAIL, reason=BALANCE_MISMATCH, delta=delta)
    else:
        integrity = Integrity(IntegrityStatus.FAIL, reason=BALANCE_MISMATCH)

    if not integrity.passed:
        logger.debug(
            f"Statement reconciliation failed: opening={opening} closing={closing} "
            f"inflow={inflow} outflow={outflow}"
        )

    account_number = resolve("account_number", ACCOUNT_NUMBER, as_text)
    sort_code = resolve("sort_code", SORT_CODE, as_text)
    currency = resolve("currency", CURRENCY, as_text) or "GBP"

    normalized = CanonicalStatement(
        currency=currency.upper(),
        transactions=transactions,
        inflow_total=inflow,
        outflow_total=outflow,
        institution_name=resolve("institution_name", INSTITUTION, as_text),
        sort_code_masked=mask_sort_code(sort_code),
        account_last4=account_last4(account_number),
        account_hash=hasher.hash(account_number) if account_number else None,
        period_start=resolve("period_start", PERIOD_START, parse_date),
        period_end=resolve("period_end", PERIOD_END, parse_date),
        opening_balance=opening,
        closing_balance=closing,
        expected_closing=expected_closing,
        contributions=resolve("contributions", CONTRIBUTIONS, parse_amount),
        interest_or_dividends=resolve("interest_or_dividends", INTEREST, parse_amount),
        est_return=resolve("est_return", EST_RETURN, parse_amount),
    )

    return StatementResult(
        normalized=normalized,
        integrity=integrity,
        pii=PiiSummary(account_last4=normalized.account_last4),
        sources=sources,
    )
