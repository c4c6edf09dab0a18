"""
Monthly analytics rebuild.

A snapshot is a pure function of the month's insights and the user's
overrides. Rebuilding twice with unchanged inputs writes byte-identical
snapshot JSON; the rebuild time lives in its own column.

Rebuild steps:
1. validate the month (YYYY-MM, a real calendar month)
2. load insights for the month and overrides effective by its last day
3. patch statement transactions with transaction overrides (by id)
4. walk insights by catalogue key: payslip income and tax, statement
   transactions into one pool, balances per account type, HMRC figures
5. aggregate the pool: spend by category (Transfers excluded), cashflow,
   other income, tax paid to HMRC
6. apply metric overrides by dotted path, deepest first
7. replace the stored snapshot wholesale
"""

import calendar
import logging
import re
import threading
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from ..normalization.amounts import parse_amount, parse_date, round_money, sum_money
from ..normalization.categories import is_transfer, normalise_category
from ..schemas.dedupe import canonical_json, compute_inputs_fingerprint
from ..schemas.document_types import DocumentType
from ..schemas.insight import DocumentInsight
from ..state_store import StateStore, UserOverrideRecord
from ..state_store.sqlite_store import utc_now

logger = logging.getLogger(__name__)

ANALYTICS_QUEUE = "analytics-rebuild"

LARGEST_EXPENSES_LIMIT = 5
TOP_MERCHANTS_LIMIT = 5
RATE_PLACES = 4

OVERRIDE_SCOPES = ("transaction", "metric")

_MONTH = re.compile(r"^(\d{4})-(\d{2})$")
_TAX_DESCRIPTION = re.compile(r"\b(hmrc|tax)\b", re.IGNORECASE)

ZERO = Decimal("0.00")

SOURCE_KEYS = {
    DocumentType.PAYSLIP: "payslips",
    DocumentType.CURRENT_ACCOUNT_STATEMENT: "statements",
    DocumentType.SAVINGS_ACCOUNT_STATEMENT: "savings",
    DocumentType.ISA_STATEMENT: "isa",
    DocumentType.INVESTMENT_STATEMENT: "investments",
    DocumentType.PENSION_STATEMENT: "pension",
    DocumentType.HMRC_CORRESPONDENCE: "hmrc",
}


class InvalidMonthError(ValueError):
    """Month is not YYYY-MM or not a real calendar month."""

    pass


def month_bounds(month: str) -> tuple[str, str]:
    """First and last ISO day of a YYYY-MM month."""
    match = _MONTH.match(month or "")
    if not match:
        raise InvalidMonthError(f"Invalid period month {month!r}")
    year, number = int(match.group(1)), int(match.group(2))
    if year < 1 or not 1 <= number <= 12:
        raise InvalidMonthError(f"Invalid period month {month!r}")
    last_day = calendar.monthrange(year, number)[1]
    return f"{month}-01", f"{month}-{last_day:02d}"


def _money(value: Any) -> Decimal:
    parsed = parse_amount(value)
    return parsed if parsed is not None else ZERO


def _float(value: Decimal) -> float:
    return float(round_money(value))


def _rate(numerator: Decimal, denominator: Decimal) -> float:
    if not denominator:
        return 0.0
    return round(float(numerator / denominator), RATE_PLACES)


# ---------------------------------------------------------------------------
# Transactions and overrides
# ---------------------------------------------------------------------------


@dataclass
class PooledTransaction:
    id: str
    date: Optional[str]
    description: str
    amount: Decimal  # signed
    direction: str
    category: str
    catalogue_key: str

    @property
    def magnitude(self) -> Decimal:
        return abs(self.amount)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "description": self.description,
            "amount": _float(self.magnitude),
            "category": self.category,
        }


def _pooled(raw: dict[str, Any], catalogue_key: str) -> Optional[PooledTransaction]:
    amount = parse_amount(raw.get("amount"))
    if amount is None or not raw.get("id"):
        return None
    direction = str(raw.get("direction") or "").lower()
    if direction not in ("inflow", "outflow"):
        direction = "inflow" if amount >= 0 else "outflow"
    # Direction wins over the sign of a patched amount
    amount = abs(amount) if direction == "inflow" else -abs(amount)
    return PooledTransaction(
        id=str(raw["id"]),
        date=parse_date(raw.get("date")),
        description=" ".join(str(raw.get("description") or "").split()),
        amount=amount,
        direction=direction,
        category=normalise_category(raw.get("category")),
        catalogue_key=catalogue_key,
    )


def apply_transaction_overrides(
    transactions: list[dict[str, Any]],
    overrides: list[UserOverrideRecord],
) -> list[dict[str, Any]]:
    """Patch-merge transaction overrides by transaction id, oldest first."""
    patches: dict[str, list[dict[str, Any]]] = {}
    for override in overrides:
        if override.scope == "transaction" and isinstance(override.patch, dict):
            patches.setdefault(override.target_id, []).append(override.patch)
    if not patches:
        return transactions

    patched = []
    for tx in transactions:
        merged = dict(tx)
        for patch in patches.get(str(tx.get("id")), []):
            merged.update({k: v for k, v in patch.items() if k != "id"})
        patched.append(merged)
    return patched


def _path_depth(override: UserOverrideRecord) -> int:
    return len(override.target_id.split("."))


def apply_metric_overrides(doc: dict[str, Any], overrides: list[UserOverrideRecord]) -> dict[str, Any]:
    """
    Set dotted-path metric overrides into the snapshot.

    Deepest paths first, then creation order, so a later shallow override
    of a parent replaces deeper edits beneath it.
    """
    metric = [o for o in overrides if o.scope == "metric" and o.target_id]
    ordered = sorted(
        enumerate(metric), key=lambda item: (-_path_depth(item[1]), item[1].created_at, item[0])
    )
    for _, override in ordered:
        segments = override.target_id.split(".")
        cursor = doc
        for segment in segments[:-1]:
            if not isinstance(cursor.get(segment), dict):
                cursor[segment] = {}
            cursor = cursor[segment]
        cursor[segments[-1]] = override.patch
    return doc


# ---------------------------------------------------------------------------
# Snapshot building
# ---------------------------------------------------------------------------


@dataclass
class _Balances:
    """Latest closing balance per account, plus summed flows."""

    closing: dict[str, Decimal]
    contributions: Decimal = ZERO
    interest: Decimal = ZERO
    est_return: Decimal = ZERO

    @property
    def balance(self) -> Decimal:
        return sum_money(list(self.closing.values()))


def _account_key(insight: DocumentInsight) -> str:
    metadata = insight.metadata
    return "|".join(
        str(metadata.get(k) or "")
        for k in ("institution_name", "account_type", "account_number_masked")
    )


def inputs_fingerprint(
    insights: Iterable[DocumentInsight], overrides: Iterable[UserOverrideRecord]
) -> str:
    return compute_inputs_fingerprint(
        {
            "insights": sorted(
                [i.file_id, i.schema_version, i.catalogue_key, i.content_hash] for i in insights
            ),
            "overrides": [
                [o.id, o.scope, o.target_id, o.patch, o.applies_from] for o in overrides
            ],
        }
    )


def build_snapshot(
    month: str,
    insights: list[DocumentInsight],
    overrides: list[UserOverrideRecord],
) -> dict[str, Any]:
    """Aggregate one month. Pure: no store access, no clock."""
    sources = {key: 0 for key in SOURCE_KEYS.values()}
    gross = net = withheld = paid_to_hmrc = ZERO
    payslip_nets: Counter[Decimal] = Counter()
    pool: list[PooledTransaction] = []
    savings = _Balances({})
    investments = _Balances({})
    pension = _Balances({})

    for insight in insights:
        try:
            key = DocumentType(insight.catalogue_key)
        except ValueError:
            logger.warning(f"Skipping insight {insight.file_id} with unknown key {insight.catalogue_key}")
            continue
        if key not in SOURCE_KEYS:
            continue
        sources[SOURCE_KEYS[key]] += 1
        metrics = insight.metrics

        if key == DocumentType.PAYSLIP:
            gross += _money(metrics.get("gross"))
            payslip_net = _money(metrics.get("net"))
            net += payslip_net
            payslip_nets[payslip_net] += 1
            withheld += (
                _money(metrics.get("tax"))
                + _money(metrics.get("ni"))
                + _money(metrics.get("student_loan"))
            )
        elif key == DocumentType.HMRC_CORRESPONDENCE:
            paid_to_hmrc += _money(metrics.get("tax_paid"))
        else:
            for raw in apply_transaction_overrides(insight.transactions, overrides):
                tx = _pooled(raw, key.value)
                if tx is not None:
                    pool.append(tx)

            target = {
                DocumentType.SAVINGS_ACCOUNT_STATEMENT: savings,
                DocumentType.ISA_STATEMENT: investments,
                DocumentType.INVESTMENT_STATEMENT: investments,
                DocumentType.PENSION_STATEMENT: pension,
            }.get(key)
            if target is not None:
                closing = parse_amount(metrics.get("closing_balance"))
                if closing is not None:
                    target.closing[_account_key(insight)] = closing
                target.contributions += _money(metrics.get("contributions"))
                target.interest += _money(metrics.get("interest_or_dividends"))
                target.est_return += _money(metrics.get("est_return"))

    inflows = outflows = spend = income_other = ZERO
    by_category: dict[str, Decimal] = {}
    merchants: dict[str, list] = {}
    unconsumed_nets = Counter(payslip_nets)

    for tx in pool:
        if tx.direction == "inflow":
            inflows += tx.magnitude
            if tx.category == "Income":
                # The payslip already counted this salary credit
                if unconsumed_nets[tx.magnitude] > 0:
                    unconsumed_nets[tx.magnitude] -= 1
                else:
                    income_other += tx.magnitude
            continue

        outflows += tx.magnitude
        if _TAX_DESCRIPTION.search(tx.description):
            paid_to_hmrc += tx.magnitude
        if is_transfer(tx.category):
            continue
        spend += tx.magnitude
        by_category[tx.category] = by_category.get(tx.category, ZERO) + tx.magnitude
        name = tx.description.lower() or "unknown"
        entry = merchants.setdefault(name, [ZERO, 0, tx.description or "Unknown"])
        entry[0] += tx.magnitude
        entry[1] += 1

    spend_pool = [tx for tx in pool if tx.direction == "outflow" and not is_transfer(tx.category)]
    largest = sorted(spend_pool, key=lambda tx: (-tx.magnitude, tx.date or "", tx.id))

    snapshot = {
        "period": month,
        "sources": sources,
        "income": {"gross": _float(gross), "net": _float(net), "other": _float(income_other)},
        "spend": {
            "total": _float(spend),
            "by_category": [
                {"category": category, "outflow": _float(amount), "share": _rate(amount, spend)}
                for category, amount in sorted(by_category.items(), key=lambda kv: (-kv[1], kv[0]))
            ],
            "largest_expenses": [tx.to_dict() for tx in largest[:LARGEST_EXPENSES_LIMIT]],
        },
        "cashflow": {
            "inflows": _float(inflows),
            "outflows": _float(outflows),
            "net": _float(inflows - outflows),
        },
        "savings": {"balance": _float(savings.balance), "interest": _float(savings.interest)},
        "investments": {
            "balance": _float(investments.balance),
            "contributions": _float(investments.contributions),
            "est_return": _float(investments.est_return),
        },
        "pension": {
            "balance": _float(pension.balance),
            "contributions": _float(pension.contributions),
        },
        "tax": {
            "withheld": _float(withheld),
            "paid_to_hmrc": _float(paid_to_hmrc),
            "effective_rate": _rate(withheld + paid_to_hmrc, gross),
        },
        "derived": {
            "savings_rate": _rate(net - spend, net),
            "top_merchants": [
                {"name": display, "outflow": _float(amount), "count": count}
                for _, (amount, count, display) in sorted(
                    merchants.items(), key=lambda kv: (-kv[1][0], kv[0])
                )[:TOP_MERCHANTS_LIMIT]
            ],
        },
        "inputs_fingerprint": inputs_fingerprint(insights, overrides),
    }
    return apply_metric_overrides(snapshot, overrides)


def rebuild_monthly_analytics(store: StateStore, user_id: str, month: str, now=None) -> dict[str, Any]:
    """
    Rebuild and store the snapshot for (user, month).

    Returns:
        The snapshot as stored

    Raises:
        InvalidMonthError: month is not a real YYYY-MM month
    """
    _, last_day = month_bounds(month)
    insights = store.get_insights_for_month(user_id, month)
    overrides = store.get_user_overrides(user_id, last_day)

    snapshot = build_snapshot(month, insights, overrides)
    store.replace_analytics_snapshot(user_id, month, canonical_json(snapshot), now=now or utc_now())
    logger.info(
        f"Rebuilt analytics for {user_id} {month}: {len(insights)} insights, "
        f"{len(overrides)} overrides"
    )
    return snapshot


@dataclass
class _KeyLock:
    """A per-key lock and the number of rebuilds holding or waiting on it."""

    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class AnalyticsRebuilder:
    """
    Serialises rebuilds per (user, month).

    Different keys rebuild concurrently; two rebuilds of the same key never
    overlap. Triggers go through the outbox with a per-key dedupe key, so a
    burst of documents for one month collapses into one pending rebuild.
    Across processes the outbox claim keeps one rebuild per key running.
    """

    def __init__(self, store: StateStore):
        self.store = store
        self._locks: dict[tuple[str, str], _KeyLock] = {}
        self._guard = threading.Lock()

    def rebuild(self, user_id: str, month: str) -> dict[str, Any]:
        key = (user_id, month)
        with self._guard:
            entry = self._locks.setdefault(key, _KeyLock())
            entry.holders += 1
        try:
            with entry.lock:
                return rebuild_monthly_analytics(self.store, user_id, month)
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]

    @staticmethod
    def dedupe_key(user_id: str, month: str) -> str:
        return f"{user_id}:{month}"

    def trigger(self, queue, user_id: str, month: str) -> Optional[int]:
        """Enqueue a rebuild on the analytics queue."""
        month_bounds(month)
        return queue.enqueue(
            ANALYTICS_QUEUE,
            {"user_id": user_id, "month": month},
            dedupe_key=self.dedupe_key(user_id, month),
        )

    def process(self, payload: dict[str, Any]) -> None:
        """Queue processor for analytics-rebuild jobs."""
        self.rebuild(payload["user_id"], payload["month"])
