"""
Transaction categories.

A fixed canonical category set, a synonym table for categories supplied
upstream, description rules for transactions that arrive without one, and
merchant keys for categories the user has taught us.
"""

import hashlib
import re
from collections.abc import Mapping

CANONICAL_CATEGORIES: tuple[str, ...] = (
    "Income",
    "Groceries",
    "EatingOut",
    "Utilities",
    "RentMortgage",
    "Transport",
    "Fuel",
    "Entertainment",
    "Subscriptions",
    "Health",
    "Insurance",
    "Education",
    "Travel",
    "Cash",
    "Transfers",
    "DebtRepayment",
    "Fees",
    "GiftsDonations",
    "Childcare",
    "Home",
    "Shopping",
    "Refunds",
    "Misc",
)

# Categories that move money between the user's own accounts (never spend)
TRANSFER_CATEGORIES = frozenset({"Transfers"})

FALLBACK_CATEGORY = "Misc"

SYNONYMS: dict[str, str] = {
    "salary": "Income",
    "wages": "Income",
    "pay": "Income",
    "food": "Groceries",
    "grocery": "Groceries",
    "restaurant": "EatingOut",
    "dining": "EatingOut",
    "electric": "Utilities",
    "gas": "Utilities",
    "mortgage": "RentMortgage",
    "rent": "RentMortgage",
    "housing": "RentMortgage",
    "uber": "Transport",
    "fuel": "Fuel",
    "petrol": "Fuel",
    "tv": "Entertainment",
    "leisure": "Entertainment",
    "subscription": "Subscriptions",
    "netflix": "Entertainment",
    "doctor": "Health",
    "dentist": "Health",
    "insurance": "Insurance",
    "school": "Education",
    "tuition": "Education",
    "holiday": "Travel",
    "flight": "Travel",
    "cash": "Cash",
    "transfer": "Transfers",
    "savingstransfers": "Transfers",
    "loan": "DebtRepayment",
    "fee": "Fees",
    "feescharges": "Fees",
    "gift": "GiftsDonations",
    "donation": "GiftsDonations",
    "child": "Childcare",
    "nursery": "Childcare",
    "home": "Home",
    "repair": "Home",
    "shop": "Shopping",
    "refund": "Refunds",
}

UNCATEGORISED_MARKERS = frozenset({"misc", "uncategorised", "uncategorized", "unknown", "other"})

_CANONICAL_BY_SIMPLE = {re.sub(r"[^a-z]", "", c.lower()): c for c in CANONICAL_CATEGORIES}

MERCHANT_SAMPLE_LENGTH = 120
_LONG_DIGITS = re.compile(r"\d{5,}")


def _rule(*patterns: str) -> re.Pattern[str]:
    return re.compile("|".join(patterns), re.IGNORECASE)


# (category, pattern, inflow_only) checked in order
DESCRIPTION_RULES: tuple[tuple[str, re.Pattern[str], bool], ...] = (
    ("Income", _rule(r"\bpayroll\b", r"\bsalary\b", r"\bwages\b", r"\bbonus\b", r"\bdividend"), True),
    ("Refunds", _rule(r"\brefund", r"\breversal\b", r"\bcashback\b", r"\brebate\b"), True),
    (
        "Transfers",
        _rule(r"\btransfer\b", r"\bstanding order\b", r"\bto savings\b", r"\bisa\b", r"\bpot\b"),
        False,
    ),
    ("RentMortgage", _rule(r"\brent\b", r"\bmortgage\b", r"\blandlord\b", r"\blettings?\b"), False),
    (
        "Utilities",
        _rule(r"\benergy\b", r"\belectric", r"\bgas\b", r"\bwater\b", r"\bbroadband\b", r"\bcouncil\b"),
        False,
    ),
    (
        "Groceries",
        _rule(
            r"\btesco\b",
            r"\bsainsbury",
            r"\baldi\b",
            r"\blidl\b",
            r"\bwaitrose\b",
            r"\basda\b",
            r"\bmorrisons\b",
            r"\bco-?op\b",
            r"\bsupermarket\b",
        ),
        False,
    ),
    ("Fuel", _rule(r"\bpetrol\b", r"\bfuel\b", r"\bshell\b", r"\bbp\b", r"\besso\b"), False),
    (
        "Transport",
        _rule(r"\buber\b", r"\btfl\b", r"\btrainline\b", r"\brail\b", r"\bparking\b", r"\btaxi\b"),
        False,
    ),
    (
        "Subscriptions",
        _rule(r"\bnetflix\b", r"\bspotify\b", r"\bsubscription\b", r"\bprime\b", r"\bicloud\b", r"\bdisney\b"),
        False,
    ),
    (
        "EatingOut",
        _rule(r"\brestaurant\b", r"\bcafe\b", r"\bcoffee\b", r"\bpub\b", r"\bdeliveroo\b", r"\bjust eat\b"),
        False,
    ),
    ("Fees", _rule(r"\bfee\b", r"\bcharge\b", r"\boverdraft\b"), False),
)


def normalise_category(raw: str | None) -> str:
    """Map an upstream category label to the canonical set (Misc if unknown)."""
    simplified = re.sub(r"[^a-z]", "", str(raw or "").lower())
    if not simplified:
        return FALLBACK_CATEGORY
    if simplified in _CANONICAL_BY_SIMPLE:
        return _CANONICAL_BY_SIMPLE[simplified]
    return SYNONYMS.get(simplified, FALLBACK_CATEGORY)


def merchant_key(description: str | None) -> str | None:
    """Stable key for a merchant: sha256 of the lowercased, whitespace-collapsed description."""
    normalised = " ".join(str(description or "").lower().split())
    if not normalised:
        return None
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()


def sanitise_description(description: str | None) -> str:
    """Short description sample with card and account numbers masked to their last 4 digits."""
    text = " ".join(str(description or "").split())[:MERCHANT_SAMPLE_LENGTH]
    return _LONG_DIGITS.sub(lambda m: "*" * (len(m.group()) - 4) + m.group()[-4:], text)


def categorise(
    description: str | None,
    direction: str,
    raw_category: str | None = None,
    learned: Mapping[str, str] | None = None,
) -> str:
    """
    Pick a category for a statement transaction.

    A category the user taught for this merchant wins; then an explicit
    upstream category unless it is an "uncategorised" marker; then
    description rules; then Income for inflows and Misc for outflows.
    """
    if learned:
        key = merchant_key(description)
        if key and key in learned:
            return learned[key]

    if raw_category is not None and str(raw_category).strip().lower() not in UNCATEGORISED_MARKERS:
        category = normalise_category(raw_category)
        if category != FALLBACK_CATEGORY:
            return category

    text = description or ""
    for category, pattern, inflow_only in DESCRIPTION_RULES:
        if inflow_only and direction != "inflow":
            continue
        if pattern.search(text):
            return category

    return "Income" if direction == "inflow" else FALLBACK_CATEGORY


def is_transfer(category: str) -> bool:
    return category in TRANSFER_CATEGORIES
