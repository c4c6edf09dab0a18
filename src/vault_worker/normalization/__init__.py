"""
Normalization of standardized payloads into canonical, integrity-checked
results.
"""

from .accessors import Accessor, Resolved, accessors, first_present
from .amounts import MONEY_TOLERANCE, parse_amount, parse_date, round_money
from .categories import (
    CANONICAL_CATEGORIES,
    categorise,
    is_transfer,
    merchant_key,
    normalise_category,
    sanitise_description,
)
from .detect import detect_document_type
from .hmrc import normalize_hmrc
from .payslip import NET_IDENTITY_FAILED, normalize_payslip
from .pii import (
    PiiConfigurationError,
    PiiHasher,
    account_last4,
    hash_pii,
    mask_account,
    mask_ni,
    mask_sort_code,
    ni_last3,
)
from .statement import BALANCE_MISMATCH, normalize_statement

__all__ = [
    "Accessor",
    "Resolved",
    "accessors",
    "first_present",
    "MONEY_TOLERANCE",
    "parse_amount",
    "parse_date",
    "round_money",
    "CANONICAL_CATEGORIES",
    "categorise",
    "is_transfer",
    "merchant_key",
    "normalise_category",
    "sanitise_description",
    "detect_document_type",
    "normalize_hmrc",
    "NET_IDENTITY_FAILED",
    "normalize_payslip",
    "PiiConfigurationError",
    "PiiHasher",
    "account_last4",
    "hash_pii",
    "mask_account",
    "mask_ni",
    "mask_sort_code",
    "ni_last3",
    "BALANCE_MISMATCH",
    "normalize_statement",
]
