"""
PII handling for National Insurance numbers and account identifiers.

Raw identifiers never leave normalization. What is kept:
- a peppered SHA256 hash, for exact-match lookups
- a masked display form (last 3 of NI, last 4 of account number)
"""

import hashlib
import re

MASK_CHAR = "•"


class PiiConfigurationError(RuntimeError):
    """The hash pepper is missing."""

    pass


def _compact(value: str) -> str:
    return re.sub(r"\s+", "", value).upper()


def _digits(value: str) -> str:
    return re.sub(r"[^0-9]", "", value)


class PiiHasher:
    """Peppered one-way hashing of identifiers.

    The pepper comes from configuration (security.hash_pepper /
    SEC_HASH_PEPPER) and is passed in explicitly.
    """

    def __init__(self, pepper: str | None):
        self._pepper = pepper or ""

    @property
    def configured(self) -> bool:
        return bool(self._pepper)

    def hash(self, value: str | None) -> str | None:
        """SHA256(normalised value + pepper); None for empty input."""
        if value is None:
            return None
        normalised = _compact(str(value))
        if not normalised:
            return None
        if not self._pepper:
            raise PiiConfigurationError("SEC_HASH_PEPPER must be set to hash PII")
        return hashlib.sha256(f"{normalised}{self._pepper}".encode("utf-8")).hexdigest()


def hash_pii(value: str | None, pepper: str | None) -> str | None:
    return PiiHasher(pepper).hash(value)


def ni_last3(value: str | None) -> str | None:
    if not value:
        return None
    compact = _compact(str(value))
    return compact[-3:] if len(compact) >= 3 else None


def account_last4(value: str | None) -> str | None:
    if not value:
        return None
    digits = _digits(str(value))
    source = digits or _compact(str(value))
    return source[-4:] if len(source) >= 4 else None


def mask_ni(value: str | None) -> str | None:
    """'QQ123456C' -> '••••••56C'."""
    tail = ni_last3(value)
    if tail is None:
        return None
    return MASK_CHAR * (len(_compact(str(value))) - 3) + tail


def mask_account(value: str | None) -> str | None:
    """'12345678' -> '••••5678'."""
    tail = account_last4(value)
    if tail is None:
        return None
    return MASK_CHAR * 4 + tail


def mask_sort_code(value: str | None) -> str | None:
    """'12-34-56' -> '••-••-56'; None unless six digits are present."""
    if not value:
        return None
    digits = _digits(str(value))
    if len(digits) < 6:
        return None
    return f"{MASK_CHAR * 2}-{MASK_CHAR * 2}-{digits[4:6]}"
