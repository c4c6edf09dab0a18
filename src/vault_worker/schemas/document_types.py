"""
Document type universe.

The catalogue key attached to every classified document. A value here is
the ONLY way a document type is named anywhere in the worker.
"""

from enum import Enum


class DocumentType(str, Enum):
    """Catalogue key of a classified document."""

    PAYSLIP = "payslip"
    CURRENT_ACCOUNT_STATEMENT = "current_account_statement"
    SAVINGS_ACCOUNT_STATEMENT = "savings_account_statement"
    ISA_STATEMENT = "isa_statement"
    INVESTMENT_STATEMENT = "investment_statement"
    PENSION_STATEMENT = "pension_statement"
    HMRC_CORRESPONDENCE = "hmrc_correspondence"
    UNKNOWN = "unknown"

    @property
    def is_statement(self) -> bool:
        """True for every statement-bearing type (has transactions and balances)."""
        return self in STATEMENT_TYPES


STATEMENT_TYPES = frozenset(
    {
        DocumentType.CURRENT_ACCOUNT_STATEMENT,
        DocumentType.SAVINGS_ACCOUNT_STATEMENT,
        DocumentType.ISA_STATEMENT,
        DocumentType.INVESTMENT_STATEMENT,
        DocumentType.PENSION_STATEMENT,
    }
)
