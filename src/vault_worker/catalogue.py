"""
Document catalogue.

The set of valid catalogue keys, their labels and the account type each
statement-bearing key maps to. Collections are the user's folders in the
vault; a collection id is any non-empty string the upstream catalogue owns,
optionally prefixed with the catalogue key it is restricted to
("payslip:2024").
"""

from dataclasses import dataclass

from .schemas.document_types import DocumentType


@dataclass(frozen=True)
class CatalogueEntry:
    key: DocumentType
    label: str
    account_type: str | None = None


CATALOGUE: dict[DocumentType, CatalogueEntry] = {
    DocumentType.PAYSLIP: CatalogueEntry(DocumentType.PAYSLIP, "Payslip"),
    DocumentType.CURRENT_ACCOUNT_STATEMENT: CatalogueEntry(
        DocumentType.CURRENT_ACCOUNT_STATEMENT, "Current account statement", "Current"
    ),
    DocumentType.SAVINGS_ACCOUNT_STATEMENT: CatalogueEntry(
        DocumentType.SAVINGS_ACCOUNT_STATEMENT, "Savings account statement", "Savings"
    ),
    DocumentType.ISA_STATEMENT: CatalogueEntry(DocumentType.ISA_STATEMENT, "ISA statement", "ISA"),
    DocumentType.INVESTMENT_STATEMENT: CatalogueEntry(
        DocumentType.INVESTMENT_STATEMENT, "Investment statement", "Investments"
    ),
    DocumentType.PENSION_STATEMENT: CatalogueEntry(
        DocumentType.PENSION_STATEMENT, "Pension statement", "Pension"
    ),
    DocumentType.HMRC_CORRESPONDENCE: CatalogueEntry(
        DocumentType.HMRC_CORRESPONDENCE, "HMRC correspondence"
    ),
}

COLLECTION_KEY_SEPARATOR = ":"


def is_valid_key(key: str) -> bool:
    """True if key names a catalogued (processable) document type."""
    try:
        return DocumentType(key) in CATALOGUE
    except ValueError:
        return False


def account_type_for(key: DocumentType | str) -> str:
    """Account type recorded for a statement-bearing key (Current by default)."""
    try:
        entry = CATALOGUE.get(DocumentType(key))
    except ValueError:
        entry = None
    if entry and entry.account_type:
        return entry.account_type
    return "Current"


def collection_catalogue_key(collection_id: str | None) -> DocumentType | None:
    """Catalogue key a collection is restricted to, if its id carries one."""
    if not collection_id or COLLECTION_KEY_SEPARATOR not in collection_id:
        return None
    prefix = collection_id.split(COLLECTION_KEY_SEPARATOR, 1)[0]
    return DocumentType(prefix) if is_valid_key(prefix) else None


def validate_collection_id(collection_id: str | None) -> None:
    """Reject malformed collection ids before a job is enqueued."""
    if collection_id is None:
        return
    if not collection_id.strip():
        raise ValueError("collection_id must not be blank")
    if COLLECTION_KEY_SEPARATOR in collection_id and collection_catalogue_key(collection_id) is None:
        prefix = collection_id.split(COLLECTION_KEY_SEPARATOR, 1)[0]
        raise ValueError(f"Unknown catalogue key in collection id: {prefix}")
