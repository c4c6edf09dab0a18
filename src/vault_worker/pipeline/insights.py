"""
Insight building.

Turns a typed normalization result into the DocumentInsight row consumed by
analytics. Dispatch is on the result type, one branch per document family.
"""

from datetime import date
from typing import Any, Optional

from ..accounts.canonicalise import canonicalise_employer, canonicalise_institution
from ..catalogue import account_type_for
from ..classifiers import Classification
from ..config import PipelineConfig
from ..normalization.pii import mask_account
from ..schemas.insight import DocumentInsight
from ..schemas.normalized import (
    HmrcResult,
    NormalizationResult,
    PayslipResult,
    StatementResult,
    to_float,
)
from ..schemas.pipeline import PipelineJob


def _payslip_sections(result: PayslipResult) -> tuple[dict, dict, list]:
    payslip = result.normalized
    totals = payslip.totals
    metadata = {
        "employer_name": canonicalise_employer(payslip.employer_name),
        "pay_frequency": payslip.pay_frequency,
        "tax_code": payslip.tax_code,
        "ni_number_masked": payslip.ni_number_masked,
        "period": {"start": payslip.period_start, "end": payslip.period_end},
    }
    metrics = {
        "pay_date": payslip.pay_date,
        "gross": to_float(totals.gross),
        "net": to_float(totals.net),
        "tax": to_float(totals.income_tax),
        "ni": to_float(totals.national_insurance),
        "pension": to_float(totals.pension),
        "student_loan": to_float(totals.student_loan),
        "other_deductions": to_float(totals.other_deductions),
        "other_deductions_source": totals.other_source.value,
        "expected_net": to_float(totals.expected_net),
    }
    return metadata, metrics, []


def _statement_sections(
    result: StatementResult, catalogue_key: str, classification: Classification
) -> tuple[dict, dict, list]:
    statement = result.normalized
    institution = canonicalise_institution(
        statement.institution_name or classification.institution_name
    )
    metadata = {
        "institution_name": institution.canonical,
        "raw_institution_name": institution.raw,
        "account_type": account_type_for(catalogue_key),
        "account_number_masked": mask_account(statement.account_last4),
        "sort_code_masked": statement.sort_code_masked,
        "currency": statement.currency,
        "period": {"start": statement.period_start, "end": statement.period_end},
    }
    metrics = {
        "opening_balance": to_float(statement.opening_balance),
        "closing_balance": to_float(statement.closing_balance),
        "inflows": to_float(statement.inflow_total),
        "outflows": to_float(statement.outflow_total),
        "net": to_float(statement.inflow_total - statement.outflow_total),
        "contributions": to_float(statement.contributions),
        "interest_or_dividends": to_float(statement.interest_or_dividends),
        "est_return": to_float(statement.est_return),
    }
    return metadata, metrics, [tx.to_dict() for tx in statement.transactions]


def _hmrc_sections(result: HmrcResult) -> tuple[dict, dict, list]:
    hmrc = result.normalized
    metadata = {"tax_year": hmrc.tax_year, "issued_date": hmrc.issued_date}
    metrics = {
        "total_pay": to_float(hmrc.total_pay),
        "tax_paid": to_float(hmrc.tax_paid),
        "ni_paid": to_float(hmrc.ni_paid),
        "student_loan": to_float(hmrc.student_loan),
        "pension": to_float(hmrc.pension),
    }
    return metadata, metrics, []


def build_insight(
    job: PipelineJob,
    classification: Classification,
    result: NormalizationResult,
    config: PipelineConfig,
    content_hash: str,
    fallback_date: Optional[str] = None,
) -> DocumentInsight:
    """
    Build the canonical insight for a processed document.

    The document date comes from the normalized record; when the document
    shows none, fallback_date (the upload date) is used.
    """
    catalogue_key = classification.type.value
    if isinstance(result, PayslipResult):
        metadata, metrics, transactions = _payslip_sections(result)
    elif isinstance(result, StatementResult):
        metadata, metrics, transactions = _statement_sections(result, catalogue_key, classification)
    elif isinstance(result, HmrcResult):
        metadata, metrics, transactions = _hmrc_sections(result)
    else:
        raise TypeError(f"Unsupported normalization result: {type(result).__name__}")

    document_date = result.normalized.document_date or fallback_date or date.today().isoformat()
    metadata["collection_id"] = job.collection_id
    metadata["display_name"] = job.display_name or job.original_name
    metadata["integrity"] = result.integrity.to_dict()
    metadata["pii"] = result.pii.to_dict()

    narrative = [
        f"classification={catalogue_key}",
        f"confidence={classification.confidence}",
        f"integrity={result.integrity.status.value}",
    ]

    return DocumentInsight(
        user_id=job.user_id,
        file_id=job.file_id,
        document_id=job.document_id,
        catalogue_key=catalogue_key,
        schema_version=config.schema_version,
        parser_version=config.parser_version,
        prompt_version=config.prompt_version,
        model=config.model,
        confidence=classification.confidence,
        content_hash=content_hash,
        document_date=document_date,
        document_month=document_date[:7],
        metadata=_drop_empty(metadata),
        metrics=metrics,
        transactions=transactions,
        narrative=narrative,
    )


def _drop_empty(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}
