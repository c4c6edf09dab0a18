"""
SSOT (Single Source of Truth) schemas for the worker.

These canonical schemas are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .dedupe import (
    canonical_json,
    compute_content_hash,
    compute_inputs_fingerprint,
    compute_transaction_id,
    compute_update_key,
)
from .document_types import STATEMENT_TYPES, DocumentType
from .insight import DocumentInsight
from .normalized import (
    AmountSource,
    CanonicalHmrc,
    CanonicalPayslip,
    CanonicalStatement,
    CanonicalTransaction,
    HmrcResult,
    Integrity,
    IntegrityStatus,
    NormalizationResult,
    PayslipResult,
    PayslipTotals,
    PiiSummary,
    StatementResult,
)
from .pipeline import (
    PIPELINE_STEPS,
    DeadLetterReason,
    JobStatus,
    PipelineJob,
    PipelineStep,
    StepName,
    StepStatus,
)

__all__ = [
    # Dedupe
    "canonical_json",
    "compute_content_hash",
    "compute_inputs_fingerprint",
    "compute_transaction_id",
    "compute_update_key",
    # Document types
    "DocumentType",
    "STATEMENT_TYPES",
    # Insight
    "DocumentInsight",
    # Normalized results
    "AmountSource",
    "CanonicalHmrc",
    "CanonicalPayslip",
    "CanonicalStatement",
    "CanonicalTransaction",
    "HmrcResult",
    "Integrity",
    "IntegrityStatus",
    "NormalizationResult",
    "PayslipResult",
    "PayslipTotals",
    "PiiSummary",
    "StatementResult",
    # Pipeline
    "PIPELINE_STEPS",
    "DeadLetterReason",
    "JobStatus",
    "PipelineJob",
    "PipelineStep",
    "StepName",
    "StepStatus",
]
