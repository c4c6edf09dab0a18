"""
Account identity: canonical institution/employer names and conflict-free
updates of the raw-name variants seen for each account.
"""

from .canonicalise import (
    INSTITUTION_ALIASES,
    CanonicalName,
    canonicalise_employer,
    canonicalise_institution,
)
from .update_planner import (
    RAW_NAMES_PATH,
    UpdateConflictError,
    UpdateMode,
    UpdatePlan,
    UpdateSummary,
    build_update,
    create_noop_summary,
    dedupe,
    ensure_single_operator,
    normalize_raw_names_input,
    summarize_for_logging,
)

__all__ = [
    "INSTITUTION_ALIASES",
    "CanonicalName",
    "canonicalise_employer",
    "canonicalise_institution",
    "RAW_NAMES_PATH",
    "UpdateConflictError",
    "UpdateMode",
    "UpdatePlan",
    "UpdateSummary",
    "build_update",
    "create_noop_summary",
    "dedupe",
    "ensure_single_operator",
    "normalize_raw_names_input",
    "summarize_for_logging",
]
