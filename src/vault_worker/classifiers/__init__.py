"""
Document classification.
"""

from .document_classifier import (
    DEFAULT_THRESHOLD,
    RULES,
    Classification,
    ClassificationRule,
    DocumentClassifier,
    classify,
    guess_employer,
    guess_institution,
)

__all__ = [
    "DEFAULT_THRESHOLD",
    "RULES",
    "Classification",
    "ClassificationRule",
    "DocumentClassifier",
    "classify",
    "guess_employer",
    "guess_institution",
]
