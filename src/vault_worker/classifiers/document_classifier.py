"""
Heuristic document classification.

Keyword rules over the lowercased filename, then over content. Keywords match
anywhere in the text, except short ones that need a whole word.
Confidence is a fixed per-rule score, not an evidence measure.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from ..accounts.canonicalise import INSTITUTION_ALIASES, canonicalise_employer, canonicalise_institution
from ..schemas.document_types import DocumentType

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.6

# Content hits are weaker evidence than a filename hit
CONTENT_PENALTY = 0.1

MONTH_NAMES = frozenset(
    {
        "jan", "january", "feb", "february", "mar", "march", "apr", "april", "may",
        "jun", "june", "jul", "july", "aug", "august", "sep", "sept", "september",
        "oct", "october", "nov", "november", "dec", "december",
    }
)
FILE_EXTENSIONS = frozenset({"pdf", "png", "jpg", "jpeg", "tif", "tiff", "heic"})

_SEGMENT_SPLIT = re.compile(r"[-_]+")
_WORD_SPLIT = re.compile(r"[-_\s.]+")
_TOKEN = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class ClassificationRule:
    doc_type: DocumentType
    keywords: tuple[str, ...]
    confidence: float

    def matches(self, text: str) -> bool:
        return any(_keyword_found(keyword, text) for keyword in self.keywords)


# Too short to match inside other words (visa, isabel)
WHOLE_WORD_KEYWORDS = frozenset({"isa"})


def _keyword_found(keyword: str, text: str) -> bool:
    """Substring match on the token text, so "ACMEPayslip" still reads as a payslip."""
    if keyword in WHOLE_WORD_KEYWORDS:
        return re.search(rf"\b{re.escape(keyword)}s?\b", text) is not None
    return keyword in text


# Checked in order; the first matching rule wins
RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(DocumentType.HMRC_CORRESPONDENCE, ("p60", "self assessment", "hmrc"), 0.80),
    ClassificationRule(DocumentType.PAYSLIP, ("payslip", "pay slip", "salary"), 0.85),
    ClassificationRule(DocumentType.ISA_STATEMENT, ("isa",), 0.75),
    ClassificationRule(DocumentType.PENSION_STATEMENT, ("pension",), 0.75),
    ClassificationRule(DocumentType.INVESTMENT_STATEMENT, ("investment", "brokerage"), 0.70),
    ClassificationRule(DocumentType.SAVINGS_ACCOUNT_STATEMENT, ("savings",), 0.70),
    ClassificationRule(DocumentType.CURRENT_ACCOUNT_STATEMENT, ("statement",), 0.65),
)

KEYWORD_TOKENS = frozenset(
    token for rule in RULES for keyword in rule.keywords for token in keyword.split()
) | {"account", "bank", "current", "slip", "pay"}


@dataclass
class Classification:
    """Result of classifying one document."""

    type: DocumentType
    confidence: float
    employer_name: Optional[str] = None
    institution_name: Optional[str] = None
    matched_on: Optional[str] = None  # filename | content
    threshold: float = DEFAULT_THRESHOLD

    @property
    def accepted(self) -> bool:
        """Only accepted documents may be normalized."""
        return self.type != DocumentType.UNKNOWN and self.confidence >= self.threshold

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "confidence": self.confidence,
            "employer_name": self.employer_name,
            "institution_name": self.institution_name,
            "matched_on": self.matched_on,
        }


def _tokens(text: str) -> str:
    return " ".join(_TOKEN.findall(text.lower()))


def _is_filler(word: str) -> bool:
    lower = word.lower()
    return (
        not lower
        or lower in KEYWORD_TOKENS
        or lower in MONTH_NAMES
        or lower in FILE_EXTENSIONS
        or any(ch.isdigit() for ch in lower)
    )


def _stem(name: str) -> str:
    return re.sub(r"\.[A-Za-z0-9]{2,5}$", "", name.strip())


def guess_employer(original_name: str) -> Optional[str]:
    """First filename segment that is not a keyword or a date."""
    for segment in _SEGMENT_SPLIT.split(_stem(original_name)):
        words = [w for w in segment.split() if not _is_filler(w)]
        if words:
            return canonicalise_employer(" ".join(words))
    return None


def guess_institution(original_name: str) -> Optional[str]:
    """Canonical institution from the first two non-keyword filename words."""
    words = [w for w in _WORD_SPLIT.split(_stem(original_name)) if not _is_filler(w)][:2]
    if not words:
        return None
    candidate = " ".join(words)
    name = canonicalise_institution(candidate)
    if name.canonical != name.raw:
        return name.canonical
    # "Monzo Joint" -> Monzo
    if words[0].lower() in INSTITUTION_ALIASES:
        return canonicalise_institution(words[0]).canonical
    return name.canonical


class DocumentClassifier:
    """
    Classifies uploads into catalogue keys.

    Rules (first match wins, filename before content):
        p60 / self assessment / hmrc   -> hmrc_correspondence  0.80
        payslip / pay slip / salary    -> payslip              0.85
        isa                            -> isa_statement        0.75
        pension                        -> pension_statement    0.75
        investment / brokerage         -> investment_statement 0.70
        savings                        -> savings_account_statement 0.70
        statement                      -> current_account_statement 0.65
    """

    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        self.threshold = threshold

    def classify(self, original_name: Optional[str], content: Optional[str] = None) -> Classification:
        name = original_name or ""
        for text, source, penalty in (
            (_tokens(name), "filename", 0.0),
            (_tokens(content or ""), "content", CONTENT_PENALTY),
        ):
            if not text:
                continue
            for rule in RULES:
                if rule.matches(text):
                    result = self._build(rule, name, source, round(rule.confidence - penalty, 2))
                    logger.debug(
                        f"Classified '{name}' as {result.type.value} "
                        f"({result.confidence}) on {source}"
                    )
                    return result

        return Classification(DocumentType.UNKNOWN, 0.0, threshold=self.threshold)

    def _build(
        self,
        rule: ClassificationRule,
        original_name: str,
        source: str,
        confidence: float,
    ) -> Classification:
        employer = None
        institution = None
        if rule.doc_type == DocumentType.PAYSLIP:
            employer = guess_employer(original_name)
        elif rule.doc_type.is_statement:
            institution = guess_institution(original_name)
        return Classification(
            type=rule.doc_type,
            confidence=confidence,
            employer_name=employer,
            institution_name=institution,
            matched_on=source,
            threshold=self.threshold,
        )


def classify(
    original_name: Optional[str],
    content: Optional[str] = None,
    threshold: float = DEFAULT_THRESHOLD,
) -> Classification:
    return DocumentClassifier(threshold).classify(original_name, content)
