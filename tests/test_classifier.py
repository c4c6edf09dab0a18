"""Tests for heuristic document classification."""

import pytest

from vault_worker.classifiers import DocumentClassifier, classify, guess_employer, guess_institution
from vault_worker.schemas.document_types import DocumentType


class TestClassify:
    """Tests for filename and content rules."""

    @pytest.mark.parametrize(
        "name,doc_type,confidence",
        [
            ("Payslip_March.pdf", DocumentType.PAYSLIP, 0.85),
            ("acme-pay-slip-2024-03.pdf", DocumentType.PAYSLIP, 0.85),
            ("P60 2023.pdf", DocumentType.HMRC_CORRESPONDENCE, 0.80),
            ("Vanguard_ISA_2024.pdf", DocumentType.ISA_STATEMENT, 0.75),
            ("Aviva pension annual.pdf", DocumentType.PENSION_STATEMENT, 0.75),
            ("brokerage-q1.pdf", DocumentType.INVESTMENT_STATEMENT, 0.70),
            ("Savings statement.pdf", DocumentType.SAVINGS_ACCOUNT_STATEMENT, 0.70),
            ("Monzo Bank Statements March.pdf", DocumentType.CURRENT_ACCOUNT_STATEMENT, 0.65),
        ],
    )
    def test_filename_rules(self, name, doc_type, confidence):
        result = classify(name)

        assert result.type == doc_type
        assert result.confidence == confidence
        assert result.matched_on == "filename"
        assert result.accepted

    def test_unknown_document(self):
        result = classify("random.pdf")

        assert result.type == DocumentType.UNKNOWN
        assert result.confidence == 0.0
        assert not result.accepted

    @pytest.mark.parametrize(
        "name,doc_type",
        [
            ("MonzoStatement_Jan.pdf", DocumentType.CURRENT_ACCOUNT_STATEMENT),
            ("payslip2024.pdf", DocumentType.PAYSLIP),
            ("ACMEPayslip.pdf", DocumentType.PAYSLIP),
            ("HSBC-statement2024-03.pdf", DocumentType.CURRENT_ACCOUNT_STATEMENT),
            ("myP60.pdf", DocumentType.HMRC_CORRESPONDENCE),
        ],
    )
    def test_keywords_joined_to_other_text(self, name, doc_type):
        result = classify(name)

        assert result.type == doc_type
        assert result.accepted

    @pytest.mark.parametrize("name", ["isabel.pdf", "visa_receipt.pdf"])
    def test_isa_needs_a_whole_word(self, name):
        assert classify(name).type == DocumentType.UNKNOWN

    def test_isa_plural(self):
        assert classify("Vanguard ISAs 2024.pdf").type == DocumentType.ISA_STATEMENT

    def test_content_match_is_penalised(self):
        result = classify("scan_0001.pdf", content="Your monthly PAY SLIP for March")

        assert result.type == DocumentType.PAYSLIP
        assert result.confidence == 0.75
        assert result.matched_on == "content"

    def test_filename_wins_over_content(self):
        result = classify("statement.pdf", content="payslip")
        assert result.type == DocumentType.CURRENT_ACCOUNT_STATEMENT

    def test_below_threshold_is_not_accepted(self):
        result = DocumentClassifier(threshold=0.7).classify("statement.pdf")

        assert result.type == DocumentType.CURRENT_ACCOUNT_STATEMENT
        assert not result.accepted

    def test_no_name_and_no_content(self):
        assert classify(None).type == DocumentType.UNKNOWN


class TestGuesses:
    def test_payslip_carries_employer_guess(self):
        assert classify("Acme_Payslip_2024-03.pdf").employer_name == "Acme"

    def test_employer_guess_skips_keywords_and_dates(self):
        assert guess_employer("Payslip_March.pdf") is None
        assert guess_employer("2024-03 Globex Corp payslip.pdf") == "Globex Corp"

    def test_statement_carries_institution_guess(self):
        result = classify("MONZO-statement-march.pdf")

        assert result.institution_name == "Monzo"
        assert result.employer_name is None

    def test_institution_alias_from_first_word(self):
        assert guess_institution("Monzo Joint statement.pdf") == "Monzo"

    def test_no_institution_words(self):
        assert guess_institution("statement_2024.pdf") is None
