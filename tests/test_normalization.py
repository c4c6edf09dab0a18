"""Tests for payload normalization and integrity checks."""

from decimal import Decimal

import pytest

from vault_worker.normalization import (
    PiiConfigurationError,
    PiiHasher,
    categorise,
    detect_document_type,
    merchant_key,
    normalize_hmrc,
    normalize_payslip,
    normalize_statement,
    parse_amount,
    parse_date,
    sanitise_description,
)
from vault_worker.normalization.accessors import accessors, first_present
from vault_worker.normalization.payslip import derive_other_deductions
from vault_worker.schemas.normalized import AmountSource, IntegrityStatus


class TestParseAmount:
    """Tests for money parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("£1,234.56", Decimal("1234.56")),
            ("GBP 12", Decimal("12.00")),
            ("(45.00)", Decimal("-45.00")),
            ("120.00 DR", Decimal("-120.00")),
            ("120.00 CR", Decimal("120.00")),
            (2.005, Decimal("2.01")),
            (7, Decimal("7.00")),
        ],
    )
    def test_parses_common_forms(self, value, expected):
        assert parse_amount(value) == expected

    @pytest.mark.parametrize("value", [None, "", "   ", "n/a", True, {"a": 1}, "NaN"])
    def test_unusable_values_are_none(self, value):
        assert parse_amount(value) is None


class TestParseDate:
    def test_iso_timestamp_keeps_date(self):
        assert parse_date("2024-03-28T10:15:00Z") == "2024-03-28"

    def test_uk_format(self):
        assert parse_date("28/03/2024") == "2024-03-28"

    def test_long_month(self):
        assert parse_date("28 March 2024") == "2024-03-28"

    def test_garbage_is_none(self):
        assert parse_date("someday") is None


class TestAccessors:
    """Tests for ordered alias resolution."""

    def test_first_alias_wins_and_is_reported(self):
        candidates = accessors("totals.gross", "grossPay")
        resolved = first_present({"grossPay": 10, "totals": {"gross": 20}}, candidates, parse_amount)

        assert resolved.value == Decimal("20.00")
        assert resolved.alias == "totals.gross"

    def test_uncoercible_alias_is_skipped(self):
        candidates = accessors("totals.gross", "grossPay")
        resolved = first_present({"grossPay": "1,000", "totals": {"gross": "n/a"}}, candidates, parse_amount)

        assert resolved.value == Decimal("1000.00")
        assert resolved.alias == "grossPay"

    def test_nothing_found(self):
        resolved = first_present({}, accessors("a.b"), parse_amount)
        assert not resolved.found
        assert resolved.alias is None


class TestPayslipNormalization:
    """Net-pay identity: net = gross - (tax + ni + pension + student loan + other)."""

    def test_balanced_payslip_passes(self, sample_payslip, hasher):
        result = normalize_payslip(sample_payslip, hasher)

        assert result.integrity.status == IntegrityStatus.PASS
        assert result.integrity.delta is None
        totals = result.normalized.totals
        assert totals.gross == Decimal("2500.00")
        assert totals.net == Decimal("1900.00")
        assert totals.other_deductions == Decimal("0.00")
        assert totals.expected_net == Decimal("1900.00")

    def test_net_too_high_fails_with_positive_delta(self, sample_payslip, hasher):
        sample_payslip["totals"]["net"] = 2000.00

        result = normalize_payslip(sample_payslip, hasher)

        assert result.integrity.status == IntegrityStatus.FAIL
        assert result.integrity.reason == "net_identity_failed"
        assert result.integrity.delta == Decimal("100.00")
        # Other deductions cannot go negative to absorb the gap
        assert result.normalized.totals.other_deductions == Decimal("0.00")
        assert result.normalized.totals.other_source == AmountSource.COMPUTED

    def test_missing_other_deductions_are_derived(self, sample_payslip, hasher):
        sample_payslip["totals"]["net"] = 1875.00

        result = normalize_payslip(sample_payslip, hasher)

        assert result.integrity.passed
        assert result.normalized.totals.other_deductions == Decimal("25.00")
        assert result.sources["other_deductions"] == "computed"

    def test_tolerance_of_one_penny(self, sample_payslip, hasher):
        sample_payslip["totals"]["otherDeductions"] = 0
        sample_payslip["totals"]["net"] = 1900.01

        result = normalize_payslip(sample_payslip, hasher)

        assert result.integrity.passed
        assert result.normalized.totals.other_source == AmountSource.PROVIDED

    def test_sources_record_winning_alias(self, sample_payslip, hasher):
        result = normalize_payslip(sample_payslip, hasher)

        assert result.sources["gross"] == "totals.gross"
        assert result.sources["pay_date"] == "payDate"
        assert result.sources["employer_name"] == "employer.name"

    def test_ni_number_is_masked_and_hashed(self, sample_payslip, hasher):
        result = normalize_payslip(sample_payslip, hasher)
        payslip = result.normalized

        assert payslip.ni_number_masked == "••••••56C"
        assert result.pii.ni_last3 == "56C"
        assert payslip.ni_hash == hasher.hash("QQ123456C")
        assert "QQ123456C" not in repr(payslip)

    def test_text_fields_are_normalised(self, sample_payslip, hasher):
        payslip = normalize_payslip(sample_payslip, hasher).normalized

        assert payslip.tax_code == "1257L"
        assert payslip.pay_frequency == "monthly"
        assert payslip.document_date == "2024-03-28"

    def test_missing_pepper_is_a_configuration_error(self, sample_payslip):
        with pytest.raises(PiiConfigurationError):
            normalize_payslip(sample_payslip, PiiHasher(""))


class TestDeriveOtherDeductions:
    def test_agreeing_provided_value_is_kept(self):
        value, source = derive_other_deductions(
            Decimal("100.00"), Decimal("20.00"), Decimal("70.00"), Decimal("10.00")
        )
        assert (value, source) == (Decimal("10.00"), AmountSource.PROVIDED)

    def test_disagreeing_provided_value_is_replaced(self):
        value, source = derive_other_deductions(
            Decimal("100.00"), Decimal("20.00"), Decimal("70.00"), Decimal("3.00")
        )
        assert (value, source) == (Decimal("10.00"), AmountSource.COMPUTED)


class TestStatementNormalization:
    """Balance reconciliation: closing = opening + inflow - outflow."""

    def test_reconciling_statement_passes(self, sample_statement, hasher):
        result = normalize_statement(sample_statement, hasher, file_id="file-1")

        assert result.integrity.passed
        statement = result.normalized
        assert statement.inflow_total == Decimal("2000.00")
        assert statement.outflow_total == Decimal("150.00")
        assert statement.expected_closing == Decimal("1850.00")

    def test_closing_mismatch_fails_with_signed_delta(self, sample_statement, hasher):
        sample_statement["balances"]["closing"] = 1000.00

        result = normalize_statement(sample_statement, hasher, file_id="file-1")

        assert result.integrity.status == IntegrityStatus.FAIL
        assert result.integrity.reason == "balance_mismatch"
        assert result.integrity.delta == Decimal("-850.00")

    def test_missing_balance_fails_without_delta(self, sample_statement, hasher):
        del sample_statement["balances"]["opening"]

        result = normalize_statement(sample_statement, hasher)

        assert result.integrity.reason == "balance_mismatch"
        assert result.integrity.delta is None
        assert result.normalized.opening_balance is None

    def test_totals_used_when_no_transactions(self, hasher):
        raw = {
            "openingBalance": "100.00",
            "closingBalance": "150.00",
            "totals": {"moneyIn": "75.00", "moneyOut": "-25.00"},
        }

        result = normalize_statement(raw, hasher)

        assert result.integrity.passed
        assert result.normalized.outflow_total == Decimal("25.00")
        assert result.sources["inflow_total"] == "totals.moneyIn"

    def test_transactions_are_categorised_with_stable_ids(self, sample_statement, hasher):
        first = normalize_statement(sample_statement, hasher, file_id="file-1").normalized
        second = normalize_statement(sample_statement, hasher, file_id="file-1").normalized

        categories = [t.category for t in first.transactions]
        assert categories == ["Income", "Groceries", "Subscriptions", "Refunds"]
        assert [t.id for t in first.transactions] == [t.id for t in second.transactions]
        assert len({t.id for t in first.transactions}) == 4

    def test_learned_categories_apply_to_transactions(self, sample_statement, hasher):
        learned = {merchant_key("Netflix"): "Entertainment"}

        result = normalize_statement(sample_statement, hasher, learned_categories=learned)

        categories = [t.category for t in result.normalized.transactions]
        assert categories == ["Income", "Groceries", "Entertainment", "Refunds"]

    def test_direction_markers_and_debit_credit_columns(self, hasher):
        raw = {
            "openingBalance": 0,
            "closingBalance": -5,
            "transactions": [
                {"description": "Card", "amount": "10.00", "direction": "debit"},
                {"description": "In", "credit": "8.00"},
                {"description": "Out", "debit": "3.00"},
            ],
        }

        transactions = normalize_statement(raw, hasher).normalized.transactions

        assert [t.amount for t in transactions] == [
            Decimal("-10.00"),
            Decimal("8.00"),
            Decimal("-3.00"),
        ]

    def test_account_identifiers_are_masked(self, sample_statement, hasher):
        result = normalize_statement(sample_statement, hasher)
        statement = result.normalized

        assert statement.account_last4 == "5678"
        assert statement.sort_code_masked == "••-••-04"
        assert statement.account_hash == hasher.hash("12345678")
        assert statement.currency == "GBP"
        assert result.pii.to_dict() == {"account_last4": "5678"}


class TestHmrcNormalization:
    def test_figures_carried_and_always_pass(self):
        result = normalize_hmrc({"taxYear": "2023-24", "issuedDate": "2024-05-01", "taxPaid": "4,321.00"})

        assert result.integrity.passed
        assert result.normalized.tax_paid == Decimal("4321.00")
        assert result.normalized.document_date == "2024-05-01"


class TestCategorise:
    def test_upstream_category_wins(self):
        assert categorise("Tesco", "outflow", "Dining") == "EatingOut"

    def test_uncategorised_marker_falls_back_to_rules(self):
        assert categorise("Tesco Extra", "outflow", "Uncategorised") == "Groceries"

    def test_defaults_by_direction(self):
        assert categorise("Something", "inflow") == "Income"
        assert categorise("Something", "outflow") == "Misc"

    def test_transfers(self):
        assert categorise("Transfer to savings pot", "outflow") == "Transfers"

    def test_learned_category_wins(self):
        learned = {merchant_key("TESCO  stores"): "Home"}

        assert categorise("Tesco Stores", "outflow", learned=learned) == "Home"
        assert categorise("Tesco Stores", "outflow", "Dining", learned) == "Home"
        assert categorise("Tesco Extra", "outflow", learned=learned) == "Groceries"

    def test_merchant_key_ignores_case_and_spacing(self):
        assert merchant_key(" Netflix\tCOM ") == merchant_key("netflix com")
        assert merchant_key("   ") is None
        assert merchant_key(None) is None

    def test_description_sample_masks_long_numbers(self):
        assert sanitise_description("CARD 4929123412341234  TESCO") == "CARD ************1234 TESCO"
        assert sanitise_description("Ref 2024") == "Ref 2024"
        assert len(sanitise_description("x" * 300)) == 120


class TestDetectDocumentType:
    def test_payslip_shape(self, sample_payslip):
        assert detect_document_type(sample_payslip) == "payslip"

    def test_statement_shape(self, sample_statement):
        assert detect_document_type(sample_statement) == "bank_statement"

    def test_unknown(self):
        assert detect_document_type({"foo": 1}) == "unknown"
        assert detect_document_type(["not", "a", "dict"]) == "unknown"
