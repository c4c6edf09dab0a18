"""Tests for institution canonicalisation, the array-update planner and account upserts."""

import pytest

from vault_worker.accounts import (
    UpdateConflictError,
    UpdateMode,
    build_update,
    canonicalise_employer,
    canonicalise_institution,
    ensure_single_operator,
    summarize_for_logging,
)
from vault_worker.services.accounts import UNKNOWN_ACCOUNT_MASK, AccountService, merge_updates


class TestCanonicaliseInstitution:
    @pytest.mark.parametrize(
        "raw,canonical",
        [
            ("MONZO BANK LTD", "Monzo"),
            ("Monzo Bank Ltd.", "Monzo"),
            ("  halifax  plc ", "Halifax"),
            ("The Vanguard Group", "Vanguard"),
            ("Barclays Bank UK PLC", "Barclays"),
            ("HSBC", "HSBC"),
        ],
    )
    def test_known_aliases(self, raw, canonical):
        assert canonicalise_institution(raw).canonical == canonical

    def test_raw_spelling_is_kept_trimmed(self):
        name = canonicalise_institution("  MONZO   BANK LTD ")
        assert name.raw == "MONZO BANK LTD"

    def test_unknown_name_is_its_own_canonical(self):
        name = canonicalise_institution("Chase UK")
        assert (name.canonical, name.raw) == ("Chase UK", "Chase UK")

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty(self, raw):
        name = canonicalise_institution(raw)
        assert (name.canonical, name.raw) == (None, None)

    def test_employer(self):
        assert canonicalise_employer("  Acme   Ltd ") == "Acme Ltd"
        assert canonicalise_employer(" ") is None


class TestBuildUpdate:
    """Tests for replace / append_unique / element_update plans."""

    def test_replace_with_different_set(self):
        plan = build_update(UpdateMode.REPLACE, ["A"], ["B", "B", " C "])

        assert plan.update == {"$set": {"raw_institution_names": ["B", "C"]}}
        assert plan.applied
        assert plan.summary.additions_count == 2
        assert plan.resulting == ["B", "C"]

    def test_replace_with_same_set_is_noop(self):
        plan = build_update("replace", ["A", "B"], ["B", "A"])

        assert plan.update == {}
        assert not plan.applied
        assert plan.summary.noop

    def test_append_unique_adds_only_new_values(self):
        plan = build_update(UpdateMode.APPEND_UNIQUE, ["A"], ["A", "B", None, ""])

        assert plan.update == {"$addToSet": {"raw_institution_names": {"$each": ["B"]}}}
        assert plan.resulting == ["A", "B"]
        assert plan.summary.resulting_length == 2

    def test_append_unique_single_string_input(self):
        plan = build_update(UpdateMode.APPEND_UNIQUE, [], "Monzo")
        assert plan.resulting == ["Monzo"]

    def test_append_unique_nothing_new_is_noop(self):
        assert not build_update(UpdateMode.APPEND_UNIQUE, ["A"], ["A"]).applied

    def test_element_update_uses_positional_filter(self):
        plan = build_update(UpdateMode.ELEMENT_UPDATE, ["A", "B"], "C", match_value="A")

        assert plan.update == {"$set": {"raw_institution_names.$[elem]": "C"}}
        assert plan.array_filters == [{"elem": {"$eq": "A"}}]
        assert plan.resulting == ["C", "B"]

    def test_element_update_requires_match_value(self):
        with pytest.raises(ValueError):
            build_update(UpdateMode.ELEMENT_UPDATE, ["A"], "B")

    def test_element_update_never_creates_duplicates(self):
        assert not build_update(UpdateMode.ELEMENT_UPDATE, ["A", "B"], "B", match_value="A").applied

    def test_element_update_missing_match_is_noop(self):
        assert not build_update(UpdateMode.ELEMENT_UPDATE, ["A"], "B", match_value="Z").applied

    def test_summary_samples_at_most_five(self):
        plan = build_update(UpdateMode.APPEND_UNIQUE, [], [f"name-{i}" for i in range(12)])
        logged = summarize_for_logging(plan.summary)

        assert logged["additions_count"] == 12
        assert len(logged["additions_sample"]) == 5


class TestEnsureSingleOperator:
    def test_distinct_paths_pass(self):
        ensure_single_operator({"$set": {"a": 1}, "$addToSet": {"b": 2}})

    def test_same_path_two_operators(self):
        with pytest.raises(UpdateConflictError):
            ensure_single_operator({"$set": {"names": []}, "$addToSet": {"names": "x"}})

    def test_parent_and_child_paths_conflict(self):
        with pytest.raises(UpdateConflictError):
            ensure_single_operator({"$set": {"a": {}}, "$setOnInsert": {"a.b": 1}})

    def test_positional_path_conflicts_with_array(self):
        with pytest.raises(UpdateConflictError):
            ensure_single_operator(
                {"$set": {"names.$[elem]": "x"}, "$addToSet": {"names": {"$each": ["y"]}}}
            )

    def test_merge_updates_combines_operators(self):
        merged = merge_updates({"$set": {"a": 1}}, {"$set": {"b": 2}, "$addToSet": {"c": 3}})
        assert merged == {"$set": {"a": 1, "b": 2}, "$addToSet": {"c": 3}}


class TestApplyAccountUpdate:
    """Tests for the store's operator interpreter."""

    IDENTITY = ("user-1", "Monzo", "Current", "••••5678")

    def test_set_on_insert_only_applies_on_insert(self, store):
        store.apply_account_update(
            *self.IDENTITY,
            update={"$set": {"last_seen_at": "t1"}, "$setOnInsert": {"first_seen_at": "t1"}},
        )
        account = store.apply_account_update(
            *self.IDENTITY,
            update={"$set": {"last_seen_at": "t2"}, "$setOnInsert": {"first_seen_at": "t2"}},
        )

        assert account.first_seen_at == "t1"
        assert account.last_seen_at == "t2"

    def test_add_to_set_each(self, store):
        store.apply_account_update(*self.IDENTITY, update={"$set": {"raw_institution_names": ["A"]}})
        account = store.apply_account_update(
            *self.IDENTITY,
            update={"$addToSet": {"raw_institution_names": {"$each": ["A", "B"]}}},
        )
        assert account.raw_institution_names == ["A", "B"]

    def test_positional_update(self, store):
        store.apply_account_update(
            *self.IDENTITY, update={"$set": {"raw_institution_names": ["A", "B"]}}
        )
        plan = build_update(UpdateMode.ELEMENT_UPDATE, ["A", "B"], "C", match_value="B")

        account = store.apply_account_update(
            *self.IDENTITY, update=plan.update, array_filters=plan.array_filters
        )
        assert account.raw_institution_names == ["A", "C"]

    def test_conflicting_update_writes_nothing(self, store):
        with pytest.raises(UpdateConflictError):
            store.apply_account_update(
                *self.IDENTITY,
                update={
                    "$set": {"raw_institution_names": ["A"]},
                    "$addToSet": {"raw_institution_names": "B"},
                },
            )
        assert store.get_account(*self.IDENTITY) is None

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValueError):
            store.apply_account_update(*self.IDENTITY, update={"$set": {"balance": 10}})


class TestAccountService:
    """Tests for statement account upserts."""

    def ensure(self, service, raw_name, last_update_key=None, last4="5678"):
        return service.ensure_account(
            job_id="doc-1",
            file_id="file-1",
            user_id="user-1",
            catalogue_key="current_account_statement",
            institution_name=raw_name,
            account_last4=last4,
            last_update_key=last_update_key,
        )

    def test_creates_account_with_display_name(self, store):
        result = self.ensure(AccountService(store), "MONZO BANK LTD")

        account = result.account
        assert not result.skipped
        assert account.institution_name == "Monzo"
        assert account.account_type == "Current"
        assert account.account_number_masked == "••••5678"
        assert account.display_name == "Monzo - Current (••••5678)"
        assert account.raw_institution_names == ["MONZO BANK LTD"]
        assert account.last_update_key == result.idempotency_key
        assert result.idempotency_key.startswith("doc-1:file-1:")

    def test_new_spelling_is_appended_to_same_account(self, store):
        service = AccountService(store)
        self.ensure(service, "MONZO BANK LTD")
        result = self.ensure(service, "Monzo")

        assert result.account.raw_institution_names == ["MONZO BANK LTD", "Monzo"]
        assert len(store.list_accounts("user-1")) == 1

    def test_replaying_same_update_is_skipped(self, store):
        service = AccountService(store)
        first = self.ensure(service, "MONZO BANK LTD")
        second = self.ensure(service, "MONZO BANK LTD", last_update_key=first.idempotency_key)
        third = self.ensure(service, "MONZO BANK LTD", last_update_key=second.idempotency_key)

        assert third.skipped
        assert third.account.raw_institution_names == ["MONZO BANK LTD"]

    def test_missing_account_number_uses_placeholder_mask(self, store):
        result = self.ensure(AccountService(store), "Halifax", last4=None)
        assert result.account.account_number_masked == UNKNOWN_ACCOUNT_MASK

    def test_no_institution_is_skipped(self, store):
        result = self.ensure(AccountService(store), None)

        assert result.skipped
        assert result.account is None
        assert store.list_accounts("user-1") == []
