"""Tests for the realm model and capability table."""
import pytest

from add_core.errors import InvalidRealmLabel, InvalidRealmValue
from add_core.realms import (
    Capability,
    Realm,
    capabilities,
    coerce_realm,
    has_capability,
    label_from_realm,
    realm_from_label,
    required_realm,
)


class TestRealmLabels:
    """Test label ↔ realm mapping."""

    def test_label_round_trip(self):
        """Every realm survives a label round trip."""
        for realm in Realm:
            assert realm_from_label(label_from_realm(realm)) == realm

    def test_labels_map_to_numeric_ids(self):
        assert realm_from_label("assess") == 1
        assert realm_from_label("decide") == 2
        assert realm_from_label("do") == 3

    def test_labels_are_case_insensitive(self):
        assert realm_from_label("Decide") == Realm.DECIDE
        assert realm_from_label("  DO ") == Realm.DO

    @pytest.mark.parametrize("label", ["", "done", "assessment", "1", None])
    def test_unknown_label_rejected(self, label):
        with pytest.raises(InvalidRealmLabel):
            realm_from_label(label)

    @pytest.mark.parametrize("value", [0, 4, -1, True, "2", 2.0])
    def test_out_of_range_value_rejected(self, value):
        with pytest.raises(InvalidRealmValue):
            label_from_realm(value)

    def test_coerce_accepts_ids_labels_and_digit_strings(self):
        assert coerce_realm(Realm.DO) == Realm.DO
        assert coerce_realm(2) == Realm.DECIDE
        assert coerce_realm("3") == Realm.DO
        assert coerce_realm("assess") == Realm.ASSESS

    def test_coerce_rejects_out_of_range_digit_string(self):
        with pytest.raises(InvalidRealmValue):
            coerce_realm("7")


class TestCapabilities:
    """Test the static capability table."""

    def test_assess_only_edits_content(self):
        assert capabilities(Realm.ASSESS) == {Capability.EDIT_CONTENT}

    def test_decide_assigns_context_and_dates(self):
        assert capabilities(Realm.DECIDE) == {Capability.ASSIGN_CONTEXT, Capability.ASSIGN_DATES}

    def test_do_only_completes(self):
        assert capabilities(Realm.DO) == {Capability.COMPLETE}

    def test_each_capability_granted_by_exactly_one_realm(self):
        for capability in Capability:
            granting = [realm for realm in Realm if has_capability(realm, capability)]
            assert granting == [required_realm(capability)]

    def test_capabilities_reject_unknown_realm(self):
        with pytest.raises(InvalidRealmValue):
            capabilities(5)
