"""Tests for realm transition validation."""
from datetime import timedelta

import pytest

from add_core.errors import InvalidRealmValue
from add_core.queries import is_ready, is_stalled, is_undecided
from add_core.realms import Realm
from add_core.state_machine import (
    REALM_SORT_ORDER,
    TRANSITION_MATRIX,
    apply_transition,
    get_allowed_transitions,
    missing_do_preconditions,
    validate_transition,
)
from conftest import NOW, make_project, make_task


class TestTransitionTable:
    """Test the static transition table."""

    def test_same_realm_never_allowed(self):
        """X → X is refused for every realm and item shape."""
        for realm in Realm:
            item = make_task(realm=realm, context_id="ctx_home", end_date=NOW + timedelta(days=1))
            decision = validate_transition(item, realm, NOW)
            assert not decision.allowed
            assert f"already in {realm.title} realm" in decision.reason

    def test_every_other_realm_reachable(self):
        for realm in Realm:
            assert set(get_allowed_transitions(realm)) == set(Realm) - {realm}
            assert realm not in TRANSITION_MATRIX[realm]

    def test_backward_moves_allowed(self):
        decide_item = make_task(realm=Realm.DECIDE)
        do_item = make_task(realm=Realm.DO, context_id="ctx_home", end_date=NOW)
        assert validate_transition(decide_item, Realm.ASSESS, NOW).allowed
        assert validate_transition(do_item, Realm.ASSESS, NOW).allowed
        assert validate_transition(do_item, Realm.DECIDE, NOW).allowed

    def test_moves_to_assess_clear_schedule(self):
        item = make_task(realm=Realm.DO, context_id="ctx_home", end_date=NOW + timedelta(days=1))
        assert validate_transition(item, Realm.ASSESS, NOW).clears_schedule
        assert validate_transition(item.model_copy(update={"realm": Realm.DECIDE}), Realm.ASSESS, NOW).clears_schedule

    def test_do_to_decide_keeps_schedule(self):
        item = make_task(realm=Realm.DO, context_id="ctx_home", end_date=NOW + timedelta(days=1))
        decision = validate_transition(item, Realm.DECIDE, NOW)
        assert decision.allowed
        assert not decision.clears_schedule

    def test_invalid_target_rejected(self):
        with pytest.raises(InvalidRealmValue):
            validate_transition(make_task(), 4, NOW)

    def test_sort_order_puts_do_first(self):
        assert sorted(Realm, key=REALM_SORT_ORDER.get) == [Realm.DO, Realm.DECIDE, Realm.ASSESS]


class TestDecideToDo:
    """Test the Decide → Do preconditions."""

    def test_ready_item_allowed(self):
        """Decide item with context and future due date may move to Do."""
        item = make_task(realm=Realm.DECIDE, context_id="ctx_home", end_date=NOW + timedelta(hours=1))
        decision = validate_transition(item, Realm.DO, NOW)
        assert decision.allowed
        assert not decision.advisory

    def test_due_exactly_now_is_not_past(self):
        item = make_task(realm=Realm.DECIDE, context_id="ctx_home", end_date=NOW)
        assert missing_do_preconditions(item, NOW) == []
        assert validate_transition(item, Realm.DO, NOW).allowed

    def test_missing_context_named(self):
        item = make_task(realm=Realm.DECIDE, end_date=NOW + timedelta(days=1))
        decision = validate_transition(item, Realm.DO, NOW)
        assert not decision.allowed
        assert "missing context" in decision.reason
        assert "missing due date" not in decision.reason

    def test_missing_due_date_named(self):
        item = make_task(realm=Realm.DECIDE, context_id="ctx_home")
        decision = validate_transition(item, Realm.DO, NOW)
        assert not decision.allowed
        assert "missing due date" in decision.reason
        assert "missing context" not in decision.reason

    def test_projects_follow_the_same_rules(self):
        project = make_project(realm=Realm.DECIDE)
        decision = validate_transition(project, Realm.DO, NOW)
        assert not decision.allowed
        assert decision.reason.startswith("Project cannot move to Do realm")


class TestApplyTransition:
    """Test applying approved decisions."""

    def test_apply_to_assess_clears_context_and_due_date(self):
        item = make_task(realm=Realm.DECIDE, context_id="ctx_home", end_date=NOW + timedelta(days=2))
        decision = validate_transition(item, Realm.ASSESS, NOW)
        moved = apply_transition(item, decision, NOW)
        assert moved.realm == Realm.ASSESS
        assert moved.context_id is None
        assert moved.end_date is None
        assert moved.last_modified == NOW

    def test_apply_does_not_mutate_input(self):
        item = make_task(realm=Realm.DECIDE, context_id="ctx_home", end_date=NOW + timedelta(days=2))
        apply_transition(item, validate_transition(item, Realm.ASSESS, NOW), NOW)
        assert item.realm == Realm.DECIDE
        assert item.context_id == "ctx_home"

    def test_refused_decision_cannot_be_applied(self):
        item = make_task(realm=Realm.DECIDE)
        decision = validate_transition(item, Realm.DO, NOW)
        with pytest.raises(ValueError):
            apply_transition(item, decision, NOW)


class TestWorkedExamples:
    """Classification and transition of typical items."""

    def test_assess_item_skips_to_do_with_advisory(self):
        """Fresh Assess item may jump to Do, flagged as advisory."""
        item = make_task("X")
        decision = validate_transition(item, Realm.DO, NOW)
        assert decision.allowed
        assert decision.advisory
        assert "skipping Decide" in decision.reason

    def test_undecided_item_refused(self):
        """Decide item without context or due date."""
        item = make_task("Y", realm=Realm.DECIDE)
        assert is_undecided(item)
        decision = validate_transition(item, Realm.DO, NOW)
        assert not decision.allowed
        assert "missing context" in decision.reason
        assert "missing due date" in decision.reason

    def test_stalled_item_refused(self):
        """Decide item due yesterday."""
        item = make_task("Z", realm=Realm.DECIDE, context_id="ctx1", end_date=NOW - timedelta(days=1))
        assert is_stalled(item, NOW)
        decision = validate_transition(item, Realm.DO, NOW)
        assert not decision.allowed
        assert "past due date" in decision.reason

    def test_ready_item_allowed(self):
        """Decide item due tomorrow with a context."""
        item = make_task("W", realm=Realm.DECIDE, context_id="ctx1", end_date=NOW + timedelta(days=1))
        assert is_ready(item, NOW)
        assert validate_transition(item, Realm.DO, NOW).allowed
