"""State machine validation for ADD realm transitions.

Decides whether a task or project may move from its current realm to a
requested realm, and explains why:
- Items progress Assess → Decide → Do by default
- Assess → Do is a permitted shortcut, reported with an advisory reason
- Decide → Do requires a context and a due date that has not passed
- Moving back to Assess clears context and due date for fresh evaluation
- Do → Decide keeps context and due date (rescheduling)
"""
import logging
from datetime import datetime
from typing import Optional, Union

from .realms import Realm, to_realm
from .schemas import ItemBase, TransitionDecision, utcnow

logger = logging.getLogger("add-core.state_machine")


# Realm transition matrix
# Maps current realm → realms it may move to (Decide → Do is further gated)
TRANSITION_MATRIX: dict[Realm, list[Realm]] = {
    Realm.ASSESS: [
        Realm.DECIDE,   # Forward: natural progression
        Realm.DO,       # Skip: simple, fully defined items
    ],
    Realm.DECIDE: [
        Realm.DO,       # Forward: needs context + non-past due date
        Realm.ASSESS,   # Back: re-evaluate from a blank slate
    ],
    Realm.DO: [
        Realm.ASSESS,   # Back: major re-evaluation
        Realm.DECIDE,   # Back: rescheduling or context change
    ],
}

# Moves that clear context and end timestamp when applied
SCHEDULE_CLEARING_MOVES: frozenset[tuple[Realm, Realm]] = frozenset({
    (Realm.DECIDE, Realm.ASSESS),
    (Realm.DO, Realm.ASSESS),
})


def _kind(item: ItemBase) -> str:
    return getattr(item, "item_type", type(item).__name__)


def missing_do_preconditions(item: ItemBase, now: Optional[datetime] = None) -> list[str]:
    """
    List the Decide → Do preconditions an item fails.

    Args:
        item: Item snapshot
        now: Evaluation instant (defaults to current time)

    Returns:
        Human-readable failures, empty when the item is ready for Do
    """
    now = now or utcnow()
    failures = []
    if not item.context_id:
        failures.append("missing context")
    if item.end_date is None:
        failures.append("missing due date")
    elif item.end_date < now:
        failures.append(f"past due date ({item.end_date.date().isoformat()})")
    return failures


def validate_transition(
    item: ItemBase,
    target_realm: Union[Realm, int],
    now: Optional[datetime] = None
) -> TransitionDecision:
    """
    Decide whether an item may move to a target realm.

    A refused transition is a normal result (allowed=False), not a fault.

    Args:
        item: Current item snapshot
        target_realm: Requested realm
        now: Evaluation instant (defaults to current time)

    Returns:
        TransitionDecision with allowed flag and reason

    Raises:
        InvalidRealmValue: If target_realm is outside the realm enum
    """
    target = to_realm(target_realm)
    current = to_realm(item.realm)
    kind = _kind(item)

    def decide(allowed: bool, reason: str, advisory: bool = False) -> TransitionDecision:
        decision = TransitionDecision(
            allowed=allowed,
            reason=reason,
            current_realm=current,
            target_realm=target,
            clears_schedule=allowed and (current, target) in SCHEDULE_CLEARING_MOVES,
            advisory=advisory,
        )
        if allowed:
            logger.debug(f"Valid realm transition for {item.id}: {current.label} → {target.label}")
        else:
            logger.warning(f"Blocked realm transition for {item.id}: {reason}")
        return decision

    if current == target:
        return decide(False, f"{kind} is already in {current.title} realm")

    if current == Realm.ASSESS:
        if target == Realm.DECIDE:
            return decide(True, "Valid progression from Assess to Decide realm")
        return decide(
            True,
            f"{kind} moved directly from Assess to Do (skipping Decide) - "
            f"context and due date were not checked, ensure they are set",
            advisory=True,
        )

    if current == Realm.DECIDE:
        if target == Realm.DO:
            failures = missing_do_preconditions(item, now)
            if failures:
                return decide(
                    False,
                    f"{kind} cannot move to Do realm: {', '.join(failures)}. "
                    f"Assign a context and a future due date in Decide, or move it back to Assess.",
                )
            return decide(True, f"{kind} ready for Do realm - context and future due date set")
        return decide(
            True,
            f"{kind} moved back to Assess realm for re-evaluation - context and due date will be cleared",
        )

    # current == Realm.DO
    if target == Realm.ASSESS:
        return decide(
            True,
            f"{kind} moved back to Assess realm - context and due date will be cleared for fresh evaluation",
        )
    return decide(True, f"{kind} moved back to Decide realm for rescheduling or context adjustment")


def apply_transition(item: ItemBase, decision: TransitionDecision, now: Optional[datetime] = None):
    """
    Produce the item snapshot after an approved transition.

    Args:
        item: Snapshot the decision was made on
        decision: Approved decision from validate_transition
        now: Modification instant

    Returns:
        New item with realm changed and schedule cleared when required

    Raises:
        ValueError: If the decision was not approved
    """
    if not decision.allowed:
        raise ValueError(f"Cannot apply refused transition: {decision.reason}")

    update = {"realm": decision.target_realm, "last_modified": now or utcnow()}
    if decision.clears_schedule:
        update["context_id"] = None
        update["end_date"] = None
    return item.model_copy(update=update)


def get_allowed_transitions(current_realm: Union[Realm, int]) -> list[Realm]:
    """
    Get the realms reachable from a realm, ignoring item preconditions.

    Returns:
        Target realms (excluding the current realm)
    """
    return list(TRANSITION_MATRIX[to_realm(current_realm)])


# Realm sort order for list views
# Lower number = shown first: work in progress before backlog
REALM_SORT_ORDER: dict[Realm, int] = {
    Realm.DO: 1,
    Realm.DECIDE: 2,
    Realm.ASSESS: 3,
}
