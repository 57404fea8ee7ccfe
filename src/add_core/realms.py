"""Realm model for the ADD (Assess-Decide-Do) workflow.

Every task and project lives in exactly one realm. The realm decides which
fields may be changed:

- Assess (1): create and edit content (names, priority, membership)
- Decide (2): assign contexts, due dates, intervals and alerts
- Do (3): mark complete (sets the end timestamp)
"""
import enum
import logging
from typing import Union

from .errors import InvalidRealmLabel, InvalidRealmValue

logger = logging.getLogger("add-core.realms")


class Realm(enum.IntEnum):
    """Ordered lifecycle stage of an item."""

    ASSESS = 1
    DECIDE = 2
    DO = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @property
    def title(self) -> str:
        return self.name.capitalize()


class Capability(str, enum.Enum):
    """Field-level operation families gated by realm."""

    EDIT_CONTENT = "edit_content"      # names, priority, task membership
    ASSIGN_CONTEXT = "assign_context"
    ASSIGN_DATES = "assign_dates"      # due dates, intervals, alerts
    COMPLETE = "complete"              # mark done (sets end timestamp)


# Static capability table
REALM_CAPABILITIES: dict[Realm, frozenset[Capability]] = {
    Realm.ASSESS: frozenset({Capability.EDIT_CONTENT}),
    Realm.DECIDE: frozenset({Capability.ASSIGN_CONTEXT, Capability.ASSIGN_DATES}),
    Realm.DO: frozenset({Capability.COMPLETE}),
}

_LABELS: dict[str, Realm] = {realm.label: realm for realm in Realm}


def realm_from_label(label: str) -> Realm:
    """
    Map a realm label to its realm.

    Args:
        label: One of "assess", "decide", "do" (case-insensitive)

    Returns:
        The matching Realm

    Raises:
        InvalidRealmLabel: If the label is not a known realm
    """
    if not isinstance(label, str):
        raise InvalidRealmLabel(label)
    realm = _LABELS.get(label.strip().lower())
    if realm is None:
        raise InvalidRealmLabel(label)
    return realm


def label_from_realm(value: Union[Realm, int]) -> str:
    """
    Map a realm id (1, 2 or 3) to its label.

    Raises:
        InvalidRealmValue: If the value is not a known realm id
    """
    return to_realm(value).label


def to_realm(value: Union[Realm, int]) -> Realm:
    """Convert a realm id to a Realm, rejecting anything outside 1..3."""
    # bool is an int subclass; True must not pass as Assess
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRealmValue(value)
    try:
        return Realm(value)
    except ValueError:
        raise InvalidRealmValue(value) from None


def coerce_realm(value: Union[Realm, int, str]) -> Realm:
    """Accept a Realm, a realm id, or a realm label."""
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return to_realm(int(stripped))
        return realm_from_label(stripped)
    return to_realm(value)


def capabilities(realm: Union[Realm, int]) -> frozenset[Capability]:
    """Get the capability set of a realm."""
    return REALM_CAPABILITIES[to_realm(realm)]


def has_capability(realm: Union[Realm, int], capability: Capability) -> bool:
    """Check if a realm grants a capability."""
    return capability in capabilities(realm)


def required_realm(capability: Capability) -> Realm:
    """Get the realm that grants a capability (each capability belongs to exactly one realm)."""
    for realm, granted in REALM_CAPABILITIES.items():
        if capability in granted:
            return realm
    raise ValueError(f"No realm grants capability {capability.value}")
