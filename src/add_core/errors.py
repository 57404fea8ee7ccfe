"""Error taxonomy for the ADD policy engine.

Every fault raised by the core derives from AddError and carries the MCP
error code it surfaces as at the tool boundary. The core never recovers from
these by guessing caller intent; it refuses and reports.
"""
from typing import Optional

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST


class AddError(Exception):
    """Base class for all policy engine faults."""

    code: int = INTERNAL_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRealmLabel(AddError):
    """Raised when a realm label is not one of assess, decide, do."""

    code = INVALID_PARAMS

    def __init__(self, label):
        super().__init__(f"Invalid realm label: {label!r}. Expected one of: assess, decide, do.")
        self.label = label


class InvalidRealmValue(AddError):
    """Raised when a realm id is not one of 1, 2, 3."""

    code = INVALID_PARAMS

    def __init__(self, value):
        super().__init__(f"Invalid realm value: {value!r}. Expected one of: 1 (assess), 2 (decide), 3 (do).")
        self.value = value


class ItemNotFound(AddError):
    """Raised when a referenced record does not exist in the store."""

    code = INVALID_PARAMS

    def __init__(self, record_type: str, record_id: str):
        super().__init__(f"{record_type} {record_id} not found")
        self.record_type = record_type
        self.record_id = record_id


class RealmViolation(AddError):
    """Raised when a mutation is not permitted in the item's current realm."""

    code = INVALID_PARAMS

    def __init__(self, message: str, required_realm=None, current_realm=None):
        super().__init__(message)
        self.required_realm = required_realm
        self.current_realm = current_realm


class InvalidDueDate(AddError):
    """Raised when a due date is not in the future or an interval is inverted."""

    code = INVALID_PARAMS


class InvalidArgument(AddError):
    """Raised for malformed tool arguments (missing, empty, out of range)."""

    code = INVALID_PARAMS


class ConcurrentModification(AddError):
    """Raised when a conditional write finds a newer revision in the store.

    Callers may retry after refetching the record.
    """

    code = INTERNAL_ERROR

    def __init__(self, record_id: str, expected_tag: Optional[str] = None, actual_tag: Optional[str] = None):
        super().__init__(
            f"Record {record_id} was modified concurrently "
            f"(expected revision {expected_tag}, found {actual_tag}). Refetch and retry."
        )
        self.record_id = record_id
        self.expected_tag = expected_tag
        self.actual_tag = actual_tag


class BackendUnavailable(AddError):
    """Raised when the backing store cannot be reached or answers with a server fault."""

    code = INTERNAL_ERROR


class AuthenticationError(AddError):
    """Raised when a request is not authenticated or the session has expired."""

    code = INVALID_REQUEST
