"""Pydantic schemas for ADD records.

Backend payloads are decoded into these types once, at the repository
boundary. The policy engine only ever sees typed values.
"""
import enum
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidArgument
from .realms import Realm


def utcnow() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Attach the server's local time zone to naive datetimes."""
    if value is not None and value.tzinfo is None:
        return value.astimezone()
    return value


def parse_timestamp(value: Union[str, datetime], field: str = "date") -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware datetime.

    A trailing "Z" is accepted; values without an offset are taken as server
    local time.

    Raises:
        InvalidArgument: If the value is not a valid ISO-8601 timestamp
    """
    if isinstance(value, datetime):
        return ensure_aware(value)
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{field} must be an ISO-8601 date-time string")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise InvalidArgument(f"Invalid {field}: {value!r} is not an ISO-8601 date-time") from None
    return ensure_aware(parsed)


class RecordType(str, enum.Enum):
    """Record types held by the backing store."""

    TASK = "Task"
    PROJECT = "Project"
    IDEA = "Idea"
    CONTEXT = "Context"
    COLLECTION = "Collection"


# Task and Project are the two record types subject to realm transitions
ITEM_TYPES = (RecordType.TASK, RecordType.PROJECT)

RECORD_NAME_PREFIXES: dict[RecordType, str] = {
    RecordType.TASK: "task",
    RecordType.PROJECT: "project",
    RecordType.IDEA: "idea",
    RecordType.CONTEXT: "context",
    RecordType.COLLECTION: "collection",
}


def new_record_name(record_type: RecordType) -> str:
    """Generate a record name such as ``task_3f2a...``."""
    return f"{RECORD_NAME_PREFIXES[record_type]}_{uuid4().hex}"


class ParentType(str, enum.Enum):
    """Kind of record an item hangs under."""

    PROJECT = "Project"
    IDEA = "Idea"
    COLLECTION = "Collection"


class Record(BaseModel):
    """Fields shared by every stored record."""

    id: str = Field(..., min_length=1, description="Record name in the backing store")
    last_modified: datetime = Field(default_factory=utcnow)
    change_tag: Optional[str] = Field(None, description="Opaque revision tag owned by the store")

    model_config = ConfigDict(extra="ignore")

    @field_validator("last_modified", mode="after")
    @classmethod
    def _aware_last_modified(cls, value: datetime) -> datetime:
        return ensure_aware(value)


class ItemBase(Record):
    """Fields shared by tasks and projects."""

    name: str = Field(..., min_length=1)
    realm: Realm = Realm.ASSESS
    context_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None  # Due date in Decide/Do, completion time once done
    parent_id: Optional[str] = None
    parent_type: Optional[ParentType] = None
    collection_id: Optional[str] = None

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def _aware_dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(value)

    @property
    def record_type(self) -> RecordType:
        return RecordType(self.item_type)


class Task(ItemBase):
    """A single actionable item."""

    item_type: Literal["Task"] = "Task"
    name: str = Field(..., min_length=1, max_length=1000)
    priority: int = Field(3, ge=1, le=5)
    alert: Optional[str] = Field(None, max_length=100, description="ISO-8601 alert trigger")
    order_in_parent: Optional[int] = None
    project_id: Optional[str] = None
    idea_id: Optional[str] = None


class Project(ItemBase):
    """A group of tasks moving through the realms together."""

    item_type: Literal["Project"] = "Project"
    name: str = Field(..., min_length=1, max_length=1500)
    task_ids: list[str] = Field(default_factory=list)


# Tagged variant over the two realm-bound record types
Item = Annotated[Union[Task, Project], Field(discriminator="item_type")]


class Idea(Record):
    """A captured idea; always lives in Assess and spawns tasks."""

    name: str = Field(..., min_length=1, max_length=1500)
    realm: Realm = Realm.ASSESS
    collection_id: Optional[str] = None
    task_ids: list[str] = Field(default_factory=list)

    @property
    def record_type(self) -> RecordType:
        return RecordType.IDEA


class Context(Record):
    """A short label used to categorize tasks and projects."""

    name: str = Field(..., min_length=1, max_length=30)

    @property
    def record_type(self) -> RecordType:
        return RecordType.CONTEXT


class Collection(Record):
    """An archival container for tasks, projects and ideas."""

    name: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def record_type(self) -> RecordType:
        return RecordType.COLLECTION


AnyRecord = Union[Task, Project, Idea, Context, Collection]


class TransitionDecision(BaseModel):
    """Outcome of a realm transition check."""

    allowed: bool
    reason: str
    current_realm: Realm
    target_realm: Realm
    clears_schedule: bool = Field(
        False, description="True when applying the move clears context and end timestamp"
    )
    advisory: bool = Field(False, description="True when preconditions were deliberately not checked")

    model_config = ConfigDict(frozen=True)


class UserSession(BaseModel):
    """An authenticated caller session."""

    session_id: str
    user_record_name: str
    web_auth_token: str = Field(..., repr=False)
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at
