"""Repository facade over the backing data store.

The policy engine talks to the store only through ItemRepository. Two
implementations exist:
- InMemoryRepository (this module): tests and local development
- CloudKitRepository (cloudkit module): CloudKit Web Services

Writes are conditional: a record's change_tag must match the stored revision,
otherwise ConcurrentModification is raised.
"""
import abc
import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence
from uuid import uuid4

from .errors import ConcurrentModification
from .realms import Realm
from .schemas import AnyRecord, ITEM_TYPES, RecordType, Task

logger = logging.getLogger("add-core.repository")

# Date fields that may be range-queried
DATE_FIELDS = ("start_date", "end_date", "last_modified")


class ItemRepository(abc.ABC):
    """Abstract data store contract consumed by the guard and query engine.

    All operations may raise BackendUnavailable.
    """

    @abc.abstractmethod
    async def fetch(self, record_type: RecordType, record_id: str) -> Optional[AnyRecord]:
        """Fetch one record by id, or None if it does not exist."""

    async def fetch_item(self, item_type: RecordType, item_id: str):
        """Fetch a Task or Project by id, or None."""
        if item_type not in ITEM_TYPES:
            raise ValueError(f"{item_type} is not a realm-bound item type")
        return await self.fetch(item_type, item_id)

    @abc.abstractmethod
    async def query_by_realm(self, record_type: RecordType, realm: Realm) -> list:
        """Records of a type in a realm, most recently modified first."""

    @abc.abstractmethod
    async def query_by_context(self, context_id: str) -> list[Task]:
        """Tasks assigned to a context."""

    @abc.abstractmethod
    async def query_by_date_range(
        self,
        item_type: RecordType,
        realm: Realm,
        field: str,
        lower: Optional[datetime] = None,
        upper: Optional[datetime] = None,
    ) -> list:
        """Items in a realm whose date field lies within [lower, upper].

        Either bound may be None (open). Items with no value in the field are
        never returned. Sorted ascending by the field.
        """

    @abc.abstractmethod
    async def list_records(self, record_type: RecordType) -> list:
        """All records of a type, most recently modified first."""

    @abc.abstractmethod
    async def save(self, record: AnyRecord) -> AnyRecord:
        """Create or conditionally update a record; returns it with a fresh change_tag."""

    @abc.abstractmethod
    async def save_many(self, records: Sequence[AnyRecord]) -> list:
        """Save several records atomically: either all are written or none."""

    @abc.abstractmethod
    async def delete(self, record_id: str) -> bool:
        """Delete a record; returns False when it did not exist."""

    @abc.abstractmethod
    async def verify_token(self, token: str) -> Optional[str]:
        """Exchange a caller token for the user record name, or None if invalid."""


def _by_modified_desc(records: Iterable) -> list:
    return sorted(records, key=lambda r: r.last_modified, reverse=True)


class InMemoryRepository(ItemRepository):
    """Dictionary-backed store with change tags and atomic batches."""

    def __init__(self, records: Optional[Iterable[AnyRecord]] = None, accepted_tokens: Optional[set[str]] = None):
        self._records: dict[str, AnyRecord] = {}
        self._accepted_tokens = accepted_tokens
        self.writes = 0
        for record in records or []:
            self.seed(record)

    def seed(self, record: AnyRecord) -> AnyRecord:
        """Insert a record unconditionally (test setup)."""
        stored = record.model_copy(update={"change_tag": record.change_tag or uuid4().hex})
        self._records[stored.id] = stored
        return stored

    def _check_tag(self, record: AnyRecord) -> None:
        existing = self._records.get(record.id)
        if existing is None:
            return
        if record.change_tag != existing.change_tag:
            raise ConcurrentModification(record.id, record.change_tag, existing.change_tag)

    def _of_type(self, record_type: RecordType) -> list:
        return [r for r in self._records.values() if r.record_type == record_type]

    async def fetch(self, record_type: RecordType, record_id: str) -> Optional[AnyRecord]:
        record = self._records.get(record_id)
        if record is None or record.record_type != record_type:
            return None
        return record

    async def query_by_realm(self, record_type: RecordType, realm: Realm) -> list:
        return _by_modified_desc(r for r in self._of_type(record_type) if r.realm == realm)

    async def query_by_context(self, context_id: str) -> list[Task]:
        return _by_modified_desc(r for r in self._of_type(RecordType.TASK) if r.context_id == context_id)

    async def query_by_date_range(
        self,
        item_type: RecordType,
        realm: Realm,
        field: str,
        lower: Optional[datetime] = None,
        upper: Optional[datetime] = None,
    ) -> list:
        if field not in DATE_FIELDS:
            raise ValueError(f"Cannot range-query field {field}")
        matches = []
        for record in self._of_type(item_type):
            value = getattr(record, field)
            if record.realm != realm or value is None:
                continue
            if lower is not None and value < lower:
                continue
            if upper is not None and value > upper:
                continue
            matches.append(record)
        return sorted(matches, key=lambda r: getattr(r, field))

    async def list_records(self, record_type: RecordType) -> list:
        return _by_modified_desc(self._of_type(record_type))

    async def save(self, record: AnyRecord) -> AnyRecord:
        self._check_tag(record)
        stored = record.model_copy(update={"change_tag": uuid4().hex})
        self._records[stored.id] = stored
        self.writes += 1
        logger.debug(f"Saved {stored.record_type.value} {stored.id}")
        return stored

    async def save_many(self, records: Sequence[AnyRecord]) -> list:
        """Save all records or none; a batch may name each record once."""
        ids = [record.id for record in records]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Batch names the same record more than once: {ids}")
        for record in records:
            self._check_tag(record)
        stored = [record.model_copy(update={"change_tag": uuid4().hex}) for record in records]
        self._records.update((record.id, record) for record in stored)
        self.writes += len(stored)
        logger.debug(f"Saved {len(stored)} records in one batch")
        return stored

    async def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    async def verify_token(self, token: str) -> Optional[str]:
        if not token:
            return None
        if self._accepted_tokens is not None and token not in self._accepted_tokens:
            return None
        return f"local_{token[:8]}"
