"""Derived queries over the store.

Classifications of Decide and Do items (undecided, stalled, ready, due today,
due tomorrow, due soon, overdue) plus plain listings. Every classification is
an async generator: calling it again re-reads the store, so results always
reflect the current snapshot. Nothing here writes.
"""
import logging
from datetime import datetime, time, timedelta
from typing import AsyncIterator, Callable, Iterable, Optional, Union

from .realms import Realm, coerce_realm
from .repository import ItemRepository
from .schemas import ITEM_TYPES, ItemBase, RecordType, ensure_aware, utcnow
from .state_machine import REALM_SORT_ORDER

logger = logging.getLogger("add-core.queries")

# Due-soon window, relative to now
SOON_START = timedelta(days=2)
SOON_END = timedelta(days=7)

# Projects carry no priority; they sort with the default task priority
DEFAULT_PRIORITY = 3


# ============================================================================
# Predicates
# ============================================================================

def is_undecided(item: ItemBase) -> bool:
    """Decide item still missing its context or its due date."""
    return item.realm == Realm.DECIDE and (not item.context_id or item.end_date is None)


def is_stalled(item: ItemBase, now: Optional[datetime] = None) -> bool:
    """Decide item whose due date has passed."""
    now = now or utcnow()
    return item.realm == Realm.DECIDE and item.end_date is not None and item.end_date < now


def is_ready(item: ItemBase, now: Optional[datetime] = None) -> bool:
    """Decide item with a context and a due date still ahead."""
    now = now or utcnow()
    return (
        item.realm == Realm.DECIDE
        and bool(item.context_id)
        and item.end_date is not None
        and item.end_date > now
    )


def local_day_bounds(now: datetime, offset_days: int = 0) -> tuple[datetime, datetime]:
    """
    First and last instant of a calendar day in the server's local time zone.

    Args:
        now: Reference instant
        offset_days: 0 for the day containing now, 1 for the next day

    Returns:
        (00:00:00.000, 23:59:59.999) of that day, both aware
    """
    local = ensure_aware(now).astimezone()
    # Midnights are localized separately; their UTC offsets differ on DST change days
    day = local.date() + timedelta(days=offset_days)
    start = datetime.combine(day, time.min).astimezone()
    end = datetime.combine(day + timedelta(days=1), time.min).astimezone() - timedelta(milliseconds=1)
    return start, end


def _dedupe(items: Iterable[ItemBase]) -> list[ItemBase]:
    seen = set()
    unique = []
    for item in items:
        if item.id not in seen:
            seen.add(item.id)
            unique.append(item)
    return unique


class ItemQueries:
    """Read-only classification engine over an ItemRepository."""

    def __init__(self, repository: ItemRepository, clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return ensure_aware(self._clock())

    async def _by_end_date(
        self,
        realm: Realm,
        lower: Optional[datetime] = None,
        upper: Optional[datetime] = None,
    ) -> list[ItemBase]:
        items = []
        for item_type in ITEM_TYPES:
            items.extend(await self.repository.query_by_date_range(item_type, realm, "end_date", lower, upper))
        return sorted(items, key=lambda item: item.end_date)

    # ========================================================================
    # Decide classifications
    # ========================================================================

    async def undecided_in_decide(self) -> AsyncIterator[ItemBase]:
        """Decide items lacking a context or a due date (each yielded once)."""
        candidates = []
        for item_type in ITEM_TYPES:
            candidates.extend(await self.repository.query_by_realm(item_type, Realm.DECIDE))
        without_context = [item for item in candidates if not item.context_id]
        without_due_date = [item for item in candidates if item.end_date is None]
        items = _dedupe([*without_context, *without_due_date])
        logger.debug(f"Found {len(items)} undecided items in Decide")
        for item in items:
            yield item

    async def stalled_in_decide(self) -> AsyncIterator[ItemBase]:
        """Decide items whose due date is already behind us, oldest first."""
        now = self.now()
        items = [item for item in await self._by_end_date(Realm.DECIDE, upper=now) if item.end_date < now]
        logger.debug(f"Found {len(items)} stalled items in Decide")
        for item in items:
            yield item

    async def ready_in_decide(self) -> AsyncIterator[ItemBase]:
        """Decide items that can move to Do: context set and due date ahead."""
        now = self.now()
        items = [
            item for item in await self._by_end_date(Realm.DECIDE, lower=now)
            if item.end_date > now and item.context_id
        ]
        logger.debug(f"Found {len(items)} ready items in Decide")
        for item in items:
            yield item

    # ========================================================================
    # Do classifications
    # ========================================================================

    async def due_today_in_do(self) -> AsyncIterator[ItemBase]:
        """Do items due today (local calendar day), by priority then due date."""
        start, end = local_day_bounds(self.now())
        items = await self._by_end_date(Realm.DO, start, end)
        items.sort(key=lambda item: (getattr(item, "priority", DEFAULT_PRIORITY), item.end_date))
        for item in items:
            yield item

    async def due_tomorrow_in_do(self) -> AsyncIterator[ItemBase]:
        """Do items due tomorrow (local calendar day), by due date."""
        start, end = local_day_bounds(self.now(), offset_days=1)
        for item in await self._by_end_date(Realm.DO, start, end):
            yield item

    async def due_soon_in_do(self) -> AsyncIterator[ItemBase]:
        """Do items due between two and seven days from now."""
        now = self.now()
        for item in await self._by_end_date(Realm.DO, now + SOON_START, now + SOON_END):
            yield item

    async def overdue_in_do(self) -> AsyncIterator[ItemBase]:
        """Do items past their due date, most overdue first."""
        now = self.now()
        for item in await self._by_end_date(Realm.DO, upper=now):
            if item.end_date < now:
                yield item

    # ========================================================================
    # Listings
    # ========================================================================

    async def tasks_by_realm(self, realm: Union[Realm, int, str]) -> list:
        return await self.repository.query_by_realm(RecordType.TASK, coerce_realm(realm))

    async def projects_by_realm(self, realm: Union[Realm, int, str]) -> list:
        return await self.repository.query_by_realm(RecordType.PROJECT, coerce_realm(realm))

    async def tasks_by_context(self, context_id: str) -> list:
        """Tasks in a context across realms: Do first, most recent first within a realm."""
        tasks = await self.repository.query_by_context(context_id)
        return sorted(tasks, key=lambda task: REALM_SORT_ORDER[task.realm])

    async def ideas(self) -> list:
        return await self.repository.list_records(RecordType.IDEA)

    async def collections(self) -> list:
        return await self.repository.list_records(RecordType.COLLECTION)

    async def contexts(self) -> list:
        return await self.repository.list_records(RecordType.CONTEXT)
