"""Tests for the in-memory repository facade."""
from datetime import timedelta

import pytest

from add_core.errors import ConcurrentModification
from add_core.realms import Realm
from add_core.repository import InMemoryRepository
from add_core.schemas import RecordType
from conftest import NOW, make_project, make_task


class TestFetch:
    """Test lookups by id."""

    @pytest.mark.asyncio
    async def test_fetch_item(self, repo):
        repo.seed(make_task("task_1"))
        repo.seed(make_project("project_1"))
        assert (await repo.fetch_item(RecordType.TASK, "task_1")).id == "task_1"
        assert (await repo.fetch_item(RecordType.PROJECT, "project_1")).id == "project_1"
        assert await repo.fetch_item(RecordType.PROJECT, "task_1") is None

    @pytest.mark.asyncio
    async def test_fetch_item_rejects_non_items(self, repo):
        with pytest.raises(ValueError):
            await repo.fetch_item(RecordType.CONTEXT, "ctx_home")

    @pytest.mark.asyncio
    async def test_fetch_returns_stored_copy(self, repo):
        task = make_task("task_1")
        stored = repo.seed(task)
        assert stored.change_tag
        assert task.change_tag is None
        assert await repo.fetch(RecordType.TASK, "task_1") == stored


class TestWrites:
    """Test saves, change tags and deletes."""

    @pytest.mark.asyncio
    async def test_save_issues_new_change_tag(self, repo):
        stored = repo.seed(make_task("task_1"))
        saved = await repo.save(stored.model_copy(update={"name": "Renamed"}))
        assert saved.change_tag != stored.change_tag
        assert repo.writes == 1
        with pytest.raises(ConcurrentModification):
            await repo.save(stored.model_copy(update={"name": "Stale"}))

    @pytest.mark.asyncio
    async def test_delete(self, repo):
        repo.seed(make_task("task_1"))
        assert await repo.delete("task_1")
        assert not await repo.delete("task_1")
        assert await repo.fetch(RecordType.TASK, "task_1") is None


class TestDateRange:
    """Test range queries on date fields."""

    @pytest.mark.asyncio
    async def test_bounds_are_inclusive(self, repo):
        repo.seed(make_task("lower", realm=Realm.DO, end_date=NOW))
        repo.seed(make_task("upper", realm=Realm.DO, end_date=NOW + timedelta(days=1)))
        repo.seed(make_task("outside", realm=Realm.DO, end_date=NOW + timedelta(days=2)))
        repo.seed(make_task("undated", realm=Realm.DO))
        repo.seed(make_task("other_realm", realm=Realm.DECIDE, end_date=NOW))
        records = await repo.query_by_date_range(
            RecordType.TASK, Realm.DO, "end_date", lower=NOW, upper=NOW + timedelta(days=1)
        )
        assert [r.id for r in records] == ["lower", "upper"]

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, repo):
        with pytest.raises(ValueError):
            await repo.query_by_date_range(RecordType.TASK, Realm.DO, "priority")


class TestTokens:
    """Test local token verification."""

    @pytest.mark.asyncio
    async def test_accepted_tokens(self):
        repo = InMemoryRepository(accepted_tokens={"good-token"})
        assert await repo.verify_token("good-token") == "local_good-tok"
        assert await repo.verify_token("bad-token") is None
        assert await repo.verify_token("") is None
