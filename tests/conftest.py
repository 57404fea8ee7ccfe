"""Shared fixtures: a fixed clock, an in-memory store and record factories."""
from datetime import datetime, timedelta

import pytest

from add_core.guard import MutationGuard
from add_core.queries import ItemQueries
from add_core.realms import Realm
from add_core.repository import InMemoryRepository
from add_core.schemas import Collection, Context, Idea, Project, Task

# Noon local time, so "today" and "tomorrow" bounds are the same in every time zone
NOW = datetime(2025, 6, 16, 12, 0).astimezone()


def make_task(task_id="task_1", realm=Realm.ASSESS, **fields) -> Task:
    fields.setdefault("name", f"Task {task_id}")
    fields.setdefault("last_modified", NOW - timedelta(days=1))
    return Task(id=task_id, realm=realm, **fields)


def make_project(project_id="project_1", realm=Realm.ASSESS, **fields) -> Project:
    fields.setdefault("name", f"Project {project_id}")
    fields.setdefault("last_modified", NOW - timedelta(days=1))
    return Project(id=project_id, realm=realm, **fields)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def repo():
    return InMemoryRepository([
        Context(id="ctx_home", name="home"),
        Context(id="ctx_office", name="office"),
        Collection(id="col_archive", name="Archive"),
        Idea(id="idea_1", name="Learn the cello"),
    ])


@pytest.fixture
def guard(repo, clock):
    return MutationGuard(repo, clock=clock)


@pytest.fixture
def queries(repo, clock):
    return ItemQueries(repo, clock=clock)
