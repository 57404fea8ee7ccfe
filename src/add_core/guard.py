"""Mutation guard: every write to the store goes through here.

Each operation fetches a fresh snapshot, checks the realm capability table
(or the transition validator for realm moves), and only then writes back
through the repository. Writes carry the fetched change_tag so a concurrent
update between fetch and write is rejected by the store instead of being
silently overwritten.
"""
import logging
from datetime import datetime
from typing import Callable, Optional, Union

from pydantic import ValidationError

from .errors import InvalidArgument, InvalidDueDate, ItemNotFound, RealmViolation
from .realms import Capability, Realm, coerce_realm, has_capability, required_realm
from .repository import ItemRepository
from .schemas import (
    ITEM_TYPES,
    Collection,
    Context,
    Idea,
    ParentType,
    Project,
    RecordType,
    Task,
    TransitionDecision,
    ensure_aware,
    new_record_name,
    parse_timestamp,
    utcnow,
)
from .state_machine import apply_transition, validate_transition

logger = logging.getLogger("add-core.guard")

# Name length limits per record type
NAME_LIMITS: dict[RecordType, int] = {
    RecordType.TASK: 1000,
    RecordType.PROJECT: 1500,
    RecordType.IDEA: 1500,
    RecordType.CONTEXT: 30,
    RecordType.COLLECTION: 200,
}

_ITEM_TYPE_ALIASES = {
    "task": RecordType.TASK,
    "tasks": RecordType.TASK,
    "project": RecordType.PROJECT,
    "projects": RecordType.PROJECT,
}


def coerce_item_type(value: Union[RecordType, str]) -> RecordType:
    """
    Accept "Task"/"Project" in any case (or the RecordType) for realm-bound items.

    Raises:
        InvalidArgument: If the value does not name a task or project
    """
    if isinstance(value, RecordType):
        if value in ITEM_TYPES:
            return value
    elif isinstance(value, str) and value.strip().lower() in _ITEM_TYPE_ALIASES:
        return _ITEM_TYPE_ALIASES[value.strip().lower()]
    raise InvalidArgument(f"Invalid item type: {value!r}. Expected 'Task' or 'Project'.")


def _check_name(name, record_type: RecordType) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidArgument(f"{record_type.value} name must be a non-empty string")
    limit = NAME_LIMITS[record_type]
    if len(name) > limit:
        raise InvalidArgument(f"{record_type.value} name exceeds {limit} characters")
    return name


def _check_priority(priority) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 5:
        raise InvalidArgument(f"Priority must be an integer from 1 to 5, got {priority!r}")
    return priority


class MutationGuard:
    """Realm-aware write path over an ItemRepository."""

    def __init__(self, repository: ItemRepository, clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return ensure_aware(self._clock())

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _require(self, record_type: RecordType, record_id: str):
        if not record_id:
            raise InvalidArgument(f"{record_type.value} id is required")
        record = await self.repository.fetch(record_type, record_id)
        if record is None:
            logger.warning(f"{record_type.value} {record_id} not found")
            raise ItemNotFound(record_type.value, record_id)
        return record

    def _require_capability(self, record, capability: Capability, action: str) -> None:
        if has_capability(record.realm, capability):
            return
        realm = required_realm(capability)
        message = (
            f"{record.record_type.value} {record.id} must be in {realm.title} realm to {action}. "
            f"Current realm: {record.realm.title}."
        )
        if capability == Capability.COMPLETE:
            message += " Move it to Do realm first."
        logger.warning(f"Realm violation: {message}")
        raise RealmViolation(message, required_realm=realm, current_realm=record.realm)

    def _build(self, model: type, **fields):
        try:
            return model(**fields)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise InvalidArgument(f"Invalid {location}: {first['msg']}") from None

    def _touch(self, record, **update):
        update["last_modified"] = self.now()
        return record.model_copy(update=update)

    # ========================================================================
    # Creation (new records always start in Assess)
    # ========================================================================

    async def create_task(
        self,
        name: str,
        start_date: Optional[datetime] = None,
        priority: int = 3,
        project_id: Optional[str] = None,
        collection_id: Optional[str] = None,
    ) -> Task:
        """
        Create a task in Assess, optionally inside a project.

        Args:
            name: Task content (1-1000 chars)
            start_date: Optional start timestamp
            priority: 1 (highest) to 5 (lowest)
            project_id: Project the task belongs to; it gains the task reference
            collection_id: Collection the task is filed under

        Returns:
            The saved task

        Raises:
            InvalidArgument: If name or priority is invalid
            ItemNotFound: If the project or collection does not exist
        """
        _check_name(name, RecordType.TASK)
        _check_priority(priority)
        project = await self._require(RecordType.PROJECT, project_id) if project_id else None
        if collection_id:
            await self._require(RecordType.COLLECTION, collection_id)

        parent_id, parent_type = None, None
        if project is not None:
            parent_id, parent_type = project.id, ParentType.PROJECT
        elif collection_id:
            parent_id, parent_type = collection_id, ParentType.COLLECTION

        task = self._build(
            Task,
            id=new_record_name(RecordType.TASK),
            name=name,
            realm=Realm.ASSESS,
            priority=priority,
            start_date=ensure_aware(start_date),
            project_id=project_id,
            collection_id=collection_id,
            parent_id=parent_id,
            parent_type=parent_type,
            order_in_parent=len(project.task_ids) if project is not None else None,
            last_modified=self.now(),
        )

        if project is None:
            saved = await self.repository.save(task)
        else:
            updated_project = self._touch(project, task_ids=[*project.task_ids, task.id])
            saved, _ = await self.repository.save_many([task, updated_project])
        logger.info(f"Created task {saved.id} in Assess realm")
        return saved

    async def create_project(
        self,
        name: str,
        start_date: Optional[datetime] = None,
        collection_id: Optional[str] = None,
    ) -> Project:
        """Create a project in Assess."""
        _check_name(name, RecordType.PROJECT)
        if collection_id:
            await self._require(RecordType.COLLECTION, collection_id)
        project = self._build(
            Project,
            id=new_record_name(RecordType.PROJECT),
            name=name,
            realm=Realm.ASSESS,
            start_date=ensure_aware(start_date),
            collection_id=collection_id,
            parent_id=collection_id,
            parent_type=ParentType.COLLECTION if collection_id else None,
            last_modified=self.now(),
        )
        saved = await self.repository.save(project)
        logger.info(f"Created project {saved.id} in Assess realm")
        return saved

    async def create_idea(self, name: str, collection_id: Optional[str] = None) -> Idea:
        """Capture an idea (ideas always live in Assess)."""
        _check_name(name, RecordType.IDEA)
        if collection_id:
            await self._require(RecordType.COLLECTION, collection_id)
        idea = self._build(
            Idea,
            id=new_record_name(RecordType.IDEA),
            name=name,
            collection_id=collection_id,
            last_modified=self.now(),
        )
        saved = await self.repository.save(idea)
        logger.info(f"Created idea {saved.id}")
        return saved

    async def create_context(self, name: str) -> Context:
        _check_name(name, RecordType.CONTEXT)
        context = self._build(
            Context,
            id=new_record_name(RecordType.CONTEXT),
            name=name,
            last_modified=self.now(),
        )
        saved = await self.repository.save(context)
        logger.info(f"Created context {saved.id}: {saved.name}")
        return saved

    async def create_collection(self, name: str) -> Collection:
        _check_name(name, RecordType.COLLECTION)
        now = self.now()
        collection = self._build(
            Collection,
            id=new_record_name(RecordType.COLLECTION),
            name=name,
            created_at=now,
            last_modified=now,
        )
        saved = await self.repository.save(collection)
        logger.info(f"Created collection {saved.id}: {saved.name}")
        return saved

    # ========================================================================
    # Content edits (Assess only)
    # ========================================================================

    async def edit_task(self, task_id: str, name: Optional[str] = None, priority: Optional[int] = None) -> Task:
        """
        Edit a task's content and/or priority.

        Raises:
            InvalidArgument: If neither name nor priority is given, or either is invalid
            RealmViolation: If the task is not in Assess
        """
        if name is None and priority is None:
            raise InvalidArgument("Provide a new name and/or priority")
        update = {}
        if name is not None:
            update["name"] = _check_name(name, RecordType.TASK)
        if priority is not None:
            update["priority"] = _check_priority(priority)

        task = await self._require(RecordType.TASK, task_id)
        self._require_capability(task, Capability.EDIT_CONTENT, "edit content")
        saved = await self.repository.save(self._touch(task, **update))
        logger.info(f"Edited task {task_id}: {', '.join(update)}")
        return saved

    async def edit_project(self, project_id: str, name: str) -> Project:
        _check_name(name, RecordType.PROJECT)
        project = await self._require(RecordType.PROJECT, project_id)
        self._require_capability(project, Capability.EDIT_CONTENT, "edit content")
        saved = await self.repository.save(self._touch(project, name=name))
        logger.info(f"Edited project {project_id}")
        return saved

    async def edit_idea(self, idea_id: str, name: str) -> Idea:
        _check_name(name, RecordType.IDEA)
        idea = await self._require(RecordType.IDEA, idea_id)
        self._require_capability(idea, Capability.EDIT_CONTENT, "edit content")
        saved = await self.repository.save(self._touch(idea, name=name))
        logger.info(f"Edited idea {idea_id}")
        return saved

    # ========================================================================
    # Membership edits (Assess only, both records written atomically)
    # ========================================================================

    async def add_task_to_project(self, task_id: str, project_id: str) -> tuple[Task, Project]:
        """
        Attach a task to a project.

        Both the task and the project must be in Assess. A task belongs to at
        most one project; detach it from its current project first.

        Returns:
            (task, project) as saved
        """
        task = await self._require(RecordType.TASK, task_id)
        project = await self._require(RecordType.PROJECT, project_id)
        self._require_capability(task, Capability.EDIT_CONTENT, "change project membership")
        self._require_capability(project, Capability.EDIT_CONTENT, "change its tasks")

        if task.project_id == project_id and task_id in project.task_ids:
            logger.debug(f"Task {task_id} already in project {project_id}")
            return task, project
        if task.project_id and task.project_id != project_id:
            raise InvalidArgument(
                f"Task {task_id} already belongs to project {task.project_id}. Remove it from that project first."
            )

        task_ids = project.task_ids if task_id in project.task_ids else [*project.task_ids, task_id]
        updated_task = self._touch(
            task,
            project_id=project_id,
            parent_id=project_id,
            parent_type=ParentType.PROJECT,
            order_in_parent=task_ids.index(task_id),
        )
        updated_project = self._touch(project, task_ids=task_ids)
        saved_task, saved_project = await self.repository.save_many([updated_task, updated_project])
        logger.info(f"Added task {task_id} to project {project_id}")
        return saved_task, saved_project

    async def remove_task_from_project(self, task_id: str, project_id: str) -> tuple[Task, Project]:
        task = await self._require(RecordType.TASK, task_id)
        project = await self._require(RecordType.PROJECT, project_id)
        self._require_capability(task, Capability.EDIT_CONTENT, "change project membership")
        self._require_capability(project, Capability.EDIT_CONTENT, "change its tasks")

        if task.project_id != project_id and task_id not in project.task_ids:
            raise InvalidArgument(f"Task {task_id} is not in project {project_id}")

        task_update = {"project_id": None, "order_in_parent": None}
        if task.parent_id == project_id:
            task_update.update(parent_id=None, parent_type=None)
        updated_task = self._touch(task, **task_update)
        updated_project = self._touch(project, task_ids=[t for t in project.task_ids if t != task_id])
        saved_task, saved_project = await self.repository.save_many([updated_task, updated_project])
        logger.info(f"Removed task {task_id} from project {project_id}")
        return saved_task, saved_project

    async def add_task_to_idea(self, task_id: str, idea_id: str) -> tuple[Task, Idea]:
        """Record that a task was derived from an idea."""
        task = await self._require(RecordType.TASK, task_id)
        idea = await self._require(RecordType.IDEA, idea_id)
        self._require_capability(task, Capability.EDIT_CONTENT, "change idea membership")

        if task.idea_id == idea_id and task_id in idea.task_ids:
            logger.debug(f"Task {task_id} already linked to idea {idea_id}")
            return task, idea
        if task.idea_id and task.idea_id != idea_id:
            raise InvalidArgument(
                f"Task {task_id} already belongs to idea {task.idea_id}. Remove it from that idea first."
            )

        task_update = {"idea_id": idea_id}
        if task.parent_id is None:
            task_update.update(parent_id=idea_id, parent_type=ParentType.IDEA)
        updated_task = self._touch(task, **task_update)
        task_ids = idea.task_ids if task_id in idea.task_ids else [*idea.task_ids, task_id]
        updated_idea = self._touch(idea, task_ids=task_ids)
        saved_task, saved_idea = await self.repository.save_many([updated_task, updated_idea])
        logger.info(f"Added task {task_id} to idea {idea_id}")
        return saved_task, saved_idea

    async def remove_task_from_idea(self, task_id: str, idea_id: str) -> tuple[Task, Idea]:
        task = await self._require(RecordType.TASK, task_id)
        idea = await self._require(RecordType.IDEA, idea_id)
        self._require_capability(task, Capability.EDIT_CONTENT, "change idea membership")

        if task.idea_id != idea_id and task_id not in idea.task_ids:
            raise InvalidArgument(f"Task {task_id} is not in idea {idea_id}")

        task_update = {"idea_id": None}
        if task.parent_id == idea_id:
            task_update.update(parent_id=None, parent_type=None)
        updated_task = self._touch(task, **task_update)
        updated_idea = self._touch(idea, task_ids=[t for t in idea.task_ids if t != task_id])
        saved_task, saved_idea = await self.repository.save_many([updated_task, updated_idea])
        logger.info(f"Removed task {task_id} from idea {idea_id}")
        return saved_task, saved_idea

    # ========================================================================
    # Archival (any realm)
    # ========================================================================

    async def archive_task_to_collection(self, task_id: str, collection_id: str) -> Task:
        task = await self._require(RecordType.TASK, task_id)
        await self._require(RecordType.COLLECTION, collection_id)
        saved = await self.repository.save(self._touch(task, collection_id=collection_id))
        logger.info(f"Archived task {task_id} to collection {collection_id}")
        return saved

    async def archive_project_to_collection(self, project_id: str, collection_id: str) -> Project:
        project = await self._require(RecordType.PROJECT, project_id)
        await self._require(RecordType.COLLECTION, collection_id)
        saved = await self.repository.save(self._touch(project, collection_id=collection_id))
        logger.info(f"Archived project {project_id} to collection {collection_id}")
        return saved

    # ========================================================================
    # Decide-only operations
    # ========================================================================

    def _require_future(self, end_date: datetime, what: str) -> datetime:
        end_date = ensure_aware(end_date)
        now = self.now()
        if end_date <= now:
            message = f"{what} {end_date.isoformat()} must be in the future (now: {now.isoformat()})"
            logger.warning(message)
            raise InvalidDueDate(message)
        return end_date

    async def assign_context(self, item_type: Union[RecordType, str], item_id: str, context_id: str):
        """
        Assign a context to a task or project in Decide.

        Raises:
            ItemNotFound: If the item or the context does not exist
            RealmViolation: If the item is not in Decide
        """
        item_type = coerce_item_type(item_type)
        item = await self._require(item_type, item_id)
        self._require_capability(item, Capability.ASSIGN_CONTEXT, "assign context")
        await self._require(RecordType.CONTEXT, context_id)
        saved = await self.repository.save(self._touch(item, context_id=context_id))
        logger.info(f"Assigned context {context_id} to {item_type.value.lower()} {item_id}")
        return saved

    async def set_task_due_date(self, task_id: str, end_date: datetime) -> Task:
        """
        Set a task's due date in Decide.

        Raises:
            InvalidDueDate: If the due date is not strictly after now
            RealmViolation: If the task is not in Decide
        """
        task = await self._require(RecordType.TASK, task_id)
        self._require_capability(task, Capability.ASSIGN_DATES, "set due date")
        end_date = self._require_future(end_date, "Due date")
        saved = await self.repository.save(self._touch(task, end_date=end_date))
        logger.info(f"Set due date of task {task_id} to {end_date.isoformat()}")
        return saved

    async def set_project_interval(self, project_id: str, start_date: datetime, end_date: datetime) -> Project:
        """
        Set a project's start and due dates in Decide.

        Raises:
            InvalidDueDate: If start is after end or end is not strictly after now
            RealmViolation: If the project is not in Decide
        """
        project = await self._require(RecordType.PROJECT, project_id)
        self._require_capability(project, Capability.ASSIGN_DATES, "set interval")
        start_date = ensure_aware(start_date)
        end_date = ensure_aware(end_date)
        if start_date > end_date:
            message = f"Start date {start_date.isoformat()} is after end date {end_date.isoformat()}"
            logger.warning(message)
            raise InvalidDueDate(message)
        end_date = self._require_future(end_date, "End date")
        saved = await self.repository.save(self._touch(project, start_date=start_date, end_date=end_date))
        logger.info(f"Set interval of project {project_id}: {start_date.isoformat()} - {end_date.isoformat()}")
        return saved

    async def set_task_alert(self, task_id: str, alert: str) -> Task:
        """Set a task's alert trigger (ISO-8601) in Decide."""
        alert_at = parse_timestamp(alert, "alert")
        task = await self._require(RecordType.TASK, task_id)
        self._require_capability(task, Capability.ASSIGN_DATES, "set alert")
        saved = await self.repository.save(self._touch(task, alert=alert_at.isoformat()))
        logger.info(f"Set alert of task {task_id} to {saved.alert}")
        return saved

    # ========================================================================
    # Realm moves
    # ========================================================================

    async def check_transition(
        self,
        item_type: Union[RecordType, str],
        item_id: str,
        target: Union[Realm, int, str],
    ) -> TransitionDecision:
        """Dry-run a realm move without writing anything."""
        item_type = coerce_item_type(item_type)
        target = coerce_realm(target)
        item = await self._require(item_type, item_id)
        return validate_transition(item, target, self.now())

    async def move_to_realm(
        self,
        item_type: Union[RecordType, str],
        item_id: str,
        target: Union[Realm, int, str],
        expected_source: Optional[Realm] = None,
    ):
        """
        Move a task or project to another realm.

        Args:
            item_type: Task or Project
            item_id: Item id
            target: Target realm (Realm, id or label)
            expected_source: When given, the item must currently be in this realm

        Returns:
            (saved item, TransitionDecision)

        Raises:
            RealmViolation: If the validator refuses the move or the source realm does not match
            ItemNotFound: If the item does not exist
        """
        item_type = coerce_item_type(item_type)
        target = coerce_realm(target)
        item = await self._require(item_type, item_id)
        kind = item_type.value

        if expected_source is not None and item.realm != expected_source:
            message = (
                f"{kind} {item_id} must be in {expected_source.title} realm to move to {target.title}. "
                f"Current realm: {item.realm.title}."
            )
            logger.warning(f"Realm violation: {message}")
            raise RealmViolation(message, required_realm=expected_source, current_realm=item.realm)

        now = self.now()
        decision = validate_transition(item, target, now)
        if not decision.allowed:
            raise RealmViolation(decision.reason, current_realm=item.realm)

        saved = await self.repository.save(apply_transition(item, decision, now))
        if decision.advisory:
            logger.warning(f"Advisory realm move for {item_id}: {decision.reason}")
        logger.info(f"Moved {kind.lower()} {item_id}: {decision.current_realm.label} → {decision.target_realm.label}")
        return saved, decision

    # ========================================================================
    # Do-only operations
    # ========================================================================

    async def mark_task_done(self, task_id: str) -> Task:
        """
        Complete a task in Do; its end timestamp becomes the completion time.

        Raises:
            RealmViolation: If the task is not in Do
        """
        task = await self._require(RecordType.TASK, task_id)
        self._require_capability(task, Capability.COMPLETE, "mark it as done")
        now = self.now()
        saved = await self.repository.save(task.model_copy(update={"end_date": now, "last_modified": now}))
        logger.info(f"Marked task {task_id} as done")
        return saved

    async def mark_project_done(self, project_id: str) -> tuple[Project, list[Task]]:
        """
        Complete a project in Do together with every task it references.

        All tasks are fetched before anything is written; a missing task
        aborts the whole operation. The project and its tasks are saved in
        one atomic batch.

        Returns:
            (project, tasks) as saved

        Raises:
            RealmViolation: If the project is not in Do
            ItemNotFound: If the project or any referenced task does not exist
        """
        project = await self._require(RecordType.PROJECT, project_id)
        self._require_capability(project, Capability.COMPLETE, "mark it as done")

        # Stored references may repeat a task
        tasks = [await self._require(RecordType.TASK, task_id) for task_id in dict.fromkeys(project.task_ids)]

        now = self.now()
        completion = {"end_date": now, "last_modified": now}
        batch = [project.model_copy(update=completion)]
        batch.extend(task.model_copy(update=completion) for task in tasks)
        saved = await self.repository.save_many(batch)
        logger.info(f"Marked project {project_id} as done with {len(tasks)} tasks")
        return saved[0], saved[1:]
