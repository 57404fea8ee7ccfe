"""MCP tool handlers for the ADD task manager.

All handlers follow a consistent pattern:
- Accept: arguments dict, the server runtime, and the current session
- Return: tuple of (list[TextContent], Optional[UserSession]) where the second
  element is the session to keep for the rest of the connection
- Delegate writes to MutationGuard and reads to ItemQueries
- Use formatters for consistent output
- Raise add_core errors; the server maps them to MCP errors

Session state is held by the caller (ServerRuntime), never by this module.
"""
from typing import Optional
import logging

from mcp.types import TextContent

from add_core.errors import InvalidArgument
from add_core.guard import coerce_item_type
from add_core.realms import Realm, coerce_realm
from add_core.schemas import RecordType, UserSession, parse_timestamp

from . import formatters
from .tools import get_tools

logger = logging.getLogger("add-mcp.handlers")


def _text(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


# ============================================================================
# Argument helpers
# ============================================================================

_required_args: Optional[dict[str, list[str]]] = None


def required_args(tool_name: str) -> list[str]:
    """Required argument names of a tool, read from its input schema."""
    global _required_args
    if _required_args is None:
        _required_args = {tool.name: list(tool.inputSchema.get("required", [])) for tool in get_tools()}
    return _required_args.get(tool_name, [])


def validate_args(tool_name: str, arguments: dict) -> None:
    """
    Check that every required argument is present and non-empty.

    Raises:
        InvalidArgument: Naming each missing argument
    """
    missing = [
        key for key in required_args(tool_name)
        if arguments.get(key) is None or (isinstance(arguments[key], str) and not arguments[key].strip())
    ]
    if missing:
        raise InvalidArgument(f"Missing required argument(s) for {tool_name}: {', '.join(missing)}")


def _optional_str(arguments: dict, key: str) -> Optional[str]:
    value = arguments.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if not isinstance(value, str):
        raise InvalidArgument(f"{key} must be a string")
    return value


def _timestamp(arguments: dict, key: str):
    value = arguments.get(key)
    if value is None or value == "":
        return None
    return parse_timestamp(value, key)


def _priority(arguments: dict, key: str = "priority") -> Optional[int]:
    value = arguments.get(key)
    if value is None:
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{key} must be an integer from 1 to 5, got {value!r}")
    return value


# ============================================================================
# Authentication Handlers
# ============================================================================

async def handle_authenticate_user(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    """Authenticate with a CloudKit web auth token and open a session.

    Without a token, the error message carries the iCloud sign-in link.
    """
    purged = runtime.sessions.purge_expired()
    if purged:
        logger.info(f"Purged {purged} expired sessions")
    session = await runtime.sessions.authenticate(_optional_str(arguments, "web_auth_token"), runtime.verify_token)
    if current_session is not None:
        runtime.sessions.revoke(current_session.session_id)
    logger.info(f"Authenticated session {session.session_id} for {session.user_record_name}")
    return _text(formatters.format_session(session)), session


async def handle_revoke_session(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    """End the current session."""
    if current_session is not None:
        runtime.sessions.revoke(current_session.session_id)
    return _text("Session ended. Call authenticate_user to sign in again."), None


# ============================================================================
# Assess Handlers (content)
# ============================================================================

async def handle_assess_create_task(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    """Create a task in Assess realm."""
    priority = _priority(arguments)
    task = await runtime.guard(current_session).create_task(
        name=arguments["name"],
        start_date=_timestamp(arguments, "start_date"),
        priority=3 if priority is None else priority,
        project_id=_optional_str(arguments, "project_id"),
        collection_id=_optional_str(arguments, "collection_id"),
    )
    logger.info(f"Successfully created task {task.id}")
    return _text(f"Created task in Assess realm\n\n{formatters.format_task(task)}"), current_session


async def handle_assess_edit_task(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    """Edit a task's name and/or priority (Assess only)."""
    task = await runtime.guard(current_session).edit_task(
        arguments["task_id"],
        name=_optional_str(arguments, "name"),
        priority=_priority(arguments),
    )
    return _text(f"Updated task\n\n{formatters.format_task(task)}"), current_session


async def handle_assess_create_project(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    project = await runtime.guard(current_session).create_project(
        name=arguments["name"],
        start_date=_timestamp(arguments, "start_date"),
        collection_id=_optional_str(arguments, "collection_id"),
    )
    logger.info(f"Successfully created project {project.id}")
    return _text(f"Created project in Assess realm\n\n{formatters.format_project(project)}"), current_session


async def handle_assess_edit_project(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    project = await runtime.guard(current_session).edit_project(arguments["project_id"], arguments["name"])
    return _text(f"Updated project\n\n{formatters.format_project(project)}"), current_session


async def handle_assess_create_idea(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    idea = await runtime.guard(current_session).create_idea(
        name=arguments["name"],
        collection_id=_optional_str(arguments, "collection_id"),
    )
    logger.info(f"Successfully captured idea {idea.id}")
    return _text(f"Captured idea\n\n{formatters.format_idea(idea)}"), current_session


async def handle_assess_edit_idea(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    idea = await runtime.guard(current_session).edit_idea(arguments["idea_id"], arguments["name"])
    return _text(f"Updated idea\n\n{formatters.format_idea(idea)}"), current_session


async def handle_assess_create_collection(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    collection = await runtime.guard(current_session).create_collection(arguments["name"])
    return _text(f"Created collection\n{formatters.format_collection(collection)}"), current_session


async def handle_assess_create_context(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    context = await runtime.guard(current_session).create_context(arguments["name"])
    return _text(f"Created context\n{formatters.format_context(context)}"), current_session


async def handle_assess_add_task_to_project(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    task, project = await runtime.guard(current_session).add_task_to_project(
        arguments["task_id"], arguments["project_id"]
    )
    text = f"Task {task.id} is in project {project.name} ({len(project.task_ids)} tasks)"
    return _text(text), current_session


async def handle_assess_remove_task_from_project(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    task, project = await runtime.guard(current_session).remove_task_from_project(
        arguments["task_id"], arguments["project_id"]
    )
    text = f"Removed task {task.id} from project {project.name} ({len(project.task_ids)} tasks left)"
    return _text(text), current_session


async def handle_assess_add_task_to_idea(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    task, idea = await runtime.guard(current_session).add_task_to_idea(arguments["task_id"], arguments["idea_id"])
    return _text(f"Task {task.id} is linked to idea {idea.name}"), current_session


async def handle_assess_remove_task_from_idea(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    task, idea = await runtime.guard(current_session).remove_task_from_idea(
        arguments["task_id"], arguments["idea_id"]
    )
    return _text(f"Removed task {task.id} from idea {idea.name}"), current_session


async def handle_assess_archive_task_to_collection(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    task = await runtime.guard(current_session).archive_task_to_collection(
        arguments["task_id"], arguments["collection_id"]
    )
    return _text(f"Archived task {task.id} to collection {task.collection_id}"), current_session


async def handle_assess_archive_project_to_collection(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    project = await runtime.guard(current_session).archive_project_to_collection(
        arguments["project_id"], arguments["collection_id"]
    )
    return _text(f"Archived project {project.id} to collection {project.collection_id}"), current_session


# ============================================================================
# Decide Handlers (context, dates, moves)
# ============================================================================

async def handle_decide_assign_context(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    """Assign a context to a task or project in Decide."""
    item = await runtime.guard(current_session).assign_context(
        arguments["item_type"], arguments["item_id"], arguments["context_id"]
    )
    return _text(f"Assigned context {item.context_id}\n\n{formatters.format_item(item)}"), current_session


async def handle_decide_set_project_interval(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    project = await runtime.guard(current_session).set_project_interval(
        arguments["project_id"],
        _timestamp(arguments, "start_date"),
        _timestamp(arguments, "end_date"),
    )
    return _text(f"Set project interval\n\n{formatters.format_project(project)}"), current_session


async def handle_decide_set_task_due_date(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    task = await runtime.guard(current_session).set_task_due_date(
        arguments["task_id"], _timestamp(arguments, "end_date")
    )
    return _text(f"Set due date\n\n{formatters.format_task(task)}"), current_session


async def handle_decide_set_task_alert(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    task = await runtime.guard(current_session).set_task_alert(arguments["task_id"], arguments["alert"])
    return _text(f"Set alert\n\n{formatters.format_task(task)}"), current_session


async def _move_from_decide(
    runtime,
    current_session: Optional[UserSession],
    item_type: RecordType,
    item_id: str,
    target: Realm,
) -> list[TextContent]:
    item, decision = await runtime.guard(current_session).move_to_realm(
        item_type, item_id, target, expected_source=Realm.DECIDE
    )
    return _text(f"{formatters.format_decision(decision)}\n\n{formatters.format_item(item)}")


async def handle_decide_move_task_to_do(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    """Move a task from Decide to Do (needs context and a future due date)."""
    content = await _move_from_decide(runtime, current_session, RecordType.TASK, arguments["task_id"], Realm.DO)
    return content, current_session


async def handle_decide_move_task_to_assess_from_decide(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    content = await _move_from_decide(runtime, current_session, RecordType.TASK, arguments["task_id"], Realm.ASSESS)
    return content, current_session


async def handle_decide_move_project_to_do(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    content = await _move_from_decide(runtime, current_session, RecordType.PROJECT, arguments["project_id"], Realm.DO)
    return content, current_session


async def handle_decide_move_project_to_assess_from_decide(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    content = await _move_from_decide(
        runtime, current_session, RecordType.PROJECT, arguments["project_id"], Realm.ASSESS
    )
    return content, current_session


# ============================================================================
# Do Handlers (completion)
# ============================================================================

async def handle_do_mark_task_as_done(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    task = await runtime.guard(current_session).mark_task_done(arguments["task_id"])
    return _text(f"Completed task {task.name} at {formatters.format_date(task.end_date)}"), current_session


async def handle_do_mark_project_as_done(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    """Complete a project and every task it references."""
    project, tasks = await runtime.guard(current_session).mark_project_done(arguments["project_id"])
    text = (f"Completed project {project.name} at {formatters.format_date(project.end_date)} "
            f"with {len(tasks)} task{'s' if len(tasks) != 1 else ''}")
    return _text(text), current_session


# ============================================================================
# Query Handlers
# ============================================================================

async def handle_get_tasks_by_realm(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    realm = coerce_realm(arguments["realm"])
    tasks = await runtime.queries(current_session).tasks_by_realm(realm)
    logger.info(f"Successfully listed {len(tasks)} tasks in {realm.label}")
    text = formatters.format_list(
        f"Tasks in {realm.title} realm",
        (formatters.format_task(task) for task in tasks),
        f"No tasks in {realm.title} realm.",
        separator="\n\n",
    )
    return _text(text), current_session


async def handle_get_projects_by_realm(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    realm = coerce_realm(arguments["realm"])
    projects = await runtime.queries(current_session).projects_by_realm(realm)
    logger.info(f"Successfully listed {len(projects)} projects in {realm.label}")
    text = formatters.format_list(
        f"Projects in {realm.title} realm",
        (formatters.format_project(project) for project in projects),
        f"No projects in {realm.title} realm.",
        separator="\n\n",
    )
    return _text(text), current_session


async def handle_get_ideas(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    ideas = await runtime.queries(current_session).ideas()
    text = formatters.format_list(
        "Ideas", (formatters.format_idea(idea) for idea in ideas), "No ideas captured yet.", separator="\n\n"
    )
    return _text(text), current_session


async def handle_get_collections(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    collections = await runtime.queries(current_session).collections()
    text = formatters.format_list(
        "Collections", (formatters.format_collection(c) for c in collections), "No collections yet."
    )
    return _text(text), current_session


async def handle_get_contexts(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    contexts = await runtime.queries(current_session).contexts()
    text = formatters.format_list("Contexts", (formatters.format_context(c) for c in contexts), "No contexts yet.")
    return _text(text), current_session


async def handle_get_tasks_by_context(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    context_id = arguments["context_id"]
    tasks = await runtime.queries(current_session).tasks_by_context(context_id)
    text = formatters.format_list(
        f"Tasks in context {context_id}",
        (formatters.format_task(task) for task in tasks),
        f"No tasks in context {context_id}.",
        separator="\n\n",
    )
    return _text(text), current_session


async def handle_move_to_realm(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    """Move a task or project to any realm the validator allows."""
    item, decision = await runtime.guard(current_session).move_to_realm(
        coerce_item_type(arguments["item_type"]),
        arguments["item_id"],
        coerce_realm(arguments["realm"]),
    )
    return _text(f"{formatters.format_decision(decision)}\n\n{formatters.format_item(item)}"), current_session


async def handle_validate_realm_transition(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    """Dry run of a realm move; nothing is written."""
    decision = await runtime.guard(current_session).check_transition(
        coerce_item_type(arguments["item_type"]),
        arguments["item_id"],
        coerce_realm(arguments["realm"]),
    )
    return _text(formatters.format_decision(decision)), current_session


async def handle_get_stalled_items_in_decide(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    queries = runtime.queries(current_session)
    now = queries.now()
    lines = [formatters.format_overdue_line(item, now) async for item in queries.stalled_in_decide()]
    text = formatters.format_list("Stalled items in Decide", lines, "No stalled items in Decide realm.")
    return _text(text), current_session


async def handle_get_undecided_items_in_decide(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    queries = runtime.queries(current_session)
    lines = [formatters.format_undecided_line(item) async for item in queries.undecided_in_decide()]
    text = formatters.format_list("Undecided items in Decide", lines, "No undecided items in Decide realm.")
    return _text(text), current_session


async def handle_get_ready_items_in_decide(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    queries = runtime.queries(current_session)
    lines = [formatters.format_due_line(item) async for item in queries.ready_in_decide()]
    text = formatters.format_list("Items ready for Do", lines, "No items in Decide realm are ready for Do.")
    return _text(text), current_session


async def handle_get_tasks_today_in_do(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    queries = runtime.queries(current_session)
    lines = [formatters.format_due_line(item) async for item in queries.due_today_in_do()]
    text = formatters.format_list("Due today", lines, "Nothing due today in Do realm.")
    return _text(text), current_session


async def handle_get_tasks_tomorrow_in_do(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    queries = runtime.queries(current_session)
    lines = [formatters.format_due_line(item) async for item in queries.due_tomorrow_in_do()]
    text = formatters.format_list("Due tomorrow", lines, "Nothing due tomorrow in Do realm.")
    return _text(text), current_session


async def handle_get_tasks_soon_in_do(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    queries = runtime.queries(current_session)
    lines = [formatters.format_due_line(item) async for item in queries.due_soon_in_do()]
    text = formatters.format_list("Due soon (2-7 days)", lines, "Nothing due in the next 2-7 days in Do realm.")
    return _text(text), current_session


async def handle_get_tasks_overdue_in_do(
    arguments: dict,
    runtime,
    current_session: Optional[UserSession] = None
) -> tuple[list[TextContent], Optional[UserSession]]:
    queries = runtime.queries(current_session)
    now = queries.now()
    lines = [formatters.format_overdue_line(item, now) async for item in queries.overdue_in_do()]
    text = formatters.format_list("Overdue in Do", lines, "Nothing overdue in Do realm.")
    return _text(text), current_session
