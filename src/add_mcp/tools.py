"""MCP tool definitions for the ADD task manager.

Tool names are grouped by the realm whose capabilities they exercise:
assess_* edit content, decide_* schedule and contextualize, do_* complete.
The required lists here double as the argument check run before dispatch.
"""
from mcp.types import Tool


# Shared property schemas
_TASK_ID = {"type": "string", "description": "Record name of the task"}
_PROJECT_ID = {"type": "string", "description": "Record name of the project"}
_IDEA_ID = {"type": "string", "description": "Record name of the idea"}
_COLLECTION_ID = {"type": "string", "description": "Record name of the collection"}
_CONTEXT_ID = {"type": "string", "description": "Record name of the context"}
_ITEM_ID = {"type": "string", "description": "Record name of the task or project"}
_ITEM_TYPE = {"type": "string", "enum": ["Task", "Project"], "description": "Type of item (Task or Project)"}
_REALM = {
    "type": "string",
    "enum": ["assess", "decide", "do"],
    "description": "Realm (assess=1, decide=2, do=3)",
}
_NO_ARGS = {"type": "object", "properties": {}}


def get_tools() -> list[Tool]:
    """Get the list of all MCP tools for ADD task management."""
    return [
        # ============================================================================
        # Authentication
        # ============================================================================
        Tool(
            name="authenticate_user",
            description="Authenticate with your Apple ID to access your addTaskManager data. "
                       "Call without a token to get the iCloud sign-in link, then call again with the web auth token. "
                       "Every other tool requires an authenticated session.",
            inputSchema={
                "type": "object",
                "properties": {
                    "web_auth_token": {
                        "type": "string",
                        "description": "CloudKit web auth token from Apple Sign-In"
                    }
                }
            }
        ),
        Tool(
            name="revoke_session",
            description="Sign out: end the current session.",
            inputSchema=_NO_ARGS
        ),

        # ============================================================================
        # Assess Realm Tools (content editing, no contexts or dates)
        # ============================================================================
        Tool(
            name="assess_create_task",
            description="Create a new task in Assess realm (content editing, no contexts/dates).",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Task name/description (max 1000 chars)"},
                    "start_date": {
                        "type": "string",
                        "format": "date-time",
                        "description": "Optional start date (ISO format)"
                    },
                    "priority": {
                        "type": "integer",
                        "minimum": 1,
                        "maximum": 5,
                        "description": "Optional task priority (1 highest - 5 lowest, default 3)"
                    },
                    "project_id": {"type": "string", "description": "Optional record name of the parent project"},
                    "collection_id": {"type": "string", "description": "Optional record name of the parent collection"}
                },
                "required": ["name"]
            }
        ),
        Tool(
            name="assess_edit_task",
            description="Edit task content in Assess realm (name, priority). "
                       "Fails with a realm error if the task is in Decide or Do; move it back to Assess first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "task_id": _TASK_ID,
                    "name": {"type": "string", "description": "Updated task name/description"},
                    "priority": {"type": "integer", "minimum": 1, "maximum": 5, "description": "Updated priority (1-5)"}
                },
                "required": ["task_id"]
            }
        ),
        Tool(
            name="assess_create_project",
            description="Create a new project in Assess realm.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Project name/description (max 1500 chars)"},
                    "start_date": {
                        "type": "string",
                        "format": "date-time",
                        "description": "Optional start date (ISO format)"
                    },
                    "collection_id": {"type": "string", "description": "Optional record name of the parent collection"}
                },
                "required": ["name"]
            }
        ),
        Tool(
            name="assess_edit_project",
            description="Edit project content in Assess realm.",
            inputSchema={
                "type": "object",
                "properties": {
                    "project_id": _PROJECT_ID,
                    "name": {"type": "string", "description": "Updated project name"}
                },
                "required": ["project_id", "name"]
            }
        ),
        Tool(
            name="assess_create_idea",
            description="Capture a new idea (always starts in Assess realm).",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Idea name/details (max 1500 chars)"},
                    "collection_id": {"type": "string", "description": "Optional record name of the parent collection"}
                },
                "required": ["name"]
            }
        ),
        Tool(
            name="assess_edit_idea",
            description="Edit idea content in Assess realm.",
            inputSchema={
                "type": "object",
                "properties": {
                    "idea_id": _IDEA_ID,
                    "name": {"type": "string", "description": "Updated idea name"}
                },
                "required": ["idea_id", "name"]
            }
        ),
        Tool(
            name="assess_create_collection",
            description="Create a new collection for archiving tasks, projects and ideas.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Collection name"}
                },
                "required": ["name"]
            }
        ),
        Tool(
            name="assess_create_context",
            description="Create a new context (e.g. 'home', 'office', 'errands') to assign in Decide realm.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Context name (max 30 chars)"}
                },
                "required": ["name"]
            }
        ),
        Tool(
            name="assess_add_task_to_project",
            description="Add an existing task to a project in Assess realm (task and project must both be in Assess).",
            inputSchema={
                "type": "object",
                "properties": {"task_id": _TASK_ID, "project_id": _PROJECT_ID},
                "required": ["task_id", "project_id"]
            }
        ),
        Tool(
            name="assess_remove_task_from_project",
            description="Remove a task from a project in Assess realm.",
            inputSchema={
                "type": "object",
                "properties": {"task_id": _TASK_ID, "project_id": _PROJECT_ID},
                "required": ["task_id", "project_id"]
            }
        ),
        Tool(
            name="assess_add_task_to_idea",
            description="Add an existing task to an idea in Assess realm.",
            inputSchema={
                "type": "object",
                "properties": {"task_id": _TASK_ID, "idea_id": _IDEA_ID},
                "required": ["task_id", "idea_id"]
            }
        ),
        Tool(
            name="assess_remove_task_from_idea",
            description="Remove a task from an idea in Assess realm.",
            inputSchema={
                "type": "object",
                "properties": {"task_id": _TASK_ID, "idea_id": _IDEA_ID},
                "required": ["task_id", "idea_id"]
            }
        ),
        Tool(
            name="assess_archive_task_to_collection",
            description="Archive a task to a collection (allowed in any realm).",
            inputSchema={
                "type": "object",
                "properties": {"task_id": _TASK_ID, "collection_id": _COLLECTION_ID},
                "required": ["task_id", "collection_id"]
            }
        ),
        Tool(
            name="assess_archive_project_to_collection",
            description="Archive a project to a collection (allowed in any realm).",
            inputSchema={
                "type": "object",
                "properties": {"project_id": _PROJECT_ID, "collection_id": _COLLECTION_ID},
                "required": ["project_id", "collection_id"]
            }
        ),

        # ============================================================================
        # Decide Realm Tools (contexts, dates, alerts, moves out of Decide)
        # ============================================================================
        Tool(
            name="decide_assign_context",
            description="Assign a context to a task or project in Decide realm.",
            inputSchema={
                "type": "object",
                "properties": {
                    "item_id": _ITEM_ID,
                    "item_type": _ITEM_TYPE,
                    "context_id": {"type": "string", "description": "Record name of the context to assign"}
                },
                "required": ["item_id", "item_type", "context_id"]
            }
        ),
        Tool(
            name="decide_set_project_interval",
            description="Set project interval (start date and end date) in Decide realm. "
                       "The end date must be in the future and not before the start date.",
            inputSchema={
                "type": "object",
                "properties": {
                    "project_id": _PROJECT_ID,
                    "start_date": {"type": "string", "format": "date-time", "description": "Start date in ISO format"},
                    "end_date": {"type": "string", "format": "date-time", "description": "End date in ISO format"}
                },
                "required": ["project_id", "start_date", "end_date"]
            }
        ),
        Tool(
            name="decide_set_task_due_date",
            description="Set due date for a task in Decide realm. The due date must be in the future.",
            inputSchema={
                "type": "object",
                "properties": {
                    "task_id": _TASK_ID,
                    "end_date": {"type": "string", "format": "date-time", "description": "Due date in ISO format"}
                },
                "required": ["task_id", "end_date"]
            }
        ),
        Tool(
            name="decide_set_task_alert",
            description="Set a task alert in Decide realm.",
            inputSchema={
                "type": "object",
                "properties": {
                    "task_id": _TASK_ID,
                    "alert": {
                        "type": "string",
                        "format": "date-time",
                        "description": "Alert date and time in ISO format"
                    }
                },
                "required": ["task_id", "alert"]
            }
        ),
        Tool(
            name="decide_move_task_to_do",
            description="Move task to Do realm from Decide realm. Requires a context and a due date that has not passed.",
            inputSchema={
                "type": "object",
                "properties": {"task_id": _TASK_ID},
                "required": ["task_id"]
            }
        ),
        Tool(
            name="decide_move_task_to_assess_from_decide",
            description="Move task to Assess realm from Decide realm. Clears its context and due date.",
            inputSchema={
                "type": "object",
                "properties": {"task_id": _TASK_ID},
                "required": ["task_id"]
            }
        ),
        Tool(
            name="decide_move_project_to_do",
            description="Move project to Do realm from Decide realm. Requires a context and an end date that has not passed.",
            inputSchema={
                "type": "object",
                "properties": {"project_id": _PROJECT_ID},
                "required": ["project_id"]
            }
        ),
        Tool(
            name="decide_move_project_to_assess_from_decide",
            description="Move project to Assess realm from Decide realm. Clears its context and end date.",
            inputSchema={
                "type": "object",
                "properties": {"project_id": _PROJECT_ID},
                "required": ["project_id"]
            }
        ),

        # ============================================================================
        # Do Realm Tools (completion)
        # ============================================================================
        Tool(
            name="do_mark_task_as_done",
            description="Mark a task as completed in Do realm.",
            inputSchema={
                "type": "object",
                "properties": {"task_id": _TASK_ID},
                "required": ["task_id"]
            }
        ),
        Tool(
            name="do_mark_project_as_done",
            description="Mark a project and all of its tasks as completed in Do realm.",
            inputSchema={
                "type": "object",
                "properties": {"project_id": _PROJECT_ID},
                "required": ["project_id"]
            }
        ),

        # ============================================================================
        # General Query Tools
        # ============================================================================
        Tool(
            name="get_tasks_by_realm",
            description="Filter tasks by realm.",
            inputSchema={
                "type": "object",
                "properties": {"realm": _REALM},
                "required": ["realm"]
            }
        ),
        Tool(
            name="get_projects_by_realm",
            description="Filter projects by realm.",
            inputSchema={
                "type": "object",
                "properties": {"realm": _REALM},
                "required": ["realm"]
            }
        ),
        Tool(
            name="get_ideas",
            description="Get all ideas.",
            inputSchema=_NO_ARGS
        ),
        Tool(
            name="get_collections",
            description="Get all collections.",
            inputSchema=_NO_ARGS
        ),
        Tool(
            name="get_contexts",
            description="Get all contexts.",
            inputSchema=_NO_ARGS
        ),
        Tool(
            name="get_tasks_by_context",
            description="Filter tasks by context.",
            inputSchema={
                "type": "object",
                "properties": {"context_id": _CONTEXT_ID},
                "required": ["context_id"]
            }
        ),
        Tool(
            name="move_to_realm",
            description="Move a task or project to a specific realm. "
                       "Assess → Do is allowed as a shortcut; Decide → Do requires a context and a future due date; "
                       "moving back to Assess clears context and due date.",
            inputSchema={
                "type": "object",
                "properties": {"item_id": _ITEM_ID, "item_type": _ITEM_TYPE, "realm": _REALM},
                "required": ["item_id", "item_type", "realm"]
            }
        ),
        Tool(
            name="validate_realm_transition",
            description="Check whether a task or project could move to a realm, without moving it. "
                       "Returns the decision and its reason.",
            inputSchema={
                "type": "object",
                "properties": {"item_id": _ITEM_ID, "item_type": _ITEM_TYPE, "realm": _REALM},
                "required": ["item_id", "item_type", "realm"]
            }
        ),
        Tool(
            name="get_stalled_items_in_decide",
            description="Find stalled items (tasks + projects) in Decide realm: due date already passed.",
            inputSchema=_NO_ARGS
        ),
        Tool(
            name="get_undecided_items_in_decide",
            description="Find undecided items (tasks + projects) in Decide realm: missing context or due date.",
            inputSchema=_NO_ARGS
        ),
        Tool(
            name="get_ready_items_in_decide",
            description="Find items (tasks + projects) in Decide realm that are ready to move to Do.",
            inputSchema=_NO_ARGS
        ),
        Tool(
            name="get_tasks_today_in_do",
            description="Find items due today in Do realm, highest priority first.",
            inputSchema=_NO_ARGS
        ),
        Tool(
            name="get_tasks_tomorrow_in_do",
            description="Find items due tomorrow in Do realm.",
            inputSchema=_NO_ARGS
        ),
        Tool(
            name="get_tasks_soon_in_do",
            description="Find items due soon (in 2 to 7 days) in Do realm.",
            inputSchema=_NO_ARGS
        ),
        Tool(
            name="get_tasks_overdue_in_do",
            description="Find overdue items in Do realm, most overdue first.",
            inputSchema=_NO_ARGS
        ),
    ]
