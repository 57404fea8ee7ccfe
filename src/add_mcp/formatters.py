"""Formatting functions for MCP responses.

Records arrive as typed models from add_core; everything returned to the
assistant is plain text built here.
"""
from datetime import datetime
from typing import Iterable, Optional

from add_core.queries import DEFAULT_PRIORITY
from add_core.schemas import Collection, Context, Idea, Project, Task, TransitionDecision, UserSession


PRIORITY_LABELS = {
    1: "highest",
    2: "high",
    3: "normal",
    4: "low",
    5: "lowest",
}

REALM_EMOJI = {
    1: "🔍",  # Assess
    2: "🧭",  # Decide
    3: "✅",  # Do
}


def format_date(value: Optional[datetime]) -> str:
    """Format a timestamp in the server's local time zone."""
    if value is None:
        return "not set"
    return value.astimezone().strftime("%Y-%m-%d %H:%M")


def format_priority(priority: int) -> str:
    return f"{priority} ({PRIORITY_LABELS.get(priority, 'unknown')})"


def format_task(task: Task) -> str:
    """Format a task for display."""
    context_info = f"\nContext: {task.context_id}" if task.context_id else ""
    start_info = f"\nStart: {format_date(task.start_date)}" if task.start_date else ""
    due_info = f"\nDue: {format_date(task.end_date)}" if task.end_date else ""
    alert_info = f"\nAlert: {task.alert}" if task.alert else ""
    project_info = f"\nProject: {task.project_id}" if task.project_id else ""
    idea_info = f"\nIdea: {task.idea_id}" if task.idea_id else ""
    collection_info = f"\nCollection: {task.collection_id}" if task.collection_id else ""

    return f"""{REALM_EMOJI[int(task.realm)]} **{task.name}**
ID: {task.id}
Realm: {task.realm.title}
Priority: {format_priority(task.priority)}{context_info}{start_info}{due_info}{alert_info}{project_info}{idea_info}{collection_info}
Last modified: {format_date(task.last_modified)}"""


def format_project(project: Project) -> str:
    """Format a project for display."""
    context_info = f"\nContext: {project.context_id}" if project.context_id else ""
    interval_info = ""
    if project.start_date or project.end_date:
        interval_info = f"\nInterval: {format_date(project.start_date)} → {format_date(project.end_date)}"
    collection_info = f"\nCollection: {project.collection_id}" if project.collection_id else ""

    return f"""{REALM_EMOJI[int(project.realm)]} **{project.name}** (project)
ID: {project.id}
Realm: {project.realm.title}
Tasks: {len(project.task_ids)}{context_info}{interval_info}{collection_info}
Last modified: {format_date(project.last_modified)}"""


def format_item(item) -> str:
    """Format a task or project for display."""
    if isinstance(item, Project):
        return format_project(item)
    return format_task(item)


def format_idea(idea: Idea) -> str:
    """Format an idea for display."""
    tasks_info = f"\nDerived tasks: {', '.join(idea.task_ids)}" if idea.task_ids else ""
    collection_info = f"\nCollection: {idea.collection_id}" if idea.collection_id else ""
    return f"""💡 **{idea.name}**
ID: {idea.id}{tasks_info}{collection_info}
Last modified: {format_date(idea.last_modified)}"""


def format_context(context: Context) -> str:
    return f"- {context.name} (ID: {context.id})"


def format_collection(collection: Collection) -> str:
    return f"- {collection.name} (ID: {collection.id}, created {format_date(collection.created_at)})"


def format_decision(decision: TransitionDecision) -> str:
    """Format a realm transition decision."""
    verdict = "Allowed" if decision.allowed else "Not allowed"
    notes = []
    if decision.clears_schedule:
        notes.append("context and due date will be cleared")
    if decision.advisory:
        notes.append("Decide was skipped")
    notes_info = f"\nNote: {'; '.join(notes)}" if notes else ""
    return (f"{verdict}: {decision.current_realm.title} → {decision.target_realm.title}\n"
            f"Reason: {decision.reason}{notes_info}")


def format_session(session: UserSession) -> str:
    return (f"Authenticated as {session.user_record_name}\n"
            f"Session: {session.session_id}\n"
            f"Expires: {format_date(session.expires_at)}")


# ============================================================================
# Classification lines
# ============================================================================

def format_kind(item) -> str:
    return "project" if isinstance(item, Project) else "task"


def format_undecided_line(item) -> str:
    """One line for an undecided item, naming what it still needs."""
    needs = []
    if not item.context_id:
        needs.append("context")
    if item.end_date is None:
        needs.append("due date")
    return f"- [{format_kind(item)}] {item.name} (ID: {item.id}) - needs: {' + '.join(needs)}"


def format_overdue_line(item, now: datetime) -> str:
    """One line for an item past its due date, with whole days overdue."""
    days = (now - item.end_date).days
    overdue = "due earlier today" if days == 0 else f"{days} day{'s' if days != 1 else ''} overdue"
    return f"- [{format_kind(item)}] {item.name} (ID: {item.id}) - {overdue} (was due {format_date(item.end_date)})"


def format_due_line(item) -> str:
    """One line for an item with a due date ahead."""
    priority = getattr(item, "priority", DEFAULT_PRIORITY)
    context_info = f", context {item.context_id}" if item.context_id else ""
    return (f"- [{format_kind(item)}] {item.name} (ID: {item.id}) - due {format_date(item.end_date)}, "
            f"priority {format_priority(priority)}{context_info}")


def format_list(title: str, entries: Iterable[str], empty: str, separator: str = "\n") -> str:
    """Join entries under a header with a count, or return the empty message."""
    entries = list(entries)
    if not entries:
        return empty
    return f"{title} ({len(entries)}):\n\n" + separator.join(entries)
