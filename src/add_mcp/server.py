"""addTaskManager MCP Server - Expose the ADD task store to AI assistants."""
import sys
import asyncio
import logging
import traceback
from datetime import datetime
from typing import Any, Callable, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.shared.exceptions import McpError
from mcp.types import (
    ErrorData,
    INTERNAL_ERROR,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    Tool,
    TextContent,
)

from add_core.cloudkit import CloudKitRepository
from add_core.config import Settings, get_settings
from add_core.errors import AddError
from add_core.guard import MutationGuard
from add_core.queries import ItemQueries
from add_core.repository import InMemoryRepository, ItemRepository
from add_core.schemas import UserSession
from add_core.sessions import SessionStore

from . import tools
from . import handlers


# Configure logging to stderr (stdout carries the MCP stream)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr,
    force=True
)
logger = logging.getLogger("add-mcp")


# Tools callable without an authenticated session
PUBLIC_TOOLS = {"authenticate_user"}


class ServerRuntime:
    """Connection state: settings, session store, store access and the current session.

    With the CloudKit backend every request gets a repository bound to the
    session's web auth token. With the memory backend (or an injected
    repository) one store is shared by all requests.
    """

    def __init__(
        self,
        settings: Settings,
        sessions: Optional[SessionStore] = None,
        repository: Optional[ItemRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.clock = clock
        self.sessions = sessions or SessionStore.from_settings(settings, clock=clock)
        self.current_session: Optional[UserSession] = None
        self._shared_repository = repository
        if self._shared_repository is None and settings.backend == "memory":
            self._shared_repository = InMemoryRepository()

    def repository(self, session: Optional[UserSession] = None) -> ItemRepository:
        if self._shared_repository is not None:
            return self._shared_repository
        return CloudKitRepository(self.settings, web_auth_token=session.web_auth_token if session else None)

    async def verify_token(self, token: str) -> Optional[str]:
        return await self.repository().verify_token(token)

    def guard(self, session: Optional[UserSession]) -> MutationGuard:
        return MutationGuard(self.repository(session), clock=self.clock)

    def queries(self, session: Optional[UserSession]) -> ItemQueries:
        return ItemQueries(self.repository(session), clock=self.clock)


_runtime: Optional[ServerRuntime] = None


def get_runtime() -> ServerRuntime:
    """Build the process-wide runtime on first use."""
    global _runtime
    if _runtime is None:
        settings = get_settings()
        settings.validate_runtime()
        _runtime = ServerRuntime(settings)
        logger.info(
            f"MCP Server using {settings.backend} store "
            f"(container: {settings.cloudkit_container_id or '-'}, environment: {settings.cloudkit_environment})"
        )
    return _runtime


# MCP Server instance
app = Server("addtaskmanager-mcp")


@app.list_tools()
async def list_tools() -> list[Tool]:
    """List available MCP tools for ADD task management."""
    return tools.get_tools()


# ============================================================================
# Tool Dispatch
# ============================================================================

async def dispatch(name: str, arguments: Optional[dict], runtime: ServerRuntime) -> list[TextContent]:
    """
    Run one tool call against a runtime.

    Raises:
        McpError: METHOD_NOT_FOUND for unknown tools, INVALID_REQUEST without a
            live session, otherwise the code carried by the add_core error
    """
    # Map tool names to handler functions
    handler_map = {
        # Authentication handlers
        "authenticate_user": handlers.handle_authenticate_user,
        "revoke_session": handlers.handle_revoke_session,
        # Assess handlers
        "assess_create_task": handlers.handle_assess_create_task,
        "assess_edit_task": handlers.handle_assess_edit_task,
        "assess_create_project": handlers.handle_assess_create_project,
        "assess_edit_project": handlers.handle_assess_edit_project,
        "assess_create_idea": handlers.handle_assess_create_idea,
        "assess_edit_idea": handlers.handle_assess_edit_idea,
        "assess_create_collection": handlers.handle_assess_create_collection,
        "assess_create_context": handlers.handle_assess_create_context,
        "assess_add_task_to_project": handlers.handle_assess_add_task_to_project,
        "assess_remove_task_from_project": handlers.handle_assess_remove_task_from_project,
        "assess_add_task_to_idea": handlers.handle_assess_add_task_to_idea,
        "assess_remove_task_from_idea": handlers.handle_assess_remove_task_from_idea,
        "assess_archive_task_to_collection": handlers.handle_assess_archive_task_to_collection,
        "assess_archive_project_to_collection": handlers.handle_assess_archive_project_to_collection,
        # Decide handlers
        "decide_assign_context": handlers.handle_decide_assign_context,
        "decide_set_project_interval": handlers.handle_decide_set_project_interval,
        "decide_set_task_due_date": handlers.handle_decide_set_task_due_date,
        "decide_set_task_alert": handlers.handle_decide_set_task_alert,
        "decide_move_task_to_do": handlers.handle_decide_move_task_to_do,
        "decide_move_task_to_assess_from_decide": handlers.handle_decide_move_task_to_assess_from_decide,
        "decide_move_project_to_do": handlers.handle_decide_move_project_to_do,
        "decide_move_project_to_assess_from_decide": handlers.handle_decide_move_project_to_assess_from_decide,
        # Do handlers
        "do_mark_task_as_done": handlers.handle_do_mark_task_as_done,
        "do_mark_project_as_done": handlers.handle_do_mark_project_as_done,
        # Query handlers
        "get_tasks_by_realm": handlers.handle_get_tasks_by_realm,
        "get_projects_by_realm": handlers.handle_get_projects_by_realm,
        "get_ideas": handlers.handle_get_ideas,
        "get_collections": handlers.handle_get_collections,
        "get_contexts": handlers.handle_get_contexts,
        "get_tasks_by_context": handlers.handle_get_tasks_by_context,
        "move_to_realm": handlers.handle_move_to_realm,
        "validate_realm_transition": handlers.handle_validate_realm_transition,
        "get_stalled_items_in_decide": handlers.handle_get_stalled_items_in_decide,
        "get_undecided_items_in_decide": handlers.handle_get_undecided_items_in_decide,
        "get_ready_items_in_decide": handlers.handle_get_ready_items_in_decide,
        "get_tasks_today_in_do": handlers.handle_get_tasks_today_in_do,
        "get_tasks_tomorrow_in_do": handlers.handle_get_tasks_tomorrow_in_do,
        "get_tasks_soon_in_do": handlers.handle_get_tasks_soon_in_do,
        "get_tasks_overdue_in_do": handlers.handle_get_tasks_overdue_in_do,
    }

    handler = handler_map.get(name)
    if handler is None:
        logger.warning(f"Unknown tool requested: {name}")
        raise McpError(ErrorData(code=METHOD_NOT_FOUND, message=f"Unknown tool: {name}"))

    arguments = dict(arguments or {})
    session = runtime.current_session
    if name not in PUBLIC_TOOLS:
        session = runtime.sessions.validate(session.session_id if session else None)
        if session is None:
            runtime.current_session = None
            raise McpError(ErrorData(
                code=INVALID_REQUEST,
                message="Authentication required or session expired. Call authenticate_user first.",
            ))

    try:
        handlers.validate_args(name, arguments)
        content, runtime.current_session = await handler(arguments, runtime, session)
        return content

    except AddError as e:
        if e.code == INTERNAL_ERROR:
            logger.error(f"{type(e).__name__} during {name} call: {e.message}")
        else:
            logger.warning(f"{type(e).__name__} during {name} call: {e.message}")
        raise McpError(ErrorData(code=e.code, message=e.message)) from e

    except McpError:
        raise

    except Exception as e:
        # Catch-all for unexpected errors
        logger.error(f"Unexpected error during {name} call:")
        logger.error(f"  Error type: {type(e).__name__}")
        logger.error(f"  Error message: {str(e)}")
        logger.error(f"  Traceback:\n{traceback.format_exc()}")
        raise McpError(ErrorData(code=INTERNAL_ERROR, message=f"{type(e).__name__}: {str(e)}")) from e


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle MCP tool calls by delegating to the handlers."""
    logger.info(f"Tool call: {name}")
    return await dispatch(name, arguments, get_runtime())


async def main():
    """Run the MCP server."""
    runtime = get_runtime()
    logging.getLogger().setLevel(runtime.settings.log_level.upper())
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
