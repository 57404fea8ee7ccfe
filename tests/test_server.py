"""Tests for MCP tool dispatch, authentication gating and error mapping."""
from datetime import timedelta

import pytest
from mcp.shared.exceptions import McpError
from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND

from add_core.config import Settings
from add_core.errors import BackendUnavailable
from add_core.realms import Realm
from add_core.repository import InMemoryRepository
from add_core.schemas import RecordType
from add_mcp.server import ServerRuntime, dispatch, list_tools
from conftest import NOW, make_project, make_task


@pytest.fixture
def runtime(repo, clock):
    settings = Settings(_env_file=None, backend="memory", cloudkit_environment="development")
    return ServerRuntime(settings, repository=repo, clock=clock)


async def sign_in(runtime):
    await dispatch("authenticate_user", {"web_auth_token": "token-123"}, runtime)
    return runtime.current_session


async def call(name, arguments, runtime) -> str:
    content = await dispatch(name, arguments, runtime)
    assert len(content) == 1
    return content[0].text


class TestToolList:
    """Test tool definitions."""

    @pytest.mark.asyncio
    async def test_every_tool_has_a_handler(self, runtime):
        await sign_in(runtime)
        for tool in await list_tools():
            try:
                await dispatch(tool.name, {}, runtime)
            except McpError as e:
                assert e.error.code != METHOD_NOT_FOUND, tool.name

    @pytest.mark.asyncio
    async def test_tool_names_are_unique(self):
        names = [tool.name for tool in await list_tools()]
        assert len(names) == len(set(names))
        assert "move_to_realm" in names
        assert "validate_realm_transition" in names


class TestAuthenticationGate:
    """Test that tools require a live session."""

    @pytest.mark.asyncio
    async def test_unauthenticated_call_rejected(self, runtime):
        with pytest.raises(McpError) as exc_info:
            await dispatch("get_ideas", {}, runtime)
        assert exc_info.value.error.code == INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_authenticate_opens_session(self, runtime):
        text = await call("authenticate_user", {"web_auth_token": "token-123"}, runtime)
        assert "Authenticated as local_token-12" in text
        assert runtime.current_session is not None
        assert "Ideas (1)" in await call("get_ideas", {}, runtime)

    @pytest.mark.asyncio
    async def test_reauthenticating_replaces_session(self, runtime):
        first = await sign_in(runtime)
        second = await sign_in(runtime)
        assert second.session_id != first.session_id
        assert runtime.sessions.validate(first.session_id) is None
        assert runtime.sessions.active_sessions() == [second]

    @pytest.mark.asyncio
    async def test_failed_reauthentication_keeps_session(self, runtime):
        session = await sign_in(runtime)
        with pytest.raises(McpError):
            await dispatch("authenticate_user", {}, runtime)
        assert runtime.current_session == session
        assert runtime.sessions.validate(session.session_id) == session

    @pytest.mark.asyncio
    async def test_authenticate_without_token(self, runtime):
        with pytest.raises(McpError) as exc_info:
            await dispatch("authenticate_user", {}, runtime)
        assert exc_info.value.error.code == INVALID_REQUEST
        assert "icloud.com/signin" in exc_info.value.error.message

    @pytest.mark.asyncio
    async def test_revoked_session_rejected(self, runtime):
        await sign_in(runtime)
        await call("revoke_session", {}, runtime)
        assert runtime.current_session is None
        with pytest.raises(McpError) as exc_info:
            await dispatch("get_contexts", {}, runtime)
        assert exc_info.value.error.code == INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_expired_session_rejected(self, runtime):
        session = await sign_in(runtime)
        runtime.current_session = session.model_copy(update={"expires_at": NOW - timedelta(seconds=1)})
        runtime.sessions._sessions[session.session_id] = runtime.current_session
        with pytest.raises(McpError) as exc_info:
            await dispatch("get_contexts", {}, runtime)
        assert exc_info.value.error.code == INVALID_REQUEST
        assert runtime.current_session is None


class TestErrorMapping:
    """Test mapping of policy errors to MCP error codes."""

    @pytest.mark.asyncio
    async def test_unknown_tool(self, runtime):
        with pytest.raises(McpError) as exc_info:
            await dispatch("delete_everything", {}, runtime)
        assert exc_info.value.error.code == METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_missing_required_argument(self, runtime):
        await sign_in(runtime)
        with pytest.raises(McpError) as exc_info:
            await dispatch("decide_set_task_due_date", {"task_id": "task_1", "end_date": ""}, runtime)
        assert exc_info.value.error.code == INVALID_PARAMS
        assert "end_date" in exc_info.value.error.message

    @pytest.mark.asyncio
    async def test_realm_violation_is_invalid_params(self, runtime, repo):
        repo.seed(make_task("task_1"))
        await sign_in(runtime)
        with pytest.raises(McpError) as exc_info:
            await dispatch("do_mark_task_as_done", {"task_id": "task_1"}, runtime)
        assert exc_info.value.error.code == INVALID_PARAMS
        assert "Move it to Do realm first" in exc_info.value.error.message

    @pytest.mark.asyncio
    async def test_invalid_realm_label(self, runtime):
        await sign_in(runtime)
        with pytest.raises(McpError) as exc_info:
            await dispatch("get_tasks_by_realm", {"realm": "someday"}, runtime)
        assert exc_info.value.error.code == INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_backend_failure_is_internal_error(self, clock):
        class UnreachableRepository(InMemoryRepository):
            async def list_records(self, record_type):
                raise BackendUnavailable("CloudKit is unreachable")

        settings = Settings(_env_file=None, backend="memory")
        runtime = ServerRuntime(settings, repository=UnreachableRepository(), clock=clock)
        await sign_in(runtime)
        with pytest.raises(McpError) as exc_info:
            await dispatch("get_collections", {}, runtime)
        assert exc_info.value.error.code == INTERNAL_ERROR


class TestWorkflow:
    """Test a task moving through Assess, Decide and Do via tools."""

    @pytest.mark.asyncio
    async def test_full_add_cycle(self, runtime, repo):
        await sign_in(runtime)
        await call("assess_create_task", {"name": "Restring guitar", "priority": 2}, runtime)
        task = (await repo.query_by_realm(RecordType.TASK, Realm.ASSESS))[0]

        text = await call("move_to_realm", {"item_id": task.id, "item_type": "Task", "realm": "decide"}, runtime)
        assert "Allowed: Assess → Decide" in text

        undecided = await call("get_undecided_items_in_decide", {}, runtime)
        assert "needs: context + due date" in undecided

        with pytest.raises(McpError):
            await dispatch("decide_move_task_to_do", {"task_id": task.id}, runtime)

        await call("decide_assign_context", {"item_id": task.id, "item_type": "Task", "context_id": "ctx_home"}, runtime)
        due = (NOW + timedelta(days=1)).isoformat()
        await call("decide_set_task_due_date", {"task_id": task.id, "end_date": due}, runtime)
        assert task.id in await call("get_ready_items_in_decide", {}, runtime)

        await call("decide_move_task_to_do", {"task_id": task.id}, runtime)
        assert task.id in await call("get_tasks_tomorrow_in_do", {}, runtime)

        text = await call("do_mark_task_as_done", {"task_id": task.id}, runtime)
        assert text.startswith("Completed task Restring guitar")

    @pytest.mark.asyncio
    async def test_validate_realm_transition_is_dry_run(self, runtime, repo):
        repo.seed(make_task("task_1", realm=Realm.DECIDE))
        await sign_in(runtime)
        text = await call(
            "validate_realm_transition", {"item_id": "task_1", "item_type": "Task", "realm": "do"}, runtime
        )
        assert text.startswith("Not allowed: Decide → Do")
        assert "missing context" in text
        assert repo.writes == 0

    @pytest.mark.asyncio
    async def test_project_completion_reports_cascade(self, runtime, repo):
        repo.seed(make_task("task_1", realm=Realm.DO))
        repo.seed(make_task("task_2", realm=Realm.DO))
        repo.seed(make_project("project_1", realm=Realm.DO, task_ids=["task_1", "task_2"]))
        await sign_in(runtime)
        text = await call("do_mark_project_as_done", {"project_id": "project_1"}, runtime)
        assert "with 2 tasks" in text

    @pytest.mark.asyncio
    async def test_overdue_lines_count_days(self, runtime, repo):
        repo.seed(make_task("task_1", realm=Realm.DO, end_date=NOW - timedelta(days=3)))
        await sign_in(runtime)
        text = await call("get_tasks_overdue_in_do", {}, runtime)
        assert "3 days overdue" in text
