"""Tests for the CloudKit record codec and repository, against a mock transport."""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from mcp.types import INTERNAL_ERROR

from add_core.cloudkit import CloudKitRepository, decode_record, encode_record, from_millis, to_millis
from add_core.config import Settings
from add_core.errors import AuthenticationError, BackendUnavailable, ConcurrentModification
from add_core.realms import Realm
from add_core.schemas import ParentType, Project, RecordType, Task

DUE = datetime(2025, 6, 20, 9, 30, tzinfo=timezone.utc)


def task_payload(record_name="task_1", **fields):
    payload_fields = {
        "taskName": {"value": "Book flights"},
        "realmId": {"value": 2},
        "taskPriority": {"value": 1},
        "context": {"value": {"recordName": "ctx_home", "action": "NONE"}},
        "endDate": {"value": to_millis(DUE)},
        "lastModified": {"value": to_millis(DUE - timedelta(days=3))},
    }
    payload_fields.update(fields)
    return {"recordType": "Task", "recordName": record_name, "recordChangeTag": "tag1", "fields": payload_fields}


def make_repository(handler) -> CloudKitRepository:
    settings = Settings(
        _env_file=None,
        cloudkit_container_id="iCloud.com.example.tasks",
        cloudkit_api_token="api-token",
        cloudkit_environment="development",
    )
    return CloudKitRepository(settings, web_auth_token="web-token", transport=httpx.MockTransport(handler))


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0)
        return httpx.Response(status, json=body)

    def body(self, index=0) -> dict:
        return json.loads(self.requests[index].content)


class TestCodec:
    """Test record encoding and decoding."""

    def test_decode_task(self):
        task = decode_record(task_payload())
        assert isinstance(task, Task)
        assert task.id == "task_1"
        assert task.name == "Book flights"
        assert task.realm == Realm.DECIDE
        assert task.priority == 1
        assert task.context_id == "ctx_home"
        assert task.end_date == DUE
        assert task.change_tag == "tag1"

    def test_unset_realm_decodes_as_assess(self):
        assert decode_record(task_payload(realmId={"value": 0})).realm == Realm.ASSESS
        fields = task_payload()
        del fields["fields"]["realmId"]
        assert decode_record(fields).realm == Realm.ASSESS

    def test_unknown_parent_type_ignored(self):
        task = decode_record(task_payload(taskParentType={"value": "Folder"}))
        assert task.parent_type is None

    def test_encode_task(self):
        task = Task(
            id="task_2",
            name="Call plumber",
            realm=Realm.DO,
            priority=2,
            context_id="ctx_home",
            project_id="project_1",
            parent_id="project_1",
            parent_type=ParentType.PROJECT,
            end_date=DUE,
        )
        payload = encode_record(task)
        fields = payload["fields"]
        assert payload["recordType"] == "Task"
        assert payload["recordName"] == "task_2"
        assert "recordChangeTag" not in payload
        assert fields["taskName"] == {"value": "Call plumber"}
        assert fields["realmId"] == {"value": 3}
        assert fields["context"] == {"value": {"recordName": "ctx_home", "action": "NONE"}}
        assert fields["endDate"] == {"value": to_millis(DUE)}
        assert fields["taskParentType"] == {"value": "Project"}

    def test_encode_project_references_tasks(self):
        project = Project(id="project_1", name="Move house", task_ids=["task_1", "task_2"], change_tag="t9")
        payload = encode_record(project)
        assert payload["recordType"] == "Projects"
        assert payload["recordChangeTag"] == "t9"
        assert [ref["recordName"] for ref in payload["fields"]["tasks"]["value"]] == ["task_1", "task_2"]

    def test_decoded_project_keeps_task_order(self):
        payload = encode_record(Project(id="project_1", name="Move house", task_ids=["b", "a"]))
        assert decode_record(payload).task_ids == ["b", "a"]

    def test_unknown_record_type(self):
        with pytest.raises(BackendUnavailable):
            decode_record({"recordType": "Users", "recordName": "u1", "fields": {}})

    def test_malformed_record(self):
        with pytest.raises(BackendUnavailable):
            decode_record(task_payload(taskPriority={"value": 9}))

    @pytest.mark.parametrize("realm_id", [4, -1, "decide"])
    def test_out_of_range_realm_is_backend_error(self, realm_id):
        with pytest.raises(BackendUnavailable) as exc_info:
            decode_record(task_payload(realmId={"value": realm_id}))
        assert exc_info.value.code == INTERNAL_ERROR
        assert "Malformed Task record task_1" in exc_info.value.message

    def test_millis_are_utc(self):
        assert from_millis(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
        assert to_millis(None) is None


class TestRequests:
    """Test request shape and error mapping."""

    @pytest.mark.asyncio
    async def test_fetch_builds_database_path(self):
        recorder = Recorder((200, {"records": [task_payload()]}))
        task = await make_repository(recorder).fetch(RecordType.TASK, "task_1")
        assert task.id == "task_1"
        request = recorder.requests[0]
        assert request.url.path == "/database/1/iCloud.com.example.tasks/development/private/records/lookup"
        assert request.url.params["ckAPIToken"] == "api-token"
        assert request.url.params["ckWebAuthToken"] == "web-token"
        assert recorder.body() == {"records": [{"recordName": "task_1"}]}

    @pytest.mark.asyncio
    async def test_fetch_not_found(self):
        recorder = Recorder((200, {"records": [{"recordName": "task_9", "serverErrorCode": "NOT_FOUND"}]}))
        assert await make_repository(recorder).fetch(RecordType.TASK, "task_9") is None

    @pytest.mark.asyncio
    async def test_fetch_wrong_type_is_missing(self):
        recorder = Recorder((200, {"records": [task_payload()]}))
        assert await make_repository(recorder).fetch(RecordType.PROJECT, "task_1") is None

    @pytest.mark.asyncio
    async def test_conflict_raises_concurrent_modification(self):
        conflict = {
            "recordName": "task_1",
            "serverErrorCode": "CONFLICT",
            "serverRecord": {"recordChangeTag": "tag2"},
        }
        recorder = Recorder((200, {"records": [conflict]}))
        with pytest.raises(ConcurrentModification):
            await make_repository(recorder).save(decode_record(task_payload()))
        operation = recorder.body()["operations"][0]
        assert operation["operationType"] == "update"
        assert operation["record"]["recordChangeTag"] == "tag1"

    @pytest.mark.asyncio
    async def test_new_record_is_created(self):
        saved = task_payload("task_new")
        recorder = Recorder((200, {"records": [saved]}))
        task = Task(id="task_new", name="Book flights")
        await make_repository(recorder).save(task)
        assert recorder.body()["operations"][0]["operationType"] == "create"
        assert "atomic" not in recorder.body()

    @pytest.mark.asyncio
    async def test_save_many_is_atomic(self):
        recorder = Recorder((200, {"records": [task_payload("task_1"), task_payload("task_2")]}))
        saved = await make_repository(recorder).save_many([
            decode_record(task_payload("task_1")),
            decode_record(task_payload("task_2")),
        ])
        assert [task.id for task in saved] == ["task_1", "task_2"]
        assert recorder.body()["atomic"] is True

    @pytest.mark.asyncio
    async def test_server_error_is_backend_unavailable(self):
        recorder = Recorder((500, {"reason": "internal"}))
        with pytest.raises(BackendUnavailable):
            await make_repository(recorder).list_records(RecordType.IDEA)

    @pytest.mark.asyncio
    async def test_transport_error_is_backend_unavailable(self):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(BackendUnavailable):
            await make_repository(unreachable).list_records(RecordType.IDEA)

    @pytest.mark.asyncio
    async def test_rejected_token_is_authentication_error(self):
        recorder = Recorder((421, {"serverErrorCode": "AUTHENTICATION_REQUIRED"}))
        with pytest.raises(AuthenticationError):
            await make_repository(recorder).list_records(RecordType.CONTEXT)


class TestQueries:
    """Test query filters and paging."""

    @pytest.mark.asyncio
    async def test_query_by_realm_filters_realm_id(self):
        recorder = Recorder((200, {"records": [task_payload()]}))
        tasks = await make_repository(recorder).query_by_realm(RecordType.TASK, Realm.DECIDE)
        assert [task.id for task in tasks] == ["task_1"]
        query = recorder.body()["query"]
        assert query["recordType"] == "Task"
        assert query["filterBy"] == [
            {"fieldName": "realmId", "comparator": "EQUALS", "fieldValue": {"value": 2}}
        ]

    @pytest.mark.asyncio
    async def test_query_by_context_uses_reference(self):
        recorder = Recorder((200, {"records": []}))
        await make_repository(recorder).query_by_context("ctx_home")
        assert recorder.body()["query"]["filterBy"][0]["fieldValue"] == {
            "value": {"recordName": "ctx_home"},
            "type": "REFERENCE",
        }

    @pytest.mark.asyncio
    async def test_date_range_bounds_and_missing_dates(self):
        undated = task_payload("task_undated")
        del undated["fields"]["endDate"]
        recorder = Recorder((200, {"records": [task_payload(), undated]}))
        lower = DUE - timedelta(days=1)
        records = await make_repository(recorder).query_by_date_range(
            RecordType.TASK, Realm.DO, "end_date", lower=lower
        )
        assert [task.id for task in records] == ["task_1"]
        filters = recorder.body()["query"]["filterBy"]
        assert filters[1] == {
            "fieldName": "endDate",
            "comparator": "GREATER_THAN_OR_EQUALS",
            "fieldValue": {"value": to_millis(lower)},
        }
        assert len(filters) == 2

    @pytest.mark.asyncio
    async def test_query_follows_continuation_marker(self):
        recorder = Recorder(
            (200, {"records": [task_payload("task_1")], "continuationMarker": "page2"}),
            (200, {"records": [task_payload("task_2")]}),
        )
        tasks = await make_repository(recorder).list_records(RecordType.TASK)
        assert [task.id for task in tasks] == ["task_1", "task_2"]
        assert recorder.body(1)["continuationMarker"] == "page2"


class TestVerifyToken:
    """Test web auth token verification."""

    @pytest.mark.asyncio
    async def test_valid_token(self):
        recorder = Recorder((200, {"userRecordName": "_abc123"}))
        assert await make_repository(recorder).verify_token("fresh-token") == "_abc123"
        request = recorder.requests[0]
        assert request.method == "GET"
        assert request.url.path.endswith("/development/public/users/current")
        assert request.url.params["ckWebAuthToken"] == "fresh-token"

    @pytest.mark.asyncio
    async def test_rejected_token(self):
        recorder = Recorder((421, {"serverErrorCode": "AUTHENTICATION_REQUIRED"}))
        assert await make_repository(recorder).verify_token("stale-token") is None

    @pytest.mark.asyncio
    async def test_empty_token_skips_request(self):
        recorder = Recorder()
        assert await make_repository(recorder).verify_token("") is None
        assert recorder.requests == []
