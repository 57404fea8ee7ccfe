"""CloudKit Web Services implementation of the repository facade.

Speaks the CloudKit JSON REST API over httpx:
- POST records/lookup  fetch by record name
- POST records/query   filtered, sorted queries (paged by continuationMarker)
- POST records/modify  create/update/delete, conditional on recordChangeTag
- GET  users/current   exchange a web auth token for the user record name

Payloads are decoded into the typed record models here and nowhere else.
Dates travel as epoch milliseconds; references as {recordName, action}.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import httpx
from pydantic import ValidationError

from .config import Settings
from .errors import AuthenticationError, BackendUnavailable, ConcurrentModification, InvalidRealmValue
from .realms import Realm, to_realm
from .repository import DATE_FIELDS, ItemRepository
from .schemas import (
    AnyRecord,
    Collection,
    Context,
    Idea,
    ParentType,
    Project,
    RecordType,
    Task,
)

logger = logging.getLogger("add-core.cloudkit")

# Record type names in the CloudKit schema
CLOUDKIT_RECORD_TYPES: dict[RecordType, str] = {
    RecordType.TASK: "Task",
    RecordType.PROJECT: "Projects",
    RecordType.IDEA: "Ideas",
    RecordType.CONTEXT: "Contexts",
    RecordType.COLLECTION: "Collections",
}
RECORD_TYPES_BY_CLOUDKIT = {name: record_type for record_type, name in CLOUDKIT_RECORD_TYPES.items()}

# Model date field → CloudKit field
DATE_FIELD_NAMES = {
    "start_date": "startDate",
    "end_date": "endDate",
    "last_modified": "lastModified",
}

NAME_FIELDS: dict[RecordType, str] = {
    RecordType.TASK: "taskName",
    RecordType.PROJECT: "projectName",
    RecordType.IDEA: "ideaName",
    RecordType.CONTEXT: "contextName",
    RecordType.COLLECTION: "collectionName",
}

# HTTP statuses CloudKit uses for a missing or rejected web auth token
AUTH_FAILURE_STATUSES = {401, 421}

QUERY_PAGE_SIZE = 200


# ============================================================================
# Field codecs
# ============================================================================

def to_millis(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def from_millis(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _field(value: Any) -> dict:
    return {"value": value}


def _reference(record_name: Optional[str]) -> dict:
    if record_name is None:
        return _field(None)
    return _field({"recordName": record_name, "action": "NONE"})


def _reference_list(record_names: Sequence[str]) -> dict:
    return _field([{"recordName": name, "action": "NONE"} for name in record_names])


def _value(fields: dict, name: str) -> Any:
    entry = fields.get(name)
    if not isinstance(entry, dict):
        return None
    return entry.get("value")


def _reference_name(fields: dict, name: str) -> Optional[str]:
    value = _value(fields, name)
    if isinstance(value, dict):
        return value.get("recordName")
    return None


def _reference_names(fields: dict, name: str) -> list[str]:
    value = _value(fields, name) or []
    return [ref["recordName"] for ref in value if isinstance(ref, dict) and ref.get("recordName")]


def _decode_realm(value: Optional[int]) -> Realm:
    # Core Data leaves realmId at 0 until a realm is chosen
    if value in (None, 0):
        return Realm.ASSESS
    return to_realm(value)


def _decode_parent_type(value: Optional[str]) -> Optional[ParentType]:
    try:
        return ParentType(value)
    except ValueError:
        return None


# ============================================================================
# Record codecs
# ============================================================================

def encode_record(record: AnyRecord) -> dict:
    """Encode a record model as a CloudKit record dictionary."""
    record_type = record.record_type
    fields = {
        NAME_FIELDS[record_type]: _field(record.name),
        "uniqueId": _field(record.id),
        "lastModified": _field(to_millis(record.last_modified)),
    }

    if isinstance(record, Task):
        fields.update({
            "realmId": _field(int(record.realm)),
            "taskPriority": _field(record.priority),
            "context": _reference(record.context_id),
            "projects": _reference(record.project_id),
            "ideas": _reference(record.idea_id),
            "collection": _reference(record.collection_id),
            "startDate": _field(to_millis(record.start_date)),
            "endDate": _field(to_millis(record.end_date)),
            "localNotification": _field(record.alert),
            "orderInParent": _field(record.order_in_parent),
            "taskParentId": _field(record.parent_id),
            "taskParentType": _field(record.parent_type.value if record.parent_type else None),
        })
    elif isinstance(record, Project):
        fields.update({
            "realmId": _field(int(record.realm)),
            "context": _reference(record.context_id),
            "collection": _reference(record.collection_id),
            "tasks": _reference_list(record.task_ids),
            "startDate": _field(to_millis(record.start_date)),
            "endDate": _field(to_millis(record.end_date)),
        })
    elif isinstance(record, Idea):
        fields.update({
            "realmId": _field(int(record.realm)),
            "collection": _reference(record.collection_id),
            "tasks": _reference_list(record.task_ids),
        })
    elif isinstance(record, Collection):
        fields["creationDate"] = _field(to_millis(record.created_at))

    payload = {
        "recordType": CLOUDKIT_RECORD_TYPES[record_type],
        "recordName": record.id,
        "fields": fields,
    }
    if record.change_tag:
        payload["recordChangeTag"] = record.change_tag
    return payload


def decode_record(payload: dict) -> AnyRecord:
    """
    Decode a CloudKit record dictionary into its record model.

    Raises:
        BackendUnavailable: If the record type is unknown or the fields are malformed
    """
    record_type = RECORD_TYPES_BY_CLOUDKIT.get(payload.get("recordType"))
    record_name = payload.get("recordName")
    if record_type is None:
        raise BackendUnavailable(f"Unexpected CloudKit record type {payload.get('recordType')!r}")

    fields = payload.get("fields", {})
    data = {
        "id": record_name,
        "name": _value(fields, NAME_FIELDS[record_type]),
        "change_tag": payload.get("recordChangeTag"),
    }
    last_modified = from_millis(_value(fields, "lastModified"))
    if last_modified is None and isinstance(payload.get("modified"), dict):
        last_modified = from_millis(payload["modified"].get("timestamp"))
    if last_modified is not None:
        data["last_modified"] = last_modified

    try:
        if record_type == RecordType.TASK:
            data.update(
                realm=_decode_realm(_value(fields, "realmId")),
                priority=_value(fields, "taskPriority") or 3,
                context_id=_reference_name(fields, "context"),
                project_id=_reference_name(fields, "projects"),
                idea_id=_reference_name(fields, "ideas"),
                collection_id=_reference_name(fields, "collection"),
                start_date=from_millis(_value(fields, "startDate")),
                end_date=from_millis(_value(fields, "endDate")),
                alert=_value(fields, "localNotification"),
                order_in_parent=_value(fields, "orderInParent"),
                parent_id=_value(fields, "taskParentId"),
                parent_type=_decode_parent_type(_value(fields, "taskParentType")),
            )
            return Task.model_validate(data)
        if record_type == RecordType.PROJECT:
            data.update(
                realm=_decode_realm(_value(fields, "realmId")),
                context_id=_reference_name(fields, "context"),
                collection_id=_reference_name(fields, "collection"),
                task_ids=_reference_names(fields, "tasks"),
                start_date=from_millis(_value(fields, "startDate")),
                end_date=from_millis(_value(fields, "endDate")),
            )
            return Project.model_validate(data)
        if record_type == RecordType.IDEA:
            data.update(
                collection_id=_reference_name(fields, "collection"),
                task_ids=_reference_names(fields, "tasks"),
            )
            return Idea.model_validate(data)
        if record_type == RecordType.CONTEXT:
            return Context.model_validate(data)
        created_at = from_millis(_value(fields, "creationDate"))
        if created_at is not None:
            data["created_at"] = created_at
        return Collection.model_validate(data)
    except ValidationError as e:
        raise BackendUnavailable(f"Malformed {record_type.value} record {record_name}: {e.errors()[0]['msg']}") from None
    except InvalidRealmValue as e:
        raise BackendUnavailable(f"Malformed {record_type.value} record {record_name}: {e.message}") from None


# ============================================================================
# Repository
# ============================================================================

class CloudKitRepository(ItemRepository):
    """ItemRepository backed by a CloudKit container."""

    def __init__(
        self,
        settings: Settings,
        web_auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.web_auth_token = web_auth_token
        self._transport = transport

    def _database_path(self, scope: Optional[str] = None) -> str:
        return (
            f"/database/1/{self.settings.cloudkit_container_id}/"
            f"{self.settings.cloudkit_environment}/{scope or self.settings.cloudkit_database}"
        )

    def _params(self, web_auth_token: Optional[str] = None) -> dict:
        params = {"ckAPIToken": self.settings.cloudkit_api_token}
        token = web_auth_token or self.web_auth_token
        if token:
            params["ckWebAuthToken"] = token
        return params

    async def _request(
        self,
        method: str,
        endpoint: str,
        body: Optional[dict] = None,
        scope: Optional[str] = None,
        web_auth_token: Optional[str] = None,
    ) -> dict:
        path = f"{self._database_path(scope)}/{endpoint}"
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.cloudkit_api_url,
                timeout=self.settings.request_timeout_s,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, params=self._params(web_auth_token), json=body)
                if response.status_code in AUTH_FAILURE_STATUSES:
                    raise AuthenticationError(
                        "CloudKit rejected the web auth token. Please authenticate again."
                    )
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"CloudKit {endpoint} failed with HTTP {e.response.status_code}: {e.response.text[:200]}")
            raise BackendUnavailable(f"CloudKit {endpoint} failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"CloudKit {endpoint} request error: {e}")
            raise BackendUnavailable(f"CloudKit is unreachable: {e}") from e
        except ValueError as e:
            raise BackendUnavailable(f"CloudKit {endpoint} returned invalid JSON") from e

    async def _query(
        self,
        record_type: RecordType,
        filters: Optional[list[dict]] = None,
        sort_by: Optional[list[dict]] = None,
    ) -> list:
        query = {"recordType": CLOUDKIT_RECORD_TYPES[record_type]}
        if filters:
            query["filterBy"] = filters
        if sort_by:
            query["sortBy"] = sort_by

        records = []
        marker = None
        while True:
            body = {"query": query, "resultsLimit": QUERY_PAGE_SIZE}
            if marker:
                body["continuationMarker"] = marker
            result = await self._request("POST", "records/query", body)
            for payload in result.get("records", []):
                if "serverErrorCode" in payload:
                    raise BackendUnavailable(
                        f"CloudKit query error {payload['serverErrorCode']}: {payload.get('reason', '')}"
                    )
                records.append(decode_record(payload))
            marker = result.get("continuationMarker")
            if not marker:
                break
        logger.debug(f"CloudKit query {record_type.value} returned {len(records)} records")
        return records

    @staticmethod
    def _filter(field_name: str, comparator: str, value: Any, value_type: Optional[str] = None) -> dict:
        field_value = {"value": value}
        if value_type:
            field_value["type"] = value_type
        return {"fieldName": field_name, "comparator": comparator, "fieldValue": field_value}

    def _raise_record_error(self, payload: dict) -> None:
        code = payload.get("serverErrorCode")
        record_name = payload.get("recordName", "?")
        if code == "CONFLICT":
            server_record = payload.get("serverRecord") or {}
            raise ConcurrentModification(record_name, None, server_record.get("recordChangeTag"))
        raise BackendUnavailable(f"CloudKit error {code} for {record_name}: {payload.get('reason', '')}")

    # ========================================================================
    # ItemRepository
    # ========================================================================

    async def fetch(self, record_type: RecordType, record_id: str) -> Optional[AnyRecord]:
        result = await self._request("POST", "records/lookup", {"records": [{"recordName": record_id}]})
        payloads = result.get("records", [])
        if not payloads:
            return None
        payload = payloads[0]
        if payload.get("serverErrorCode") == "NOT_FOUND":
            return None
        if "serverErrorCode" in payload:
            self._raise_record_error(payload)
        record = decode_record(payload)
        if record.record_type != record_type:
            return None
        return record

    async def query_by_realm(self, record_type: RecordType, realm: Realm) -> list:
        return await self._query(
            record_type,
            filters=[self._filter("realmId", "EQUALS", int(realm))],
            sort_by=[{"fieldName": "lastModified", "ascending": False}],
        )

    async def query_by_context(self, context_id: str) -> list[Task]:
        return await self._query(
            RecordType.TASK,
            filters=[self._filter("context", "EQUALS", {"recordName": context_id}, "REFERENCE")],
            sort_by=[{"fieldName": "lastModified", "ascending": False}],
        )

    async def query_by_date_range(
        self,
        item_type: RecordType,
        realm: Realm,
        field: str,
        lower: Optional[datetime] = None,
        upper: Optional[datetime] = None,
    ) -> list:
        if field not in DATE_FIELDS:
            raise ValueError(f"Cannot range-query field {field}")
        field_name = DATE_FIELD_NAMES[field]
        filters = [self._filter("realmId", "EQUALS", int(realm))]
        if lower is not None:
            filters.append(self._filter(field_name, "GREATER_THAN_OR_EQUALS", to_millis(lower)))
        if upper is not None:
            filters.append(self._filter(field_name, "LESS_THAN_OR_EQUALS", to_millis(upper)))
        records = await self._query(item_type, filters, [{"fieldName": field_name, "ascending": True}])
        # Open-ended queries can return records that have no value in the field
        return sorted((r for r in records if getattr(r, field) is not None), key=lambda r: getattr(r, field))

    async def list_records(self, record_type: RecordType) -> list:
        return await self._query(record_type, sort_by=[{"fieldName": "lastModified", "ascending": False}])

    async def _modify(self, records: Sequence[AnyRecord], atomic: bool) -> list:
        operations = [
            {
                "operationType": "update" if record.change_tag else "create",
                "record": encode_record(record),
            }
            for record in records
        ]
        body = {"operations": operations}
        if atomic:
            body["atomic"] = True
        result = await self._request("POST", "records/modify", body)
        saved = []
        for payload in result.get("records", []):
            if "serverErrorCode" in payload:
                self._raise_record_error(payload)
            saved.append(decode_record(payload))
        if len(saved) != len(records):
            raise BackendUnavailable(f"CloudKit saved {len(saved)} of {len(records)} records")
        return saved

    async def save(self, record: AnyRecord) -> AnyRecord:
        saved = (await self._modify([record], atomic=False))[0]
        logger.debug(f"Saved {saved.record_type.value} {saved.id} to CloudKit")
        return saved

    async def save_many(self, records: Sequence[AnyRecord]) -> list:
        if not records:
            return []
        ids = [record.id for record in records]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Batch names the same record more than once: {ids}")
        saved = await self._modify(records, atomic=True)
        logger.debug(f"Saved {len(saved)} records to CloudKit in one batch")
        return saved

    async def delete(self, record_id: str) -> bool:
        body = {"operations": [{"operationType": "forceDelete", "record": {"recordName": record_id}}]}
        result = await self._request("POST", "records/modify", body)
        for payload in result.get("records", []):
            if payload.get("serverErrorCode") == "NOT_FOUND":
                return False
            if "serverErrorCode" in payload:
                self._raise_record_error(payload)
        return True

    async def verify_token(self, token: str) -> Optional[str]:
        if not token:
            return None
        try:
            result = await self._request("GET", "users/current", scope="public", web_auth_token=token)
        except AuthenticationError:
            return None
        return result.get("userRecordName")
