import itertools
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from gatekeeper.core.errors import CollaboratorFailure, InvalidTransitionError, RequestNotFoundError
from gatekeeper.models.identity import UserProfile
from gatekeeper.models.request import AccessRequest, RequestStatus, RequestUser, TargetResource, utc_now

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (
    RequestStatus.APPROVAL_GRANTED,
    RequestStatus.APPROVAL_REJECTED,
    RequestStatus.CANCELED,
)


class RequestStore(ABC):
    """
    The 'Memory' of the system and the only component allowed to mutate a request.
    Every post-creation change goes through transition(), which is guarded by
    the expected status (PENDING) and version.
    """

    @abstractmethod
    def create(self, request: AccessRequest) -> AccessRequest:
        """Assigns an id, version 0 and timestamps, then persists the request with its resources and users."""

    @abstractmethod
    def get(self, request_id: int) -> AccessRequest:
        """Raises RequestNotFoundError when the id is unknown."""

    @abstractmethod
    def get_many(self, request_ids: Iterable[int]) -> List[AccessRequest]:
        """Returns the requests that exist; unknown ids are skipped."""

    @abstractmethod
    def list_by_status(self, status: RequestStatus) -> List[AccessRequest]:
        """Requests in the given stored status, oldest first."""

    @abstractmethod
    def list_by_requestor(self, requestor_id: str) -> List[AccessRequest]:
        pass

    @abstractmethod
    def list_granted_since(self, start: datetime) -> List[AccessRequest]:
        """Granted requests whose authorization_start is at or after start."""

    @abstractmethod
    def transition(self, request_id: int, expected_version: int, new_status: RequestStatus,
                   actor: UserProfile, at: datetime, comments: Optional[str],
                   hours: Optional[int] = None) -> AccessRequest:
        """
        Moves a PENDING request into a terminal status.
        Raises InvalidTransitionError if the request is no longer PENDING or was
        changed since expected_version was read.
        """

    def list_completed(self) -> List[AccessRequest]:
        """Every non-pending request, most recently updated first."""
        completed: List[AccessRequest] = []
        for status in TERMINAL_STATUSES:
            completed.extend(self.list_by_status(status))
        return sorted(completed, key=lambda r: r.updated_at or r.created_at, reverse=True)


def _apply_transition(request: AccessRequest, new_status: RequestStatus, actor: UserProfile,
                      at: datetime, comments: Optional[str], hours: Optional[int]) -> None:
    request.status = new_status
    request.version += 1
    request.approver_comments = comments
    request.actioned_by_user_id = actor.user_id
    request.actioned_by_user_name = actor.name
    request.actioned_at = at
    request.updated_at = at
    if hours is not None:
        request.hours = hours
    if new_status is RequestStatus.APPROVAL_GRANTED:
        request.authorization_start = at


class InMemoryRequestStore(RequestStore):
    """Process-local store. A single lock linearizes transitions on every request."""

    def __init__(self, clock=utc_now):
        self._items: Dict[int, AccessRequest] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._clock = clock

    def create(self, request: AccessRequest) -> AccessRequest:
        with self._lock:
            stored = request.copy()
            stored.id = next(self._ids)
            stored.version = 0
            stored.created_at = stored.updated_at = self._clock()
            self._items[stored.id] = stored
            return stored.copy()

    def get(self, request_id: int) -> AccessRequest:
        with self._lock:
            stored = self._items.get(request_id)
            if stored is None:
                raise RequestNotFoundError(request_id)
            return stored.copy()

    def get_many(self, request_ids: Iterable[int]) -> List[AccessRequest]:
        with self._lock:
            return [self._items[i].copy() for i in request_ids if i in self._items]

    def list_by_status(self, status: RequestStatus) -> List[AccessRequest]:
        with self._lock:
            matches = [r.copy() for r in self._items.values() if r.status is status]
        return sorted(matches, key=lambda r: r.created_at)

    def list_by_requestor(self, requestor_id: str) -> List[AccessRequest]:
        with self._lock:
            return [r.copy() for r in self._items.values() if r.requestor_id.lower() == requestor_id.lower()]

    def list_granted_since(self, start: datetime) -> List[AccessRequest]:
        with self._lock:
            return [
                r.copy() for r in self._items.values()
                if r.status is RequestStatus.APPROVAL_GRANTED
                and r.authorization_start is not None
                and r.authorization_start >= start
            ]

    def transition(self, request_id: int, expected_version: int, new_status: RequestStatus,
                   actor: UserProfile, at: datetime, comments: Optional[str],
                   hours: Optional[int] = None) -> AccessRequest:
        with self._lock:
            stored = self._items.get(request_id)
            if stored is None:
                raise RequestNotFoundError(request_id)
            if stored.status is not RequestStatus.PENDING or stored.version != expected_version:
                raise InvalidTransitionError(request_id)
            _apply_transition(stored, new_status, actor, at, comments, hours)
            return stored.copy()


# --- DynamoDB ---

COUNTER_KEY = 0
STATUS_INDEX = "StatusIndex"
# Only items with an authorization_start are projected into this index
GRANTED_INDEX = "GrantedIndex"


def _to_epoch(val: Optional[datetime]) -> Optional[Decimal]:
    """DynamoDB requires Decimal for numbers, not Python floats."""
    if val is None:
        return None
    return Decimal(str(val.timestamp()))


def _from_epoch(val: Any) -> Optional[datetime]:
    if val is None:
        return None
    return datetime.fromtimestamp(float(val), timezone.utc)


def _to_item(request: AccessRequest) -> Dict[str, Any]:
    item = {
        "id": request.id,
        "requestor_id": request.requestor_id,
        "requestor_name": request.requestor_name,
        "requestor_email": request.requestor_email,
        "account": request.account,
        "region": request.region,
        "hours": request.hours,
        "platform": request.platform,
        "request_reason": request.request_reason,
        "ticket_id": request.ticket_id or "N/A",
        "status": request.status.value,
        "version": request.version,
        "resources": [
            {
                "resource_id": r.resource_id,
                "platform": r.platform,
                "name": r.name,
                "ip": r.ip,
                "application": r.application,
                "status": r.status,
            }
            for r in request.resources
        ],
        "users": [{"user_id": u.user_id, "name": u.name, "email": u.email} for u in request.users],
        "created_at": _to_epoch(request.created_at),
        "updated_at": _to_epoch(request.updated_at),
    }
    # Optional attributes are omitted rather than stored as nulls so the GSI stays sparse
    return {k: v for k, v in item.items() if v is not None}


def _from_item(item: Dict[str, Any]) -> AccessRequest:
    ticket_id = item.get("ticket_id")
    return AccessRequest(
        id=int(item["id"]),
        requestor_id=item["requestor_id"],
        requestor_name=item.get("requestor_name", ""),
        requestor_email=item.get("requestor_email", ""),
        account=item["account"],
        region=item.get("region", ""),
        hours=int(item["hours"]),
        platform=item.get("platform", ""),
        request_reason=item.get("request_reason", ""),
        ticket_id=None if ticket_id == "N/A" else ticket_id,
        resources=[TargetResource(**r) for r in item.get("resources", [])],
        users=[RequestUser(**u) for u in item.get("users", [])],
        status=RequestStatus(item["status"]),
        version=int(item.get("version", 0)),
        approver_comments=item.get("approver_comments"),
        actioned_by_user_id=item.get("actioned_by_user_id"),
        actioned_by_user_name=item.get("actioned_by_user_name"),
        created_at=_from_epoch(item.get("created_at")),
        updated_at=_from_epoch(item.get("updated_at")),
        authorization_start=_from_epoch(item.get("authorization_start")),
        actioned_at=_from_epoch(item.get("actioned_at")),
    )


class DynamoRequestStore(RequestStore):
    """
    Adapter for DynamoDB.
    Expects a numeric 'id' hash key and two GSIs:
      - 'StatusIndex' (status / created_at): every request, since every item carries both keys.
      - 'GrantedIndex' (status / authorization_start): sparse, only granted requests are projected.
    """
    def __init__(self, table_name: str, region_name: str = "us-east-1", table=None, clock=utc_now):
        if table is None:
            dynamodb = boto3.resource("dynamodb", region_name=region_name)
            table = dynamodb.Table(table_name)
        self.table = table
        self._clock = clock

    def _next_id(self) -> int:
        # Atomic counter lives in a reserved item so ids stay numeric and unique
        try:
            resp = self.table.update_item(
                Key={"id": COUNTER_KEY},
                UpdateExpression="ADD request_counter :one",
                ExpressionAttributeValues={":one": 1},
                ReturnValues="UPDATED_NEW",
            )
        except ClientError as e:
            raise CollaboratorFailure(f"Failed to allocate a request id: {e}")
        return int(resp["Attributes"]["request_counter"])

    def create(self, request: AccessRequest) -> AccessRequest:
        stored = request.copy()
        stored.id = self._next_id()
        stored.version = 0
        stored.created_at = stored.updated_at = self._clock()
        try:
            self.table.put_item(
                Item=_to_item(stored),
                ConditionExpression="attribute_not_exists(id)",
            )
        except ClientError as e:
            raise CollaboratorFailure(f"Failed to save access request {stored.id}: {e}")
        return stored

    def get(self, request_id: int) -> AccessRequest:
        try:
            resp = self.table.get_item(Key={"id": request_id}, ConsistentRead=True)
        except ClientError as e:
            raise CollaboratorFailure(f"Failed to read access request {request_id}: {e}")
        item = resp.get("Item")
        if not item or request_id == COUNTER_KEY:
            raise RequestNotFoundError(request_id)
        return _from_item(item)

    def get_many(self, request_ids: Iterable[int]) -> List[AccessRequest]:
        found = []
        for request_id in request_ids:
            try:
                found.append(self.get(request_id))
            except RequestNotFoundError:
                logger.debug(f"Skipping unknown request id {request_id}")
        return found

    def _query_all(self, **kwargs) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        try:
            while True:
                resp = self.table.query(**kwargs)
                items.extend(resp.get("Items", []))
                last_key = resp.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except ClientError as e:
            raise CollaboratorFailure(f"Failed to query access requests: {e}")
        return items

    def list_by_status(self, status: RequestStatus) -> List[AccessRequest]:
        items = self._query_all(
            IndexName=STATUS_INDEX,
            KeyConditionExpression=Key("status").eq(status.value),
        )
        return sorted((_from_item(i) for i in items), key=lambda r: r.created_at)

    def list_by_requestor(self, requestor_id: str) -> List[AccessRequest]:
        items: List[Dict[str, Any]] = []
        kwargs = {"FilterExpression": Attr("requestor_id").eq(requestor_id)}
        try:
            while True:
                resp = self.table.scan(**kwargs)
                items.extend(resp.get("Items", []))
                last_key = resp.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except ClientError as e:
            raise CollaboratorFailure(f"Failed to scan access requests: {e}")
        return [_from_item(i) for i in items]

    def list_granted_since(self, start: datetime) -> List[AccessRequest]:
        items = self._query_all(
            IndexName=GRANTED_INDEX,
            KeyConditionExpression=(
                Key("status").eq(RequestStatus.APPROVAL_GRANTED.value)
                & Key("authorization_start").gte(_to_epoch(start))
            ),
        )
        return [_from_item(i) for i in items]

    def transition(self, request_id: int, expected_version: int, new_status: RequestStatus,
                   actor: UserProfile, at: datetime, comments: Optional[str],
                   hours: Optional[int] = None) -> AccessRequest:
        updates = [
            "#s = :status",
            "version = :next",
            "approver_comments = :comments",
            "actioned_by_user_id = :uid",
            "actioned_by_user_name = :uname",
            "actioned_at = :at",
            "updated_at = :at",
        ]
        values = {
            ":status": new_status.value,
            ":pending": RequestStatus.PENDING.value,
            ":expected": expected_version,
            ":next": expected_version + 1,
            ":comments": comments or "",
            ":uid": actor.user_id,
            ":uname": actor.name,
            ":at": _to_epoch(at),
        }
        if hours is not None:
            updates.append("hours = :hours")
            values[":hours"] = hours
        if new_status is RequestStatus.APPROVAL_GRANTED:
            updates.append("authorization_start = :at")

        try:
            resp = self.table.update_item(
                Key={"id": request_id},
                UpdateExpression="set " + ", ".join(updates),
                ConditionExpression="#s = :pending AND version = :expected",
                ExpressionAttributeNames={"#s": "status"},
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                # Distinguish a lost race from a request that never existed
                self.get(request_id)
                raise InvalidTransitionError(request_id)
            raise CollaboratorFailure(f"Failed to update status for {request_id}: {e}")
        return _from_item(resp["Attributes"])
