"""
Unit tests for the request stores (in-memory and DynamoDB adapter).
"""
from datetime import timedelta

import pytest
from botocore.exceptions import ClientError

from conftest import T0, linux, make_caller
from gatekeeper.adapters.state_store import DynamoRequestStore
from gatekeeper.core.errors import CollaboratorFailure, InvalidTransitionError, RequestNotFoundError
from gatekeeper.models.identity import Role
from gatekeeper.models.request import AccessRequest, RequestStatus, RequestUser

APPROVER = make_caller("aboss", Role.APPROVER).profile


def _request(requestor="jdoe", **overrides):
    fields = dict(
        requestor_id=requestor, requestor_name="Jane", requestor_email=f"{requestor}@example.com",
        account="QA1", region="us-east-1", hours=4, platform="Linux",
        resources=[linux("i-1")], users=[RequestUser("gk-jdoe", "Jane", "jdoe@example.com")],
    )
    fields.update(overrides)
    return AccessRequest(**fields)


class TestInMemoryStore:

    def test_create_assigns_ids_and_version(self, store):
        first = store.create(_request())
        second = store.create(_request())

        assert (first.id, second.id) == (1, 2)
        assert first.version == 0
        assert first.status is RequestStatus.PENDING
        assert first.created_at == T0

    def test_get_unknown(self, store):
        with pytest.raises(RequestNotFoundError, match="does not exist"):
            store.get(42)

    def test_returned_copies_cannot_mutate_store(self, store):
        created = store.create(_request())
        created.resources[0].status = "Online"
        created.hours = 99

        stored = store.get(created.id)
        assert stored.hours == 4
        assert stored.resources[0].status == "Unknown"

    def test_transition_bumps_version(self, store):
        created = store.create(_request())
        granted = store.transition(created.id, 0, RequestStatus.APPROVAL_GRANTED, APPROVER, T0, "ok", 2)

        assert granted.version == 1
        assert granted.hours == 2
        assert granted.authorization_start == T0
        assert granted.actioned_by_user_name == APPROVER.name

    def test_stale_version_rejected(self, store):
        created = store.create(_request())
        store.transition(created.id, 0, RequestStatus.CANCELED, APPROVER, T0, "gone")

        with pytest.raises(InvalidTransitionError):
            store.transition(created.id, 0, RequestStatus.APPROVAL_GRANTED, APPROVER, T0, "ok")
        assert store.get(created.id).status is RequestStatus.CANCELED

    def test_rejection_has_no_authorization_start(self, store):
        created = store.create(_request())
        rejected = store.transition(created.id, 0, RequestStatus.APPROVAL_REJECTED, APPROVER, T0, "no")
        assert rejected.authorization_start is None
        assert rejected.actioned_at == T0

    def test_listing(self, store, clock):
        a = store.create(_request())
        clock.advance(minutes=1)
        b = store.create(_request(requestor="rroe"))
        store.transition(a.id, 0, RequestStatus.APPROVAL_GRANTED, APPROVER, T0, "ok")

        assert [r.id for r in store.list_by_status(RequestStatus.PENDING)] == [b.id]
        assert [r.id for r in store.list_by_requestor("RROE")] == [b.id]
        assert [r.id for r in store.list_granted_since(T0 - timedelta(hours=1))] == [a.id]
        assert store.list_granted_since(T0 + timedelta(seconds=1)) == []
        assert [r.id for r in store.get_many([b.id, 99, a.id])] == [b.id, a.id]


def _client_error(code):
    return ClientError({"Error": {"Code": code, "Message": code}}, "UpdateItem")


class _FakeTable:
    """Just enough of a DynamoDB Table resource for the store adapter."""

    def __init__(self, pages=None):
        self.items = {}
        self.pages = list(pages or [])
        self.queries = []
        self.fail_with = None

    def _check(self):
        if self.fail_with:
            raise _client_error(self.fail_with)

    def put_item(self, Item, ConditionExpression=None):  # noqa: N803 - boto3 shape
        self._check()
        self.items[Item["id"]] = dict(Item)

    def get_item(self, Key, ConsistentRead=False):  # noqa: N803
        self._check()
        item = self.items.get(Key["id"])
        return {"Item": dict(item)} if item else {}

    def update_item(self, Key, UpdateExpression, ExpressionAttributeValues,  # noqa: N803
                    ConditionExpression=None, ExpressionAttributeNames=None, ReturnValues=None):
        self._check()
        values = ExpressionAttributeValues
        if UpdateExpression.startswith("ADD"):
            counter = self.items.setdefault(Key["id"], {"id": Key["id"], "request_counter": 0})
            counter["request_counter"] += values[":one"]
            return {"Attributes": {"request_counter": counter["request_counter"]}}

        item = self.items.get(Key["id"])
        if item is None or item["status"] != values[":pending"] or item["version"] != values[":expected"]:
            raise _client_error("ConditionalCheckFailedException")
        names = ExpressionAttributeNames or {}
        for assignment in UpdateExpression[len("set "):].split(", "):
            attr, placeholder = assignment.split(" = ")
            item[names.get(attr, attr)] = values[placeholder]
        return {"Attributes": dict(item)}

    def query(self, **kwargs):
        self.queries.append(kwargs)
        if self.pages:
            return self.pages.pop(0)
        # DynamoDB only projects items carrying every key attribute of the index
        keys = INDEX_KEYS[kwargs["IndexName"]]
        condition = kwargs["KeyConditionExpression"]
        return {"Items": [
            dict(item) for item in self.items.values()
            if all(k in item for k in keys) and _matches(condition, item)
        ]}


INDEX_KEYS = {
    "StatusIndex": ("status", "created_at"),
    "GrantedIndex": ("status", "authorization_start"),
}


def _matches(condition, item):
    expression = condition.get_expression()
    operator = expression["operator"]
    if operator == "AND":
        return all(_matches(c, item) for c in expression["values"])
    key, value = expression["values"]
    if operator == "=":
        return item.get(key.name) == value
    if operator == ">=":
        return key.name in item and item[key.name] >= value
    raise AssertionError(f"Unsupported key condition {operator}")


@pytest.fixture
def table():
    return _FakeTable()


@pytest.fixture
def dynamo(table, clock):
    return DynamoRequestStore("requests", table=table, clock=clock)


class TestDynamoStore:

    def test_create_and_get(self, dynamo, table):
        created = dynamo.create(_request(ticket_id=None))

        assert created.id == 1
        assert table.items[1]["ticket_id"] == "N/A"
        assert "authorization_start" not in table.items[1]

        loaded = dynamo.get(1)
        assert loaded.ticket_id is None
        assert loaded.created_at == T0
        assert loaded.resources == created.resources
        assert loaded.users == created.users

    def test_counter_item_is_not_a_request(self, dynamo):
        dynamo.create(_request())
        with pytest.raises(RequestNotFoundError):
            dynamo.get(0)

    def test_transition(self, dynamo):
        created = dynamo.create(_request())
        granted = dynamo.transition(created.id, 0, RequestStatus.APPROVAL_GRANTED, APPROVER,
                                    T0 + timedelta(minutes=5), "ok", 6)

        assert granted.status is RequestStatus.APPROVAL_GRANTED
        assert granted.version == 1
        assert granted.hours == 6
        assert granted.authorization_start == T0 + timedelta(minutes=5)
        assert granted.actioned_by_user_id == "aboss"

    def test_lost_race_is_invalid_transition(self, dynamo):
        created = dynamo.create(_request())
        dynamo.transition(created.id, 0, RequestStatus.APPROVAL_REJECTED, APPROVER, T0, "no")

        with pytest.raises(InvalidTransitionError):
            dynamo.transition(created.id, 0, RequestStatus.APPROVAL_GRANTED, APPROVER, T0, "ok")

    def test_transition_of_unknown_request(self, dynamo):
        with pytest.raises(RequestNotFoundError):
            dynamo.transition(7, 0, RequestStatus.CANCELED, APPROVER, T0, "gone")

    def test_other_client_errors_become_collaborator_failures(self, dynamo, table):
        table.fail_with = "ProvisionedThroughputExceededException"
        with pytest.raises(CollaboratorFailure):
            dynamo.create(_request())

    def test_list_by_status_follows_pages(self, clock):
        source = DynamoRequestStore("requests", table=_FakeTable(), clock=clock)
        first = source.create(_request())
        clock.advance(minutes=1)
        second = source.create(_request())
        items = source.table.items
        table = _FakeTable(pages=[
            {"Items": [items[second.id]], "LastEvaluatedKey": {"id": second.id}},
            {"Items": [items[first.id]]},
        ])
        store = DynamoRequestStore("requests", table=table, clock=clock)

        pending = store.list_by_status(RequestStatus.PENDING)

        assert [r.id for r in pending] == [first.id, second.id]
        assert table.queries[0]["IndexName"] == "StatusIndex"
        assert table.queries[1]["ExclusiveStartKey"] == {"id": second.id}

    def test_every_status_is_listed_through_the_indexes(self, dynamo, table, clock):
        first = dynamo.create(_request())
        clock.advance(minutes=1)
        second = dynamo.create(_request())
        clock.advance(minutes=1)
        third = dynamo.create(_request())
        dynamo.transition(second.id, 0, RequestStatus.APPROVAL_REJECTED, APPROVER, clock.now, "no")
        clock.advance(minutes=1)
        dynamo.transition(third.id, 0, RequestStatus.APPROVAL_GRANTED, APPROVER, clock.now, "ok")

        assert [r.id for r in dynamo.list_by_status(RequestStatus.PENDING)] == [first.id]
        assert [r.id for r in dynamo.list_completed()] == [third.id, second.id]
        assert [r.id for r in dynamo.list_granted_since(T0)] == [third.id]
        assert dynamo.list_granted_since(clock.now + timedelta(seconds=1)) == []
        assert table.queries[-1]["IndexName"] == "GrantedIndex"
