"""
Tests for the tracking store backends.

The DynamoDB backend is exercised against moto, so no AWS credentials are
needed.
"""

from __future__ import annotations

import asyncio

import boto3
import pytest
from moto import mock_aws

from helpers import make_config
from relay.errors import StoreError
from relay.services.store import (
    DynamoDBTrackingStore,
    InMemoryTrackingStore,
    KeyLocks,
    build_store,
)

TABLE = "pulsepoint-relay-test"


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture()
def aws_env(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture()
def dynamodb(aws_env):
    with mock_aws():
        resource = boto3.resource("dynamodb", region_name="us-east-1")
        resource.create_table(
            TableName=TABLE,
            KeySchema=[{"AttributeName": "key", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "key", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )
        yield resource


class TestInMemoryStore:
    def test_put_get_delete(self):
        store = InMemoryTrackingStore()
        _run(store.put("incident:1", {"closed": False}))
        assert _run(store.get("incident:1")) == {"closed": False}
        _run(store.delete("incident:1"))
        assert _run(store.get("incident:1")) is None

    def test_delete_missing_key_is_noop(self):
        _run(InMemoryTrackingStore().delete("incident:nope"))

    def test_list_by_prefix(self):
        store = InMemoryTrackingStore({"incident:2": {}, "incident:1": {}, "latestIncidentId": "2"})
        assert _run(store.list_keys("incident:")) == ["incident:1", "incident:2"]

    def test_values_are_copied(self):
        store = InMemoryTrackingStore()
        value = {"closed": False}
        _run(store.put("incident:1", value))
        value["closed"] = True
        assert _run(store.get("incident:1")) == {"closed": False}

    def test_rejects_non_json_values(self):
        with pytest.raises(StoreError) as excinfo:
            _run(InMemoryTrackingStore().put("incident:1", {"when": object()}))
        assert excinfo.value.key == "incident:1"

    def test_put_if_absent_only_creates(self):
        store = InMemoryTrackingStore()
        assert _run(store.put_if_absent("incident:1", {"messageId": "a"})) is True
        assert _run(store.put_if_absent("incident:1", {"messageId": "b"})) is False
        assert _run(store.get("incident:1")) == {"messageId": "a"}


class TestDynamoDBStore:
    def test_round_trips_json_values(self, dynamodb):
        store = DynamoDBTrackingStore(TABLE, resource=dynamodb)
        record = {"pulsepointId": "1", "closed": False, "lastUpdated": "2024-03-02T18:30:00.000Z"}
        _run(store.put("incident:1", record))
        assert _run(store.get("incident:1")) == record

    def test_plain_string_values(self, dynamodb):
        store = DynamoDBTrackingStore(TABLE, resource=dynamodb)
        _run(store.put("latestIncidentId", "1001"))
        assert _run(store.get("latestIncidentId")) == "1001"

    def test_missing_key(self, dynamodb):
        assert _run(DynamoDBTrackingStore(TABLE, resource=dynamodb).get("incident:none")) is None

    def test_list_and_delete(self, dynamodb):
        store = DynamoDBTrackingStore(TABLE, resource=dynamodb)
        for key in ("incident:3", "incident:1", "latestIncidentId"):
            _run(store.put(key, {}))
        assert _run(store.list_keys("incident:")) == ["incident:1", "incident:3"]

        _run(store.delete("incident:1"))
        assert _run(store.list_keys("incident:")) == ["incident:3"]

    def test_put_if_absent_is_conditional(self, dynamodb):
        store = DynamoDBTrackingStore(TABLE, resource=dynamodb)
        assert _run(store.put_if_absent("incident:1", {"messageId": "a"})) is True
        assert _run(store.put_if_absent("incident:1", {"messageId": "b"})) is False
        assert _run(store.get("incident:1")) == {"messageId": "a"}

        _run(store.delete("incident:1"))
        assert _run(store.put_if_absent("incident:1", {"messageId": "c"})) is True

    def test_missing_table_raises_store_error(self, dynamodb):
        store = DynamoDBTrackingStore("does-not-exist", resource=dynamodb)
        with pytest.raises(StoreError):
            _run(store.get("incident:1"))
        with pytest.raises(StoreError):
            _run(store.put_if_absent("incident:1", {}))
        with pytest.raises(StoreError):
            _run(store.list_keys("incident:"))


class TestBuildStore:
    def test_memory_backend(self):
        assert isinstance(build_store(make_config()), InMemoryTrackingStore)

    def test_dynamodb_backend(self, dynamodb):
        store = build_store(make_config(store_backend="dynamodb", dynamodb_table=TABLE, aws_region="us-east-1"))
        assert isinstance(store, DynamoDBTrackingStore)
        _run(store.put("incident:1", {"closed": True}))
        assert _run(store.get("incident:1")) == {"closed": True}


class TestKeyLocks:
    def test_same_key_is_serialized(self):
        locks = KeyLocks()
        order = []

        async def _worker(name):
            async with locks("incident:1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        async def _scenario():
            await asyncio.gather(_worker("a"), _worker("b"))

        _run(_scenario())
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    def test_other_keys_do_not_block(self):
        locks = KeyLocks()

        async def _scenario():
            async with locks("incident:1"):
                async with locks("incident:2"):
                    return len(locks)

        assert _run(_scenario()) == 2

    def test_released_locks_are_dropped(self):
        locks = KeyLocks()

        async def _scenario():
            for n in range(50):
                async with locks(f"incident:{n}"):
                    pass

        _run(_scenario())
        assert len(locks) == 0

    def test_lock_survives_while_waited_on(self):
        locks = KeyLocks()

        async def _scenario():
            gate = asyncio.Event()

            async def _holder():
                async with locks("incident:1"):
                    await gate.wait()

            holder = asyncio.create_task(_holder())
            await asyncio.sleep(0)
            waiter = asyncio.create_task(_holder())
            await asyncio.sleep(0)
            gate.set()
            await holder
            held_after_first = len(locks)
            await waiter
            return held_after_first

        assert _run(_scenario()) == 1
        assert len(locks) == 0
