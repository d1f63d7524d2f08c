"""Tracking store: a key-value interface over string keys and JSON values.

Two backends implement ``TrackingStore``:

* ``InMemoryTrackingStore`` — a dict; used by tests and demo mode.
* ``DynamoDBTrackingStore`` — one item per key in a DynamoDB table with a
  string partition key ``key`` and the value serialized as JSON in
  ``value``.  boto3 is synchronous, so calls run in a worker thread.

Backends raise ``StoreError`` for every failure.  ``KeyLocks`` hands out one
``asyncio.Lock`` per key so that a single writer touches a key at a time.

``put_if_absent`` is an atomic create (a conditional put on DynamoDB); it is
how processes sharing one table agree on who announces a new incident.
``KeyLocks`` only serializes work inside one process.
"""

from __future__ import annotations

import asyncio
import copy
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from relay.errors import StoreError
from relay.utils.config import Config
from relay.utils.logger import get_logger

logger = get_logger(__name__)


class TrackingStore(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def put(self, key: str, value: Any) -> None: ...

    async def put_if_absent(self, key: str, value: Any) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys(self, prefix: str) -> List[str]: ...


class KeyLocks:
    """Per-key ``asyncio.Lock`` registry shared by every run of a manager.

    ``async with locks(key):`` holds the key's lock.  A lock lives only while
    someone holds or waits for it, so the registry stays as small as the
    number of keys currently being worked on.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def __call__(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class InMemoryTrackingStore:
    """Dict-backed store.  Values are deep-copied in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._data.get(key))

    async def put(self, key: str, value: Any) -> None:
        # Reject values the DynamoDB backend could not store either
        try:
            json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise StoreError(f"Value for {key} is not JSON-serializable: {exc}", key=key) from exc
        self._data[key] = copy.deepcopy(value)

    async def put_if_absent(self, key: str, value: Any) -> bool:
        if key in self._data:
            return False
        try:
            json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise StoreError(f"Value for {key} is not JSON-serializable: {exc}", key=key) from exc
        self._data[key] = copy.deepcopy(value)
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str) -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    def snapshot(self) -> Dict[str, Any]:
        """Copy of everything stored; for tests and debugging."""
        return copy.deepcopy(self._data)


class DynamoDBTrackingStore:
    """DynamoDB-backed store.

    Args:
        table_name: Existing table with partition key ``key`` (type S).
        region_name: AWS region; boto3's default chain applies when ``None``.
        resource: Pre-built ``boto3.resource("dynamodb")`` (tests).
    """

    def __init__(
        self,
        table_name: str,
        region_name: Optional[str] = None,
        resource: Any = None,
    ) -> None:
        dynamodb = resource or boto3.resource("dynamodb", region_name=region_name)
        self._table = dynamodb.Table(table_name)
        self._table_name = table_name

    async def get(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self._get, key)

    async def put(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._put, key, value)

    async def put_if_absent(self, key: str, value: Any) -> bool:
        return await asyncio.to_thread(self._put_if_absent, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    async def list_keys(self, prefix: str) -> List[str]:
        return await asyncio.to_thread(self._list_keys, prefix)

    def _get(self, key: str) -> Optional[Any]:
        try:
            item = self._table.get_item(Key={"key": key}).get("Item")
        except (ClientError, BotoCoreError) as exc:
            raise StoreError(f"DynamoDB get failed for {key}: {exc}", key=key) from exc
        if item is None:
            return None
        try:
            return json.loads(item["value"])
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"Stored value for {key} is not valid JSON: {exc}", key=key) from exc

    def _put(self, key: str, value: Any) -> None:
        try:
            body = json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise StoreError(f"Value for {key} is not JSON-serializable: {exc}", key=key) from exc
        try:
            self._table.put_item(Item={"key": key, "value": body})
        except (ClientError, BotoCoreError) as exc:
            raise StoreError(f"DynamoDB put failed for {key}: {exc}", key=key) from exc

    def _put_if_absent(self, key: str, value: Any) -> bool:
        try:
            body = json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise StoreError(f"Value for {key} is not JSON-serializable: {exc}", key=key) from exc
        try:
            self._table.put_item(
                Item={"key": key, "value": body},
                ConditionExpression=Attr("key").not_exists(),
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                return False
            raise StoreError(f"DynamoDB conditional put failed for {key}: {exc}", key=key) from exc
        except BotoCoreError as exc:
            raise StoreError(f"DynamoDB conditional put failed for {key}: {exc}", key=key) from exc
        return True

    def _delete(self, key: str) -> None:
        try:
            self._table.delete_item(Key={"key": key})
        except (ClientError, BotoCoreError) as exc:
            raise StoreError(f"DynamoDB delete failed for {key}: {exc}", key=key) from exc

    def _list_keys(self, prefix: str) -> List[str]:
        keys: List[str] = []
        kwargs: Dict[str, Any] = {"FilterExpression": Attr("key").begins_with(prefix)}
        try:
            while True:
                page = self._table.scan(**kwargs)
                keys.extend(item["key"] for item in page.get("Items", []))
                last_key = page.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except (ClientError, BotoCoreError) as exc:
            raise StoreError(f"DynamoDB scan of {self._table_name} failed: {exc}") from exc
        return sorted(keys)


def build_store(cfg: Config) -> TrackingStore:
    """Instantiate the backend selected by ``STORE_BACKEND``."""
    if cfg.store_backend == "dynamodb":
        logger.info("store_backend_selected", backend="dynamodb", table=cfg.dynamodb_table)
        return DynamoDBTrackingStore(cfg.dynamodb_table, region_name=cfg.aws_region)
    logger.info("store_backend_selected", backend="memory")
    return InMemoryTrackingStore()
