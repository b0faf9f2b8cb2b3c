"""In-memory store gateway for tests and local development."""

import asyncio
import copy
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog
from pymongo.errors import DuplicateKeyError

from estate_messaging.database.base import (
    CONVERSATIONS,
    ChangeEvent,
    ChangeStream,
    Query,
    Sort,
    StoreGateway,
)
from estate_messaging.errors import StoreUnavailable

logger = structlog.get_logger()

_MISSING = object()
_DROPPED = object()
_CLOSED = object()


def _get_path(doc: Dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _equals(actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return expected is None
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in actual
    return actual == expected


def _match_operator(actual: Any, op: str, operand: Any) -> bool:
    if op == "$in":
        return any(_equals(actual, candidate) for candidate in operand)
    if op == "$ne":
        return not _equals(actual, operand)
    if actual is _MISSING or actual is None:
        return False
    if op == "$gt":
        return actual > operand
    if op == "$gte":
        return actual >= operand
    if op == "$lt":
        return actual < operand
    if op == "$lte":
        return actual <= operand
    raise ValueError(f"Unsupported query operator {op}")


def matches(doc: Dict[str, Any], query: Query) -> bool:
    for key, expected in query.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in expected):
                return False
            continue
        actual = _get_path(doc, key)
        if isinstance(expected, dict) and expected and all(k.startswith("$") for k in expected):
            if not all(_match_operator(actual, op, operand) for op, operand in expected.items()):
                return False
        elif not _equals(actual, expected):
            return False
    return True


def apply_update(doc: Dict[str, Any], update: Dict[str, Any]) -> bool:
    changed = False
    for op, fields in update.items():
        for path, value in fields.items():
            current = _get_path(doc, path)
            if op == "$set":
                new = value
            elif op == "$inc":
                new = (0 if current is _MISSING else current) + value
            elif op == "$max":
                new = value if current is _MISSING or current is None or value > current else current
            else:
                raise ValueError(f"Unsupported update operator {op}")
            if current is _MISSING or current != new:
                _set_path(doc, path, new)
                changed = True
    return changed


class MemoryChangeStream(ChangeStream):

    def __init__(self, gateway: "InMemoryStoreGateway", table: str, query: Query) -> None:
        self.table = table
        self.query = query
        self._gateway = gateway
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def push(self, item: Any) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    async def __anext__(self) -> ChangeEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _DROPPED:
            self._closed = True
            self._gateway._streams.discard(self)
            raise StoreUnavailable(f"change stream on {self.table} dropped")
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._gateway._streams.discard(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryStoreGateway(StoreGateway):
    """Dict-backed gateway with MongoDB-like semantics.

    Every operation yields to the event loop once before touching data, so
    concurrent callers interleave the way they would against a remote store.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._unique: Dict[str, List[Tuple[str, ...]]] = defaultdict(list)
        self._streams: set = set()
        self._failures: Dict[str, int] = defaultdict(int)
        self.calls: Dict[str, int] = defaultdict(int)
        logger.info("memory_store_initialized")

    # test hooks

    def fail_next(self, operation: str, times: int = 1) -> None:
        """Make the next ``times`` calls to ``operation`` raise StoreUnavailable."""
        self._failures[operation] += times

    def drop_subscriptions(self) -> None:
        for stream in list(self._streams):
            stream.push(_DROPPED)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(doc) for doc in self._tables[table].values()]

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        await asyncio.sleep(0)
        if self._failures[operation] > 0:
            self._failures[operation] -= 1
            logger.warning("memory_store_injected_failure", operation=operation)
            raise StoreUnavailable(f"{operation} failed")

    def _notify(self, operation: str, table: str, doc: Dict[str, Any]) -> None:
        for stream in list(self._streams):
            if stream.table == table and matches(doc, stream.query):
                stream.push(ChangeEvent(operation=operation, table=table))

    def _check_unique(self, table: str, doc: Dict[str, Any], skip_id: Optional[str] = None) -> None:
        for fields in self._unique[table]:
            key = tuple(doc.get(f) for f in fields)
            for other_id, other in self._tables[table].items():
                if other_id == skip_id:
                    continue
                if tuple(other.get(f) for f in fields) == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {table} index: {'_'.join(fields)}",
                        code=11000,
                    )

    async def ensure_indexes(self) -> None:
        await self._enter("ensure_indexes")
        if ("pair_key", "property_id") not in self._unique[CONVERSATIONS]:
            self._unique[CONVERSATIONS].append(("pair_key", "property_id"))

    async def find(
        self,
        table: str,
        query: Query,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        await self._enter("find")
        items = [copy.deepcopy(doc) for doc in self._tables[table].values() if matches(doc, query)]
        for field, direction in reversed(list(sort or [])):
            items.sort(key=lambda d: d.get(field), reverse=direction < 0)
        if limit:
            items = items[:limit]
        return items

    async def find_one(self, table: str, query: Query) -> Optional[Dict[str, Any]]:
        await self._enter("find_one")
        for doc in self._tables[table].values():
            if matches(doc, query):
                return copy.deepcopy(doc)
        return None

    async def count(self, table: str, query: Query) -> int:
        await self._enter("count")
        return sum(1 for doc in self._tables[table].values() if matches(doc, query))

    async def insert_one(self, table: str, document: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("insert_one")
        doc = copy.deepcopy(document)
        doc.setdefault("_id", uuid4().hex)
        if doc["_id"] in self._tables[table]:
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {table} index: _id_", code=11000)
        self._check_unique(table, doc)
        self._tables[table][doc["_id"]] = doc
        self._notify("insert", table, doc)
        return copy.deepcopy(doc)

    async def _update(self, operation: str, table: str, query: Query, update: Dict[str, Any], many: bool) -> int:
        await self._enter(operation)
        modified = 0
        for doc in self._tables[table].values():
            if not matches(doc, query):
                continue
            if apply_update(doc, update):
                modified += 1
                self._notify("update", table, doc)
            if not many:
                break
        return modified

    async def update_one(self, table: str, query: Query, update: Dict[str, Any]) -> int:
        return await self._update("update_one", table, query, update, many=False)

    async def update_many(self, table: str, query: Query, update: Dict[str, Any]) -> int:
        return await self._update("update_many", table, query, update, many=True)

    async def _delete(self, operation: str, table: str, query: Query, many: bool) -> int:
        await self._enter(operation)
        doomed = [doc_id for doc_id, doc in self._tables[table].items() if matches(doc, query)]
        if not many:
            doomed = doomed[:1]
        for doc_id in doomed:
            doc = self._tables[table].pop(doc_id)
            self._notify("delete", table, doc)
        return len(doomed)

    async def delete_one(self, table: str, query: Query) -> int:
        return await self._delete("delete_one", table, query, many=False)

    async def delete_many(self, table: str, query: Query) -> int:
        return await self._delete("delete_many", table, query, many=True)

    async def subscribe(self, table: str, query: Query) -> ChangeStream:
        await self._enter("subscribe")
        stream = MemoryChangeStream(self, table, query)
        self._streams.add(stream)
        return stream

    async def close(self) -> None:
        for stream in list(self._streams):
            await stream.close()
