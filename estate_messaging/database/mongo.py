from typing import Any, Dict, List, Optional

import structlog
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError

from estate_messaging.database.base import (
    CONVERSATIONS,
    MESSAGES,
    ChangeEvent,
    ChangeStream,
    Query,
    Sort,
    StoreGateway,
)
from estate_messaging.errors import StoreUnavailable

logger = structlog.get_logger()

_OPERATIONS = {"insert": "insert", "update": "update", "replace": "update", "delete": "delete"}


def _to_object_id(value: Any) -> Any:
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def _prepare_query(query: Query) -> Query:
    prepared: Dict[str, Any] = {}
    for key, value in query.items():
        if key == "$or":
            prepared[key] = [_prepare_query(sub) for sub in value]
        elif key == "_id":
            if isinstance(value, dict):
                prepared[key] = {op: ([_to_object_id(v) for v in operand] if isinstance(operand, list) else _to_object_id(operand)) for op, operand in value.items()}
            else:
                prepared[key] = _to_object_id(value)
        else:
            prepared[key] = value
    return prepared


def _normalize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is not None:
        doc["_id"] = str(doc.get("_id"))  # normalize for the repositories
    return doc


def _on_full_document(query: Query) -> Query:
    prefixed: Dict[str, Any] = {}
    for key, value in query.items():
        if key == "$or":
            prefixed[key] = [_on_full_document(sub) for sub in value]
        else:
            prefixed[f"fullDocument.{key}"] = value
    return prefixed


class MongoChangeStream(ChangeStream):
    """Wraps a MongoDB change stream (requires a replica set)."""

    def __init__(self, collection, table: str, query: Query) -> None:
        self._collection = collection
        self._table = table
        match: Dict[str, Any] = {"operationType": {"$in": list(_OPERATIONS)}}
        if query:
            # deletes carry no fullDocument, so they pass unfiltered
            match["$or"] = [
                {"operationType": "delete"},
                _on_full_document(query),
            ]
        self._pipeline = [{"$match": match}]
        self._stream = None
        self._buffered: Optional[dict] = None

    async def open(self) -> "MongoChangeStream":
        try:
            self._stream = self._collection.watch(self._pipeline, full_document="updateLookup")
            # try_next opens the server-side cursor without blocking
            self._buffered = await self._stream.try_next()
        except PyMongoError as exc:
            # standalone servers refuse change streams
            logger.error("mongo_watch_failed", table=self._table, error=str(exc))
            raise StoreUnavailable(f"cannot watch {self._table}: {exc}") from exc
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._stream is None:
            raise StopAsyncIteration
        if self._buffered is not None:
            change, self._buffered = self._buffered, None
        else:
            try:
                change = await self._stream.next()
            except StopAsyncIteration:
                raise
            except PyMongoError as exc:
                raise StoreUnavailable(f"change stream on {self._table} dropped: {exc}") from exc
        return ChangeEvent(operation=_OPERATIONS.get(change.get("operationType"), "update"), table=self._table)

    async def close(self) -> None:
        if self._stream is not None:
            stream, self._stream = self._stream, None
            await stream.close()


class MongoStoreGateway(StoreGateway):

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @classmethod
    def from_url(cls, url: str, db_name: str) -> "MongoStoreGateway":
        client = AsyncIOMotorClient(url, tz_aware=True)
        return cls(client[db_name])

    def collection(self, table: str):
        return self._db[table]

    async def ensure_indexes(self) -> None:
        try:
            conversations = self.collection(CONVERSATIONS)
            await conversations.create_index(
                [("pair_key", ASCENDING), ("property_id", ASCENDING)],
                unique=True,
                name="conversation_dedup",
            )
            await conversations.create_index([("participants", ASCENDING)])
            await conversations.create_index([("last_message_at", DESCENDING)])
            await self.collection(MESSAGES).create_index(
                [("conversation_id", ASCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)]
            )
        except ConnectionFailure as exc:
            raise StoreUnavailable(str(exc)) from exc

    async def find(
        self,
        table: str,
        query: Query,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        try:
            cursor = self.collection(table).find(_prepare_query(query))
            if sort:
                cursor = cursor.sort(list(sort))
            if limit:
                cursor = cursor.limit(limit)
            items = await cursor.to_list(length=limit)
        except ConnectionFailure as exc:
            raise StoreUnavailable(str(exc)) from exc
        return [_normalize(it) for it in items]

    async def find_one(self, table: str, query: Query) -> Optional[Dict[str, Any]]:
        try:
            doc = await self.collection(table).find_one(_prepare_query(query))
        except ConnectionFailure as exc:
            raise StoreUnavailable(str(exc)) from exc
        return _normalize(doc)

    async def count(self, table: str, query: Query) -> int:
        try:
            return await self.collection(table).count_documents(_prepare_query(query))
        except ConnectionFailure as exc:
            raise StoreUnavailable(str(exc)) from exc

    async def insert_one(self, table: str, document: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(document)
        try:
            result = await self.collection(table).insert_one(doc)
        except ConnectionFailure as exc:
            raise StoreUnavailable(str(exc)) from exc
        doc["_id"] = str(result.inserted_id)
        return doc

    async def update_one(self, table: str, query: Query, update: Dict[str, Any]) -> int:
        try:
            result = await self.collection(table).update_one(_prepare_query(query), update)
        except ConnectionFailure as exc:
            raise StoreUnavailable(str(exc)) from exc
        return result.modified_count or 0

    async def update_many(self, table: str, query: Query, update: Dict[str, Any]) -> int:
        try:
            result = await self.collection(table).update_many(_prepare_query(query), update)
        except ConnectionFailure as exc:
            raise StoreUnavailable(str(exc)) from exc
        return result.modified_count or 0

    async def delete_one(self, table: str, query: Query) -> int:
        try:
            result = await self.collection(table).delete_one(_prepare_query(query))
        except ConnectionFailure as exc:
            raise StoreUnavailable(str(exc)) from exc
        return result.deleted_count or 0

    async def delete_many(self, table: str, query: Query) -> int:
        try:
            result = await self.collection(table).delete_many(_prepare_query(query))
        except ConnectionFailure as exc:
            raise StoreUnavailable(str(exc)) from exc
        return result.deleted_count or 0

    async def subscribe(self, table: str, query: Query) -> ChangeStream:
        stream = MongoChangeStream(self.collection(table), table, _prepare_query(query))
        return await stream.open()

    async def close(self) -> None:
        self._db.client.close()
