"""Tests for the MongoDB gateway's query translation, without a server."""

from types import SimpleNamespace

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect, OperationFailure

from estate_messaging.database.base import CONVERSATIONS, MESSAGES
from estate_messaging.database.mongo import (
    MongoChangeStream,
    MongoStoreGateway,
    _normalize,
    _on_full_document,
    _prepare_query,
)
from estate_messaging.errors import StoreUnavailable

OID = "65f1c2a9e4b0a1b2c3d4e5f6"


class FakeCollection:
    """Records the queries it receives and answers with canned results."""

    def __init__(self, found=None, error=None):
        self.found = found
        self.error = error
        self.queries = []
        self.updates = []

    async def find_one(self, query):
        self.queries.append(query)
        if self.error:
            raise self.error
        return self.found

    async def update_one(self, query, update):
        self.queries.append(query)
        self.updates.append(update)
        if self.error:
            raise self.error
        return SimpleNamespace(modified_count=1)

    def watch(self, pipeline, full_document=None):
        raise OperationFailure("The $changeStream stage is only supported on replica sets")


def test_prepare_query_converts_ids():
    """Hex ids become ObjectIds, including inside $in and $or; other values pass."""
    query = _prepare_query(
        {
            "_id": {"$in": [OID, "not-an-object-id"]},
            "$or": [{"_id": OID}, {"sender_id": OID}],
            "participants": "u1",
        }
    )

    assert query["_id"] == {"$in": [ObjectId(OID), "not-an-object-id"]}
    assert query["$or"] == [{"_id": ObjectId(OID)}, {"sender_id": OID}]
    assert query["participants"] == "u1"


def test_full_document_prefix_reaches_into_or():
    query = {"$or": [{"sender_id": "u1"}, {"receiver_id": "u1"}], "conversation_id": "c1"}

    assert _on_full_document(query) == {
        "$or": [{"fullDocument.sender_id": "u1"}, {"fullDocument.receiver_id": "u1"}],
        "fullDocument.conversation_id": "c1",
    }


def test_change_stream_pipeline_lets_deletes_through():
    stream = MongoChangeStream(FakeCollection(), CONVERSATIONS, {"participants": "u1"})

    (stage,) = stream._pipeline
    match = stage["$match"]
    assert set(match["operationType"]["$in"]) == {"insert", "update", "replace", "delete"}
    assert match["$or"] == [
        {"operationType": "delete"},
        {"fullDocument.participants": "u1"},
    ]


def test_change_stream_without_filter():
    stream = MongoChangeStream(FakeCollection(), MESSAGES, {})

    assert "$or" not in stream._pipeline[0]["$match"]


def test_normalize_stringifies_ids():
    oid = ObjectId(OID)

    assert _normalize({"_id": oid, "subject": "Inquiry"}) == {"_id": OID, "subject": "Inquiry"}
    assert _normalize(None) is None


@pytest.mark.asyncio
async def test_gateway_sends_prepared_queries():
    collection = FakeCollection(found={"_id": ObjectId(OID), "participants": ["u1", "u2"]})
    gateway = MongoStoreGateway({CONVERSATIONS: collection})

    doc = await gateway.find_one(CONVERSATIONS, {"_id": OID})
    modified = await gateway.update_one(
        CONVERSATIONS,
        {"_id": OID, "last_read_at.u2": None},
        {"$set": {"last_read_at.u2": "t"}},
    )

    assert doc == {"_id": OID, "participants": ["u1", "u2"]}
    assert modified == 1
    assert collection.queries == [
        {"_id": ObjectId(OID)},
        {"_id": ObjectId(OID), "last_read_at.u2": None},
    ]


@pytest.mark.asyncio
async def test_gateway_maps_connection_failures():
    gateway = MongoStoreGateway({CONVERSATIONS: FakeCollection(error=AutoReconnect("primary stepped down"))})

    with pytest.raises(StoreUnavailable):
        await gateway.find_one(CONVERSATIONS, {"_id": OID})
    with pytest.raises(StoreUnavailable):
        await gateway.update_one(CONVERSATIONS, {"_id": OID}, {"$inc": {"unread_counters.u1": 1}})


@pytest.mark.asyncio
async def test_subscribe_on_standalone_server_is_unavailable():
    gateway = MongoStoreGateway({MESSAGES: FakeCollection()})

    with pytest.raises(StoreUnavailable):
        await gateway.subscribe(MESSAGES, {"sender_id": "u1"})
