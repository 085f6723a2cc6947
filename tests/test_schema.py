import pytest
from unittest.mock import AsyncMock, MagicMock, Mock
from datetime import datetime, timezone
from bson import ObjectId
from pymongo.errors import OperationFailure

from mongosnap.services.schema import (
    describe_collection,
    describe_database,
    extract_fields,
    get_field_type,
    merge_field_analysis,
)


class TestFieldTypes:

    @pytest.mark.parametrize("value,expected", [
        (None, "null"),
        (True, "boolean"),
        ("x", "string"),
        (3, "integer"),
        (2.5, "double"),
        (datetime(2026, 1, 1, tzinfo=timezone.utc), "date"),
        (ObjectId(), "objectId"),
        ([1, 2], "array"),
        ({"a": 1}, "object"),
        (b"bytes", "unknown"),
    ])
    def test_get_field_type(self, value, expected):
        assert get_field_type(value) == expected

    def test_extract_fields_follows_nested_objects(self):
        fields = extract_fields({"name": "Ada", "address": {"city": "London", "geo": {"lat": 51.5}}})

        names = [f["name"] for f in fields]
        assert names == ["name", "address", "address.city", "address.geo", "address.geo.lat"]
        assert fields[1]["has_nested_fields"] is True

    def test_extract_fields_depth_limit(self):
        doc = {"a": {"b": {"c": {"d": {"e": 1}}}}}

        names = [f["name"] for f in extract_fields(doc)]

        assert "a.b.c" in names
        assert "a.b.c.d" not in names

    def test_merge_field_analysis(self):
        docs = [
            {"status": "paid", "amount": 10, "tags": ["a"]},
            {"status": "pending", "amount": 12},
            {"status": "paid", "note": "x" * 80},
        ]

        fields = {f["name"]: f for f in merge_field_analysis(docs)}

        assert fields["status"]["frequency"] == 3
        assert fields["status"]["examples"] == ["paid", "pending"]
        assert fields["amount"]["type"] == "integer"
        assert fields["tags"]["examples"] == []
        assert fields["note"]["examples"] == ["x" * 50]


def make_collection(docs, indexes, count):
    cursor = Mock()
    cursor.limit = Mock(return_value=cursor)
    cursor.to_list = AsyncMock(return_value=docs)
    index_cursor = Mock()
    index_cursor.to_list = AsyncMock(return_value=indexes)
    collection = Mock()
    collection.find = Mock(return_value=cursor)
    collection.list_indexes = AsyncMock(return_value=index_cursor)
    collection.estimated_document_count = AsyncMock(return_value=count)
    return collection


class TestDescribe:

    @pytest.mark.asyncio
    async def test_describe_collection(self):
        oid = ObjectId()
        collection = make_collection(
            [{"_id": oid, "name": "Ada"}, {"_id": ObjectId(), "name": "Grace"}, {"_id": ObjectId(), "name": "Linus"}],
            [{"name": "_id_", "key": {"_id": 1}}],
            42,
        )
        db = MagicMock()
        db.__getitem__.return_value = collection

        described = await describe_collection(db, "users")

        assert described["name"] == "users"
        assert described["document_count"] == 42
        assert described["indexes"] == [{"name": "_id_", "key": {"_id": 1}, "unique": False, "sparse": False}]
        assert len(described["sample_documents"]) == 2
        assert described["sample_documents"][0]["_id"] == {"$oid": str(oid)}

    @pytest.mark.asyncio
    async def test_describe_database_tolerates_failing_collection(self):
        good = make_collection([{"a": 1}], [], 1)
        bad = Mock()
        bad.find = Mock(side_effect=OperationFailure("not authorized"))

        db = MagicMock()
        db.name = "shop"
        db.__getitem__.side_effect = lambda name: good if name == "orders" else bad
        collections_cursor = Mock()
        collections_cursor.to_list = AsyncMock(return_value=[
            {"name": "orders", "type": "collection"},
            {"name": "locked", "type": "view"},
        ])
        db.list_collections = AsyncMock(return_value=collections_cursor)

        described = await describe_database(db)

        assert described["database_name"] == "shop"
        locked, orders = described["collections"]
        assert orders["document_count"] == 1
        assert locked["error"] == "Could not retrieve collection details"
        assert locked["type"] == "view"
