import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, Mock
from datetime import datetime, timezone
from bson import Decimal128, Int64, ObjectId
from bson.regex import Regex

from mongosnap.core.exceptions import ForbiddenOperationError, QueryExecutionError
from mongosnap.services.query_executor import (
    DEFAULT_FIND_LIMIT,
    FORBIDDEN_MESSAGE,
    ParsedQuery,
    build_structured_query,
    count_documents_affected,
    execute_parsed,
    execute_query,
    extract_query_metadata,
    parse_shell_query,
    parse_value,
    to_json_safe,
    validate_query_security,
)


class TestParseShellQuery:

    def test_find_with_chain(self):
        parsed = parse_shell_query('db.users.find({age: {$gt: 21}}, {name: 1}).sort({name: -1}).skip(5).limit(10);')

        assert parsed.collection == "users"
        assert parsed.operation == "find"
        assert parsed.args == [{"age": {"$gt": 21}}, {"name": 1}]
        assert parsed.chain == [("sort", [{"name": -1}]), ("skip", [5]), ("limit", [10])]

    def test_get_collection_accessor(self):
        parsed = parse_shell_query('db.getCollection("audit.log").countDocuments({})')

        assert parsed.collection == "audit.log"
        assert parsed.operation == "countDocuments"

    def test_collection_accessor_and_brackets(self):
        assert parse_shell_query("db.collection('orders').findOne()").collection == "orders"
        assert parse_shell_query('db["order-items"].find()').collection == "order-items"

    def test_dotted_collection_name(self):
        parsed = parse_shell_query("db.system.profile.find()")

        assert parsed.collection == "system.profile"
        assert parsed.operation == "find"

    def test_database_operation(self):
        parsed = parse_shell_query("db.getCollectionNames()")

        assert parsed.collection is None
        assert parsed.operation == "getCollectionNames"

    def test_aggregate_pipeline(self):
        parsed = parse_shell_query(
            'db.orders.aggregate([{$match: {status: "paid"}}, {$group: {_id: "$category", total: {$sum: "$amount"}}}])'
        )

        assert parsed.args[0][1]["$group"]["total"] == {"$sum": "$amount"}

    @pytest.mark.parametrize("query", [
        "db.users.drop()",
        "db.dropDatabase()",
        "db.users.remove({})",
    ])
    def test_forbidden_operations(self, query):
        with pytest.raises(ForbiddenOperationError) as exc_info:
            parse_shell_query(query)

        assert str(exc_info.value) == FORBIDDEN_MESSAGE

    def test_rejects_javascript(self):
        with pytest.raises(QueryExecutionError):
            parse_shell_query("db.users.find({$where: 'this.a > 1'})")
        with pytest.raises(QueryExecutionError):
            validate_query_security("db.users.find().forEach(function(d) { print(d) })")

    def test_empty_query(self):
        with pytest.raises(QueryExecutionError, match="Query string is required."):
            parse_shell_query("   ")

    def test_must_start_with_db(self):
        with pytest.raises(QueryExecutionError, match="must start with 'db.'"):
            parse_shell_query("users.find()")

    def test_unsupported_operation(self):
        with pytest.raises(QueryExecutionError, match="Unsupported operation"):
            parse_shell_query("db.users.mapReduce()")

    def test_unsupported_cursor_method(self):
        with pytest.raises(QueryExecutionError, match="Unsupported cursor method"):
            parse_shell_query("db.users.find().map()")

    def test_trailing_garbage(self):
        with pytest.raises(QueryExecutionError):
            parse_shell_query("db.users.find() extra")


class TestParseValue:

    def test_shell_constructors(self):
        oid = "507f1f77bcf86cd799439011"
        value = parse_value(
            f'{{_id: ObjectId("{oid}"), at: ISODate("2026-01-02T03:04:05Z"), n: NumberLong(5), '
            f'd: NumberDecimal("1.50"), i: NumberInt("7"), created: new Date("2026-01-02")}}'
        )

        assert value["_id"] == ObjectId(oid)
        assert value["at"] == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert value["n"] == Int64(5)
        assert value["d"] == Decimal128("1.50")
        assert value["i"] == 7
        assert value["created"] == datetime(2026, 1, 2, tzinfo=timezone.utc)

    def test_quotes_literals_and_regex(self):
        value = parse_value("{'name': 'O\\'Brien', active: true, deleted: null, tags: ['a', \"b\"], email: /@example\\.com$/i}")

        assert value["name"] == "O'Brien"
        assert value["active"] is True
        assert value["deleted"] is None
        assert value["tags"] == ["a", "b"]
        assert value["email"] == Regex("@example\\.com$", "i")

    def test_numbers(self):
        assert parse_value("[1, -2, 3.5, 1e3]") == [1, -2, 3.5, 1000.0]

    def test_invalid_object_id(self):
        with pytest.raises(QueryExecutionError, match="Invalid ObjectId"):
            parse_value('ObjectId("nope")')

    def test_unknown_function(self):
        with pytest.raises(QueryExecutionError, match="Unsupported function"):
            parse_value("UUID('x')")

    def test_short_unicode_escape(self):
        with pytest.raises(QueryExecutionError, match="Invalid unicode escape"):
            parse_value('{a: "\\u12"}')

    def test_unicode_escape(self):
        assert parse_value('"caf\\u00e9"') == "caf\u00e9"

    @pytest.mark.parametrize("text", ["NumberInt('abc')", "NumberLong('x')", "NumberDecimal('one')"])
    def test_bad_number_constructors(self, text):
        with pytest.raises(QueryExecutionError, match="Invalid Number"):
            parse_value(text)


class TestMetadata:

    def test_single_collection(self):
        metadata = extract_query_metadata("db.users.find({}).sort({name: 1})")

        assert metadata["collections"] == ["users"]
        assert metadata["primary_operation"] == "find"
        assert metadata["is_multi_collection"] is False

    def test_get_collection_and_multiple_operations(self):
        metadata = extract_query_metadata('db.getCollection("a.b").find({}); db.orders.countDocuments({})')

        assert metadata["collections"] == ["a.b", "orders"]
        assert metadata["operations"] == ["find", "countDocuments"]
        assert metadata["primary_collection"] == "a.b"
        assert metadata["is_multi_collection"] is True
        assert metadata["is_multi_operation"] is True


def make_db(collection):
    db = MagicMock()
    db.__getitem__.return_value = collection
    return db


class TestExecute:

    @pytest.mark.asyncio
    async def test_find_applies_chain_and_default_limit(self):
        cursor = Mock()
        cursor.sort = Mock(return_value=cursor)
        cursor.to_list = AsyncMock(return_value=[{"name": "Ada"}])
        collection = Mock()
        collection.find = Mock(return_value=cursor)
        db = make_db(collection)

        parsed, result = await execute_query(db, "db.users.find({active: true}).sort({name: 1})")

        assert result == [{"name": "Ada"}]
        collection.find.assert_called_once_with({"active": True}, None, skip=0, limit=DEFAULT_FIND_LIMIT)
        cursor.sort.assert_called_once_with([("name", 1)])
        db.__getitem__.assert_called_with("users")

    @pytest.mark.asyncio
    async def test_find_count(self):
        collection = Mock()
        collection.count_documents = AsyncMock(return_value=12)

        _, result = await execute_query(make_db(collection), "db.users.find({a: 1}).count()")

        assert result == 12

    @pytest.mark.asyncio
    async def test_insert_many_result_is_normalized(self):
        ids = [ObjectId(), ObjectId()]
        collection = Mock()
        collection.insert_many = AsyncMock(return_value=Mock(spec=["acknowledged", "inserted_ids"],
                                                             acknowledged=True, inserted_ids=ids))

        _, result = await execute_query(make_db(collection), "db.users.insertMany([{a: 1}, {a: 2}])")

        assert result == {"acknowledged": True, "insertedIds": ids, "insertedCount": 2}
        assert count_documents_affected(result) == 2

    @pytest.mark.asyncio
    async def test_update_one_with_upsert(self):
        collection = Mock()
        collection.update_one = AsyncMock(return_value=Mock(
            spec=["acknowledged", "matched_count", "modified_count", "upserted_id"],
            acknowledged=True, matched_count=1, modified_count=1, upserted_id=None))

        _, result = await execute_query(
            make_db(collection), "db.users.updateOne({name: 'Ada'}, {$set: {age: 36}}, {upsert: true})")

        collection.update_one.assert_called_once_with({"name": "Ada"}, {"$set": {"age": 36}}, upsert=True)
        assert result["modifiedCount"] == 1

    @pytest.mark.asyncio
    async def test_database_operation(self):
        db = MagicMock()
        db.list_collection_names = AsyncMock(return_value=["users", "orders"])

        _, result = await execute_query(db, "db.getCollectionNames()")

        assert result == ["orders", "users"]

    @pytest.mark.asyncio
    async def test_timeout(self):
        collection = Mock()

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        collection.count_documents = slow
        parsed = ParsedQuery(collection="users", operation="countDocuments", args=[{}])

        with pytest.raises(QueryExecutionError, match="timed out"):
            await execute_parsed(make_db(collection), parsed, timeout=0.01)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["db.users.find().limit('abc')", "db.users.find().skip({})"])
    async def test_non_numeric_cursor_arguments(self, query):
        collection = Mock()

        with pytest.raises(QueryExecutionError, match="expects a number"):
            await execute_query(make_db(collection), query)

        collection.find.assert_not_called()

    @pytest.mark.asyncio
    async def test_options_must_be_an_object(self):
        collection = Mock()
        collection.update_one = AsyncMock()

        with pytest.raises(QueryExecutionError, match="Options must be an object"):
            await execute_query(make_db(collection), "db.users.updateOne({}, {$set: {a: 1}}, 5)")

        collection.update_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_driver_type_errors_become_query_errors(self):
        collection = Mock()
        collection.find_one = AsyncMock(side_effect=TypeError("filter must be an instance of dict"))

        with pytest.raises(QueryExecutionError, match="Invalid query arguments"):
            await execute_query(make_db(collection), "db.users.findOne(5)")


class TestStructuredQuery:

    def test_find_with_options(self):
        parsed = build_structured_query(
            "users", "find", query={"_id": {"$oid": "507f1f77bcf86cd799439011"}},
            options={"sort": {"name": 1}, "limit": 5, "projection": {"name": 1}})

        assert parsed.args[0] == {"_id": ObjectId("507f1f77bcf86cd799439011")}
        assert parsed.args[1] == {"name": 1}
        assert parsed.chain == [("sort", [{"name": 1}]), ("limit", [5])]

    def test_update_requires_update_document(self):
        with pytest.raises(QueryExecutionError, match="Update document is required"):
            build_structured_query("users", "updateOne", query={"a": 1})

    def test_insert_many_requires_list(self):
        with pytest.raises(QueryExecutionError):
            build_structured_query("users", "insertMany", document={"a": 1})

    def test_forbidden_and_unsupported(self):
        with pytest.raises(ForbiddenOperationError):
            build_structured_query("users", "drop")
        with pytest.raises(QueryExecutionError, match="Unsupported operation"):
            build_structured_query("users", "aggregate")


class TestResultHelpers:

    def test_count_documents_affected(self):
        assert count_documents_affected([{}, {}, {}]) == 3
        assert count_documents_affected({"acknowledged": True, "deletedCount": 4}) == 4
        assert count_documents_affected({"acknowledged": True, "insertedId": ObjectId()}) == 1
        assert count_documents_affected({"name": "Ada"}) == 1
        assert count_documents_affected(None) == 0
        assert count_documents_affected(17) == 0

    def test_to_json_safe(self):
        oid = ObjectId()
        safe = to_json_safe([{"_id": oid, "at": datetime(2026, 1, 2, tzinfo=timezone.utc)}])

        assert safe[0]["_id"] == {"$oid": str(oid)}
        assert safe[0]["at"] == {"$date": "2026-01-02T00:00:00Z"}
