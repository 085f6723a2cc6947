"""
Shell-style MongoDB query engine.

Queries such as ``db.users.find({age: {$gt: 21}}).sort({name: 1}).limit(5)``
are parsed into a ``ParsedQuery`` and mapped onto PyMongo calls. Nothing is
ever evaluated as JavaScript: arguments go through a small relaxed-JSON parser
that understands unquoted keys, single quoted strings, regex literals and the
usual shell constructors (``ObjectId``, ``ISODate``, ``new Date``,
``NumberInt``, ``NumberLong``, ``NumberDecimal``).
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import json
import re

from bson import Decimal128, Int64, ObjectId, json_util
from bson.errors import BSONError, InvalidId
from bson.regex import Regex
from pymongo import ReturnDocument

from mongosnap.core.config import QUERY_TIMEOUT_SECONDS
from mongosnap.core.exceptions import ForbiddenOperationError, QueryExecutionError

FORBIDDEN_OPERATIONS = {"dropDatabase", "drop", "remove"}
FORBIDDEN_MESSAGE = "DropDatabase, Drop and Remove Operations are not allowed."

COLLECTION_OPERATIONS = {
    "find", "findOne", "aggregate", "countDocuments", "count", "estimatedDocumentCount", "distinct",
    "insertOne", "insertMany", "updateOne", "updateMany", "replaceOne", "deleteOne", "deleteMany",
    "findOneAndUpdate", "findOneAndReplace", "findOneAndDelete", "createIndex", "getIndexes", "listIndexes",
}
DATABASE_OPERATIONS = {"getCollectionNames", "listCollections", "getCollectionInfos", "stats"}
STRUCTURED_OPERATIONS = {
    "find", "findOne", "insertOne", "insertMany", "updateOne", "updateMany", "deleteOne", "deleteMany",
}
CURSOR_METHODS = {"sort", "limit", "skip", "project", "projection", "count", "toArray", "pretty"}
COLLECTION_ACCESSORS = {"getCollection", "collection"}

DEFAULT_FIND_LIMIT = 1000

_IDENT_RE = re.compile(r"[A-Za-z_$][\w$]*")
_NUMBER_RE = re.compile(r"-?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_HEX4_RE = re.compile(r"[0-9A-Fa-f]{4}")
_FORBIDDEN_RE = re.compile(r"\.\s*(dropDatabase|drop|remove)\s*\(")
_JS_RE = re.compile(r"\bfunction\s*\(|=>|\$where|\beval\s*\(")

_COLLECTION_PATTERNS = [
    re.compile(r"db\.(?:getCollection|collection)\(\s*[\"']([^\"']+)[\"']\s*\)"),
    re.compile(r"db\[\s*[\"']([^\"']+)[\"']\s*\]"),
    re.compile(r"db\.((?!getCollection\b|collection\b)[A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*)*?)\.[A-Za-z]+\s*\("),
]
_OPERATION_RE = re.compile(r"\.([A-Za-z]+)\s*\(")

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "/": "/", "\\": "\\", '"': '"', "'": "'"}


@dataclass
class ParsedQuery:
    collection: Optional[str]
    operation: str
    args: List[Any] = field(default_factory=list)
    chain: List[Tuple[str, List[Any]]] = field(default_factory=list)


def validate_query_security(query: str) -> None:
    if _FORBIDDEN_RE.search(query):
        raise ForbiddenOperationError(FORBIDDEN_MESSAGE)
    if _JS_RE.search(query):
        raise QueryExecutionError("JavaScript functions and $where are not supported.")


def extract_query_metadata(query: str) -> Dict[str, Any]:
    collections: List[str] = []
    for pattern in _COLLECTION_PATTERNS:
        for name in pattern.findall(query):
            if name not in collections:
                collections.append(name)

    known = COLLECTION_OPERATIONS | DATABASE_OPERATIONS | FORBIDDEN_OPERATIONS
    operations: List[str] = []
    for name in _OPERATION_RE.findall(query):
        if name in known and name not in operations:
            operations.append(name)

    return {
        "collections": collections,
        "operations": operations,
        "primary_collection": collections[0] if collections else None,
        "primary_operation": operations[0] if operations else None,
        "is_multi_collection": len(collections) > 1,
        "is_multi_operation": len(operations) > 1,
    }


class _ShellParser:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def error(self, message: str):
        raise QueryExecutionError(f"{message} at position {self.pos}")

    def skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def peek(self) -> str:
        self.skip_ws()
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def at_end(self) -> bool:
        return self.peek() == ""

    def eat(self, ch: str) -> bool:
        if self.peek() == ch:
            self.pos += 1
            return True
        return False

    def expect(self, ch: str) -> None:
        if not self.eat(ch):
            self.error(f"Expected '{ch}'")

    def identifier(self) -> str:
        self.skip_ws()
        match = _IDENT_RE.match(self.text, self.pos)
        if not match:
            self.error("Expected identifier")
        self.pos = match.end()
        return match.group(0)

    def string(self) -> str:
        quote = self.text[self.pos]
        self.pos += 1
        out = []
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == quote:
                self.pos += 1
                return "".join(out)
            if ch == "\\":
                self.pos += 1
                esc = self.text[self.pos:self.pos + 1]
                if esc == "u":
                    digits = self.text[self.pos + 1:self.pos + 5]
                    if not _HEX4_RE.fullmatch(digits):
                        self.error("Invalid unicode escape")
                    out.append(chr(int(digits, 16)))
                    self.pos += 5
                    continue
                out.append(_ESCAPES.get(esc, esc))
            else:
                out.append(ch)
            self.pos += 1
        self.error("Unterminated string")

    def number(self):
        match = _NUMBER_RE.match(self.text, self.pos)
        if not match:
            self.error("Invalid number")
        self.pos = match.end()
        raw = match.group(0)
        if any(c in raw for c in ".eE"):
            return float(raw)
        return int(raw)

    def regex(self) -> Regex:
        self.pos += 1
        out = []
        while self.pos < len(self.text) and self.text[self.pos] != "/":
            if self.text[self.pos] == "\\":
                out.append(self.text[self.pos:self.pos + 2])
                self.pos += 2
                continue
            out.append(self.text[self.pos])
            self.pos += 1
        if self.pos >= len(self.text):
            self.error("Unterminated regular expression")
        self.pos += 1
        flags = re.match(r"[a-z]*", self.text[self.pos:]).group(0)
        self.pos += len(flags)
        return Regex("".join(out), flags)

    def value(self):
        ch = self.peek()
        if ch == "{":
            return self.obj()
        if ch == "[":
            return self.array()
        if ch in ("'", '"'):
            return self.string()
        if ch == "/":
            return self.regex()
        if ch == "-" or ch == "." or ch.isdigit():
            return self.number()

        name = self.identifier()
        if name == "true":
            return True
        if name == "false":
            return False
        if name in ("null", "undefined"):
            return None
        if name == "new":
            name = self.identifier()
        if self.peek() == "(":
            return self.construct(name, self.arguments())
        self.error(f"Unexpected identifier '{name}'")

    def obj(self) -> Dict[str, Any]:
        self.expect("{")
        result: Dict[str, Any] = {}
        while not self.eat("}"):
            ch = self.peek()
            key = self.string() if ch in ("'", '"') else self.identifier()
            self.expect(":")
            result[key] = self.value()
            if not self.eat(","):
                self.expect("}")
                break
        return result

    def array(self) -> List[Any]:
        self.expect("[")
        result = []
        while not self.eat("]"):
            result.append(self.value())
            if not self.eat(","):
                self.expect("]")
                break
        return result

    def arguments(self) -> List[Any]:
        self.expect("(")
        args = []
        while not self.eat(")"):
            args.append(self.value())
            if not self.eat(","):
                self.expect(")")
                break
        return args

    def construct(self, name: str, args: List[Any]):
        first = args[0] if args else None
        if name == "ObjectId":
            try:
                return ObjectId(first) if first is not None else ObjectId()
            except (InvalidId, TypeError) as e:
                raise QueryExecutionError(f"Invalid ObjectId: {first}") from e
        if name in ("ISODate", "Date"):
            return _parse_date(first)
        try:
            if name == "NumberInt":
                return int(first or 0)
            if name == "NumberLong":
                return Int64(int(first or 0))
            if name == "NumberDecimal":
                return Decimal128(str(first if first is not None else "0"))
        except (ValueError, TypeError, ArithmeticError) as e:
            raise QueryExecutionError(f"Invalid {name} value: {first}") from e
        if name == "RegExp":
            return Regex(str(first or ""), str(args[1]) if len(args) > 1 else "")
        self.error(f"Unsupported function '{name}'")


def _parse_date(value) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise QueryExecutionError(f"Invalid date: {value}") from e
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise QueryExecutionError(f"Invalid date: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_value(text: str):
    """Parse one relaxed-JSON value, e.g. ``{_id: ObjectId("...")}``."""
    parser = _ShellParser(text)
    value = parser.value()
    if not parser.at_end():
        parser.error("Unexpected trailing characters")
    return value


def parse_shell_query(query: str) -> ParsedQuery:
    if not query or not query.strip():
        raise QueryExecutionError("Query string is required.")
    validate_query_security(query)

    text = query.strip()
    while text.endswith(";"):
        text = text[:-1].rstrip()
    parser = _ShellParser(text)

    if parser.identifier() != "db":
        raise QueryExecutionError("Query must start with 'db.'")

    collection: Optional[str] = None
    if parser.eat("["):
        if parser.peek() not in ("'", '"'):
            parser.error("Expected collection name")
        collection = parser.string()
        parser.expect("]")
        parser.expect(".")
        operation = parser.identifier()
    else:
        parser.expect(".")
        name = parser.identifier()
        if name in COLLECTION_ACCESSORS and parser.peek() == "(":
            accessor_args = parser.arguments()
            if len(accessor_args) != 1 or not isinstance(accessor_args[0], str):
                raise QueryExecutionError(f"db.{name}() expects a collection name")
            collection = accessor_args[0]
            parser.expect(".")
            operation = parser.identifier()
        else:
            segments = [name]
            while parser.eat("."):
                segments.append(parser.identifier())
            operation = segments[-1]
            if len(segments) > 1:
                collection = ".".join(segments[:-1])

    if parser.peek() != "(":
        parser.error("Expected a method call")
    args = parser.arguments()

    chain: List[Tuple[str, List[Any]]] = []
    while parser.eat("."):
        method = parser.identifier()
        chain.append((method, parser.arguments()))
    if not parser.at_end():
        parser.error("Unexpected trailing characters")

    if operation in FORBIDDEN_OPERATIONS:
        raise ForbiddenOperationError(FORBIDDEN_MESSAGE)
    if collection is None and operation not in DATABASE_OPERATIONS:
        raise QueryExecutionError(f"Unsupported database operation: {operation}")
    if collection is not None and operation not in COLLECTION_OPERATIONS:
        raise QueryExecutionError(f"Unsupported operation: {operation}")
    for method, _ in chain:
        if method not in CURSOR_METHODS:
            raise QueryExecutionError(f"Unsupported cursor method: {method}")

    return ParsedQuery(collection=collection, operation=operation, args=args, chain=chain)


def _arg(args: List[Any], index: int, default=None):
    return args[index] if len(args) > index and args[index] is not None else default


def _int_arg(args: List[Any], method: str) -> int:
    value = _arg(args, 0, 0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise QueryExecutionError(f"{method}() expects a number")
    return int(value)


def _options(args: List[Any], index: int) -> Dict[str, Any]:
    value = _arg(args, index, {})
    if not isinstance(value, dict):
        raise QueryExecutionError("Options must be an object")
    return value


def _sort_spec(spec) -> List[Tuple[str, int]]:
    if isinstance(spec, dict):
        return list(spec.items())
    if isinstance(spec, list):
        return [tuple(item) for item in spec]
    raise QueryExecutionError("sort() expects an object")


def _write_result(result) -> Dict[str, Any]:
    out: Dict[str, Any] = {"acknowledged": result.acknowledged}
    for attr, key in (
        ("inserted_id", "insertedId"),
        ("inserted_ids", "insertedIds"),
        ("matched_count", "matchedCount"),
        ("modified_count", "modifiedCount"),
        ("upserted_id", "upsertedId"),
        ("deleted_count", "deletedCount"),
    ):
        if hasattr(result, attr):
            out[key] = getattr(result, attr)
    if "insertedIds" in out:
        out["insertedCount"] = len(out["insertedIds"])
    return out


def _return_document(options: Dict[str, Any]):
    if options.get("returnNewDocument") or options.get("returnDocument") == "after":
        return ReturnDocument.AFTER
    return ReturnDocument.BEFORE


async def _run_find(collection, parsed: ParsedQuery):
    filter_ = _arg(parsed.args, 0, {})
    projection = _arg(parsed.args, 1)
    sort, skip, limit, count = None, 0, None, False
    for method, args in parsed.chain:
        if method == "sort":
            sort = _sort_spec(_arg(args, 0, {}))
        elif method == "skip":
            skip = _int_arg(args, "skip")
        elif method == "limit":
            limit = _int_arg(args, "limit")
        elif method in ("project", "projection"):
            projection = _arg(args, 0)
        elif method == "count":
            count = True

    if count:
        return await collection.count_documents(filter_)

    cursor = collection.find(filter_, projection, skip=skip, limit=limit or DEFAULT_FIND_LIMIT)
    if sort:
        cursor = cursor.sort(sort)
    return await cursor.to_list(length=None)


async def _run_collection_op(collection, parsed: ParsedQuery):
    op, args = parsed.operation, parsed.args

    if op == "find":
        return await _run_find(collection, parsed)
    if op == "findOne":
        return await collection.find_one(_arg(args, 0, {}), _arg(args, 1))
    if op == "aggregate":
        cursor = await collection.aggregate(_arg(args, 0, []))
        return await cursor.to_list(length=None)
    if op in ("countDocuments", "count"):
        return await collection.count_documents(_arg(args, 0, {}))
    if op == "estimatedDocumentCount":
        return await collection.estimated_document_count()
    if op == "distinct":
        return await collection.distinct(_arg(args, 0), _arg(args, 1, {}))
    if op == "insertOne":
        return _write_result(await collection.insert_one(_arg(args, 0, {})))
    if op == "insertMany":
        return _write_result(await collection.insert_many(_arg(args, 0, [])))

    options = _options(args, 2) if op not in ("deleteOne", "deleteMany", "findOneAndDelete") else _options(args, 1)
    upsert = bool(options.get("upsert", False))
    if op == "updateOne":
        return _write_result(await collection.update_one(_arg(args, 0, {}), _arg(args, 1, {}), upsert=upsert))
    if op == "updateMany":
        return _write_result(await collection.update_many(_arg(args, 0, {}), _arg(args, 1, {}), upsert=upsert))
    if op == "replaceOne":
        return _write_result(await collection.replace_one(_arg(args, 0, {}), _arg(args, 1, {}), upsert=upsert))
    if op == "deleteOne":
        return _write_result(await collection.delete_one(_arg(args, 0, {})))
    if op == "deleteMany":
        return _write_result(await collection.delete_many(_arg(args, 0, {})))
    if op == "findOneAndUpdate":
        return await collection.find_one_and_update(
            _arg(args, 0, {}), _arg(args, 1, {}),
            projection=options.get("projection"), sort=options.get("sort") and _sort_spec(options["sort"]),
            upsert=upsert, return_document=_return_document(options),
        )
    if op == "findOneAndReplace":
        return await collection.find_one_and_replace(
            _arg(args, 0, {}), _arg(args, 1, {}),
            projection=options.get("projection"), upsert=upsert, return_document=_return_document(options),
        )
    if op == "findOneAndDelete":
        return await collection.find_one_and_delete(_arg(args, 0, {}), projection=options.get("projection"))
    if op == "createIndex":
        keys = _sort_spec(_arg(args, 0, {}))
        return await collection.create_index(keys, **_options(args, 1))
    if op in ("getIndexes", "listIndexes"):
        cursor = await collection.list_indexes()
        return await cursor.to_list(length=None)
    raise QueryExecutionError(f"Unsupported operation: {op}")


async def _run_database_op(db, parsed: ParsedQuery):
    if parsed.operation == "getCollectionNames":
        return sorted(await db.list_collection_names())
    if parsed.operation in ("listCollections", "getCollectionInfos"):
        cursor = await db.list_collections(filter=_arg(parsed.args, 0))
        return await cursor.to_list(length=None)
    if parsed.operation == "stats":
        return await db.command("dbstats")
    raise QueryExecutionError(f"Unsupported database operation: {parsed.operation}")


async def execute_parsed(db, parsed: ParsedQuery, timeout: int = QUERY_TIMEOUT_SECONDS):
    if parsed.collection is None:
        coro = _run_database_op(db, parsed)
    else:
        coro = _run_collection_op(db[parsed.collection], parsed)
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise QueryExecutionError(f"Query timed out after {timeout} seconds") from e
    except (ValueError, TypeError, BSONError) as e:
        raise QueryExecutionError(f"Invalid query arguments: {e}") from e


async def execute_query(db, query: str, timeout: int = QUERY_TIMEOUT_SECONDS):
    parsed = parse_shell_query(query)
    return parsed, await execute_parsed(db, parsed, timeout)


def _from_extended_json(value):
    """Turn ``{"$oid": ...}`` style JSON from request bodies into BSON types."""
    if value is None:
        return None
    return json_util.loads(json.dumps(value))


def build_structured_query(
    collection: str,
    operation: str,
    query: Optional[Dict[str, Any]] = None,
    document: Any = None,
    update: Optional[Dict[str, Any]] = None,
    options: Optional[Dict[str, Any]] = None,
) -> ParsedQuery:
    if operation in FORBIDDEN_OPERATIONS:
        raise ForbiddenOperationError(FORBIDDEN_MESSAGE)
    if operation not in STRUCTURED_OPERATIONS:
        raise QueryExecutionError(f"Unsupported operation: {operation}")

    filter_ = _from_extended_json(query) or {}
    options = options or {}

    if operation in ("find", "findOne"):
        chain = [(name, [options[name]]) for name in ("sort", "skip", "limit") if options.get(name) is not None]
        return ParsedQuery(collection, operation, [filter_, options.get("projection")], chain)
    if operation == "insertOne":
        return ParsedQuery(collection, operation, [_from_extended_json(document) or {}])
    if operation == "insertMany":
        if not isinstance(document, list):
            raise QueryExecutionError("insertMany expects an array of documents")
        return ParsedQuery(collection, operation, [_from_extended_json(document)])
    if operation in ("updateOne", "updateMany"):
        if not update:
            raise QueryExecutionError("Update document is required")
        return ParsedQuery(collection, operation, [filter_, _from_extended_json(update), options])
    return ParsedQuery(collection, operation, [filter_])


def count_documents_affected(result) -> int:
    if result is None:
        return 0
    if isinstance(result, list):
        return len(result)
    if isinstance(result, dict):
        for key in ("modifiedCount", "deletedCount", "insertedCount"):
            if key in result:
                return int(result[key])
        if "acknowledged" in result:
            return 1 if result["acknowledged"] else 0
        return 1
    return 0


def to_json_safe(value):
    return json.loads(json_util.dumps(value, json_options=json_util.RELAXED_JSON_OPTIONS))
