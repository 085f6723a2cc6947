"""
Schema inference for user databases, built from sampled documents.
"""
from datetime import datetime
from typing import Any, Dict, List
import logging

from bson import Decimal128, Int64, ObjectId
from pymongo.errors import PyMongoError

from mongosnap.services.query_executor import to_json_safe

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 10
MAX_EXAMPLES = 3
MAX_EXAMPLE_LENGTH = 50
SAMPLE_DOCUMENTS_IN_CONTEXT = 2
MAX_NESTING_DEPTH = 2


def get_field_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (int, Int64)):
        return "integer"
    if isinstance(value, (float, Decimal128)):
        return "double"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, ObjectId):
        return "objectId"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "unknown"


def extract_fields(doc: Dict[str, Any], prefix: str = "", depth: int = 0) -> List[Dict[str, Any]]:
    """Flatten a document into dotted field entries; objects are followed ``MAX_NESTING_DEPTH`` levels down."""
    fields = []
    for key, value in doc.items():
        name = f"{prefix}.{key}" if prefix else key
        field_type = get_field_type(value)
        fields.append({
            "name": name,
            "type": field_type,
            "value": value,
            "has_nested_fields": field_type == "object" and bool(value),
        })
        if field_type == "object" and depth < MAX_NESTING_DEPTH:
            fields.extend(extract_fields(value, name, depth + 1))
    return fields


def merge_field_analysis(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    analysis: Dict[str, Dict[str, Any]] = {}
    for doc in docs:
        for field in extract_fields(doc):
            entry = analysis.setdefault(field["name"], {"type": field["type"], "examples": [], "frequency": 0})
            entry["frequency"] += 1
            value = field["value"]
            if value is None or field["type"] in ("object", "array"):
                continue
            example = str(value)[:MAX_EXAMPLE_LENGTH]
            if example not in entry["examples"] and len(entry["examples"]) < MAX_EXAMPLES:
                entry["examples"].append(example)

    return [{"name": name, **info} for name, info in analysis.items()]


def _index_summary(index: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": index.get("name"),
        "key": dict(index.get("key", {})),
        "unique": index.get("unique", False),
        "sparse": index.get("sparse", False),
    }


async def describe_collection(db, name: str, sample_size: int = SAMPLE_SIZE) -> Dict[str, Any]:
    collection = db[name]
    docs = await collection.find({}).limit(sample_size).to_list(length=None)
    index_cursor = await collection.list_indexes()
    indexes = await index_cursor.to_list(length=None)
    count = await collection.estimated_document_count()
    return {
        "name": name,
        "document_count": count,
        "indexes": [_index_summary(index) for index in indexes],
        "fields": merge_field_analysis(docs),
        "sample_documents": to_json_safe(docs[:SAMPLE_DOCUMENTS_IN_CONTEXT]),
    }


async def describe_database(db, sample_size: int = SAMPLE_SIZE) -> Dict[str, Any]:
    cursor = await db.list_collections()
    collections = await cursor.to_list(length=None)

    described = []
    for info in sorted(collections, key=lambda c: c["name"]):
        try:
            entry = await describe_collection(db, info["name"], sample_size)
        except PyMongoError as e:
            logger.info("Could not analyze collection %s: %s", info["name"], e)
            entry = {
                "name": info["name"],
                "document_count": 0,
                "indexes": [],
                "fields": [],
                "sample_documents": [],
                "error": "Could not retrieve collection details",
            }
        entry["type"] = info.get("type", "collection")
        described.append(entry)

    return {"database_name": db.name, "collections": described}
