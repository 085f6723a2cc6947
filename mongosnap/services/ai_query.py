"""
Natural language to MongoDB query generation through the OpenAI chat API.
"""
from typing import Any, Dict, List, Optional
import json
import logging
import re

import openai
from openai import AsyncOpenAI

from mongosnap.core.config import OPENAI_API_KEY, OPENAI_MODEL

logger = logging.getLogger(__name__)

SHELL_FUNCTIONS = ["getCollectionNames", "listCollections", "forEach", "print", "printjson", "show"]
_FENCE_RE = re.compile(r"```(?:javascript|js|mongodb|json)?\s*\n?")

SYSTEM_PROMPT = "You are a MongoDB query generator. You answer with a single MongoDB shell query and nothing else."

RULES = """Requirements:
1. Return ONLY the MongoDB query, no explanations, no markdown, no code blocks.
2. Use proper MongoDB operators: $gt, $gte, $lt, $lte, $in, $nin, $exists, $and, $or, $not, $regex, $size, $elemMatch.
3. If the request is unclear, make reasonable assumptions.
4. For updates use $set; for inserts create realistic documents.
5. ALWAYS prefer a single aggregation pipeline ($match, $lookup, $group, $project, $merge, $out) over several queries or loops.
6. Never use find().map(), forEach(), print() or other shell helpers such as getCollectionNames() or listCollections().
7. If a collection name contains dots, spaces or special characters use db.getCollection("name").operation().
8. Use double quotes for strings, ObjectId("...") for ids and new Date("YYYY-MM-DD") for dates.
9. Use the actual field names and types from the schema context when one is given.

Examples:
- "Find all users" -> db.users.find({})
- "Find active users sorted by name" -> db.users.find({"status": "active"}).sort({"name": 1})
- "Count total users" -> db.users.countDocuments({})
- "Get total sales by category" -> db.orders.aggregate([{"$group": {"_id": "$category", "totalSales": {"$sum": "$amount"}}}])
- "Find orders with customer names" -> db.orders.aggregate([{"$lookup": {"from": "users", "localField": "userId", "foreignField": "_id", "as": "user"}}, {"$unwind": "$user"}, {"$project": {"amount": 1, "customerName": "$user.name"}}])
- "Create unique index on username" -> db.users.createIndex({"username": 1}, {"unique": true})
"""


class AIQueryError(Exception):
    pass


_client: Optional[AsyncOpenAI] = None


def get_client() -> AsyncOpenAI:
    global _client
    if not OPENAI_API_KEY:
        raise AIQueryError("OPENAI_API_KEY is not configured")
    if _client is None:
        _client = AsyncOpenAI(api_key=OPENAI_API_KEY)
    return _client


def build_prompt(natural_language: str, schema: Optional[Dict[str, Any]] = None) -> str:
    prompt = f'Convert the following natural language request into a valid MongoDB query.\n\n' \
             f'Natural Language Request: "{natural_language}"\n\n{RULES}'

    collections: List[Dict[str, Any]] = (schema or {}).get("collections") or []
    if collections:
        prompt += "\nDatabase Schema Context:\n"
        prompt += f"Database: {schema.get('database_name') or 'Unknown'}\n\n"

        dotted = [c["name"] for c in collections if "." in c["name"]]
        if dotted:
            prompt += "The following collections contain dots and MUST use db.getCollection():\n"
            for name in dotted:
                prompt += f'   - "{name}" -> db.getCollection("{name}").operation()\n'
            prompt += "\n"

        for collection in collections:
            suffix = " (REQUIRES getCollection)" if "." in collection["name"] else ""
            prompt += f"Collection: {collection['name']}{suffix}\n"
            prompt += f"Document Count: {collection.get('document_count', 'Unknown')}\n"
            fields = collection.get("fields") or []
            if fields:
                prompt += "Fields:\n"
                for field in fields:
                    prompt += f"  - {field['name']} ({field['type']})"
                    if field.get("examples"):
                        prompt += f" - Examples: {', '.join(field['examples'])}"
                    prompt += "\n"
            for index, doc in enumerate(collection.get("sample_documents") or [], start=1):
                prompt += f"  Document {index}: {json.dumps(doc, default=str)}\n"
            prompt += "\n"

    prompt += f'\nGenerate the MongoDB query for: "{natural_language}"\n\nQuery:'
    return prompt


def parse_ai_response(text: str) -> str:
    """Pull the first ``db.`` statement out of a model reply."""
    cleaned = _FENCE_RE.sub("", (text or "").strip()).replace("```", "")
    lines = cleaned.split("\n")

    start = next((i for i, line in enumerate(lines) if line.strip().startswith("db.")), None)
    if start is None:
        raise AIQueryError("No MongoDB query found in response")

    query_lines = []
    depth = 0
    for line in lines[start:]:
        stripped = line.strip()
        if not stripped or stripped.startswith("//"):
            continue
        query_lines.append(stripped)
        depth += sum(line.count(c) for c in "([{") - sum(line.count(c) for c in ")]}")
        if depth <= 0:
            break

    query = " ".join(query_lines).strip()
    while query.endswith(";"):
        query = query[:-1].rstrip()

    for func in SHELL_FUNCTIONS:
        if re.search(rf"\b{func}\b", query):
            raise AIQueryError("Generated query uses MongoDB shell functions that cannot be executed")
    if "undefined" in query or "NaN" in query:
        raise AIQueryError("Generated query contains invalid values")
    return query


async def _complete(prompt: str, max_tokens: int) -> str:
    client = get_client()
    try:
        response = await client.chat.completions.create(
            model=OPENAI_MODEL,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.1,
            max_tokens=max_tokens,
            timeout=30,
        )
    except openai.RateLimitError as e:
        raise AIQueryError("AI rate limit exceeded - try again later") from e
    except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
        raise AIQueryError("AI access denied - check API key permissions") from e
    except openai.APITimeoutError as e:
        raise AIQueryError("AI request timed out - try again") from e
    except openai.APIError as e:
        logger.error("OpenAI API error: %s", e)
        raise AIQueryError(f"Failed to generate query: {e}") from e

    if not response.choices or not response.choices[0].message.content:
        raise AIQueryError("Invalid response from AI service")
    return response.choices[0].message.content


async def generate_query(natural_language: str, schema: Optional[Dict[str, Any]] = None) -> str:
    logger.info(
        "Generating query collections=%s",
        len((schema or {}).get("collections") or []),
    )
    text = await _complete(build_prompt(natural_language, schema), max_tokens=1024)
    return parse_ai_response(text)


async def explain_query(query: str, natural_language: str) -> str:
    prompt = (
        f"Explain this MongoDB query in simple terms:\n\nQuery: {query}\n"
        f'Original Request: "{natural_language}"\n\n'
        "Say what operation it performs, what data it affects, which filters apply and what the result "
        "will be. Keep it user-friendly and under 100 words."
    )
    text = await _complete(prompt, max_tokens=256)
    return text.strip()
