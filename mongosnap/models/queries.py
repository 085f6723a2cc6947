from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class QueryStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class QueryHistory(Document):
    user_id: PydanticObjectId
    connection_id: PydanticObjectId
    query: str
    natural_language: Optional[str] = Field(default=None, description="Original request when the query was AI generated")
    generated_query: Optional[str] = None
    result: Optional[Any] = None
    status: QueryStatus
    error_message: Optional[str] = None
    execution_time: Optional[int] = Field(default=None, description="Milliseconds")
    documents_affected: Optional[int] = None
    collection_name: Optional[str] = None
    operation: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Settings:
        name = "query_history"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("user_id", ASCENDING), ("connection_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("user_id", ASCENDING), ("status", ASCENDING)]),
            IndexModel([("user_id", ASCENDING), ("collection_name", ASCENDING)]),
        ]


class SavedQuery(Document):
    user_id: PydanticObjectId
    connection_id: PydanticObjectId
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    query: str
    natural_language: Optional[str] = None
    generated_query: Optional[str] = None
    result: Optional[Any] = None
    tags: List[str] = Field(default_factory=list)
    collection_name: Optional[str] = None
    operation: Optional[str] = None
    is_public: bool = False
    usage_count: int = 0
    last_used: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Settings:
        name = "saved_queries"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("user_id", ASCENDING), ("connection_id", ASCENDING)]),
            IndexModel([("user_id", ASCENDING), ("name", ASCENDING)], unique=True),
            IndexModel([("user_id", ASCENDING), ("tags", ASCENDING)]),
            IndexModel([("user_id", ASCENDING), ("collection_name", ASCENDING)]),
        ]
