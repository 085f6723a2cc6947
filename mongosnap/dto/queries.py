from datetime import datetime
from pydantic import BaseModel, Field
from beanie import PydanticObjectId
from typing import Any, List, Optional

from mongosnap.models.queries import QueryStatus

class QueryHistoryIn(BaseModel):
  connection_id: PydanticObjectId
  query: str = Field(..., min_length=1)
  natural_language: Optional[str] = None
  generated_query: Optional[str] = None
  result: Optional[Any] = None
  status: QueryStatus = QueryStatus.SUCCESS
  error_message: Optional[str] = None
  execution_time: Optional[int] = None
  documents_affected: Optional[int] = None
  collection_name: Optional[str] = None
  operation: Optional[str] = None


class SavedQueryIn(BaseModel):
  connection_id: PydanticObjectId
  name: str = Field(..., min_length=1, max_length=200, examples=["Paid orders this week"])
  description: str = Field(default="", max_length=1000)
  query: str = Field(..., min_length=1)
  natural_language: Optional[str] = None
  generated_query: Optional[str] = None
  result: Optional[Any] = None
  tags: List[str] = Field(default_factory=list, examples=[["orders", "weekly"]])
  collection_name: Optional[str] = None
  operation: Optional[str] = None
  is_public: bool = False

class SavedQueryUpdate(BaseModel):
  name: Optional[str] = Field(None, min_length=1, max_length=200)
  description: Optional[str] = Field(None, max_length=1000)
  query: Optional[str] = None
  tags: Optional[List[str]] = None
  is_public: Optional[bool] = None

class HistoryStats(BaseModel):
  total_queries: int
  successful_queries: int
  failed_queries: int
  success_rate: float
  avg_execution_time: float
  top_collections: List[dict]
  top_operations: List[dict]
  last_query_at: Optional[datetime] = None
