from pydantic import BaseModel, Field, model_validator
from beanie import PydanticObjectId
from typing import Optional

from mongosnap.models.bug_reports import BugCategory, BugPage, BugStatus, ConnectionContext, Priority

class BugReportIn(BaseModel):
  category: BugCategory = Field(..., examples=["query_not_executing"])
  custom_category: Optional[str] = Field(None, max_length=100)
  title: str = Field(..., min_length=5, max_length=200, examples=["Aggregate with $lookup times out"])
  description: str = Field(..., min_length=10, max_length=2000)
  page: BugPage = Field(..., examples=["playground"])
  problematic_query: Optional[str] = Field(None, max_length=5000)
  screen_resolution: Optional[str] = Field(None, max_length=20, examples=["1920x1080"])
  connection_context: Optional[ConnectionContext] = None

  @model_validator(mode="after")
  def check_custom_category(self):
    if self.category == BugCategory.OTHER and not (self.custom_category or "").strip():
      raise ValueError("Custom category is required when category is 'other'")
    return self

class BugStatusUpdate(BaseModel):
  status: BugStatus
  resolution: Optional[str] = Field(None, max_length=1000)
  priority: Optional[Priority] = None
  assigned_to: Optional[PydanticObjectId] = None
  duplicate_of: Optional[PydanticObjectId] = None

class AdminNoteIn(BaseModel):
  note: str = Field(..., min_length=1, max_length=1000)
