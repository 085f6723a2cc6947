from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class BugCategory(str, Enum):
    QUERY_NOT_EXECUTING = "query_not_executing"
    QUERY_GENERATION_FAILED = "query_generation_failed"
    CONNECTION_ISSUES = "connection_issues"
    UI_BUG = "ui_bug"
    PERFORMANCE_ISSUE = "performance_issue"
    FEATURE_REQUEST = "feature_request"
    DATA_DISPLAY_ERROR = "data_display_error"
    AUTHENTICATION_PROBLEM = "authentication_problem"
    EXPORT_FUNCTIONALITY = "export_functionality"
    SCHEMA_EXPLORER_ISSUE = "schema_explorer_issue"
    OTHER = "other"


class BugPage(str, Enum):
    CONNECT = "connect"
    PLAYGROUND = "playground"
    SETTINGS = "settings"
    PRICING = "pricing"
    HOME = "home"
    OTHER = "other"


class BugStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"
    DUPLICATE = "duplicate"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

# Least to most severe.
PRIORITY_ORDER: List[str] = [p.value for p in Priority]


BUG_CATEGORIES: List[Dict[str, str]] = [
    {"value": "query_not_executing", "label": "Query Not Executing",
     "description": "MongoDB queries are failing to run or returning errors"},
    {"value": "query_generation_failed", "label": "AI Query Generation Failed",
     "description": "Natural language to MongoDB query conversion is not working properly"},
    {"value": "connection_issues", "label": "Database Connection Issues",
     "description": "Problems connecting to MongoDB database or connection timeouts"},
    {"value": "ui_bug", "label": "User Interface Bug",
     "description": "Visual glitches, layout issues, or buttons not working"},
    {"value": "performance_issue", "label": "Performance Issue",
     "description": "App is slow, freezing, or consuming too much memory"},
    {"value": "feature_request", "label": "Feature Request",
     "description": "Suggestion for a new feature or improvement"},
    {"value": "data_display_error", "label": "Data Display Error",
     "description": "Query results not displaying correctly or missing data"},
    {"value": "authentication_problem", "label": "Login/Authentication Problem",
     "description": "Issues with signing in, signing up, or session management"},
    {"value": "export_functionality", "label": "Export Functionality",
     "description": "Problems with database export or download features"},
    {"value": "schema_explorer_issue", "label": "Schema Explorer Issue",
     "description": "Schema not loading, incorrect structure display, or navigation problems"},
    {"value": "other", "label": "Other",
     "description": "Issue not covered by the above categories"},
]

HIGH_PRIORITY_CATEGORIES = {
    BugCategory.CONNECTION_ISSUES,
    BugCategory.AUTHENTICATION_PROBLEM,
    BugCategory.QUERY_NOT_EXECUTING,
}
MEDIUM_PRIORITY_CATEGORIES = {
    BugCategory.QUERY_GENERATION_FAILED,
    BugCategory.DATA_DISPLAY_ERROR,
    BugCategory.EXPORT_FUNCTIONALITY,
}


def priority_for_category(category: BugCategory) -> Priority:
    if category in HIGH_PRIORITY_CATEGORIES:
        return Priority.HIGH
    if category in MEDIUM_PRIORITY_CATEGORIES:
        return Priority.MEDIUM
    return Priority.LOW


class BrowserInfo(BaseModel):
    user_agent: Optional[str] = None
    browser_name: Optional[str] = None
    browser_version: Optional[str] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    screen_resolution: Optional[str] = None


class ConnectionContext(BaseModel):
    connection_id: Optional[PydanticObjectId] = None
    database_name: Optional[str] = None
    collection_name: Optional[str] = None
    is_temporary: Optional[bool] = None
    is_sample: Optional[bool] = None


class AdminNote(BaseModel):
    note: str
    added_by: PydanticObjectId
    added_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BugReport(Document):
    user_id: PydanticObjectId
    user_email: str
    user_name: str
    category: BugCategory
    custom_category: Optional[str] = None
    title: str = Field(..., max_length=200)
    description: str = Field(..., max_length=2000)
    page: BugPage
    problematic_query: Optional[str] = Field(default=None, max_length=5000)
    browser_info: BrowserInfo = Field(default_factory=BrowserInfo)
    connection_context: Optional[ConnectionContext] = None
    status: BugStatus = BugStatus.OPEN
    priority: Priority = Priority.MEDIUM
    assigned_to: Optional[PydanticObjectId] = None
    admin_notes: List[AdminNote] = Field(default_factory=list)
    resolution: Optional[str] = Field(default=None, max_length=1000)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[PydanticObjectId] = None
    ip_address: Optional[str] = None
    duplicate_of: Optional[PydanticObjectId] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Settings:
        name = "bug_reports"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("status", ASCENDING), ("priority", DESCENDING)]),
            IndexModel([("category", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("page", ASCENDING), ("created_at", DESCENDING)]),
        ]

    def auto_assign_priority(self) -> Priority:
        self.priority = priority_for_category(self.category)
        return self.priority

    def category_description(self) -> str:
        for category in BUG_CATEGORIES:
            if category["value"] == self.category.value:
                return category["description"]
        return "No description available"
