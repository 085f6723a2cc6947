from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from mongosnap.models.bug_reports import AdminNote, Priority

SPAM_THRESHOLD = 5


class ContactCategory(str, Enum):
    GENERAL = "general"
    TECHNICAL = "technical"
    BILLING = "billing"
    PARTNERSHIP = "partnership"
    FEEDBACK = "feedback"
    BUG = "bug"


class ContactStatus(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    RESPONDED = "responded"
    CLOSED = "closed"
    SPAM = "spam"


CONTACT_CATEGORIES: List[Dict[str, str]] = [
    {"value": "general", "label": "General Inquiry", "description": "General questions about MongoSnap"},
    {"value": "technical", "label": "Technical Support", "description": "Technical issues or questions"},
    {"value": "billing", "label": "Billing & Pricing", "description": "Questions about pricing or billing"},
    {"value": "partnership", "label": "Partnership", "description": "Partnership or collaboration inquiries"},
    {"value": "feedback", "label": "Feature Request", "description": "Feature suggestions or feedback"},
    {"value": "bug", "label": "Bug Report", "description": "Report a bug or issue"},
]


class Contact(Document):
    name: str = Field(..., max_length=100)
    email: str = Field(..., max_length=255)
    subject: str = Field(..., max_length=200)
    message: str = Field(..., max_length=2000)
    category: ContactCategory = ContactCategory.GENERAL
    status: ContactStatus = ContactStatus.NEW
    priority: Priority = Priority.MEDIUM
    admin_notes: List[AdminNote] = Field(default_factory=list)
    response: Optional[str] = Field(default=None, max_length=2000)
    responded_at: Optional[datetime] = None
    responded_by: Optional[PydanticObjectId] = None
    ip_address: Optional[str] = None
    user_id: Optional[PydanticObjectId] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Settings:
        name = "contacts"
        indexes = [
            IndexModel([("status", ASCENDING), ("priority", DESCENDING), ("created_at", DESCENDING)]),
            IndexModel([("category", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("email", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
        ]

    @classmethod
    async def check_spam(cls, email: str, hours: int = 24) -> bool:
        """True when the address already sent SPAM_THRESHOLD messages inside the window."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        recent = await cls.find({"email": email.lower(), "created_at": {"$gte": cutoff}}).count()
        return recent >= SPAM_THRESHOLD
