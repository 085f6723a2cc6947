from datetime import datetime, timezone
from typing import Optional

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class Connection(Document):
    user_id: PydanticObjectId = Field(..., description="Owner of the saved connection")
    nickname: str = Field(..., min_length=1, max_length=100)
    uri: str = Field(..., description="Encrypted MongoDB URI, ivhex:cipherhex")
    last_used: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_active: bool = False
    is_connected: bool = False
    is_alive: bool = False
    disconnected_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_sample: bool = False
    is_temporary: bool = False

    class Settings:
        name = "connections"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("nickname", ASCENDING)], unique=True),
            IndexModel([("user_id", ASCENDING), ("last_used", DESCENDING)]),
        ]

    def mark_connected(self) -> None:
        now = datetime.now(timezone.utc)
        self.is_active = True
        self.is_connected = True
        self.is_alive = True
        self.disconnected_at = None
        self.last_used = now

    def mark_disconnected(self) -> None:
        now = datetime.now(timezone.utc)
        self.is_active = False
        self.is_connected = False
        self.is_alive = False
        self.disconnected_at = now
        self.last_used = now
