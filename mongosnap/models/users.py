from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional
import secrets

from beanie import Document
from pydantic import BaseModel, EmailStr, Field
from pymongo import IndexModel

from mongosnap.core.config import CSRF_TOKEN_EXPIRE_HOURS


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionPlan(str, Enum):
    SNAP = "snap"
    SNAPX = "snapx"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    TRIAL = "trial"


class TwoFactorMethod(str, Enum):
    EMAIL = "email"
    TOTP = "totp"


class BackupCode(BaseModel):
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None


class User(Document):
    name: str
    email: EmailStr
    password: str
    created_at: datetime = Field(default_factory=_utcnow)

    is_verified: bool = False
    verification_token: Optional[str] = None
    reset_password_token: Optional[str] = None

    two_factor_enabled: bool = False
    two_factor_method: Optional[TwoFactorMethod] = None
    two_factor_token: Optional[str] = None
    two_factor_expires_at: Optional[datetime] = None
    two_factor_secret: Optional[str] = None
    two_factor_setup_pending: bool = False
    backup_codes: List[BackupCode] = Field(default_factory=list)
    login_notifications_enabled: bool = True

    is_admin: bool = False
    subscription_plan: SubscriptionPlan = SubscriptionPlan.SNAP
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    subscription_expires_at: Optional[datetime] = None

    csrf_token: Optional[str] = None
    csrf_token_expires_at: Optional[datetime] = None

    refresh_token_family: Optional[str] = None
    last_active_token_family: Optional[str] = None

    class Settings:
        name = "users"
        indexes = [
            IndexModel([("email", 1)], unique=True),
            "verification_token",
            "reset_password_token",
        ]

    def generate_csrf_token(self) -> str:
        token = secrets.token_hex(32)
        self.csrf_token = token
        self.csrf_token_expires_at = _utcnow() + timedelta(hours=CSRF_TOKEN_EXPIRE_HOURS)
        return token

    def validate_csrf_token(self, token: Optional[str]) -> bool:
        if not self.csrf_token or not self.csrf_token_expires_at or not token:
            return False
        if _utcnow() > _aware(self.csrf_token_expires_at):
            return False
        return secrets.compare_digest(self.csrf_token, token)

    def clear_expired_csrf_token(self) -> bool:
        if self.csrf_token_expires_at and _utcnow() > _aware(self.csrf_token_expires_at):
            self.csrf_token = None
            self.csrf_token_expires_at = None
            return True
        return False

    def has_active_subscription(self) -> bool:
        if self.subscription_status == SubscriptionStatus.INACTIVE:
            return False
        if self.subscription_expires_at and _utcnow() > _aware(self.subscription_expires_at):
            return False
        # cancelled plans stay usable until they expire
        return self.subscription_status in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.TRIAL,
        )

    def is_snapx_user(self) -> bool:
        return self.subscription_plan == SubscriptionPlan.SNAPX and self.has_active_subscription()

    def is_snap_user(self) -> bool:
        return self.subscription_plan == SubscriptionPlan.SNAP or not self.has_active_subscription()

    def current_plan(self) -> str:
        return SubscriptionPlan.SNAPX.value if self.is_snapx_user() else SubscriptionPlan.SNAP.value


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
