from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
import secrets

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING, IndexModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DeviceInfo(BaseModel):
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None


class RefreshToken(Document):
    token: str = Field(..., description="JWT refresh token")
    user_id: PydanticObjectId = Field(..., description="User ID")
    family: str = Field(..., description="Rotation lineage shared by every token of one login session")
    is_used: bool = False
    is_revoked: bool = False
    expires_at: datetime = Field(..., description="Token expiration time")
    created_at: datetime = Field(default_factory=_utcnow)
    last_used_at: Optional[datetime] = None
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    device_changes: int = 0
    revoked_by: Optional[str] = Field(default=None, description="user, admin, token_reuse, family_breach, suspicious_device_changes")
    revoked_at: Optional[datetime] = None
    successor_token: Optional[str] = None

    class Settings:
        name = "refresh_tokens"
        indexes = [
            IndexModel([("token", ASCENDING)], unique=True),
            "user_id",
            "family",
            "is_used",
            "is_revoked",
            IndexModel([("expires_at", ASCENDING)], expireAfterSeconds=0),
            IndexModel([("user_id", ASCENDING), ("family", ASCENDING)]),
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("user_id", ASCENDING), ("last_used_at", DESCENDING)]),
            IndexModel([("device_info.device_fingerprint", ASCENDING)]),
            IndexModel([("revoked_by", ASCENDING), ("revoked_at", DESCENDING)]),
            IndexModel([("user_id", ASCENDING), ("is_revoked", ASCENDING), ("is_used", ASCENDING)]),
        ]

    @staticmethod
    def create_token_family() -> str:
        return secrets.token_hex(16)

    def mark_revoked(self, reason: str = "user", successor_token: Optional[str] = None) -> None:
        now = _utcnow()
        created_at = _aware(self.created_at) if self.created_at else now
        self.is_revoked = True
        self.revoked_by = reason
        # revoked_at never precedes created_at
        self.revoked_at = max(now, created_at)
        if successor_token:
            self.successor_token = successor_token

    async def revoke(self, reason: str = "user", successor_token: Optional[str] = None) -> "RefreshToken":
        self.mark_revoked(reason, successor_token)
        await self.save()
        return self

    @classmethod
    async def revoke_family(cls, family: str, reason: str = "family_breach"):
        return await cls.find({"family": family, "is_revoked": False}).update(
            {"$set": {"is_revoked": True, "revoked_by": reason, "revoked_at": _utcnow()}}
        )

    @classmethod
    async def revoke_all_for_user(cls, user_id: PydanticObjectId | str, reason: str = "user"):
        return await cls.find({"user_id": PydanticObjectId(user_id), "is_revoked": False}).update(
            {"$set": {"is_revoked": True, "revoked_by": reason, "revoked_at": _utcnow()}}
        )

    @classmethod
    async def cleanup_expired(cls) -> int:
        result = await cls.find({"expires_at": {"$lt": _utcnow()}}).delete()
        return result.deleted_count if result else 0

    @classmethod
    async def get_active_tokens_for_user(cls, user_id: PydanticObjectId | str) -> List["RefreshToken"]:
        return await cls.find({
            "user_id": PydanticObjectId(user_id),
            "is_revoked": False,
            "is_used": False,
            "expires_at": {"$gt": _utcnow()},
        }).sort("-created_at").to_list()

    @classmethod
    async def get_token_chain(cls, start_token: str) -> List[Dict[str, Any]]:
        chain: List[Dict[str, Any]] = []
        visited = set()
        current = await cls.find_one({"token": start_token})
        while current and current.token not in visited:
            visited.add(current.token)
            chain.append(chain_entry(current))
            if not current.successor_token:
                break
            current = await cls.find_one({"token": current.successor_token})
        return chain

    @classmethod
    async def get_security_analytics(cls, user_id: PydanticObjectId | str, days: int = 30) -> Dict[str, Any]:
        cutoff = _utcnow() - timedelta(days=days)
        tokens = await cls.find({
            "user_id": PydanticObjectId(user_id),
            "created_at": {"$gte": cutoff},
        }).sort("created_at").to_list()
        return compute_security_analytics(tokens, days)

    @classmethod
    async def find_suspicious_sessions(cls, user_id: PydanticObjectId | str) -> List[Dict[str, Any]]:
        cutoff = _utcnow() - timedelta(days=7)
        tokens = await cls.find({
            "user_id": PydanticObjectId(user_id),
            "created_at": {"$gte": cutoff},
        }).sort("-created_at").to_list()
        return detect_suspicious_sessions(tokens)


def redact_token(token: str) -> str:
    return token[:10] + "..."


def chain_entry(token: RefreshToken) -> Dict[str, Any]:
    return {
        "token": redact_token(token.token),
        "family": token.family,
        "created_at": token.created_at,
        "is_used": token.is_used,
        "is_revoked": token.is_revoked,
        "revoked_by": token.revoked_by,
    }


def compute_security_analytics(tokens: Iterable[RefreshToken], days: int = 30) -> Dict[str, Any]:
    """
    Summarise device churn and revocation events for a set of tokens.

    Tokens are expected oldest first. A device change is a known fingerprint
    showing up again from a different IP address.
    """
    tokens = list(tokens)
    device_changes: List[Dict[str, Any]] = []
    devices: Dict[Optional[str], Dict[str, Any]] = {}

    for token in tokens:
        fingerprint = token.device_info.device_fingerprint
        ip = token.device_info.ip_address
        known = devices.get(fingerprint)
        if known is not None and known["ip"] != ip:
            device_changes.append({
                "fingerprint": (fingerprint or "")[:8] + "...",
                "old_ip": known["ip"],
                "new_ip": ip,
                "changed_at": token.created_at,
            })
        devices[fingerprint] = {"ip": ip, "last_seen": token.created_at}

    return {
        "period_days": days,
        "total_tokens": len(tokens),
        "unique_devices": len(devices),
        "device_changes": device_changes,
        "security_events": {
            "token_reuse": sum(1 for t in tokens if t.revoked_by == "token_reuse"),
            "family_breaches": sum(1 for t in tokens if t.revoked_by == "family_breach"),
            "device_changes": len(device_changes),
            "suspicious_activity": len(device_changes) > 3,
        },
    }


def detect_suspicious_sessions(tokens: Iterable[RefreshToken]) -> List[Dict[str, Any]]:
    tokens = list(tokens)
    suspicious: List[Dict[str, Any]] = []

    per_hour = Counter(
        _aware(t.created_at).replace(minute=0, second=0, microsecond=0) for t in tokens
    )
    for hour, count in sorted(per_hour.items()):
        if count > 5:
            suspicious.append({
                "type": "rapid_token_creation",
                "hour": hour,
                "count": count,
                "severity": "high",
            })

    unique_ips = {t.device_info.ip_address for t in tokens}
    if len(unique_ips) > 10:
        suspicious.append({
            "type": "multiple_ip_addresses",
            "unique_ips": len(unique_ips),
            "severity": "medium",
        })

    return suspicious
