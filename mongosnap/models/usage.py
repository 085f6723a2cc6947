from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel

UNLIMITED = -1
HISTORY_LIMIT = 1000

PLAN_LIMITS: Dict[str, Dict[str, Dict[str, int]]] = {
    "snap": {
        "query_execution": {"daily": 20, "monthly": 400},
        "ai_generation": {"daily": 20, "monthly": 400},
    },
    "snapx": {
        "query_execution": {"daily": UNLIMITED, "monthly": UNLIMITED},
        "ai_generation": {"daily": UNLIMITED, "monthly": UNLIMITED},
    },
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def day_period(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


def month_period(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m")


def roll_period(stored: Optional[str], current: str) -> Tuple[str, bool]:
    """Return the period to store and whether the window must be reset."""
    if stored == current:
        return stored, False
    return current, True


def get_limits_for_plan(plan: Optional[str]) -> Dict[str, Dict[str, int]]:
    return PLAN_LIMITS.get(plan or "snap", PLAN_LIMITS["snap"])


class UsageType(str, Enum):
    QUERY = "query"
    AI_GENERATION = "ai_generation"


class LimitReason(str, Enum):
    DAILY = "daily_limit_exceeded"
    MONTHLY = "monthly_limit_exceeded"


class UsageWindow(BaseModel):
    count: int = 0
    period: str
    limit: int

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def exhausted(self) -> bool:
        return not self.unlimited and self.count >= self.limit

    @property
    def remaining(self) -> int:
        if self.unlimited:
            return UNLIMITED
        return max(0, self.limit - self.count)

    def roll(self, current: str) -> bool:
        self.period, reset = roll_period(self.period, current)
        if reset:
            self.count = 0
        return reset

    def stats(self) -> Dict[str, int]:
        if self.unlimited:
            percentage = 0
        elif self.limit == 0:
            percentage = 100
        else:
            percentage = round(self.count / self.limit * 100)
        return {
            "used": self.count,
            "limit": self.limit,
            "remaining": self.remaining,
            "percentage": percentage,
        }


class UsageAllowance(BaseModel):
    allowed: bool
    daily_remaining: int
    monthly_remaining: int
    daily_limit: int
    monthly_limit: int
    daily_used: int = 0
    monthly_used: int = 0
    reason: Optional[LimitReason] = None


class FeatureUsage(BaseModel):
    daily: UsageWindow
    monthly: UsageWindow

    @classmethod
    def fresh(cls, limits: Dict[str, int], now: Optional[datetime] = None) -> "FeatureUsage":
        now = now or _utcnow()
        return cls(
            daily=UsageWindow(period=day_period(now), limit=limits["daily"]),
            monthly=UsageWindow(period=month_period(now), limit=limits["monthly"]),
        )

    def allowance(self) -> UsageAllowance:
        if self.daily.unlimited and self.monthly.unlimited:
            return UsageAllowance(
                allowed=True,
                daily_remaining=UNLIMITED,
                monthly_remaining=UNLIMITED,
                daily_limit=UNLIMITED,
                monthly_limit=UNLIMITED,
                daily_used=self.daily.count,
                monthly_used=self.monthly.count,
            )

        reason = None
        if self.daily.exhausted:
            reason = LimitReason.DAILY
        elif self.monthly.exhausted:
            reason = LimitReason.MONTHLY

        return UsageAllowance(
            allowed=reason is None,
            daily_remaining=self.daily.remaining,
            monthly_remaining=self.monthly.remaining,
            daily_limit=self.daily.limit,
            monthly_limit=self.monthly.limit,
            daily_used=self.daily.count,
            monthly_used=self.monthly.count,
            reason=reason,
        )

    def increment(self) -> None:
        self.daily.count += 1
        self.monthly.count += 1

    def apply_limits(self, limits: Dict[str, int]) -> None:
        self.daily.limit = limits["daily"]
        self.monthly.limit = limits["monthly"]


class UsageHistoryEntry(BaseModel):
    date: datetime = Field(default_factory=_utcnow)
    type: UsageType
    operation: Optional[str] = None
    connection_id: Optional[PydanticObjectId] = None


def _default_feature(feature: str):
    return lambda: FeatureUsage.fresh(PLAN_LIMITS["snap"][feature])


class UserUsage(Document):
    user_id: PydanticObjectId
    plan: str = "snap"
    query_execution: FeatureUsage = Field(default_factory=_default_feature("query_execution"))
    ai_generation: FeatureUsage = Field(default_factory=_default_feature("ai_generation"))
    last_daily_reset: datetime = Field(default_factory=_utcnow)
    last_monthly_reset: datetime = Field(default_factory=_utcnow)
    usage_history: List[UsageHistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    class Settings:
        name = "user_usage"
        indexes = [
            IndexModel([("user_id", ASCENDING)], unique=True),
            IndexModel([("query_execution.daily.period", ASCENDING)]),
            IndexModel([("query_execution.monthly.period", ASCENDING)]),
            IndexModel([("ai_generation.daily.period", ASCENDING)]),
            IndexModel([("ai_generation.monthly.period", ASCENDING)]),
        ]

    @classmethod
    async def get_or_create_usage(cls, user_id: PydanticObjectId | str) -> "UserUsage":
        usage = await cls.find_one({"user_id": PydanticObjectId(user_id)})
        if not usage:
            usage = cls(user_id=PydanticObjectId(user_id))
            await usage.insert()
        return usage

    def check_and_reset_counters(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        today, this_month = day_period(now), month_period(now)

        query_daily = self.query_execution.daily.roll(today)
        ai_daily = self.ai_generation.daily.roll(today)
        query_monthly = self.query_execution.monthly.roll(this_month)
        ai_monthly = self.ai_generation.monthly.roll(this_month)

        if query_daily:
            self.last_daily_reset = now
        if query_monthly:
            self.last_monthly_reset = now
        return query_daily or ai_daily or query_monthly or ai_monthly

    def can_execute_query(self) -> UsageAllowance:
        self.check_and_reset_counters()
        return self.query_execution.allowance()

    def can_generate_ai(self) -> UsageAllowance:
        self.check_and_reset_counters()
        return self.ai_generation.allowance()

    def append_history(self, usage_type: UsageType, operation: Optional[str], connection_id=None) -> None:
        self.usage_history.append(UsageHistoryEntry(
            type=usage_type,
            operation=operation,
            connection_id=PydanticObjectId(connection_id) if connection_id else None,
        ))
        if len(self.usage_history) > HISTORY_LIMIT:
            self.usage_history = self.usage_history[-HISTORY_LIMIT:]

    async def increment_query_execution(self, operation: str = "unknown", connection_id=None) -> None:
        self.check_and_reset_counters()
        self.query_execution.increment()
        self.append_history(UsageType.QUERY, operation, connection_id)
        self.updated_at = _utcnow()
        await self.save()

    async def increment_ai_generation(self, operation: str = "unknown", connection_id=None) -> None:
        self.check_and_reset_counters()
        self.ai_generation.increment()
        self.append_history(UsageType.AI_GENERATION, operation, connection_id)
        self.updated_at = _utcnow()
        await self.save()

    def update_limits_for_plan(self, plan: str) -> bool:
        """Apply the plan's limit table; returns True when anything changed."""
        limits = get_limits_for_plan(plan)
        before = (self.plan, self.query_execution.daily.limit, self.query_execution.monthly.limit,
                  self.ai_generation.daily.limit, self.ai_generation.monthly.limit)
        self.plan = plan
        self.query_execution.apply_limits(limits["query_execution"])
        self.ai_generation.apply_limits(limits["ai_generation"])
        after = (self.plan, self.query_execution.daily.limit, self.query_execution.monthly.limit,
                 self.ai_generation.daily.limit, self.ai_generation.monthly.limit)
        return before != after

    def get_usage_stats(self) -> Dict[str, Any]:
        self.check_and_reset_counters()
        return {
            "plan": self.plan,
            "query_execution": {
                "daily": self.query_execution.daily.stats(),
                "monthly": self.query_execution.monthly.stats(),
            },
            "ai_generation": {
                "daily": self.ai_generation.daily.stats(),
                "monthly": self.ai_generation.monthly.stats(),
            },
        }
