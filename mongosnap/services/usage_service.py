from typing import Any, Dict
import logging

from fastapi import Depends

from mongosnap.core.exceptions import UsageLimitExceeded
from mongosnap.models.usage import LimitReason, UsageAllowance, UserUsage
from mongosnap.models.users import User
from mongosnap.utils.auth import get_current_user_doc

logger = logging.getLogger(__name__)


def _usage_body(allowance: UsageAllowance) -> Dict[str, Any]:
    return {
        "daily": {"used": allowance.daily_used, "limit": allowance.daily_limit},
        "monthly": {"used": allowance.monthly_used, "limit": allowance.monthly_limit},
    }


def limit_message(feature: str, allowance: UsageAllowance) -> str:
    label = "query" if feature == "query" else "AI generation"
    if allowance.reason == LimitReason.DAILY:
        return f"Daily {label} limit reached ({allowance.daily_limit}/day). Resets tomorrow."
    return f"Monthly {label} limit reached ({allowance.monthly_limit}/month). Resets next month."


async def sync_plan_limits(user: User, usage: UserUsage) -> UserUsage:
    """Bring the stored limits in line with the user's current plan and roll stale windows."""
    changed = usage.update_limits_for_plan(user.current_plan())
    rolled = usage.check_and_reset_counters()
    if changed or rolled:
        await usage.save()
    return usage


async def _load_usage(user: User) -> UserUsage:
    usage = await UserUsage.get_or_create_usage(user.id)
    return await sync_plan_limits(user, usage)


def _enforce(feature: str, user: User, allowance: UsageAllowance) -> None:
    if allowance.allowed:
        return
    logger.info("Usage limit hit user=%s feature=%s reason=%s", user.id, feature, allowance.reason.value)
    raise UsageLimitExceeded(limit_message(feature, allowance), allowance.reason.value, _usage_body(allowance))


async def check_query_usage(user: User = Depends(get_current_user_doc)) -> UserUsage:
    usage = await _load_usage(user)
    _enforce("query", user, usage.can_execute_query())
    return usage


async def check_ai_usage(user: User = Depends(get_current_user_doc)) -> UserUsage:
    usage = await _load_usage(user)
    _enforce("ai", user, usage.can_generate_ai())
    return usage
