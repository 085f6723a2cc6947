"""
In-memory rate limit keyed by (client identifier, route).
"""
from time import time
from typing import Dict, Optional, Tuple

from fastapi import HTTPException, Request, status

from mongosnap.utils.text import client_ip

BUCKET: Dict[Tuple[str, str], list[float]] = {}

# Longest window any limiter below uses.
MAX_WINDOW_SECONDS = 60 * 60
MAX_TRACKED_KEYS = 10_000


def allow(key: Tuple[str, str], limit: int = 5, window_seconds: int = 60) -> bool:
    now = time()
    if len(BUCKET) >= MAX_TRACKED_KEYS:
        sweep(now)
    q = [t for t in BUCKET.get(key, []) if now - t < window_seconds]
    if len(q) >= limit:
        if q:
            BUCKET[key] = q
        else:
            BUCKET.pop(key, None)
        return False
    q.append(now)
    BUCKET[key] = q
    return True


def sweep(now: Optional[float] = None, max_age: int = MAX_WINDOW_SECONDS) -> int:
    """Drop keys with no hit inside ``max_age`` seconds. Returns how many were dropped."""
    now = time() if now is None else now
    stale = [key for key, q in BUCKET.items() if not q or now - q[-1] >= max_age]
    for key in stale:
        del BUCKET[key]
    return len(stale)


def reset() -> None:
    BUCKET.clear()


def rate_limiter(route: str, limit: int, window_seconds: int, message: str):
    """Build a dependency that answers 429 once the client IP spends its budget on ``route``."""

    async def dependency(request: Request) -> None:
        if not allow((client_ip(request), route), limit, window_seconds):
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=message)

    return dependency


connection_limiter = rate_limiter(
    "connection", 10, 15 * 60, "Too many connection attempts, please try again later."
)
two_factor_resend_limiter = rate_limiter(
    "twofactor-resend", 5, 15 * 60, "Too many verification code requests, please try again later."
)
bug_report_limiter = rate_limiter(
    "bug-report", 5, 60 * 60, "Too many bug reports submitted. Please try again later."
)
contact_limiter = rate_limiter(
    "contact", 10, 60 * 60, "Too many contact form submissions. Please try again later."
)
