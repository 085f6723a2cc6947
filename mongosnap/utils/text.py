import html
import re
from typing import Dict, Optional

from fastapi import Request

from mongosnap.core.config import TRUST_PROXY

_TAG_RE = re.compile(r"<[^>]*>")


def sanitize_input(value: Optional[str]) -> Optional[str]:
    """Drop HTML tags and escape what is left."""
    if value is None:
        return None
    stripped = _TAG_RE.sub("", value)
    return html.escape(html.unescape(stripped), quote=False).strip()


def client_ip(request: Request, trust_proxy: Optional[bool] = None) -> str:
    """Socket address of the caller; X-Forwarded-For only counts behind a trusted proxy."""
    if trust_proxy is None:
        trust_proxy = TRUST_PROXY
    forwarded = request.headers.get("x-forwarded-for") if trust_proxy else None
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "Unknown"


def anonymize_ip(ip_address: Optional[str], mask: str = "xxx") -> str:
    if not ip_address or ip_address == "Unknown":
        return "Unknown"

    if "." in ip_address and ":" not in ip_address:
        parts = ip_address.split(".")
        if len(parts) == 4:
            return f"{parts[0]}.{parts[1]}.{parts[2]}.{mask}"

    if ":" in ip_address:
        parts = ip_address.split(":")
        if len(parts) >= 4:
            return f"{parts[0]}:{parts[1]}:{parts[2]}:{parts[3]}::{mask}"

    return "Unknown"


_WINDOWS_VERSIONS = {"10.0": "10/11", "6.3": "8.1", "6.2": "8", "6.1": "7"}


def _version(pattern: str, user_agent: str) -> str:
    match = re.search(pattern, user_agent)
    return match.group(1) if match else "Unknown"


def extract_browser_info(user_agent: Optional[str]) -> Dict[str, str]:
    if not user_agent:
        return {
            "user_agent": "Unknown",
            "browser_name": "Unknown",
            "browser_version": "Unknown",
            "os_name": "Unknown",
            "os_version": "Unknown",
        }

    browser_name, browser_version = "Unknown", "Unknown"
    if "Edg" in user_agent:
        browser_name, browser_version = "Edge", _version(r"Edg/([0-9.]+)", user_agent)
    elif "Chrome" in user_agent:
        browser_name, browser_version = "Chrome", _version(r"Chrome/([0-9.]+)", user_agent)
    elif "Firefox" in user_agent:
        browser_name, browser_version = "Firefox", _version(r"Firefox/([0-9.]+)", user_agent)
    elif "Safari" in user_agent:
        browser_name, browser_version = "Safari", _version(r"Version/([0-9.]+)", user_agent)

    os_name, os_version = "Unknown", "Unknown"
    if "Windows NT" in user_agent:
        os_name = "Windows"
        raw = _version(r"Windows NT ([0-9.]+)", user_agent)
        os_version = _WINDOWS_VERSIONS.get(raw, raw)
    elif "Android" in user_agent:
        os_name, os_version = "Android", _version(r"Android ([0-9.]+)", user_agent)
    elif "iPhone" in user_agent or "iPad" in user_agent:
        os_name = "iOS"
        os_version = _version(r"OS ([0-9_]+)", user_agent).replace("_", ".")
    elif "Mac OS X" in user_agent:
        os_name = "macOS"
        os_version = _version(r"Mac OS X ([0-9_]+)", user_agent).replace("_", ".")
    elif "Linux" in user_agent:
        os_name = "Linux"

    return {
        "user_agent": user_agent,
        "browser_name": browser_name,
        "browser_version": browser_version,
        "os_name": os_name,
        "os_version": os_version,
    }
