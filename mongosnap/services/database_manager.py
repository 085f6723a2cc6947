"""
Live MongoDB clients for user connections.

One ``DatabaseManager`` lives per process. Each user holds at most one live
client at a time: connecting to a new database closes the user's other clients.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
import logging
import re

from pymongo import AsyncMongoClient
from pymongo.errors import (
    ConfigurationError,
    ConnectionFailure,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from mongosnap.core.config import STALE_CONNECTION_MINUTES
from mongosnap.core.exceptions import ConnectionTestError
from mongosnap.core.logging import mask

logger = logging.getLogger(__name__)

URI_FORMAT_RE = re.compile(r"^mongodb(?:\+srv)?://.+:.+@.+/[^?]+(?:\?.*)?$")
URI_PARTS_RE = re.compile(r"mongodb(?:\+srv)?://(?:[^@/]+@)?([^/]+)/([^?]+)")

CLIENT_OPTIONS = {
    "serverSelectionTimeoutMS": 5000,
    "connectTimeoutMS": 10000,
    "socketTimeoutMS": 45000,
    "maxPoolSize": 10,
    "tz_aware": True,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_uri_format(uri: str) -> bool:
    return bool(URI_FORMAT_RE.match(uri or ""))


def parse_uri(uri: str) -> Tuple[str, Optional[str]]:
    """Return ``(host, database_name)``; both fall back when the URI has no path."""
    match = URI_PARTS_RE.search(uri or "")
    if not match:
        return "unknown", None
    return match.group(1), match.group(2)


def describe_connection_error(error: Exception) -> str:
    text = str(error)
    lowered = text.lower()
    if "econnrefused" in lowered or "connection refused" in lowered:
        return "Connection refused. Check if the host is reachable and MongoDB is running."
    if isinstance(error, OperationFailure) or "authentication failed" in lowered or "bad auth" in lowered:
        return "Authentication failed. Verify username and password are correct."
    if "enotfound" in lowered or "nodename nor servname" in lowered or "dns" in lowered \
            or "name or service not known" in lowered:
        return "Hostname not found. Check the URI format and DNS resolution."
    if isinstance(error, NetworkTimeout) or "timed out" in lowered or "timeout" in lowered:
        return "Connection timed out. Check network connectivity and firewall settings."
    if isinstance(error, ServerSelectionTimeoutError) or "server selection" in lowered:
        return "Cannot reach MongoDB server. Check if the cluster is accessible from your IP."
    if isinstance(error, ConnectionFailure) or "network" in lowered:
        return "Network error. Check your internet connection and firewall settings."
    return text


class DatabaseManager:
    def __init__(self, client_factory=AsyncMongoClient):
        self._client_factory = client_factory
        # user_id -> connection_id -> {"client": ..., "info": {...}}
        self.connections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _new_client(self, uri: str):
        try:
            return self._client_factory(uri, **CLIENT_OPTIONS)
        except (ConfigurationError, ValueError) as e:
            raise ConnectionTestError("Invalid MongoDB URI", describe_connection_error(e)) from e

    async def test_uri(self, uri: str) -> Dict[str, Any]:
        """Open a short-lived client and ping it. Raises ConnectionTestError with a hint on failure."""
        host, database_name = parse_uri(uri)
        client = self._new_client(uri)
        try:
            await client.admin.command("ping")
            return {"host": host, "database_name": database_name}
        except (PyMongoError, OSError) as e:
            logger.info("Connection test failed for %s: %s", mask(uri), e)
            raise ConnectionTestError("Failed to connect to MongoDB", describe_connection_error(e)) from e
        finally:
            await client.close()

    async def connect(self, user_id: str, connection_id: str, uri: str, nickname: str = "") -> Dict[str, Any]:
        user_id, connection_id = str(user_id), str(connection_id)
        for other_id in list(self.connections.get(user_id, {})):
            if other_id != connection_id:
                await self.disconnect(user_id, other_id)

        existing = self.connections.get(user_id, {}).get(connection_id)
        if existing and await self._ping(existing["client"]):
            existing["info"]["last_used"] = _utcnow()
            return existing["info"]
        if existing:
            await self.disconnect(user_id, connection_id)

        host, database_name = parse_uri(uri)
        client = self._new_client(uri)
        try:
            await client.admin.command("ping")
        except (PyMongoError, OSError) as e:
            await client.close()
            raise ConnectionTestError("Failed to connect to MongoDB", describe_connection_error(e)) from e

        info = {
            "connection_id": connection_id,
            "nickname": nickname,
            "host": host,
            "database_name": database_name,
            "uri": mask(uri),
            "connected_at": _utcnow(),
            "last_used": _utcnow(),
        }
        self.connections.setdefault(user_id, {})[connection_id] = {"client": client, "info": info}
        logger.info("User %s connected to %s (%s)", user_id, host, connection_id)
        return info

    async def disconnect(self, user_id: str, connection_id: str) -> bool:
        user_connections = self.connections.get(str(user_id), {})
        entry = user_connections.pop(str(connection_id), None)
        if not user_connections:
            self.connections.pop(str(user_id), None)
        if not entry:
            return False
        try:
            await entry["client"].close()
        except PyMongoError as e:
            logger.warning("Error closing client %s: %s", connection_id, e)
        logger.info("User %s disconnected from %s", user_id, connection_id)
        return True

    async def disconnect_all(self, user_id: str) -> int:
        ids = list(self.connections.get(str(user_id), {}))
        for connection_id in ids:
            await self.disconnect(user_id, connection_id)
        return len(ids)

    async def close_all(self) -> None:
        for user_id in list(self.connections):
            await self.disconnect_all(user_id)

    def get_client(self, user_id: str, connection_id: str):
        entry = self.connections.get(str(user_id), {}).get(str(connection_id))
        if not entry:
            return None
        entry["info"]["last_used"] = _utcnow()
        return entry["client"]

    def get_database(self, user_id: str, connection_id: str):
        entry = self.connections.get(str(user_id), {}).get(str(connection_id))
        if not entry:
            return None
        entry["info"]["last_used"] = _utcnow()
        return entry["client"][entry["info"]["database_name"]]

    def get_connection_info(self, user_id: str, connection_id: str) -> Optional[Dict[str, Any]]:
        entry = self.connections.get(str(user_id), {}).get(str(connection_id))
        return entry["info"] if entry else None

    def is_connected(self, user_id: str, connection_id: str) -> bool:
        return str(connection_id) in self.connections.get(str(user_id), {})

    async def _ping(self, client) -> bool:
        try:
            await client.admin.command("ping")
            return True
        except (PyMongoError, OSError):
            return False

    async def test_connection(self, user_id: str, connection_id: str) -> bool:
        client = self.get_client(user_id, connection_id)
        if client is None:
            return False
        return await self._ping(client)

    async def cleanup_stale_connections(self, max_age_minutes: int = STALE_CONNECTION_MINUTES) -> int:
        cutoff = _utcnow() - timedelta(minutes=max_age_minutes)
        removed = 0
        for user_id in list(self.connections):
            for connection_id, entry in list(self.connections.get(user_id, {}).items()):
                stale = entry["info"]["last_used"] < cutoff
                if stale or not await self._ping(entry["client"]):
                    await self.disconnect(user_id, connection_id)
                    removed += 1
        if removed:
            logger.info("Cleaned up %s stale connections", removed)
        return removed

    def get_connection_stats(self) -> Dict[str, int]:
        return {
            "total_users": len(self.connections),
            "total_connections": sum(len(c) for c in self.connections.values()),
        }


database_manager = DatabaseManager()
