from contextlib import asynccontextmanager
import asyncio
import logging

from beanie import init_beanie
from fastapi import FastAPI
from pymongo import AsyncMongoClient

from mongosnap.core.config import CLEANUP_INTERVAL_SECONDS, DATABASE_NAME, MONGODB_URL, STALE_CONNECTION_MINUTES
from mongosnap.models.bug_reports import BugReport
from mongosnap.models.connections import Connection
from mongosnap.models.contacts import Contact
from mongosnap.models.queries import QueryHistory, SavedQuery
from mongosnap.models.refresh_tokens import RefreshToken
from mongosnap.models.usage import UserUsage
from mongosnap.models.users import User
from mongosnap.services.database_manager import database_manager
from mongosnap.services import rate_limit

logger = logging.getLogger(__name__)

DOCUMENT_MODELS = [User, RefreshToken, UserUsage, Connection, QueryHistory, SavedQuery, BugReport, Contact]


async def run_cleanup() -> None:
  expired = await RefreshToken.cleanup_expired()
  stale = await database_manager.cleanup_stale_connections(STALE_CONNECTION_MINUTES)
  limits = rate_limit.sweep()
  logger.info(
    "Cleanup removed %s expired refresh tokens, %s stale connections and %s idle rate limit keys",
    expired, stale, limits,
  )


async def cleanup_loop(interval: int = CLEANUP_INTERVAL_SECONDS) -> None:
  while True:
    await asyncio.sleep(interval)
    try:
      await run_cleanup()
    except Exception:
      logger.exception("Periodic cleanup failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
  client = AsyncMongoClient(MONGODB_URL, tz_aware=True)
  await init_beanie(database=client[DATABASE_NAME], document_models=DOCUMENT_MODELS)
  logger.info("Connected to MongoDB database %s", DATABASE_NAME)

  cleanup_task = asyncio.create_task(cleanup_loop())
  try:
    yield
  finally:
    cleanup_task.cancel()
    try:
      await cleanup_task
    except asyncio.CancelledError:
      pass
    await database_manager.close_all()
    await client.close()
    logger.info("MongoDB connections closed")
