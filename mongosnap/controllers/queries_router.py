from datetime import datetime, timezone
from typing import List, Optional
import logging

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, HTTPException, Query, status

from mongosnap.dto.base import Pagination, ReponseWrapper
from mongosnap.dto.queries import HistoryStats, QueryHistoryIn, SavedQueryIn, SavedQueryUpdate
from mongosnap.models.queries import QueryHistory, QueryStatus, SavedQuery
from mongosnap.models.users import User
from mongosnap.utils.auth import get_current_user_doc

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/query', tags=["Queries"])

SNAP_HISTORY_LIMIT = 50
SNAPX_REQUIRED_MESSAGE = "Saved queries are available on the SnapX plan. Upgrade to save and organize queries."


def _parse_id(value: str, label: str = "ID") -> PydanticObjectId:
  try:
    return PydanticObjectId(value)
  except (InvalidId, TypeError, ValueError):
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid {label}")


def _normalize_tags(tags: List[str]) -> List[str]:
  normalized = []
  for tag in tags:
    tag = tag.strip().lower()
    if tag and tag not in normalized:
      normalized.append(tag)
  return normalized


async def require_snapx(user: User = Depends(get_current_user_doc)) -> User:
  if not user.is_snapx_user():
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=SNAPX_REQUIRED_MESSAGE)
  return user


def history_window(page: int, limit: int, total: int, capped: bool):
  """Return (skip, limit, visible_total). Snap users only see the newest ``SNAP_HISTORY_LIMIT`` entries."""
  skip = (page - 1) * limit
  if not capped:
    return skip, limit, total
  visible = min(total, SNAP_HISTORY_LIMIT)
  return skip, max(0, min(limit, visible - skip)), visible


@router.get("/history", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def get_history(
  page: int = Query(1, ge=1),
  limit: int = Query(20, ge=1, le=100),
  connection_id: Optional[str] = None,
  status_filter: Optional[QueryStatus] = Query(None, alias="status"),
  collection: Optional[str] = None,
  operation: Optional[str] = None,
  user: User = Depends(get_current_user_doc),
):
  try:
    filters = {"user_id": user.id}
    if connection_id:
      filters["connection_id"] = _parse_id(connection_id, "connection ID")
    if status_filter:
      filters["status"] = status_filter.value
    if collection:
      filters["collection_name"] = collection
    if operation:
      filters["operation"] = operation

    total = await QueryHistory.find(filters).count()
    capped = not user.is_snapx_user()
    skip, take, visible = history_window(page, limit, total, capped)

    items = []
    if take > 0:
      items = await QueryHistory.find(filters).sort("-created_at").skip(skip).limit(take).to_list()

    return ReponseWrapper(message="Query history retrieved successfully", data={
      "history": items,
      "pagination": Pagination.build(page, limit, visible),
      "limited": capped and total > SNAP_HISTORY_LIMIT,
      "history_limit": SNAP_HISTORY_LIMIT if capped else None,
    })
  except Exception as e:
    raise e


@router.get("/history/stats", response_model=ReponseWrapper[HistoryStats], status_code=status.HTTP_200_OK)
async def get_history_stats(user: User = Depends(get_current_user_doc)):
  try:
    total = await QueryHistory.find({"user_id": user.id}).count()
    successful = await QueryHistory.find({"user_id": user.id, "status": QueryStatus.SUCCESS.value}).count()

    averages = await QueryHistory.find({"user_id": user.id}).aggregate([
      {"$group": {"_id": None, "avg": {"$avg": "$execution_time"}, "last": {"$max": "$created_at"}}},
    ]).to_list()
    top_collections = await QueryHistory.find({"user_id": user.id, "collection_name": {"$ne": None}}).aggregate([
      {"$group": {"_id": "$collection_name", "count": {"$sum": 1}}},
      {"$sort": {"count": -1}},
      {"$limit": 5},
    ]).to_list()
    top_operations = await QueryHistory.find({"user_id": user.id, "operation": {"$ne": None}}).aggregate([
      {"$group": {"_id": "$operation", "count": {"$sum": 1}}},
      {"$sort": {"count": -1}},
      {"$limit": 5},
    ]).to_list()

    summary = averages[0] if averages else {}
    return ReponseWrapper(message="Query statistics retrieved successfully", data=HistoryStats(
      total_queries=total,
      successful_queries=successful,
      failed_queries=total - successful,
      success_rate=round(successful / total * 100, 2) if total else 0,
      avg_execution_time=round(summary.get("avg") or 0, 2),
      top_collections=[{"collection": c["_id"], "count": c["count"]} for c in top_collections],
      top_operations=[{"operation": o["_id"], "count": o["count"]} for o in top_operations],
      last_query_at=summary.get("last"),
    ))
  except Exception as e:
    raise e


@router.post("/history", response_model=ReponseWrapper[QueryHistory], status_code=status.HTTP_201_CREATED)
async def save_history(data: QueryHistoryIn, user: User = Depends(get_current_user_doc)):
  try:
    entry = QueryHistory(user_id=user.id, **data.model_dump())
    await entry.insert()
    return ReponseWrapper(message="Query saved to history", data=entry)
  except Exception as e:
    raise e


@router.delete("/history/{history_id}", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def delete_history_entry(history_id: str, user: User = Depends(get_current_user_doc)):
  try:
    entry = await QueryHistory.find_one({"_id": _parse_id(history_id), "user_id": user.id})
    if not entry:
      raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="History entry not found")
    await entry.delete()
    return ReponseWrapper(message="History entry deleted", data={})
  except Exception as e:
    raise e


@router.delete("/history", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def clear_history(connection_id: Optional[str] = None, user: User = Depends(get_current_user_doc)):
  try:
    filters = {"user_id": user.id}
    if connection_id:
      filters["connection_id"] = _parse_id(connection_id, "connection ID")
    result = await QueryHistory.find(filters).delete()
    deleted = result.deleted_count if result else 0
    return ReponseWrapper(message="Query history cleared", data={"deleted_count": deleted})
  except Exception as e:
    raise e


@router.get("/saved", response_model=ReponseWrapper[List[SavedQuery]], status_code=status.HTTP_200_OK)
async def list_saved_queries(tag: Optional[str] = None, connection_id: Optional[str] = None, user: User = Depends(require_snapx)):
  try:
    filters = {"user_id": user.id}
    if tag:
      filters["tags"] = tag.strip().lower()
    if connection_id:
      filters["connection_id"] = _parse_id(connection_id, "connection ID")
    saved = await SavedQuery.find(filters).sort("-updated_at").to_list()
    return ReponseWrapper(message="Saved queries retrieved successfully", data=saved)
  except Exception as e:
    raise e


@router.get("/saved/tags", response_model=ReponseWrapper[List[dict]], status_code=status.HTTP_200_OK)
async def saved_query_tags(user: User = Depends(require_snapx)):
  try:
    tags = await SavedQuery.find({"user_id": user.id}).aggregate([
      {"$unwind": "$tags"},
      {"$group": {"_id": "$tags", "count": {"$sum": 1}}},
      {"$sort": {"count": -1, "_id": 1}},
    ]).to_list()
    return ReponseWrapper(message="Tags retrieved successfully", data=[{"tag": t["_id"], "count": t["count"]} for t in tags])
  except Exception as e:
    raise e


@router.post("/saved", response_model=ReponseWrapper[SavedQuery], status_code=status.HTTP_201_CREATED)
async def create_saved_query(data: SavedQueryIn, user: User = Depends(require_snapx)):
  try:
    name = data.name.strip()
    if await SavedQuery.find_one({"user_id": user.id, "name": name}):
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A saved query with this name already exists")
    saved = SavedQuery(user_id=user.id, **data.model_dump(exclude={"name", "tags"}), name=name, tags=_normalize_tags(data.tags))
    await saved.insert()
    return ReponseWrapper(message="Query saved successfully", data=saved)
  except Exception as e:
    raise e


async def _get_saved(saved_id: str, user: User) -> SavedQuery:
  saved = await SavedQuery.find_one({"_id": _parse_id(saved_id), "user_id": user.id})
  if not saved:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Saved query not found")
  return saved


@router.put("/saved/{saved_id}", response_model=ReponseWrapper[SavedQuery], status_code=status.HTTP_200_OK)
async def update_saved_query(saved_id: str, data: SavedQueryUpdate, user: User = Depends(require_snapx)):
  try:
    saved = await _get_saved(saved_id, user)
    update_data = data.model_dump(exclude_unset=True)
    if "name" in update_data:
      update_data["name"] = update_data["name"].strip()
      clash = await SavedQuery.find_one({"user_id": user.id, "name": update_data["name"], "_id": {"$ne": saved.id}})
      if clash:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A saved query with this name already exists")
    if "tags" in update_data:
      update_data["tags"] = _normalize_tags(update_data["tags"] or [])
    update_data["updated_at"] = datetime.now(timezone.utc)
    await saved.set(update_data)
    return ReponseWrapper(message="Saved query updated successfully", data=saved)
  except Exception as e:
    raise e


@router.delete("/saved/{saved_id}", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def delete_saved_query(saved_id: str, user: User = Depends(require_snapx)):
  try:
    saved = await _get_saved(saved_id, user)
    await saved.delete()
    return ReponseWrapper(message="Saved query deleted successfully", data={})
  except Exception as e:
    raise e


@router.post("/saved/{saved_id}/execute", response_model=ReponseWrapper[SavedQuery], description="Mark a saved query as used and return it for execution", status_code=status.HTTP_200_OK)
async def use_saved_query(saved_id: str, user: User = Depends(require_snapx)):
  try:
    saved = await _get_saved(saved_id, user)
    saved.usage_count += 1
    saved.last_used = datetime.now(timezone.utc)
    await saved.save()
    return ReponseWrapper(message="Saved query ready to execute", data=saved)
  except Exception as e:
    raise e
