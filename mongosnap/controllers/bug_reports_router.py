from datetime import datetime, timedelta, timezone
from typing import Optional
import logging
import re

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from mongosnap.dto.base import Pagination, ReponseWrapper
from mongosnap.dto.bug_reports import AdminNoteIn, BugReportIn, BugStatusUpdate
from mongosnap.models.bug_reports import (
    BUG_CATEGORIES,
    AdminNote,
    BrowserInfo,
    BugCategory,
    BugPage,
    BugReport,
    BugStatus,
    PRIORITY_ORDER,
    Priority,
)
from mongosnap.models.users import User
from mongosnap.services.rate_limit import bug_report_limiter
from mongosnap.utils.auth import get_current_user_doc, require_admin, validate_csrf
from mongosnap.utils.text import anonymize_ip, client_ip, extract_browser_info, sanitize_input

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/bug-report', tags=["Bug reports"])

TIMEFRAMES = {"7d": 7, "30d": 30, "90d": 90}
SORT_FIELDS = {"created_at", "updated_at", "priority", "status", "category"}
RELATED_REPORTS_LIMIT = 5


def _parse_id(value: str) -> PydanticObjectId:
  try:
    return PydanticObjectId(value)
  except (InvalidId, TypeError, ValueError):
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid bug report ID")


async def _get_report(report_id: str) -> BugReport:
  report = await BugReport.get(_parse_id(report_id))
  if not report:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bug report not found")
  return report


async def _count_by(field: str, match: dict) -> dict:
  rows = await BugReport.find(match).aggregate([
    {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
  ]).to_list()
  return {row["_id"]: row["count"] for row in rows}


@router.get("/categories", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def get_categories():
  return ReponseWrapper(message="Bug report categories retrieved", data={
    "categories": BUG_CATEGORIES,
    "pages": [page.value for page in BugPage],
  })


@router.post("/submit", response_model=ReponseWrapper[BugReport], status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(bug_report_limiter)])
async def submit_bug_report(data: BugReportIn, request: Request, user: User = Depends(validate_csrf)):
  try:
    user_agent = request.headers.get("user-agent")
    browser_info = BrowserInfo(**extract_browser_info(user_agent), screen_resolution=data.screen_resolution)

    report = BugReport(
      user_id=user.id,
      user_email=user.email,
      user_name=user.name,
      category=data.category,
      custom_category=sanitize_input(data.custom_category) if data.category == BugCategory.OTHER else None,
      title=sanitize_input(data.title),
      description=sanitize_input(data.description),
      page=data.page,
      problematic_query=data.problematic_query.strip() if data.problematic_query else None,
      browser_info=browser_info,
      connection_context=data.connection_context,
      ip_address=anonymize_ip(client_ip(request)),
    )
    report.auto_assign_priority()
    await report.insert()
    logger.info("Bug report %s submitted by user %s (category=%s, priority=%s)",
                report.id, user.id, report.category.value, report.priority.value)
    return ReponseWrapper(message="Bug report submitted successfully. Thank you for helping us improve MongoSnap!", data=report)
  except Exception as e:
    raise e


@router.get("/my-reports", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def my_reports(
  page: int = Query(1, ge=1),
  limit: int = Query(10, ge=1, le=50),
  status_filter: Optional[BugStatus] = Query(None, alias="status"),
  user: User = Depends(get_current_user_doc),
):
  try:
    filters = {"user_id": user.id}
    if status_filter:
      filters["status"] = status_filter.value
    total = await BugReport.find(filters).count()
    reports = await BugReport.find(filters).sort("-created_at").skip((page - 1) * limit).limit(limit).to_list()
    return ReponseWrapper(message="Bug reports retrieved successfully", data={
      "reports": reports,
      "pagination": Pagination.build(page, limit, total),
    })
  except Exception as e:
    raise e


@router.get("/stats", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def my_stats(user: User = Depends(get_current_user_doc)):
  try:
    by_status = await _count_by("status", {"user_id": user.id})
    return ReponseWrapper(message="Bug report statistics retrieved", data={
      "total": sum(by_status.values()),
      "by_status": {s.value: by_status.get(s.value, 0) for s in BugStatus},
    })
  except Exception as e:
    raise e


@router.get("/admin/reports", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def admin_list_reports(
  page: int = Query(1, ge=1),
  limit: int = Query(20, ge=1, le=100),
  status_filter: Optional[BugStatus] = Query(None, alias="status"),
  category: Optional[BugCategory] = None,
  priority: Optional[Priority] = None,
  page_filter: Optional[BugPage] = Query(None, alias="page_name"),
  search: Optional[str] = None,
  sort_by: str = "created_at",
  sort_order: str = Query("desc", pattern="^(asc|desc)$"),
  admin: User = Depends(require_admin),
):
  try:
    filters = {}
    if status_filter:
      filters["status"] = status_filter.value
    if category:
      filters["category"] = category.value
    if priority:
      filters["priority"] = priority.value
    if page_filter:
      filters["page"] = page_filter.value
    if search:
      pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
      filters["$or"] = [{"title": pattern}, {"description": pattern}, {"user_email": pattern}]

    if sort_by not in SORT_FIELDS:
      sort_by = "created_at"
    total = await BugReport.find(filters).count()
    if sort_by == "priority":
      # enum values sort alphabetically, so rank them by severity
      pipeline = [
        {"$addFields": {"priority_rank": {"$indexOfArray": [PRIORITY_ORDER, "$priority"]}}},
        {"$sort": {"priority_rank": -1 if sort_order == "desc" else 1, "created_at": -1}},
        {"$skip": (page - 1) * limit},
        {"$limit": limit},
        {"$project": {"priority_rank": 0}},
      ]
      reports = await BugReport.find(filters).aggregate(pipeline, projection_model=BugReport).to_list()
    else:
      sort = f"{'-' if sort_order == 'desc' else '+'}{sort_by}"
      reports = await BugReport.find(filters).sort(sort).skip((page - 1) * limit).limit(limit).to_list()
    return ReponseWrapper(message="Bug reports retrieved successfully", data={
      "reports": reports,
      "pagination": Pagination.build(page, limit, total),
    })
  except Exception as e:
    raise e


@router.get("/admin/reports/{report_id}", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def admin_get_report(report_id: str, admin: User = Depends(require_admin)):
  try:
    report = await _get_report(report_id)
    related = await BugReport.find({
      "category": report.category.value,
      "_id": {"$ne": report.id},
    }).sort("-created_at").limit(RELATED_REPORTS_LIMIT).to_list()
    return ReponseWrapper(message="Bug report retrieved successfully", data={
      "report": report,
      "category_description": report.category_description(),
      "related_reports": related,
    })
  except Exception as e:
    raise e


@router.put("/admin/reports/{report_id}/status", response_model=ReponseWrapper[BugReport], status_code=status.HTTP_200_OK)
async def admin_update_status(report_id: str, data: BugStatusUpdate, admin: User = Depends(require_admin)):
  try:
    report = await _get_report(report_id)
    now = datetime.now(timezone.utc)
    previous = report.status

    report.status = data.status
    if data.resolution is not None:
      report.resolution = sanitize_input(data.resolution)
    if data.priority is not None:
      report.priority = data.priority
    if data.assigned_to is not None:
      report.assigned_to = data.assigned_to
    if data.status == BugStatus.DUPLICATE and data.duplicate_of is not None:
      report.duplicate_of = data.duplicate_of
    if data.status in (BugStatus.RESOLVED, BugStatus.CLOSED):
      report.resolved_at = now
      report.resolved_by = admin.id
    report.updated_at = now
    await report.save()

    logger.info("Admin %s changed bug report %s status %s -> %s", admin.id, report.id, previous.value, data.status.value)
    return ReponseWrapper(message="Bug report status updated", data=report)
  except Exception as e:
    raise e


@router.post("/admin/reports/{report_id}/notes", response_model=ReponseWrapper[BugReport], status_code=status.HTTP_201_CREATED)
async def admin_add_note(report_id: str, data: AdminNoteIn, admin: User = Depends(require_admin)):
  try:
    report = await _get_report(report_id)
    report.admin_notes.append(AdminNote(note=sanitize_input(data.note), added_by=admin.id))
    report.updated_at = datetime.now(timezone.utc)
    await report.save()
    return ReponseWrapper(message="Note added", data=report)
  except Exception as e:
    raise e


@router.get("/admin/stats", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def admin_stats(timeframe: str = Query("30d", pattern="^(7d|30d|90d)$"), admin: User = Depends(require_admin)):
  try:
    since = datetime.now(timezone.utc) - timedelta(days=TIMEFRAMES[timeframe])
    match = {"created_at": {"$gte": since}}

    by_status = await _count_by("status", match)
    by_category = await _count_by("category", match)
    by_priority = await _count_by("priority", match)
    by_page = await _count_by("page", match)
    unresolved_urgent = await BugReport.find({
      "priority": {"$in": [Priority.HIGH.value, Priority.URGENT.value]},
      "status": {"$in": [BugStatus.OPEN.value, BugStatus.IN_PROGRESS.value]},
    }).count()

    return ReponseWrapper(message="Bug report statistics retrieved", data={
      "timeframe": timeframe,
      "total": sum(by_status.values()),
      "by_status": by_status,
      "by_category": by_category,
      "by_priority": by_priority,
      "by_page": by_page,
      "open_high_priority": unresolved_urgent,
    })
  except Exception as e:
    raise e
