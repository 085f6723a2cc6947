from datetime import datetime, timezone
from typing import Optional
import logging

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from mongosnap.dto.base import Pagination, ReponseWrapper
from mongosnap.dto.bug_reports import AdminNoteIn
from mongosnap.dto.contacts import ContactIn, ContactStatusUpdate
from mongosnap.models.bug_reports import AdminNote, Priority
from mongosnap.models.contacts import CONTACT_CATEGORIES, Contact, ContactCategory, ContactStatus
from mongosnap.models.users import User
from mongosnap.services.rate_limit import contact_limiter
from mongosnap.utils.auth import get_optional_user, require_admin
from mongosnap.utils.text import anonymize_ip, client_ip, sanitize_input

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/contact', tags=["Contact"])


def _parse_id(value: str) -> PydanticObjectId:
  try:
    return PydanticObjectId(value)
  except (InvalidId, TypeError, ValueError):
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid contact ID")


async def _get_contact(contact_id: str) -> Contact:
  contact = await Contact.get(_parse_id(contact_id))
  if not contact:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact submission not found")
  return contact


@router.post("/submit", response_model=ReponseWrapper[dict], status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(contact_limiter)])
async def submit_contact(data: ContactIn, request: Request, current_user: Optional[str] = Depends(get_optional_user)):
  try:
    email = data.email.lower()
    if await Contact.check_spam(email):
      logger.warning("Contact submission from %s rejected as spam", email)
      raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                          detail="Too many messages sent from this email address. Please try again later.")

    contact = Contact(
      name=sanitize_input(data.name),
      email=email,
      subject=sanitize_input(data.subject),
      message=sanitize_input(data.message),
      category=data.category,
      ip_address=anonymize_ip(client_ip(request), mask="*"),
      user_id=PydanticObjectId(current_user) if current_user else None,
    )
    await contact.insert()
    logger.info("Contact submission %s received (category=%s)", contact.id, contact.category.value)
    return ReponseWrapper(message="Thank you for contacting us. We will get back to you soon.", data={
      "id": str(contact.id),
      "created_at": contact.created_at,
    })
  except Exception as e:
    raise e


@router.get("/categories", response_model=ReponseWrapper[list], status_code=status.HTTP_200_OK)
async def get_categories():
  return ReponseWrapper(message="Contact categories retrieved", data=CONTACT_CATEGORIES)


@router.get("/admin/contacts", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def admin_list_contacts(
  page: int = Query(1, ge=1),
  limit: int = Query(20, ge=1, le=100),
  status_filter: Optional[ContactStatus] = Query(None, alias="status"),
  category: Optional[ContactCategory] = None,
  priority: Optional[Priority] = None,
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

    total = await Contact.find(filters).count()
    contacts = await Contact.find(filters).sort("-created_at").skip((page - 1) * limit).limit(limit).to_list()
    return ReponseWrapper(message="Contact submissions retrieved", data={
      "contacts": contacts,
      "pagination": Pagination.build(page, limit, total),
    })
  except Exception as e:
    raise e


@router.get("/admin/stats", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def admin_stats(admin: User = Depends(require_admin)):
  try:
    by_status = await Contact.find({}).aggregate([
      {"$group": {"_id": "$status", "count": {"$sum": 1}}},
    ]).to_list()
    by_category = await Contact.find({}).aggregate([
      {"$group": {"_id": "$category", "count": {"$sum": 1}}},
    ]).to_list()
    status_counts = {row["_id"]: row["count"] for row in by_status}
    return ReponseWrapper(message="Contact statistics retrieved", data={
      "total": sum(status_counts.values()),
      "by_status": {s.value: status_counts.get(s.value, 0) for s in ContactStatus},
      "by_category": {row["_id"]: row["count"] for row in by_category},
    })
  except Exception as e:
    raise e


@router.get("/admin/contacts/{contact_id}", response_model=ReponseWrapper[Contact], status_code=status.HTTP_200_OK)
async def admin_get_contact(contact_id: str, admin: User = Depends(require_admin)):
  try:
    contact = await _get_contact(contact_id)
    return ReponseWrapper(message="Contact submission retrieved", data=contact)
  except Exception as e:
    raise e


@router.put("/admin/contacts/{contact_id}/status", response_model=ReponseWrapper[Contact], status_code=status.HTTP_200_OK)
async def admin_update_status(contact_id: str, data: ContactStatusUpdate, admin: User = Depends(require_admin)):
  try:
    contact = await _get_contact(contact_id)
    now = datetime.now(timezone.utc)

    contact.status = data.status
    if data.priority is not None:
      contact.priority = data.priority
    if data.status == ContactStatus.RESPONDED:
      if data.response:
        contact.response = sanitize_input(data.response)
      contact.responded_at = now
      contact.responded_by = admin.id
    contact.updated_at = now
    await contact.save()

    logger.info("Admin %s set contact %s status to %s", admin.id, contact.id, data.status.value)
    return ReponseWrapper(message="Contact status updated", data=contact)
  except Exception as e:
    raise e


@router.post("/admin/contacts/{contact_id}/notes", response_model=ReponseWrapper[Contact], status_code=status.HTTP_201_CREATED)
async def admin_add_note(contact_id: str, data: AdminNoteIn, admin: User = Depends(require_admin)):
  try:
    contact = await _get_contact(contact_id)
    contact.admin_notes.append(AdminNote(note=sanitize_input(data.note), added_by=admin.id))
    contact.updated_at = datetime.now(timezone.utc)
    await contact.save()
    return ReponseWrapper(message="Note added", data=contact)
  except Exception as e:
    raise e
