from pydantic import BaseModel, EmailStr, Field
from typing import Optional

from mongosnap.models.bug_reports import Priority
from mongosnap.models.contacts import ContactCategory, ContactStatus

class ContactIn(BaseModel):
  name: str = Field(..., min_length=2, max_length=100, examples=["Grace Hopper"])
  email: EmailStr = Field(..., examples=["grace@example.com"])
  subject: str = Field(..., min_length=5, max_length=200, examples=["Team plan pricing"])
  message: str = Field(..., min_length=10, max_length=2000)
  category: ContactCategory = ContactCategory.GENERAL

class ContactStatusUpdate(BaseModel):
  status: ContactStatus
  response: Optional[str] = Field(None, max_length=2000)
  priority: Optional[Priority] = None
