from datetime import datetime
from pydantic import BaseModel, EmailStr, Field
from beanie import PydanticObjectId
from typing import Optional

from mongosnap.models.users import SubscriptionPlan, SubscriptionStatus, TwoFactorMethod

class SignupRequest(BaseModel):
  name: str = Field(..., min_length=1, max_length=100, examples=["Ada Lovelace"])
  email: EmailStr = Field(..., examples=["ada@example.com"])
  password: str = Field(..., min_length=8, max_length=128, examples=["Analytical@1843"])

class LoginRequest(BaseModel):
  email: EmailStr = Field(..., examples=["ada@example.com"])
  password: str = Field(..., examples=["Analytical@1843"])

class UserOut(BaseModel):
  id: PydanticObjectId
  name: str = Field(..., examples=["Ada Lovelace"])
  email: EmailStr = Field(..., examples=["ada@example.com"])
  is_verified: bool = False
  two_factor_enabled: bool = False
  two_factor_method: Optional[TwoFactorMethod] = None
  login_notifications_enabled: bool = True
  is_admin: bool = False
  subscription_plan: SubscriptionPlan = SubscriptionPlan.SNAP
  subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
  subscription_expires_at: Optional[datetime] = None
  created_at: Optional[datetime] = None

class LoginResponse(BaseModel):
  user: Optional[UserOut] = None
  access_token: Optional[str] = None
  token_type: str = "bearer"
  csrf_token: Optional[str] = None
  requires_two_factor: bool = False
  two_factor_method: Optional[TwoFactorMethod] = None
  email: Optional[EmailStr] = None

class TokenResponse(BaseModel):
  access_token: str
  token_type: str = "bearer"
  csrf_token: Optional[str] = None

class RefreshRequest(BaseModel):
  refresh_token: Optional[str] = Field(None, description="Falls back to the refreshToken cookie")

class ForgotPasswordRequest(BaseModel):
  email: EmailStr

class ResetPasswordRequest(BaseModel):
  token: str = Field(..., examples=["9f1c2e..."])
  new_password: str = Field(..., min_length=8, max_length=128)

class ChangePasswordRequest(BaseModel):
  current_password: str
  new_password: str = Field(..., min_length=8, max_length=128)

class RevokeSessionRequest(BaseModel):
  session_id: PydanticObjectId

class LoginNotificationsRequest(BaseModel):
  enabled: bool

class SessionOut(BaseModel):
  id: PydanticObjectId
  device_info: dict
  is_current: bool
  created_at: datetime
  last_used_at: Optional[datetime] = None
  is_used: bool
