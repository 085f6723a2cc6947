from pydantic import BaseModel, EmailStr, Field
from typing import List, Optional

from mongosnap.models.users import TwoFactorMethod

class TwoFactorStatus(BaseModel):
  enabled: bool
  method: Optional[TwoFactorMethod] = None
  setup_pending: bool = False
  backup_codes_remaining: int = 0

class VerifyTwoFactorRequest(BaseModel):
  email: EmailStr = Field(..., examples=["ada@example.com"])
  token: str = Field(..., min_length=4, max_length=8, examples=["a3f9"])

class ResendTwoFactorRequest(BaseModel):
  email: EmailStr

class TotpSetupResponse(BaseModel):
  secret: str
  otpauth_url: str
  qr_code: str

class TotpCodeRequest(BaseModel):
  code: str = Field(..., min_length=6, max_length=9, examples=["492039"])

class TotpDisableRequest(BaseModel):
  password: str

class TotpVerifyRequest(BaseModel):
  email: EmailStr
  code: str = Field(..., min_length=6, max_length=9, examples=["492039", "A1B2-C3D4"])

class BackupCodesResponse(BaseModel):
  backup_codes: List[str]
