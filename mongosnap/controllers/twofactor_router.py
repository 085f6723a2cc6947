from datetime import datetime, timezone
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status

from mongosnap.controllers.auth_router import complete_login, send_two_factor_code
from mongosnap.dto.base import ReponseWrapper
from mongosnap.dto.twofactor import (
    BackupCodesResponse,
    ResendTwoFactorRequest,
    TotpCodeRequest,
    TotpDisableRequest,
    TotpSetupResponse,
    TotpVerifyRequest,
    TwoFactorStatus,
    VerifyTwoFactorRequest,
)
from mongosnap.dto.users import LoginResponse
from mongosnap.models.users import TwoFactorMethod, User
from mongosnap.services import totp
from mongosnap.services.mailer import send_email_background, two_factor_status_email
from mongosnap.services.rate_limit import two_factor_resend_limiter
from mongosnap.utils.auth import get_current_user_doc, verify_password
from mongosnap.utils.crypto import hash_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/twofactor', tags=["Two-factor"])


def _aware(value: datetime) -> datetime:
  if value.tzinfo is None:
    return value.replace(tzinfo=timezone.utc)
  return value


def _notify(background_tasks: BackgroundTasks, user: User, enabled: bool, method: str) -> None:
  state = "enabled" if enabled else "disabled"
  background_tasks.add_task(
    send_email_background,
    subject=f"Two-factor authentication {state}",
    email_to=user.email,
    body=two_factor_status_email(user.name, enabled, method),
  )


def _clear_two_factor(user: User) -> None:
  user.two_factor_enabled = False
  user.two_factor_method = None
  user.two_factor_token = None
  user.two_factor_expires_at = None
  user.two_factor_secret = None
  user.two_factor_setup_pending = False
  user.backup_codes = []


@router.get("/status", response_model=ReponseWrapper[TwoFactorStatus], status_code=status.HTTP_200_OK)
async def two_factor_status(user: User = Depends(get_current_user_doc)):
  return ReponseWrapper(message="Two-factor status retrieved", data=TwoFactorStatus(
    enabled=user.two_factor_enabled,
    method=user.two_factor_method,
    setup_pending=user.two_factor_setup_pending,
    backup_codes_remaining=totp.remaining_backup_codes(user),
  ))


@router.post("/enable-email-two-factor", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def enable_email_two_factor(background_tasks: BackgroundTasks, user: User = Depends(get_current_user_doc)):
  try:
    if user.two_factor_enabled:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Two-factor authentication already enabled")
    user.two_factor_enabled = True
    user.two_factor_method = TwoFactorMethod.EMAIL
    await user.save()
    _notify(background_tasks, user, True, "email")
    logger.info("User %s enabled email two-factor", user.id)
    return ReponseWrapper(message="Email two-factor authentication enabled", data={})
  except Exception as e:
    raise e


@router.post("/disable-email-two-factor", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def disable_email_two_factor(background_tasks: BackgroundTasks, user: User = Depends(get_current_user_doc)):
  try:
    if not user.two_factor_enabled:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Two-factor authentication not enabled")
    if user.two_factor_method != TwoFactorMethod.EMAIL:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email two-factor authentication is not the active method")
    _clear_two_factor(user)
    await user.save()
    _notify(background_tasks, user, False, "email")
    logger.info("User %s disabled email two-factor", user.id)
    return ReponseWrapper(message="Email two-factor authentication disabled", data={})
  except Exception as e:
    raise e


@router.post("/verify-two-factor", response_model=ReponseWrapper[LoginResponse], status_code=status.HTTP_200_OK)
async def verify_two_factor(data: VerifyTwoFactorRequest, request: Request, response: Response, background_tasks: BackgroundTasks):
  try:
    user = await User.find_one({"email": data.email.lower()})
    if not user:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User not found")
    if not user.two_factor_enabled or user.two_factor_method != TwoFactorMethod.EMAIL:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Two-factor authentication is not enabled for this user")
    if not user.two_factor_token or not user.two_factor_expires_at:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid verification token found")
    if _aware(user.two_factor_expires_at) < datetime.now(timezone.utc):
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Verification token has expired")
    if user.two_factor_token != hash_token(data.token.strip().lower()):
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid verification token")

    user.two_factor_token = None
    user.two_factor_expires_at = None
    login_response = await complete_login(user, request, response, background_tasks)
    return ReponseWrapper(message="Two-factor authentication successful", data=login_response)
  except Exception as e:
    raise e


@router.post("/resend-two-factor", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK,
             dependencies=[Depends(two_factor_resend_limiter)])
async def resend_two_factor(data: ResendTwoFactorRequest, background_tasks: BackgroundTasks):
  try:
    user = await User.find_one({"email": data.email.lower()})
    if not user:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User not found")
    if not user.two_factor_enabled or user.two_factor_method != TwoFactorMethod.EMAIL:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Two-factor authentication not enabled")
    await send_two_factor_code(user, background_tasks)
    return ReponseWrapper(message="OTP resent", data={})
  except Exception as e:
    raise e


@router.post("/totp/setup", response_model=ReponseWrapper[TotpSetupResponse], status_code=status.HTTP_200_OK)
async def totp_setup(user: User = Depends(get_current_user_doc)):
  try:
    if user.two_factor_enabled:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Two-factor authentication already enabled")
    secret = totp.generate_secret()
    uri = totp.provisioning_uri(secret, user.email)
    user.two_factor_secret = secret
    user.two_factor_setup_pending = True
    await user.save()
    return ReponseWrapper(message="Scan the QR code with your authenticator app", data=TotpSetupResponse(
      secret=secret, otpauth_url=uri, qr_code=totp.generate_qr_code(uri)))
  except Exception as e:
    raise e


@router.post("/totp/enable", response_model=ReponseWrapper[BackupCodesResponse], status_code=status.HTTP_200_OK)
async def totp_enable(data: TotpCodeRequest, background_tasks: BackgroundTasks, user: User = Depends(get_current_user_doc)):
  try:
    if user.two_factor_enabled:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Two-factor authentication already enabled")
    if not user.two_factor_setup_pending or not user.two_factor_secret:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Start TOTP setup first")
    if not totp.verify_totp(user.two_factor_secret, data.code):
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid authenticator code")

    plain_codes, hashed_codes = totp.generate_backup_codes()
    user.two_factor_enabled = True
    user.two_factor_method = TwoFactorMethod.TOTP
    user.two_factor_setup_pending = False
    user.backup_codes = hashed_codes
    await user.save()
    _notify(background_tasks, user, True, "authenticator app")
    logger.info("User %s enabled TOTP two-factor", user.id)
    return ReponseWrapper(message="Authenticator two-factor authentication enabled. Store your backup codes safely.",
                          data=BackupCodesResponse(backup_codes=plain_codes))
  except Exception as e:
    raise e


@router.post("/totp/disable", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def totp_disable(data: TotpDisableRequest, background_tasks: BackgroundTasks, user: User = Depends(get_current_user_doc)):
  try:
    if not user.two_factor_enabled or user.two_factor_method != TwoFactorMethod.TOTP:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Authenticator two-factor authentication not enabled")
    if not verify_password(data.password, user.password):
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Incorrect password")
    _clear_two_factor(user)
    await user.save()
    _notify(background_tasks, user, False, "authenticator app")
    logger.info("User %s disabled TOTP two-factor", user.id)
    return ReponseWrapper(message="Authenticator two-factor authentication disabled", data={})
  except Exception as e:
    raise e


@router.post("/totp/verify", response_model=ReponseWrapper[LoginResponse], status_code=status.HTTP_200_OK)
async def totp_verify(data: TotpVerifyRequest, request: Request, response: Response, background_tasks: BackgroundTasks):
  try:
    user = await User.find_one({"email": data.email.lower()})
    if not user or not user.two_factor_enabled or user.two_factor_method != TwoFactorMethod.TOTP:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Authenticator two-factor authentication not enabled")

    if totp.verify_totp(user.two_factor_secret, data.code):
      message = "Two-factor authentication successful"
    elif totp.use_backup_code(user, data.code):
      logger.info("User %s signed in with a backup code", user.id)
      message = f"Signed in with a backup code. {totp.remaining_backup_codes(user)} codes remaining."
    else:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid authentication code")

    login_response = await complete_login(user, request, response, background_tasks)
    return ReponseWrapper(message=message, data=login_response)
  except Exception as e:
    raise e


async def _regenerate_backup_codes(user: User):
  if not user.two_factor_enabled or user.two_factor_method != TwoFactorMethod.TOTP:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Authenticator two-factor authentication not enabled")
  plain_codes, hashed_codes = totp.generate_backup_codes()
  user.backup_codes = hashed_codes
  await user.save()
  return plain_codes


@router.post("/backup-codes/regenerate", response_model=ReponseWrapper[BackupCodesResponse], status_code=status.HTTP_200_OK)
async def regenerate_backup_codes(user: User = Depends(get_current_user_doc)):
  try:
    plain_codes = await _regenerate_backup_codes(user)
    return ReponseWrapper(message="Backup codes regenerated", data=BackupCodesResponse(backup_codes=plain_codes))
  except Exception as e:
    raise e


@router.get("/backup-codes/download", status_code=status.HTTP_200_OK, description="Issue a fresh set of backup codes as a text file")
async def download_backup_codes(user: User = Depends(get_current_user_doc)):
  try:
    plain_codes = await _regenerate_backup_codes(user)
    return Response(
      content=totp.backup_codes_text(user.email, plain_codes),
      media_type="text/plain",
      headers={"Content-Disposition": 'attachment; filename="mongosnap-backup-codes.txt"'},
    )
  except Exception as e:
    raise e
