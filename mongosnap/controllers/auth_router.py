from datetime import datetime, timedelta, timezone
from typing import List, Optional
import logging

from fastapi import APIRouter, BackgroundTasks, Cookie, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import HTMLResponse

from mongosnap.core.config import FRONTEND_URL, TWO_FACTOR_EXPIRE_MINUTES
from mongosnap.core.exceptions import TokenRotationError
from mongosnap.dto.base import ReponseWrapper
from mongosnap.dto.users import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginNotificationsRequest,
    LoginRequest,
    LoginResponse,
    RefreshRequest,
    ResetPasswordRequest,
    RevokeSessionRequest,
    SessionOut,
    SignupRequest,
    TokenResponse,
    UserOut,
)
from mongosnap.models.refresh_tokens import RefreshToken
from mongosnap.models.usage import UserUsage
from mongosnap.models.users import TwoFactorMethod, User
from mongosnap.services.mailer import (
    login_notification_email,
    password_reset_email,
    send_email_background,
    two_factor_code_email,
    verification_email,
)
from mongosnap.services.usage_service import sync_plan_limits
from mongosnap.utils.auth import (
    REFRESH_COOKIE_NAME,
    clear_refresh_cookie,
    create_access_token,
    create_and_store_refresh_token,
    generate_otp_code,
    generate_url_token,
    get_current_user_doc,
    hash_password,
    revoke_refresh_token,
    set_refresh_cookie,
    validate_and_rotate_refresh_token,
    validate_csrf,
    verify_password,
)
from mongosnap.utils.crypto import hash_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/auth', tags=["Auth"])

FORGOT_PASSWORD_MESSAGE = "If an account exists, an email has been sent to reset your password."


def _user_out(user: User) -> UserOut:
  return UserOut(**user.model_dump())


async def complete_login(user: User, request: Request, response: Response, background_tasks: BackgroundTasks) -> LoginResponse:
  """Issue access token, refresh cookie and CSRF token for a user whose credentials are settled."""
  csrf_token = user.generate_csrf_token()
  refresh_doc = await create_and_store_refresh_token(user, request)
  set_refresh_cookie(response, refresh_doc.token)
  access_token = create_access_token(data={"sub": str(user.id)})

  if user.login_notifications_enabled:
    background_tasks.add_task(
      send_email_background,
      subject="New sign-in to your MongoSnap account",
      email_to=user.email,
      body=login_notification_email(user.name, refresh_doc.device_info.model_dump()),
    )
  logger.info("User %s logged in", user.id)
  return LoginResponse(user=_user_out(user), access_token=access_token, csrf_token=csrf_token)


async def send_two_factor_code(user: User, background_tasks: BackgroundTasks) -> None:
  code = generate_otp_code()
  user.two_factor_token = hash_token(code.lower())
  user.two_factor_expires_at = datetime.now(timezone.utc) + timedelta(minutes=TWO_FACTOR_EXPIRE_MINUTES)
  await user.save()
  background_tasks.add_task(
    send_email_background,
    subject="Your MongoSnap verification code",
    email_to=user.email,
    body=two_factor_code_email(user.name, code),
  )


@router.post("/signup", response_model=ReponseWrapper[UserOut], description="Signup", status_code=status.HTTP_201_CREATED)
async def signup(data: SignupRequest, background_tasks: BackgroundTasks):
  try:
    email = data.email.lower()
    existing = await User.find_one({"email": email})
    if existing:
      raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")

    verification_token = generate_url_token()
    new_user = User(
      name=data.name.strip(),
      email=email,
      password=hash_password(data.password),
      verification_token=hash_token(verification_token),
    )
    await new_user.insert()
    await UserUsage.get_or_create_usage(new_user.id)

    background_tasks.add_task(
      send_email_background,
      subject="Verify your MongoSnap account",
      email_to=email,
      body=verification_email(new_user.name, verification_token),
    )
    return ReponseWrapper(message="Signup successful. Please verify your email.", data=_user_out(new_user))
  except Exception as e:
    raise e


@router.post("/login", response_model=ReponseWrapper[LoginResponse], description="User login", status_code=status.HTTP_200_OK)
async def login(data: LoginRequest, request: Request, response: Response, background_tasks: BackgroundTasks):
  try:
    user = await User.find_one({"email": data.email.lower()})
    if not user or not verify_password(data.password, user.password):
      raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    if user.two_factor_enabled and user.two_factor_method == TwoFactorMethod.EMAIL:
      await send_two_factor_code(user, background_tasks)
      return ReponseWrapper(message="Verification code sent to your email", data=LoginResponse(
        requires_two_factor=True, two_factor_method=TwoFactorMethod.EMAIL, email=user.email))

    if user.two_factor_enabled and user.two_factor_method == TwoFactorMethod.TOTP:
      return ReponseWrapper(message="Enter the code from your authenticator app", data=LoginResponse(
        requires_two_factor=True, two_factor_method=TwoFactorMethod.TOTP, email=user.email))

    login_response = await complete_login(user, request, response, background_tasks)
    return ReponseWrapper(message="Login successful", data=login_response)
  except Exception as e:
    raise e


@router.post("/refresh", response_model=ReponseWrapper[TokenResponse], description="Rotate refresh token and issue a new access token", status_code=status.HTTP_200_OK)
async def refresh_access_token(
  request: Request,
  response: Response,
  data: Optional[RefreshRequest] = None,
  refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE_NAME),
):
  token = (data.refresh_token if data else None) or refresh_cookie
  if not token:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token not found. Please login again")

  try:
    user, successor = await validate_and_rotate_refresh_token(token, request)
  except TokenRotationError as e:
    code = status.HTTP_403_FORBIDDEN if e.reason == "revoked" else status.HTTP_401_UNAUTHORIZED
    raise HTTPException(status_code=code, detail={"message": e.message, "reason": e.reason})

  set_refresh_cookie(response, successor.token)
  csrf_token = user.generate_csrf_token()
  await user.save()
  return ReponseWrapper(message="Access token refreshed successfully", data=TokenResponse(
    access_token=create_access_token(data={"sub": str(user.id)}),
    csrf_token=csrf_token,
  ))


@router.post("/logout", response_model=ReponseWrapper[dict], description="Logout from this device", status_code=status.HTTP_200_OK)
async def logout(response: Response, refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE_NAME)):
  try:
    if refresh_cookie:
      await revoke_refresh_token(refresh_cookie, "user")
    clear_refresh_cookie(response)
    return ReponseWrapper(message="Logout successful", data={})
  except Exception as e:
    raise e


@router.get("/me", response_model=ReponseWrapper[UserOut], description="Get current user", status_code=status.HTTP_200_OK)
async def get_me(user: User = Depends(get_current_user_doc)):
  return ReponseWrapper(message="Current user retrieved successfully", data=_user_out(user))


@router.get("/active-sessions", response_model=ReponseWrapper[List[SessionOut]], status_code=status.HTTP_200_OK)
async def active_sessions(user: User = Depends(get_current_user_doc), refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE_NAME)):
  try:
    tokens = await RefreshToken.get_active_tokens_for_user(user.id)
    sessions = [
      SessionOut(
        id=token.id,
        device_info=token.device_info.model_dump(),
        is_current=token.token == refresh_cookie,
        created_at=token.created_at,
        last_used_at=token.last_used_at,
        is_used=token.is_used,
      )
      for token in tokens
    ]
    return ReponseWrapper(message="Active sessions retrieved successfully", data=sessions)
  except Exception as e:
    raise e


@router.post("/revoke-session", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def revoke_session(data: RevokeSessionRequest, user: User = Depends(get_current_user_doc)):
  try:
    token = await RefreshToken.get(data.session_id)
    if not token or token.user_id != user.id:
      raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    await token.revoke("user")
    logger.info("User %s revoked session %s", user.id, token.id)
    return ReponseWrapper(message="Session revoked successfully", data={})
  except Exception as e:
    raise e


@router.post("/revoke-all-sessions", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def revoke_all_sessions(response: Response, user: User = Depends(get_current_user_doc)):
  try:
    await RefreshToken.revoke_all_for_user(user.id, "user")
    clear_refresh_cookie(response)
    logger.info("User %s revoked all sessions", user.id)
    return ReponseWrapper(message="All sessions revoked successfully", data={})
  except Exception as e:
    raise e


@router.get("/security-analytics", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def security_analytics(days: int = Query(30, ge=1, le=365), user: User = Depends(get_current_user_doc)):
  try:
    analytics = await RefreshToken.get_security_analytics(user.id, days)
    return ReponseWrapper(message="Security analytics retrieved successfully", data=analytics)
  except Exception as e:
    raise e


@router.get("/suspicious-sessions", response_model=ReponseWrapper[List[dict]], status_code=status.HTTP_200_OK)
async def suspicious_sessions(user: User = Depends(get_current_user_doc)):
  try:
    findings = await RefreshToken.find_suspicious_sessions(user.id)
    return ReponseWrapper(message="Suspicious session check completed", data=findings)
  except Exception as e:
    raise e


@router.get("/token-chain", response_model=ReponseWrapper[List[dict]], status_code=status.HTTP_200_OK)
async def token_chain(user: User = Depends(get_current_user_doc), refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE_NAME)):
  try:
    if not refresh_cookie:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No refresh token cookie found")
    token = await RefreshToken.find_one({"token": refresh_cookie, "user_id": user.id})
    if not token:
      raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Refresh token not found")
    chain = await RefreshToken.get_token_chain(refresh_cookie)
    return ReponseWrapper(message="Token chain retrieved successfully", data=chain)
  except Exception as e:
    raise e


@router.get("/csrf-token", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def csrf_token(user: User = Depends(get_current_user_doc)):
  try:
    token = user.generate_csrf_token()
    await user.save()
    return ReponseWrapper(message="CSRF token generated", data={"csrf_token": token, "expires_at": user.csrf_token_expires_at})
  except Exception as e:
    raise e


@router.post("/forgot-password", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def forgot_password(data: ForgotPasswordRequest, background_tasks: BackgroundTasks):
  try:
    user = await User.find_one({"email": data.email.lower()})
    if user:
      reset_token = generate_url_token()
      user.reset_password_token = hash_token(reset_token)
      await user.save()
      background_tasks.add_task(
        send_email_background,
        subject="Reset your MongoSnap password",
        email_to=user.email,
        body=password_reset_email(user.name, reset_token),
      )
    return ReponseWrapper(message=FORGOT_PASSWORD_MESSAGE, data={})
  except Exception as e:
    raise e


@router.post("/reset-password", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def reset_password(data: ResetPasswordRequest):
  try:
    user = await User.find_one({"reset_password_token": hash_token(data.token)})
    if not user:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired reset token")
    user.password = hash_password(data.new_password)
    user.reset_password_token = None
    await user.save()
    await RefreshToken.revoke_all_for_user(user.id, "password_reset")
    return ReponseWrapper(message="Password reset successfully", data={})
  except Exception as e:
    raise e


@router.post("/change-password", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK, description="Change password; every session is revoked afterwards")
async def change_password(data: ChangePasswordRequest, response: Response, user: User = Depends(validate_csrf)):
  try:
    if not verify_password(data.current_password, user.password):
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect")
    user.password = hash_password(data.new_password)
    await user.save()
    await RefreshToken.revoke_all_for_user(user.id, "password_change")
    clear_refresh_cookie(response)
    return ReponseWrapper(message="Password changed successfully. Please login again.", data={})
  except Exception as e:
    raise e


def _verification_page(title: str, body: str, color: str) -> str:
  return f"""<!DOCTYPE html>
<html lang="en">
  <head><meta charset="UTF-8"><title>{title} - MongoSnap</title></head>
  <body style="font-family: sans-serif; background: #101813; color: white; text-align: center; padding-top: 15vh;">
    <h1 style="color: {color};">{title}</h1>
    <p style="color: #cccccc;">{body}</p>
    <a href="{FRONTEND_URL}/login" style="background: #3CBC6B; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none;">Go to Login</a>
  </body>
</html>"""


@router.get("/verify-email/{token}", response_class=HTMLResponse, status_code=status.HTTP_200_OK)
async def verify_email(token: str):
  try:
    user = await User.find_one({"verification_token": hash_token(token)})
    if not user:
      return HTMLResponse(
        _verification_page("Verification Failed", "The verification link is invalid or has expired.", "#ff4444"),
        status_code=status.HTTP_400_BAD_REQUEST,
      )
    user.is_verified = True
    user.verification_token = None
    await user.save()
    return HTMLResponse(_verification_page(
      "Email Verified!", "Your email has been successfully verified. You can now log in to your account.", "#3CBC6B"))
  except Exception as e:
    raise e


@router.put("/login-notifications", response_model=ReponseWrapper[dict], status_code=status.HTTP_200_OK)
async def update_login_notifications(data: LoginNotificationsRequest, user: User = Depends(get_current_user_doc)):
  try:
    user.login_notifications_enabled = data.enabled
    await user.save()
    return ReponseWrapper(message="Login notification preference updated", data={"login_notifications_enabled": data.enabled})
  except Exception as e:
    raise e


@router.get("/usage", response_model=ReponseWrapper[dict], description="Usage counters for the current plan", status_code=status.HTTP_200_OK)
async def get_usage(user: User = Depends(get_current_user_doc)):
  try:
    usage = await UserUsage.get_or_create_usage(user.id)
    await sync_plan_limits(user, usage)
    return ReponseWrapper(message="Usage statistics retrieved successfully", data=usage.get_usage_stats())
  except Exception as e:
    raise e
