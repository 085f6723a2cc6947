from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
import hashlib
import logging
import secrets
import uuid

from beanie import PydanticObjectId
from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from mongosnap.core.config import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    ADMIN_EMAILS,
    ALGORITHM,
    COOKIE_SECURE,
    JWT_AUDIENCE,
    JWT_ISSUER,
    REFRESH_SECRET_KEY,
    REFRESH_TOKEN_EXPIRE_DAYS,
    SECRET_KEY,
)
from mongosnap.core.exceptions import TokenRotationError
from mongosnap.models.refresh_tokens import DeviceInfo, RefreshToken
from mongosnap.models.users import User
from mongosnap.utils.text import client_ip

logger = logging.getLogger(__name__)

REFRESH_COOKIE_NAME = "refreshToken"
CSRF_HEADER = "X-CSRF-Token"
CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
MAX_DEVICE_CHANGES = 5

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def hash_password(password):
    # bcrypt only looks at the first 72 bytes
    if len(password.encode("utf-8")) > 72:
        password = password.encode("utf-8")[:72].decode("utf-8", errors="ignore")
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    to_encode = data.copy()
    expire = _utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "iss": JWT_ISSUER, "aud": JWT_AUDIENCE})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_refresh_jwt(user_id: str, expires_at: datetime) -> str:
    to_encode = {"sub": user_id, "type": "refresh", "jti": uuid.uuid4().hex, "exp": expires_at}
    return jwt.encode(to_encode, REFRESH_SECRET_KEY, algorithm=ALGORITHM)


def decode_refresh_jwt(token: str) -> str:
    try:
        payload = jwt.decode(token, REFRESH_SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        raise TokenRotationError("invalid", "Invalid refresh token. Please login again") from e
    if payload.get("type") != "refresh" or payload.get("sub") is None:
        raise TokenRotationError("invalid", "Invalid refresh token. Please login again")
    return payload["sub"]


def extract_device_info(request: Request) -> DeviceInfo:
    user_agent = request.headers.get("user-agent", "Unknown")
    ip_address = client_ip(request)
    fingerprint = hashlib.sha256((user_agent + ip_address).encode("utf-8")).hexdigest()
    return DeviceInfo(user_agent=user_agent, ip_address=ip_address, device_fingerprint=fingerprint)


async def create_and_store_refresh_token(
    user: User, request: Request, family: Optional[str] = None, device_changes: int = 0,
) -> RefreshToken:
    family = family or RefreshToken.create_token_family()
    expires_at = _utcnow() + timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS)

    refresh_token_doc = RefreshToken(
        token=create_refresh_jwt(str(user.id), expires_at),
        user_id=user.id,
        family=family,
        expires_at=expires_at,
        device_info=extract_device_info(request),
        device_changes=device_changes,
    )
    await refresh_token_doc.insert()

    user.refresh_token_family = family
    user.last_active_token_family = family
    await user.save()
    return refresh_token_doc


async def update_token_usage(token_doc: RefreshToken, request: Request) -> bool:
    """
    Stamp ``last_used_at`` and compare the presented device with the token's.

    A mismatch counts as a device change and moves the token to the new device.
    Returns False when the family had to be revoked for too many device changes.
    The caller saves the document otherwise.
    """
    token_doc.last_used_at = _utcnow()
    current = extract_device_info(request)
    if current.device_fingerprint == token_doc.device_info.device_fingerprint:
        return True

    token_doc.device_changes += 1
    logger.warning(
        "Device change on refresh token family=%s user=%s changes=%s",
        token_doc.family, token_doc.user_id, token_doc.device_changes,
    )
    token_doc.device_info = current
    if token_doc.device_changes > MAX_DEVICE_CHANGES:
        await RefreshToken.revoke_family(token_doc.family, "suspicious_device_changes")
        return False
    return True


async def track_refresh_token_usage(request: Request) -> None:
    """Run the device check for the session cookie of an authenticated request."""
    token = request.cookies.get(REFRESH_COOKIE_NAME)
    if not token:
        return
    token_doc = await RefreshToken.find_one({"token": token, "is_used": False, "is_revoked": False})
    if not token_doc:
        return
    if not await update_token_usage(token_doc, request):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session revoked after suspicious device changes. Please login again",
        )
    await token_doc.save()


async def validate_and_rotate_refresh_token(token: str, request: Request) -> Tuple[User, RefreshToken]:
    token_doc = await RefreshToken.find_one({"token": token})
    if not token_doc:
        raise TokenRotationError("not_found", "Refresh token not found. Please login again")

    if _aware(token_doc.expires_at) <= _utcnow():
        raise TokenRotationError("expired", "Refresh token expired. Please login again")

    if token_doc.is_used:
        logger.warning("Refresh token reuse detected, revoking family=%s user=%s", token_doc.family, token_doc.user_id)
        await RefreshToken.revoke_family(token_doc.family, "token_reuse")
        raise TokenRotationError("reuse", "Refresh token reuse detected. All sessions in this family were revoked")

    if token_doc.is_revoked:
        raise TokenRotationError("revoked", "Refresh token has been revoked. Please login again")

    decode_refresh_jwt(token)

    user = await User.get(token_doc.user_id)
    if not user:
        raise TokenRotationError("not_found", "User not found")

    if not await update_token_usage(token_doc, request):
        raise TokenRotationError("revoked", "Session revoked after suspicious device changes. Please login again")

    successor = await create_and_store_refresh_token(
        user, request, family=token_doc.family, device_changes=token_doc.device_changes)

    token_doc.is_used = True
    token_doc.last_used_at = _utcnow()
    token_doc.successor_token = successor.token
    await token_doc.save()

    return user, successor


async def revoke_refresh_token(refresh_token: str, reason: str = "user") -> Optional[RefreshToken]:
    token_doc = await RefreshToken.find_one({"token": refresh_token})
    if token_doc and not token_doc.is_revoked:
        await token_doc.revoke(reason)
    return token_doc


def set_refresh_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=REFRESH_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
        max_age=REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
        path="/",
    )


def clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(key=REFRESH_COOKIE_NAME, path="/", httponly=True, secure=COOKIE_SECURE, samesite="lax")


def _decode_access_token(token: str) -> str:
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], audience=JWT_AUDIENCE, issuer=JWT_ISSUER)
    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid or expired access token. Please refresh token")
    return user_id


def get_current_user(token: str = Depends(oauth2_scheme)):
    try:
        return _decode_access_token(token)
    except JWTError:
        raise HTTPException(status_code=401, detail="Token invalid or expired. Please refresh token")


def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme)) -> Optional[str]:
    if not token:
        return None
    try:
        return _decode_access_token(token)
    except (JWTError, HTTPException):
        return None


async def get_current_user_doc(request: Request, current_user: str = Depends(get_current_user)) -> User:
    user = await User.get(PydanticObjectId(current_user))
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    await track_refresh_token_usage(request)
    return user


def is_admin(user: User) -> bool:
    return user.is_admin or user.email.lower() in ADMIN_EMAILS


async def require_admin(user: User = Depends(get_current_user_doc)) -> User:
    if not is_admin(user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


async def validate_csrf(request: Request, user: User = Depends(get_current_user_doc)) -> User:
    if request.method in CSRF_SAFE_METHODS:
        return user

    token = request.headers.get(CSRF_HEADER)
    if not token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="CSRF token missing")

    if user.clear_expired_csrf_token():
        await user.save()
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="CSRF token expired. Please refresh the page")

    if not user.validate_csrf_token(token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid CSRF token")
    return user


def generate_otp_code() -> str:
    """Four hex characters, mailed to the user for email two-factor login."""
    return secrets.token_hex(2)


def generate_url_token() -> str:
    return secrets.token_hex(32)
