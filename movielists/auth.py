import uuid
import secrets
from datetime import datetime, timedelta, timezone

from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError, VerificationError, InvalidHashError
from jose import jwt, JWTError
from fastapi import Request, HTTPException, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from .config import COOKIE_DOMAIN, COOKIE_SECURE, JWT_SECRET
from .database import get_db
from .models import User

ph = PasswordHasher()

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_TTL = timedelta(hours=1)
REFRESH_TOKEN_TTL = timedelta(days=7)
AUTH_COOKIES = ("access_token", "refresh_token", "csrf_token")


def hash_password(password: str) -> str:
    return ph.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not isinstance(hashed, str) or not hashed:
        return False
    try:
        return ph.verify(hashed, password)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def create_token(user_id: uuid.UUID, ttl: timedelta, kind: str) -> str:
    payload = {
        "sub": str(user_id),
        "typ": kind,
        "exp": datetime.now(timezone.utc) + ttl,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str, kind: str = "access") -> dict:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if payload.get("typ") != kind:
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


def set_auth_cookies(response: Response, user_id: uuid.UUID) -> str:
    access = create_token(user_id, ACCESS_TOKEN_TTL, "access")
    refresh = create_token(user_id, REFRESH_TOKEN_TTL, "refresh")
    csrf_token = secrets.token_hex(32)

    cookie_kwargs = dict(
        secure=COOKIE_SECURE,
        samesite="lax",
        path="/",
    )
    if COOKIE_DOMAIN:
        cookie_kwargs["domain"] = COOKIE_DOMAIN

    response.set_cookie("access_token", access, max_age=int(ACCESS_TOKEN_TTL.total_seconds()), httponly=True, **cookie_kwargs)
    response.set_cookie("refresh_token", refresh, max_age=int(REFRESH_TOKEN_TTL.total_seconds()), httponly=True, **cookie_kwargs)
    # Readable by the frontend so it can echo it back in X-CSRF-Token.
    response.set_cookie("csrf_token", csrf_token, max_age=int(REFRESH_TOKEN_TTL.total_seconds()), httponly=False, **cookie_kwargs)
    return csrf_token


def clear_auth_cookies(response: Response):
    for name in AUTH_COOKIES:
        response.delete_cookie(name, path="/")


async def load_user_from_token(db: AsyncSession, token: str, kind: str = "access") -> User:
    """Resolve a session token to an active user, raising 401/403 otherwise."""
    payload = decode_token(token, kind)
    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is disabled")
    return user


async def get_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
    token = request.cookies.get("access_token")
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return await load_user_from_token(db, token)


async def get_optional_user(request: Request, db: AsyncSession = Depends(get_db)) -> User | None:
    token = request.cookies.get("access_token")
    if not token:
        return None
    try:
        return await load_user_from_token(db, token)
    except HTTPException:
        return None


def verify_csrf(request: Request):
    """Verify CSRF token on state-changing requests."""
    csrf_cookie = request.cookies.get("csrf_token")
    csrf_header = request.headers.get("x-csrf-token")
    if not csrf_cookie or not csrf_header or not secrets.compare_digest(csrf_cookie, csrf_header):
        raise HTTPException(status_code=403, detail="CSRF token mismatch")
