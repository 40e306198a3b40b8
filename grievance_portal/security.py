# Session issuer: password hashing, bearer tokens, and request authentication

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import (
    JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRE_HOURS, EMAIL_TOKEN_EXPIRE_HOURS, now_utc,
)
from .db import executor, get_db
from .models import UserSummary, UserProfile, StudentDetails

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

EMAIL_TOKEN_PURPOSE = "email-verify"

# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------
def hash_password(password: str) -> str:
    if len(password.encode("utf-8")) > 72:
        raise ValueError("Password cannot exceed 72 bytes")
    return pwd_context.hash(password)

def verify_password(plain: str, hashed: Optional[str]) -> bool:
    if not hashed or len(plain.encode("utf-8")) > 72:
        return False
    return pwd_context.verify(plain, hashed)

# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------
def create_access_token(user_id: str, now: Optional[datetime] = None) -> str:
    issued = now or now_utc()
    claims = {"sub": user_id, "iat": issued, "exp": issued + timedelta(hours=JWT_EXPIRE_HOURS)}
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)

def create_email_token(email: str, now: Optional[datetime] = None) -> tuple:
    """Return ``(token, expires_at)`` for an email-verification link."""
    issued = now or now_utc()
    expires_at = issued + timedelta(hours=EMAIL_TOKEN_EXPIRE_HOURS)
    claims = {"email": email, "purpose": EMAIL_TOKEN_PURPOSE, "iat": issued, "exp": expires_at}
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM), expires_at

def decode_token(token: str) -> dict:
    """Validate signature and expiry. Raises ``JWTError`` on any failure."""
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])

# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------
async def login(db, email: str, password: str) -> dict:
    """Check credentials and verification flags; return ``{token, user}``."""
    if not isinstance(email, str) or not isinstance(password, str):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    loop = asyncio.get_event_loop()
    user = await loop.run_in_executor(executor, db.users.find_one, {"email": email.strip().lower()})
    if not user:
        raise HTTPException(status_code=400, detail="Invalid credentials")
    if not user.get("is_email_verified"):
        raise HTTPException(status_code=400, detail="Please verify your email before logging in")
    if not user.get("is_phone_verified"):
        raise HTTPException(status_code=400, detail="Please verify your phone number before logging in")
    if not verify_password(password, user.get("hashed_password")):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    logger.info("User %s logged in", user["_id"])
    return {"token": create_access_token(str(user["_id"])), "user": user_to_summary(user)}

# ---------------------------------------------------------------------------
# Request authentication
# ---------------------------------------------------------------------------
async def get_optional_user(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)):
    """Soft verification pass shared by public and protected routes.

    A missing, malformed, expired or orphaned token yields ``None``.
    """
    if token is None:
        return None
    try:
        payload = decode_token(token)
    except JWTError as e:
        logger.info("Rejected bearer token: %s", e)
        return None
    user_id = payload.get("sub")
    if not user_id:
        return None
    loop = asyncio.get_event_loop()
    user = await loop.run_in_executor(executor, db.users.find_one, {"_id": user_id})
    if user is None:
        logger.info("Bearer token for unknown user %s", user_id)
    return user

async def get_current_user(user=Depends(get_optional_user)):
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user

def require_role(*roles):
    async def role_checker(user=Depends(get_current_user)):
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail="Access denied")
        return user
    return role_checker

# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------
def user_to_summary(user: dict) -> UserSummary:
    return UserSummary(
        id=str(user["_id"]), name=user.get("name", ""), email=user["email"],
        phone=user.get("phone"), role=user.get("role", "student"))

def user_to_profile(user: dict) -> UserProfile:
    return UserProfile(
        id=str(user["_id"]), name=user.get("name", ""), email=user["email"],
        phone=user.get("phone"), role=user.get("role", "student"),
        is_email_verified=user.get("is_email_verified", False),
        is_phone_verified=user.get("is_phone_verified", False),
        student_details=StudentDetails(**(user.get("student_details") or {})),
        created_at=user["created_at"], updated_at=user.get("updated_at"))
