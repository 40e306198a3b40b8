# Verification flow: phone OTP, registration, and email confirmation
#
# Account states (derived, never stored):
#   unverified -> phone_verified -> registered (email token pending) -> active

import asyncio
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException
from jose import JWTError
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError

from .config import (
    INSTITUTION_EMAIL_DOMAIN, OTP_EXPIRE_MINUTES, OTP_LENGTH, ALLOW_PRIVILEGED_SIGNUP,
    new_id, now_utc, as_utc,
)
from .db import executor
from .models import (
    AccountState, UserRole, PhoneOtpChallenge, EmailTokenChallenge, VerificationRecord,
    StudentDetails,
)
from .security import (
    hash_password, create_email_token, decode_token, EMAIL_TOKEN_PURPOSE,
)

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"^[0-9]{10}$")
INVALID_OTP = "Invalid or expired OTP"
INVALID_EMAIL_TOKEN = "Invalid or expired token"
PHONE_TAKEN = "This phone number is already registered"

# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------
def normalize_email(email: str) -> str:
    if not isinstance(email, str):
        raise HTTPException(status_code=400, detail="Invalid parameter type")
    return email.strip().lower()

def validate_institution_email(email: str) -> str:
    email = normalize_email(email)
    local, _, domain = email.rpartition("@")
    if not local or domain != INSTITUTION_EMAIL_DOMAIN:
        raise HTTPException(status_code=400,
                            detail=f"Only {INSTITUTION_EMAIL_DOMAIN} email addresses are allowed")
    return email

def validate_phone(phone: str) -> str:
    if not isinstance(phone, str) or not PHONE_RE.match(phone.strip()):
        raise HTTPException(status_code=400, detail="Please enter a valid 10-digit phone number")
    return phone.strip()

def generate_otp() -> str:
    return "".join(secrets.choice("0123456789") for _ in range(OTP_LENGTH))

def pending_verification(user: dict):
    """Parse the stored ``verification`` sub-document, or None."""
    raw = user.get("verification")
    if not raw:
        return None
    try:
        return VerificationRecord(pending=raw).pending
    except ValidationError:
        logger.warning("Discarding malformed verification record on user %s", user.get("_id"))
        return None

def account_state(user: dict) -> AccountState:
    if user.get("is_email_verified") and user.get("is_phone_verified"):
        return AccountState.ACTIVE
    if user.get("is_phone_verified") and user.get("hashed_password"):
        return AccountState.REGISTERED
    if user.get("is_phone_verified"):
        return AccountState.PHONE_VERIFIED
    return AccountState.UNVERIFIED

def _is_expired(expires_at: datetime, now: datetime) -> bool:
    # exactly at the expiry instant counts as expired
    return as_utc(now) >= as_utc(expires_at)

def release_phone_claims(db, phone: str, email: str) -> None:
    """Drop ``phone`` from other emails' records that have not verified it.

    Bare placeholders are deleted; records that already hold a password
    keep their account but lose the phone and any pending OTP.
    """
    rivals = {"phone": phone, "email": {"$ne": email},
              "is_phone_verified": {"$ne": True}, "is_email_verified": {"$ne": True}}
    db.users.delete_many({**rivals, "hashed_password": None})
    result = db.users.update_many(rivals, {"$unset": {"phone": "", "verification": ""}})
    if result.modified_count:
        logger.info("Released phone claim held by %d other record(s)", result.modified_count)

def phone_verified_elsewhere(db, phone: str, user_id) -> bool:
    return db.users.find_one(
        {"phone": phone, "is_phone_verified": True, "_id": {"$ne": user_id}}, {"_id": 1}) is not None

# ---------------------------------------------------------------------------
# Phone OTP
# ---------------------------------------------------------------------------
async def request_otp(db, notifier, email: str, phone: str, now: Optional[datetime] = None) -> dict:
    email = validate_institution_email(email)
    phone = validate_phone(phone)
    now = now or now_utc()
    loop = asyncio.get_event_loop()

    def find_conflict():
        return db.users.find_one({"$or": [
            {"email": email, "is_email_verified": True},
            {"phone": phone, "is_email_verified": True},
            {"phone": phone, "is_phone_verified": True, "email": {"$ne": email}},
        ]})
    conflict = await loop.run_in_executor(executor, find_conflict)
    if conflict:
        if conflict["email"] == email:
            raise HTTPException(status_code=400, detail="This email is already registered")
        raise HTTPException(status_code=400, detail=PHONE_TAKEN)

    code = generate_otp()
    challenge = PhoneOtpChallenge(code=code, expires_at=now + timedelta(minutes=OTP_EXPIRE_MINUTES))

    def upsert_placeholder():
        # the latest request owns an unverified phone; rival claims are released
        release_phone_claims(db, phone, email)
        # reuse the not-yet-active record for this email, or create one
        pending = {"phone": phone, "is_phone_verified": False,
                   "verification": challenge.model_dump(), "updated_at": now}
        result = db.users.update_one(
            {"email": email, "is_email_verified": False}, {"$set": pending})
        if result.matched_count == 0:
            db.users.insert_one({
                "_id": new_id(), "email": email, "name": "Temporary", "hashed_password": None,
                "role": UserRole.STUDENT.value, "is_email_verified": False,
                "student_details": {}, "created_at": now, **pending})
    try:
        await loop.run_in_executor(executor, upsert_placeholder)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="This email is already registered")

    if not await notifier.send_otp(email, code):
        raise HTTPException(status_code=500, detail="Failed to send OTP")
    logger.info("OTP issued for %s", email)
    return {"message": "OTP sent successfully to your institutional email"}

async def verify_otp(db, email: str, phone: str, code: str, now: Optional[datetime] = None) -> dict:
    email = normalize_email(email)
    now = now or now_utc()
    loop = asyncio.get_event_loop()
    user = await loop.run_in_executor(
        executor, db.users.find_one, {"email": email, "phone": str(phone).strip()})
    challenge = pending_verification(user) if user else None
    if (not isinstance(challenge, PhoneOtpChallenge)
            or not isinstance(code, str)
            or not secrets.compare_digest(challenge.code.encode(), code.strip().encode())
            or _is_expired(challenge.expires_at, now)):
        raise HTTPException(status_code=400, detail=INVALID_OTP)
    if await loop.run_in_executor(executor, phone_verified_elsewhere, db, user["phone"], user["_id"]):
        raise HTTPException(status_code=400, detail=PHONE_TAKEN)

    def mark_verified():
        return db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"is_phone_verified": True, "updated_at": now}, "$unset": {"verification": ""}})
    try:
        await loop.run_in_executor(executor, mark_verified)
    except DuplicateKeyError:
        # lost a race with another record verifying the same phone
        raise HTTPException(status_code=400, detail=PHONE_TAKEN)
    logger.info("Phone verified for %s", email)
    return {"message": "OTP verified successfully"}

# ---------------------------------------------------------------------------
# Registration & email verification
# ---------------------------------------------------------------------------
async def _issue_email_token(db, notifier, user: dict, now: datetime) -> bool:
    token, expires_at = create_email_token(user["email"], now)
    challenge = EmailTokenChallenge(token=token, expires_at=expires_at)
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(executor, lambda: db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {"verification": challenge.model_dump(), "updated_at": now}}))
    sent = await notifier.send_verification_email(user["email"], token)
    if not sent:
        logger.warning("Verification email to %s was not delivered", user["email"])
    return sent

async def complete_registration(db, notifier, name: str, email: str, password: str, phone: str,
                                role: str = UserRole.STUDENT.value,
                                student_details: Optional[StudentDetails] = None,
                                now: Optional[datetime] = None) -> dict:
    email = validate_institution_email(email)
    phone = validate_phone(phone)
    try:
        role = UserRole(role).value
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid role")
    if role != UserRole.STUDENT.value and not ALLOW_PRIVILEGED_SIGNUP:
        raise HTTPException(status_code=403,
                            detail="Public registration is for students only. Staff and admin accounts are created by an administrator.")
    now = now or now_utc()
    loop = asyncio.get_event_loop()

    user = await loop.run_in_executor(
        executor, db.users.find_one, {"email": email, "phone": phone, "is_phone_verified": True})

    def find_conflict():
        query = {"$or": [{"email": email, "is_email_verified": True},
                         {"phone": phone, "is_phone_verified": True}]}
        if user:
            query["_id"] = {"$ne": user["_id"]}
        return db.users.find_one(query)
    conflict = await loop.run_in_executor(executor, find_conflict)
    if conflict:
        if conflict["email"] == email:
            raise HTTPException(status_code=400, detail="This email is already registered")
        raise HTTPException(status_code=400, detail=PHONE_TAKEN)
    if not user:
        raise HTTPException(status_code=400,
                            detail="Phone number not verified. Please verify your phone number first.")
    if account_state(user) == AccountState.ACTIVE:
        raise HTTPException(status_code=400, detail="This email is already registered")

    try:
        hashed = hash_password(password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    details = student_details.model_dump() if student_details else {}
    if not details.get("mobile_number"):
        details["mobile_number"] = phone

    def complete():
        return db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"name": name.strip(), "hashed_password": hashed, "role": role,
                      "student_details": details, "updated_at": now}})
    await loop.run_in_executor(executor, complete)
    user.update({"name": name.strip(), "role": role})
    email_sent = await _issue_email_token(db, notifier, user, now)
    logger.info("Registration completed for %s (%s)", email, role)
    return {"message": "Registration successful. Please check your email to verify your account.",
            "email_sent": email_sent}

async def verify_email(db, token: str, now: Optional[datetime] = None) -> dict:
    now = now or now_utc()
    try:
        payload = decode_token(token)
    except JWTError as e:
        logger.info("Email token rejected: %s", e)
        raise HTTPException(status_code=400, detail=INVALID_EMAIL_TOKEN)
    if payload.get("purpose") != EMAIL_TOKEN_PURPOSE or not payload.get("email"):
        raise HTTPException(status_code=400, detail=INVALID_EMAIL_TOKEN)

    loop = asyncio.get_event_loop()
    user = await loop.run_in_executor(
        executor, db.users.find_one, {"email": payload["email"], "verification.token": token})
    challenge = pending_verification(user) if user else None
    if (not isinstance(challenge, EmailTokenChallenge) or challenge.token != token
            or _is_expired(challenge.expires_at, now)):
        raise HTTPException(status_code=400, detail=INVALID_EMAIL_TOKEN)

    def activate():
        return db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"is_email_verified": True, "updated_at": now}, "$unset": {"verification": ""}})
    await loop.run_in_executor(executor, activate)
    logger.info("Email verified for %s", user["email"])
    return {"message": "Email verified successfully. You can now log in."}

async def resend_verification(db, notifier, email: str, now: Optional[datetime] = None) -> dict:
    email = validate_institution_email(email)
    now = now or now_utc()
    loop = asyncio.get_event_loop()
    user = await loop.run_in_executor(executor, db.users.find_one, {"email": email})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    state = account_state(user)
    if state == AccountState.ACTIVE or user.get("is_email_verified"):
        raise HTTPException(status_code=400, detail="Email is already verified")
    if state != AccountState.REGISTERED:
        raise HTTPException(status_code=400, detail="Please complete registration first")
    if not await _issue_email_token(db, notifier, user, now):
        raise HTTPException(status_code=500, detail="Failed to send verification email")
    return {"message": "Verification email sent successfully"}
