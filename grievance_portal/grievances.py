# Grievance lifecycle engine: creation, status changes, tracking, reminders
#
# Every operation takes the authenticated user as an explicit ``actor``
# and checks role/ownership before touching storage.

import asyncio
import logging
import re
import secrets
from datetime import datetime
from typing import List, Optional

from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError

from .config import (
    TRACKING_ID_PREFIX, TRACKING_ID_MAX_ATTEMPTS, ADMIN_NOTIFICATION_EMAIL, new_id, now_utc,
)
from .db import executor
from .models import (
    GrievanceCategory, GrievanceStatus, EmailStatus, STAFF_ROLES, OPEN_STATUSES,
    GrievanceResponse, GrievanceCheckResponse,
)
from .uploads import store_attachments, discard_attachments

logger = logging.getLogger(__name__)

TRACKING_ID_RE = re.compile(rf"^{TRACKING_ID_PREFIX}-\d{{4}}$")
MOBILE_RE = re.compile(r"^\d{10}$")
REQUIRED_FIELDS = ("category", "subject", "description")
TRACK_FORBIDDEN_DETAIL = {
    "message": "Access denied",
    "details": "You can only track grievances that you have submitted.",
}


class TrackingIdExhausted(HTTPException):
    def __init__(self, attempts: int):
        super().__init__(status_code=503,
                         detail=f"Could not allocate a unique tracking ID after {attempts} attempts")

# ---------------------------------------------------------------------------
# Access rules
# ---------------------------------------------------------------------------
def is_staff(actor: Optional[dict]) -> bool:
    return bool(actor) and actor.get("role") in STAFF_ROLES

def is_owner(actor: Optional[dict], grievance: dict) -> bool:
    return bool(actor) and grievance.get("user_id") == str(actor["_id"])

def can_view(actor: Optional[dict], grievance: dict) -> bool:
    return is_owner(actor, grievance) or is_staff(actor)

def is_active_account(actor: dict) -> bool:
    return bool(actor.get("is_email_verified") and actor.get("is_phone_verified"))

def validate_tracking_id(tracking_id: str) -> str:
    if not isinstance(tracking_id, str):
        raise HTTPException(status_code=400, detail="Invalid parameter type")
    tracking_id = tracking_id.strip().upper()
    if not TRACKING_ID_RE.match(tracking_id):
        raise HTTPException(status_code=400, detail="Invalid tracking ID format")
    return tracking_id

# ---------------------------------------------------------------------------
# Tracking IDs
# ---------------------------------------------------------------------------
def random_tracking_id() -> str:
    return f"{TRACKING_ID_PREFIX}-{secrets.randbelow(10000):04d}"

def generate_tracking_id(db, max_attempts: int = TRACKING_ID_MAX_ATTEMPTS) -> str:
    """Pick a tracking ID not yet present in the collection.

    This is a best-effort fast path; the unique index on ``tracking_id``
    settles races between concurrent submissions.
    """
    for _ in range(max_attempts):
        candidate = random_tracking_id()
        if db.grievances.find_one({"tracking_id": candidate}, {"_id": 1}) is None:
            return candidate
    raise TrackingIdExhausted(max_attempts)

def insert_with_tracking_id(db, doc: dict, max_attempts: int = TRACKING_ID_MAX_ATTEMPTS) -> dict:
    for attempt in range(1, max_attempts + 1):
        doc["tracking_id"] = generate_tracking_id(db, max_attempts)
        try:
            db.grievances.insert_one(doc)
            return doc
        except DuplicateKeyError:
            logger.warning("Tracking ID %s taken concurrently (attempt %d)", doc["tracking_id"], attempt)
    raise TrackingIdExhausted(max_attempts)

# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------
def grievance_to_response(g: dict) -> GrievanceResponse:
    return GrievanceResponse(**{k: v for k, v in g.items() if k != "_id"}, id=g["_id"])

def grievance_to_check(g: dict) -> GrievanceCheckResponse:
    return GrievanceCheckResponse(
        tracking_id=g["tracking_id"], category=g["category"], subject=g["subject"],
        status=g["status"], admin_response=g.get("admin_response", ""),
        created_at=g["created_at"], updated_at=g["updated_at"])

# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------
def _clean(value) -> str:
    return value.strip() if isinstance(value, str) else ""

def validate_submission(fields: dict) -> dict:
    """Check required fields and normalise the submitted form."""
    data = dict(fields)
    if not _clean(data.get("category")) and _clean(data.get("type")):
        data["category"] = data["type"]
    missing = [name for name in REQUIRED_FIELDS if not _clean(data.get(name))]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")
    category = _clean(data["category"]).lower()
    if category not in [c.value for c in GrievanceCategory]:
        raise HTTPException(status_code=400, detail="Invalid grievance category")
    mobile = _clean(data.get("mobile_number"))
    if mobile and not MOBILE_RE.match(mobile):
        raise HTTPException(status_code=400, detail="Please provide a valid 10-digit mobile number")
    subject = _clean(data["subject"])
    return {
        "category": category,
        "subject": subject,
        "title": _clean(data.get("title")) or subject,
        "description": _clean(data["description"]),
        "year": _clean(data.get("year")) or None,
        "university_roll_number": _clean(data.get("university_roll_number")) or None,
        "branch": _clean(data.get("branch")) or None,
        "mobile_number": mobile or None,
    }

async def submit(db, actor: dict, fields: dict, uploads: Optional[List[tuple]] = None,
                 now: Optional[datetime] = None) -> dict:
    if not actor:
        raise HTTPException(status_code=401, detail="Authentication required")
    if not is_active_account(actor):
        raise HTTPException(status_code=403, detail="Please verify your account before filing a grievance")
    data = validate_submission(fields)
    now = now or now_utc()

    details = actor.get("student_details") or {}
    for key in ("year", "university_roll_number", "branch", "mobile_number"):
        data[key] = data[key] or details.get(key)
    attachments = await store_attachments(uploads or [])

    doc = {
        "_id": new_id(), "user_id": str(actor["_id"]),
        "name": actor.get("name"), "email": actor.get("email"),
        **data,
        "status": GrievanceStatus.PENDING.value, "admin_response": "",
        "attachments": attachments, "comments": [], "email_thread": [],
        "email_status": EmailStatus.ACTIVE.value,
        "last_email_sent": None, "last_email_received": None, "last_reminder_sent": None,
        "created_at": now, "updated_at": now,
    }
    loop = asyncio.get_event_loop()
    try:
        await loop.run_in_executor(executor, insert_with_tracking_id, db, doc)
    except Exception:
        await loop.run_in_executor(executor, discard_attachments, attachments)
        raise
    logger.info("Grievance %s filed by %s", doc["tracking_id"], doc["user_id"])
    return doc

# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
async def _find_by_tracking_id(db, tracking_id: str) -> dict:
    tracking_id = validate_tracking_id(tracking_id)
    loop = asyncio.get_event_loop()
    g = await loop.run_in_executor(executor, db.grievances.find_one, {"tracking_id": tracking_id})
    if not g:
        raise HTTPException(status_code=404, detail="Grievance not found")
    return g

async def _find_by_id(db, grievance_id: str) -> dict:
    if not isinstance(grievance_id, str):
        raise HTTPException(status_code=400, detail="Invalid parameter type")
    loop = asyncio.get_event_loop()
    g = await loop.run_in_executor(executor, db.grievances.find_one, {"_id": grievance_id})
    if not g:
        raise HTTPException(status_code=404, detail="Grievance not found")
    return g

async def track(db, actor: dict, tracking_id: str) -> dict:
    g = await _find_by_tracking_id(db, tracking_id)
    if not can_view(actor, g):
        logger.info("User %s denied access to %s", actor["_id"], g["tracking_id"])
        raise HTTPException(status_code=403, detail=TRACK_FORBIDDEN_DETAIL)
    return g

async def get_detail(db, actor: dict, grievance_id: str) -> dict:
    g = await _find_by_id(db, grievance_id)
    if not can_view(actor, g):
        raise HTTPException(status_code=403, detail="Access denied")
    return g

async def _list(db, query: dict) -> List[dict]:
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(
        executor, lambda: list(db.grievances.find(query).sort("created_at", -1)))

async def list_mine(db, actor: dict) -> List[dict]:
    return await _list(db, {"user_id": str(actor["_id"])})

async def list_pending_mine(db, actor: dict) -> List[dict]:
    return await _list(db, {"user_id": str(actor["_id"]), "status": {"$in": list(OPEN_STATUSES)}})

async def list_all(db, actor: dict) -> List[dict]:
    if not is_staff(actor):
        raise HTTPException(status_code=403, detail="Access denied")
    return await _list(db, {})

# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------
async def update_status(db, actor: dict, grievance_id: str, new_status: str,
                        admin_response: Optional[str] = None,
                        now: Optional[datetime] = None) -> tuple:
    """Set status verbatim; return ``(grievance, changed)``.

    Any status is reachable from any other. Repeating the same update
    leaves the record untouched.
    """
    if not is_staff(actor):
        raise HTTPException(status_code=403, detail="Access denied")
    try:
        status = GrievanceStatus(new_status).value
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid status")
    g = await _find_by_id(db, grievance_id)

    update = {}
    if g.get("status") != status:
        update["status"] = status
    if admin_response is not None and admin_response != g.get("admin_response", ""):
        update["admin_response"] = admin_response
    if not update:
        return g, False

    update["updated_at"] = now or now_utc()
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(executor, lambda: db.grievances.update_one(
        {"_id": g["_id"]}, {"$set": update}))
    g.update(update)
    logger.info("Grievance %s set to %s by %s", g["tracking_id"], g["status"], actor["_id"])
    return g, True

async def add_comment(db, actor: dict, grievance_id: str, text: str,
                      now: Optional[datetime] = None) -> dict:
    g = await _find_by_id(db, grievance_id)
    if not can_view(actor, g):
        raise HTTPException(status_code=403, detail="Access denied")
    text = _clean(text)
    if not text:
        raise HTTPException(status_code=400, detail="Comment text is required")
    now = now or now_utc()
    comment = {"id": new_id(), "text": text, "user_id": str(actor["_id"]), "created_at": now,
               "is_email_reply": False, "email_message_id": None}
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(executor, lambda: db.grievances.update_one(
        {"_id": g["_id"]}, {"$push": {"comments": comment}, "$set": {"updated_at": now}}))
    return comment

# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
async def _owner_email(db, g: dict) -> Optional[str]:
    loop = asyncio.get_event_loop()
    owner = await loop.run_in_executor(
        executor, db.users.find_one, {"_id": g["user_id"]}, {"email": 1})
    return owner["email"] if owner else g.get("email")

async def _stamp(db, grievance_id: str, **fields) -> None:
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(executor, lambda: db.grievances.update_one(
        {"_id": grievance_id}, {"$set": fields}))

async def notify_status_change(db, notifier, grievance_id: str, status: str) -> bool:
    """Email the owner about a status change; stamp ``last_email_sent`` on success."""
    try:
        g = await _find_by_id(db, grievance_id)
        to_email = await _owner_email(db, g)
        sent = await notifier.send_status_update(to_email, g, status)
        if sent:
            await _stamp(db, g["_id"], last_email_sent=now_utc())
        return sent
    except Exception as e:
        logger.error("Status notification for %s failed: %s", grievance_id, e)
        return False

async def send_reminder(db, notifier, actor: dict, tracking_id: str, message: str,
                        now: Optional[datetime] = None) -> dict:
    # the reminder text is mailed but not stored on the grievance
    g = await _find_by_tracking_id(db, tracking_id)
    if not can_view(actor, g):
        raise HTTPException(status_code=403, detail="Access denied")
    if g.get("status") not in OPEN_STATUSES:
        raise HTTPException(status_code=400,
                            detail=f"Reminders can only be sent for pending or in-progress grievances (current status: {g.get('status')})")
    message = _clean(message)
    if not message:
        raise HTTPException(status_code=400, detail="Please provide a message for the reminder")

    now = now or now_utc()
    await _stamp(db, g["_id"], last_reminder_sent=now)
    g["last_reminder_sent"] = now

    recipients = [await _owner_email(db, g)]
    if ADMIN_NOTIFICATION_EMAIL:
        recipients.append(ADMIN_NOTIFICATION_EMAIL)
    results = [await notifier.send_reminder(to, g, message) for to in recipients if to]
    email_sent = any(results)
    if email_sent:
        await _stamp(db, g["_id"], last_email_sent=now_utc())
    logger.info("Reminder for %s sent by %s (delivered=%s)", g["tracking_id"], actor["_id"], email_sent)
    return {"message": "Reminder sent successfully", "email_sent": email_sent,
            "last_reminder_sent": now}
