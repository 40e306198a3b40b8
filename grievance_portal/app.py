# College Grievance Portal
# FastAPI + MongoDB + SMTP/IMAP

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlencode

import uvicorn
from fastapi import FastAPI, HTTPException, BackgroundTasks, Depends, Form, File, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, FileResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from . import db as database
from . import grievances, verification
from .config import FRONTEND_URL, IS_DEVELOPMENT, IS_PRODUCTION, now_utc
from .db import get_db, executor
from .mail_listener import MailboxPoller
from .models import (
    OtpRequest, OtpVerifyRequest, RegisterRequest, LoginRequest, LoginResponse,
    ResendVerificationRequest, UserProfile, ProfileUpdate, TokenCheckResponse, MessageResponse,
    GrievanceCreated, GrievanceResponse, GrievanceCheckResponse, StatusUpdate, ReminderRequest,
    CommentCreate, Comment, STAFF_ROLES,
)
from .notifications import get_notifier
from .security import (
    login, get_optional_user, get_current_user, require_role, user_to_profile,
    hash_password, verify_password,
)
from .uploads import read_attachments, find_attachment

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    await database.startup_db()
    poller = None
    if IS_PRODUCTION:
        poller = MailboxPoller(database.db)
        poller.start()
    yield
    if poller:
        await poller.stop()
    await database.shutdown_db()

# ---------------------------------------------------------------------------
# App & Middleware
# ---------------------------------------------------------------------------
app = FastAPI(title="College Grievance Portal", lifespan=lifespan)
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    detail = f"Server error: {exc}" if IS_DEVELOPMENT else "Internal server error"
    return JSONResponse(status_code=500, content={"detail": detail})

# ---------------------------------------------------------------------------
# AUTH ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/api/auth/send-otp", response_model=MessageResponse)
@limiter.limit("5/minute")
async def send_otp(request: Request, body: OtpRequest, db=Depends(get_db),
                   notifier=Depends(get_notifier)):
    return await verification.request_otp(db, notifier, body.email, body.phone)

@app.post("/api/auth/verify-otp", response_model=MessageResponse)
@limiter.limit("10/minute")
async def verify_otp(request: Request, body: OtpVerifyRequest, db=Depends(get_db)):
    return await verification.verify_otp(db, body.email, body.phone, body.otp)

@app.post("/api/auth/register", status_code=201)
@limiter.limit("3/minute")
async def register(request: Request, body: RegisterRequest, db=Depends(get_db),
                   notifier=Depends(get_notifier)):
    result = await verification.complete_registration(
        db, notifier, body.name, body.email, body.password, body.phone,
        role=body.role, student_details=body.student_details)
    return {"message": result["message"], "emailSent": result["email_sent"]}

@app.get("/api/auth/verify-email/{token}")
async def verify_email(token: str, db=Depends(get_db)):
    try:
        result = await verification.verify_email(db, token)
        query = urlencode({"success": result["message"]})
    except HTTPException as e:
        query = urlencode({"error": e.detail})
    return RedirectResponse(f"{FRONTEND_URL}/login?{query}", status_code=302)

@app.post("/api/auth/login", response_model=LoginResponse)
@limiter.limit("5/minute")
async def login_user(request: Request, form: LoginRequest, db=Depends(get_db)):
    return await login(db, form.email, form.password)

@app.post("/api/auth/resend-verification", response_model=MessageResponse)
@limiter.limit("3/minute")
async def resend_verification(request: Request, body: ResendVerificationRequest,
                              db=Depends(get_db), notifier=Depends(get_notifier)):
    return await verification.resend_verification(db, notifier, body.email)

# ---------------------------------------------------------------------------
# USER ENDPOINTS
# ---------------------------------------------------------------------------
@app.get("/api/users/verify-token", response_model=TokenCheckResponse)
async def verify_token(user=Depends(get_optional_user)):
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return TokenCheckResponse(valid=True, user_id=str(user["_id"]), message="Token is valid")

@app.get("/api/users/profile", response_model=UserProfile)
async def get_profile(user=Depends(get_current_user)):
    return user_to_profile(user)

@app.put("/api/users/profile", response_model=UserProfile)
async def update_profile(update: ProfileUpdate, user=Depends(get_current_user), db=Depends(get_db)):
    set_fields = {}
    if update.name:
        set_fields["name"] = update.name.strip()
    if update.student_details:
        details = dict(user.get("student_details") or {})
        details.update(update.student_details.model_dump(exclude_unset=True))
        set_fields["student_details"] = details
    if update.new_password:
        if not update.current_password:
            raise HTTPException(status_code=400, detail="Current password is required")
        if not verify_password(update.current_password, user.get("hashed_password")):
            raise HTTPException(status_code=400, detail="Current password is incorrect")
        set_fields["hashed_password"] = hash_password(update.new_password)
    if set_fields:
        set_fields["updated_at"] = now_utc()
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(
            executor, lambda: db.users.update_one({"_id": user["_id"]}, {"$set": set_fields}))
        user.update(set_fields)
        logger.info("Profile updated for user %s", user["_id"])
    return user_to_profile(user)

# ---------------------------------------------------------------------------
# GRIEVANCE ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/api/grievances", response_model=GrievanceCreated, status_code=201)
async def create_grievance(
    category: Optional[str] = Form(None), type: Optional[str] = Form(None),
    subject: Optional[str] = Form(None), title: Optional[str] = Form(None),
    description: Optional[str] = Form(None), year: Optional[str] = Form(None),
    university_roll_number: Optional[str] = Form(None, alias="universityRollNumber"),
    branch: Optional[str] = Form(None),
    mobile_number: Optional[str] = Form(None, alias="mobileNumber"),
    attachments: Optional[List[UploadFile]] = File(None),
    user=Depends(get_current_user), db=Depends(get_db)):
    fields = {
        "category": category, "type": type, "subject": subject, "title": title,
        "description": description, "year": year, "university_roll_number": university_roll_number,
        "branch": branch, "mobile_number": mobile_number,
    }
    grievances.validate_submission(fields)
    uploads = await read_attachments(attachments or [])
    try:
        doc = await grievances.submit(db, user, fields, uploads)
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Error creating grievance: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")
    return GrievanceCreated(id=doc["_id"], tracking_id=doc["tracking_id"],
                            status=doc["status"], created_at=doc["created_at"])

@app.get("/api/grievances/admin", response_model=List[GrievanceResponse])
async def admin_grievances(user=Depends(require_role(*STAFF_ROLES)), db=Depends(get_db)):
    return [grievances.grievance_to_response(g) for g in await grievances.list_all(db, user)]

@app.get("/api/grievances/my-grievances", response_model=List[GrievanceResponse])
async def my_grievances(user=Depends(get_current_user), db=Depends(get_db)):
    return [grievances.grievance_to_response(g) for g in await grievances.list_mine(db, user)]

@app.get("/api/grievances/my-pending-grievances", response_model=List[GrievanceResponse])
async def my_pending_grievances(user=Depends(get_current_user), db=Depends(get_db)):
    return [grievances.grievance_to_response(g) for g in await grievances.list_pending_mine(db, user)]

@app.get("/api/grievances/track/{tracking_id}", response_model=GrievanceResponse)
async def track_grievance(tracking_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return grievances.grievance_to_response(await grievances.track(db, user, tracking_id))

@app.get("/api/grievances/check/{tracking_id}", response_model=GrievanceCheckResponse)
async def check_grievance(tracking_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return grievances.grievance_to_check(await grievances.track(db, user, tracking_id))

@app.post("/api/grievances/send-reminder")
async def send_reminder(body: ReminderRequest, user=Depends(get_current_user), db=Depends(get_db),
                        notifier=Depends(get_notifier)):
    result = await grievances.send_reminder(db, notifier, user, body.tracking_id, body.message)
    return {"message": result["message"], "emailSent": result["email_sent"],
            "lastReminderSent": result["last_reminder_sent"].isoformat()}

@app.patch("/api/grievances/{grievance_id}/status", response_model=GrievanceResponse)
async def update_grievance_status(grievance_id: str, body: StatusUpdate,
                                  background_tasks: BackgroundTasks,
                                  user=Depends(get_current_user), db=Depends(get_db),
                                  notifier=Depends(get_notifier)):
    g, changed = await grievances.update_status(db, user, grievance_id, body.status, body.admin_response)
    if changed:
        background_tasks.add_task(grievances.notify_status_change, db, notifier, g["_id"], g["status"])
    return grievances.grievance_to_response(g)

@app.get("/api/grievances/{grievance_id}", response_model=GrievanceResponse)
async def get_grievance(grievance_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return grievances.grievance_to_response(await grievances.get_detail(db, user, grievance_id))

@app.post("/api/grievances/{grievance_id}/comments", response_model=Comment, status_code=201)
async def add_comment(grievance_id: str, body: CommentCreate, user=Depends(get_current_user),
                      db=Depends(get_db)):
    return Comment(**await grievances.add_comment(db, user, grievance_id, body.text))

@app.get("/api/grievances/{grievance_id}/attachments/{filename}")
async def download_attachment(grievance_id: str, filename: str, user=Depends(get_current_user),
                              db=Depends(get_db)):
    g = await grievances.get_detail(db, user, grievance_id)
    attachment = find_attachment(g, filename)
    if not attachment or not Path(attachment["path"]).is_file():
        raise HTTPException(status_code=404, detail="Attachment not found")
    return FileResponse(attachment["path"], media_type=attachment.get("mimetype"),
                        filename=attachment.get("original_name") or attachment["filename"])

# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/")
async def root():
    return {"message": "Grievance Portal API is running"}

@app.get("/health")
async def health():
    return {"status": "healthy", "system": "College Grievance Portal", "timestamp": now_utc()}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=5000)
