# Enums and Pydantic models shared by the API and the lifecycle engines

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Optional, Union, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class UserRole(str, Enum):
    STUDENT = "student"
    STAFF = "staff"
    ADMIN = "admin"

class GrievanceCategory(str, Enum):
    ACADEMIC = "academic"
    HOSTEL = "hostel"
    INFRASTRUCTURE = "infrastructure"
    OTHER = "other"

class GrievanceStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"

class EmailStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"

class AccountState(str, Enum):
    UNVERIFIED = "unverified"
    PHONE_VERIFIED = "phone_verified"
    REGISTERED = "registered"
    ACTIVE = "active"

STAFF_ROLES = (UserRole.ADMIN.value, UserRole.STAFF.value)
OPEN_STATUSES = (GrievanceStatus.PENDING.value, GrievanceStatus.IN_PROGRESS.value)

# ---------------------------------------------------------------------------
# Pending verification (stored on the user as a tagged union)
# ---------------------------------------------------------------------------
class PhoneOtpChallenge(BaseModel):
    kind: Literal["phone_otp"] = "phone_otp"
    code: str
    expires_at: datetime

class EmailTokenChallenge(BaseModel):
    kind: Literal["email_token"] = "email_token"
    token: str
    expires_at: datetime

PendingVerification = Annotated[
    Union[PhoneOtpChallenge, EmailTokenChallenge], Field(discriminator="kind")
]

class VerificationRecord(BaseModel):
    """Wrapper used to parse the ``verification`` sub-document of a user."""
    pending: Optional[PendingVerification] = None

# ---------------------------------------------------------------------------
# Wire models (camelCase JSON, snake_case Python)
# ---------------------------------------------------------------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class StudentDetails(CamelModel):
    year: Optional[str] = Field(None, max_length=20)
    university_roll_number: Optional[str] = Field(None, max_length=50)
    branch: Optional[str] = Field(None, max_length=100)
    mobile_number: Optional[str] = Field(None, max_length=10)

    @field_validator("mobile_number")
    @classmethod
    def validate_mobile(cls, v):
        if v and (len(v) != 10 or not v.isdigit()):
            raise ValueError("Please provide a valid 10-digit mobile number")
        return v

class OtpRequest(CamelModel):
    email: str = Field(..., max_length=320)
    phone: str = Field(..., max_length=20)

class OtpVerifyRequest(CamelModel):
    email: str = Field(..., max_length=320)
    phone: str = Field(..., max_length=20)
    otp: str = Field(..., max_length=10)

class RegisterRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=6, max_length=72)
    phone: str = Field(..., max_length=20)
    role: UserRole = UserRole.STUDENT
    student_details: Optional[StudentDetails] = None

class LoginRequest(CamelModel):
    email: str
    password: str

class ResendVerificationRequest(CamelModel):
    email: str = Field(..., max_length=320)

class UserSummary(CamelModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    role: UserRole

class LoginResponse(CamelModel):
    token: str
    user: UserSummary

class UserProfile(CamelModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    role: UserRole
    is_email_verified: bool
    is_phone_verified: bool
    student_details: StudentDetails = Field(default_factory=StudentDetails)
    created_at: datetime
    updated_at: Optional[datetime] = None

class ProfileUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    current_password: Optional[str] = None
    new_password: Optional[str] = Field(None, min_length=6, max_length=72)
    student_details: Optional[StudentDetails] = None

class TokenCheckResponse(CamelModel):
    valid: bool
    user_id: str
    message: str

class MessageResponse(CamelModel):
    message: str

# ---------------------------------------------------------------------------
# Grievances
# ---------------------------------------------------------------------------
class Attachment(CamelModel):
    filename: str
    original_name: Optional[str] = None
    path: str
    mimetype: str
    size: Optional[int] = None
    uploaded_at: Optional[datetime] = None

class Comment(CamelModel):
    id: str
    text: str
    user_id: Optional[str] = None
    created_at: datetime
    is_email_reply: bool = False
    email_message_id: Optional[str] = None

class EmailThreadEntry(CamelModel):
    message_id: Optional[str] = None
    subject: Optional[str] = None
    from_: Optional[str] = Field(None, alias="from")
    to: Optional[str] = None
    content: Optional[str] = None
    timestamp: Optional[datetime] = None
    is_read: bool = False

class GrievanceCreated(CamelModel):
    id: str
    tracking_id: str
    status: GrievanceStatus
    created_at: datetime

class GrievanceResponse(CamelModel):
    id: str
    tracking_id: str
    user_id: str
    category: GrievanceCategory
    subject: str
    title: str
    description: str
    name: Optional[str] = None
    email: Optional[str] = None
    year: Optional[str] = None
    university_roll_number: Optional[str] = None
    branch: Optional[str] = None
    mobile_number: Optional[str] = None
    status: GrievanceStatus
    admin_response: str = ""
    attachments: List[Attachment] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)
    email_thread: List[EmailThreadEntry] = Field(default_factory=list)
    email_status: EmailStatus = EmailStatus.ACTIVE
    last_email_sent: Optional[datetime] = None
    last_email_received: Optional[datetime] = None
    last_reminder_sent: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

class GrievanceCheckResponse(CamelModel):
    tracking_id: str
    category: GrievanceCategory
    subject: str
    status: GrievanceStatus
    admin_response: str = ""
    created_at: datetime
    updated_at: datetime

class StatusUpdate(CamelModel):
    status: str = Field(..., max_length=30)
    admin_response: Optional[str] = Field(None, max_length=5000)

class ReminderRequest(CamelModel):
    tracking_id: str = Field(..., max_length=30)
    message: str = Field(..., max_length=2000)

class CommentCreate(CamelModel):
    text: str = Field(..., min_length=1, max_length=5000)
