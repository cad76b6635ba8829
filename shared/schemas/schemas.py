"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import re
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from config.settings import settings


_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Auth ──────────────────────────────────────────────────────

class SignupRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    name: Optional[str] = Field(None, max_length=255)
    mobile: Optional[str] = Field(None, pattern=r"^\+?[0-9]{7,15}$")
    role: Literal["client", "mentor"] = "client"


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str


class RefreshRequest(BaseSchema):
    refresh_token: Optional[str] = None


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class AuthResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: "UserResponse"


class PasswordForgotRequest(BaseSchema):
    email: EmailStr


class PasswordResetRequest(BaseSchema):
    token: str
    new_password: str = Field(..., min_length=8, max_length=128)


class PasswordUpdateRequest(BaseSchema):
    current_password: str
    new_password: str = Field(..., min_length=8, max_length=128)


class TokenRequest(BaseSchema):
    token: str = Field(..., min_length=8)


# ── User / Profile ────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: EmailStr
    role: str
    is_active: bool
    created_at: datetime
    name: Optional[str] = None


class ProfileResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    name: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    role: str
    avatar: Optional[str]
    title: Optional[str]
    company: Optional[str]
    experience: Optional[int]
    bio: Optional[str]
    specialties: List[str] = []
    verified: bool
    price: Optional[Decimal]
    rating: Decimal
    timezone: str


class ProfileUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9]{7,15}$")
    avatar: Optional[str] = None
    title: Optional[str] = Field(None, max_length=255)
    company: Optional[str] = Field(None, max_length=255)
    experience: Optional[int] = Field(None, ge=0, le=70)
    bio: Optional[str] = Field(None, max_length=4000)
    specialties: Optional[List[str]] = None
    timezone: Optional[str] = Field(None, max_length=64)


# ── Mentor ────────────────────────────────────────────────────

class PackageSchema(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    duration_min: int = Field(60, ge=15, le=480)
    price: Decimal = Field(..., ge=0)
    currency: str = Field("INR", min_length=3, max_length=3)
    active: bool = True


class PackageResponse(PackageSchema):
    id: uuid.UUID


class PricingUpdateRequest(BaseSchema):
    price: Optional[Decimal] = Field(None, ge=0)
    packages: List[PackageSchema] = []


class MentorResponse(BaseSchema):
    id: uuid.UUID
    user_id: Optional[uuid.UUID]
    profile_id: Optional[uuid.UUID]
    application_status: str
    applicant_name: Optional[str]
    applicant_email: Optional[str]
    availability: Optional[str]
    reviews: int
    invited: bool
    approved_at: Optional[datetime]
    created_at: datetime
    # Joined from profile
    name: Optional[str] = None
    title: Optional[str] = None
    company: Optional[str] = None
    bio: Optional[str] = None
    avatar: Optional[str] = None
    specialties: List[str] = []
    experience: Optional[int] = None
    price: Optional[Decimal] = None
    rating: Optional[Decimal] = None
    verified: bool = False
    packages: List[PackageResponse] = []


class ApprovalStatusResponse(BaseSchema):
    status: Literal["approved", "pending", "rejected", "none"]
    approved: bool = False
    mentor_id: Optional[uuid.UUID] = None


class WeeklyWindow(BaseSchema):
    weekday: int = Field(..., ge=0, le=6, description="0 = Monday")
    start: str = Field(..., description="HH:MM")
    end: str = Field(..., description="HH:MM")

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError("Time must be HH:MM")
        return v


class WeeklyScheduleRequest(BaseSchema):
    windows: List[WeeklyWindow]
    slot_minutes: int = Field(settings.DEFAULT_SLOT_MINUTES, ge=15, le=480)
    horizon_days: Optional[int] = Field(None, ge=1, le=120)


class SlotsForDatesRequest(BaseSchema):
    dates: List[date] = Field(..., min_length=1)
    start: str
    end: str
    slot_minutes: int = Field(settings.DEFAULT_SLOT_MINUTES, ge=15, le=480)

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError("Time must be HH:MM")
        return v


class SlotResponse(BaseSchema):
    id: uuid.UUID
    mentor_id: uuid.UUID
    start_at: datetime
    end_at: datetime
    available: bool


class SlotsCreatedResponse(BaseSchema):
    created: int
    removed: int = 0


class EarningsTransaction(BaseSchema):
    booking_id: uuid.UUID
    amount: Decimal
    status: str
    start_at: datetime
    mentee_name: Optional[str] = None


class EarningsResponse(BaseSchema):
    month_to_date: Decimal
    lifetime: Decimal
    pending_payouts: Decimal
    transactions: List[EarningsTransaction]


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    mentor_id: uuid.UUID
    slot_id: uuid.UUID
    package_id: Optional[uuid.UUID] = None
    mentee_name: Optional[str] = Field(None, max_length=255)
    mentee_email: Optional[EmailStr] = None
    note: Optional[str] = Field(None, max_length=2000)


class BookingReasonRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class BookingRescheduleRequest(BaseSchema):
    new_slot_id: uuid.UUID
    reason: Optional[str] = Field(None, max_length=500)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    mentor_id: uuid.UUID
    client_id: uuid.UUID
    slot_id: uuid.UUID
    package_id: Optional[uuid.UUID]
    status: str
    mentee_name: Optional[str]
    mentee_email: str
    note: Optional[str]
    cancellation_reason: Optional[str]
    cancelled_by: Optional[str]
    confirmed_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime
    # Joined
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    mentor_name: Optional[str] = None
    client_email: Optional[str] = None
    client_phone: Optional[str] = None


class BookingAuditResponse(BaseSchema):
    id: uuid.UUID
    from_status: Optional[str]
    to_status: str
    changed_by_id: Optional[uuid.UUID]
    reason: Optional[str]
    audit_metadata: Optional[Dict[str, Any]]
    created_at: datetime


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    booking_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., max_length=2000)

    @field_validator("comment")
    @classmethod
    def comment_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Comment is required")
        return v.strip()


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    mentor_id: uuid.UUID
    reviewer_id: uuid.UUID
    rating: int
    comment: str
    created_at: datetime
    reviewer_name: Optional[str] = None


class ReviewExistsResponse(BaseSchema):
    exists: bool


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    recipient_id: uuid.UUID
    user_id: Optional[uuid.UUID]
    booking_id: Optional[uuid.UUID]
    kind: str
    title: str
    body: Optional[str]
    payload: Optional[Dict[str, Any]]
    read: bool
    is_read: bool
    seen: bool
    read_at: Optional[datetime]
    created_at: datetime


class NotificationCreateRequest(BaseSchema):
    recipient_id: uuid.UUID
    kind: str = Field(..., max_length=64)
    title: str = Field(..., max_length=255)
    body: Optional[str] = None
    booking_id: Optional[uuid.UUID] = None
    payload: Optional[Dict[str, Any]] = None


class UnreadCountResponse(BaseSchema):
    count: int


# ── Contact ───────────────────────────────────────────────────

class ContactFormRequest(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    message: str = Field(..., min_length=1, max_length=5000)


class ContactFormResponse(ContactFormRequest):
    id: uuid.UUID
    handled: bool
    created_at: datetime


# ── Admin ─────────────────────────────────────────────────────

class ApplicantResponse(BaseSchema):
    id: uuid.UUID
    user_id: Optional[uuid.UUID]
    profile_id: Optional[uuid.UUID]
    application_status: str
    applicant_name: Optional[str]
    applicant_email: Optional[str]
    applicant_phone: Optional[str]
    linkedin_url: Optional[str]
    current_designation: Optional[str]
    resume_url: Optional[str]
    invited: bool
    invite_sent_at: Optional[datetime]
    approved_at: Optional[datetime]
    created_at: datetime


class MentorApplicationResponse(BaseSchema):
    id: uuid.UUID
    user_id: Optional[uuid.UUID]
    mentor_id: Optional[uuid.UUID]
    email: str
    phone: Optional[str]
    linkedin_url: Optional[str]
    total_experience: Optional[int]
    current_designation: Optional[str]
    resume_path: Optional[str]
    specialties: List[str] = []
    employment_history: List[Dict[str, Any]] = []
    created_at: datetime


class AuditLogResponse(BaseSchema):
    id: uuid.UUID
    admin_id: uuid.UUID
    action: str
    entity_type: str
    entity_id: Optional[str]
    payload: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    created_at: datetime


class AdminDecisionRequest(BaseSchema):
    notes: Optional[str] = Field(None, max_length=1000)


class AdminStatsResponse(BaseSchema):
    totalMentors: int
    pendingMentors: int
    totalBookings: int
    upcomingSessions: int


# ── Email side channel ────────────────────────────────────────

class SendEmailRequest(BaseModel):
    to: Optional[str] = None
    subject: Optional[str] = None
    htmlBody: Optional[str] = None


class MailFunctionRequest(BaseModel):
    """Body for /functions/*; required fields depend on `mode`."""
    model_config = ConfigDict(extra="allow")

    mode: Optional[
        Literal["book", "confirm", "cancel", "client-signup", "mentor-invite"]
    ] = None
    mentorEmail: Optional[str] = None
    mentorName: Optional[str] = None
    menteeEmail: Optional[str] = None
    menteeName: Optional[str] = None
    userEmail: Optional[str] = None
    userName: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    bookingId: Optional[str] = None
    startAt: Optional[str] = None
    reason: Optional[str] = None
    inviteUrl: Optional[str] = None


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    message: str
    code: Optional[str] = None


AuthResponse.model_rebuild()
