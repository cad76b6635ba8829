"""
shared/models/models.py
All SQLAlchemy ORM models for the Mentor Marketplace.
UUID primary keys throughout; JSON columns become JSONB on PostgreSQL.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _str_enum(enum_cls: type[PyEnum]) -> Enum:
    """Persist enum *values* (lowercase strings), not member names."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CLIENT = "client"
    MENTOR = "mentor"
    ADMIN = "admin"


class ApplicationStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class TokenPurpose(str, PyEnum):
    PASSWORD_RESET = "password_reset"
    INVITE = "invite"
    EMAIL_CONFIRM = "email_confirm"


class NotificationKind(str, PyEnum):
    BOOKING_ACTION_REQUIRED = "booking.action_required"
    BOOKING_CONFIRMED = "booking.confirmed"
    BOOKING_DECLINED = "booking.declined"
    BOOKING_CANCELLED = "booking.cancelled"
    BOOKING_RESCHEDULED = "booking.rescheduled"
    BOOKING_COMPLETED = "booking.completed"
    REVIEW_RECEIVED = "review.received"
    MENTOR_APPROVED = "mentor.approved"
    MENTOR_REJECTED = "mentor.rejected"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


# ── Accounts ──────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Authentication account. Invited mentors start without a password."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        _str_enum(UserRole), nullable=False, default=UserRole.CLIENT
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    profile: Mapped[Optional["Profile"]] = relationship(
        back_populates="user", uselist=False, lazy="selectin"
    )

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class Profile(TimestampMixin, Base):
    """Public-facing person record; `verified` is the admin approval switch."""
    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        _str_enum(UserRole), nullable=False, default=UserRole.CLIENT
    )
    avatar: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    company: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    experience: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    specialties: Mapped[List[str]] = mapped_column(JSONType, default=list)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    # Denormalized from mentor_reviews
    rating: Mapped[Decimal] = mapped_column(Numeric(3, 2), default=Decimal("0.00"))
    timezone: Mapped[str] = mapped_column(String(64), default="UTC", nullable=False)

    user: Mapped["User"] = relationship(back_populates="profile")

    __table_args__ = (
        Index("ix_profiles_role", "role"),
        Index("ix_profiles_email", "email"),
    )


class RefreshToken(Base):
    """Refresh tokens stored for rotation and revocation."""
    __tablename__ = "refresh_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    __table_args__ = (Index("ix_refresh_tokens_user_id", "user_id"),)


class AuthToken(Base):
    """Single-use reset, invite and email-confirmation tokens (hash only)."""
    __tablename__ = "auth_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    purpose: Mapped[TokenPurpose] = mapped_column(_str_enum(TokenPurpose), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ── Mentors ───────────────────────────────────────────────────

class Mentor(TimestampMixin, Base):
    """
    Mentor row. Exists before the applicant has an account (user_id NULL)
    and is linked by email on login or claim.
    """
    __tablename__ = "mentors"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), unique=True, nullable=True
    )
    profile_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True
    )
    application_status: Mapped[ApplicationStatus] = mapped_column(
        _str_enum(ApplicationStatus), nullable=False, default=ApplicationStatus.PENDING
    )
    applicant_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    applicant_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    applicant_phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    linkedin_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    current_designation: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    resume_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    availability: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    reviews: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    invited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    invite_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    profile: Mapped[Optional["Profile"]] = relationship(lazy="selectin")
    packages: Mapped[List["MentorPackage"]] = relationship(
        back_populates="mentor", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_mentors_status", "application_status"),
        Index("ix_mentors_applicant_email", "applicant_email"),
    )

    @property
    def is_approved(self) -> bool:
        return self.application_status == ApplicationStatus.APPROVED


class MentorApplication(TimestampMixin, Base):
    """Raw application payload, one per user (or per email before signup)."""
    __tablename__ = "mentor_applications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=True
    )
    mentor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("mentors.id", ondelete="CASCADE"), nullable=True
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    linkedin_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_experience: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_designation: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    resume_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    specialties: Mapped[List[str]] = mapped_column(JSONType, default=list)
    # [{"company", "designation", "from_year", "to_year"}, ...]
    employment_history: Mapped[List[dict]] = mapped_column(JSONType, default=list)

    __table_args__ = (Index("ix_mentor_applications_email", "email"),)


class MentorPackage(TimestampMixin, Base):
    """Priced session offering; `price` on the profile is the headline rate."""
    __tablename__ = "mentor_packages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    mentor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("mentors.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_min: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    mentor: Mapped["Mentor"] = relationship(back_populates="packages")


class TimeSlot(TimestampMixin, Base):
    """Bookable interval owned by exactly one mentor."""
    __tablename__ = "time_slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    mentor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("mentors.id", ondelete="CASCADE"), nullable=False
    )
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("end_at > start_at", name="ck_time_slot_range"),
        Index("ix_time_slots_mentor_start", "mentor_id", "start_at"),
    )


# ── Bookings ──────────────────────────────────────────────────

class Booking(TimestampMixin, Base):
    """
    Core booking entity. Mutated only through services/booking/lifecycle.py.
    Status transitions: pending → confirmed | cancelled;
    confirmed → cancelled | completed | no_show (reschedule keeps status).
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    mentor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("mentors.id"), nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    slot_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("time_slots.id"), nullable=False
    )
    package_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("mentor_packages.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[BookingStatus] = mapped_column(
        _str_enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    mentee_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mentee_email: Mapped[str] = mapped_column(String(255), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    audit_logs: Mapped[List["BookingAuditLog"]] = relationship(back_populates="booking")

    __table_args__ = (
        Index("ix_bookings_client_id", "client_id"),
        Index("ix_bookings_mentor_id", "mentor_id"),
        Index("ix_bookings_status", "status"),
        # At most one live booking per slot
        Index(
            "uq_bookings_active_slot",
            "slot_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
    )


class BookingAuditLog(Base):
    """Immutable log of all booking status transitions and reschedules."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audit_metadata: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    booking: Mapped["Booking"] = relationship(back_populates="audit_logs")

    __table_args__ = (Index("ix_booking_audit_booking_id", "booking_id"),)


class MentorReview(TimestampMixin, Base):
    """Post-session review. One per booking (enforced by unique constraint)."""
    __tablename__ = "mentor_reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    mentor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("mentors.id"), nullable=False
    )
    reviewer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        Index("ix_mentor_reviews_mentor_id", "mentor_id"),
    )


# ── Notifications & misc ──────────────────────────────────────

class Notification(TimestampMixin, Base):
    """
    In-app notification. `read`, `is_read` and `seen` are kept in lockstep;
    older clients read different flags.
    """
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=True
    )
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    seen: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_notifications_recipient_read", "recipient_id", "is_read"),
    )


class ContactForm(TimestampMixin, Base):
    """Public contact-us submissions."""
    __tablename__ = "contact_forms"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    handled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
