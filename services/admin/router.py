"""
services/admin/router.py
Admin-only endpoints: mentor approval queue, invites, platform stats,
contact inbox, and immutable audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

import logging
from datetime import timedelta
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from config.settings import settings
from services.auth.router import get_user_by_email, issue_auth_token
from services.mentor import applications
from services.notification.outbox import Outbox
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    ApplicationStatus,
    Booking,
    BookingStatus,
    ContactForm,
    Mentor,
    MentorApplication,
    NotificationKind,
    Profile,
    TimeSlot,
    TokenPurpose,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    AdminDecisionRequest,
    AdminStatsResponse,
    ApplicantResponse,
    AuditLogResponse,
    ContactFormResponse,
    MentorApplicationResponse,
    MessageResponse,
)
from shared.utils.dates import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _log(
    db: AsyncSession,
    admin: User,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: dict | None = None,
    request: Request | None = None,
):
    """Append an immutable record to AdminAuditLog."""
    db.add(AdminAuditLog(
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=request.client.host if request and request.client else None,
    ))


async def _get_mentor_or_404(mentor_id: UUID, db: AsyncSession) -> Mentor:
    mentor = await db.get(Mentor, mentor_id)
    if not mentor:
        raise HTTPException(status_code=404, detail="Mentor not found")
    return mentor


_DECISIONS = {
    "approve": (ApplicationStatus.APPROVED, "APPROVE_MENTOR"),
    "reject": (ApplicationStatus.REJECTED, "REJECT_MENTOR"),
    "pending": (ApplicationStatus.PENDING, "MARK_MENTOR_PENDING"),
}


# ── Mentor Approval Queue ──────────────────────────────────────────────────────

@router.get("/applicants", response_model=List[ApplicantResponse])
async def list_applicants(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Mentor rows, newest first. `status` is pending, approved or rejected."""
    query = select(Mentor).order_by(Mentor.created_at.desc())
    if status_filter:
        try:
            query = query.where(Mentor.application_status == ApplicationStatus(status_filter))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status_filter}")
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return [ApplicantResponse.model_validate(m) for m in result.scalars()]


@router.get("/applications", response_model=List[MentorApplicationResponse])
async def list_applications(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Full application payloads (employment history, résumé path)."""
    result = await db.execute(
        select(MentorApplication).order_by(MentorApplication.created_at.desc())
    )
    return [MentorApplicationResponse.model_validate(a) for a in result.scalars()]


@router.post("/mentors/{mentor_id}/invite", response_model=MessageResponse)
async def invite_mentor(
    mentor_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Give an approved applicant without an account a passwordless user and
    mail a set-password link.
    """
    mentor = await _get_mentor_or_404(mentor_id, db)
    if not mentor.is_approved:
        raise HTTPException(status_code=400, detail="Only approved mentors can be invited")
    if mentor.user_id is not None:
        raise HTTPException(status_code=409, detail="Mentor already has an account")
    if not mentor.applicant_email:
        raise HTTPException(status_code=400, detail="Mentor has no email on file")

    user = await get_user_by_email(db, mentor.applicant_email)
    if user is None:
        user = User(email=mentor.applicant_email.lower(), role=UserRole.MENTOR)
        db.add(user)
        await db.flush()
        profile = Profile(
            user_id=user.id,
            name=mentor.applicant_name,
            email=user.email,
            phone=mentor.applicant_phone,
            title=mentor.current_designation,
            role=UserRole.MENTOR,
            verified=True,
        )
        db.add(profile)
        await db.flush()
        mentor.profile_id = profile.id
    mentor.user_id = user.id
    await db.flush()
    await applications.claim_approved_mentor(db, user)

    raw = issue_auth_token(db, user, TokenPurpose.INVITE, timedelta(days=settings.INVITE_TOKEN_EXPIRE_DAYS))
    mentor.invited = True
    mentor.invite_sent_at = utcnow()
    await _log(db, current_user, "INVITE_MENTOR", "Mentor", str(mentor_id),
               {"email": user.email}, request)
    await db.commit()

    outbox = Outbox()
    outbox.mail("mentor-invite", {
        "email": user.email,
        "name": mentor.applicant_name,
        "inviteUrl": f"{settings.SET_PASSWORD_URL}?token={raw}",
    })
    await outbox.flush(db, redis)
    return MessageResponse(message=f"Invite sent to {user.email}")


@router.post("/mentors/{mentor_id}/{decision}", response_model=ApplicantResponse)
async def decide_mentor(
    mentor_id: UUID,
    decision: str,
    request: Request,
    data: Optional[AdminDecisionRequest] = Body(None),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    approve | reject | pending. Mirrors the decision onto the profile's
    `verified` flag; approval also makes the account a mentor.
    """
    if decision not in _DECISIONS:
        raise HTTPException(status_code=404, detail="Unknown decision")
    new_status, action = _DECISIONS[decision]
    mentor = await _get_mentor_or_404(mentor_id, db)
    previous = mentor.application_status.value

    await applications.apply_decision(db, mentor, new_status)
    notes = data.notes if data else None
    await _log(db, current_user, action, "Mentor", str(mentor_id),
               {"from": previous, "to": new_status.value, "notes": notes}, request)
    await db.commit()

    outbox = Outbox()
    if new_status == ApplicationStatus.APPROVED:
        outbox.notify(
            mentor.user_id,
            NotificationKind.MENTOR_APPROVED.value,
            "You're approved!",
            "Your mentor profile is live. Set your availability to start taking sessions.",
            user_id=current_user.id,
        )
    elif new_status == ApplicationStatus.REJECTED:
        outbox.notify(
            mentor.user_id,
            NotificationKind.MENTOR_REJECTED.value,
            "Application update",
            notes or "Your mentor application was not approved.",
            user_id=current_user.id,
        )
    await outbox.flush(db, redis)
    logger.info(f"Mentor {mentor_id}: {previous} -> {new_status.value} by {current_user.id}")
    return ApplicantResponse.model_validate(mentor)


# ── Platform Stats ─────────────────────────────────────────────────────────────

@router.get("/stats", response_model=AdminStatsResponse)
async def get_stats(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    total_mentors = await db.scalar(select(func.count(Mentor.id)))
    pending_mentors = await db.scalar(
        select(func.count(Mentor.id)).where(Mentor.application_status == ApplicationStatus.PENDING)
    )
    total_bookings = await db.scalar(select(func.count(Booking.id)))
    upcoming = await db.scalar(
        select(func.count(Booking.id))
        .join(TimeSlot, TimeSlot.id == Booking.slot_id)
        .where(TimeSlot.start_at > utcnow(), Booking.status != BookingStatus.CANCELLED)
    )
    return AdminStatsResponse(
        totalMentors=total_mentors or 0,
        pendingMentors=pending_mentors or 0,
        totalBookings=total_bookings or 0,
        upcomingSessions=upcoming or 0,
    )


# ── Contact Inbox ──────────────────────────────────────────────────────────────

@router.get("/contact-forms", response_model=List[ContactFormResponse])
async def list_contact_forms(
    unhandled_only: bool = Query(False),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(ContactForm).order_by(ContactForm.created_at.desc())
    if unhandled_only:
        query = query.where(ContactForm.handled.is_(False))
    result = await db.execute(query)
    return [ContactFormResponse.model_validate(c) for c in result.scalars()]


@router.post("/contact-forms/{form_id}/handled", response_model=MessageResponse)
async def mark_contact_handled(
    form_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    form = await db.get(ContactForm, form_id)
    if not form:
        raise HTTPException(status_code=404, detail="Contact form not found")
    form.handled = True
    await _log(db, current_user, "HANDLE_CONTACT", "ContactForm", str(form_id), {}, request)
    await db.commit()
    return MessageResponse(message="Marked as handled")


# ── Audit Log ──────────────────────────────────────────────────────────────────

@router.get("/audit-logs", response_model=List[AuditLogResponse])
async def get_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action type e.g. APPROVE_MENTOR"),
    entity_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log: append-only, never editable."""
    query = select(AdminAuditLog).order_by(AdminAuditLog.created_at.desc())
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return [AuditLogResponse.model_validate(row) for row in result.scalars()]
