"""
services/mentor/applications.py
Mentor application records and their link to user accounts.
Applicants may apply before signing up; the mentor row is matched to the
account by email on login (link) or on signup (claim).
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.lifecycle import ProcedureError
from shared.models.models import (
    ApplicationStatus,
    Mentor,
    MentorApplication,
    Profile,
    User,
    UserRole,
)
from shared.utils.dates import utcnow

logger = logging.getLogger(__name__)


def _normalize(email: str) -> str:
    return (email or "").strip().lower()


async def _profile_for_user(db: AsyncSession, user_id: uuid.UUID) -> Optional[Profile]:
    return await db.scalar(select(Profile).where(Profile.user_id == user_id))


async def set_profile_verified(db: AsyncSession, profile_id: uuid.UUID, verified: bool) -> Profile:
    profile = await db.get(Profile, profile_id)
    if not profile:
        raise ProcedureError("Profile not found", 404, "profile_not_found")
    profile.verified = verified
    return profile


async def save_mentor_application(
    db: AsyncSession,
    *,
    user_id: Optional[uuid.UUID],
    email: str,
    name: Optional[str] = None,
    phone: Optional[str] = None,
    linkedin_url: Optional[str] = None,
    total_experience: Optional[int] = None,
    current_designation: Optional[str] = None,
    experiences: Optional[list[dict]] = None,
    specialties: Optional[list[str]] = None,
    resume_path: Optional[str] = None,
) -> Mentor:
    """
    Upsert the application and its mentor row. Keyed by user when known,
    otherwise by applicant email. An approved mentor stays approved;
    a rejected one re-enters the queue as pending.
    """
    email = _normalize(email)

    if user_id is not None:
        app_query = select(MentorApplication).where(MentorApplication.user_id == user_id)
        mentor_query = select(Mentor).where(Mentor.user_id == user_id)
    else:
        app_query = select(MentorApplication).where(
            MentorApplication.user_id.is_(None), func.lower(MentorApplication.email) == email
        )
        mentor_query = select(Mentor).where(
            Mentor.user_id.is_(None), func.lower(Mentor.applicant_email) == email
        )

    mentor = await db.scalar(mentor_query)
    if mentor is None:
        mentor = Mentor(user_id=user_id, application_status=ApplicationStatus.PENDING)
        db.add(mentor)
    elif mentor.application_status == ApplicationStatus.REJECTED:
        mentor.application_status = ApplicationStatus.PENDING

    mentor.applicant_email = email
    mentor.applicant_name = name or mentor.applicant_name
    mentor.applicant_phone = phone or mentor.applicant_phone
    mentor.linkedin_url = linkedin_url
    mentor.current_designation = current_designation
    mentor.resume_url = resume_path or mentor.resume_url

    if user_id is not None:
        profile = await _profile_for_user(db, user_id)
        if profile:
            mentor.profile_id = profile.id
            if specialties:
                profile.specialties = list(specialties)
            if total_experience is not None:
                profile.experience = total_experience
            if current_designation:
                profile.title = current_designation
    await db.flush()

    application = await db.scalar(app_query)
    if application is None:
        application = MentorApplication(user_id=user_id, email=email)
        db.add(application)
    application.mentor_id = mentor.id
    application.email = email
    application.phone = phone
    application.linkedin_url = linkedin_url
    application.total_experience = total_experience
    application.current_designation = current_designation
    application.employment_history = list(experiences or [])
    application.specialties = list(specialties or [])
    application.resume_path = resume_path
    await db.flush()

    logger.info(f"Mentor application saved for {email} (mentor {mentor.id})")
    return mentor


async def link_user_to_single_mentor(
    db: AsyncSession, user_id: uuid.UUID, email: str
) -> Optional[Mentor]:
    """
    Attach an unclaimed mentor row to `user_id` when exactly one matches
    the email. Returns the user's mentor row, or None when there is no
    unambiguous match.
    """
    existing = await db.scalar(select(Mentor).where(Mentor.user_id == user_id))
    if existing:
        return existing

    normalized = _normalize(email)
    if not normalized:
        return None
    candidates = (
        await db.execute(
            select(Mentor).where(
                Mentor.user_id.is_(None), func.lower(Mentor.applicant_email) == normalized
            )
        )
    ).scalars().all()
    if len(candidates) != 1:
        return None

    mentor = candidates[0]
    mentor.user_id = user_id
    profile = await _profile_for_user(db, user_id)
    if profile and mentor.profile_id is None:
        mentor.profile_id = profile.id
    await db.execute(
        MentorApplication.__table__.update()
        .where(MentorApplication.mentor_id == mentor.id, MentorApplication.user_id.is_(None))
        .values(user_id=user_id)
    )
    await db.flush()
    return mentor


async def claim_approved_mentor(db: AsyncSession, user: User) -> Optional[Mentor]:
    """
    After signup/login: if the account's mentor row is approved, make the
    account a verified mentor.
    """
    mentor = await link_user_to_single_mentor(db, user.id, user.email)
    if mentor is None or mentor.application_status != ApplicationStatus.APPROVED:
        return mentor

    profile = await _profile_for_user(db, user.id)
    if profile:
        mentor.profile_id = profile.id
        profile.verified = True
        profile.role = UserRole.MENTOR
    user.role = UserRole.MENTOR
    await db.flush()
    return mentor


async def apply_decision(
    db: AsyncSession, mentor: Mentor, status: ApplicationStatus
) -> Mentor:
    """
    Admin decision on a mentor: sets application_status and mirrors it onto
    the profile's verified flag. Approval also promotes the account role.
    """
    if mentor.profile_id:
        await set_profile_verified(db, mentor.profile_id, status == ApplicationStatus.APPROVED)
    mentor.application_status = status
    mentor.approved_at = utcnow() if status == ApplicationStatus.APPROVED else None

    if status == ApplicationStatus.APPROVED and mentor.user_id:
        user = await db.get(User, mentor.user_id)
        if user and user.role == UserRole.CLIENT:
            user.role = UserRole.MENTOR
        profile = await _profile_for_user(db, mentor.user_id)
        if profile:
            profile.role = UserRole.MENTOR
    await db.flush()
    return mentor
