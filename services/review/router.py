"""
services/review/router.py
Post-session mentor reviews.
"""

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.notification.outbox import Outbox
from shared.middleware.auth import get_current_user
from shared.models.models import (
    Booking,
    BookingStatus,
    Mentor,
    MentorReview,
    NotificationKind,
    Profile,
    TimeSlot,
    User,
)
from shared.schemas.schemas import ReviewCreateRequest, ReviewExistsResponse, ReviewResponse
from shared.utils.dates import as_utc, utcnow

router = APIRouter(prefix="/reviews", tags=["Reviews"])


async def _reviewable(db: AsyncSession, booking: Booking) -> bool:
    """Completed, or confirmed with the session already over."""
    if booking.status == BookingStatus.COMPLETED:
        return True
    if booking.status != BookingStatus.CONFIRMED:
        return False
    slot = await db.get(TimeSlot, booking.slot_id)
    return slot is not None and as_utc(slot.end_at) <= utcnow()


async def _refresh_mentor_rating(db: AsyncSession, mentor: Mentor) -> None:
    """Denormalize average rating onto the profile and count onto the mentor."""
    avg, count = (
        await db.execute(
            select(func.avg(MentorReview.rating), func.count(MentorReview.id))
            .where(MentorReview.mentor_id == mentor.id)
        )
    ).one()
    mentor.reviews = count
    if mentor.profile_id:
        profile = await db.get(Profile, mentor.profile_id)
        if profile:
            profile.rating = Decimal(str(round(float(avg or 0), 2)))


@router.post("", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    data: ReviewCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Submit a review for a finished session.
    - One review per booking (enforced by DB unique constraint)
    - Only the client who made the booking can review
    """
    booking = await db.get(Booking, data.booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    if booking.client_id != current_user.id:
        raise HTTPException(status_code=403, detail="You can only review your own bookings")
    if not await _reviewable(db, booking):
        raise HTTPException(status_code=400, detail="You can review a session once it has taken place")

    existing = await db.scalar(select(MentorReview.id).where(MentorReview.booking_id == booking.id))
    if existing:
        raise HTTPException(status_code=409, detail="You have already reviewed this booking")

    review = MentorReview(
        booking_id=booking.id,
        mentor_id=booking.mentor_id,
        reviewer_id=current_user.id,
        rating=data.rating,
        comment=data.comment,
    )
    db.add(review)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="You have already reviewed this booking")

    mentor = await db.get(Mentor, booking.mentor_id)
    await _refresh_mentor_rating(db, mentor)
    await db.commit()

    outbox = Outbox()
    outbox.notify(
        mentor.user_id,
        NotificationKind.REVIEW_RECEIVED.value,
        "New review",
        f"You received a {data.rating}-star review.",
        booking_id=booking.id,
        user_id=current_user.id,
        payload={"review_id": str(review.id), "rating": data.rating},
    )
    await outbox.flush(db, redis)
    return ReviewResponse.model_validate(review)


@router.get("/mentor/{mentor_id}", response_model=list[ReviewResponse])
async def get_mentor_reviews(
    mentor_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: reviews for a mentor, newest first."""
    result = await db.execute(
        select(MentorReview, Profile.name)
        .outerjoin(Profile, Profile.user_id == MentorReview.reviewer_id)
        .where(MentorReview.mentor_id == mentor_id)
        .order_by(MentorReview.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [
        ReviewResponse.model_validate(review).model_copy(update={"reviewer_name": name})
        for review, name in result.all()
    ]


@router.get("/booking/{booking_id}/exists", response_model=ReviewExistsResponse)
async def review_exists(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Lets the review form hide itself for already-reviewed sessions."""
    found = await db.scalar(select(MentorReview.id).where(MentorReview.booking_id == booking_id))
    return ReviewExistsResponse(exists=found is not None)
