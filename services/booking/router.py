"""
services/booking/router.py
REST surface for bookings. Mutations delegate to services/booking/lifecycle.py;
the same procedures are reachable by name through services/rpc/router.py.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.booking import lifecycle
from services.notification.outbox import Outbox
from shared.middleware.auth import get_current_user, require_mentor
from shared.models.models import (
    Booking,
    BookingAuditLog,
    BookingStatus,
    Mentor,
    Profile,
    TimeSlot,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    BookingAuditResponse,
    BookingCreateRequest,
    BookingReasonRequest,
    BookingRescheduleRequest,
    BookingResponse,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_booking_or_404(booking_id: UUID, db: AsyncSession) -> Booking:
    booking = await db.get(Booking, booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


async def _mentor_for_user(db: AsyncSession, user: User) -> Optional[Mentor]:
    return await db.scalar(select(Mentor).where(Mentor.user_id == user.id))


async def _assert_can_view(db: AsyncSession, booking: Booking, user: User) -> None:
    if user.role == UserRole.ADMIN or booking.client_id == user.id:
        return
    mentor = await _mentor_for_user(db, user)
    if not mentor or booking.mentor_id != mentor.id:
        raise HTTPException(status_code=403, detail="Not authorized")


async def enrich_booking(db: AsyncSession, booking: Booking) -> BookingResponse:
    """Booking row plus slot times, mentor name and client contact."""
    slot = await db.get(TimeSlot, booking.slot_id)
    client_profile = await db.scalar(select(Profile).where(Profile.user_id == booking.client_id))
    client = await db.get(User, booking.client_id)
    mentor = await db.get(Mentor, booking.mentor_id)
    _, mentor_name = await lifecycle.mentor_contact(db, mentor) if mentor else (None, None)

    return BookingResponse(
        **{col.name: getattr(booking, col.name) for col in Booking.__table__.columns},
        start_at=slot.start_at if slot else None,
        end_at=slot.end_at if slot else None,
        mentor_name=mentor_name,
        client_email=client.email if client else None,
        client_phone=client_profile.phone if client_profile else None,
    )


# ── Transitions ───────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Book an available slot. The booking starts `pending` and the slot is taken."""
    outbox = Outbox()
    booking = await lifecycle.book_slot(
        db,
        redis,
        outbox,
        actor=current_user,
        mentor_id=data.mentor_id,
        slot_id=data.slot_id,
        mentee_name=data.mentee_name,
        mentee_email=data.mentee_email,
        package_id=data.package_id,
        note=data.note,
    )
    await outbox.flush(db, redis)
    return await enrich_booking(db, booking)


@router.post("/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(
    booking_id: UUID,
    current_user: User = Depends(require_mentor),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Mentor accepts a pending request."""
    outbox = Outbox()
    booking = await lifecycle.confirm_booking(db, outbox, actor=current_user, booking_id=booking_id)
    await outbox.flush(db, redis)
    return await enrich_booking(db, booking)


@router.post("/{booking_id}/decline", response_model=BookingResponse)
async def decline_booking(
    booking_id: UUID,
    data: BookingReasonRequest,
    current_user: User = Depends(require_mentor),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Mentor declines a pending request. The slot becomes bookable again."""
    outbox = Outbox()
    booking = await lifecycle.decline_booking(
        db, outbox, actor=current_user, booking_id=booking_id, reason=data.reason
    )
    await outbox.flush(db, redis)
    return await enrich_booking(db, booking)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: BookingReasonRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    outbox = Outbox()
    booking = await lifecycle.cancel_booking(
        db, outbox, actor=current_user, booking_id=booking_id, reason=data.reason
    )
    await outbox.flush(db, redis)
    return await enrich_booking(db, booking)


@router.post("/{booking_id}/reschedule", response_model=BookingResponse)
async def reschedule_booking(
    booking_id: UUID,
    data: BookingRescheduleRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    outbox = Outbox()
    booking = await lifecycle.reschedule_booking(
        db,
        redis,
        outbox,
        actor=current_user,
        booking_id=booking_id,
        new_slot_id=data.new_slot_id,
        reason=data.reason,
    )
    await outbox.flush(db, redis)
    return await enrich_booking(db, booking)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    current_user: User = Depends(require_mentor),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    outbox = Outbox()
    booking = await lifecycle.complete_booking(db, outbox, actor=current_user, booking_id=booking_id)
    await outbox.flush(db, redis)
    return await enrich_booking(db, booking)


@router.post("/{booking_id}/no-show", response_model=BookingResponse)
async def mark_no_show(
    booking_id: UUID,
    current_user: User = Depends(require_mentor),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    outbox = Outbox()
    booking = await lifecycle.mark_no_show(db, outbox, actor=current_user, booking_id=booking_id)
    await outbox.flush(db, redis)
    return await enrich_booking(db, booking)


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Client sees own bookings, mentor sees theirs, admin sees all."""
    booking = await _get_booking_or_404(booking_id, db)
    await _assert_can_view(db, booking, current_user)
    return await enrich_booking(db, booking)


@router.get("/{booking_id}/audit", response_model=list[BookingAuditResponse])
async def get_booking_audit(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Transition and reschedule history, oldest first."""
    booking = await _get_booking_or_404(booking_id, db)
    await _assert_can_view(db, booking, current_user)
    result = await db.execute(
        select(BookingAuditLog)
        .where(BookingAuditLog.booking_id == booking.id)
        .order_by(BookingAuditLog.created_at.asc())
    )
    return [BookingAuditResponse.model_validate(row) for row in result.scalars().all()]


@router.get("", response_model=list[BookingResponse])
async def list_my_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List bookings for the caller. Mentors see bookings assigned to them."""
    if current_user.role == UserRole.ADMIN:
        query = select(Booking)
    elif current_user.role == UserRole.MENTOR:
        mentor = await _mentor_for_user(db, current_user)
        if not mentor:
            return []
        query = select(Booking).where(Booking.mentor_id == mentor.id)
    else:
        query = select(Booking).where(Booking.client_id == current_user.id)

    if status_filter:
        try:
            query = query.where(Booking.status == BookingStatus(status_filter))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status_filter}")

    query = query.order_by(Booking.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [await enrich_booking(db, b) for b in result.scalars().all()]
