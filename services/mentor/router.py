"""
services/mentor/router.py
Mentor directory, approval status, pricing, availability slots and earnings.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import delete, exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking.router import enrich_booking
from services.mentor import scheduling
from shared.middleware.auth import get_current_user, require_mentor
from shared.models.models import (
    ApplicationStatus,
    Booking,
    BookingStatus,
    Mentor,
    MentorPackage,
    Profile,
    TimeSlot,
    User,
)
from shared.schemas.schemas import (
    ApprovalStatusResponse,
    BookingResponse,
    EarningsResponse,
    EarningsTransaction,
    MentorResponse,
    MessageResponse,
    PackageResponse,
    PricingUpdateRequest,
    SlotResponse,
    SlotsCreatedResponse,
    SlotsForDatesRequest,
    WeeklyScheduleRequest,
)
from shared.utils.dates import as_utc, utcnow

router = APIRouter(prefix="/mentors", tags=["Mentors"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_mentor_or_404(mentor_id: UUID, db: AsyncSession) -> Mentor:
    mentor = await db.get(Mentor, mentor_id)
    if not mentor:
        raise HTTPException(status_code=404, detail="Mentor not found")
    return mentor


async def _my_mentor(db: AsyncSession, user: User, approved: bool = True) -> Mentor:
    mentor = await db.scalar(select(Mentor).where(Mentor.user_id == user.id))
    if not mentor:
        raise HTTPException(status_code=404, detail="No mentor record for this account")
    if approved and not mentor.is_approved:
        raise HTTPException(status_code=403, detail="Mentor application is not approved yet")
    return mentor


async def _enrich_mentor(mentor: Mentor, db: AsyncSession) -> MentorResponse:
    """Mentor row plus public profile fields and active packages."""
    profile = await db.get(Profile, mentor.profile_id) if mentor.profile_id else None
    packages = (
        await db.execute(
            select(MentorPackage)
            .where(MentorPackage.mentor_id == mentor.id, MentorPackage.active.is_(True))
            .order_by(MentorPackage.price)
        )
    ).scalars().all()

    return MentorResponse(
        **{
            col.name: getattr(mentor, col.name)
            for col in Mentor.__table__.columns
            if col.name in MentorResponse.model_fields
        },
        name=(profile.name if profile else None) or mentor.applicant_name,
        title=profile.title if profile else mentor.current_designation,
        company=profile.company if profile else None,
        bio=profile.bio if profile else None,
        avatar=profile.avatar if profile else None,
        specialties=(profile.specialties or []) if profile else [],
        experience=profile.experience if profile else None,
        price=profile.price if profile else None,
        rating=profile.rating if profile else None,
        verified=profile.verified if profile else False,
        packages=[PackageResponse.model_validate(p) for p in packages],
    )


def _booking_price(booking: Booking, packages: dict, default: Decimal) -> Decimal:
    package = packages.get(booking.package_id)
    return package.price if package is not None else default


# ── Directory ─────────────────────────────────────────────────

@router.get("", response_model=List[MentorResponse])
async def list_mentors(
    specialty: Optional[str] = Query(None, max_length=100),
    db: AsyncSession = Depends(get_db),
):
    """Approved mentors, highest rated first. `specialty` matches case-insensitively."""
    result = await db.execute(
        select(Mentor, Profile)
        .join(Profile, Profile.id == Mentor.profile_id)
        .where(Mentor.application_status == ApplicationStatus.APPROVED, Profile.verified.is_(True))
        .order_by(Profile.rating.desc(), Mentor.created_at)
    )
    mentors = []
    for mentor, profile in result.all():
        if specialty and specialty.lower() not in {s.lower() for s in profile.specialties or []}:
            continue
        mentors.append(await _enrich_mentor(mentor, db))
    return mentors


# ── Own mentor record ─────────────────────────────────────────

@router.get("/me", response_model=MentorResponse)
async def get_my_mentor(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    mentor = await _my_mentor(db, current_user, approved=False)
    return await _enrich_mentor(mentor, db)


@router.get("/me/approval-status", response_model=ApprovalStatusResponse)
async def get_approval_status(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Input for the mentor gate: approved, pending, rejected, or none."""
    mentor = await db.scalar(select(Mentor).where(Mentor.user_id == current_user.id))
    if not mentor:
        return ApprovalStatusResponse(status="none")
    approved = mentor.approved_at is not None or mentor.is_approved
    return ApprovalStatusResponse(
        status="approved" if approved else mentor.application_status.value,
        approved=approved,
        mentor_id=mentor.id,
    )


@router.put("/me/pricing", response_model=MentorResponse)
async def update_pricing(
    data: PricingUpdateRequest,
    current_user: User = Depends(require_mentor),
    db: AsyncSession = Depends(get_db),
):
    """Replace the mentor's packages wholesale; `price` updates the headline rate."""
    mentor = await _my_mentor(db, current_user)
    if data.price is not None and mentor.profile_id:
        profile = await db.get(Profile, mentor.profile_id)
        if profile:
            profile.price = data.price

    await db.execute(delete(MentorPackage).where(MentorPackage.mentor_id == mentor.id))
    for package in data.packages:
        db.add(MentorPackage(mentor_id=mentor.id, **package.model_dump()))
    await db.commit()
    return await _enrich_mentor(mentor, db)


# ── Slots ─────────────────────────────────────────────────────

def _unbooked_future_slots(mentor_id: UUID, now: datetime):
    """Open slots in the future that no booking (live or cancelled) references."""
    return (
        TimeSlot.mentor_id == mentor_id,
        TimeSlot.available.is_(True),
        TimeSlot.start_at > now,
        ~exists(select(Booking.id).where(Booking.slot_id == TimeSlot.id)),
    )


async def _insert_slots(
    db: AsyncSession, mentor: Mentor, intervals: list[tuple[datetime, datetime]]
) -> int:
    """Insert intervals, skipping any start the mentor already has."""
    if not intervals:
        return 0
    existing = {
        as_utc(start)
        for start in (
            await db.execute(
                select(TimeSlot.start_at).where(
                    TimeSlot.mentor_id == mentor.id,
                    TimeSlot.start_at >= intervals[0][0],
                    TimeSlot.start_at <= intervals[-1][0],
                )
            )
        ).scalars().all()
    }
    created = 0
    for start, end in intervals:
        if start in existing:
            continue
        db.add(TimeSlot(mentor_id=mentor.id, start_at=start, end_at=end, available=True))
        created += 1
    return created


@router.post("/me/schedule/weekly", response_model=SlotsCreatedResponse)
async def set_weekly_schedule(
    data: WeeklyScheduleRequest,
    current_user: User = Depends(require_mentor),
    db: AsyncSession = Depends(get_db),
):
    """
    Regenerate open slots from weekly windows (UTC). Future open slots are
    replaced; booked slots are never touched.
    """
    mentor = await _my_mentor(db, current_user)
    now = utcnow()
    removed = await db.execute(delete(TimeSlot).where(*_unbooked_future_slots(mentor.id, now)))

    intervals = scheduling.weekly_slots(
        data.windows,
        data.slot_minutes,
        data.horizon_days or settings.SLOT_HORIZON_DAYS,
        now=now,
    )
    created = await _insert_slots(db, mentor, intervals)
    await db.commit()
    return SlotsCreatedResponse(created=created, removed=removed.rowcount or 0)


@router.post("/me/schedule/dates", response_model=SlotsCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_slots_for_dates(
    data: SlotsForDatesRequest,
    current_user: User = Depends(require_mentor),
    db: AsyncSession = Depends(get_db),
):
    """Add slots of `slot_minutes` between `start` and `end` on each date."""
    if scheduling.parse_hhmm(data.end) <= scheduling.parse_hhmm(data.start):
        raise HTTPException(status_code=400, detail="end must be after start")
    mentor = await _my_mentor(db, current_user)
    intervals = scheduling.slots_for_dates(data.dates, data.start, data.end, data.slot_minutes)
    created = await _insert_slots(db, mentor, intervals)
    await db.commit()
    return SlotsCreatedResponse(created=created)


@router.delete("/me/slots/{slot_id}", response_model=MessageResponse)
async def delete_slot(
    slot_id: UUID,
    current_user: User = Depends(require_mentor),
    db: AsyncSession = Depends(get_db),
):
    mentor = await _my_mentor(db, current_user)
    slot = await db.get(TimeSlot, slot_id)
    if not slot or slot.mentor_id != mentor.id:
        raise HTTPException(status_code=404, detail="Slot not found")
    referenced = await db.scalar(select(exists().where(Booking.slot_id == slot.id)))
    if not slot.available or referenced:
        raise HTTPException(status_code=409, detail="Slot has bookings and cannot be deleted")
    await db.delete(slot)
    await db.commit()
    return MessageResponse(message="Slot deleted")


# ── Bookings & earnings ───────────────────────────────────────

@router.get("/me/bookings/upcoming", response_model=List[BookingResponse])
async def upcoming_bookings(
    current_user: User = Depends(require_mentor),
    db: AsyncSession = Depends(get_db),
):
    """Pending and confirmed sessions that have not started, soonest first."""
    mentor = await _my_mentor(db, current_user)
    result = await db.execute(
        select(Booking)
        .join(TimeSlot, TimeSlot.id == Booking.slot_id)
        .where(
            Booking.mentor_id == mentor.id,
            Booking.status.in_([BookingStatus.PENDING, BookingStatus.CONFIRMED]),
            TimeSlot.start_at >= utcnow(),
        )
        .order_by(TimeSlot.start_at)
    )
    return [await enrich_booking(db, b) for b in result.scalars().all()]


@router.get("/me/bookings/pending", response_model=List[BookingResponse])
async def pending_requests(
    current_user: User = Depends(require_mentor),
    db: AsyncSession = Depends(get_db),
):
    """Requests awaiting confirm/decline, newest first."""
    mentor = await _my_mentor(db, current_user)
    result = await db.execute(
        select(Booking)
        .where(Booking.mentor_id == mentor.id, Booking.status == BookingStatus.PENDING)
        .order_by(Booking.created_at.desc())
    )
    return [await enrich_booking(db, b) for b in result.scalars().all()]


@router.get("/me/earnings", response_model=EarningsResponse)
async def get_earnings(
    current_user: User = Depends(require_mentor),
    db: AsyncSession = Depends(get_db),
):
    """
    Confirmed and completed sessions priced at their package (or the
    headline rate). Completed sessions count as paid; confirmed ones are
    pending payouts.
    """
    mentor = await _my_mentor(db, current_user)
    profile = await db.get(Profile, mentor.profile_id) if mentor.profile_id else None
    default_price = (profile.price if profile else None) or Decimal("0")
    packages = {
        p.id: p
        for p in (
            await db.execute(select(MentorPackage).where(MentorPackage.mentor_id == mentor.id))
        ).scalars().all()
    }

    result = await db.execute(
        select(Booking, TimeSlot.start_at)
        .join(TimeSlot, TimeSlot.id == Booking.slot_id)
        .where(
            Booking.mentor_id == mentor.id,
            Booking.status.in_([BookingStatus.CONFIRMED, BookingStatus.COMPLETED]),
        )
        .order_by(TimeSlot.start_at.desc())
    )
    rows = result.all()

    now = datetime.now(timezone.utc)
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    month_to_date = lifetime = pending = Decimal("0")
    transactions = []
    for booking, start_at in rows:
        amount = _booking_price(booking, packages, default_price)
        start_at = as_utc(start_at)
        lifetime += amount
        if month_start <= start_at <= now:
            month_to_date += amount
        if booking.status == BookingStatus.CONFIRMED:
            pending += amount
        if len(transactions) < 10:
            transactions.append(EarningsTransaction(
                booking_id=booking.id,
                amount=amount,
                status="paid" if booking.status == BookingStatus.COMPLETED else "pending",
                start_at=start_at,
                mentee_name=booking.mentee_name,
            ))

    return EarningsResponse(
        month_to_date=month_to_date,
        lifetime=lifetime,
        pending_payouts=pending,
        transactions=transactions,
    )


# ── Public by id ──────────────────────────────────────────────

@router.get("/{mentor_id}", response_model=MentorResponse)
async def get_mentor(mentor_id: UUID, db: AsyncSession = Depends(get_db)):
    """Public profile of an approved mentor."""
    mentor = await _get_mentor_or_404(mentor_id, db)
    if not mentor.is_approved:
        raise HTTPException(status_code=404, detail="Mentor not found")
    return await _enrich_mentor(mentor, db)


@router.get("/{mentor_id}/slots", response_model=List[SlotResponse])
async def list_slots(
    mentor_id: UUID,
    available_only: bool = Query(True),
    from_: Optional[datetime] = Query(None, alias="from"),
    to: Optional[datetime] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """A mentor's slots ordered by start. Defaults to open slots from now on."""
    mentor = await _get_mentor_or_404(mentor_id, db)
    query = select(TimeSlot).where(TimeSlot.mentor_id == mentor.id)
    if available_only:
        query = query.where(TimeSlot.available.is_(True))
    query = query.where(TimeSlot.start_at >= (as_utc(from_) if from_ else utcnow()))
    if to:
        query = query.where(TimeSlot.start_at < as_utc(to))
    result = await db.execute(query.order_by(TimeSlot.start_at))
    return [SlotResponse.model_validate(s) for s in result.scalars().all()]
