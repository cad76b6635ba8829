"""
services/booking/lifecycle.py
Booking transition procedures. Every state change to a booking goes
through one of these functions; each runs as a single transaction.

States: pending → confirmed | cancelled
        confirmed → cancelled | completed | no_show
Reschedule moves a pending/confirmed booking to another slot in place.

Callers pass an Outbox; side effects queued there are flushed by the
caller after the commit and never affect the outcome.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache
from services.notification.outbox import Outbox
from shared.models.models import (
    Booking,
    BookingAuditLog,
    BookingStatus,
    Mentor,
    MentorPackage,
    NotificationKind,
    Profile,
    TimeSlot,
    User,
    UserRole,
)
from shared.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)


class ProcedureError(Exception):
    """A transition was refused. Nothing was written."""

    def __init__(self, message: str, status_code: int = 400, code: str = "invalid_request"):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


# ── Helpers ───────────────────────────────────────────────────

async def _get_booking(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    result = await db.execute(
        select(Booking).where(Booking.id == booking_id).with_for_update()
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise ProcedureError("Booking not found", 404, "booking_not_found")
    return booking


async def _get_mentor(db: AsyncSession, mentor_id: uuid.UUID) -> Mentor:
    mentor = await db.get(Mentor, mentor_id)
    if not mentor:
        raise ProcedureError("Mentor not found", 404, "mentor_not_found")
    return mentor


def _is_admin(actor: User) -> bool:
    return actor.role == UserRole.ADMIN


def _party(actor: User, booking: Booking, mentor: Mentor) -> Optional[str]:
    """Which side of the booking the actor is on, if any."""
    if mentor.user_id is not None and mentor.user_id == actor.id:
        return "mentor"
    if booking.client_id == actor.id:
        return "client"
    if _is_admin(actor):
        return "admin"
    return None


def _require_status(booking: Booking, *allowed: BookingStatus, action: str) -> None:
    if booking.status not in allowed:
        raise ProcedureError(
            f"Cannot {action} booking in '{booking.status.value}' state",
            400,
            "invalid_state",
        )


async def _claim_slot(db: AsyncSession, slot_id: uuid.UUID, mentor_id: uuid.UUID) -> bool:
    """Conditional flip available → unavailable; True only for the winner."""
    result = await db.execute(
        update(TimeSlot)
        .where(
            TimeSlot.id == slot_id,
            TimeSlot.mentor_id == mentor_id,
            TimeSlot.available.is_(True),
        )
        .values(available=False)
    )
    return result.rowcount == 1


async def _release_slot(db: AsyncSession, slot_id: uuid.UUID) -> None:
    await db.execute(
        update(TimeSlot).where(TimeSlot.id == slot_id).values(available=True)
    )


async def _check_bookable_slot(
    db: AsyncSession, slot_id: uuid.UUID, mentor_id: uuid.UUID
) -> TimeSlot:
    slot = await db.get(TimeSlot, slot_id)
    if not slot or slot.mentor_id != mentor_id:
        raise ProcedureError("Slot not found for this mentor", 404, "slot_not_found")
    if as_utc(slot.start_at) <= utcnow():
        raise ProcedureError("Slot has already started", 400, "slot_in_past")
    if not slot.available:
        raise ProcedureError("Slot is no longer available", 409, "slot_unavailable")
    return slot


def _log_status_change(
    db: AsyncSession,
    booking: Booking,
    from_status: Optional[str],
    to_status: str,
    changed_by: Optional[User],
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Append an immutable audit log entry for every transition."""
    db.add(BookingAuditLog(
        booking_id=booking.id,
        from_status=from_status,
        to_status=to_status,
        changed_by_id=changed_by.id if changed_by else None,
        reason=reason,
        audit_metadata=metadata,
    ))


def _is_active_slot_conflict(error: IntegrityError) -> bool:
    # Postgres names the index; SQLite names the column
    message = str(error.orig)
    return "uq_bookings_active_slot" in message or "bookings.slot_id" in message


async def _commit(db: AsyncSession, flush_only: bool = False) -> None:
    try:
        if flush_only:
            await db.flush()
        else:
            await db.commit()
    except IntegrityError as e:
        await db.rollback()
        if not _is_active_slot_conflict(e):
            raise
        logger.info(f"Booking commit rejected by constraint: {e.orig}")
        raise ProcedureError("Slot is no longer available", 409, "slot_unavailable")


async def _check_package(db: AsyncSession, package_id: uuid.UUID, mentor_id: uuid.UUID) -> MentorPackage:
    package = await db.get(MentorPackage, package_id)
    if not package or package.mentor_id != mentor_id or not package.active:
        raise ProcedureError("Package not found for this mentor", 404, "package_not_found")
    return package


def _lock_owner(actor: User) -> str:
    """Unique per request, so a stale release never drops a newer claim."""
    return f"{actor.id}:{uuid.uuid4().hex}"


async def mentor_contact(db: AsyncSession, mentor: Mentor) -> tuple[Optional[str], Optional[str]]:
    """(email, name) for a mentor: profile first, then account, then application."""
    email = name = None
    if mentor.profile_id:
        profile = await db.get(Profile, mentor.profile_id)
        if profile:
            email, name = profile.email, profile.name
    if not email and mentor.user_id:
        user = await db.get(User, mentor.user_id)
        email = user.email if user else None
    return email or mentor.applicant_email, name or mentor.applicant_name


def _mail_payload(booking: Booking, slot: Optional[TimeSlot], **extra) -> dict:
    payload = {
        "bookingId": str(booking.id),
        "menteeEmail": booking.mentee_email,
        "menteeName": booking.mentee_name,
        "startAt": as_utc(slot.start_at).strftime("%d %b %Y, %H:%M UTC") if slot else None,
    }
    payload.update({k: v for k, v in extra.items() if v is not None})
    return payload


# ── Procedures ────────────────────────────────────────────────

async def book_slot(
    db: AsyncSession,
    redis,
    outbox: Outbox,
    *,
    actor: User,
    mentor_id: uuid.UUID,
    slot_id: uuid.UUID,
    mentee_name: Optional[str] = None,
    mentee_email: Optional[str] = None,
    package_id: Optional[uuid.UUID] = None,
    note: Optional[str] = None,
) -> Booking:
    """
    Claim `slot_id` and create a pending booking for `actor`.

    The slot is claimed twice over: a short Redis SET NX guard serializes
    concurrent requests, and the conditional UPDATE (plus the partial unique
    index on bookings.slot_id) guarantees at most one live booking even if
    Redis is flushed. On any failure nothing is written.
    """
    mentor = await _get_mentor(db, mentor_id)
    if not mentor.is_approved:
        raise ProcedureError("Mentor is not accepting bookings", 400, "mentor_not_approved")
    if mentor.user_id == actor.id:
        raise ProcedureError("You cannot book your own session", 400, "self_booking")

    email = mentee_email or actor.email
    if not mentee_name:
        profile = await db.scalar(select(Profile).where(Profile.user_id == actor.id))
        mentee_name = profile.name if profile else None
    name = mentee_name
    if not email:
        raise ProcedureError("Mentee email is required", 422, "mentee_email_required")
    if package_id is not None:
        await _check_package(db, package_id, mentor.id)

    cache = RedisCache(redis)
    owner = _lock_owner(actor)
    if not await cache.lock_slot(str(slot_id), owner):
        raise ProcedureError(
            "This slot is being booked by someone else. Please pick another time.",
            409,
            "slot_locked",
        )
    try:
        slot = await _check_bookable_slot(db, slot_id, mentor.id)
        if not await _claim_slot(db, slot_id, mentor.id):
            raise ProcedureError("Slot is no longer available", 409, "slot_unavailable")

        booking = Booking(
            mentor_id=mentor.id,
            client_id=actor.id,
            slot_id=slot_id,
            package_id=package_id,
            status=BookingStatus.PENDING,
            mentee_name=name,
            mentee_email=email,
            note=note,
        )
        db.add(booking)
        await _commit(db, flush_only=True)
        _log_status_change(db, booking, None, BookingStatus.PENDING.value, actor)
        await _commit(db)
    except ProcedureError:
        await db.rollback()
        raise
    finally:
        await cache.release_slot(str(slot_id), owner)

    mentor_email, _ = await mentor_contact(db, mentor)
    outbox.notify(
        mentor.user_id,
        NotificationKind.BOOKING_ACTION_REQUIRED.value,
        "New session request",
        f"{name or email} requested a session. Please confirm or decline.",
        booking_id=booking.id,
        user_id=actor.id,
        payload={"booking_id": str(booking.id), "slot_id": str(slot_id)},
    )
    outbox.mail("book", _mail_payload(booking, slot, mentorEmail=mentor_email))
    logger.info(f"Booking {booking.id} created for slot {slot_id}")
    return booking


async def confirm_booking(
    db: AsyncSession,
    outbox: Outbox,
    *,
    actor: User,
    booking_id: uuid.UUID,
) -> Booking:
    """Owning mentor (or admin) accepts a pending request."""
    booking = await _get_booking(db, booking_id)
    mentor = await _get_mentor(db, booking.mentor_id)
    if _party(actor, booking, mentor) not in ("mentor", "admin"):
        raise ProcedureError("Only the mentor can confirm this booking", 403, "forbidden")
    _require_status(booking, BookingStatus.PENDING, action="confirm")

    prev = booking.status.value
    booking.status = BookingStatus.CONFIRMED
    booking.confirmed_at = utcnow()
    _log_status_change(db, booking, prev, BookingStatus.CONFIRMED.value, actor)
    await _commit(db)

    slot = await db.get(TimeSlot, booking.slot_id)
    outbox.notify(
        booking.client_id,
        NotificationKind.BOOKING_CONFIRMED.value,
        "Session confirmed",
        "Your mentor confirmed your session.",
        booking_id=booking.id,
        user_id=actor.id,
    )
    outbox.mail("confirm", _mail_payload(booking, slot))
    return booking


async def decline_booking(
    db: AsyncSession,
    outbox: Outbox,
    *,
    actor: User,
    booking_id: uuid.UUID,
    reason: Optional[str] = None,
) -> Booking:
    """Owning mentor (or admin) rejects a pending request; the slot reopens."""
    booking = await _get_booking(db, booking_id)
    mentor = await _get_mentor(db, booking.mentor_id)
    if _party(actor, booking, mentor) not in ("mentor", "admin"):
        raise ProcedureError("Only the mentor can decline this booking", 403, "forbidden")
    _require_status(booking, BookingStatus.PENDING, action="decline")

    prev = booking.status.value
    booking.status = BookingStatus.CANCELLED
    booking.cancellation_reason = reason
    booking.cancelled_by = "mentor"
    booking.cancelled_at = utcnow()
    await _release_slot(db, booking.slot_id)
    _log_status_change(
        db, booking, prev, BookingStatus.CANCELLED.value, actor, reason, {"action": "decline"}
    )
    await _commit(db)

    slot = await db.get(TimeSlot, booking.slot_id)
    outbox.notify(
        booking.client_id,
        NotificationKind.BOOKING_DECLINED.value,
        "Session request declined",
        reason or "Your mentor could not take this session.",
        booking_id=booking.id,
        user_id=actor.id,
    )
    outbox.mail("cancel", _mail_payload(booking, slot, reason=reason))
    return booking


async def cancel_booking(
    db: AsyncSession,
    outbox: Outbox,
    *,
    actor: User,
    booking_id: uuid.UUID,
    reason: Optional[str] = None,
) -> Booking:
    """Either party (or admin) cancels a pending or confirmed booking; the slot reopens."""
    booking = await _get_booking(db, booking_id)
    mentor = await _get_mentor(db, booking.mentor_id)
    party = _party(actor, booking, mentor)
    if party is None:
        raise ProcedureError("Not authorized to cancel this booking", 403, "forbidden")
    _require_status(booking, BookingStatus.PENDING, BookingStatus.CONFIRMED, action="cancel")

    prev = booking.status.value
    booking.status = BookingStatus.CANCELLED
    booking.cancellation_reason = reason
    booking.cancelled_by = party
    booking.cancelled_at = utcnow()
    await _release_slot(db, booking.slot_id)
    _log_status_change(db, booking, prev, BookingStatus.CANCELLED.value, actor, reason)
    await _commit(db)

    slot = await db.get(TimeSlot, booking.slot_id)
    counterparty = mentor.user_id if party == "client" else booking.client_id
    outbox.notify(
        counterparty,
        NotificationKind.BOOKING_CANCELLED.value,
        "Session cancelled",
        reason or "A session was cancelled.",
        booking_id=booking.id,
        user_id=actor.id,
    )
    outbox.mail("cancel", _mail_payload(booking, slot, reason=reason))
    return booking


async def reschedule_booking(
    db: AsyncSession,
    redis,
    outbox: Outbox,
    *,
    actor: User,
    booking_id: uuid.UUID,
    new_slot_id: uuid.UUID,
    reason: Optional[str] = None,
) -> Booking:
    """
    Move a pending/confirmed booking to another available slot of the same
    mentor. Claims the new slot, frees the old one, keeps the status.
    """
    booking = await _get_booking(db, booking_id)
    mentor = await _get_mentor(db, booking.mentor_id)
    party = _party(actor, booking, mentor)
    if party is None:
        raise ProcedureError("Not authorized to reschedule this booking", 403, "forbidden")
    _require_status(booking, BookingStatus.PENDING, BookingStatus.CONFIRMED, action="reschedule")
    if new_slot_id == booking.slot_id:
        raise ProcedureError("Booking is already on this slot", 400, "same_slot")

    cache = RedisCache(redis)
    owner = _lock_owner(actor)
    if not await cache.lock_slot(str(new_slot_id), owner):
        raise ProcedureError(
            "This slot is being booked by someone else. Please pick another time.",
            409,
            "slot_locked",
        )
    old_slot_id = booking.slot_id
    try:
        new_slot = await _check_bookable_slot(db, new_slot_id, mentor.id)
        if not await _claim_slot(db, new_slot_id, mentor.id):
            raise ProcedureError("Slot is no longer available", 409, "slot_unavailable")
        await _release_slot(db, old_slot_id)
        booking.slot_id = new_slot_id
        _log_status_change(
            db,
            booking,
            booking.status.value,
            booking.status.value,
            actor,
            reason,
            {"action": "reschedule", "from_slot_id": str(old_slot_id), "to_slot_id": str(new_slot_id)},
        )
        await _commit(db)
    except ProcedureError:
        await db.rollback()
        raise
    finally:
        await cache.release_slot(str(new_slot_id), owner)

    counterparty = mentor.user_id if party == "client" else booking.client_id
    outbox.notify(
        counterparty,
        NotificationKind.BOOKING_RESCHEDULED.value,
        "Session rescheduled",
        f"Moved to {as_utc(new_slot.start_at).strftime('%d %b %Y, %H:%M UTC')}.",
        booking_id=booking.id,
        user_id=actor.id,
        payload={"from_slot_id": str(old_slot_id), "to_slot_id": str(new_slot_id)},
    )
    return booking


async def _finish(
    db: AsyncSession,
    outbox: Outbox,
    *,
    actor: User,
    booking_id: uuid.UUID,
    to_status: BookingStatus,
) -> Booking:
    booking = await _get_booking(db, booking_id)
    mentor = await _get_mentor(db, booking.mentor_id)
    if _party(actor, booking, mentor) not in ("mentor", "admin"):
        raise ProcedureError("Only the mentor can close this booking", 403, "forbidden")
    _require_status(booking, BookingStatus.CONFIRMED, action=f"mark {to_status.value}")

    slot = await db.get(TimeSlot, booking.slot_id)
    if slot and as_utc(slot.start_at) > utcnow():
        raise ProcedureError("Session has not started yet", 400, "not_started")

    prev = booking.status.value
    booking.status = to_status
    booking.completed_at = utcnow()
    _log_status_change(db, booking, prev, to_status.value, actor)
    await _commit(db)

    if to_status == BookingStatus.COMPLETED:
        outbox.notify(
            booking.client_id,
            NotificationKind.BOOKING_COMPLETED.value,
            "Session completed",
            "How did it go? Leave a review for your mentor.",
            booking_id=booking.id,
            user_id=actor.id,
        )
    return booking


async def complete_booking(db: AsyncSession, outbox: Outbox, *, actor: User, booking_id: uuid.UUID) -> Booking:
    return await _finish(db, outbox, actor=actor, booking_id=booking_id, to_status=BookingStatus.COMPLETED)


async def mark_no_show(db: AsyncSession, outbox: Outbox, *, actor: User, booking_id: uuid.UUID) -> Booking:
    return await _finish(db, outbox, actor=actor, booking_id=booking_id, to_status=BookingStatus.NO_SHOW)


# ── Implicit completion ───────────────────────────────────────

def elapsed_confirmed_query(now: datetime):
    """Confirmed bookings whose slot has ended."""
    return (
        select(Booking)
        .join(TimeSlot, TimeSlot.id == Booking.slot_id)
        .where(Booking.status == BookingStatus.CONFIRMED, TimeSlot.end_at <= now)
    )


def mark_completed(booking: Booking, now: datetime) -> BookingAuditLog:
    booking.status = BookingStatus.COMPLETED
    booking.completed_at = now
    return BookingAuditLog(
        booking_id=booking.id,
        from_status=BookingStatus.CONFIRMED.value,
        to_status=BookingStatus.COMPLETED.value,
        reason="Session ended",
        audit_metadata={"action": "auto_complete"},
    )

