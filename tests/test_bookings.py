"""
tests/test_bookings.py
Booking lifecycle over the REST surface:
book → confirm/decline → complete/no-show, with cancel and reschedule.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache
from services.booking.lifecycle import ProcedureError, _commit
from shared.models.models import (
    ApplicationStatus,
    Booking,
    BookingStatus,
    Mentor,
    Notification,
    TimeSlot,
    User,
    UserRole,
)
from tests.conftest import auth_headers


async def _slot(db: AsyncSession, slot_id) -> TimeSlot:
    return await db.get(TimeSlot, slot_id, populate_existing=True)


async def _book(client: AsyncClient, user: User, mentor: Mentor, slot: TimeSlot) -> dict:
    response = await client.post(
        "/bookings",
        headers=auth_headers(user),
        json={"mentor_id": str(mentor.id), "slot_id": str(slot.id)},
    )
    assert response.status_code == 201, response.text
    return response.json()


async def _past_confirmed_booking(db: AsyncSession, mentor: Mentor, client_user: User) -> Booking:
    start = datetime.now(timezone.utc) - timedelta(hours=3)
    slot = TimeSlot(mentor_id=mentor.id, start_at=start, end_at=start + timedelta(hours=1), available=False)
    db.add(slot)
    await db.flush()
    booking = Booking(
        mentor_id=mentor.id,
        client_id=client_user.id,
        slot_id=slot.id,
        status=BookingStatus.CONFIRMED,
        mentee_email=client_user.email,
    )
    db.add(booking)
    await db.commit()
    return booking


# ── Booking Creation ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_book_slot_creates_pending_booking_and_takes_slot(
    client: AsyncClient, db: AsyncSession, user: User, mentor: Mentor, slots: list, mail_outbox: list
):
    data = await _book(client, user, mentor, slots[0])
    assert data["status"] == BookingStatus.PENDING.value
    assert data["client_id"] == str(user.id)
    assert data["mentee_email"] == user.email
    assert data["mentee_name"] == "Casey Client"
    assert data["mentor_name"] == "Morgan Mentor"

    assert (await _slot(db, slots[0].id)).available is False

    notification = await db.scalar(select(Notification).where(Notification.recipient_id == mentor.user_id))
    assert notification.kind == "booking.action_required"
    assert [mode for mode, _ in mail_outbox] == ["book"]
    assert mail_outbox[0][1]["mentorEmail"] == "mentor@example.com"


@pytest.mark.asyncio
async def test_second_booking_of_same_slot_fails_without_new_row(
    client: AsyncClient, db: AsyncSession, user: User, other_user: User, mentor: Mentor, slots: list
):
    await _book(client, user, mentor, slots[0])

    response = await client.post(
        "/bookings",
        headers=auth_headers(other_user),
        json={"mentor_id": str(mentor.id), "slot_id": str(slots[0].id)},
    )
    assert response.status_code == 409
    assert response.json()["code"] == "slot_unavailable"

    count = await db.scalar(select(func.count(Booking.id)).where(Booking.slot_id == slots[0].id))
    assert count == 1


@pytest.mark.asyncio
async def test_slot_claimed_in_redis_is_refused(
    client: AsyncClient, redis, user: User, mentor: Mentor, slots: list
):
    """A concurrent request holding the slot claim makes the second caller back off."""
    await redis.set(f"slot_lock:{slots[0].id}", "someone-else", ex=30)

    response = await client.post(
        "/bookings",
        headers=auth_headers(user),
        json={"mentor_id": str(mentor.id), "slot_id": str(slots[0].id)},
    )
    assert response.status_code == 409
    assert response.json()["code"] == "slot_locked"


@pytest.mark.asyncio
async def test_unique_live_booking_per_slot_enforced_by_database(
    client: AsyncClient, db: AsyncSession, user: User, other_user: User, mentor: Mentor, slots: list
):
    """Even with the slot still flagged available, a second live booking is rejected."""
    db.add(Booking(
        mentor_id=mentor.id,
        client_id=other_user.id,
        slot_id=slots[0].id,
        status=BookingStatus.PENDING,
        mentee_email=other_user.email,
    ))
    await db.commit()

    response = await client.post(
        "/bookings",
        headers=auth_headers(user),
        json={"mentor_id": str(mentor.id), "slot_id": str(slots[0].id)},
    )
    assert response.status_code == 409

    count = await db.scalar(select(func.count(Booking.id)).where(Booking.slot_id == slots[0].id))
    assert count == 1


@pytest.mark.asyncio
async def test_cannot_book_slot_of_another_mentor(
    client: AsyncClient, db: AsyncSession, user: User, mentor: Mentor, slots: list
):
    other = Mentor(applicant_email="x@example.com", application_status=ApplicationStatus.APPROVED)
    db.add(other)
    await db.commit()

    response = await client.post(
        "/bookings",
        headers=auth_headers(user),
        json={"mentor_id": str(other.id), "slot_id": str(slots[0].id)},
    )
    assert response.status_code == 404
    assert (await _slot(db, slots[0].id)).available is True


@pytest.mark.asyncio
async def test_cannot_book_own_session(client: AsyncClient, mentor_user: User, mentor: Mentor, slots: list):
    response = await client.post(
        "/bookings",
        headers=auth_headers(mentor_user),
        json={"mentor_id": str(mentor.id), "slot_id": str(slots[0].id)},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "self_booking"


@pytest.mark.asyncio
async def test_booking_requires_auth(client: AsyncClient, mentor: Mentor, slots: list):
    response = await client.post("/bookings", json={"mentor_id": str(mentor.id), "slot_id": str(slots[0].id)})
    assert response.status_code == 401


# ── Mentor decisions ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_mentor_confirms_pending_booking(
    client: AsyncClient, db: AsyncSession, user: User, mentor_user: User, mentor: Mentor, slots: list,
    mail_outbox: list,
):
    booking = await _book(client, user, mentor, slots[0])
    response = await client.post(f"/bookings/{booking['id']}/confirm", headers=auth_headers(mentor_user))
    assert response.status_code == 200
    assert response.json()["status"] == BookingStatus.CONFIRMED.value
    assert response.json()["confirmed_at"] is not None
    assert "confirm" in [mode for mode, _ in mail_outbox]

    again = await client.post(f"/bookings/{booking['id']}/confirm", headers=auth_headers(mentor_user))
    assert again.status_code == 400
    assert again.json()["code"] == "invalid_state"


@pytest.mark.asyncio
async def test_client_cannot_confirm(client: AsyncClient, user: User, mentor: Mentor, slots: list):
    booking = await _book(client, user, mentor, slots[0])
    response = await client.post(f"/bookings/{booking['id']}/confirm", headers=auth_headers(user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_decline_with_reason_cancels_and_reopens_slot(
    client: AsyncClient, db: AsyncSession, user: User, mentor_user: User, mentor: Mentor, slots: list
):
    booking = await _book(client, user, mentor, slots[0])
    assert (await _slot(db, slots[0].id)).available is False

    response = await client.post(
        f"/bookings/{booking['id']}/decline",
        headers=auth_headers(mentor_user),
        json={"reason": "Travelling that day"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == BookingStatus.CANCELLED.value
    assert data["cancellation_reason"] == "Travelling that day"
    assert data["cancelled_by"] == "mentor"

    assert (await _slot(db, slots[0].id)).available is True

    # The freed slot can be booked again
    rebook = await _book(client, user, mentor, slots[0])
    assert rebook["status"] == BookingStatus.PENDING.value


# ── Cancel / Reschedule ────────────────────────────────────────

@pytest.mark.asyncio
async def test_client_cancels_confirmed_booking(
    client: AsyncClient, db: AsyncSession, user: User, mentor_user: User, mentor: Mentor, slots: list
):
    booking = await _book(client, user, mentor, slots[0])
    await client.post(f"/bookings/{booking['id']}/confirm", headers=auth_headers(mentor_user))

    response = await client.post(
        f"/bookings/{booking['id']}/cancel", headers=auth_headers(user), json={"reason": "Conflict"}
    )
    assert response.status_code == 200
    assert response.json()["cancelled_by"] == "client"
    assert (await _slot(db, slots[0].id)).available is True

    notification = await db.scalar(
        select(Notification).where(
            Notification.recipient_id == mentor_user.id, Notification.kind == "booking.cancelled"
        )
    )
    assert notification is not None


@pytest.mark.asyncio
async def test_stranger_cannot_cancel(
    client: AsyncClient, user: User, other_user: User, mentor: Mentor, slots: list
):
    booking = await _book(client, user, mentor, slots[0])
    response = await client.post(f"/bookings/{booking['id']}/cancel", headers=auth_headers(other_user), json={})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_reschedule_moves_booking_between_slots(
    client: AsyncClient, db: AsyncSession, user: User, mentor: Mentor, slots: list
):
    booking = await _book(client, user, mentor, slots[0])

    response = await client.post(
        f"/bookings/{booking['id']}/reschedule",
        headers=auth_headers(user),
        json={"new_slot_id": str(slots[1].id)},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["slot_id"] == str(slots[1].id)
    assert data["status"] == BookingStatus.PENDING.value

    assert (await _slot(db, slots[0].id)).available is True
    assert (await _slot(db, slots[1].id)).available is False


@pytest.mark.asyncio
async def test_reschedule_to_taken_slot_changes_nothing(
    client: AsyncClient, db: AsyncSession, user: User, other_user: User, mentor: Mentor, slots: list
):
    mine = await _book(client, user, mentor, slots[0])
    await _book(client, other_user, mentor, slots[1])

    response = await client.post(
        f"/bookings/{mine['id']}/reschedule",
        headers=auth_headers(user),
        json={"new_slot_id": str(slots[1].id)},
    )
    assert response.status_code == 409

    booking = await db.get(Booking, uuid.UUID(mine["id"]), populate_existing=True)
    assert str(booking.slot_id) == str(slots[0].id)
    assert (await _slot(db, slots[0].id)).available is False


# ── Completion ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_complete_before_start_is_refused(
    client: AsyncClient, user: User, mentor_user: User, mentor: Mentor, slots: list
):
    booking = await _book(client, user, mentor, slots[0])
    await client.post(f"/bookings/{booking['id']}/confirm", headers=auth_headers(mentor_user))

    response = await client.post(f"/bookings/{booking['id']}/complete", headers=auth_headers(mentor_user))
    assert response.status_code == 400
    assert response.json()["code"] == "not_started"


@pytest.mark.asyncio
async def test_mentor_marks_past_session_completed_or_no_show(
    client: AsyncClient, db: AsyncSession, user: User, mentor_user: User, mentor: Mentor
):
    first = await _past_confirmed_booking(db, mentor, user)
    second = await _past_confirmed_booking(db, mentor, user)

    done = await client.post(f"/bookings/{first.id}/complete", headers=auth_headers(mentor_user))
    assert done.status_code == 200
    assert done.json()["status"] == BookingStatus.COMPLETED.value

    missed = await client.post(f"/bookings/{second.id}/no-show", headers=auth_headers(mentor_user))
    assert missed.status_code == 200
    assert missed.json()["status"] == BookingStatus.NO_SHOW.value


# ── Reads ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_and_audit_trail(
    client: AsyncClient, user: User, mentor_user: User, other_user: User, mentor: Mentor, slots: list
):
    booking = await _book(client, user, mentor, slots[0])
    await client.post(f"/bookings/{booking['id']}/confirm", headers=auth_headers(mentor_user))

    mine = await client.get("/bookings", headers=auth_headers(user))
    assert [b["id"] for b in mine.json()] == [booking["id"]]

    mentor_view = await client.get("/bookings?status=confirmed", headers=auth_headers(mentor_user))
    assert [b["id"] for b in mentor_view.json()] == [booking["id"]]

    audit = await client.get(f"/bookings/{booking['id']}/audit", headers=auth_headers(user))
    assert [(a["from_status"], a["to_status"]) for a in audit.json()] == [
        (None, "pending"),
        ("pending", "confirmed"),
    ]

    hidden = await client.get(f"/bookings/{booking['id']}", headers=auth_headers(other_user))
    assert hidden.status_code == 403


@pytest.mark.asyncio
async def test_invalid_status_filter_returns_400(client: AsyncClient, user: User):
    response = await client.get("/bookings?status=teleported", headers=auth_headers(user))
    assert response.status_code == 400



# ── Constraints and slot claims ────────────────────────────────

@pytest.mark.asyncio
async def test_second_live_booking_on_slot_is_a_slot_conflict(
    db: AsyncSession, user: User, other_user: User, mentor: Mentor, slots: list
):
    for client_user in (user, other_user):
        db.add(Booking(
            mentor_id=mentor.id,
            client_id=client_user.id,
            slot_id=slots[0].id,
            status=BookingStatus.PENDING,
            mentee_email=client_user.email,
        ))
    with pytest.raises(ProcedureError) as exc:
        await _commit(db)
    assert exc.value.status_code == 409
    assert exc.value.code == "slot_unavailable"


@pytest.mark.asyncio
async def test_unrelated_constraint_failures_propagate(db: AsyncSession, user: User):
    db.add(User(email=user.email, role=UserRole.CLIENT))
    with pytest.raises(IntegrityError):
        await _commit(db)


@pytest.mark.asyncio
async def test_slot_claim_release_only_drops_own_claim(redis):
    cache = RedisCache(redis)
    assert await cache.lock_slot("slot-1", "first") is True
    assert await cache.lock_slot("slot-1", "second") is False

    # First claim expires and a second request takes the slot
    await redis.delete("slot_lock:slot-1")
    assert await cache.lock_slot("slot-1", "second") is True

    assert await cache.release_slot("slot-1", "first") is False
    assert await redis.get("slot_lock:slot-1") == "second"

    assert await cache.release_slot("slot-1", "second") is True
    assert await redis.get("slot_lock:slot-1") is None
