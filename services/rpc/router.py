"""
services/rpc/router.py
Named procedure surface: POST /rpc/{name} with `_`-prefixed parameters.
Returns the procedure's scalar result (id, boolean, or null) as JSON.
Failures come back as {"message": ..., "code": ...}.
"""

import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.booking import lifecycle
from services.mentor import applications
from services.notification.outbox import Outbox
from shared.middleware.auth import get_optional_user
from shared.models.models import User, UserRole

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rpc", tags=["RPC"])


# ── Parameter models ──────────────────────────────────────────

class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid")


class BookSlotParams(_Params):
    mentor_id: uuid.UUID = Field(alias="_mentor_id")
    slot_id: uuid.UUID = Field(alias="_slot_id")
    mentee_name: Optional[str] = Field(None, alias="_mentee_name")
    mentee_email: Optional[EmailStr] = Field(None, alias="_mentee_email")
    user_id: Optional[uuid.UUID] = Field(None, alias="_user_id")
    package_id: Optional[uuid.UUID] = Field(None, alias="_package_id")


class ConfirmParams(_Params):
    booking_id: uuid.UUID = Field(alias="_booking_id")
    user_id: Optional[uuid.UUID] = Field(None, alias="_user_id")


class ReasonParams(_Params):
    booking_id: uuid.UUID = Field(alias="_booking_id")
    reason: Optional[str] = Field(None, alias="_reason", max_length=500)


class RescheduleParams(ReasonParams):
    new_slot_id: uuid.UUID = Field(alias="_new_slot_id")


class SetVerifiedParams(_Params):
    profile_id: uuid.UUID = Field(alias="_profile_id")
    verified: bool = Field(alias="_verified")


class MentorApplicationParams(_Params):
    user_id: Optional[uuid.UUID] = Field(None, alias="_user_id")
    email: EmailStr = Field(alias="_email")
    name: Optional[str] = Field(None, alias="_name")
    phone: Optional[str] = Field(None, alias="_phone")
    linkedin_url: Optional[str] = Field(None, alias="_linkedin_url")
    total_experience: Optional[int] = Field(None, alias="_total_experience", ge=0, le=70)
    current_designation: Optional[str] = Field(None, alias="_current_designation")
    experiences: list[dict] = Field(default_factory=list, alias="_experiences")
    specialties: list[str] = Field(default_factory=list, alias="_specialties")
    resume_path: Optional[str] = Field(None, alias="_resume_path")


class EmailParams(_Params):
    email: EmailStr = Field(alias="_email")


class LinkMentorParams(_Params):
    user_id: uuid.UUID = Field(alias="_user_id")
    email: EmailStr = Field(alias="_email")


# ── Helpers ───────────────────────────────────────────────────

def _require_user(user: Optional[User]) -> User:
    if user is None:
        raise lifecycle.ProcedureError("Authentication required", 401, "unauthorized")
    return user


def _check_acting_user(user: User, claimed: Optional[uuid.UUID]) -> None:
    """`_user_id`, when supplied, must be the caller (admins may act for others)."""
    if claimed is not None and claimed != user.id and user.role != UserRole.ADMIN:
        raise lifecycle.ProcedureError("_user_id does not match the signed-in user", 403, "forbidden")


Handler = Callable[..., Awaitable[Any]]


async def _book_slot(p: BookSlotParams, user, db, redis, outbox) -> str:
    user = _require_user(user)
    _check_acting_user(user, p.user_id)
    booking = await lifecycle.book_slot(
        db, redis, outbox,
        actor=user,
        mentor_id=p.mentor_id,
        slot_id=p.slot_id,
        mentee_name=p.mentee_name,
        mentee_email=p.mentee_email,
        package_id=p.package_id,
    )
    return str(booking.id)


async def _confirm_booking(p: ConfirmParams, user, db, redis, outbox) -> str:
    user = _require_user(user)
    _check_acting_user(user, p.user_id)
    booking = await lifecycle.confirm_booking(db, outbox, actor=user, booking_id=p.booking_id)
    return str(booking.id)


async def _decline_booking(p: ReasonParams, user, db, redis, outbox) -> str:
    booking = await lifecycle.decline_booking(
        db, outbox, actor=_require_user(user), booking_id=p.booking_id, reason=p.reason
    )
    return str(booking.id)


async def _cancel_booking(p: ReasonParams, user, db, redis, outbox) -> str:
    booking = await lifecycle.cancel_booking(
        db, outbox, actor=_require_user(user), booking_id=p.booking_id, reason=p.reason
    )
    return str(booking.id)


async def _reschedule_booking(p: RescheduleParams, user, db, redis, outbox) -> str:
    booking = await lifecycle.reschedule_booking(
        db, redis, outbox,
        actor=_require_user(user),
        booking_id=p.booking_id,
        new_slot_id=p.new_slot_id,
        reason=p.reason,
    )
    return str(booking.id)


async def _admin_set_verified(p: SetVerifiedParams, user, db, redis, outbox) -> None:
    user = _require_user(user)
    if user.role != UserRole.ADMIN:
        raise lifecycle.ProcedureError("Admin access required", 403, "forbidden")
    await applications.set_profile_verified(db, p.profile_id, p.verified)
    await db.commit()
    return None


async def _save_mentor_application(p: MentorApplicationParams, user, db, redis, outbox) -> str:
    if p.user_id is not None:
        _check_acting_user(_require_user(user), p.user_id)
    mentor = await applications.save_mentor_application(
        db,
        user_id=p.user_id,
        email=p.email,
        name=p.name,
        phone=p.phone,
        linkedin_url=p.linkedin_url,
        total_experience=p.total_experience,
        current_designation=p.current_designation,
        experiences=p.experiences,
        specialties=p.specialties,
        resume_path=p.resume_path,
    )
    await db.commit()
    return str(mentor.id)


async def _email_exists(p: EmailParams, user, db, redis, outbox) -> bool:
    count = await db.scalar(
        select(func.count(User.id)).where(func.lower(User.email) == p.email.lower())
    )
    return bool(count)


async def _link_user_to_single_mentor(p: LinkMentorParams, user, db, redis, outbox) -> Optional[str]:
    user = _require_user(user)
    _check_acting_user(user, p.user_id)
    mentor = await applications.link_user_to_single_mentor(db, p.user_id, p.email)
    await db.commit()
    return str(mentor.id) if mentor else None


PROCEDURES: dict[str, tuple[type[_Params], Handler]] = {
    "book_slot": (BookSlotParams, _book_slot),
    "confirm_booking": (ConfirmParams, _confirm_booking),
    "decline_booking": (ReasonParams, _decline_booking),
    "cancel_booking": (ReasonParams, _cancel_booking),
    "reschedule_booking": (RescheduleParams, _reschedule_booking),
    "admin_set_verified": (SetVerifiedParams, _admin_set_verified),
    "save_mentor_application": (MentorApplicationParams, _save_mentor_application),
    "email_exists": (EmailParams, _email_exists),
    "link_user_to_single_mentor": (LinkMentorParams, _link_user_to_single_mentor),
}


# ── Endpoint ──────────────────────────────────────────────────

@router.post("/{name}", summary="Invoke a named procedure")
async def call_procedure(
    name: str,
    params: dict[str, Any] = Body(default_factory=dict),
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    entry = PROCEDURES.get(name)
    if entry is None:
        raise lifecycle.ProcedureError(f"Unknown procedure: {name}", 404, "unknown_procedure")
    model, handler = entry

    try:
        parsed = model.model_validate(params)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise lifecycle.ProcedureError(f"Invalid parameters: {fields}", 422, "invalid_params")

    outbox = Outbox()
    result = await handler(parsed, current_user, db, redis, outbox)
    await outbox.flush(db, redis)
    logger.info(f"rpc {name} by {current_user.id if current_user else 'anon'}")
    return result
