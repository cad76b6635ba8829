"""
webapp/booking_widget.py
Slot picker and booking action for a mentor's detail page.

The backend is the source of truth: after every booking the slot list is
re-fetched rather than patched locally.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Callable, Optional

from pydantic import BaseModel, field_validator

from config.settings import settings
from webapp.api import BackendClient, BackendError
from webapp.events import NOTIFICATIONS_UPDATED, RESUME_BOOKING, EventBus
from webapp.session import SessionProvider
from webapp.stash import ResumeBooking, ResumeStash

logger = logging.getLogger(__name__)


class Slot(BaseModel):
    id: uuid.UUID
    mentor_id: uuid.UUID
    start_at: datetime
    end_at: datetime
    available: bool

    @field_validator("start_at", "end_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class DateOption:
    day: date
    label: str
    selectable: bool


def _label(day: date, today: date) -> str:
    if day == today:
        return "Today"
    if day == today + timedelta(days=1):
        return "Tomorrow"
    return f"{day:%a, %b} {day.day}"


class BookingWidget:
    def __init__(
        self,
        mentor_id: uuid.UUID,
        client: BackendClient,
        session: SessionProvider,
        stash: ResumeStash,
        events: EventBus,
        navigate: Callable[[str], None],
        *,
        days: int = settings.BOOKING_WIDGET_DAYS,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.mentor_id = mentor_id
        self.client = client
        self.session = session
        self.stash = stash
        self.events = events
        self.navigate = navigate
        self.days = days
        self.tz = tz
        self.clock = clock

        self.slots: list[Slot] = []
        self.loading = False
        self.busy = False
        self.error: Optional[str] = None
        self.selected_date: date = clock().astimezone(tz).date()
        self.selected_slot: Optional[Slot] = None
        self.package_id: Optional[uuid.UUID] = None
        self.booking_id: Optional[uuid.UUID] = None
        self._side_effects: set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._mounted = True

    def attach(self) -> None:
        """Listen for a resumed booking dispatched after login."""
        self._mounted = True
        self._unsubscribe = self.events.on(RESUME_BOOKING, self.on_resume)

    def detach(self) -> None:
        self._mounted = False
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    async def load(self) -> None:
        self.loading = True
        try:
            rows = await self.client.list_slots(self.mentor_id, available_only=False)
            if not self._mounted:
                return
            self.slots = [Slot.model_validate(row) for row in rows]
            self.error = None
        except BackendError as e:
            if self._mounted:
                self.error = e.message or "Failed to load slots"
        finally:
            self.loading = False

    # ── Derived views ─────────────────────────────────────────

    def _day_of(self, slot: Slot) -> date:
        return slot.start_at.astimezone(self.tz).date()

    def _open_slots(self, now: datetime) -> list[Slot]:
        return [s for s in self.slots if s.available and s.start_at > now]

    def date_options(self) -> list[DateOption]:
        now = self.clock()
        today = now.astimezone(self.tz).date()
        open_days = {self._day_of(s) for s in self._open_slots(now)}
        options = []
        for i in range(self.days):
            day = today + timedelta(days=i)
            options.append(DateOption(day=day, label=_label(day, today), selectable=day in open_days))
        return options

    def slots_for(self, day: date) -> list[Slot]:
        now = self.clock()
        return sorted(
            (s for s in self._open_slots(now) if self._day_of(s) == day),
            key=lambda s: s.start_at,
        )

    # ── Selection ─────────────────────────────────────────────

    def select_date(self, day: date) -> bool:
        if not any(o.day == day and o.selectable for o in self.date_options()):
            return False
        self.selected_date = day
        self.selected_slot = None
        return True

    def select_slot(self, slot_id: uuid.UUID) -> bool:
        for slot in self.slots_for(self.selected_date):
            if slot.id == slot_id:
                self.selected_slot = slot
                return True
        return False

    async def on_resume(self, action: ResumeBooking) -> None:
        if action.mentor_id != self.mentor_id:
            return
        if action.package_id:
            self.package_id = action.package_id
        if not action.slot_id:
            return
        if not self.slots:
            await self.load()
        for slot in self.slots:
            if slot.id == action.slot_id and slot.available:
                self.selected_date = self._day_of(slot)
                self.selected_slot = slot
                return

    # ── Booking ───────────────────────────────────────────────

    async def book(self) -> Optional[uuid.UUID]:
        """
        Book the selected slot. Signed-out callers get their intent stashed
        and are sent to login; returns the new booking id otherwise.
        """
        slot = self.selected_slot
        if slot is None or self.busy:
            return None

        user = await self.session.get_current_user()
        if user is None:
            self.stash.put(
                ResumeBooking(mentor_id=self.mentor_id, slot_id=slot.id, package_id=self.package_id),
                return_url=f"/mentors/{self.mentor_id}?tab=availability",
            )
            self.navigate("/login")
            return None

        self.busy = True
        self.error = None
        try:
            booking_id = await self.client.rpc(
                "book_slot",
                mentor_id=self.mentor_id,
                slot_id=slot.id,
                mentee_name=user.name,
                mentee_email=user.email,
                user_id=user.id,
                package_id=self.package_id,
            )
        except BackendError as e:
            logger.info(f"book_slot failed for slot {slot.id}: {e.message}")
            self.error = e.message or "Booking failed. Please try again."
            return None
        finally:
            self.busy = False

        self.booking_id = uuid.UUID(booking_id)
        self.selected_slot = None
        await self.load()
        self._dispatch(
            NOTIFICATIONS_UPDATED,
            {"booking_id": booking_id, "slot_id": str(slot.id), "mentor_id": str(self.mentor_id)},
        )
        return self.booking_id

    def _dispatch(self, event: str, detail: dict) -> None:
        """Detached: the booking is already done whatever listeners do."""
        task = asyncio.create_task(self.events.emit(event, detail))
        self._side_effects.add(task)
        task.add_done_callback(self._side_effects.discard)

    async def settle(self) -> None:
        """Wait for detached side effects (tests, teardown)."""
        if self._side_effects:
            await asyncio.gather(*self._side_effects, return_exceptions=True)
