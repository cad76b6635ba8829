"""
tests/test_webapp.py
Client-side flows: session provider, resume stash, auth and mentor gates,
post-auth resume, booking widget and review form. Talks to the real app
over ASGITransport where a backend is needed.
"""

import asyncio
import json
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from main import app
from shared.models.models import ApplicationStatus, Mentor, TimeSlot, User
from tests.conftest import TEST_PASSWORD, make_mentor
from webapp.api import BackendClient, BackendError
from webapp.booking_widget import BookingWidget, Slot
from webapp.events import NOTIFICATIONS_UPDATED, RESUME_BOOKING, EventBus
from webapp.gates import (
    APPLY_URL,
    MENTOR_DASHBOARD_URL,
    ApprovalState,
    AuthGate,
    AuthState,
    GateFallback,
    LoginChoice,
    MentorGate,
    PostAuthResumer,
    safe_return_url,
)
from webapp.review_form import ReviewForm
from webapp.session import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, ApiSessionProvider, SessionProvider, SessionUser
from webapp.stash import ACTION_KEY, REDIRECT_KEY, ResumeBooking, ResumeStash, parse_action


class FakeSession(SessionProvider):
    def __init__(self, user: Optional[SessionUser] = None):
        super().__init__()
        self.user = user

    async def get_current_user(self) -> Optional[SessionUser]:
        return self.user

    async def sign_in(self, user: SessionUser) -> None:
        self.user = user
        await self._notify(user)

    async def sign_out(self) -> None:
        self.user = None
        await self._notify(None)


class FakeApprovalClient:
    def __init__(self, status: Optional[str] = None, error: Optional[BackendError] = None):
        self.status = status
        self.error = error
        self.calls = 0

    async def approval_status(self) -> dict:
        self.calls += 1
        if self.error:
            raise self.error
        return {"status": self.status}


def _session_user(role: str = "client") -> SessionUser:
    return SessionUser(id=uuid.uuid4(), email="someone@example.com", role=role, name="Someone")


@pytest_asyncio.fixture
async def backend(client: AsyncClient):
    """BackendClient wired to the app under test (shares the client fixture's overrides)."""
    async with BackendClient("http://test", transport=ASGITransport(app=app)) as api:
        yield api


# ── Resume stash ───────────────────────────────────────────────

def test_stash_is_consumed_exactly_once():
    storage: dict = {}
    stash = ResumeStash(storage)
    action = ResumeBooking(mentor_id=uuid.uuid4(), slot_id=uuid.uuid4())
    stash.put(action, return_url="/mentors/x?tab=availability")

    first = stash.consume()
    assert first.action == action
    assert first.return_url == "/mentors/x?tab=availability"

    second = stash.consume()
    assert second.action is None and second.return_url is None
    assert storage == {}


def test_stash_put_overwrites_previous_intent():
    stash = ResumeStash({})
    stash.put(ResumeBooking(mentor_id=uuid.uuid4()))
    latest = ResumeBooking(mentor_id=uuid.uuid4())
    stash.put(latest)
    assert stash.consume_action() == latest


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        json.dumps(["resume_booking"]),
        json.dumps({"type": "launch_rockets"}),
        json.dumps({"type": "resume_booking", "mentor_id": "not-a-uuid"}),
    ],
)
def test_unparseable_actions_are_discarded(raw: str):
    assert parse_action(raw) is None
    storage = {ACTION_KEY: raw}
    assert ResumeStash(storage).consume_action() is None
    assert ACTION_KEY not in storage


@pytest.mark.parametrize(
    "url, expected",
    [
        ("/mentors/1?tab=availability", "/mentors/1?tab=availability"),
        ("//evil.example.com", None),
        ("https://evil.example.com", None),
        ("/login?mode=signin", None),
        ("/auth/callback", None),
        (None, None),
    ],
)
def test_safe_return_url(url, expected):
    assert safe_return_url(url) == expected


# ── Auth gate ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_auth_gate_authorizes_signed_in_user():
    gate = AuthGate(FakeSession(_session_user()), ResumeStash({}), "/dashboard", lambda url: None)
    assert gate.render(lambda: "page") is None

    assert await gate.resolve() == AuthState.AUTHORIZED
    assert gate.render(lambda: "page") == "page"


@pytest.mark.asyncio
async def test_auth_gate_redirects_then_follows_sign_in():
    session = FakeSession()
    storage: dict = {}
    visited = []
    gate = AuthGate(session, ResumeStash(storage), "/dashboard", visited.append)

    assert await gate.resolve() == AuthState.REDIRECT_TO_LOGIN
    assert storage[REDIRECT_KEY] == "/dashboard"
    assert isinstance(gate.render(lambda: "page"), LoginChoice)

    await session.sign_in(_session_user())
    assert gate.state == AuthState.AUTHORIZED
    assert visited == ["/dashboard"]
    assert gate.render(lambda: "page") == "page"

    # Resolved gates never go back to checking
    await session.sign_out()
    assert await gate.resolve() == AuthState.AUTHORIZED


# ── Mentor gate ────────────────────────────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, expected",
    [
        ("approved", ApprovalState.APPROVED),
        ("pending", ApprovalState.PENDING),
        ("rejected", ApprovalState.PENDING),
        ("none", ApprovalState.NONE),
    ],
)
async def test_mentor_gate_branches_on_status(status: str, expected: ApprovalState):
    gate = MentorGate(FakeSession(_session_user("mentor")), FakeApprovalClient(status), lambda url: None)
    assert await gate.start() == expected

    rendered = gate.render(lambda: "dashboard")
    if expected == ApprovalState.APPROVED:
        assert rendered == "dashboard"
    else:
        assert isinstance(rendered, GateFallback)
        assert "refresh" in rendered.actions


@pytest.mark.asyncio
async def test_mentor_gate_offers_apply_without_application():
    gate = MentorGate(FakeSession(_session_user()), FakeApprovalClient("none"), lambda url: None)
    await gate.start()
    fallback = gate.render(lambda: "dashboard")
    assert fallback.actions == ("apply", "refresh")
    assert fallback.apply_url == APPLY_URL


@pytest.mark.asyncio
async def test_mentor_gate_reports_errors():
    client = FakeApprovalClient(error=BackendError("Service unavailable", 503))
    gate = MentorGate(FakeSession(_session_user("mentor")), client, lambda url: None)
    assert await gate.start() == ApprovalState.ERROR
    assert gate.render(lambda: "dashboard").message == "Service unavailable"


@pytest.mark.asyncio
async def test_mentor_gate_reacts_to_session_changes():
    session = FakeSession(_session_user("mentor"))
    client = FakeApprovalClient("pending")
    visited = []
    gate = MentorGate(session, client, visited.append)
    await gate.start()

    client.status = "approved"
    await session.sign_in(_session_user("mentor"))
    assert gate.state == ApprovalState.APPROVED
    assert client.calls == 2

    await session.sign_out()
    assert gate.state == ApprovalState.NONE
    assert visited == ["/"]

    gate.close()
    await session.sign_in(_session_user("mentor"))
    assert client.calls == 2


class HeldApprovalClient:
    """Answers approval_status only once released."""

    def __init__(self, status: str):
        self.status = status
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def approval_status(self) -> dict:
        self.started.set()
        await self.release.wait()
        return {"status": self.status}


@pytest.mark.asyncio
async def test_mentor_gate_drops_approval_arriving_after_sign_out():
    session = FakeSession(_session_user("mentor"))
    client = HeldApprovalClient("approved")
    visited = []
    gate = MentorGate(session, client, visited.append)

    lookup = asyncio.create_task(gate.start())
    await client.started.wait()
    await session.sign_out()
    assert gate.state == ApprovalState.NONE
    assert visited == ["/"]

    client.release.set()
    await lookup
    assert gate.state == ApprovalState.NONE
    assert isinstance(gate.render(lambda: "dashboard"), GateFallback)


@pytest.mark.asyncio
async def test_closed_mentor_gate_keeps_late_result_out():
    client = HeldApprovalClient("approved")
    gate = MentorGate(FakeSession(_session_user("mentor")), client, lambda url: None)

    lookup = asyncio.create_task(gate.start())
    await client.started.wait()
    gate.close()
    client.release.set()
    await lookup
    assert gate.render(lambda: "dashboard") is None


# ── Post-auth resume ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_resumer_replays_booking_once():
    stash = ResumeStash({})
    events = EventBus()
    received = []
    events.on(RESUME_BOOKING, received.append)
    visited = []
    action = ResumeBooking(mentor_id=uuid.uuid4(), slot_id=uuid.uuid4())
    stash.put(action, return_url=f"/mentors/{action.mentor_id}?tab=availability")

    resumer = PostAuthResumer(stash, events, visited.append)
    await resumer.resume(_session_user())
    assert visited == [f"/mentors/{action.mentor_id}?tab=availability"]
    assert received == [action]

    await resumer.resume(_session_user())
    assert received == [action]
    assert visited[-1] == "/mentors"


@pytest.mark.asyncio
async def test_resumer_defaults_by_role_and_ignores_unsafe_urls():
    stash = ResumeStash({})
    visited = []
    resumer = PostAuthResumer(stash, EventBus(), visited.append)

    await resumer.resume(_session_user("admin"))
    stash.put_redirect("//evil.example.com")
    await resumer.resume(_session_user())
    stash.put_redirect("/bookings")
    await resumer.resume(_session_user())
    assert visited == ["/admin", "/mentors", "/bookings"]


@pytest.mark.asyncio
async def test_resumer_sends_approved_mentor_to_dashboard():
    stash = ResumeStash({})
    stash.put_redirect("/bookings")
    visited = []
    resumer = PostAuthResumer(stash, EventBus(), visited.append, FakeApprovalClient("approved"))

    assert await resumer.resume(_session_user("mentor")) == MENTOR_DASHBOARD_URL
    assert visited == [MENTOR_DASHBOARD_URL]
    assert resumer.notice is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "client",
    [FakeApprovalClient("pending"), FakeApprovalClient(error=BackendError("Service unavailable", 503))],
)
async def test_resumer_tells_unapproved_mentor_application_is_pending(client):
    visited = []
    resumer = PostAuthResumer(ResumeStash({}), EventBus(), visited.append, client)

    assert await resumer.resume(_session_user("mentor")) == "/mentors"
    assert resumer.notice.startswith("Application pending")
    assert client.calls == 1


@pytest.mark.asyncio
async def test_resumer_skips_approval_lookup_for_clients():
    client = FakeApprovalClient("approved")
    visited = []
    resumer = PostAuthResumer(ResumeStash({}), EventBus(), visited.append, client)

    assert await resumer.resume(_session_user("client")) == "/mentors"
    assert client.calls == 0
    assert resumer.notice is None


@pytest.mark.asyncio
async def test_event_bus_isolates_failing_listeners():
    events = EventBus()
    seen = []

    def broken(detail):
        raise RuntimeError("boom")

    events.on(NOTIFICATIONS_UPDATED, broken)
    unsubscribe = events.on(NOTIFICATIONS_UPDATED, seen.append)
    await events.emit(NOTIFICATIONS_UPDATED, {"n": 1})
    unsubscribe()
    await events.emit(NOTIFICATIONS_UPDATED, {"n": 2})
    assert seen == [{"n": 1}]


# ── Session provider ───────────────────────────────────────────

class HangingLogoutClient:
    def __init__(self):
        self.token = "set"

    def set_token(self, token):
        self.token = token

    async def logout(self, refresh_token=None):
        await asyncio.sleep(5)


@pytest.mark.asyncio
async def test_logout_finishes_locally_when_remote_hangs():
    storage = {ACCESS_TOKEN_KEY: "a", REFRESH_TOKEN_KEY: "r", "currentMentorId": "m", "unrelated": "keep"}
    api = HangingLogoutClient()
    session = ApiSessionProvider(api, storage, logout_timeout=0.05)
    changes = []
    session.on_change(changes.append)

    await asyncio.wait_for(session.logout(), timeout=1)
    assert storage == {"unrelated": "keep"}
    assert api.token is None
    assert changes == [None]


@pytest.mark.asyncio
async def test_session_login_restore_and_logout(backend: BackendClient, user: User):
    storage: dict = {}
    session = ApiSessionProvider(backend, storage)
    signed_in = await session.login(user.email, TEST_PASSWORD)
    assert signed_in.id == user.id
    assert storage[ACCESS_TOKEN_KEY] and storage[REFRESH_TOKEN_KEY]
    stale_token = storage[ACCESS_TOKEN_KEY]

    # A fresh tab with the same storage rebuilds the session
    restored = ApiSessionProvider(backend, dict(storage))
    assert (await restored.get_current_user()).email == user.email

    await session.logout()
    assert storage == {}

    # The revoked token no longer restores anything
    replay_storage = {ACCESS_TOKEN_KEY: stale_token}
    replay = ApiSessionProvider(backend, replay_storage)
    assert await replay.get_current_user() is None
    assert replay_storage == {}


@pytest.mark.asyncio
async def test_backend_error_carries_message_and_code(backend: BackendClient, user: User):
    with pytest.raises(BackendError) as exc:
        await backend.rpc("no_such_thing")
    assert exc.value.status_code == 404
    assert exc.value.code == "unknown_procedure"

    with pytest.raises(BackendError) as exc:
        await backend.login(user.email, "wrong")
    assert exc.value.status_code == 401
    assert exc.value.message


# ── Booking widget ─────────────────────────────────────────────

def _slot(start: datetime, available: bool = True) -> Slot:
    return Slot(id=uuid.uuid4(), mentor_id=uuid.uuid4(), start_at=start, end_at=start + timedelta(hours=1), available=available)


def test_date_options_only_select_days_with_future_open_slots():
    now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    widget = BookingWidget(
        uuid.uuid4(), None, FakeSession(), ResumeStash({}), EventBus(), lambda url: None, clock=lambda: now
    )
    widget.slots = [
        _slot(datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)),
        _slot(datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc)),
        _slot(datetime(2026, 3, 4, 9, 0, tzinfo=timezone.utc), available=False),
    ]

    options = widget.date_options()
    assert len(options) == 7
    assert [(o.label, o.selectable) for o in options[:3]] == [
        ("Today", False),
        ("Tomorrow", True),
        ("Wed, Mar 4", False),
    ]
    assert widget.select_date(date(2026, 3, 4)) is False
    assert widget.select_date(date(2026, 3, 3)) is True
    assert len(widget.slots_for(date(2026, 3, 3))) == 1


@pytest_asyncio.fixture
async def signed_in(backend: BackendClient, user: User) -> ApiSessionProvider:
    session = ApiSessionProvider(backend, {})
    await session.login(user.email, TEST_PASSWORD)
    return session


def _widget(mentor: Mentor, backend: BackendClient, session: SessionProvider, **kwargs) -> BookingWidget:
    return BookingWidget(
        mentor.id,
        backend,
        session,
        kwargs.pop("stash", ResumeStash({})),
        kwargs.pop("events", EventBus()),
        kwargs.pop("navigate", lambda url: None),
        **kwargs,
    )


class HeldSlotsClient:
    def __init__(self, rows: list[dict]):
        self.rows = rows
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def list_slots(self, mentor_id, available_only: bool = True) -> list[dict]:
        self.started.set()
        await self.release.wait()
        return self.rows


@pytest.mark.asyncio
async def test_detached_widget_ignores_late_slot_list():
    mentor_id = uuid.uuid4()
    start = datetime.now(timezone.utc) + timedelta(days=1)
    row = {
        "id": str(uuid.uuid4()),
        "mentor_id": str(mentor_id),
        "start_at": start.isoformat(),
        "end_at": (start + timedelta(hours=1)).isoformat(),
        "available": True,
    }
    client = HeldSlotsClient([row])
    widget = BookingWidget(mentor_id, client, FakeSession(), ResumeStash({}), EventBus(), lambda url: None)
    widget.attach()

    loading = asyncio.create_task(widget.load())
    await client.started.wait()
    widget.detach()
    client.release.set()
    await loading

    assert widget.slots == []
    assert widget.loading is False


@pytest.mark.asyncio
async def test_widget_books_and_refreshes_from_backend(
    backend: BackendClient, signed_in: ApiSessionProvider, mentor: Mentor, slots: list[TimeSlot]
):
    events = EventBus()
    updates = []
    events.on(NOTIFICATIONS_UPDATED, updates.append)
    widget = _widget(mentor, backend, signed_in, events=events)
    await widget.load()

    target = slots[0]
    assert widget.select_date(target.start_at.date())
    assert widget.select_slot(target.id)
    booking_id = await widget.book()
    await widget.settle()

    assert booking_id is not None
    assert widget.selected_slot is None
    assert target.id not in {s.id for s in widget.slots_for(target.start_at.date())}
    assert updates == [{"booking_id": str(booking_id), "slot_id": str(target.id), "mentor_id": str(mentor.id)}]


@pytest.mark.asyncio
async def test_two_widgets_racing_for_one_slot(
    backend: BackendClient, signed_in: ApiSessionProvider, db, other_user: User, mentor: Mentor, slots: list[TimeSlot]
):
    async with BackendClient("http://test", transport=ASGITransport(app=app)) as rival_api:
        rival_session = ApiSessionProvider(rival_api, {})
        await rival_session.login(other_user.email, TEST_PASSWORD)

        mine, theirs = _widget(mentor, backend, signed_in), _widget(mentor, rival_api, rival_session)
        for widget in (mine, theirs):
            await widget.load()
            widget.select_date(slots[0].start_at.date())
            widget.select_slot(slots[0].id)

        assert await mine.book() is not None
        assert await theirs.book() is None
        assert theirs.error
        assert theirs.booking_id is None


@pytest.mark.asyncio
async def test_signed_out_booking_is_stashed_and_resumed(
    backend: BackendClient, mentor: Mentor, slots: list[TimeSlot], user: User
):
    storage: dict = {}
    stash = ResumeStash(storage)
    events = EventBus()
    visited = []
    session = ApiSessionProvider(backend, storage)
    widget = _widget(mentor, backend, session, stash=stash, events=events, navigate=visited.append)
    widget.attach()
    await widget.load()
    widget.select_date(slots[1].start_at.date())
    widget.select_slot(slots[1].id)

    assert await widget.book() is None
    assert visited == ["/login"]
    assert json.loads(storage[ACTION_KEY])["slot_id"] == str(slots[1].id)

    # The user logs in; the widget is re-rendered with nothing selected
    widget.selected_slot = None
    signed_in = await session.login(user.email, TEST_PASSWORD)
    await PostAuthResumer(stash, events, visited.append).resume(signed_in)

    assert visited[-1] == f"/mentors/{mentor.id}?tab=availability"
    assert widget.selected_slot.id == slots[1].id
    assert await widget.book() is not None
    widget.detach()


@pytest.mark.asyncio
async def test_unapproved_mentor_cannot_be_booked(
    backend: BackendClient, signed_in: ApiSessionProvider, db, other_user: User
):
    pending = await make_mentor(db, other_user, status=ApplicationStatus.PENDING)
    start = datetime.now(timezone.utc) + timedelta(days=1)
    slot = TimeSlot(mentor_id=pending.id, start_at=start, end_at=start + timedelta(hours=1))
    db.add(slot)
    await db.commit()

    with pytest.raises(BackendError) as exc:
        await backend.rpc("book_slot", mentor_id=pending.id, slot_id=slot.id)
    assert exc.value.code == "mentor_not_approved"


# ── Review form ────────────────────────────────────────────────

class RecordingReviewClient:
    def __init__(self, exists: bool = False, error: Optional[BackendError] = None):
        self.exists = exists
        self.error = error
        self.created = []

    async def review_exists(self, booking_id) -> bool:
        return self.exists

    async def create_review(self, booking_id, rating, comment) -> dict:
        if self.error:
            raise self.error
        self.created.append((booking_id, rating, comment))
        return {}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "rating, comment, message",
    [
        (0, "Great", "Please select a rating (1-5)."),
        (6, "Great", "Please select a rating (1-5)."),
        (True, "Great", "Please select a rating (1-5)."),
        (4, "   ", "Please write a short review."),
    ],
)
async def test_review_form_validates_before_any_request(rating, comment, message):
    api = RecordingReviewClient()
    form = ReviewForm(api, uuid.uuid4())
    form.rating, form.comment = rating, comment
    assert await form.submit() is False
    assert form.error == message
    assert api.created == []


@pytest.mark.asyncio
async def test_review_form_submits_once_and_hides():
    api = RecordingReviewClient()
    submitted = []
    booking_id = uuid.uuid4()
    form = ReviewForm(api, booking_id, on_submitted=lambda: submitted.append(True))
    form.rating, form.comment = 5, "  Very helpful  "
    assert await form.submit() is True
    assert api.created == [(booking_id, 5, "Very helpful")]
    assert form.visible is False
    assert submitted == [True]


@pytest.mark.asyncio
async def test_review_form_hidden_when_review_exists_and_surfaces_errors():
    form = ReviewForm(RecordingReviewClient(exists=True), uuid.uuid4())
    await form.load()
    assert form.visible is False

    failing = ReviewForm(RecordingReviewClient(error=BackendError("Already reviewed", 409)), uuid.uuid4())
    failing.rating, failing.comment = 3, "ok"
    assert await failing.submit() is False
    assert failing.error == "Already reviewed"
    assert failing.visible is True
