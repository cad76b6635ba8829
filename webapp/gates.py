"""
webapp/gates.py
View-model gates in front of protected pages.

- AuthGate: checking → authorized | redirect_to_login. Never both, and
  never back to checking once resolved.
- MentorGate: resolves the caller's mentor application and branches on it,
  re-evaluating on every session change.
- PostAuthResumer: sends approved mentors to their dashboard, otherwise
  replays a stashed intent exactly once after login.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar, Union

from webapp.api import BackendClient, BackendError
from webapp.events import RESUME_BOOKING, EventBus
from webapp.session import SessionProvider, SessionUser
from webapp.stash import ResumeBooking, ResumeStash

logger = logging.getLogger(__name__)

T = TypeVar("T")
Navigate = Callable[[str], None]

LOGIN_URL = "/login?mode=signin"
SIGNUP_URL = "/login?mode=signup"
APPLY_URL = "/become-mentor"
MENTOR_DASHBOARD_URL = "/dashboard/mentor"

# Never bounce back into one-shot auth pages
_UNSAFE_RETURN_PREFIXES = ("/auth/", "/login")


def safe_return_url(url: Optional[str]) -> Optional[str]:
    if not url or not url.startswith("/") or url.startswith("//"):
        return None
    if url.startswith(_UNSAFE_RETURN_PREFIXES):
        return None
    return url


# ── Auth gate ─────────────────────────────────────────────────

class AuthState(str, Enum):
    CHECKING = "checking"
    AUTHORIZED = "authorized"
    REDIRECT_TO_LOGIN = "redirect_to_login"


@dataclass(frozen=True)
class LoginChoice:
    message: str = "Please login or create an account to continue."
    login_url: str = LOGIN_URL
    signup_url: str = SIGNUP_URL


class AuthGate:
    def __init__(self, session: SessionProvider, stash: ResumeStash, here: str, navigate: Navigate):
        self.session = session
        self.stash = stash
        self.here = here
        self.navigate = navigate
        self.state = AuthState.CHECKING
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def resolve(self) -> AuthState:
        if self.state != AuthState.CHECKING:
            return self.state
        user = await self.session.get_current_user()
        if user is not None:
            self.state = AuthState.AUTHORIZED
            return self.state

        self.stash.put_redirect(self.here)
        self.state = AuthState.REDIRECT_TO_LOGIN
        self._unsubscribe = self.session.on_change(self._on_session_change)
        return self.state

    def _on_session_change(self, user: Optional[SessionUser]) -> None:
        if user is None or self.state != AuthState.REDIRECT_TO_LOGIN:
            return
        # Signed in from this tab: continue in place
        self.state = AuthState.AUTHORIZED
        self.close()
        self.navigate(self.here)

    def render(self, children: Callable[[], T]) -> Union[T, LoginChoice, None]:
        if self.state == AuthState.AUTHORIZED:
            return children()
        if self.state == AuthState.REDIRECT_TO_LOGIN:
            return LoginChoice()
        return None

    def close(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None


# ── Mentor approval gate ──────────────────────────────────────

class ApprovalState(str, Enum):
    CHECKING = "checking"
    APPROVED = "approved"
    PENDING = "pending"
    NONE = "none"
    ERROR = "error"


@dataclass(frozen=True)
class GateFallback:
    state: ApprovalState
    message: str
    actions: tuple[str, ...]
    apply_url: Optional[str] = None


class MentorGate:
    def __init__(self, session: SessionProvider, client: BackendClient, navigate: Navigate):
        self.session = session
        self.client = client
        self.navigate = navigate
        self.state = ApprovalState.CHECKING
        self.message = ""
        self._unsubscribe: Optional[Callable[[], None]] = None
        # Bumped on every refresh, sign-out and close; late lookups compare against it
        self._generation = 0

    async def start(self) -> ApprovalState:
        """Evaluate now and again on every sign-in or sign-out."""
        self._unsubscribe = self.session.on_change(self._on_session_change)
        return await self.refresh()

    async def _on_session_change(self, user: Optional[SessionUser]) -> None:
        if user is None:
            self._signed_out()
            return
        await self.refresh()

    def _signed_out(self) -> None:
        self._generation += 1
        self.state = ApprovalState.NONE
        self.message = ""
        self.navigate("/")

    async def refresh(self) -> ApprovalState:
        self._generation += 1
        generation = self._generation
        self.state = ApprovalState.CHECKING
        user = await self.session.get_current_user()
        if generation != self._generation:
            return self.state
        if user is None:
            self._signed_out()
            return self.state

        try:
            body = await self.client.approval_status()
        except BackendError as e:
            if generation == self._generation:
                self.state = ApprovalState.ERROR
                self.message = e.message or "Something went wrong while checking your status."
            return self.state

        if generation != self._generation:
            logger.info("Discarding approval status that arrived after a session change")
            return self.state

        status = body.get("status")
        if status == "approved":
            self.state = ApprovalState.APPROVED
            self.message = ""
        elif status == "none":
            self.state = ApprovalState.NONE
            self.message = "You haven't started a mentor application yet."
        elif status == "rejected":
            self.state = ApprovalState.PENDING
            self.message = "Your mentor application was not approved."
        else:
            self.state = ApprovalState.PENDING
            self.message = "Your mentor application is pending admin approval."
        return self.state

    def render(self, children: Callable[[], T]) -> Union[T, GateFallback, None]:
        if self.state == ApprovalState.CHECKING:
            return None
        if self.state == ApprovalState.APPROVED:
            return children()
        if self.state == ApprovalState.NONE:
            return GateFallback(self.state, self.message, ("apply", "refresh"), APPLY_URL)
        return GateFallback(self.state, self.message, ("refresh",))

    def close(self) -> None:
        self._generation += 1
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None


# ── Post-auth resume ──────────────────────────────────────────

class PostAuthResumer:
    """
    Runs once after a successful login or signup.

    Approved mentors go straight to their dashboard. Everyone else replays a
    stashed booking if there is one, then falls back to the stashed return
    URL or a role default.
    """

    def __init__(
        self,
        stash: ResumeStash,
        events: EventBus,
        navigate: Navigate,
        client: Optional[BackendClient] = None,
    ):
        self.stash = stash
        self.events = events
        self.navigate = navigate
        self.client = client
        self.notice: Optional[str] = None

    async def _mentor_approved(self) -> bool:
        if self.client is None:
            return False
        try:
            body = await self.client.approval_status()
        except BackendError as e:
            # Lookup failures fall through to normal routing
            logger.info(f"Approval lookup after login failed: {e.message}")
            return False
        return body.get("status") == "approved"

    async def resume(self, user: SessionUser) -> str:
        self.notice = None
        if user.role == "mentor" and await self._mentor_approved():
            self.navigate(MENTOR_DASHBOARD_URL)
            return MENTOR_DASHBOARD_URL

        stashed = self.stash.consume()
        action = stashed.action
        back = safe_return_url(stashed.return_url)

        if isinstance(action, ResumeBooking):
            target = back or f"/book/{action.mentor_id}"
            self.navigate(target)
            await self.events.emit(RESUME_BOOKING, action)
            logger.info(f"Resumed booking for mentor {action.mentor_id}")
            return target

        if user.role == "admin":
            target = "/admin"
        elif back:
            target = back
        else:
            if user.role == "mentor":
                self.notice = "Application pending. We'll notify you once approved."
            target = "/mentors"
        self.navigate(target)
        return target
