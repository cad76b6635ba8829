"""
webapp/session.py
Session provider: who is signed in, and who wants to know when that changes.

Gates and widgets receive a SessionProvider rather than reaching for a
module-level client. Tokens live in the per-tab storage mapping.
"""

import asyncio
import inspect
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, MutableMapping, Optional

from pydantic import BaseModel

from config.settings import settings
from webapp.api import BackendClient, BackendError

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "aw.accessToken"
REFRESH_TOKEN_KEY = "aw.refreshToken"

# Everything the app caches per tab; cleared on logout
APP_KEYS = (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    "aw.currentUser",
    "currentMentorId",
    "postAuthRedirect",
    "aw.postAuthAction",
)


SessionListener = Callable[[Optional["SessionUser"]], Any]


class SessionUser(BaseModel):
    id: uuid.UUID
    email: str
    role: str
    name: Optional[str] = None


class SessionProvider(ABC):
    def __init__(self):
        self._listeners: list[SessionListener] = []

    @abstractmethod
    async def get_current_user(self) -> Optional[SessionUser]:
        ...

    def on_change(self, callback: SessionListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _notify(self, user: Optional[SessionUser]) -> None:
        for callback in list(self._listeners):
            result = callback(user)
            if inspect.isawaitable(result):
                await result


class ApiSessionProvider(SessionProvider):
    """Session backed by /auth/* with tokens kept in tab storage."""

    def __init__(
        self,
        client: BackendClient,
        storage: MutableMapping[str, str],
        logout_timeout: float = settings.LOGOUT_TIMEOUT_SECONDS,
    ):
        super().__init__()
        self.client = client
        self.storage = storage
        self.logout_timeout = logout_timeout
        self._user: Optional[SessionUser] = None
        self._signing_out = False

    async def get_current_user(self) -> Optional[SessionUser]:
        if self._user is None and self.storage.get(ACCESS_TOKEN_KEY):
            await self.restore()
        return self._user

    async def restore(self) -> Optional[SessionUser]:
        """Rebuild the session from stored tokens after a page load."""
        token = self.storage.get(ACCESS_TOKEN_KEY)
        if not token:
            return None
        self.client.set_token(token)
        try:
            self._user = SessionUser.model_validate(await self.client.me())
        except BackendError as e:
            logger.info(f"Stored session rejected: {e.message}")
            self._forget()
        return self._user

    async def login(self, email: str, password: str) -> SessionUser:
        body = await self.client.login(email, password)
        return await self._establish(body)

    async def signup(self, email: str, password: str, name: Optional[str] = None, role: str = "client") -> SessionUser:
        body = await self.client.signup(email, password, name=name, role=role)
        return await self._establish(body)

    async def _establish(self, body: dict) -> SessionUser:
        self.storage[ACCESS_TOKEN_KEY] = body["access_token"]
        self.storage[REFRESH_TOKEN_KEY] = body["refresh_token"]
        self.client.set_token(body["access_token"])
        self._user = SessionUser.model_validate(body["user"])
        await self._notify(self._user)
        return self._user

    async def logout(self) -> None:
        """
        Sign out remotely, but never wait longer than `logout_timeout`:
        storage is cleared and listeners are told either way.
        """
        if self._signing_out:
            return
        self._signing_out = True
        try:
            await asyncio.wait_for(
                self.client.logout(self.storage.get(REFRESH_TOKEN_KEY)),
                timeout=self.logout_timeout,
            )
        except (asyncio.TimeoutError, BackendError) as e:
            logger.info(f"Remote sign-out did not finish cleanly: {e}")
        finally:
            self._forget()
            self._signing_out = False
        await self._notify(None)

    def _forget(self) -> None:
        for key in APP_KEYS:
            self.storage.pop(key, None)
        self.client.set_token(None)
        self._user = None
