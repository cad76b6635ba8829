"""
webapp/api.py
Typed HTTP client for the marketplace API.

`rpc(name, **params)` adds the `_` prefix the procedure surface expects.
Every non-2xx answer or transport failure raises BackendError carrying the
server's `message` (RPC), `detail` (REST) or `error` (mail relay).
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class BackendError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(message)


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _error_message(response: httpx.Response) -> tuple[str, Optional[str]]:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or body.get("detail")
        if isinstance(message, list):
            # FastAPI validation errors
            message = "; ".join(str(item.get("msg", item)) for item in message)
        return str(message or response.reason_phrase), body.get("code")
    return str(body), None


class BackendClient:
    """Thin wrapper over httpx.AsyncClient. One instance per tab/session."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self.access_token: Optional[str] = None

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def set_token(self, access_token: Optional[str]) -> None:
        self.access_token = access_token

    async def request(self, method: str, path: str, *, json: Any = None, params: Optional[dict] = None) -> Any:
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        if params:
            params = {k: _jsonable(v) for k, v in params.items() if v is not None}
        try:
            response = await self._http.request(
                method,
                path,
                json=_jsonable(json) if json is not None else None,
                params=params,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise BackendError(f"Network error: {e}") from e

        if response.status_code >= 400:
            message, code = _error_message(response)
            raise BackendError(message, response.status_code, code)
        if not response.content:
            return None
        return response.json()

    # ── Procedures ────────────────────────────────────────────

    async def rpc(self, name: str, **params: Any) -> Any:
        body = {f"_{key}": value for key, value in params.items() if value is not None}
        return await self.request("POST", f"/rpc/{name}", json=body)

    # ── Auth ──────────────────────────────────────────────────

    async def signup(self, email: str, password: str, name: Optional[str] = None, role: str = "client") -> dict:
        return await self.request(
            "POST", "/auth/signup", json={"email": email, "password": password, "name": name, "role": role}
        )

    async def login(self, email: str, password: str) -> dict:
        return await self.request("POST", "/auth/login", json={"email": email, "password": password})

    async def logout(self, refresh_token: Optional[str] = None) -> None:
        await self.request("POST", "/auth/logout", json={"refresh_token": refresh_token})

    async def me(self) -> dict:
        return await self.request("GET", "/auth/me")

    # ── Mentors & slots ───────────────────────────────────────

    async def list_mentors(self, specialty: Optional[str] = None) -> list[dict]:
        return await self.request("GET", "/mentors", params={"specialty": specialty})

    async def get_mentor(self, mentor_id: uuid.UUID) -> dict:
        return await self.request("GET", f"/mentors/{mentor_id}")

    async def list_slots(self, mentor_id: uuid.UUID, *, available_only: bool = True) -> list[dict]:
        return await self.request(
            "GET", f"/mentors/{mentor_id}/slots", params={"available_only": str(available_only).lower()}
        )

    async def approval_status(self) -> dict:
        return await self.request("GET", "/mentors/me/approval-status")

    # ── Reviews ───────────────────────────────────────────────

    async def review_exists(self, booking_id: uuid.UUID) -> bool:
        body = await self.request("GET", f"/reviews/booking/{booking_id}/exists")
        return bool(body and body.get("exists"))

    async def create_review(self, booking_id: uuid.UUID, rating: int, comment: str) -> dict:
        return await self.request(
            "POST", "/reviews", json={"booking_id": booking_id, "rating": rating, "comment": comment}
        )

    # ── Notifications ─────────────────────────────────────────

    async def list_notifications(self, *, unread_only: bool = False, limit: int = 50) -> list[dict]:
        return await self.request(
            "GET", "/notifications", params={"unread_only": str(unread_only).lower(), "limit": limit}
        )

    async def unread_count(self) -> int:
        body = await self.request("GET", "/notifications/unread-count")
        return int(body["count"])
