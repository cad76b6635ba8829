"""
services/email/router.py
Mail side channel.
- /api/send-email sends one message synchronously through Microsoft Graph.
- /functions/{name} validates a mode payload and hands it to Celery.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pybreaker import CircuitBreakerError
from starlette.concurrency import run_in_threadpool

from services.notification.outbox import enqueue_mail
from shared.middleware.auth import get_current_user
from shared.models.models import User
from shared.schemas.schemas import MailFunctionRequest, SendEmailRequest
from shared.utils.graph_mail import MailNotConfigured, MailSendError, send_mail
from tasks.notification_tasks import missing_fields

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Email"])

# Which modes each relay function accepts; the first is the default
FUNCTION_MODES = {
    "send-email": ("book", "confirm", "cancel"),
    "mentor-invite": ("mentor-invite",),
    "client-signup-mails": ("client-signup",),
}


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/api/send-email")
async def send_email(data: SendEmailRequest, current_user: User = Depends(get_current_user)):
    if not data.to or not data.subject or not data.htmlBody:
        return _error("Missing required fields: to, subject, htmlBody", 400)
    try:
        await run_in_threadpool(send_mail, data.to, data.subject, data.htmlBody)
    except (MailNotConfigured, MailSendError, CircuitBreakerError) as e:
        logger.warning(f"send-email to {data.to} failed: {e}")
        return _error(str(e) or "Failed to send email", 500)
    return {"message": "Email sent successfully"}


@router.post("/functions/{name}")
async def mail_function(
    name: str,
    data: MailFunctionRequest,
    current_user: User = Depends(get_current_user),
):
    """Fire-and-forget; the booking or signup that triggered it never waits."""
    modes = FUNCTION_MODES.get(name)
    if modes is None:
        return _error(f"Unknown function: {name}", 404)

    mode = data.mode or modes[0]
    if mode not in modes:
        return _error(f"invalid mode for {name}: {mode}", 400)

    payload = data.model_dump(exclude_none=True, exclude={"mode"})
    missing = missing_fields(mode, payload)
    if missing:
        return _error(f"{', '.join(missing)} required for mode={mode}", 400)

    enqueue_mail(mode, payload)
    return {"ok": True}
