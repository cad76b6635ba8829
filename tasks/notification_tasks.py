"""
tasks/notification_tasks.py
Celery tasks for transactional email through Microsoft Graph.

Mail is fire-and-forget: callers enqueue with `.delay` and never wait.
Payloads carry resolved addresses, so the worker needs no database access.

Usage from a route:
    from tasks.notification_tasks import send_mode_mail
    send_mode_mail.delay("confirm", {"menteeEmail": "...", "bookingId": "..."})
"""

import logging
from html import escape

from pybreaker import CircuitBreakerError

from config.settings import settings
from shared.utils.graph_mail import MailNotConfigured, MailSendError, send_mail
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


MAIL_MODES = ("book", "confirm", "cancel", "client-signup", "mentor-invite")
# Queued by the API only, never accepted from the relay endpoints
ACCOUNT_MODES = ("password-reset",)

# Fields a caller must supply per mode
REQUIRED_FIELDS = {
    "book": ("mentorEmail", "menteeEmail", "bookingId"),
    "confirm": ("menteeEmail", "bookingId"),
    "cancel": ("menteeEmail", "bookingId"),
    "client-signup": ("email",),
    "mentor-invite": ("email",),
    "password-reset": ("email", "resetUrl"),
}


def missing_fields(mode: str, payload: dict) -> list[str]:
    return [f for f in REQUIRED_FIELDS.get(mode, ()) if not payload.get(f)]


# ── Templates ──────────────────────────────────────────────────────────────────

TEMPLATES = {
    "BOOK_CLIENT": {
        "subject": "Session Booking request ",
        "body": (
            "<p>Hi {menteeName},</p>"
            "<p>Your session booking request has been sent successfully. "
            "Please wait for confirmation from your mentor.</p>"
        ),
    },
    "BOOK_MENTOR": {
        "subject": "New Session Booking Request",
        "body": (
            "<p>{menteeName} ({menteeEmail}) has booked a session with you{when}.</p>"
            "<p>Please confirm or decline the request using this link:<br/>"
            "<a href=\"{confirmUrl}\">{confirmUrl}</a></p>"
        ),
    },
    "CONFIRM": {
        "subject": "Session Confirmed",
        "body": "<p>Your session{when} has been confirmed by your mentor.</p>",
    },
    "CANCEL": {
        "subject": "Session Cancelled",
        "body": (
            "<p>Unfortunately, your session{when} has been cancelled.</p>"
            "<p>{reason}</p>"
        ),
    },
    "CLIENT_SIGNUP": {
        "subject": "Confirm your account",
        "body": (
            "<p>Hi {name}, please confirm your email to finish creating your account.</p>"
            "<p><a href=\"{confirmUrl}\">Confirm my email</a></p>"
            "<p>If the button doesn't work, copy and paste this link:</p>"
            "<p>{confirmUrl}</p>"
        ),
    },
    "MENTOR_INVITE": {
        "subject": "Welcome to Mentor Platform",
        "body": "<p>Please set your password to get started: <a href=\"{inviteUrl}\">{inviteUrl}</a></p>",
    },
    "PASSWORD_RESET": {
        "subject": "Reset your password",
        "body": (
            "<p>We received a request to reset your password.</p>"
            "<p><a href=\"{resetUrl}\">Choose a new password</a></p>"
            "<p>If you did not ask for this, you can ignore this email.</p>"
        ),
    },
}


def _render(template: str, **kwargs) -> str:
    """Simple string template renderer; values are HTML-escaped."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", escape(str(value)))
    return template


def _when(payload: dict) -> str:
    return f" on {payload['startAt']}" if payload.get("startAt") else ""


def build_messages(mode: str, payload: dict) -> list[tuple[str, str, str]]:
    """
    Turn a mode + payload into (to, subject, html) tuples.
    Raises ValueError for an unknown mode or missing required fields.
    """
    if mode not in MAIL_MODES + ACCOUNT_MODES:
        raise ValueError(f"invalid mode: {mode}")
    missing = missing_fields(mode, payload)
    if missing:
        raise ValueError(f"{', '.join(missing)} required for mode={mode}")

    when = _when(payload)
    mentee_name = payload.get("menteeName") or payload.get("menteeEmail")

    if mode == "book":
        sep = "&" if "?" in settings.MENTOR_DASHBOARD_URL else "?"
        confirm_url = f"{settings.MENTOR_DASHBOARD_URL}{sep}bookingId={payload['bookingId']}"
        client, mentor = TEMPLATES["BOOK_CLIENT"], TEMPLATES["BOOK_MENTOR"]
        return [
            (payload["menteeEmail"], client["subject"], _render(client["body"], menteeName=mentee_name)),
            (
                payload["mentorEmail"],
                mentor["subject"],
                _render(
                    mentor["body"],
                    menteeName=mentee_name,
                    menteeEmail=payload["menteeEmail"],
                    confirmUrl=confirm_url,
                    when=when,
                ),
            ),
        ]
    if mode == "confirm":
        tmpl = TEMPLATES["CONFIRM"]
        return [(payload["menteeEmail"], tmpl["subject"], _render(tmpl["body"], when=when))]
    if mode == "cancel":
        tmpl = TEMPLATES["CANCEL"]
        reason = f"Reason: {payload['reason']}" if payload.get("reason") else ""
        return [(payload["menteeEmail"], tmpl["subject"], _render(tmpl["body"], when=when, reason=reason))]
    if mode == "client-signup":
        tmpl = TEMPLATES["CLIENT_SIGNUP"]
        confirm_url = payload.get("confirmUrl") or f"{settings.FRONTEND_URL}/login"
        return [(
            payload["email"],
            tmpl["subject"],
            _render(tmpl["body"], name=payload.get("name") or "there", confirmUrl=confirm_url),
        )]

    if mode == "password-reset":
        tmpl = TEMPLATES["PASSWORD_RESET"]
        return [(payload["email"], tmpl["subject"], _render(tmpl["body"], resetUrl=payload["resetUrl"]))]

    tmpl = TEMPLATES["MENTOR_INVITE"]
    invite_url = payload.get("inviteUrl") or settings.SET_PASSWORD_URL
    return [(payload["email"], tmpl["subject"], _render(tmpl["body"], inviteUrl=invite_url))]


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_email(self, to_email: str, subject: str, html_body: str):
    """Send a single transactional email; retried with backoff on Graph errors."""
    try:
        send_mail(to_email, subject, html_body)
    except MailNotConfigured:
        logger.warning(f"Mail to {to_email} skipped: Graph mail is not configured")
    except (MailSendError, CircuitBreakerError) as e:
        logger.warning(f"Email send failed for {to_email}: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


@celery_app.task
def send_mode_mail(mode: str, payload: dict):
    """
    Expand a booking/account mail mode into individual messages.
    Invalid payloads are logged and dropped.
    """
    try:
        messages = build_messages(mode, payload)
    except ValueError as e:
        logger.warning(f"send_mode_mail({mode}) dropped: {e}")
        return 0

    for to_email, subject, html_body in messages:
        send_email.delay(to_email, subject, html_body)
    logger.info(f"Queued {len(messages)} '{mode}' mail(s)")
    return len(messages)
