"""
shared/utils/graph_mail.py
Outbound mail through Microsoft Graph `sendMail` using the OAuth2
client-credentials grant. Synchronous (httpx.Client) so it can run inside
Celery workers; async callers go through run_in_threadpool.
"""

import logging

import httpx

from config.settings import settings
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"


class MailNotConfigured(RuntimeError):
    """Raised when Graph credentials are missing."""


class MailSendError(RuntimeError):
    """Raised when Graph rejects a token or sendMail request."""


def _fetch_token(client: httpx.Client) -> str:
    response = client.post(
        settings.GRAPH_TOKEN_URL.format(tenant=settings.TENANT_ID),
        data={
            "client_id": settings.CLIENT_ID,
            "client_secret": settings.CLIENT_SECRET,
            "scope": GRAPH_SCOPE,
            "grant_type": "client_credentials",
        },
    )
    if response.status_code != 200:
        raise MailSendError(f"Token request failed ({response.status_code}): {response.text}")
    token = response.json().get("access_token")
    if not token:
        raise MailSendError("Token response missing access_token")
    return token


def _post_message(to: str, subject: str, html_body: str) -> None:
    try:
        _send(to, subject, html_body)
    except httpx.HTTPError as e:
        raise MailSendError(f"Graph request failed: {e}") from e


def _send(to: str, subject: str, html_body: str) -> None:
    with httpx.Client(timeout=settings.GRAPH_TIMEOUT_SECONDS) as client:
        token = _fetch_token(client)
        response = client.post(
            f"{settings.GRAPH_BASE_URL}/users/{settings.SENDER_EMAIL}/sendMail",
            headers={"Authorization": f"Bearer {token}"},
            json={
                "message": {
                    "subject": subject,
                    "body": {"contentType": "HTML", "content": html_body},
                    "toRecipients": [{"emailAddress": {"address": to}}],
                },
                "saveToSentItems": True,
            },
        )
        # Graph answers 202 Accepted on success
        if response.status_code not in (200, 202):
            raise MailSendError(f"sendMail failed ({response.status_code}): {response.text}")


def send_mail(to: str, subject: str, html_body: str) -> None:
    """
    Send one HTML message. Raises MailNotConfigured, MailSendError, or
    pybreaker.CircuitBreakerError when Graph has been failing.
    """
    if not settings.mail_configured:
        raise MailNotConfigured("Microsoft Graph mail credentials are not configured")
    breaker = circuit_breaker_manager.get_breaker("graph_mail")
    breaker.call(_post_message, to, subject, html_body)
    logger.info(f"Mail sent to {to}: {subject!r}")
