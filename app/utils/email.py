import logging

import requests

from app.utils.errors import TransportError
from app.utils.phone import mask
from config import settings

_LOGGER = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


def send_email(to: str, subject: str, html_body: str) -> None:
    if not settings.SENDGRID_API_KEY:
        _LOGGER.info("[EMAIL] DEV mode: would send %r to %s", subject, mask(to))
        return
    payload = {
        "personalizations": [{"to": [{"email": to}]}],
        "from": {"email": settings.EMAIL_FROM},
        "subject": subject,
        "content": [{"type": "text/html", "value": html_body}],
    }
    try:
        resp = requests.post(
            SENDGRID_URL,
            json=payload,
            headers={"Authorization": f"Bearer {settings.SENDGRID_API_KEY}"},
            timeout=settings.EMAIL_TIMEOUT,
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise TransportError(f"sendgrid: {exc}") from exc
