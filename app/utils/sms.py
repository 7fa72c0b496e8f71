import logging

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from app.utils.errors import TransportError
from app.utils.phone import mask
from config import settings

_LOGGER = logging.getLogger(__name__)

_client = None


def _get_client():
    global _client
    if _client is None:
        _client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
    return _client


def send_sms(to: str, body: str) -> str | None:
    """Send one SMS and return the provider message SID."""
    if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_FROM_NUMBER):
        _LOGGER.info("[SMS] DEV mode: would send to %s: %s", mask(to), body)
        return None
    try:
        message = _get_client().messages.create(
            from_=settings.TWILIO_FROM_NUMBER, to=to, body=body
        )
    except TwilioException as exc:
        raise TransportError(f"twilio: {exc}") from exc
    return message.sid
