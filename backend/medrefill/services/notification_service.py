"""
Patient notification service.

Implements the ``notify(recipient, kind, payload) -> bool`` contract used by
the refill workflow and the reminder sweep.  Messages are rendered from one
template per kind and delivered through the configured backend:

- ``log``:    write the rendered message to the application log (development)
- ``twilio``: send an SMS through Twilio, retrying transient failures

``notify`` never raises.  Any failure (unknown kind, missing payload field,
bad phone number, transport error) is logged and reported as ``False`` so
callers can treat delivery as best-effort.
"""

import asyncio
import enum
import logging
import re
from functools import lru_cache

from medrefill.config import get_settings

logger = logging.getLogger(__name__)

# Strict E.164 format: + followed by 1-15 digits, starting with non-zero
_E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
_LOCAL_PHONE_PATTERN = re.compile(r"^\d{10}$")


class NotificationKind(str, enum.Enum):
    REFILL_REMINDER = "refill-reminder"
    MEDICINE_FILLED = "medicine-filled"
    MEDICINE_DISPATCHED = "medicine-dispatched"
    ACCOUNT_VERIFIED = "account-verified"
    REJECTION = "rejection"
    REGISTRATION = "registration"
    PASSWORD_RESET = "password-reset"


TEMPLATES: dict[NotificationKind, str] = {
    NotificationKind.REFILL_REMINDER: (
        "Hi {patient_name}, your medicines for prescription #{prescription_id} "
        "will run out around {refill_date}. Request a refill soon.\n{medicine_list}"
    ),
    NotificationKind.MEDICINE_FILLED: (
        "Hi {patient_name}, your medicines for prescription #{prescription_id} "
        "were filled on {fill_date}.\n{medicine_list}\nNext refill: {refill_date}"
    ),
    NotificationKind.MEDICINE_DISPATCHED: (
        "Hi {patient_name}, your medicines for prescription #{prescription_id} "
        "were dispatched on {dispatch_date}.\n{medicine_list}\nDelivering to:\n{delivery_address}"
    ),
    NotificationKind.ACCOUNT_VERIFIED: (
        "Hi {patient_name}, your account has been verified. You can now upload prescriptions."
    ),
    NotificationKind.REJECTION: (
        "Hi {patient_name}, your request for prescription #{prescription_id} "
        "was rejected. Reason: {reason}"
    ),
    NotificationKind.REGISTRATION: (
        "Welcome {patient_name}! Your registration is complete."
    ),
    NotificationKind.PASSWORD_RESET: (
        "Use this link to reset your password: {reset_link}"
    ),
}


def render(kind: NotificationKind, payload: dict) -> str:
    """Render the template for ``kind``.  Raises KeyError on a missing field."""
    return TEMPLATES[kind].format(**payload)


def normalize_phone(phone: str | None, country_code: str) -> str | None:
    """Return an E.164 number, prefixing 10-digit local numbers with
    ``country_code``.  Returns None when the input cannot be normalised.
    """
    if not phone:
        return None
    cleaned = re.sub(r"[\s\-()]", "", phone)
    if _E164_PATTERN.match(cleaned):
        return cleaned
    if _LOCAL_PHONE_PATTERN.match(cleaned):
        candidate = f"{country_code}{cleaned}"
        if _E164_PATTERN.match(candidate):
            return candidate
    return None


# Cache Twilio Client instances keyed by (account_sid, auth_token).
@lru_cache(maxsize=4)
def _get_twilio_client(account_sid: str, auth_token: str):
    from twilio.rest import Client
    return Client(account_sid, auth_token)


async def _send_via_twilio(to_number: str, body: str, max_retries: int = 3) -> bool:
    """Send one SMS with retry and exponential back-off (1s, 2s, ...).

    4xx errors other than 429 are permanent and are not retried.
    """
    from twilio.base.exceptions import TwilioRestException

    settings = get_settings()
    if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN:
        logger.error("notify: Twilio credentials are not configured")
        return False
    if not _E164_PATTERN.match(settings.TWILIO_FROM_NUMBER or ""):
        logger.error("notify: invalid TWILIO_FROM_NUMBER %r", settings.TWILIO_FROM_NUMBER)
        return False

    client = _get_twilio_client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)

    for attempt in range(1, max_retries + 1):
        try:
            # Twilio's SDK is synchronous, run in a thread to keep the loop free
            message = await asyncio.to_thread(
                client.messages.create,
                to=to_number,
                from_=settings.TWILIO_FROM_NUMBER,
                body=body,
            )
            logger.info("SMS sent: SID=%s, to=%s (attempt %d)", message.sid, to_number, attempt)
            return True
        except TwilioRestException as e:
            twilio_status = getattr(e, "status", None)
            if twilio_status and 400 <= twilio_status < 500 and twilio_status != 429:
                logger.error("Twilio client error sending SMS to %s: %s", to_number, e)
                return False
            logger.warning(
                "Twilio error sending SMS to %s (attempt %d/%d): %s",
                to_number, attempt, max_retries, e,
            )
        except Exception as e:
            logger.warning(
                "Transient error sending SMS to %s (attempt %d/%d): %s",
                to_number, attempt, max_retries, e,
            )

        if attempt < max_retries:
            await asyncio.sleep(2 ** (attempt - 1))

    logger.error("SMS to %s failed after %d attempts", to_number, max_retries)
    return False


async def notify(recipient: str | None, kind: NotificationKind | str, payload: dict) -> bool:
    """Render and deliver one notification.  Returns True when delivered."""
    settings = get_settings()
    try:
        kind = NotificationKind(kind)
        body = render(kind, payload)
    except (ValueError, KeyError) as e:
        logger.error("notify: cannot render %r notification: %s", kind, e)
        return False

    to_number = normalize_phone(recipient, settings.SMS_COUNTRY_CODE)
    if to_number is None:
        logger.warning("notify: no usable phone number for %s notification", kind.value)
        return False

    if settings.NOTIFY_BACKEND == "log":
        logger.info("notify[%s] to %s:\n%s", kind.value, to_number, body)
        return True

    try:
        return await _send_via_twilio(to_number, body)
    except Exception:
        logger.exception("notify: unexpected error sending %s notification", kind.value)
        return False
