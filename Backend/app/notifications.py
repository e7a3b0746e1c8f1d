"""
Outbound notification sender.

The engine hands (recipient, kind, fields) to a NotificationSender after
its transaction commits. The default sender delivers e-mail through
Resend and SMS through Twilio; any channel that is not configured is
skipped with a warning. Delivery failures surface as
DownstreamNotificationError so the outbox can retry them.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from functools import lru_cache
from html import escape
from typing import Any, Optional, Protocol
from zoneinfo import ZoneInfo

import httpx
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from .core.config import get_settings
from .core.errors import DownstreamNotificationError

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


class NotificationKind(str, Enum):
    BOOKING_CONFIRMATION = "booking_confirmation"
    APPOINTMENT_REMINDER = "appointment_reminder"
    WAITLIST_OFFER = "waitlist_offer"


@dataclass
class Recipient:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class Notification:
    kind: NotificationKind
    recipient: Recipient
    fields: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "kind": self.kind.value,
            "recipient": asdict(self.recipient),
            "fields": self.fields,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "Notification":
        return cls(
            kind=NotificationKind(payload["kind"]),
            recipient=Recipient(**payload.get("recipient", {})),
            fields=dict(payload.get("fields", {})),
        )


class NotificationSender(Protocol):
    async def send(self, notification: Notification) -> None:
        ...


# ────────────────────────────────────────────────────────────────
# Formatting
# ────────────────────────────────────────────────────────────────

def format_price(cents: int) -> str:
    """Format price in cents to display string."""
    return f"${cents / 100:.2f}"


def format_date_local(dt: datetime, tz_name: str) -> str:
    """'Wednesday, January 22, 2026' in the given zone."""
    return dt.astimezone(ZoneInfo(tz_name)).strftime("%A, %B %-d, %Y")


def format_time_local(dt: datetime, tz_name: str) -> str:
    """'2:00 PM' in the given zone."""
    return dt.astimezone(ZoneInfo(tz_name)).strftime("%-I:%M %p")


def public_link(path: str, token: str) -> str:
    base = get_settings().public_app_url.rstrip("/")
    return f"{base}{path}?token={token}"


def slot_fields(
    business_name: str,
    service_name: str,
    starts_at: datetime,
    tz_name: str,
    **extra: Any,
) -> dict[str, Any]:
    """Common fields for every notification about a specific time slot."""
    fields = {
        "business_name": business_name,
        "service_name": service_name,
        "starts_at": starts_at.isoformat(),
        "timezone": tz_name,
        "date_local": format_date_local(starts_at, tz_name),
        "time_local": format_time_local(starts_at, tz_name),
    }
    fields.update(extra)
    return fields


def render(notification: Notification) -> tuple[str, str, str]:
    """Return (subject, html body, sms body)."""
    f = notification.fields
    name = escape(notification.recipient.name or "there")
    when = f"{f.get('date_local')} at {f.get('time_local')}"
    what = f"{f.get('service_name')} at {f.get('business_name')}"

    if notification.kind == NotificationKind.APPOINTMENT_REMINDER:
        link = f["confirm_url"]
        subject = f"Reminder: {what}"
        html = (
            f"<p>Hi {name},</p>"
            f"<p>Your appointment for {escape(what)} is on {escape(when)}. "
            f"Please confirm that you'll be attending.</p>"
            f'<p><a href="{escape(link)}">Yes, I\'ll be there</a></p>'
            f"<p>If you don't confirm, your slot will be released to the waitlist.</p>"
        )
        sms = f"Reminder: {what} on {when}. Confirm: {link}"
    elif notification.kind == NotificationKind.WAITLIST_OFFER:
        subject = f"Slot Available: {what}"
        html = (
            f"<p>Hi {name},</p>"
            f"<p>A slot opened up for {escape(what)} on {escape(when)}. "
            f"This offer expires in {f.get('offer_ttl_hours')} hours.</p>"
            f'<p><a href="{escape(f["claim_url"])}">Claim this slot</a> | '
            f'<a href="{escape(f["decline_url"])}">Decline</a></p>'
        )
        sms = f"A slot opened up: {what} on {when}. Claim: {f['claim_url']}"
    else:
        subject = f"Booking Confirmed: {what}"
        html = (
            f"<p>Hi {name},</p>"
            f"<p>Your booking for {escape(what)} on {escape(when)} is confirmed.</p>"
            f"<p>Price: {escape(format_price(f.get('price_cents', 0)))}</p>"
        )
        sms = f"Booked: {what} on {when}."
    return subject, html, sms


# ────────────────────────────────────────────────────────────────
# Transports
# ────────────────────────────────────────────────────────────────

def _ensure_e164_format(phone: str) -> str:
    """Ensure phone number is in E.164 format (+1...)."""
    if not phone:
        return phone

    cleaned = phone.replace(" ", "").replace("-", "").replace("(", "").replace(")", "")

    # Bare numbers are assumed to be US
    if not cleaned.startswith("+"):
        if cleaned.startswith("1") and len(cleaned) == 11:
            cleaned = f"+{cleaned}"
        else:
            cleaned = f"+1{cleaned}"

    return cleaned


async def send_email(to_email: str, subject: str, html: str) -> None:
    settings = get_settings()
    payload = {
        "from": settings.resend_from,
        "to": to_email,
        "subject": subject,
        "html": html,
    }
    headers = {
        "Authorization": f"Bearer {settings.resend_api_key}",
        "Content-Type": "application/json",
    }

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(RESEND_URL, json=payload, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as e:
        raise DownstreamNotificationError("email", str(e)) from e


async def send_sms(to_phone: str, body: str) -> None:
    settings = get_settings()
    to_formatted = _ensure_e164_format(to_phone)
    from_formatted = _ensure_e164_format(settings.twilio_from_number)

    def _create():
        client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        return client.messages.create(body=body, from_=from_formatted, to=to_formatted)

    try:
        message = await asyncio.to_thread(_create)
    except TwilioRestException as e:
        raise DownstreamNotificationError("sms", f"{e.code} - {e.msg}") from e
    except (TwilioException, OSError) as e:
        # Connection errors from the HTTP client underneath are OSErrors
        raise DownstreamNotificationError("sms", f"{type(e).__name__}: {e}") from e

    logger.info(f"SMS sent to {to_formatted[:6]}***. SID: {message.sid}")


class TransportSender:
    """Resend e-mail plus Twilio SMS, each used only when configured."""

    def __init__(self):
        settings = get_settings()
        self.email_enabled = bool(settings.resend_api_key and settings.resend_from)
        self.sms_enabled = bool(
            settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number
        )

    async def send(self, notification: Notification) -> None:
        subject, html, sms_body = render(notification)
        recipient = notification.recipient
        attempted = 0
        errors: list[DownstreamNotificationError] = []

        if recipient.email and self.email_enabled:
            attempted += 1
            try:
                await send_email(recipient.email, subject, html)
            except DownstreamNotificationError as e:
                errors.append(e)

        if recipient.phone and self.sms_enabled:
            attempted += 1
            try:
                await send_sms(recipient.phone, sms_body)
            except DownstreamNotificationError as e:
                errors.append(e)

        if attempted == 0:
            logger.warning(f"No notification channel available for {notification.kind.value}; skipping send.")
            return

        # Delivered on at least one channel counts as delivered
        if len(errors) == attempted:
            raise errors[0]
        for e in errors:
            logger.error(f"Partial delivery failure for {notification.kind.value}: {e}")


@lru_cache
def get_notifier() -> NotificationSender:
    """FastAPI dependency / default sender; tests override it."""
    return TransportSender()
