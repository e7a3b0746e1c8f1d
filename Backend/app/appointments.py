"""
Appointment lifecycle.

    confirmed -> cancelled | completed | no_show
    confirmed -> confirmed   (reschedule, derived fields recomputed)

Terminal appointments accept no further transition. Every mutation runs
under the keyed locks of the entities it touches and a row lock on the
owning row; outbox events recorded by a transition are dispatched only
after its transaction commits.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import find_conflict, parse_timezone, within_business_hours
from .cascade import lock_client, record_booking, record_cancellation, record_completion, record_no_show
from .core.config import get_settings
from .core.db import utcnow
from .core.errors import ConflictError, NotFoundError, StateError, ValidationError
from .core.locks import appointment_key, business_key, client_key, entity_locks
from .models import (
    Appointment,
    AppointmentStatus,
    Business,
    ClientProfile,
    Service,
)
from .notifications import (
    Notification,
    NotificationKind,
    NotificationSender,
    Recipient,
    public_link,
    slot_fields,
)
from .outbox import dispatch_events, enqueue_notification
from .risk import RiskInputs, booking_window_days, score_booking
from .tokens import TokenPurpose, ensure_current, issue_token, read_token
from .waitlist import load_offer_for_claim, remove_claimed_entry

logger = logging.getLogger(__name__)

POLL_CONFIRMED = "confirmed"


# ────────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────────

async def _lock_appointment(session: AsyncSession, appointment_id: uuid.UUID) -> Appointment:
    result = await session.execute(
        select(Appointment)
        .where(Appointment.id == appointment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    appointment = result.scalar_one_or_none()
    if appointment is None:
        raise NotFoundError("Appointment not found")
    return appointment


async def _lock_business(session: AsyncSession, business_id: int) -> Business:
    result = await session.execute(
        select(Business).where(Business.id == business_id).with_for_update()
    )
    business = result.scalar_one_or_none()
    if business is None:
        raise NotFoundError("Business not found")
    return business


async def _has_completed_appointment(session: AsyncSession, client_id: int) -> bool:
    result = await session.execute(
        select(Appointment.id)
        .where(
            Appointment.client_id == client_id,
            Appointment.status == AppointmentStatus.COMPLETED,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


def _require_future(starts_at: datetime, now: datetime) -> None:
    if starts_at.tzinfo is None:
        raise ValidationError("Appointment time must include a UTC offset")
    if starts_at <= now:
        raise ValidationError("Appointment time must be in the future")


async def _apply_risk(
    session: AsyncSession,
    appointment: Appointment,
    client: ClientProfile,
    tz: ZoneInfo,
    now: datetime,
) -> None:
    """Freshly derive booking window, local hour, returning flag and risk."""
    window = booking_window_days(appointment.starts_at, now)
    hour = appointment.starts_at.astimezone(tz).hour
    returning = await _has_completed_appointment(session, client.id)
    assessment = score_booking(
        RiskInputs(
            booking_window_days=window,
            appointment_hour=hour,
            is_returning_client=returning,
            cancel_rate=client.cancel_rate,
            no_show_rate=client.no_show_rate,
        )
    )
    appointment.booking_window_days = window
    appointment.appointment_hour = hour
    appointment.is_returning_client = returning
    appointment.ai_risk_score = assessment.score
    appointment.risk_level = assessment.level


async def _appointment_notification(
    session: AsyncSession,
    appointment: Appointment,
    kind: NotificationKind,
    **extra,
) -> Notification:
    client = await session.get(ClientProfile, appointment.client_id)
    business = await session.get(Business, appointment.business_id)
    service = await session.get(Service, appointment.service_id)
    return Notification(
        kind=kind,
        recipient=Recipient(name=client.name, email=client.email, phone=client.phone),
        fields=slot_fields(
            business.name,
            service.name,
            appointment.starts_at,
            appointment.timezone,
            appointment_id=str(appointment.id),
            duration_minutes=appointment.duration_minutes,
            price_cents=appointment.price_cents,
            **extra,
        ),
    )


# ────────────────────────────────────────────────────────────────
# Reads
# ────────────────────────────────────────────────────────────────

async def get_appointment(session: AsyncSession, appointment_id: uuid.UUID) -> Appointment:
    appointment = await session.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFoundError("Appointment not found")
    return appointment


async def list_client_appointments(session: AsyncSession, client_id: int) -> list[Appointment]:
    result = await session.execute(
        select(Appointment)
        .where(Appointment.client_id == client_id)
        .order_by(Appointment.starts_at.desc())
    )
    return list(result.scalars().all())


async def list_business_appointments(
    session: AsyncSession,
    business_id: int,
    status: Optional[AppointmentStatus] = None,
) -> list[Appointment]:
    query = select(Appointment).where(Appointment.business_id == business_id)
    if status is not None:
        query = query.where(Appointment.status == status)
    result = await session.execute(query.order_by(Appointment.starts_at))
    return list(result.scalars().all())


# ────────────────────────────────────────────────────────────────
# Transitions
# ────────────────────────────────────────────────────────────────

async def create_appointment(
    session: AsyncSession,
    client_id: int,
    business_id: int,
    service_id: int,
    starts_at: datetime,
    now: Optional[datetime] = None,
    waitlist_entry_id: Optional[uuid.UUID] = None,
    timezone_name: Optional[str] = None,
    poll_response: Optional[str] = None,
    sender: Optional[NotificationSender] = None,
) -> Appointment:
    """
    Book a confirmed appointment.

    Raises:
        ValidationError: past time, outside business hours, service of another business
        NotFoundError: unknown business or service
        ConflictError: overlaps a confirmed, completed or floated appointment
    """
    now = now or utcnow()
    _require_future(starts_at, now)

    service = await session.get(Service, service_id)
    if service is None:
        raise NotFoundError("Service not found")
    if service.business_id != business_id:
        raise ValidationError("Service does not belong to the specified business")
    business = await session.get(Business, business_id)
    if business is None:
        raise NotFoundError("Business not found")

    tz = parse_timezone(timezone_name or business.timezone)
    duration = service.duration_minutes
    if not within_business_hours(business, starts_at, duration, tz):
        raise ValidationError("Requested time is outside business hours")

    async with entity_locks.hold(business_key(business_id), client_key(client_id)):
        await _lock_business(session, business_id)

        conflict = await find_conflict(session, business_id, starts_at, duration)
        if conflict is not None:
            raise ConflictError(
                "Time slot is not available. This conflicts with an existing appointment.",
                {"conflicting_appointment_id": str(conflict.id)},
            )

        client = await lock_client(session, client_id)
        appointment = Appointment(
            business_id=business_id,
            client_id=client_id,
            service_id=service_id,
            starts_at=starts_at,
            duration_minutes=duration,
            price_cents=service.price_cents,
            timezone=tz.key,
            status=AppointmentStatus.CONFIRMED,
            poll_response=poll_response,
        )
        await _apply_risk(session, appointment, client, tz, now)
        record_booking(client)
        session.add(appointment)
        await session.flush()

        notification = await _appointment_notification(
            session, appointment, NotificationKind.BOOKING_CONFIRMATION
        )
        event = enqueue_notification(session, notification, now)
        await session.flush()
        event_id = event.id
        await session.commit()

    logger.info(
        f"Appointment {appointment.id} booked for client {client_id} at business {business_id} "
        f"({appointment.starts_at.isoformat()}, risk {appointment.ai_risk_score} {appointment.risk_level.value})"
    )

    # Separate transaction: a failure here must not undo the booking
    if waitlist_entry_id is not None:
        try:
            await remove_claimed_entry(session, waitlist_entry_id, client_id)
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Warning: could not remove waitlist entry {waitlist_entry_id}: {e}")

    await dispatch_events(session, [event_id], sender, now)
    await session.refresh(appointment)
    return appointment


async def reschedule_appointment(
    session: AsyncSession,
    appointment_id: uuid.UUID,
    new_starts_at: datetime,
    now: Optional[datetime] = None,
) -> Appointment:
    """
    Move a confirmed appointment.

    Risk is scored again against the new time and the client's current
    statistics, and the confirmation cycle restarts.
    """
    now = now or utcnow()
    _require_future(new_starts_at, now)
    appointment = await get_appointment(session, appointment_id)

    async with entity_locks.hold(
        business_key(appointment.business_id),
        appointment_key(appointment_id),
        client_key(appointment.client_id),
    ):
        business = await _lock_business(session, appointment.business_id)
        appointment = await _lock_appointment(session, appointment_id)
        if appointment.status != AppointmentStatus.CONFIRMED:
            raise StateError(
                f"Cannot reschedule a {appointment.status.value} appointment",
                {"status": appointment.status.value},
            )

        tz = parse_timezone(appointment.timezone)
        if not within_business_hours(business, new_starts_at, appointment.duration_minutes, tz):
            raise ValidationError("Requested time is outside business hours")

        conflict = await find_conflict(
            session,
            appointment.business_id,
            new_starts_at,
            appointment.duration_minutes,
            exclude_id=appointment.id,
        )
        if conflict is not None:
            raise ConflictError(
                "Time slot is not available. This conflicts with an existing appointment.",
                {"conflicting_appointment_id": str(conflict.id)},
            )

        client = await lock_client(session, appointment.client_id)
        old_starts_at = appointment.starts_at
        appointment.starts_at = new_starts_at
        await _apply_risk(session, appointment, client, tz, now)
        appointment.poll_sent_at = None
        appointment.poll_response = None
        appointment.confirmation_deadline = None
        await session.commit()

    logger.info(
        f"Appointment {appointment_id} rescheduled from {old_starts_at.isoformat()} "
        f"to {new_starts_at.isoformat()}"
    )
    return appointment


async def _cancel(
    session: AsyncSession,
    appointment_id: uuid.UUID,
    now: datetime,
    sender: Optional[NotificationSender],
    unconfirmed_only: bool,
) -> Optional[Appointment]:
    appointment = await get_appointment(session, appointment_id)

    async with entity_locks.hold(appointment_key(appointment_id), client_key(appointment.client_id)):
        appointment = await _lock_appointment(session, appointment_id)

        if unconfirmed_only and (
            appointment.status != AppointmentStatus.CONFIRMED
            or appointment.poll_response is not None
            or appointment.confirmation_deadline is None
            or appointment.confirmation_deadline >= now
        ):
            await session.rollback()
            return None

        if appointment.status == AppointmentStatus.CANCELLED:
            await session.commit()
            logger.info(f"Appointment {appointment_id} already cancelled; nothing to do")
            return appointment
        if appointment.status != AppointmentStatus.CONFIRMED:
            raise StateError(
                f"Cannot cancel a {appointment.status.value} appointment",
                {"status": appointment.status.value},
            )

        appointment.status = AppointmentStatus.CANCELLED
        event = await record_cancellation(session, appointment, now)
        await session.flush()
        event_id = event.id
        await session.commit()

    reason = "unconfirmed" if unconfirmed_only else "cancelled"
    logger.info(f"Appointment {appointment_id} cancelled ({reason}); waitlist advance queued")

    # The cancellation stands whatever happens to the advance
    await dispatch_events(session, [event_id], sender, now)
    await session.refresh(appointment)
    return appointment


async def cancel_appointment(
    session: AsyncSession,
    appointment_id: uuid.UUID,
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> Appointment:
    """Cancel a confirmed appointment; cancelling twice is a no-op."""
    return await _cancel(session, appointment_id, now or utcnow(), sender, unconfirmed_only=False)


async def cancel_if_unconfirmed(
    session: AsyncSession,
    appointment_id: uuid.UUID,
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> bool:
    """Auto-cancel when the confirmation deadline passed with no response."""
    cancelled = await _cancel(session, appointment_id, now or utcnow(), sender, unconfirmed_only=True)
    return cancelled is not None


async def set_appointment_outcome(
    session: AsyncSession,
    appointment_id: uuid.UUID,
    outcome: AppointmentStatus,
) -> Appointment:
    """Business-reported completion or no-show. Does not advance the waitlist."""
    if outcome not in (AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW):
        raise ValidationError("Status must be either 'completed' or 'no_show'")

    appointment = await get_appointment(session, appointment_id)
    async with entity_locks.hold(appointment_key(appointment_id), client_key(appointment.client_id)):
        appointment = await _lock_appointment(session, appointment_id)
        if appointment.status != AppointmentStatus.CONFIRMED:
            raise StateError(
                "Can only update confirmed appointments",
                {"status": appointment.status.value},
            )

        appointment.status = outcome
        if outcome == AppointmentStatus.COMPLETED:
            await record_completion(session, appointment)
        else:
            await record_no_show(session, appointment)
        await session.commit()

    logger.info(f"Appointment {appointment_id} marked {outcome.value}")
    return appointment


# ────────────────────────────────────────────────────────────────
# Confirmation cycle
# ────────────────────────────────────────────────────────────────

async def issue_reminder(
    session: AsyncSession,
    appointment_id: uuid.UUID,
    now: datetime,
) -> Optional[int]:
    """
    Stamp a reminder on a confirmed appointment inside the reminder window.

    Returns the id of the notification event to dispatch, or None when the
    appointment no longer qualifies.
    """
    settings = get_settings()
    async with entity_locks.hold(appointment_key(appointment_id)):
        appointment = await _lock_appointment(session, appointment_id)
        horizon = now + timedelta(hours=settings.reminder_lead_hours)
        if (
            appointment.status != AppointmentStatus.CONFIRMED
            or appointment.poll_sent_at is not None
            or not now < appointment.starts_at <= horizon
        ):
            await session.rollback()
            return None

        token = issue_token(TokenPurpose.CONFIRM, appointment.id, now)
        appointment.poll_sent_at = token.issued_at
        cutoff = appointment.starts_at - timedelta(hours=settings.confirmation_cutoff_hours)
        appointment.confirmation_deadline = max(cutoff, now)

        notification = await _appointment_notification(
            session,
            appointment,
            NotificationKind.APPOINTMENT_REMINDER,
            confirm_url=public_link("/public/appointments/confirm", token.value),
            confirmation_deadline=appointment.confirmation_deadline.isoformat(),
        )
        event = enqueue_notification(session, notification, now)
        await session.flush()
        event_id = event.id
        await session.commit()

    logger.info(f"Reminder issued for appointment {appointment_id}")
    return event_id


async def confirm_appointment(
    session: AsyncSession,
    token: Optional[str],
    now: Optional[datetime] = None,
) -> Appointment:
    """
    Record the client's confirmation from a reminder link.

    Raises:
        ValidationError: missing, malformed or forged token
        ExpiredTokenError: token older than its validity window
        StateError: superseded token or appointment no longer confirmed
    """
    now = now or utcnow()
    parsed = read_token(TokenPurpose.CONFIRM, token, now)
    await get_appointment(session, parsed.entity_id)

    async with entity_locks.hold(appointment_key(parsed.entity_id)):
        appointment = await _lock_appointment(session, parsed.entity_id)
        ensure_current(parsed, appointment.poll_sent_at)
        if appointment.status != AppointmentStatus.CONFIRMED:
            raise StateError(
                f"This appointment is {appointment.status.value} and can no longer be confirmed",
                {"status": appointment.status.value},
            )
        appointment.poll_response = POLL_CONFIRMED
        await session.commit()

    logger.info(f"Appointment {appointment.id} confirmed by client")
    return appointment


async def claim_offer_token(
    session: AsyncSession,
    token: Optional[str],
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> Appointment:
    """
    Turn a waitlist offer into a real, already-confirmed appointment.

    Booking goes through the ordinary create path, so risk is scored
    freshly and the slot is checked for conflicts again.
    """
    now = now or utcnow()
    entry = await load_offer_for_claim(session, token, now)

    appointment = await create_appointment(
        session,
        client_id=entry.client_id,
        business_id=entry.business_id,
        service_id=entry.service_id,
        starts_at=entry.offered_datetime,
        now=now,
        waitlist_entry_id=entry.id,
        timezone_name=entry.timezone,
        poll_response=POLL_CONFIRMED,
        sender=sender,
    )
    logger.info(f"Waitlist offer {entry.id} claimed as appointment {appointment.id}")
    return appointment
