"""
Reminder scheduler pass.

Driven by an external periodic trigger (the /cron endpoint or
scripts/run_reminders.py), at least hourly. One pass:

    1. sends a confirmation reminder to every confirmed appointment starting
       within REMINDER_LEAD_HOURS that has not had one
    2. auto-cancels appointments whose confirmation deadline passed with no
       response, through the ordinary cancellation cascade
    3. expires lapsed waitlist offers, passing their slot down the line
    4. retries every outbox event still pending

Each item is handled in its own transaction; one failure never stops the pass.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .appointments import cancel_if_unconfirmed, issue_reminder
from .core.config import get_settings
from .core.db import utcnow
from .core.errors import LineInvariantError
from .models import Appointment, AppointmentStatus
from .notifications import NotificationSender
from .outbox import DispatchReport, dispatch_events, pending_event_ids
from .waitlist import expire_offers

logger = logging.getLogger(__name__)


@dataclass
class ReminderPassReport:
    reminders_sent: int = 0
    appointments_cancelled: int = 0
    offers_expired: int = 0
    offers_created: int = 0
    events_delivered: int = 0
    events_deferred: int = 0
    events_failed: int = 0

    def absorb(self, report: DispatchReport) -> None:
        self.events_delivered += report.delivered
        self.events_deferred += report.deferred
        self.events_failed += report.failed
        self.offers_created += report.offers_created

    def to_dict(self) -> dict:
        return asdict(self)


async def _due_for_reminder(session: AsyncSession, now: datetime) -> list:
    horizon = now + timedelta(hours=get_settings().reminder_lead_hours)
    result = await session.execute(
        select(Appointment.id)
        .where(
            Appointment.status == AppointmentStatus.CONFIRMED,
            Appointment.poll_sent_at.is_(None),
            Appointment.starts_at > now,
            Appointment.starts_at <= horizon,
        )
        .order_by(Appointment.starts_at)
    )
    return list(result.scalars().all())


async def _past_deadline(session: AsyncSession, now: datetime) -> list:
    result = await session.execute(
        select(Appointment.id)
        .where(
            Appointment.status == AppointmentStatus.CONFIRMED,
            Appointment.confirmation_deadline < now,
            Appointment.poll_response.is_(None),
        )
        .order_by(Appointment.confirmation_deadline)
    )
    return list(result.scalars().all())


async def run_reminder_pass(
    session: AsyncSession,
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> ReminderPassReport:
    now = now or utcnow()
    report = ReminderPassReport()
    logger.info(f"Starting reminder pass at {now.isoformat()}")

    # Step 1: reminders
    reminder_ids = await _due_for_reminder(session, now)
    await session.commit()
    for appointment_id in reminder_ids:
        try:
            event_id = await issue_reminder(session, appointment_id, now)
        except LineInvariantError:
            raise
        except Exception as e:
            await session.rollback()
            logger.exception(f"Failed to send reminder for {appointment_id}: {e}")
            continue
        if event_id is None:
            continue
        report.reminders_sent += 1
        report.absorb(await dispatch_events(session, [event_id], sender, now))

    # Step 2: unconfirmed appointments past their deadline
    expired_ids = await _past_deadline(session, now)
    await session.commit()
    for appointment_id in expired_ids:
        try:
            cancelled = await cancel_if_unconfirmed(session, appointment_id, now, sender)
        except LineInvariantError:
            raise
        except Exception as e:
            await session.rollback()
            logger.exception(f"Failed to process expired appointment {appointment_id}: {e}")
            continue
        if cancelled:
            report.appointments_cancelled += 1

    # Step 3: lapsed waitlist offers
    sweep = await expire_offers(session, now, sender)
    report.offers_expired = sweep.expired
    report.offers_created += sweep.offers_created

    # Step 4: anything still pending, including advances deferred or failed earlier
    event_ids = await pending_event_ids(session)
    await session.commit()
    if event_ids:
        report.absorb(await dispatch_events(session, event_ids, sender, now))

    logger.info(f"Reminder pass finished: {report.to_dict()}")
    return report
