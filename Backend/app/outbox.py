"""
Transactional outbox.

Side effects of a state transition (offering a freed slot to the waitlist,
sending a notification) are written as OutboxEvent rows in the same
transaction as the transition. After commit the caller dispatches them;
anything that fails stays pending and is retried by the next reminder pass.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .core.db import utcnow
from .core.errors import DownstreamNotificationError, LineInvariantError
from .models import OutboxEvent, OutboxStatus
from .notifications import Notification, NotificationSender, get_notifier

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    WAITLIST_ADVANCE = "waitlist_advance"
    NOTIFICATION = "notification"


@dataclass
class DispatchReport:
    delivered: int = 0
    deferred: int = 0
    failed: int = 0
    offers_created: int = 0

    def merge(self, other: "DispatchReport") -> None:
        self.delivered += other.delivered
        self.deferred += other.deferred
        self.failed += other.failed
        self.offers_created += other.offers_created


# ────────────────────────────────────────────────────────────────
# Recording
# ────────────────────────────────────────────────────────────────

def enqueue(session: AsyncSession, kind: EventKind, payload: dict, now: datetime) -> OutboxEvent:
    event = OutboxEvent(
        kind=kind.value,
        payload=payload,
        status=OutboxStatus.PENDING,
        attempts=0,
        created_at=now,
    )
    session.add(event)
    return event


def enqueue_notification(session: AsyncSession, notification: Notification, now: datetime) -> OutboxEvent:
    return enqueue(session, EventKind.NOTIFICATION, notification.to_payload(), now)


def enqueue_waitlist_advance(
    session: AsyncSession,
    business_id: int,
    service_id: int,
    starts_at: datetime,
    timezone_name: str,
    now: datetime,
    appointment_id: Optional[str] = None,
) -> OutboxEvent:
    payload = {
        "business_id": business_id,
        "service_id": service_id,
        "starts_at": starts_at.isoformat(),
        "timezone": timezone_name,
        "appointment_id": appointment_id,
    }
    return enqueue(session, EventKind.WAITLIST_ADVANCE, payload, now)


async def pending_event_ids(session: AsyncSession, limit: int = 500) -> list[int]:
    settings = get_settings()
    result = await session.execute(
        select(OutboxEvent.id)
        .where(
            OutboxEvent.status == OutboxStatus.PENDING,
            OutboxEvent.attempts < settings.outbox_max_attempts,
        )
        .order_by(OutboxEvent.id)
        .limit(limit)
    )
    return list(result.scalars().all())


def record_failure(event: OutboxEvent, error: str) -> None:
    settings = get_settings()
    event.attempts += 1
    event.last_error = error[:2000]
    if event.attempts >= settings.outbox_max_attempts:
        event.status = OutboxStatus.FAILED
        logger.error(f"Outbox event {event.id} ({event.kind}) gave up after {event.attempts} attempts: {error}")


# ────────────────────────────────────────────────────────────────
# Dispatch
# ────────────────────────────────────────────────────────────────

async def _notification_failed(
    session: AsyncSession, event_id: int, report: DispatchReport, error: str
) -> DispatchReport:
    event = await session.get(OutboxEvent, event_id, populate_existing=True)
    if event is not None:
        record_failure(event, error)
        await session.commit()
    report.failed += 1
    return report


async def _deliver_notification(
    session: AsyncSession,
    event_id: int,
    sender: NotificationSender,
) -> DispatchReport:
    report = DispatchReport()
    event = await session.get(OutboxEvent, event_id, populate_existing=True)
    if event is None or event.status != OutboxStatus.PENDING:
        return report

    notification = Notification.from_payload(event.payload)
    # Nothing is held while the transport runs
    await session.commit()

    try:
        await sender.send(notification)
    except DownstreamNotificationError as e:
        logger.warning(f"Notification {event_id} ({notification.kind.value}) failed: {e}")
        return await _notification_failed(session, event_id, report, str(e))
    except Exception as e:
        # The transition already committed; the event carries the failure
        logger.exception(f"Notification {event_id} ({notification.kind.value}) crashed: {e}")
        return await _notification_failed(session, event_id, report, f"{type(e).__name__}: {e}")

    event = await session.get(OutboxEvent, event_id, populate_existing=True)
    event.status = OutboxStatus.DONE
    event.processed_at = utcnow()
    await session.commit()
    report.delivered += 1
    return report


async def dispatch_events(
    session: AsyncSession,
    event_ids: Iterable[int],
    sender: Optional[NotificationSender] = None,
    now: Optional[datetime] = None,
) -> DispatchReport:
    """
    Process the given outbox events in order.

    Events spawned along the way (an offer's notification) are processed
    in the same call. Failures are recorded on the event, never raised.
    """
    from .waitlist import handle_advance_event

    sender = sender or get_notifier()
    now = now or utcnow()
    queue = list(event_ids)
    report = DispatchReport()

    while queue:
        event_id = queue.pop(0)
        event = await session.get(OutboxEvent, event_id)
        if event is None:
            continue
        kind = event.kind

        if kind == EventKind.NOTIFICATION.value:
            report.merge(await _deliver_notification(session, event_id, sender))
            continue

        if kind != EventKind.WAITLIST_ADVANCE.value:
            logger.error(f"Outbox event {event_id} has unknown kind {kind!r}")
            await session.rollback()
            report.failed += 1
            continue

        try:
            outcome = await handle_advance_event(session, event_id, now)
        except LineInvariantError:
            raise
        except Exception as e:
            # The advance stays pending; the next reminder pass retries it
            await session.rollback()
            logger.exception(f"Waitlist advance {event_id} failed: {e}")
            event = await session.get(OutboxEvent, event_id, populate_existing=True)
            if event is not None:
                record_failure(event, str(e))
                await session.commit()
            report.failed += 1
            continue

        if outcome.deferred:
            report.deferred += 1
        else:
            report.delivered += 1
        if outcome.offered_entry_id is not None:
            report.offers_created += 1
        queue.extend(outcome.spawned_event_ids)

    return report
