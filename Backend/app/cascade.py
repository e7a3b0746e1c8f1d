"""
Cancellation cascade and client statistics.

Whenever a slot is freed or an appointment reaches an outcome, the
client's counters move and their rates and risk profile are recomputed
from the counters here. A true cancellation additionally records a
waitlist_advance outbox event in the same transaction; the advance itself
runs after commit so its failure never undoes the cancellation.
"""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import NotFoundError
from .models import Appointment, ClientProfile, OutboxEvent
from .outbox import enqueue_waitlist_advance
from .risk import classify_client, rate_of

logger = logging.getLogger(__name__)


async def lock_client(session: AsyncSession, client_id: int) -> ClientProfile:
    """Load a client profile for update, refreshing any stale copy in the session."""
    result = await session.execute(
        select(ClientProfile)
        .where(ClientProfile.id == client_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    client = result.scalar_one_or_none()
    if client is None:
        raise NotFoundError("Client profile not found")
    return client


def refresh_client_stats(client: ClientProfile) -> None:
    client.cancel_rate = rate_of(client.cancel_count, client.total_appointments)
    client.no_show_rate = rate_of(client.no_show_count, client.total_appointments)
    client.risk_profile = classify_client(
        client.total_appointments, client.cancel_rate, client.no_show_rate
    )


def record_booking(client: ClientProfile) -> None:
    """The caller already holds the client row; the risk score it needs was read before this."""
    client.total_appointments += 1
    refresh_client_stats(client)


async def record_cancellation(
    session: AsyncSession,
    appointment: Appointment,
    now: datetime,
) -> OutboxEvent:
    """
    Client side of a cancellation plus the deferred waitlist advance.

    The caller has already moved the appointment to cancelled and commits
    the whole unit.
    """
    client = await lock_client(session, appointment.client_id)
    client.cancel_count += 1
    refresh_client_stats(client)
    logger.info(
        f"Client {client.id} cancel rate now {client.cancel_rate:.1f}% "
        f"({client.risk_profile.value})"
    )

    return enqueue_waitlist_advance(
        session,
        business_id=appointment.business_id,
        service_id=appointment.service_id,
        starts_at=appointment.starts_at,
        timezone_name=appointment.timezone,
        now=now,
        appointment_id=str(appointment.id),
    )


async def record_no_show(session: AsyncSession, appointment: Appointment) -> ClientProfile:
    client = await lock_client(session, appointment.client_id)
    client.no_show_count += 1
    refresh_client_stats(client)
    return client


async def record_completion(session: AsyncSession, appointment: Appointment) -> ClientProfile:
    client = await lock_client(session, appointment.client_id)
    client.completed_appointments += 1
    if client.last_appointment_at is None or appointment.starts_at > client.last_appointment_at:
        client.last_appointment_at = appointment.starts_at
    refresh_client_stats(client)
    return client
