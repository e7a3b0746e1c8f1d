"""
Business dashboard statistics, evaluated in the business's own timezone.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import parse_timezone
from .core.db import utcnow
from .models import (
    Appointment,
    AppointmentStatus,
    Business,
    Service,
    WaitlistEntry,
    WaitlistStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class MonthStats:
    total_appointments: int = 0
    confirmed: int = 0
    completed: int = 0
    cancelled: int = 0
    no_show: int = 0
    floated: int = 0
    revenue_cents: int = 0


@dataclass
class DashboardStats:
    business_id: int
    timezone: str
    month: MonthStats
    today: list[Appointment] = field(default_factory=list)
    services_count: int = 0
    waitlist_count: int = 0


def _local_midnight_utc(day: date, tz) -> datetime:
    return datetime.combine(day, time(0, 0), tzinfo=tz).astimezone(timezone.utc)


def month_bounds(now: datetime, tz) -> tuple[datetime, datetime]:
    """UTC [start, end) of the local calendar month containing now."""
    local = now.astimezone(tz).date()
    first = local.replace(day=1)
    next_first = (first + timedelta(days=32)).replace(day=1)
    return _local_midnight_utc(first, tz), _local_midnight_utc(next_first, tz)


def day_bounds(now: datetime, tz) -> tuple[datetime, datetime]:
    local = now.astimezone(tz).date()
    return _local_midnight_utc(local, tz), _local_midnight_utc(local + timedelta(days=1), tz)


async def business_dashboard(
    session: AsyncSession,
    business: Business,
    now: Optional[datetime] = None,
) -> DashboardStats:
    now = now or utcnow()
    tz = parse_timezone(business.timezone)

    month_start, month_end = month_bounds(now, tz)
    rows = await session.execute(
        select(Appointment.status, func.count(), func.coalesce(func.sum(Appointment.price_cents), 0))
        .where(
            Appointment.business_id == business.id,
            Appointment.starts_at >= month_start,
            Appointment.starts_at < month_end,
        )
        .group_by(Appointment.status)
    )
    month = MonthStats()
    for status, count, price_total in rows.all():
        month.total_appointments += count
        setattr(month, AppointmentStatus(status).value, count)
        if status == AppointmentStatus.COMPLETED:
            month.revenue_cents = int(price_total)

    day_start, day_end = day_bounds(now, tz)
    today = await session.execute(
        select(Appointment)
        .where(
            Appointment.business_id == business.id,
            Appointment.starts_at >= day_start,
            Appointment.starts_at < day_end,
        )
        .order_by(Appointment.starts_at)
    )

    services_count = await session.scalar(
        select(func.count()).select_from(Service).where(Service.business_id == business.id)
    )
    waitlist_count = await session.scalar(
        select(func.count())
        .select_from(WaitlistEntry)
        .where(
            WaitlistEntry.business_id == business.id,
            WaitlistEntry.status == WaitlistStatus.WAITING,
        )
    )

    return DashboardStats(
        business_id=business.id,
        timezone=tz.key,
        month=month,
        today=list(today.scalars().all()),
        services_count=services_count or 0,
        waitlist_count=waitlist_count or 0,
    )
