"""
Slot availability engine.

Builds one local day's slot grid for a business, marking each slot
available or blocked, and owns the overlap rule that booking conflict
checks share.

Times are stored in UTC. The caller's civil date is converted with the
UTC offset that applies on that date in the requested timezone, so DST
days produce the right instants.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .core.db import utcnow
from .core.errors import ValidationError
from .models import Appointment, BLOCKING_STATUSES, Business, Service

logger = logging.getLogger(__name__)

BLOCKED_BY_HOURS = "business_hours"
BLOCKED_BY_PAST = "past"

# Longer than any service, so appointments starting earlier cannot reach into the window
CONFLICT_LOOKBACK = timedelta(hours=24)


@dataclass
class Slot:
    time: str  # "HH:MM" local
    starts_at: datetime  # UTC
    ends_at: datetime  # UTC
    available: bool
    blocked_by: Optional[str] = None


@dataclass
class BookedAppointment:
    id: uuid.UUID
    starts_at: datetime
    duration_minutes: int
    service_name: Optional[str]


@dataclass
class SlotGrid:
    date: date
    timezone: str
    duration_minutes: int
    slots: list[Slot] = field(default_factory=list)
    booked: list[BookedAppointment] = field(default_factory=list)


# ────────────────────────────────────────────────────────────────
# Parsing helpers
# ────────────────────────────────────────────────────────────────

def parse_timezone(name: Optional[str]) -> ZoneInfo:
    tz_name = name or get_settings().default_timezone
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {tz_name}", {"timezone": tz_name})


def parse_local_date(value: Optional[str]) -> date:
    if not value:
        raise ValidationError("Date parameter is required")
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError("Invalid date format. Use YYYY-MM-DD.", {"date": value})


def parse_clock(value: str) -> int:
    """'HH:MM' -> minutes from midnight."""
    hour, minute = map(int, value.split(":"))
    return hour * 60 + minute


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def business_hours(business: Optional[Business]) -> tuple[int, int]:
    """Opening and closing time in minutes from local midnight."""
    settings = get_settings()
    opens = parse_clock(settings.business_hours_start)
    closes = parse_clock(settings.business_hours_end)
    if business is not None:
        if business.opens_at is not None:
            opens = _minutes(business.opens_at)
        if business.closes_at is not None:
            closes = _minutes(business.closes_at)
    return opens, closes


def utc_offset_minutes(local_date: date, tz: ZoneInfo) -> int:
    """
    Minutes the zone is ahead of UTC on the given civil date.

    Measured on the wall-clock reading of noon UTC, so a date change
    between the two readings is part of the delta.
    """
    reference = datetime.combine(local_date, time(12, 0), tzinfo=timezone.utc)
    local_wall = reference.astimezone(tz).replace(tzinfo=None)
    delta = local_wall - reference.replace(tzinfo=None)
    return int(delta.total_seconds() // 60)


def local_minutes_to_utc(local_date: date, minutes: int, offset_minutes: int) -> datetime:
    midnight_utc = datetime.combine(local_date, time(0, 0), tzinfo=timezone.utc)
    return midnight_utc + timedelta(minutes=minutes - offset_minutes)


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval overlap."""
    return start_a < end_b and end_a > start_b


def within_business_hours(
    business: Optional[Business],
    starts_at: datetime,
    duration_minutes: int,
    tz: ZoneInfo,
) -> bool:
    opens, closes = business_hours(business)
    local = starts_at.astimezone(tz)
    start_minutes = local.hour * 60 + local.minute
    return start_minutes >= opens and start_minutes + duration_minutes <= closes


# ────────────────────────────────────────────────────────────────
# Queries
# ────────────────────────────────────────────────────────────────

async def blocking_appointments_between(
    session: AsyncSession,
    business_id: int,
    window_start: datetime,
    window_end: datetime,
) -> list[Appointment]:
    result = await session.execute(
        select(Appointment)
        .where(
            Appointment.business_id == business_id,
            Appointment.starts_at >= window_start,
            Appointment.starts_at <= window_end,
            Appointment.status.in_(BLOCKING_STATUSES),
        )
        .order_by(Appointment.starts_at)
    )
    return list(result.scalars().all())


async def find_conflict(
    session: AsyncSession,
    business_id: int,
    starts_at: datetime,
    duration_minutes: int,
    exclude_id: Optional[uuid.UUID] = None,
) -> Optional[Appointment]:
    """First blocking appointment of the business overlapping the interval, if any."""
    ends_at = starts_at + timedelta(minutes=duration_minutes)
    candidates = await blocking_appointments_between(
        session, business_id, starts_at - CONFLICT_LOOKBACK, ends_at
    )
    for existing in candidates:
        if exclude_id is not None and existing.id == exclude_id:
            continue
        if overlaps(starts_at, ends_at, existing.starts_at, existing.ends_at):
            return existing
    return None


# ────────────────────────────────────────────────────────────────
# Slot grid
# ────────────────────────────────────────────────────────────────

async def list_available_slots(
    session: AsyncSession,
    business_id: int,
    date_value: Optional[str],
    service_id: Optional[int] = None,
    timezone_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SlotGrid:
    """
    One local day's slot grid.

    Unknown business or service is not an error: the configured hours and
    the default slot length apply.
    """
    settings = get_settings()
    local_date = parse_local_date(date_value)
    tz = parse_timezone(timezone_name)
    now = now or utcnow()

    business = await session.get(Business, business_id)
    duration = settings.default_service_minutes
    if service_id is not None:
        service = await session.get(Service, service_id)
        if service is not None:
            duration = service.duration_minutes

    opens, closes = business_hours(business)
    offset = utc_offset_minutes(local_date, tz)

    day_start = local_minutes_to_utc(local_date, 0, offset)
    day_end = local_minutes_to_utc(local_date, 24 * 60, offset)
    appointments = await blocking_appointments_between(
        session, business_id, day_start - timedelta(hours=24), day_end + timedelta(hours=24)
    )

    grid = SlotGrid(date=local_date, timezone=tz.key, duration_minutes=duration)

    for slot_minutes in range(opens, closes, settings.slot_minutes):
        slot_start = local_minutes_to_utc(local_date, slot_minutes, offset)
        slot_end = slot_start + timedelta(minutes=duration)
        label = f"{slot_minutes // 60:02d}:{slot_minutes % 60:02d}"

        blocked_by = None
        if slot_minutes + duration > closes:
            blocked_by = BLOCKED_BY_HOURS
        else:
            for apt in appointments:
                if overlaps(slot_start, slot_end, apt.starts_at, apt.ends_at):
                    blocked_by = str(apt.id)
                    break
            if blocked_by is None and slot_start <= now:
                blocked_by = BLOCKED_BY_PAST

        grid.slots.append(
            Slot(
                time=label,
                starts_at=slot_start,
                ends_at=slot_end,
                available=blocked_by is None,
                blocked_by=blocked_by,
            )
        )

    if appointments:
        service_names = await _service_names(session, {apt.service_id for apt in appointments})
        for apt in appointments:
            # Only bookings that touch this local day are reported
            if overlaps(day_start, day_end, apt.starts_at, apt.ends_at):
                grid.booked.append(
                    BookedAppointment(
                        id=apt.id,
                        starts_at=apt.starts_at,
                        duration_minutes=apt.duration_minutes,
                        service_name=service_names.get(apt.service_id),
                    )
                )

    logger.debug(
        f"Slot grid for business {business_id} on {local_date} ({tz.key}): "
        f"{sum(1 for s in grid.slots if s.available)}/{len(grid.slots)} available"
    )
    return grid


async def _service_names(session: AsyncSession, service_ids: set[int]) -> dict[int, str]:
    result = await session.execute(select(Service.id, Service.name).where(Service.id.in_(service_ids)))
    return {row.id: row.name for row in result.all()}
