"""
Waitlist queue.

Each (business, service) pair has one ordered line. Positions are dense
1..N. Every operation that reads-then-writes a line (join, leave, offer,
decline, expiry) runs under the line's keyed lock and a row lock on its
WaitlistLine, and renumbering happens in the same transaction as the
delete, so no reader ever sees a gap or a duplicate.

At most one offer is outstanding per line. A freed slot is offered to the
lowest-position waiting entry; on decline or expiry the same slot moves on
to the next entry.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import find_conflict, parse_timezone
from .core.config import get_settings
from .core.db import utcnow
from .core.errors import (
    ConflictError,
    ExpiredTokenError,
    LineInvariantError,
    NotFoundError,
    StateError,
)
from .core.locks import entity_locks, line_key
from .models import (
    Business,
    ClientProfile,
    OutboxEvent,
    OutboxStatus,
    Service,
    WaitlistEntry,
    WaitlistLine,
    WaitlistStatus,
)
from .notifications import Notification, NotificationKind, NotificationSender, Recipient, public_link, slot_fields
from .outbox import dispatch_events, enqueue_notification, enqueue_waitlist_advance
from .tokens import TokenPurpose, ensure_current, issue_token, read_token

logger = logging.getLogger(__name__)

OFFER_STATUSES = (WaitlistStatus.OFFERED, WaitlistStatus.ACCEPTED)


@dataclass
class AdvanceOutcome:
    deferred: bool = False
    offered_entry_id: Optional[uuid.UUID] = None
    spawned_event_ids: list[int] = field(default_factory=list)
    reason: str = ""


@dataclass
class OfferResponse:
    entry: WaitlistEntry
    accepted: bool
    next_offer: AdvanceOutcome = field(default_factory=AdvanceOutcome)


@dataclass
class ExpirySweep:
    expired: int = 0
    offers_created: int = 0


# ────────────────────────────────────────────────────────────────
# Line primitives (caller holds the line lock and owns the transaction)
# ────────────────────────────────────────────────────────────────

async def lock_line(
    session: AsyncSession,
    business_id: int,
    service_id: int,
    create: bool = False,
) -> Optional[WaitlistLine]:
    stmt = (
        select(WaitlistLine)
        .where(WaitlistLine.business_id == business_id, WaitlistLine.service_id == service_id)
        .with_for_update()
    )
    line = (await session.execute(stmt)).scalar_one_or_none()
    if line is not None or not create:
        return line

    line = WaitlistLine(business_id=business_id, service_id=service_id)
    session.add(line)
    try:
        await session.flush()
    except IntegrityError:
        # Another worker created it first
        await session.rollback()
        line = (await session.execute(stmt)).scalar_one()
    return line


async def line_entries(session: AsyncSession, business_id: int, service_id: int) -> list[WaitlistEntry]:
    result = await session.execute(
        select(WaitlistEntry)
        .where(WaitlistEntry.business_id == business_id, WaitlistEntry.service_id == service_id)
        .order_by(WaitlistEntry.position)
    )
    return list(result.scalars().all())


async def check_line(session: AsyncSession, business_id: int, service_id: int) -> None:
    """With STRICT_INVARIANTS, fail loudly unless positions are exactly 1..N."""
    if not get_settings().strict_invariants:
        return
    await session.flush()
    result = await session.execute(
        select(WaitlistEntry.position)
        .where(WaitlistEntry.business_id == business_id, WaitlistEntry.service_id == service_id)
        .order_by(WaitlistEntry.position)
    )
    positions = list(result.scalars().all())
    if positions != list(range(1, len(positions) + 1)):
        raise LineInvariantError(
            f"Waitlist line ({business_id}, {service_id}) has positions {positions}"
        )


async def remove_entry(session: AsyncSession, entry: WaitlistEntry) -> None:
    """Delete an entry and close the gap it leaves."""
    business_id, service_id, position = entry.business_id, entry.service_id, entry.position
    await session.delete(entry)
    await session.flush()
    await session.execute(
        update(WaitlistEntry)
        .where(
            WaitlistEntry.business_id == business_id,
            WaitlistEntry.service_id == service_id,
            WaitlistEntry.position > position,
        )
        .values(position=WaitlistEntry.position - 1)
        .execution_options(synchronize_session="fetch")
    )
    await check_line(session, business_id, service_id)


async def _outstanding_offer(
    session: AsyncSession,
    business_id: int,
    service_id: int,
    now: datetime,
) -> Optional[WaitlistEntry]:
    result = await session.execute(
        select(WaitlistEntry)
        .where(
            WaitlistEntry.business_id == business_id,
            WaitlistEntry.service_id == service_id,
            WaitlistEntry.status.in_(OFFER_STATUSES),
            WaitlistEntry.offer_expires_at > now,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _head_waiting(session: AsyncSession, business_id: int, service_id: int) -> Optional[WaitlistEntry]:
    result = await session.execute(
        select(WaitlistEntry)
        .where(
            WaitlistEntry.business_id == business_id,
            WaitlistEntry.service_id == service_id,
            WaitlistEntry.status == WaitlistStatus.WAITING,
        )
        .order_by(WaitlistEntry.position)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def offer_slot(
    session: AsyncSession,
    business_id: int,
    service_id: int,
    starts_at: datetime,
    timezone_name: str,
    now: datetime,
) -> AdvanceOutcome:
    """
    Offer a freed slot to the head of the line.

    Nothing is offered when the slot has passed or was booked again in the
    meantime. If another offer is still outstanding the call is deferred.
    """
    settings = get_settings()
    if starts_at <= now:
        return AdvanceOutcome(reason="slot_passed")

    service = await session.get(Service, service_id)
    duration = service.duration_minutes if service else settings.default_service_minutes
    if await find_conflict(session, business_id, starts_at, duration):
        return AdvanceOutcome(reason="slot_rebooked")

    if await _outstanding_offer(session, business_id, service_id, now):
        return AdvanceOutcome(deferred=True, reason="offer_outstanding")

    entry = await _head_waiting(session, business_id, service_id)
    if entry is None:
        return AdvanceOutcome(reason="line_empty")

    token = issue_token(TokenPurpose.OFFER, entry.id, now)
    entry.status = WaitlistStatus.OFFERED
    entry.offered_at = token.issued_at
    entry.offer_expires_at = now + timedelta(hours=settings.offer_ttl_hours)
    entry.offered_datetime = starts_at
    entry.timezone = timezone_name

    client = await session.get(ClientProfile, entry.client_id)
    business = await session.get(Business, business_id)
    notification = Notification(
        kind=NotificationKind.WAITLIST_OFFER,
        recipient=Recipient(name=client.name, email=client.email, phone=client.phone),
        fields=slot_fields(
            business.name if business else "",
            service.name if service else "",
            starts_at,
            timezone_name,
            waitlist_entry_id=str(entry.id),
            offer_expires_at=entry.offer_expires_at.isoformat(),
            offer_ttl_hours=settings.offer_ttl_hours,
            claim_url=public_link("/public/waitlist/claim", token.value),
            decline_url=public_link("/public/waitlist/decline", token.value),
        ),
    )
    event = enqueue_notification(session, notification, now)
    await session.flush()

    logger.info(
        f"Offered {starts_at.isoformat()} on line ({business_id}, {service_id}) "
        f"to waitlist entry {entry.id} at position {entry.position}"
    )
    return AdvanceOutcome(offered_entry_id=entry.id, spawned_event_ids=[event.id])


async def _release_offer(session: AsyncSession, entry: WaitlistEntry, now: datetime) -> AdvanceOutcome:
    """Drop an entry holding an offer and pass its slot down the line."""
    starts_at, timezone_name = entry.offered_datetime, entry.timezone
    business_id, service_id = entry.business_id, entry.service_id
    await remove_entry(session, entry)
    if starts_at is None:
        return AdvanceOutcome(reason="no_slot")
    outcome = await offer_slot(session, business_id, service_id, starts_at, timezone_name, now)
    if outcome.deferred:
        # Keep the slot in play until the other offer resolves
        enqueue_waitlist_advance(session, business_id, service_id, starts_at, timezone_name, now)
    return outcome


async def _dispatch(session: AsyncSession, outcome: AdvanceOutcome, sender, now: datetime) -> None:
    if outcome.spawned_event_ids:
        await dispatch_events(session, outcome.spawned_event_ids, sender, now)


# ────────────────────────────────────────────────────────────────
# Operations
# ────────────────────────────────────────────────────────────────

async def get_entry(session: AsyncSession, entry_id: uuid.UUID) -> WaitlistEntry:
    entry = await session.get(WaitlistEntry, entry_id)
    if entry is None:
        raise NotFoundError("Waitlist entry not found")
    return entry


async def join_waitlist(
    session: AsyncSession,
    client_id: int,
    business_id: int,
    service_id: int,
    timezone_name: Optional[str] = None,
) -> WaitlistEntry:
    tz = parse_timezone(timezone_name)
    service = await session.get(Service, service_id)
    if service is None or service.business_id != business_id:
        raise NotFoundError("Service not found for this business")

    async with entity_locks.hold(line_key(business_id, service_id)):
        await lock_line(session, business_id, service_id, create=True)

        existing = await session.execute(
            select(WaitlistEntry.id).where(
                WaitlistEntry.client_id == client_id,
                WaitlistEntry.business_id == business_id,
                WaitlistEntry.service_id == service_id,
            )
        )
        if existing.scalar_one_or_none() is not None:
            await session.rollback()
            raise ConflictError("Already on this waitlist")

        max_position = await session.scalar(
            select(func.max(WaitlistEntry.position)).where(
                WaitlistEntry.business_id == business_id,
                WaitlistEntry.service_id == service_id,
            )
        )
        entry = WaitlistEntry(
            client_id=client_id,
            business_id=business_id,
            service_id=service_id,
            position=(max_position or 0) + 1,
            status=WaitlistStatus.WAITING,
            timezone=tz.key,
        )
        session.add(entry)
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            raise ConflictError("Already on this waitlist")
        await check_line(session, business_id, service_id)
        await session.commit()

    logger.info(f"Client {client_id} joined line ({business_id}, {service_id}) at position {entry.position}")
    return entry


async def leave_waitlist(
    session: AsyncSession,
    entry_id: uuid.UUID,
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> AdvanceOutcome:
    """
    Remove an entry and renumber its line.

    Leaving while holding an offer counts as declining it, so the slot
    moves on to the next entry. That holds for a lapsed offer the expiry
    sweep has not reached yet; a slot already in the past is dropped.
    """
    now = now or utcnow()
    entry = await get_entry(session, entry_id)

    async with entity_locks.hold(line_key(entry.business_id, entry.service_id)):
        await lock_line(session, entry.business_id, entry.service_id)
        entry = await session.get(WaitlistEntry, entry_id, populate_existing=True)
        if entry is None:
            raise NotFoundError("Waitlist entry not found")

        if entry.status in OFFER_STATUSES and entry.offered_datetime is not None:
            outcome = await _release_offer(session, entry, now)
        else:
            await remove_entry(session, entry)
            outcome = AdvanceOutcome(reason="left")
        await session.commit()

    logger.info(f"Waitlist entry {entry_id} left its line")
    await _dispatch(session, outcome, sender, now)
    return outcome


async def respond_to_offer(
    session: AsyncSession,
    entry_id: uuid.UUID,
    accept: bool,
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> OfferResponse:
    now = now or utcnow()
    entry = await get_entry(session, entry_id)

    async with entity_locks.hold(line_key(entry.business_id, entry.service_id)):
        await lock_line(session, entry.business_id, entry.service_id)
        entry = await session.get(WaitlistEntry, entry_id, populate_existing=True)
        if entry is None:
            raise NotFoundError("Waitlist entry not found")
        if entry.status != WaitlistStatus.OFFERED:
            raise StateError("This entry is not currently offered")
        if entry.offer_expires_at is not None and now > entry.offer_expires_at:
            raise StateError("Offer has expired")

        if accept:
            entry.status = WaitlistStatus.ACCEPTED
            await session.commit()
            logger.info(f"Waitlist entry {entry_id} accepted its offer")
            return OfferResponse(entry=entry, accepted=True)

        entry.status = WaitlistStatus.DECLINED
        outcome = await _release_offer(session, entry, now)
        await session.commit()

    logger.info(f"Waitlist entry {entry_id} declined its offer ({outcome.reason or 'passed on'})")
    await _dispatch(session, outcome, sender, now)
    return OfferResponse(entry=entry, accepted=False, next_offer=outcome)


async def decline_offer_token(
    session: AsyncSession,
    token: Optional[str],
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> AdvanceOutcome:
    now = now or utcnow()
    parsed = read_token(TokenPurpose.OFFER, token, now)
    entry = await session.get(WaitlistEntry, parsed.entity_id)
    if entry is None:
        raise NotFoundError("Offer not found")

    async with entity_locks.hold(line_key(entry.business_id, entry.service_id)):
        await lock_line(session, entry.business_id, entry.service_id)
        entry = await session.get(WaitlistEntry, parsed.entity_id, populate_existing=True)
        if entry is None:
            raise NotFoundError("Offer not found")
        ensure_current(parsed, entry.offered_at)
        if entry.status not in OFFER_STATUSES:
            raise StateError("This offer is no longer available")

        entry.status = WaitlistStatus.DECLINED
        outcome = await _release_offer(session, entry, now)
        await session.commit()

    logger.info(f"Waitlist offer {parsed.entity_id} declined by link")
    await _dispatch(session, outcome, sender, now)
    return outcome


async def load_offer_for_claim(
    session: AsyncSession,
    token: Optional[str],
    now: datetime,
) -> WaitlistEntry:
    """Validate an offer token and return the entry it grants."""
    parsed = read_token(TokenPurpose.OFFER, token, now)
    entry = await session.get(WaitlistEntry, parsed.entity_id, populate_existing=True)
    if entry is None:
        raise NotFoundError("Offer not found")
    ensure_current(parsed, entry.offered_at)
    if entry.status not in OFFER_STATUSES:
        raise StateError("This offer is no longer available")
    if entry.offer_expires_at is not None and now > entry.offer_expires_at:
        raise ExpiredTokenError("This offer has expired. Please rejoin the waitlist.")
    if entry.offered_datetime is None:
        raise StateError("Offer details not found")
    return entry


async def remove_claimed_entry(session: AsyncSession, entry_id: uuid.UUID, client_id: int) -> bool:
    """
    Drop a waitlist entry after its client booked.

    Runs in its own transaction after the booking committed. Returns
    whether anything was removed.
    """
    entry = await session.get(WaitlistEntry, entry_id)
    if entry is None:
        logger.warning(f"Could not remove waitlist entry {entry_id}: not found")
        return False
    if entry.client_id != client_id:
        logger.warning(f"Could not remove waitlist entry {entry_id}: belongs to another client")
        return False

    async with entity_locks.hold(line_key(entry.business_id, entry.service_id)):
        await lock_line(session, entry.business_id, entry.service_id)
        entry = await session.get(WaitlistEntry, entry_id, populate_existing=True)
        if entry is None:
            return False
        await remove_entry(session, entry)
        await session.commit()

    logger.info(f"Removed waitlist entry {entry_id} after booking")
    return True


async def handle_advance_event(session: AsyncSession, event_id: int, now: datetime) -> AdvanceOutcome:
    """
    Process one waitlist_advance outbox event.

    The event is marked done in the same transaction that creates the
    offer, so concurrent dispatchers cannot offer the slot twice.
    """
    event = await session.get(OutboxEvent, event_id)
    if event is None:
        return AdvanceOutcome(reason="missing")
    payload = dict(event.payload)
    business_id, service_id = payload["business_id"], payload["service_id"]

    async with entity_locks.hold(line_key(business_id, service_id)):
        await lock_line(session, business_id, service_id)
        event = await session.get(OutboxEvent, event_id, populate_existing=True, with_for_update=True)
        if event is None or event.status != OutboxStatus.PENDING:
            await session.rollback()
            return AdvanceOutcome(reason="already_processed")

        outcome = await offer_slot(
            session,
            business_id,
            service_id,
            datetime.fromisoformat(payload["starts_at"]),
            payload.get("timezone") or get_settings().default_timezone,
            now,
        )
        if outcome.deferred:
            event.last_error = "deferred: an offer is outstanding on this line"
            logger.warning(f"Waitlist advance {event_id} deferred; line ({business_id}, {service_id}) has a live offer")
        else:
            event.status = OutboxStatus.DONE
            event.processed_at = now
        await session.commit()

    return outcome


async def expire_offers(
    session: AsyncSession,
    now: Optional[datetime] = None,
    sender: Optional[NotificationSender] = None,
) -> ExpirySweep:
    """Treat every lapsed offer (offered or accepted but never booked) as declined."""
    now = now or utcnow()
    result = await session.execute(
        select(WaitlistEntry.id).where(
            WaitlistEntry.status.in_(OFFER_STATUSES),
            WaitlistEntry.offer_expires_at <= now,
        )
    )
    entry_ids = list(result.scalars().all())
    await session.commit()

    sweep = ExpirySweep()
    spawned: list[int] = []
    for entry_id in entry_ids:
        try:
            entry = await session.get(WaitlistEntry, entry_id)
            if entry is None:
                continue
            async with entity_locks.hold(line_key(entry.business_id, entry.service_id)):
                await lock_line(session, entry.business_id, entry.service_id)
                entry = await session.get(WaitlistEntry, entry_id, populate_existing=True)
                if (
                    entry is None
                    or entry.status not in OFFER_STATUSES
                    or entry.offer_expires_at is None
                    or entry.offer_expires_at > now
                ):
                    await session.rollback()
                    continue
                entry.status = WaitlistStatus.EXPIRED
                outcome = await _release_offer(session, entry, now)
                await session.commit()
        except LineInvariantError:
            raise
        except Exception as e:
            await session.rollback()
            logger.exception(f"Failed to expire waitlist offer {entry_id}: {e}")
            continue

        sweep.expired += 1
        if outcome.offered_entry_id is not None:
            sweep.offers_created += 1
        spawned.extend(outcome.spawned_event_ids)
        logger.info(f"Waitlist offer {entry_id} expired")

    if spawned:
        await dispatch_events(session, spawned, sender, now)
    return sweep


# ────────────────────────────────────────────────────────────────
# Listings
# ────────────────────────────────────────────────────────────────

async def list_client_entries(session: AsyncSession, client_id: int) -> list[WaitlistEntry]:
    result = await session.execute(
        select(WaitlistEntry)
        .where(WaitlistEntry.client_id == client_id)
        .order_by(WaitlistEntry.position)
    )
    return list(result.scalars().all())


async def list_business_entries(session: AsyncSession, business_id: int) -> list[WaitlistEntry]:
    result = await session.execute(
        select(WaitlistEntry)
        .where(WaitlistEntry.business_id == business_id)
        .order_by(WaitlistEntry.service_id, WaitlistEntry.position)
    )
    return list(result.scalars().all())
