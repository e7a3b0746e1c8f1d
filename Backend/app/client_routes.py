"""
Client-facing API: a signed-in client's appointments and waitlist entries.

Every route resolves (or creates) the caller's ClientProfile from the
identity claims and refuses access to another client's records with 403.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from .appointments import (
    cancel_appointment,
    create_appointment,
    get_appointment,
    list_client_appointments,
    reschedule_appointment,
)
from .catalog import get_or_create_client
from .core.db import get_session
from .core.errors import ValidationError
from .core.request_context import RequestContext, require_client
from .core.responses import ErrorResponse
from .models import ClientProfile
from .notifications import NotificationSender, get_notifier
from .schemas import (
    AdvanceResponse,
    AppointmentCreateRequest,
    AppointmentRescheduleRequest,
    AppointmentResponse,
    WaitlistEntryResponse,
    WaitlistJoinRequest,
    WaitlistRespondRequest,
    appointment_out,
    waitlist_entry_out,
)
from .waitlist import (
    get_entry,
    join_waitlist,
    leave_waitlist,
    list_client_entries,
    respond_to_offer,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["client"])

ERRORS = {
    400: {"model": ErrorResponse},
    403: {"description": "Not your record"},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


async def current_client(
    ctx: RequestContext = Depends(require_client),
    session: AsyncSession = Depends(get_session),
) -> ClientProfile:
    return await get_or_create_client(session, ctx.user_id, ctx.name, ctx.email, ctx.phone)


def _ensure_owner(record_client_id: int, client: ClientProfile, what: str) -> None:
    if record_client_id != client.id:
        logger.warning(f"Client {client.id} attempted to access another client's {what}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"You can only manage your own {what}s.",
        )


def _parse_entry_id(value: Optional[str]) -> Optional[uuid.UUID]:
    if value is None:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValidationError("waitlist_entry_id is not a valid id")


# ────────────────────────────────────────────────────────────────
# Appointments
# ────────────────────────────────────────────────────────────────

@router.get("/appointments", response_model=list[AppointmentResponse])
async def my_appointments(
    client: ClientProfile = Depends(current_client),
    session: AsyncSession = Depends(get_session),
):
    return [appointment_out(a) for a in await list_client_appointments(session, client.id)]


@router.post(
    "/appointments",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERRORS,
)
async def book_appointment(
    request: AppointmentCreateRequest,
    client: ClientProfile = Depends(current_client),
    session: AsyncSession = Depends(get_session),
    sender: NotificationSender = Depends(get_notifier),
):
    """
    Book a slot.

    Passing waitlist_entry_id drops the caller's matching waitlist entry
    once the booking has committed.
    """
    appointment = await create_appointment(
        session,
        client_id=client.id,
        business_id=request.business_id,
        service_id=request.service_id,
        starts_at=request.starts_at,
        waitlist_entry_id=_parse_entry_id(request.waitlist_entry_id),
        timezone_name=request.timezone,
        sender=sender,
    )
    return appointment_out(appointment)


@router.get("/appointments/{appointment_id}", response_model=AppointmentResponse, responses=ERRORS)
async def my_appointment(
    appointment_id: uuid.UUID,
    client: ClientProfile = Depends(current_client),
    session: AsyncSession = Depends(get_session),
):
    appointment = await get_appointment(session, appointment_id)
    _ensure_owner(appointment.client_id, client, "appointment")
    return appointment_out(appointment)


@router.patch("/appointments/{appointment_id}", response_model=AppointmentResponse, responses=ERRORS)
async def reschedule_my_appointment(
    appointment_id: uuid.UUID,
    request: AppointmentRescheduleRequest,
    client: ClientProfile = Depends(current_client),
    session: AsyncSession = Depends(get_session),
):
    appointment = await get_appointment(session, appointment_id)
    _ensure_owner(appointment.client_id, client, "appointment")
    appointment = await reschedule_appointment(session, appointment_id, request.starts_at)
    return appointment_out(appointment)


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentResponse, responses=ERRORS)
async def cancel_my_appointment(
    appointment_id: uuid.UUID,
    client: ClientProfile = Depends(current_client),
    session: AsyncSession = Depends(get_session),
    sender: NotificationSender = Depends(get_notifier),
):
    """Cancel and hand the freed slot to the waitlist. Cancelling twice is harmless."""
    appointment = await get_appointment(session, appointment_id)
    _ensure_owner(appointment.client_id, client, "appointment")
    appointment = await cancel_appointment(session, appointment_id, sender=sender)
    return appointment_out(appointment)


# ────────────────────────────────────────────────────────────────
# Waitlist
# ────────────────────────────────────────────────────────────────

@router.get("/waitlist", response_model=list[WaitlistEntryResponse])
async def my_waitlist(
    client: ClientProfile = Depends(current_client),
    session: AsyncSession = Depends(get_session),
):
    return [waitlist_entry_out(e) for e in await list_client_entries(session, client.id)]


@router.post(
    "/waitlist",
    response_model=WaitlistEntryResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERRORS,
)
async def join(
    request: WaitlistJoinRequest,
    client: ClientProfile = Depends(current_client),
    session: AsyncSession = Depends(get_session),
):
    entry = await join_waitlist(
        session, client.id, request.business_id, request.service_id, request.timezone
    )
    return waitlist_entry_out(entry)


@router.delete("/waitlist/{entry_id}", response_model=AdvanceResponse, responses=ERRORS)
async def leave(
    entry_id: uuid.UUID,
    client: ClientProfile = Depends(current_client),
    session: AsyncSession = Depends(get_session),
    sender: NotificationSender = Depends(get_notifier),
):
    entry = await get_entry(session, entry_id)
    _ensure_owner(entry.client_id, client, "waitlist entry")
    outcome = await leave_waitlist(session, entry_id, sender=sender)
    return AdvanceResponse(
        message="Removed from waitlist",
        next_offer_entry_id=str(outcome.offered_entry_id) if outcome.offered_entry_id else None,
    )


@router.post("/waitlist/{entry_id}/respond", response_model=WaitlistEntryResponse, responses=ERRORS)
async def respond(
    entry_id: uuid.UUID,
    request: WaitlistRespondRequest,
    client: ClientProfile = Depends(current_client),
    session: AsyncSession = Depends(get_session),
    sender: NotificationSender = Depends(get_notifier),
):
    """
    Accept or decline an outstanding offer.

    Accepting only marks the entry; the client then books the offered time
    with POST /appointments and this entry's id.
    """
    if request.action not in ("accept", "decline"):
        raise ValidationError("Action must be 'accept' or 'decline'")

    entry = await get_entry(session, entry_id)
    _ensure_owner(entry.client_id, client, "waitlist entry")
    response = await respond_to_offer(session, entry_id, request.action == "accept", sender=sender)
    return waitlist_entry_out(response.entry)
