"""
Public API: catalogue, slot grids and the bearer-token links.

The catalogue and availability endpoints need no identity. The token
endpoints are the targets of the links in reminder and offer messages;
the signed token is the only credential, so they are rate limited per IP.

    GET /public/businesses
    GET /public/businesses/{business_id}/services
    GET /public/businesses/{business_id}/available-slots?date=YYYY-MM-DD
    GET /public/appointments/confirm?token=...
    GET /public/waitlist/claim?token=...
    GET /public/waitlist/decline?token=...
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .appointments import claim_offer_token, confirm_appointment
from .availability import list_available_slots
from .catalog import get_business, list_businesses, list_services
from .core.db import get_session
from .core.responses import ErrorResponse
from .notifications import NotificationSender, get_notifier
from .rate_limiter import token_rate_limit
from .schemas import (
    AdvanceResponse,
    AppointmentResponse,
    BusinessResponse,
    ServiceResponse,
    SlotGridResponse,
    appointment_out,
    business_out,
    service_out,
    slot_grid_out,
)
from .waitlist import decline_offer_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/public", tags=["public"])

TOKEN_ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    429: {"description": "Rate limit exceeded"},
}


# ────────────────────────────────────────────────────────────────
# Catalogue
# ────────────────────────────────────────────────────────────────

@router.get("/businesses", response_model=list[BusinessResponse])
async def get_businesses(session: AsyncSession = Depends(get_session)):
    return [business_out(b) for b in await list_businesses(session)]


@router.get(
    "/businesses/{business_id}/services",
    response_model=list[ServiceResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_business_services(business_id: int, session: AsyncSession = Depends(get_session)):
    await get_business(session, business_id)
    return [service_out(s) for s in await list_services(session, business_id)]


@router.get(
    "/businesses/{business_id}/available-slots",
    response_model=SlotGridResponse,
    responses={400: {"model": ErrorResponse}},
)
async def get_available_slots(
    business_id: int,
    date: Optional[str] = Query(None, description="Local date, YYYY-MM-DD"),
    service_id: Optional[int] = None,
    timezone: Optional[str] = Query(None, description="IANA timezone of the caller"),
    session: AsyncSession = Depends(get_session),
):
    """
    One local day's slot grid.

    Unknown businesses and services fall back to the configured hours and
    the default slot length rather than failing.
    """
    grid = await list_available_slots(session, business_id, date, service_id, timezone)
    return slot_grid_out(grid)


# ────────────────────────────────────────────────────────────────
# Token links
# ────────────────────────────────────────────────────────────────

@router.get(
    "/appointments/confirm",
    response_model=AppointmentResponse,
    responses=TOKEN_ERRORS,
    dependencies=[Depends(token_rate_limit)],
)
async def confirm_from_link(
    token: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    appointment = await confirm_appointment(session, token)
    return appointment_out(appointment)


@router.get(
    "/waitlist/claim",
    response_model=AppointmentResponse,
    responses=TOKEN_ERRORS,
    dependencies=[Depends(token_rate_limit)],
)
async def claim_from_link(
    token: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
    sender: NotificationSender = Depends(get_notifier),
):
    """Book the offered slot. The resulting appointment is already confirmed."""
    appointment = await claim_offer_token(session, token, sender=sender)
    return appointment_out(appointment)


@router.get(
    "/waitlist/decline",
    response_model=AdvanceResponse,
    responses=TOKEN_ERRORS,
    dependencies=[Depends(token_rate_limit)],
)
async def decline_from_link(
    token: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
    sender: NotificationSender = Depends(get_notifier),
):
    outcome = await decline_offer_token(session, token, sender=sender)
    return AdvanceResponse(
        message="Offer declined. The slot has been passed on.",
        next_offer_entry_id=str(outcome.offered_entry_id) if outcome.offered_entry_id else None,
    )
