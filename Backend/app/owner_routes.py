"""
Business-facing API under /business.

The caller's business is the one whose owner_user_id matches the identity
subject. Services, appointments and waitlist entries of other businesses
are never reachable from here.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from .appointments import get_appointment, list_business_appointments, set_appointment_outcome
from .catalog import create_service, delete_service, get_business_for_owner, list_services, update_service
from .core.db import get_session
from .core.errors import ValidationError
from .core.request_context import RequestContext, require_business
from .core.responses import ErrorResponse, success_response
from .dashboard import business_dashboard
from .models import AppointmentStatus, Business
from .schemas import (
    AppointmentOutcomeRequest,
    AppointmentResponse,
    DashboardResponse,
    ServiceCreateRequest,
    ServiceResponse,
    ServiceUpdateRequest,
    WaitlistEntryResponse,
    appointment_out,
    dashboard_out,
    service_out,
    waitlist_entry_out,
)
from .waitlist import list_business_entries

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/business", tags=["business"])

ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


async def current_business(
    ctx: RequestContext = Depends(require_business),
    session: AsyncSession = Depends(get_session),
) -> Business:
    return await get_business_for_owner(session, ctx.user_id)


# ────────────────────────────────────────────────────────────────
# Services
# ────────────────────────────────────────────────────────────────

@router.get("/services", response_model=list[ServiceResponse])
async def my_services(
    business: Business = Depends(current_business),
    session: AsyncSession = Depends(get_session),
):
    return [service_out(s) for s in await list_services(session, business.id)]


@router.post("/services", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED, responses=ERRORS)
async def add_service(
    request: ServiceCreateRequest,
    business: Business = Depends(current_business),
    session: AsyncSession = Depends(get_session),
):
    service = await create_service(
        session,
        business.id,
        request.name,
        request.duration_minutes,
        request.price_cents,
        request.risk_multiplier,
    )
    return service_out(service)


@router.patch("/services/{service_id}", response_model=ServiceResponse, responses=ERRORS)
async def edit_service(
    service_id: int,
    request: ServiceUpdateRequest,
    business: Business = Depends(current_business),
    session: AsyncSession = Depends(get_session),
):
    service = await update_service(
        session,
        business.id,
        service_id,
        name=request.name,
        duration_minutes=request.duration_minutes,
        price_cents=request.price_cents,
        risk_multiplier=request.risk_multiplier,
    )
    return service_out(service)


@router.delete("/services/{service_id}", responses=ERRORS)
async def remove_service(
    service_id: int,
    business: Business = Depends(current_business),
    session: AsyncSession = Depends(get_session),
):
    await delete_service(session, business.id, service_id)
    return success_response({"deleted": service_id})


# ────────────────────────────────────────────────────────────────
# Appointments
# ────────────────────────────────────────────────────────────────

@router.get("/appointments", response_model=list[AppointmentResponse], responses=ERRORS)
async def my_appointments(
    status_filter: Optional[str] = Query(None, alias="status"),
    business: Business = Depends(current_business),
    session: AsyncSession = Depends(get_session),
):
    wanted = None
    if status_filter:
        try:
            wanted = AppointmentStatus(status_filter)
        except ValueError:
            raise ValidationError(f"Unknown appointment status '{status_filter}'")
    appointments = await list_business_appointments(session, business.id, wanted)
    return [appointment_out(a) for a in appointments]


@router.patch("/appointments/{appointment_id}/status", response_model=AppointmentResponse, responses=ERRORS)
async def record_outcome(
    appointment_id: uuid.UUID,
    request: AppointmentOutcomeRequest,
    business: Business = Depends(current_business),
    session: AsyncSession = Depends(get_session),
):
    """Mark a confirmed appointment completed or no_show."""
    appointment = await get_appointment(session, appointment_id)
    if appointment.business_id != business.id:
        logger.warning(f"Business {business.id} attempted to update appointment {appointment_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Appointment belongs to another business.",
        )

    try:
        outcome = AppointmentStatus(request.status)
    except ValueError:
        raise ValidationError("Status must be either 'completed' or 'no_show'")
    appointment = await set_appointment_outcome(session, appointment_id, outcome)
    return appointment_out(appointment)


# ────────────────────────────────────────────────────────────────
# Waitlist and dashboard
# ────────────────────────────────────────────────────────────────

@router.get("/waitlist", response_model=list[WaitlistEntryResponse])
async def my_waitlist(
    business: Business = Depends(current_business),
    session: AsyncSession = Depends(get_session),
):
    return [waitlist_entry_out(e) for e in await list_business_entries(session, business.id)]


@router.get("/dashboard", response_model=DashboardResponse)
async def dashboard(
    business: Business = Depends(current_business),
    session: AsyncSession = Depends(get_session),
):
    stats = await business_dashboard(session, business)
    return dashboard_out(business, stats)
