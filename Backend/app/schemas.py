"""
Request and response models shared by the routers.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .availability import SlotGrid
from .dashboard import DashboardStats
from .models import Appointment, Business, Service, WaitlistEntry
from .notifications import format_price

RISK_MULTIPLIER_NOTE = "Informational only; booking risk scores do not use it"


# ────────────────────────────────────────────────────────────────
# Catalogue
# ────────────────────────────────────────────────────────────────

class BusinessResponse(BaseModel):
    id: int
    name: str
    timezone: str
    opens_at: Optional[str] = None
    closes_at: Optional[str] = None


class ServiceResponse(BaseModel):
    id: int
    business_id: int
    name: str
    duration_minutes: int
    price_cents: int
    price_display: str  # "$35.00"
    risk_multiplier: float = Field(..., description=RISK_MULTIPLIER_NOTE)


class ServiceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    duration_minutes: int
    price_cents: int
    risk_multiplier: float = Field(1.0, description=RISK_MULTIPLIER_NOTE)


class ServiceUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    duration_minutes: Optional[int] = None
    price_cents: Optional[int] = None
    risk_multiplier: Optional[float] = Field(None, description=RISK_MULTIPLIER_NOTE)


def business_out(business: Business) -> BusinessResponse:
    return BusinessResponse(
        id=business.id,
        name=business.name,
        timezone=business.timezone,
        opens_at=business.opens_at.strftime("%H:%M") if business.opens_at else None,
        closes_at=business.closes_at.strftime("%H:%M") if business.closes_at else None,
    )


def service_out(service: Service) -> ServiceResponse:
    return ServiceResponse(
        id=service.id,
        business_id=service.business_id,
        name=service.name,
        duration_minutes=service.duration_minutes,
        price_cents=service.price_cents,
        price_display=format_price(service.price_cents),
        risk_multiplier=service.risk_multiplier,
    )


# ────────────────────────────────────────────────────────────────
# Availability
# ────────────────────────────────────────────────────────────────

class SlotResponse(BaseModel):
    time: str  # "14:30" local
    starts_at: datetime
    ends_at: datetime
    available: bool
    blocked_by: Optional[str] = None


class BookedAppointmentResponse(BaseModel):
    id: str
    starts_at: datetime
    duration_minutes: int
    service_name: Optional[str] = None


class SlotGridResponse(BaseModel):
    date: str
    timezone: str
    duration_minutes: int
    slots: list[SlotResponse]
    booked_appointments: list[BookedAppointmentResponse]


def slot_grid_out(grid: SlotGrid) -> SlotGridResponse:
    return SlotGridResponse(
        date=grid.date.isoformat(),
        timezone=grid.timezone,
        duration_minutes=grid.duration_minutes,
        slots=[
            SlotResponse(
                time=s.time,
                starts_at=s.starts_at,
                ends_at=s.ends_at,
                available=s.available,
                blocked_by=s.blocked_by,
            )
            for s in grid.slots
        ],
        booked_appointments=[
            BookedAppointmentResponse(
                id=str(b.id),
                starts_at=b.starts_at,
                duration_minutes=b.duration_minutes,
                service_name=b.service_name,
            )
            for b in grid.booked
        ],
    )


# ────────────────────────────────────────────────────────────────
# Appointments
# ────────────────────────────────────────────────────────────────

class AppointmentCreateRequest(BaseModel):
    business_id: int
    service_id: int
    starts_at: datetime
    timezone: Optional[str] = None
    waitlist_entry_id: Optional[str] = None

    @field_validator("starts_at")
    @classmethod
    def require_offset(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("starts_at must include a UTC offset")
        return v


class AppointmentRescheduleRequest(BaseModel):
    starts_at: datetime

    @field_validator("starts_at")
    @classmethod
    def require_offset(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("starts_at must include a UTC offset")
        return v


class AppointmentOutcomeRequest(BaseModel):
    status: str = Field(..., description="'completed' or 'no_show'")


class AppointmentResponse(BaseModel):
    id: str
    business_id: int
    client_id: int
    service_id: int
    starts_at: datetime
    duration_minutes: int
    price_cents: int
    timezone: str
    status: str
    booking_window_days: int
    appointment_hour: int
    is_returning_client: bool
    ai_risk_score: int
    risk_level: str
    poll_sent_at: Optional[datetime] = None
    confirmation_deadline: Optional[datetime] = None
    poll_response: Optional[str] = None


def appointment_out(appointment: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=str(appointment.id),
        business_id=appointment.business_id,
        client_id=appointment.client_id,
        service_id=appointment.service_id,
        starts_at=appointment.starts_at,
        duration_minutes=appointment.duration_minutes,
        price_cents=appointment.price_cents,
        timezone=appointment.timezone,
        status=appointment.status.value,
        booking_window_days=appointment.booking_window_days,
        appointment_hour=appointment.appointment_hour,
        is_returning_client=appointment.is_returning_client,
        ai_risk_score=appointment.ai_risk_score,
        risk_level=appointment.risk_level.value,
        poll_sent_at=appointment.poll_sent_at,
        confirmation_deadline=appointment.confirmation_deadline,
        poll_response=appointment.poll_response,
    )


# ────────────────────────────────────────────────────────────────
# Waitlist
# ────────────────────────────────────────────────────────────────

class WaitlistJoinRequest(BaseModel):
    business_id: int
    service_id: int
    timezone: Optional[str] = None


class WaitlistRespondRequest(BaseModel):
    action: str = Field(..., description="'accept' or 'decline'")


class WaitlistEntryResponse(BaseModel):
    id: str
    client_id: int
    business_id: int
    service_id: int
    position: int
    status: str
    timezone: str
    offer_expires_at: Optional[datetime] = None
    offered_datetime: Optional[datetime] = None


def waitlist_entry_out(entry: WaitlistEntry) -> WaitlistEntryResponse:
    return WaitlistEntryResponse(
        id=str(entry.id),
        client_id=entry.client_id,
        business_id=entry.business_id,
        service_id=entry.service_id,
        position=entry.position,
        status=entry.status.value,
        timezone=entry.timezone,
        offer_expires_at=entry.offer_expires_at,
        offered_datetime=entry.offered_datetime,
    )


class AdvanceResponse(BaseModel):
    message: str
    next_offer_entry_id: Optional[str] = None


# ────────────────────────────────────────────────────────────────
# Dashboard
# ────────────────────────────────────────────────────────────────

class MonthStatsResponse(BaseModel):
    total_appointments: int
    confirmed: int
    completed: int
    cancelled: int
    no_show: int
    floated: int
    revenue_cents: int
    revenue_display: str


class DashboardResponse(BaseModel):
    business: BusinessResponse
    timezone: str
    this_month: MonthStatsResponse
    today_appointments: list[AppointmentResponse]
    services_count: int
    waitlist_count: int


def dashboard_out(business: Business, stats: DashboardStats) -> DashboardResponse:
    month = stats.month
    return DashboardResponse(
        business=business_out(business),
        timezone=stats.timezone,
        this_month=MonthStatsResponse(
            total_appointments=month.total_appointments,
            confirmed=month.confirmed,
            completed=month.completed,
            cancelled=month.cancelled,
            no_show=month.no_show,
            floated=month.floated,
            revenue_cents=month.revenue_cents,
            revenue_display=format_price(month.revenue_cents),
        ),
        today_appointments=[appointment_out(a) for a in stats.today],
        services_count=stats.services_count,
        waitlist_count=stats.waitlist_count,
    )
