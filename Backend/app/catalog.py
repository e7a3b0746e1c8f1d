"""
Businesses, services and client profiles.

Catalogue reads, the business's own service management, and the client
profile bootstrap used by every client-facing operation.
"""

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import ConflictError, NotFoundError, StateError, ValidationError
from .models import Appointment, Business, ClientProfile, Service

logger = logging.getLogger(__name__)

MIN_SERVICE_MINUTES = 15
MAX_SERVICE_MINUTES = 480


# ────────────────────────────────────────────────────────────────
# Businesses
# ────────────────────────────────────────────────────────────────

async def list_businesses(session: AsyncSession) -> list[Business]:
    result = await session.execute(select(Business).order_by(Business.name))
    return list(result.scalars().all())


async def get_business(session: AsyncSession, business_id: int) -> Business:
    business = await session.get(Business, business_id)
    if business is None:
        raise NotFoundError("Business not found")
    return business


async def get_business_for_owner(session: AsyncSession, owner_user_id: str) -> Business:
    result = await session.execute(select(Business).where(Business.owner_user_id == owner_user_id))
    business = result.scalar_one_or_none()
    if business is None:
        raise NotFoundError("Business profile not found")
    return business


# ────────────────────────────────────────────────────────────────
# Services
# ────────────────────────────────────────────────────────────────

async def list_services(session: AsyncSession, business_id: int) -> list[Service]:
    result = await session.execute(
        select(Service).where(Service.business_id == business_id).order_by(Service.name)
    )
    return list(result.scalars().all())


async def get_service(session: AsyncSession, service_id: int, business_id: Optional[int] = None) -> Service:
    service = await session.get(Service, service_id)
    if service is None or (business_id is not None and service.business_id != business_id):
        raise NotFoundError("Service not found")
    return service


def _validate_service_fields(duration_minutes: Optional[int], price_cents: Optional[int]) -> None:
    if duration_minutes is not None and not MIN_SERVICE_MINUTES <= duration_minutes <= MAX_SERVICE_MINUTES:
        raise ValidationError(
            f"Duration must be between {MIN_SERVICE_MINUTES} and {MAX_SERVICE_MINUTES} minutes"
        )
    if price_cents is not None and price_cents < 0:
        raise ValidationError("Price must be 0 or greater")


async def create_service(
    session: AsyncSession,
    business_id: int,
    name: str,
    duration_minutes: int,
    price_cents: int,
    risk_multiplier: float = 1.0,
) -> Service:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Service name is required")
    _validate_service_fields(duration_minutes, price_cents)

    service = Service(
        business_id=business_id,
        name=name,
        duration_minutes=duration_minutes,
        price_cents=price_cents,
        risk_multiplier=risk_multiplier,
    )
    session.add(service)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ConflictError("A service with this name already exists")

    logger.info(f"Business {business_id} created service {service.id} ({name})")
    return service


async def update_service(
    session: AsyncSession,
    business_id: int,
    service_id: int,
    name: Optional[str] = None,
    duration_minutes: Optional[int] = None,
    price_cents: Optional[int] = None,
    risk_multiplier: Optional[float] = None,
) -> Service:
    service = await get_service(session, service_id, business_id)
    _validate_service_fields(duration_minutes, price_cents)

    if name is not None and name.strip():
        service.name = name.strip()
    if duration_minutes is not None:
        service.duration_minutes = duration_minutes
    if price_cents is not None:
        service.price_cents = price_cents
    if risk_multiplier is not None:
        service.risk_multiplier = risk_multiplier

    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ConflictError("A service with this name already exists")
    return service


async def delete_service(session: AsyncSession, business_id: int, service_id: int) -> None:
    """Services referenced by any appointment are immutable and cannot be deleted."""
    service = await get_service(session, service_id, business_id)
    count = await session.scalar(
        select(func.count()).select_from(Appointment).where(Appointment.service_id == service_id)
    )
    if count:
        raise StateError("Cannot delete service with existing appointments")

    await session.delete(service)
    await session.commit()
    logger.info(f"Business {business_id} deleted service {service_id}")


# ────────────────────────────────────────────────────────────────
# Client profiles
# ────────────────────────────────────────────────────────────────

async def get_or_create_client(
    session: AsyncSession,
    user_id: str,
    name: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> ClientProfile:
    """
    Find the client profile for an identity, creating it on first use.

    Contact details from the identity claims fill in blanks but never
    overwrite what the profile already has.
    """
    result = await session.execute(select(ClientProfile).where(ClientProfile.user_id == user_id))
    client = result.scalar_one_or_none()

    if client is None:
        client = ClientProfile(user_id=user_id, name=name, email=email, phone=phone)
        session.add(client)
        try:
            await session.commit()
        except IntegrityError:
            # Concurrent first request for the same identity
            await session.rollback()
            result = await session.execute(select(ClientProfile).where(ClientProfile.user_id == user_id))
            client = result.scalar_one()
        else:
            logger.info(f"Created client profile {client.id} for user {user_id}")
        return client

    changed = False
    for attr, value in (("name", name), ("email", email), ("phone", phone)):
        if value and not getattr(client, attr):
            setattr(client, attr, value)
            changed = True
    if changed:
        await session.commit()
    return client
