from sqlalchemy import select

from .core.config import get_settings
from .models import Business, Service


DEMO_BUSINESSES = [
    {
        "owner_user_id": "demo-owner-salon",
        "name": "Luxury Salon & Spa",
        "services": [
            ("Consultation", 30, 0),
            ("Haircut", 45, 6500),
            ("Hair Color", 120, 12000),
            ("Blow Dry", 30, 4000),
        ],
    },
    {
        "owner_user_id": "demo-owner-fitness",
        "name": "FitnessPro Personal Training",
        "services": [
            ("Consultation", 30, 0),
            ("One-on-One Session", 60, 8000),
            ("Premium Service", 90, 15000),
        ],
    },
]


async def seed_initial_data(session):
    """Create the demo businesses and their services when missing."""
    settings = get_settings()

    for demo in DEMO_BUSINESSES:
        result = await session.execute(
            select(Business).where(Business.owner_user_id == demo["owner_user_id"])
        )
        business = result.scalar_one_or_none()

        if not business:
            business = Business(
                owner_user_id=demo["owner_user_id"],
                name=demo["name"],
                timezone=settings.default_timezone,
            )
            session.add(business)
            await session.flush()

        result = await session.execute(select(Service).where(Service.business_id == business.id))
        if not result.scalars().all():
            session.add_all(
                [
                    Service(
                        business_id=business.id,
                        name=name,
                        duration_minutes=duration,
                        price_cents=price,
                    )
                    for name, duration, price in demo["services"]
                ]
            )

    await session.commit()
