"""
Tests for the business dashboard.

Run with: pytest Backend/tests/test_dashboard.py -v
"""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from app.dashboard import business_dashboard, month_bounds
from app.models import AppointmentStatus
from app.waitlist import join_waitlist

from conftest import NOW, TZ, local
from test_availability import add_appointment


class TestMonthBounds:

    def test_local_month_in_utc(self):
        start, end = month_bounds(NOW, ZoneInfo(TZ))
        assert start == datetime(2030, 1, 1, 5, 0, tzinfo=timezone.utc)
        assert end == datetime(2030, 2, 1, 5, 0, tzinfo=timezone.utc)


class TestBusinessDashboard:

    async def test_counts_by_status_in_local_month(self, session, business, service, make_client):
        client = await make_client()
        add_appointment(session, business, service, client, local(0, 14))
        add_appointment(session, business, service, client, local(1, 10), AppointmentStatus.COMPLETED)
        add_appointment(session, business, service, client, local(1, 15), AppointmentStatus.COMPLETED)
        add_appointment(session, business, service, client, local(2, 10), AppointmentStatus.CANCELLED)
        add_appointment(session, business, service, client, local(3, 10), AppointmentStatus.NO_SHOW)
        # 23:30 on Dec 31 in New York is already January in UTC, but not locally
        add_appointment(session, business, service, client, datetime(2030, 1, 1, 4, 30, tzinfo=timezone.utc))
        add_appointment(session, business, service, client, datetime(2030, 2, 1, 15, 0, tzinfo=timezone.utc))
        await session.commit()

        stats = await business_dashboard(session, business, now=NOW)

        assert stats.timezone == TZ
        assert stats.month.total_appointments == 5
        assert stats.month.confirmed == 1
        assert stats.month.completed == 2
        assert stats.month.cancelled == 1
        assert stats.month.no_show == 1
        assert stats.month.revenue_cents == 2 * 6500
        assert [a.starts_at for a in stats.today] == [local(0, 14)]

    async def test_counts_services_and_waiting_entries(self, session, business, service, make_client):
        for _ in range(2):
            client = await make_client()
            await join_waitlist(session, client.id, business.id, service.id, TZ)

        stats = await business_dashboard(session, business, now=NOW)
        assert stats.services_count == 1
        assert stats.waitlist_count == 2
        assert stats.month.total_appointments == 0
