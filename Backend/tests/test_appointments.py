"""
Tests for the appointment lifecycle.

Run with: pytest Backend/tests/test_appointments.py -v
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.appointments import (
    cancel_appointment,
    confirm_appointment,
    create_appointment,
    issue_reminder,
    list_client_appointments,
    reschedule_appointment,
    set_appointment_outcome,
)
from app.core.errors import (
    ConflictError,
    ExpiredTokenError,
    NotFoundError,
    StateError,
    ValidationError,
)
from app.models import (
    AppointmentStatus,
    ClientProfile,
    OutboxEvent,
    OutboxStatus,
    RiskLevel,
    Service,
)
from app.notifications import NotificationKind
from app.tokens import TokenPurpose, issue_token

from conftest import NOW, local


async def book(session, client, business, service, starts_at, sender, now=NOW, **kwargs):
    return await create_appointment(
        session,
        client_id=client.id,
        business_id=business.id,
        service_id=service.id,
        starts_at=starts_at,
        now=now,
        sender=sender,
        **kwargs,
    )


# ============================================================================
# CREATE
# ============================================================================

class TestCreate:
    """Tests for create_appointment."""

    async def test_books_confirmed_with_derived_fields(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(1, 14), sender)

        assert appointment.status == AppointmentStatus.CONFIRMED
        assert appointment.duration_minutes == 60
        assert appointment.price_cents == 6500
        assert appointment.timezone == "America/New_York"
        assert appointment.appointment_hour == 14
        # 28 hours out rounds up to 2 days
        assert appointment.booking_window_days == 2
        assert appointment.is_returning_client is False
        # window <= 3 (+20) and new client (+20)
        assert appointment.ai_risk_score == 40
        assert appointment.risk_level == RiskLevel.MEDIUM

        await session.refresh(client)
        assert client.total_appointments == 1

    async def test_service_risk_multiplier_does_not_change_score(
        self, session, business, service, make_client, sender
    ):
        service.risk_multiplier = 3.0
        await session.commit()

        appointment = await book(session, await make_client(), business, service, local(1, 14), sender)
        assert appointment.ai_risk_score == 40
        assert appointment.risk_level == RiskLevel.MEDIUM

    async def test_sends_booking_confirmation_after_commit(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(1, 14), sender)

        [note] = sender.of_kind(NotificationKind.BOOKING_CONFIRMATION)
        assert note.recipient.email == client.email
        assert note.fields["appointment_id"] == str(appointment.id)
        assert note.fields["time_local"] == "2:00 PM"

        events = (await session.execute(select(OutboxEvent))).scalars().all()
        assert [e.status for e in events] == [OutboxStatus.DONE]

    async def test_scenario_conflict_and_neighbours(self, session, business, service, make_client, sender):
        """14:00 exists; 14:30 conflicts; 13:00 fits; 17:30 runs past closing."""
        first, second = await make_client(), await make_client()
        existing = await book(session, first, business, service, local(1, 14), sender)

        with pytest.raises(ConflictError) as exc:
            await book(session, second, business, service, local(1, 14, 30), sender)
        assert exc.value.details["conflicting_appointment_id"] == str(existing.id)

        earlier = await book(session, second, business, service, local(1, 13), sender)
        assert earlier.status == AppointmentStatus.CONFIRMED

        with pytest.raises(ValidationError):
            await book(session, second, business, service, local(1, 17, 30), sender)

    async def test_rejects_past_and_naive(self, session, business, service, make_client, sender):
        client = await make_client()
        with pytest.raises(ValidationError):
            await book(session, client, business, service, NOW - timedelta(minutes=1), sender)
        with pytest.raises(ValidationError):
            await book(session, client, business, service, NOW, sender)
        with pytest.raises(ValidationError):
            await book(session, client, business, service, datetime(2030, 1, 17, 14, 0), sender)

    async def test_unknown_service_and_foreign_service(self, session, business, service, make_client, sender):
        client = await make_client()
        with pytest.raises(NotFoundError):
            await create_appointment(session, client.id, business.id, 999, local(1, 14), now=NOW, sender=sender)

        other = Service(business_id=business.id + 100, name="Elsewhere", duration_minutes=30, price_cents=0)
        session.add(other)
        await session.commit()
        with pytest.raises(ValidationError):
            await create_appointment(session, client.id, business.id, other.id, local(1, 14), now=NOW, sender=sender)

    async def test_returning_client_flag(self, session, business, service, make_client, sender):
        client = await make_client()
        past = await book(session, client, business, service, local(1, 9), sender)
        await set_appointment_outcome(session, past.id, AppointmentStatus.COMPLETED)

        later = await book(session, client, business, service, local(10, 11), sender)
        assert later.is_returning_client is True
        assert later.booking_window_days == 11
        assert later.ai_risk_score == 0
        assert later.risk_level == RiskLevel.LOW

    async def test_floated_blocks(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(1, 14), sender)
        appointment.status = AppointmentStatus.FLOATED
        await session.commit()
        with pytest.raises(ConflictError):
            await book(session, await make_client(), business, service, local(1, 14), sender)


# ============================================================================
# RESCHEDULE
# ============================================================================

class TestReschedule:

    async def test_recomputes_and_clears_poll(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(0, 14), sender)
        assert await issue_reminder(session, appointment.id, NOW) is not None

        moved = await reschedule_appointment(session, appointment.id, local(9, 16), now=NOW)
        assert moved.appointment_hour == 16
        assert moved.booking_window_days == 10
        assert moved.ai_risk_score == 20
        assert moved.poll_sent_at is None
        assert moved.poll_response is None
        assert moved.confirmation_deadline is None

    async def test_uses_current_client_stats(self, session, business, service, make_client, sender):
        """The score is re-derived, not copied forward."""
        client = await make_client()
        appointment = await book(session, client, business, service, local(10, 10), sender)
        assert appointment.ai_risk_score == 20

        row = await session.get(ClientProfile, client.id)
        row.cancel_rate = 50.0
        row.no_show_rate = 50.0
        await session.commit()

        moved = await reschedule_appointment(session, appointment.id, local(10, 11), now=NOW)
        assert moved.ai_risk_score == 20 + 15 + 20

    async def test_own_slot_is_not_a_conflict(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(1, 14), sender)
        moved = await reschedule_appointment(session, appointment.id, local(1, 14, 30), now=NOW)
        assert moved.starts_at == local(1, 14, 30)

    async def test_conflict_with_other(self, session, business, service, make_client, sender):
        a = await book(session, await make_client(), business, service, local(1, 10), sender)
        await book(session, await make_client(), business, service, local(1, 14), sender)
        with pytest.raises(ConflictError):
            await reschedule_appointment(session, a.id, local(1, 13, 30), now=NOW)

    async def test_terminal_cannot_be_rescheduled(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(1, 14), sender)
        await cancel_appointment(session, appointment.id, now=NOW, sender=sender)
        with pytest.raises(StateError):
            await reschedule_appointment(session, appointment.id, local(2, 14), now=NOW)

    async def test_past_target(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(1, 14), sender)
        with pytest.raises(ValidationError):
            await reschedule_appointment(session, appointment.id, NOW - timedelta(hours=1), now=NOW)


# ============================================================================
# CANCEL AND OUTCOMES
# ============================================================================

class TestCancelAndOutcome:

    async def test_cancel_updates_client(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(1, 14), sender)
        cancelled = await cancel_appointment(session, appointment.id, now=NOW, sender=sender)
        assert cancelled.status == AppointmentStatus.CANCELLED

        await session.refresh(client)
        assert client.cancel_count == 1
        assert client.cancel_rate == 100.0

    async def test_cancel_twice_is_idempotent(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(1, 14), sender)
        await cancel_appointment(session, appointment.id, now=NOW, sender=sender)
        again = await cancel_appointment(session, appointment.id, now=NOW, sender=sender)
        assert again.status == AppointmentStatus.CANCELLED

        await session.refresh(client)
        assert client.cancel_count == 1
        advances = (
            await session.execute(select(OutboxEvent).where(OutboxEvent.kind == "waitlist_advance"))
        ).scalars().all()
        assert len(advances) == 1

    async def test_cancelled_slot_is_free_again(self, session, business, service, make_client, sender):
        appointment = await book(session, await make_client(), business, service, local(1, 14), sender)
        await cancel_appointment(session, appointment.id, now=NOW, sender=sender)
        rebooked = await book(session, await make_client(), business, service, local(1, 14), sender)
        assert rebooked.status == AppointmentStatus.CONFIRMED

    async def test_completed_and_no_show(self, session, business, service, make_client, sender):
        client = await make_client()
        a = await book(session, client, business, service, local(1, 9), sender)
        b = await book(session, client, business, service, local(1, 11), sender)

        done = await set_appointment_outcome(session, a.id, AppointmentStatus.COMPLETED)
        missed = await set_appointment_outcome(session, b.id, AppointmentStatus.NO_SHOW)
        assert done.status == AppointmentStatus.COMPLETED
        assert missed.status == AppointmentStatus.NO_SHOW

        await session.refresh(client)
        assert client.completed_appointments == 1
        assert client.last_appointment_at == local(1, 9)
        assert client.no_show_count == 1
        assert client.no_show_rate == 50.0

        # Outcomes do not advance the waitlist
        advances = (
            await session.execute(select(OutboxEvent).where(OutboxEvent.kind == "waitlist_advance"))
        ).scalars().all()
        assert advances == []

    async def test_terminal_transitions_rejected(self, session, business, service, make_client, sender):
        client = await make_client()
        a = await book(session, client, business, service, local(1, 9), sender)
        await set_appointment_outcome(session, a.id, AppointmentStatus.COMPLETED)

        with pytest.raises(StateError):
            await cancel_appointment(session, a.id, now=NOW, sender=sender)
        with pytest.raises(StateError):
            await set_appointment_outcome(session, a.id, AppointmentStatus.NO_SHOW)

    async def test_outcome_must_be_completed_or_no_show(self, session, business, service, make_client, sender):
        a = await book(session, await make_client(), business, service, local(1, 9), sender)
        with pytest.raises(ValidationError):
            await set_appointment_outcome(session, a.id, AppointmentStatus.CANCELLED)

    async def test_unknown_id(self, session):
        with pytest.raises(NotFoundError):
            await cancel_appointment(session, uuid.uuid4(), now=NOW)

    async def test_listing_newest_first(self, session, business, service, make_client, sender):
        client = await make_client()
        a = await book(session, client, business, service, local(1, 9), sender)
        b = await book(session, client, business, service, local(2, 9), sender)
        assert [x.id for x in await list_client_appointments(session, client.id)] == [b.id, a.id]


# ============================================================================
# CONFIRMATION CYCLE
# ============================================================================

class TestConfirmation:

    async def test_reminder_sets_deadline_two_hours_before(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(0, 14), sender)

        event_id = await issue_reminder(session, appointment.id, NOW)
        assert event_id is not None
        await session.refresh(appointment)
        assert appointment.poll_sent_at == NOW
        assert appointment.confirmation_deadline == local(0, 12)

    async def test_reminder_deadline_is_now_when_close(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(0, 11), sender)
        await issue_reminder(session, appointment.id, NOW)
        await session.refresh(appointment)
        assert appointment.confirmation_deadline == NOW

    async def test_reminder_not_sent_outside_window_or_twice(self, session, business, service, make_client, sender):
        client = await make_client()
        far = await book(session, client, business, service, local(3, 14), sender)
        near = await book(session, client, business, service, local(0, 14), sender)
        far_id, near_id = far.id, near.id

        assert await issue_reminder(session, far_id, NOW) is None
        assert await issue_reminder(session, near_id, NOW) is not None
        assert await issue_reminder(session, near_id, NOW + timedelta(hours=1)) is None

    async def test_confirm_with_token(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(0, 14), sender)
        event_id = await issue_reminder(session, appointment.id, NOW)
        event = await session.get(OutboxEvent, event_id)
        token = event.payload["fields"]["confirm_url"].split("token=")[1]

        confirmed = await confirm_appointment(session, token, now=NOW + timedelta(hours=1))
        assert confirmed.poll_response == "confirmed"
        assert confirmed.status == AppointmentStatus.CONFIRMED

    async def test_confirm_with_expired_token(self, session, business, service, make_client, sender):
        """A token issued 25 hours ago is rejected as expired."""
        client = await make_client()
        appointment = await book(session, client, business, service, local(3, 14), sender)
        issued = NOW - timedelta(hours=25)
        token = issue_token(TokenPurpose.CONFIRM, appointment.id, issued)
        appointment.poll_sent_at = token.issued_at
        await session.commit()

        with pytest.raises(ExpiredTokenError):
            await confirm_appointment(session, token.value, now=NOW)

    async def test_confirm_superseded_token(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(0, 14), sender)
        stale = issue_token(TokenPurpose.CONFIRM, appointment.id, NOW - timedelta(hours=1))
        await issue_reminder(session, appointment.id, NOW)
        with pytest.raises(StateError):
            await confirm_appointment(session, stale.value, now=NOW)

    async def test_confirm_cancelled_appointment(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, client, business, service, local(0, 14), sender)
        event_id = await issue_reminder(session, appointment.id, NOW)
        event = await session.get(OutboxEvent, event_id)
        token = event.payload["fields"]["confirm_url"].split("token=")[1]
        await cancel_appointment(session, appointment.id, now=NOW, sender=sender)

        with pytest.raises(StateError):
            await confirm_appointment(session, token, now=NOW)

    async def test_confirm_missing_token(self, session):
        with pytest.raises(ValidationError):
            await confirm_appointment(session, None, now=NOW)
