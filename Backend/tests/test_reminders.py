"""
Tests for the reminder scheduler pass.

Run with: pytest Backend/tests/test_reminders.py -v
"""

from datetime import timedelta

from sqlalchemy import select

from app.appointments import confirm_appointment, create_appointment
from app.core.errors import DownstreamNotificationError
from app.models import Appointment, AppointmentStatus, OutboxEvent, OutboxStatus, WaitlistStatus
from app.notifications import NotificationKind
from app.reminders import run_reminder_pass
from app.waitlist import join_waitlist, line_entries

from conftest import NOW, TZ, local


async def book(session, business, service, client, starts_at, sender):
    return await create_appointment(
        session, client.id, business.id, service.id, starts_at, now=NOW, sender=sender
    )


async def reload(session, appointment) -> Appointment:
    return await session.get(Appointment, appointment.id, populate_existing=True)


# ============================================================================
# REMINDERS
# ============================================================================

class TestReminders:

    async def test_reminds_only_inside_the_window(self, session, business, service, make_client, sender):
        soon = await book(session, business, service, await make_client(), local(0, 14), sender)
        later = await book(session, business, service, await make_client(), local(2, 14), sender)

        report = await run_reminder_pass(session, now=NOW, sender=sender)

        assert report.reminders_sent == 1
        soon, later = await reload(session, soon), await reload(session, later)
        assert soon.poll_sent_at == NOW
        assert soon.confirmation_deadline == local(0, 12)
        assert later.poll_sent_at is None

        [reminder] = sender.of_kind(NotificationKind.APPOINTMENT_REMINDER)
        assert "/public/appointments/confirm?token=" in reminder.fields["confirm_url"]
        assert reminder.fields["appointment_id"] == str(soon.id)

    async def test_second_pass_does_not_remind_again(self, session, business, service, make_client, sender):
        await book(session, business, service, await make_client(), local(0, 14), sender)
        await run_reminder_pass(session, now=NOW, sender=sender)
        report = await run_reminder_pass(session, now=NOW + timedelta(minutes=30), sender=sender)

        assert report.reminders_sent == 0
        assert len(sender.of_kind(NotificationKind.APPOINTMENT_REMINDER)) == 1

    async def test_deadline_never_before_the_reminder(self, session, business, service, make_client, sender):
        """An appointment 90 minutes out gets a deadline of now, not 30 minutes ago."""
        appointment = await book(session, business, service, await make_client(), local(0, 11, 30), sender)
        await run_reminder_pass(session, now=NOW, sender=sender)
        appointment = await reload(session, appointment)
        assert appointment.confirmation_deadline == NOW


# ============================================================================
# AUTO-CANCEL
# ============================================================================

class TestAutoCancel:

    async def test_unconfirmed_past_deadline_is_cancelled(self, session, business, service, make_client, sender):
        client = await make_client()
        appointment = await book(session, business, service, client, local(0, 14), sender)
        await run_reminder_pass(session, now=NOW, sender=sender)

        report = await run_reminder_pass(session, now=local(0, 12, 1), sender=sender)

        assert report.appointments_cancelled == 1
        appointment = await reload(session, appointment)
        assert appointment.status == AppointmentStatus.CANCELLED
        await session.refresh(client)
        assert client.cancel_count == 1
        assert client.cancel_rate == 100.0

    async def test_confirmed_appointment_survives(self, session, business, service, make_client, sender):
        appointment = await book(session, business, service, await make_client(), local(0, 14), sender)
        await run_reminder_pass(session, now=NOW, sender=sender)
        token = sender.of_kind(NotificationKind.APPOINTMENT_REMINDER)[0].fields["confirm_url"].split("token=")[1]
        await confirm_appointment(session, token, now=NOW + timedelta(minutes=5))

        report = await run_reminder_pass(session, now=local(0, 12, 1), sender=sender)

        assert report.appointments_cancelled == 0
        appointment = await reload(session, appointment)
        assert appointment.status == AppointmentStatus.CONFIRMED
        assert appointment.poll_response == "confirmed"

    async def test_before_deadline_nothing_happens(self, session, business, service, make_client, sender):
        appointment = await book(session, business, service, await make_client(), local(0, 14), sender)
        await run_reminder_pass(session, now=NOW, sender=sender)
        report = await run_reminder_pass(session, now=local(0, 11, 59), sender=sender)
        assert report.appointments_cancelled == 0
        assert (await reload(session, appointment)).status == AppointmentStatus.CONFIRMED

    async def test_auto_cancel_offers_slot_to_waitlist(self, session, business, service, make_client, sender):
        booked = await make_client()
        waiting = await make_client()
        await book(session, business, service, booked, local(0, 14), sender)
        await join_waitlist(session, waiting.id, business.id, service.id, TZ)
        await run_reminder_pass(session, now=NOW, sender=sender)

        report = await run_reminder_pass(session, now=local(0, 12, 1), sender=sender)

        assert report.appointments_cancelled == 1
        [entry] = await line_entries(session, business.id, service.id)
        assert entry.status == WaitlistStatus.OFFERED
        assert entry.offered_datetime == local(0, 14)
        [offer] = sender.of_kind(NotificationKind.WAITLIST_OFFER)
        assert offer.recipient.email == waiting.email


# ============================================================================
# OFFERS AND OUTBOX RETRIES
# ============================================================================

class TestSweeps:

    async def test_expires_lapsed_offers(self, session, business, service, make_client, sender):
        from app.appointments import cancel_appointment

        first, second = await make_client(), await make_client()
        await join_waitlist(session, first.id, business.id, service.id, TZ)
        await join_waitlist(session, second.id, business.id, service.id, TZ)
        appointment = await book(session, business, service, await make_client(), local(3, 14), sender)
        await cancel_appointment(session, appointment.id, now=NOW, sender=sender)

        report = await run_reminder_pass(session, now=NOW + timedelta(hours=24, minutes=5), sender=sender)

        assert report.offers_expired == 1
        assert report.offers_created == 1
        [entry] = await line_entries(session, business.id, service.id)
        assert entry.client_id == second.id
        assert entry.position == 1
        assert entry.status == WaitlistStatus.OFFERED

    async def test_failed_notification_is_retried(self, session, business, service, make_client, sender):
        sender.fail_with = DownstreamNotificationError("email", "Resend returned 503")
        await book(session, business, service, await make_client(), local(2, 14), sender)

        event = (await session.execute(select(OutboxEvent))).scalar_one()
        assert event.status == OutboxStatus.PENDING
        assert event.attempts == 1
        assert "503" in event.last_error

        sender.fail_with = None
        report = await run_reminder_pass(session, now=NOW + timedelta(minutes=10), sender=sender)

        assert report.events_delivered == 1
        await session.refresh(event)
        assert event.status == OutboxStatus.DONE
        assert len(sender.of_kind(NotificationKind.BOOKING_CONFIRMATION)) == 1

    async def test_still_failing_counts_as_failed(self, session, business, service, make_client, sender):
        sender.fail_with = DownstreamNotificationError("sms", "unreachable")
        await book(session, business, service, await make_client(), local(2, 14), sender)

        report = await run_reminder_pass(session, now=NOW + timedelta(minutes=10), sender=sender)

        assert report.events_failed == 1
        event = (await session.execute(select(OutboxEvent))).scalar_one()
        assert event.attempts == 2
        assert event.status == OutboxStatus.PENDING

    async def test_transport_crash_does_not_stop_the_pass(self, session, business, service, make_client, sender):
        """A raw connection error from the transport is recorded, not raised."""
        sender.fail_with = ConnectionError("twilio unreachable")
        soon = await book(session, business, service, await make_client(), local(0, 14), sender)
        soon_id = soon.id

        report = await run_reminder_pass(session, now=NOW, sender=sender)

        assert report.reminders_sent == 1
        # reminder fails in step 1, then both events fail again in the final drain
        assert report.events_failed == 3
        soon = await session.get(Appointment, soon_id, populate_existing=True)
        assert soon.status == AppointmentStatus.CONFIRMED
        assert soon.poll_sent_at == NOW

        events = (await session.execute(select(OutboxEvent).order_by(OutboxEvent.id))).scalars().all()
        assert [e.status for e in events] == [OutboxStatus.PENDING, OutboxStatus.PENDING]
        assert all(e.last_error.startswith("ConnectionError: twilio unreachable") for e in events)
