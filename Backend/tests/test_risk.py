"""
Tests for risk module.

Run with: pytest Backend/tests/test_risk.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.models import RiskLevel, RiskProfile
from app.risk import (
    RiskInputs,
    booking_window_days,
    classify_client,
    rate_of,
    risk_level_for,
    score_booking,
)


def inputs(**overrides) -> RiskInputs:
    fields = dict(
        booking_window_days=14,
        appointment_hour=10,
        is_returning_client=True,
        cancel_rate=0.0,
        no_show_rate=0.0,
    )
    fields.update(overrides)
    return RiskInputs(**fields)


# ============================================================================
# BOOKING SCORE TESTS
# ============================================================================

class TestScoreBooking:
    """Tests for the additive booking risk score."""

    def test_reliable_returning_client_far_out_scores_zero(self):
        """No rule fires for a returning client booking two weeks out at 10:00."""
        result = score_booking(inputs())
        assert result.score == 0
        assert result.level == RiskLevel.LOW

    @pytest.mark.parametrize(
        "window, expected",
        [(0, 30), (1, 30), (2, 20), (3, 20), (4, 10), (7, 10), (8, 0)],
    )
    def test_booking_window_bands(self, window, expected):
        """Window bands are mutually exclusive; the first match wins."""
        assert score_booking(inputs(booking_window_days=window)).score == expected

    @pytest.mark.parametrize("hour, expected", [(7, 15), (8, 0), (18, 0), (19, 15)])
    def test_off_hours(self, hour, expected):
        """Hours before 8 or after 18 add 15."""
        assert score_booking(inputs(appointment_hour=hour)).score == expected

    def test_new_client_adds_twenty(self):
        assert score_booking(inputs(is_returning_client=False)).score == 20

    def test_rate_thresholds_are_strict(self):
        """cancelRate must exceed 20 and noShowRate must exceed 10."""
        assert score_booking(inputs(cancel_rate=20.0, no_show_rate=10.0)).score == 0
        assert score_booking(inputs(cancel_rate=20.1)).score == 15
        assert score_booking(inputs(no_show_rate=10.1)).score == 20

    def test_every_rule_firing_is_clamped(self):
        """30 + 15 + 20 + 15 + 20 = 100, still within bounds."""
        result = score_booking(
            inputs(
                booking_window_days=0,
                appointment_hour=6,
                is_returning_client=False,
                cancel_rate=50.0,
                no_show_rate=50.0,
            )
        )
        assert result.score == 100
        assert result.level == RiskLevel.HIGH

    def test_deterministic(self):
        """Identical inputs always give identical output."""
        a = inputs(booking_window_days=2, is_returning_client=False, cancel_rate=25.0)
        assert score_booking(a) == score_booking(a)
        assert score_booking(a).score == 55


class TestRiskLevel:
    """Tests for the three-tier label."""

    @pytest.mark.parametrize(
        "score, level",
        [(0, RiskLevel.LOW), (39, RiskLevel.LOW), (40, RiskLevel.MEDIUM), (69, RiskLevel.MEDIUM), (70, RiskLevel.HIGH)],
    )
    def test_boundaries(self, score, level):
        assert risk_level_for(score) == level


class TestBookingWindow:
    """Tests for booking_window_days."""

    def test_rounds_partial_days_up(self):
        now = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert booking_window_days(now + timedelta(hours=5), now) == 1
        assert booking_window_days(now + timedelta(days=1), now) == 1
        assert booking_window_days(now + timedelta(days=1, minutes=1), now) == 2


# ============================================================================
# CLIENT CLASSIFICATION TESTS
# ============================================================================

class TestClassifyClient:
    """Tests for the client risk profile."""

    def test_fewer_than_three_appointments_is_new(self):
        assert classify_client(2, 100.0, 100.0) == RiskProfile.NEW

    def test_reliable(self):
        assert classify_client(10, 10.0, 5.0) == RiskProfile.RELIABLE

    def test_high_risk_on_cancellations(self):
        assert classify_client(10, 41.0, 0.0) == RiskProfile.HIGH_RISK

    def test_high_risk_on_no_shows(self):
        assert classify_client(10, 0.0, 11.0) == RiskProfile.HIGH_RISK

    def test_at_risk_in_between(self):
        """cancelRate 20 is above the reliable cap but below high risk."""
        assert classify_client(10, 20.0, 0.0) == RiskProfile.AT_RISK

    def test_rate_of(self):
        assert rate_of(2, 10) == 20.0
        assert rate_of(1, 0) == 0.0
