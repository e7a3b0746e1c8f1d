"""
Booking risk scoring and client reliability classification.

Every place that needs a risk score or a client risk profile calls into
this module; the rules are not repeated anywhere else.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from .models import RiskLevel, RiskProfile


# ────────────────────────────────────────────────────────────────
# Booking risk
# ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RiskInputs:
    booking_window_days: int
    appointment_hour: int
    is_returning_client: bool
    cancel_rate: float
    no_show_rate: float


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    level: RiskLevel


def booking_window_days(starts_at: datetime, now: datetime) -> int:
    """Whole days from now until the appointment, rounded up."""
    return math.ceil((starts_at - now) / timedelta(days=1))


def score_booking(inputs: RiskInputs) -> RiskAssessment:
    """
    Additive weighted score clamped to 0..100.

        window <= 1 day   +30
        window <= 3 days  +20
        window <= 7 days  +10
        hour < 8 or > 18  +15
        new client        +20
        cancel rate > 20  +15
        no-show rate > 10 +20
    """
    score = 0

    if inputs.booking_window_days <= 1:
        score += 30
    elif inputs.booking_window_days <= 3:
        score += 20
    elif inputs.booking_window_days <= 7:
        score += 10

    if inputs.appointment_hour < 8 or inputs.appointment_hour > 18:
        score += 15

    if not inputs.is_returning_client:
        score += 20
    if inputs.cancel_rate > 20:
        score += 15
    if inputs.no_show_rate > 10:
        score += 20

    score = max(0, min(100, score))
    return RiskAssessment(score=score, level=risk_level_for(score))


def risk_level_for(score: int) -> RiskLevel:
    if score >= 70:
        return RiskLevel.HIGH
    if score >= 40:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


# ────────────────────────────────────────────────────────────────
# Client reliability
# ────────────────────────────────────────────────────────────────

def rate_of(count: int, total: int) -> float:
    """Percentage of total; zero when nothing has been booked yet."""
    if total <= 0:
        return 0.0
    return count / total * 100


def classify_client(total_appointments: int, cancel_rate: float, no_show_rate: float) -> RiskProfile:
    if total_appointments < 3:
        return RiskProfile.NEW
    if cancel_rate <= 10 and no_show_rate <= 5:
        return RiskProfile.RELIABLE
    if cancel_rate > 40 or no_show_rate > 10:
        return RiskProfile.HIGH_RISK
    return RiskProfile.AT_RISK
