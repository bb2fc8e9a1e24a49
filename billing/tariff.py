"""
Tariff Calculator

Pure functions turning time into money:
- hourly fees from elapsed time, with the buffer rule and billable-hour rounding
- the flat night rate
- subscription expiry dates from a plan type and an anchor date

Nothing here touches the database or reads the wall clock directly; the
current time comes from the ``clock`` callable passed in by the caller.
"""

import calendar
import logging
import math
import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from billing.errors import ValidationError
from models.models import PlanType

logger = logging.getLogger(__name__)

BUFFER_MINUTES = 10
BUFFER_THRESHOLD_MINUTES = 60
DEFAULT_HOURLY_RATE = float(os.getenv("PARKING_HOURLY_RATE", "5"))
NIGHT_RATE = float(os.getenv("PARKING_NIGHT_RATE", "30"))

PLAN_DURATIONS = {
    PlanType.WEEKLY.value: timedelta(days=7),
    PlanType.BI_WEEKLY.value: timedelta(days=14),
}


@dataclass(frozen=True)
class HourlyFee:
    elapsed_minutes: int
    billable_minutes: int
    billable_hours: int
    total_price: float
    buffer_applied: bool

    def as_dict(self):
        return {
            "elapsedMinutes": self.elapsed_minutes,
            "billableMinutes": self.billable_minutes,
            "billableHours": self.billable_hours,
            "totalPrice": self.total_price,
            "bufferApplied": self.buffer_applied,
        }


# Input coercion


def to_amount(value, field="amount", allow_negative=False, allow_strings=False):
    """
    Validate a monetary input and return it as a float.

    Booleans are rejected even though they are ints. Strings are only
    accepted when ``allow_strings`` is set (form-style payloads).
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"Invalid {field}.")

    if isinstance(value, str):
        if not allow_strings or not value.strip():
            raise ValidationError(f"Invalid {field}.")
        try:
            value = float(value)
        except ValueError:
            raise ValidationError(f"Invalid {field}.") from None

    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}.") from None

    if not math.isfinite(amount):
        raise ValidationError(f"Invalid {field}.")
    if amount < 0 and not allow_negative:
        raise ValidationError(f"Invalid {field}.")
    return amount


def to_datetime(value, field="date"):
    """
    Parse ``value`` into a naive local ``datetime``.

    Accepts datetimes, dates and ISO-8601 strings (a trailing ``Z`` is
    read as UTC). Aware values are converted to local time.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid {field}.") from None
    else:
        raise ValidationError(f"Invalid {field}.")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


# Hourly parking


def compute_hourly_fee(start_time, hourly_rate, end_time=None, clock=datetime.now):
    """
    Compute the fee for an hourly session.

    Sessions longer than an hour get a 10 minute buffer added before
    rounding up to whole hours; shorter sessions are billed as at least
    one minute, and every session as at least one hour.

    Args:
        start_time: When the timer started
        hourly_rate: Price per billable hour
        end_time: When the timer stopped; ``clock()`` while still running
        clock: Time source used when ``end_time`` is missing

    Returns:
        HourlyFee: Elapsed, billable and price figures
    """
    rate = to_amount(hourly_rate, "hourly rate")
    start = to_datetime(start_time, "start time")
    end = to_datetime(end_time, "end time") if end_time is not None else clock()

    elapsed = max(0, math.floor((end - start).total_seconds() / 60))
    buffer_applied = elapsed > BUFFER_THRESHOLD_MINUTES

    if buffer_applied:
        billable_minutes = elapsed + BUFFER_MINUTES
    else:
        billable_minutes = max(1, elapsed)

    billable_hours = max(1, math.ceil(billable_minutes / 60))

    return HourlyFee(
        elapsed_minutes=elapsed,
        billable_minutes=billable_minutes,
        billable_hours=billable_hours,
        total_price=round(billable_hours * rate, 2),
        buffer_applied=buffer_applied,
    )


# Night parking


def night_price(price=None):
    """Return the entered night price, or the configured flat rate."""
    if price is None:
        return NIGHT_RATE
    return to_amount(price, "price", allow_strings=True)


# Subscriptions


def add_months(anchor, months=1):
    """
    Add calendar months, clamping to the last day of the target month
    (2024-01-31 + 1 month is 2024-02-29).
    """
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return anchor.replace(year=year, month=month, day=day)


def is_known_plan(plan_type):
    return plan_type in {plan.value for plan in PlanType}


def compute_expiry(anchor_date, plan_type):
    """
    Return the end of a plan period starting at ``anchor_date``.

    Unrecognized plan types are billed as monthly.
    """
    anchor = to_datetime(anchor_date, "register date")
    plan = plan_type.value if isinstance(plan_type, PlanType) else plan_type

    if plan in PLAN_DURATIONS:
        return anchor + PLAN_DURATIONS[plan]

    if plan != PlanType.MONTHLY.value:
        logger.warning("Unknown plan type %r, falling back to monthly", plan)
    return add_months(anchor, 1)
