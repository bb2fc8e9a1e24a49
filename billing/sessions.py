"""
Hourly and night session lifecycle.

An hourly stay starts as an ``ActiveHourlyVehicle`` and is settled into an
``HourlySession`` when the timer stops. Settlement is two commits: the
session insert, then the active-row delete. If the second one fails the
active row is left behind and logged; ``discard_timer`` removes it.
"""

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from billing import store
from billing.errors import StateError, StorageError, ValidationError
from billing.ledger import reconcile
from billing.tariff import (
    DEFAULT_HOURLY_RATE, compute_hourly_fee, night_price, to_amount, to_datetime,
)
from models.models import ActiveHourlyVehicle, HourlySession, NightSession

logger = logging.getLogger(__name__)


def normalize_vehicle_number(value):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Vehicle number is required.")
    return value.strip().upper()


# Active timers


def find_active(db, vehicle_number):
    """The running timer for a normalized vehicle number, if any."""
    try:
        return db.query(ActiveHourlyVehicle).filter_by(vehicle_number=vehicle_number).first()
    except SQLAlchemyError as error:
        logger.exception("Failed to look up active vehicle %s", vehicle_number)
        raise StorageError("Failed to load active vehicles.") from error


def start_timer(db, vehicle_number, hourly_rate=None, created_by="unknown", clock=datetime.now):
    """Start the clock for a vehicle; one running timer per vehicle number."""
    number = normalize_vehicle_number(vehicle_number)
    rate = DEFAULT_HOURLY_RATE if hourly_rate is None else to_amount(
        hourly_rate, "hourly rate", allow_strings=True
    )
    if rate <= 0:
        raise ValidationError("Invalid hourly rate.")

    if find_active(db, number):
        raise StateError("Vehicle already active.")

    now = clock()
    active = ActiveHourlyVehicle(
        vehicle_number=number,
        hourly_rate=rate,
        start_time=now,
        created_by=created_by,
        created_at=now,
    )
    db.add(active)
    try:
        db.commit()
    except IntegrityError as error:
        # another attendant started the same vehicle first
        db.rollback()
        raise StateError("Vehicle already active.") from error
    except SQLAlchemyError as error:
        db.rollback()
        logger.exception("Failed to add vehicle %s", number)
        raise StorageError("Failed to add vehicle.") from error
    logger.info("Started timer for %s at %.2f/h", number, rate)
    return active


def live_fee(active, clock=datetime.now):
    """Running fee of an active vehicle, for the countdown display."""
    return compute_hourly_fee(active.start_time, active.hourly_rate, clock=clock)


def stop_timer(db, active_id, created_by="unknown", paid=False, clock=datetime.now):
    """
    Settle an active vehicle into an hourly session.

    With ``paid`` set the session is recorded as paid in full.
    """
    active = store.load_record(db, ActiveHourlyVehicle, active_id)
    end_time = clock()
    fee = compute_hourly_fee(active.start_time, active.hourly_rate, end_time=end_time)

    session = HourlySession(
        vehicle_number=active.vehicle_number,
        hourly_rate=active.hourly_rate,
        start_time=active.start_time,
        end_time=end_time,
        elapsed_minutes=fee.elapsed_minutes,
        billable_minutes=fee.billable_minutes,
        billable_hours=fee.billable_hours,
        total_price=fee.total_price,
        buffer_applied=fee.buffer_applied,
        created_by=created_by,
        created_at=end_time,
    )
    reconcile(session, fee.total_price if paid else 0.0, end_time)
    store.add_record(db, session, "store hourly session")
    number, session_id = session.vehicle_number, session.id

    try:
        db.delete(active)
        store.commit(db, "remove active vehicle")
    except StorageError:
        logger.warning(
            "Hourly session %s stored but active vehicle %s was not removed",
            session_id, active_id,
        )

    logger.info(
        "Settled %s: %d min, %dh, %.2f%s",
        number, fee.elapsed_minutes, fee.billable_hours,
        fee.total_price, " (buffer)" if fee.buffer_applied else "",
    )
    return session


def discard_timer(db, active_id):
    """Remove an active vehicle without billing it."""
    store.delete_record(db, ActiveHourlyVehicle, active_id)


# Night sessions


def record_night_session(db, vehicle_number, price=None, timestamp=None,
                         created_by="unknown", clock=datetime.now):
    number = normalize_vehicle_number(vehicle_number)
    amount = night_price(price)
    now = clock()
    when = to_datetime(timestamp, "timestamp") if timestamp is not None else now

    session = NightSession(
        vehicle_number=number,
        timestamp=when,
        price=amount,
        created_by=created_by,
        created_at=now,
    )
    reconcile(session, 0.0, now)
    store.add_record(db, session, "store night session")
    logger.info("Recorded night session for %s at %.2f", number, amount)
    return session


# Super-admin edits


def edit_hourly_session(db, session_id, changes, clock=datetime.now):
    """Correct the billed price or hours of a settled session."""
    updates = {}
    if "totalPrice" in changes:
        updates["total_price"] = to_amount(changes["totalPrice"], "total price")
    if "billableHours" in changes:
        hours = changes["billableHours"]
        if isinstance(hours, bool) or not isinstance(hours, int) or hours < 1:
            raise ValidationError("Invalid billable hours.")
        updates["billable_hours"] = hours
    if not updates:
        raise ValidationError("No valid fields to update.")

    session = store.load_record(db, HourlySession, session_id)
    for field, value in updates.items():
        setattr(session, field, value)
    reconcile(session, float(session.paid_amount or 0), clock())
    store.commit(db, "update session")
    return session


def edit_night_session(db, session_id, changes, clock=datetime.now):
    """Correct the price or timestamp of a night session."""
    updates = {}
    if "price" in changes:
        updates["price"] = to_amount(changes["price"], "price")
    if changes.get("timestamp"):
        updates["timestamp"] = to_datetime(changes["timestamp"], "timestamp")
    if not updates:
        raise ValidationError("No valid fields to update.")

    session = store.load_record(db, NightSession, session_id)
    for field, value in updates.items():
        setattr(session, field, value)
    reconcile(session, float(session.paid_amount or 0), clock())
    store.commit(db, "update session")
    return session
