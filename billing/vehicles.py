"""
Subscription vehicle registry: registration and super-admin edits.

Keeps ``expires_at`` in step with ``register_date`` and ``plan_type``, and
the ``paid`` flag in step with ``price``.
"""

import logging
from datetime import datetime

from billing import store
from billing.errors import ValidationError
from billing.ledger import reconcile
from billing.sessions import normalize_vehicle_number
from billing.tariff import compute_expiry, is_known_plan, to_amount, to_datetime
from models.models import PlanType, Vehicle

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "vehicleNumber", "phone", "registerDate", "price")


def _plan_type(value):
    if not isinstance(value, str) or not is_known_plan(value):
        raise ValidationError("Invalid plan type.")
    return value


def _text(value):
    return isinstance(value, str) and bool(value.strip())


def register_vehicle(db, payload, created_by="unknown", role=None, clock=datetime.now):
    """
    Register a vehicle on a plan.

    Required: name, vehicleNumber, phone, registerDate, price.
    ``planType`` defaults to monthly.
    """
    missing = [field for field in REQUIRED_FIELDS if payload.get(field) in (None, "")]
    if missing:
        raise ValidationError("Missing required fields.")

    register_date = to_datetime(payload["registerDate"], "register date")
    price = to_amount(payload["price"], "price", allow_strings=True)
    plan_type = _plan_type(payload.get("planType") or PlanType.MONTHLY.value)
    now = clock()

    vehicle = Vehicle(
        name=str(payload["name"]).strip(),
        vehicle_number=normalize_vehicle_number(payload["vehicleNumber"]),
        phone=str(payload["phone"]).strip(),
        register_date=register_date,
        plan_type=plan_type,
        price=price,
        expires_at=compute_expiry(register_date, plan_type),
        notes=payload.get("notes") or "",
        created_by=created_by,
        created_by_role=role,
        created_at=now,
    )
    reconcile(vehicle, 0.0, now)
    store.add_record(db, vehicle, "register vehicle")

    logger.info(
        "Registered vehicle %s on %s plan until %s",
        vehicle.vehicle_number, plan_type, vehicle.expires_at,
    )
    return vehicle


def update_vehicle(db, vehicle_id, payload, clock=datetime.now):
    """Apply a partial edit; only recognised, well-typed fields are used."""
    vehicle = store.load_record(db, Vehicle, vehicle_id)
    updates = {}

    if "price" in payload:
        updates["price"] = to_amount(payload["price"], "price", allow_strings=True)
    if _text(payload.get("name")):
        updates["name"] = payload["name"].strip()
    if _text(payload.get("vehicleNumber")):
        updates["vehicle_number"] = normalize_vehicle_number(payload["vehicleNumber"])
    if _text(payload.get("phone")):
        updates["phone"] = payload["phone"].strip()
    if isinstance(payload.get("notes"), str):
        updates["notes"] = payload["notes"]
    if payload.get("planType"):
        updates["plan_type"] = _plan_type(payload["planType"])
    if payload.get("registerDate"):
        updates["register_date"] = to_datetime(payload["registerDate"], "register date")

    if not updates:
        raise ValidationError("No valid fields to update.")

    if "plan_type" in updates or "register_date" in updates:
        updates["expires_at"] = compute_expiry(
            updates.get("register_date", vehicle.register_date),
            updates.get("plan_type", vehicle.plan_type),
        )

    for field, value in updates.items():
        setattr(vehicle, field, value)
    reconcile(vehicle, float(vehicle.paid_amount or 0), clock())
    store.commit(db, "update vehicle")

    logger.info("Updated vehicle %s: %s", vehicle_id, ", ".join(sorted(updates)))
    return vehicle
