"""
Parking Billing Service - Main Application
JSON API used by the attendant and admin screens of a small parking
operator: subscription vehicles, hourly and night parking, payments and
renewals.

This application provides:
- Vehicle registration on monthly, weekly and bi-weekly plans
- Hourly timers settled into billed sessions
- Flat-rate night sessions
- Incremental and absolute payment updates with paid/partial/unpaid status
- A super-admin dashboard with monthly totals

Signing in is handled elsewhere; requests arrive with ``role`` and
``user_email`` already stored in the Flask session.
"""

import logging
import math
import os
from datetime import datetime
from functools import wraps

from flask import Flask, jsonify, request, session
from sqlalchemy import and_, func, not_, or_
from sqlalchemy.exc import SQLAlchemyError

from billing import ledger, renewal, sessions, store, vehicles
from billing.errors import BillingError, ValidationError
from billing.ledger import PaymentStatus, payment_summary
from billing.tariff import add_months
from models.models import (
    ActiveHourlyVehicle, HourlySession, NightSession, Role, SessionLocal, Vehicle,
    create_db,
)

# Application Configuration & Initialization

logging.basicConfig(
    level=os.getenv("PARKING_LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config["SECRET_KEY"] = os.getenv("PARKING_SECRET_KEY", "dev-key-change-me")
app.config["CLOCK"] = datetime.now
app.config["DEFAULT_PAGE_SIZE"] = 20
app.config["MAX_PAGE_SIZE"] = 100

create_db()

ADMIN_ROLES = (Role.ADMIN.value, Role.SUPER_ADMIN.value)
SUPER_ADMIN_ONLY = (Role.SUPER_ADMIN.value,)

PAYABLE_MODELS = {
    "vehicles": Vehicle,
    "hourly": HourlySession,
    "night": NightSession,
}


def current_clock():
    """The time source every billing call runs against."""
    return app.config["CLOCK"]


def current_time():
    return current_clock()()


def current_user():
    return session.get("user_email", "unknown")


def json_body():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Invalid request body.")
    return payload


def ok(status=200, **data):
    return jsonify(success=True, **data), status


def failure(message, status):
    return jsonify(success=False, message=message), status


# Access Control Decorators


def login_required(view_function):
    """
    Decorator to ensure the request carries a signed-in role.
    Answers 401 when it does not.
    """
    @wraps(view_function)
    def authentication_wrapper(*args, **kwargs):
        if not session.get("role"):
            return failure("Authentication required.", 401)
        return view_function(*args, **kwargs)
    return authentication_wrapper


def role_required(allowed_roles):
    """
    Decorator to ensure the signed-in role is one of ``allowed_roles``.

    Args:
        allowed_roles: Roles permitted to call the route
    """
    def role_decorator(view_function):
        @wraps(view_function)
        def role_wrapper(*args, **kwargs):
            if session.get("role") not in allowed_roles:
                if allowed_roles == SUPER_ADMIN_ONLY:
                    return failure("Only super admins can do this.", 403)
                return failure("Not authorized.", 403)
            return view_function(*args, **kwargs)
        return role_wrapper
    return role_decorator


# Error Handling


@app.errorhandler(BillingError)
def handle_billing_error(error):
    if error.status_code >= 500:
        logger.error("Request to %s failed: %s", request.path, error.message)
    return failure(error.message, error.status_code)


@app.errorhandler(SQLAlchemyError)
def handle_database_error(error):
    logger.exception("Database error on %s", request.path)
    return failure("Failed to load records.", 500)


@app.errorhandler(404)
def handle_not_found(_):
    return failure("Not found.", 404)


@app.errorhandler(405)
def handle_method_not_allowed(_):
    return failure("Method not allowed.", 405)


# Serialization Helpers


def _iso(value):
    return value.isoformat() if value else None


def serialize_vehicle(vehicle, now, with_renewals=False):
    data = {
        "id": vehicle.id,
        "name": vehicle.name,
        "vehicleNumber": vehicle.vehicle_number,
        "phone": vehicle.phone,
        "planType": vehicle.plan_type,
        "price": vehicle.amount_due,
        "registerDate": _iso(vehicle.register_date),
        "expiresAt": _iso(vehicle.expires_at),
        "expired": vehicle.is_expired(now),
        "notes": vehicle.notes,
        "createdBy": vehicle.created_by,
        "renewedBy": vehicle.renewed_by,
        "payment": payment_summary(vehicle),
    }
    if with_renewals:
        data["renewals"] = [
            {
                "renewedAt": _iso(entry.renewed_at),
                "previousExpiry": _iso(entry.previous_expiry),
                "newExpiry": _iso(entry.new_expiry),
                "paymentAmount": entry.payment_amount,
                "renewedBy": entry.renewed_by,
            }
            for entry in vehicle.renewals
        ]
    return data


def serialize_hourly(record):
    return {
        "id": record.id,
        "vehicleNumber": record.vehicle_number,
        "hourlyRate": record.hourly_rate,
        "startTime": _iso(record.start_time),
        "endTime": _iso(record.end_time),
        "elapsedMinutes": record.elapsed_minutes,
        "billableMinutes": record.billable_minutes,
        "billableHours": record.billable_hours,
        "totalPrice": record.amount_due,
        "bufferApplied": record.buffer_applied,
        "createdBy": record.created_by,
        "payment": payment_summary(record),
    }


def serialize_night(record):
    return {
        "id": record.id,
        "vehicleNumber": record.vehicle_number,
        "timestamp": _iso(record.timestamp),
        "price": record.amount_due,
        "createdBy": record.created_by,
        "payment": payment_summary(record),
    }


def serialize_active(active, clock):
    fee = sessions.live_fee(active, clock=clock)
    return {
        "id": active.id,
        "vehicleNumber": active.vehicle_number,
        "hourlyRate": active.hourly_rate,
        "startTime": _iso(active.start_time),
        "createdBy": active.created_by,
        "current": fee.as_dict(),
    }


# Query Helpers


def paginate(query):
    """
    Slice ``query`` according to the ``page`` and ``per_page`` arguments.

    Returns:
        tuple: (items, pagination info)
    """
    page = max(1, request.args.get("page", 1, type=int))
    per_page = request.args.get("per_page", app.config["DEFAULT_PAGE_SIZE"], type=int)
    per_page = min(app.config["MAX_PAGE_SIZE"], max(1, per_page))

    total = query.order_by(None).count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return items, {
        "page": page,
        "perPage": per_page,
        "total": total,
        "totalPages": max(1, math.ceil(total / per_page)),
    }


def apply_payment_filter(query, model, status):
    """
    Narrow ``query`` to records in the requested payment state.

    Mirrors ``ledger.payment_status``: a set ``paid`` flag only counts
    while nothing remains due.
    """
    if not status:
        return query
    settled = and_(model.paid.is_(True), model.paid_amount >= model.amount_due)
    if status == PaymentStatus.PAID.value:
        return query.filter(settled)
    if status == PaymentStatus.PARTIAL.value:
        return query.filter(not_(settled), model.paid_amount > 0)
    if status == PaymentStatus.UNPAID.value:
        return query.filter(not_(settled), model.paid_amount <= 0)
    raise ValidationError("Invalid payment status.")


def apply_search(query, columns, search_query):
    if not search_query:
        return query
    pattern = f"%{search_query.strip()}%"
    return query.filter(or_(*(column.ilike(pattern) for column in columns)))


def list_records(db, model, search_columns, order_column):
    query = db.query(model).order_by(order_column.desc())
    query = apply_search(query, search_columns, request.args.get("q", ""))
    query = apply_payment_filter(query, model, request.args.get("status"))
    return paginate(query)


# Health


@app.route("/health")
def health():
    return jsonify(status="ok", service="parking-billing")


# Subscription Vehicles


@app.route("/api/vehicles", methods=["POST"])
@login_required
@role_required(ADMIN_ROLES)
def register_vehicle():
    """Register a vehicle on a plan and compute its first expiry."""
    payload = json_body()
    with SessionLocal() as db:
        vehicle = vehicles.register_vehicle(
            db, payload, created_by=current_user(), role=session.get("role"), clock=current_clock(),
        )
        return ok(
            201,
            message="Vehicle registered successfully.",
            id=vehicle.id,
            expiresAt=_iso(vehicle.expires_at),
        )


@app.route("/api/vehicles")
@login_required
@role_required(ADMIN_ROLES)
def list_vehicles():
    """
    List vehicles, newest first, with search over name, number and phone
    and an optional payment-status filter.
    """
    now = current_time()
    with SessionLocal() as db:
        items, pagination = list_records(
            db,
            Vehicle,
            (Vehicle.name, Vehicle.vehicle_number, Vehicle.phone),
            Vehicle.created_at,
        )
        return ok(
            vehicles=[serialize_vehicle(vehicle, now) for vehicle in items],
            pagination=pagination,
        )


@app.route("/api/vehicles/<int:vehicle_id>")
@login_required
@role_required(ADMIN_ROLES)
def vehicle_detail(vehicle_id):
    with SessionLocal() as db:
        vehicle = store.load_record(db, Vehicle, vehicle_id)
        return ok(vehicle=serialize_vehicle(vehicle, current_time(), with_renewals=True))


@app.route("/api/vehicles/<int:vehicle_id>", methods=["PATCH"])
@login_required
@role_required(SUPER_ADMIN_ONLY)
def edit_vehicle(vehicle_id):
    payload = json_body()
    with SessionLocal() as db:
        vehicle = vehicles.update_vehicle(db, vehicle_id, payload, clock=current_clock())
        return ok(vehicle=serialize_vehicle(vehicle, current_time()))


@app.route("/api/vehicles/<int:vehicle_id>/renew", methods=["POST"])
@login_required
@role_required(ADMIN_ROLES)
def renew_vehicle(vehicle_id):
    """Renew an expired vehicle for one more plan period."""
    with SessionLocal() as db:
        result = renewal.renew(db, vehicle_id, renewed_by=current_user(), clock=current_clock())
        return ok(message="Vehicle renewed successfully.", **result.as_dict())


@app.route("/api/vehicles/<int:vehicle_id>/renew-payment", methods=["POST"])
@login_required
@role_required(ADMIN_ROLES)
def renew_vehicle_with_payment(vehicle_id):
    """Renew a vehicle, early if need be, and record the new period's payment."""
    payload = json_body()
    with SessionLocal() as db:
        result = renewal.renew_with_payment(
            db, vehicle_id, payload.get("amount"), renewed_by=current_user(), clock=current_clock(),
        )
        return ok(message="Vehicle renewed and payment recorded successfully.", **result.as_dict())


# Hourly Parking


@app.route("/api/active-hourly")
@login_required
@role_required(ADMIN_ROLES)
def list_active_hourly():
    """Running timers with their fee as of now, most recent first."""
    with SessionLocal() as db:
        active_vehicles = (
            db.query(ActiveHourlyVehicle)
            .order_by(ActiveHourlyVehicle.start_time.desc())
            .all()
        )
        return ok(vehicles=[serialize_active(active, current_clock()) for active in active_vehicles])


@app.route("/api/active-hourly", methods=["POST"])
@login_required
@role_required(ADMIN_ROLES)
def start_hourly():
    payload = json_body()
    with SessionLocal() as db:
        active = sessions.start_timer(
            db,
            payload.get("vehicleNumber"),
            payload.get("hourlyRate"),
            created_by=current_user(),
            clock=current_clock(),
        )
        return ok(201, id=active.id, startTime=_iso(active.start_time))


@app.route("/api/active-hourly", methods=["DELETE"])
@login_required
@role_required(ADMIN_ROLES)
def discard_hourly():
    """Drop a running timer without billing it."""
    active_id = request.args.get("id", type=int)
    if active_id is None:
        raise ValidationError("Missing vehicle id.")
    with SessionLocal() as db:
        sessions.discard_timer(db, active_id)
        return ok()


@app.route("/api/active-hourly/<int:active_id>/stop", methods=["POST"])
@login_required
@role_required(ADMIN_ROLES)
def stop_hourly(active_id):
    """Stop a timer and store the billed session."""
    payload = request.get_json(silent=True) or {}
    with SessionLocal() as db:
        settled = sessions.stop_timer(
            db,
            active_id,
            created_by=current_user(),
            paid=payload.get("paid") is True,
            clock=current_clock(),
        )
        return ok(201, session=serialize_hourly(settled))


@app.route("/api/hourly")
@login_required
@role_required(ADMIN_ROLES)
def list_hourly():
    """
    Settled hourly sessions. With ``total=true`` only the sum of collected
    payments is returned.
    """
    with SessionLocal() as db:
        if request.args.get("total") == "true":
            total = db.query(func.coalesce(func.sum(HourlySession.paid_amount), 0)).scalar()
            return ok(total=round(float(total), 2))

        items, pagination = list_records(
            db, HourlySession, (HourlySession.vehicle_number,), HourlySession.created_at,
        )
        return ok(entries=[serialize_hourly(item) for item in items], pagination=pagination)


@app.route("/api/hourly/<int:session_id>", methods=["PATCH"])
@login_required
@role_required(SUPER_ADMIN_ONLY)
def edit_hourly(session_id):
    payload = json_body()
    with SessionLocal() as db:
        record = sessions.edit_hourly_session(db, session_id, payload, clock=current_clock())
        return ok(session=serialize_hourly(record))


# Night Parking


@app.route("/api/night")
@login_required
@role_required(ADMIN_ROLES)
def list_night():
    with SessionLocal() as db:
        items, pagination = list_records(
            db, NightSession, (NightSession.vehicle_number,), NightSession.created_at,
        )
        return ok(entries=[serialize_night(item) for item in items], pagination=pagination)


@app.route("/api/night", methods=["POST"])
@login_required
@role_required(ADMIN_ROLES)
def create_night():
    payload = json_body()
    with SessionLocal() as db:
        record = sessions.record_night_session(
            db,
            payload.get("vehicleNumber"),
            price=payload.get("price"),
            timestamp=payload.get("timestamp"),
            created_by=current_user(),
            clock=current_clock(),
        )
        return ok(201, id=record.id)


@app.route("/api/night/<int:session_id>", methods=["PATCH"])
@login_required
@role_required(SUPER_ADMIN_ONLY)
def edit_night(session_id):
    payload = json_body()
    with SessionLocal() as db:
        record = sessions.edit_night_session(db, session_id, payload, clock=current_clock())
        return ok(session=serialize_night(record))


# Payments & Deletion (shared by vehicles, hourly and night records)


@app.route("/api/<any(vehicles, hourly, night):kind>/<int:record_id>/payment", methods=["POST"])
@login_required
@role_required(ADMIN_ROLES)
def record_payment(kind, record_id):
    """Add a payment (or a correction, when negative) to a record."""
    payload = json_body()
    with SessionLocal() as db:
        result = ledger.record_payment(
            db, PAYABLE_MODELS[kind], record_id, payload.get("amount"), clock=current_clock(),
        )
        return ok(**result.as_dict())


@app.route("/api/<any(vehicles, hourly, night):kind>/<int:record_id>/payment", methods=["PUT"])
@login_required
@role_required(ADMIN_ROLES)
def set_payment(kind, record_id):
    """Overwrite the paid amount of a record."""
    payload = json_body()
    with SessionLocal() as db:
        result = ledger.set_payment(
            db, PAYABLE_MODELS[kind], record_id, payload.get("amount"), clock=current_clock(),
        )
        return ok(**result.as_dict())


@app.route("/api/<any(vehicles, hourly, night):kind>/<int:record_id>", methods=["DELETE"])
@login_required
@role_required(SUPER_ADMIN_ONLY)
def delete_record(kind, record_id):
    with SessionLocal() as db:
        store.delete_record(db, PAYABLE_MODELS[kind], record_id)
        return ok()


# Dashboard & Analytics


def monthly_plan_totals(db, now):
    """
    Registration totals per plan type for the calendar month containing
    ``now``.
    """
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    month_end = add_months(month_start, 1)

    rows = (
        db.query(Vehicle.plan_type, func.sum(Vehicle.price), func.count(Vehicle.id))
        .filter(Vehicle.register_date >= month_start, Vehicle.register_date < month_end)
        .group_by(Vehicle.plan_type)
        .all()
    )
    return {
        plan_type: {"amount": round(float(amount or 0), 2), "count": count}
        for plan_type, amount, count in rows
    }


@app.route("/api/dashboard")
@login_required
@role_required(SUPER_ADMIN_ONLY)
def dashboard():
    """
    Super-admin overview: this month's registrations per plan, record
    counts and collected revenue.
    """
    now = current_time()
    with SessionLocal() as db:
        def collected(model):
            total = db.query(func.coalesce(func.sum(model.paid_amount), 0)).scalar()
            return round(float(total), 2)

        stats = {
            "monthlyPlans": monthly_plan_totals(db, now),
            "totalVehicles": db.query(Vehicle).count(),
            "expiredVehicles": db.query(Vehicle).filter(Vehicle.expires_at <= now).count(),
            "activeHourly": db.query(ActiveHourlyVehicle).count(),
            "hourlySessions": db.query(HourlySession).count(),
            "nightSessions": db.query(NightSession).count(),
            "revenue": {
                "vehicles": collected(Vehicle),
                "hourly": collected(HourlySession),
                "night": collected(NightSession),
            },
        }
        stats["revenue"]["total"] = round(sum(stats["revenue"].values()), 2)
        return ok(stats=stats)


# Application Entry Point


if __name__ == "__main__":
    app.run(debug=True)
