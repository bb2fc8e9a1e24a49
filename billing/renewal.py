"""
Renewal Processor

Moves a subscription vehicle into its next plan period.

The two entry points differ on purpose: a plain ``renew`` is only allowed
once the current period has expired and continues from the old expiry,
while ``renew_with_payment`` may run early and continues from whichever
is later, the old expiry or now.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from billing import store
from billing.errors import StateError, ValidationError
from billing.ledger import reconcile
from billing.tariff import compute_expiry, to_amount
from models.models import Vehicle, VehicleRenewal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenewalResult:
    register_date: datetime
    expires_at: datetime
    paid_amount: Optional[float] = None
    paid: Optional[bool] = None

    def as_dict(self):
        data = {
            "registerDate": self.register_date.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }
        if self.paid_amount is not None:
            data["paidAmount"] = self.paid_amount
            data["paid"] = self.paid
        return data


def current_expiry(vehicle):
    return vehicle.expires_at or vehicle.register_date


def _extend(vehicle, new_register_date, now, renewed_by, payment_amount=None):
    previous_expiry = current_expiry(vehicle)
    new_expiry = compute_expiry(new_register_date, vehicle.plan_type)

    vehicle.register_date = new_register_date
    vehicle.expires_at = new_expiry
    vehicle.renewed_by = renewed_by
    vehicle.updated_at = now
    vehicle.renewals.append(
        VehicleRenewal(
            renewed_at=now,
            previous_expiry=previous_expiry,
            new_expiry=new_expiry,
            payment_amount=payment_amount,
            renewed_by=renewed_by,
        )
    )
    return new_expiry


def renew(db, vehicle_id, renewed_by="unknown", clock=datetime.now):
    """Renew an expired vehicle for one more plan period."""
    vehicle = store.load_record(db, Vehicle, vehicle_id)
    now = clock()
    expiry = current_expiry(vehicle)

    if expiry > now:
        raise StateError("Vehicle has not expired yet.")

    new_expiry = _extend(vehicle, expiry, now, renewed_by)
    store.commit(db, "renew vehicle")

    logger.info("Renewed vehicle %s until %s by %s", vehicle_id, new_expiry, renewed_by)
    return RenewalResult(register_date=expiry, expires_at=new_expiry)


def renew_with_payment(db, vehicle_id, amount, renewed_by="unknown", clock=datetime.now):
    """
    Renew a vehicle and start the new period with ``amount`` paid.

    The paid amount is replaced, not added to: the previous period's
    payments do not carry over.
    """
    payment = to_amount(amount, "payment amount")
    if payment <= 0:
        raise ValidationError("Invalid payment amount.")

    vehicle = store.load_record(db, Vehicle, vehicle_id)
    now = clock()
    new_register_date = max(current_expiry(vehicle), now)

    new_expiry = _extend(vehicle, new_register_date, now, renewed_by, payment_amount=payment)
    result = reconcile(vehicle, payment, now)
    store.commit(db, "renew vehicle and record payment")

    logger.info(
        "Renewed vehicle %s until %s with payment %.2f by %s",
        vehicle_id, new_expiry, payment, renewed_by,
    )
    return RenewalResult(
        register_date=new_register_date,
        expires_at=new_expiry,
        paid_amount=result.paid_amount,
        paid=result.paid,
    )
