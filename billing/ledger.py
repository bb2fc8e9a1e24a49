"""
Payment Ledger

Tracks how much of a record's amount due has been paid. Two update modes
exist and are deliberately separate operations:

- ``record_payment`` adds a delta to what has been paid so far
- ``set_payment`` replaces the paid amount with an absolute value

Both recompute the stored ``paid`` flag in the same commit. Nothing else
in the code base writes that flag directly; see ``reconcile``.

Concurrent payments against the same record are not serialized: the last
commit wins.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from billing import store
from billing.tariff import to_amount

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


@dataclass(frozen=True)
class PaymentResult:
    paid_amount: float
    paid: bool

    def as_dict(self):
        return {"paidAmount": self.paid_amount, "paid": self.paid}


def is_fully_paid(paid_amount, amount_due):
    return paid_amount >= amount_due


def reconcile(record, paid_amount, now):
    """
    Write ``paid_amount`` onto ``record`` and derive ``paid`` from it.

    The only place the ``paid`` flag is assigned.
    """
    record.paid_amount = round(paid_amount, 2)
    record.paid = is_fully_paid(record.paid_amount, record.amount_due)
    record.updated_at = now
    return PaymentResult(paid_amount=record.paid_amount, paid=record.paid)


def record_payment(db, model, record_id, amount, clock=datetime.now):
    """
    Add ``amount`` to the record's paid amount.

    Negative deltas are allowed (corrections) but the paid amount never
    drops below zero.
    """
    delta = to_amount(amount, "payment amount", allow_negative=True)
    record = store.load_record(db, model, record_id)

    current = float(record.paid_amount or 0)
    result = reconcile(record, max(0.0, current + delta), clock())
    store.commit(db, "record payment")

    logger.info(
        "Recorded payment of %.2f on %s %s (paid %.2f / %.2f)",
        delta, model.__tablename__, record_id, result.paid_amount, record.amount_due,
    )
    return result


def set_payment(db, model, record_id, amount, clock=datetime.now):
    """Replace the record's paid amount with the absolute ``amount``."""
    absolute = to_amount(amount, "payment amount")
    record = store.load_record(db, model, record_id)

    result = reconcile(record, absolute, clock())
    store.commit(db, "update payment")

    logger.info(
        "Set paid amount of %s %s to %.2f (due %.2f)",
        model.__tablename__, record_id, result.paid_amount, record.amount_due,
    )
    return result


# Read-side status


def payment_status(amount_due, paid_amount, paid):
    """
    Classify a record as unpaid, partial or paid.

    The stored flag is not trusted on its own: a record only counts as
    paid when nothing remains, so hand-edited prices show up as partial.
    """
    paid_amount = float(paid_amount or 0)
    remaining = float(amount_due or 0) - paid_amount

    if paid and remaining <= 0:
        return PaymentStatus.PAID
    if paid_amount > 0:
        return PaymentStatus.PARTIAL
    return PaymentStatus.UNPAID


def payment_summary(record):
    amount_due = record.amount_due
    paid_amount = float(record.paid_amount or 0)
    status = payment_status(amount_due, paid_amount, record.paid)
    return {
        "amountDue": round(amount_due, 2),
        "paidAmount": round(paid_amount, 2),
        "remaining": round(max(0.0, amount_due - paid_amount), 2),
        "paid": bool(record.paid),
        "status": status.value,
        "flagMismatch": bool(record.paid) != is_fully_paid(paid_amount, amount_due),
    }
