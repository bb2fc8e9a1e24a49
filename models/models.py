"""
Parking Billing Service - Data Models
Subscription vehicles, hourly and night parking sessions, and the
transient active-timer records the attendants work with.

Every payable record carries a cached ``paid`` flag next to ``paid_amount``;
the flag is only ever written by the billing package, together with the
amounts it is derived from.
"""

import os
from datetime import datetime
from enum import Enum
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text,
    create_engine,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import declarative_base, relationship, sessionmaker


# Database Configuration & Setup

load_dotenv()

DB_PATH = Path(__file__).with_suffix(".db")
DATABASE_URL = os.getenv("PARKING_DATABASE_URL", f"sqlite:///{DB_PATH}")

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, future=True, expire_on_commit=False)
Base = declarative_base()

# Money columns come back as floats, rounded to cents by the database
Money = Numeric(10, 2, asdecimal=False)


# Custom Enumerations


class PlanType(str, Enum):
    MONTHLY = "monthly"
    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"


class Role(str, Enum):
    ADMIN = "admin"
    SUPER_ADMIN = "super-admin"


# Core Data Models


class Vehicle(Base):
    """
    A vehicle on a recurring plan. ``expires_at`` always follows from
    ``register_date`` and ``plan_type``; renewals move both forward and
    leave a row in ``vehicle_renewals``.
    """
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True)

    # Owner and vehicle details
    name = Column(String, nullable=False)
    vehicle_number = Column(String(32), nullable=False, index=True)
    phone = Column(String(32), nullable=False)
    notes = Column(Text, default="", nullable=False)

    # Plan and validity window
    plan_type = Column(String(16), default=PlanType.MONTHLY.value, nullable=False)
    price = Column(Money, nullable=False)
    register_date = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    # Payment state
    paid_amount = Column(Money, default=0, nullable=False)
    paid = Column(Boolean, default=False, nullable=False)

    # Provenance
    created_by = Column(String, default="unknown", nullable=False)
    created_by_role = Column(String(16))
    renewed_by = Column(String)
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, nullable=False)

    # Relationships
    renewals = relationship(
        "VehicleRenewal",
        back_populates="vehicle",
        cascade="all, delete-orphan",
        order_by="VehicleRenewal.renewed_at",
    )

    @hybrid_property
    def amount_due(self):
        return float(self.price or 0)

    @amount_due.expression
    def amount_due(cls):
        return cls.price

    def is_expired(self, now):
        """Check whether the current plan period has run out at ``now``"""
        return (self.expires_at or self.register_date) <= now

    def __repr__(self):
        return f"<Vehicle('{self.vehicle_number}', {self.plan_type})>"


class VehicleRenewal(Base):
    """One entry of a vehicle's append-only renewal history."""
    __tablename__ = "vehicle_renewals"

    id = Column(Integer, primary_key=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)

    renewed_at = Column(DateTime, nullable=False)
    previous_expiry = Column(DateTime, nullable=False)
    new_expiry = Column(DateTime, nullable=False)
    payment_amount = Column(Money, nullable=True)
    renewed_by = Column(String)

    vehicle = relationship("Vehicle", back_populates="renewals")

    def __repr__(self):
        return f"<VehicleRenewal(vehicle_id={self.vehicle_id}, new_expiry={self.new_expiry})>"


class ActiveHourlyVehicle(Base):
    """
    An hourly vehicle whose timer is running. It is replaced by an
    ``HourlySession`` once the timer is stopped.
    """
    __tablename__ = "active_hourly_vehicles"

    id = Column(Integer, primary_key=True)
    vehicle_number = Column(String(32), unique=True, nullable=False)
    hourly_rate = Column(Money, nullable=False)
    start_time = Column(DateTime, nullable=False)
    created_by = Column(String, default="unknown", nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    def __repr__(self):
        return f"<ActiveHourlyVehicle('{self.vehicle_number}')>"


class HourlySession(Base):
    """
    A settled hourly session. Billing fields are computed once at
    settlement and stored; they are not recomputed on read.
    """
    __tablename__ = "hourly_sessions"

    id = Column(Integer, primary_key=True)
    vehicle_number = Column(String(32), nullable=False, index=True)
    hourly_rate = Column(Money, nullable=False)

    # Timing information
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)

    # Billing details
    elapsed_minutes = Column(Integer, nullable=False)
    billable_minutes = Column(Integer, nullable=False)
    billable_hours = Column(Integer, nullable=False)
    total_price = Column(Money, nullable=False)
    buffer_applied = Column(Boolean, default=False, nullable=False)

    # Payment state
    paid_amount = Column(Money, default=0, nullable=False)
    paid = Column(Boolean, default=False, nullable=False)

    created_by = Column(String, default="unknown", nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, nullable=False)

    @hybrid_property
    def amount_due(self):
        return float(self.total_price or 0)

    @amount_due.expression
    def amount_due(cls):
        return cls.total_price

    def __repr__(self):
        return f"<HourlySession('{self.vehicle_number}', {self.billable_hours}h)>"


class NightSession(Base):
    """A flat-rate overnight stay."""
    __tablename__ = "night_sessions"

    id = Column(Integer, primary_key=True)
    vehicle_number = Column(String(32), nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False)
    price = Column(Money, nullable=False)

    paid_amount = Column(Money, default=0, nullable=False)
    paid = Column(Boolean, default=False, nullable=False)

    created_by = Column(String, default="unknown", nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, nullable=False)

    @hybrid_property
    def amount_due(self):
        return float(self.price or 0)

    @amount_due.expression
    def amount_due(cls):
        return cls.price

    def __repr__(self):
        return f"<NightSession('{self.vehicle_number}', {self.timestamp})>"


# Database Initialization Helper


def create_db() -> None:
    """
    Initialize the database by creating all tables and setting up
    the initial database structure.
    """
    Base.metadata.create_all(engine)


def drop_db() -> None:
    """Drop every table. Used by the test-suite between cases."""
    Base.metadata.drop_all(engine)


if __name__ == "__main__":
    create_db()
