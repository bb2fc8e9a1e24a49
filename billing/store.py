"""
Thin read/write helpers over a SQLAlchemy session.

Every billing operation is one read followed by one commit against a
single record. Database failures are rolled back and surface as
``StorageError`` so the caller sees the record unchanged.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from billing.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

RECORD_LABELS = {
    "vehicles": "Vehicle",
    "hourly_sessions": "Session",
    "night_sessions": "Session",
    "active_hourly_vehicles": "Vehicle",
}


def record_label(model):
    return RECORD_LABELS.get(model.__tablename__, "Record")


def load_record(db, model, record_id):
    """Fetch ``model`` by primary key or raise ``NotFoundError``."""
    try:
        record = db.get(model, record_id)
    except SQLAlchemyError as error:
        logger.exception("Failed to load %s %s", model.__tablename__, record_id)
        raise StorageError(f"Failed to load {record_label(model).lower()}.") from error

    if record is None:
        raise NotFoundError(f"{record_label(model)} not found.")
    return record


def commit(db, action):
    """Commit the pending changes, rolling back on failure."""
    try:
        db.commit()
    except SQLAlchemyError as error:
        db.rollback()
        logger.exception("Failed to %s", action)
        raise StorageError(f"Failed to {action}.") from error


def add_record(db, record, action):
    db.add(record)
    commit(db, action)
    return record


def delete_record(db, model, record_id):
    """Delete a record by id; a missing id raises ``NotFoundError``."""
    record = load_record(db, model, record_id)
    db.delete(record)
    commit(db, f"delete {record_label(model).lower()}")
    logger.info("Deleted %s %s", model.__tablename__, record_id)
