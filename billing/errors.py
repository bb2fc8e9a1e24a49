"""
Billing error taxonomy.

Each error carries the HTTP status the route layer answers with; the
message is safe to show to the attendant.
"""


class BillingError(Exception):
    """Base class for every failure raised by the billing package."""
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(BillingError):
    """Malformed, missing or out-of-range input."""
    status_code = 400


class NotFoundError(BillingError):
    """The targeted record does not exist."""
    status_code = 404


class StateError(BillingError):
    """The record is not in a state that allows the operation."""
    status_code = 409


class StorageError(BillingError):
    """The database read or write failed."""
    status_code = 500
