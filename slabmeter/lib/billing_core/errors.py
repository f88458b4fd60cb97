class BillingError(Exception):
    """Base class for errors raised by the billing engine."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BillingError):
    """Malformed or out-of-range input."""


class ConflictError(BillingError):
    """The operation would break a single-active rule or destroy history."""


class NotFoundError(BillingError):
    """The cycle, reading, meter or config does not exist or is not active."""
