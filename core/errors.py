"""
Typed error conditions raised by the clinic services.

Pages show the message of a ValidationError / ConflictError as-is; a
StorageError is always rendered as a generic "try again" message.
"""


class ClinicError(Exception):
    """Base class for every error the services raise on purpose."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    @property
    def user_message(self) -> str:
        return self.message or "Something went wrong."


class ValidationError(ClinicError, ValueError):
    """Input rejected before any state change."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field

    def __str__(self):
        return f"{self.field}: {self.message}" if self.field else self.message


class NotFoundError(ClinicError, LookupError):
    pass


class InsufficientStockError(ClinicError):
    """Not enough non-expired stock to cover a dispense.

    `allocations` lists the (lot_id, quantity) pairs that were consumed
    before stock ran out, so the caller can keep them (partial fulfilment)
    or roll the unit of work back (reject).
    """

    def __init__(self, medicine: str, requested: int, available: int, allocations=None):
        super().__init__(
            f"Not enough stock for {medicine}: requested {requested}, available {available}."
        )
        self.medicine = medicine
        self.requested = requested
        self.available = available
        self.allocations = list(allocations or [])

    @property
    def shortfall(self) -> int:
        return self.requested - self.available


class ConflictError(ClinicError):
    """Concurrent modification detected (version mismatch)."""
    pass


class IllegalTransitionError(ConflictError):
    def __init__(self, visit_id: int, current: str | None, target: str):
        super().__init__(
            f"Visit {visit_id} is '{current}' and cannot be moved to '{target}'."
        )
        self.visit_id = visit_id
        self.current = current
        self.target = target


class StorageError(ClinicError):
    def __init__(self, message: str = "Could not save changes. Please try again."):
        super().__init__(message)
