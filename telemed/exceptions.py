# telemed/exceptions.py
from typing import Optional


class CRUDError(Exception):
    pass


class NotFoundError(CRUDError):
    pass


class SlotConflictError(CRUDError):
    """The requested interval overlaps another blocking appointment of the same doctor."""

    def __init__(self, message: str, conflicting_appointment_id: Optional[int] = None):
        super().__init__(message)
        self.conflicting_appointment_id = conflicting_appointment_id


class VersionConflictError(CRUDError):
    pass


class InvalidTransitionError(CRUDError):
    pass


# --- Payment validation ---

class PaymentValidationError(CRUDError):
    pass


class PaymentLinkNotFoundError(PaymentValidationError):
    pass


class PaymentLinkExpiredError(PaymentValidationError):
    pass


class PaymentAmountMismatchError(PaymentValidationError):
    pass


class PaymentLinkNotPendingError(PaymentValidationError):
    pass


class PaymentLinkAccessError(PaymentValidationError):
    pass
