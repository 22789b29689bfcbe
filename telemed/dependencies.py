# telemed/dependencies.py - FastAPI providers for the service layer
from typing import Optional

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from .database import get_db
from .exceptions import (
    CRUDError, InvalidTransitionError, NotFoundError, PaymentLinkAccessError, PaymentLinkExpiredError,
    PaymentLinkNotFoundError, PaymentValidationError, SlotConflictError, VersionConflictError,
)
from .services.appointment_service import AppointmentService
from .services.appointment_payment_service import AppointmentPaymentService


def get_appointment_service(db: Optional[Session] = Depends(get_db)) -> AppointmentService:
    return AppointmentService(db)


def get_payment_service(db: Optional[Session] = Depends(get_db)) -> AppointmentPaymentService:
    return AppointmentPaymentService(db)


def http_error(error: CRUDError) -> HTTPException:
    """Translate a service exception into the HTTP status the API documents."""
    if isinstance(error, (NotFoundError, PaymentLinkNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, (SlotConflictError, VersionConflictError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, PaymentLinkExpiredError):
        code = status.HTTP_410_GONE
    elif isinstance(error, PaymentLinkAccessError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, (PaymentValidationError, InvalidTransitionError)):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(error))
