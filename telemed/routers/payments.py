# telemed/routers/payments.py
import logging

from fastapi import APIRouter, Depends

from .. import schemas, models, security
from ..dependencies import get_payment_service, http_error
from ..exceptions import CRUDError
from ..models import UserRole
from ..services.appointment_payment_service import AppointmentPaymentService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/payments",
    tags=["Payments"],
    responses={404: {"description": "Not found"}},
)


@router.get("/links/{token}", response_model=schemas.PaymentLinkResponse)
def read_payment_link(token: str, service: AppointmentPaymentService = Depends(get_payment_service)):
    """Look up a payment link by the opaque token embedded in its URL."""
    try:
        return service.get_payment_link_by_token(token)
    except CRUDError as e:
        raise http_error(e)


@router.post("/links/{payment_link_id}/validate", response_model=schemas.BookingResponse)
async def validate_payment(
    payment_link_id: int,
    payment: schemas.PaymentConfirmation,
    service: AppointmentPaymentService = Depends(get_payment_service),
    current_user: models.User = Depends(security.get_current_user),
):
    try:
        result = await service.validate_payment_and_confirm_appointment(
            payment_link_id, payment, user_id=current_user.id, user_role=current_user.role,
        )
    except CRUDError as e:
        raise http_error(e)
    return schemas.BookingResponse(
        appointment=schemas.AppointmentResponse.model_validate(result.appointment),
        payment_required=True,
        payment_link=schemas.PaymentLinkResponse.model_validate(result.payment_link),
    )


@router.post("/jobs/reminders", response_model=schemas.JobResult,
             dependencies=[Depends(security.require_role(UserRole.admin.value))])
async def run_payment_reminders(service: AppointmentPaymentService = Depends(get_payment_service)):
    try:
        counts = await service.process_payment_reminders()
    except CRUDError as e:
        raise http_error(e)
    return schemas.JobResult(job="payment_reminders", result=counts)


@router.post("/jobs/cleanup", response_model=schemas.JobResult,
             dependencies=[Depends(security.require_role(UserRole.admin.value))])
async def run_expired_link_cleanup(service: AppointmentPaymentService = Depends(get_payment_service)):
    try:
        processed = await service.cleanup_expired_payment_links()
    except CRUDError as e:
        raise http_error(e)
    return schemas.JobResult(job="cleanup_expired_payment_links", result={"expired": processed})
