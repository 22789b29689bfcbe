# telemed/routers/doctors.py
from datetime import date
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from .. import schemas, models, security
from ..dependencies import get_appointment_service, get_payment_service, http_error
from ..exceptions import CRUDError
from ..models import UserRole
from ..services.appointment_service import AppointmentService
from ..services.appointment_payment_service import AppointmentPaymentService

router = APIRouter(
    tags=["Doctors"],
    responses={404: {"description": "Not found"}},
)


@router.get("/doctors", response_model=List[schemas.DoctorResponse])
def read_doctors(service: AppointmentService = Depends(get_appointment_service)):
    """Active doctors by last name; served from the local cache when no database is configured."""
    try:
        return service.list_doctors()
    except CRUDError as e:
        raise http_error(e)


@router.get("/doctors/{doctor_id}/available-slots", response_model=schemas.AvailableSlotsResponse)
def read_available_slots(
    doctor_id: int,
    day: date = Query(..., alias="date"),
    service: AppointmentService = Depends(get_appointment_service),
):
    slots = service.get_available_slots(doctor_id, day)
    return schemas.AvailableSlotsResponse(doctor_id=doctor_id, date=day.isoformat(), slots=slots)


@router.get("/doctors/{doctor_id}/payment-statistics", response_model=schemas.PaymentStatistics)
def read_payment_statistics(
    doctor_id: int,
    service: AppointmentPaymentService = Depends(get_payment_service),
    current_user: models.User = Depends(security.require_role(
        UserRole.doctor.value, UserRole.secretary.value, UserRole.admin.value,
    )),
):
    if current_user.role == UserRole.doctor and current_user.id != doctor_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Doctors can only view their own payment statistics",
        )
    return service.get_payment_statistics(doctor_id)
