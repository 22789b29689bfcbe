# telemed/routers/appointments.py
import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool

from .. import schemas, models, security
from ..dependencies import get_appointment_service, get_payment_service, http_error
from ..exceptions import CRUDError
from ..models import UserRole
from ..services.appointment_service import AppointmentService
from ..services.appointment_payment_service import AppointmentPaymentService

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Appointments"],
    responses={404: {"description": "Not found"}},
)

STAFF_ROLES = (UserRole.doctor.value, UserRole.secretary.value, UserRole.admin.value)


def _ensure_own_record(current_user: models.User, patient_id) -> None:
    if current_user.role == UserRole.patient and patient_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Patients can only access their own appointments",
        )


@router.post("/appointments", response_model=schemas.BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_appointment(
    appointment: schemas.AppointmentCreate,
    service: AppointmentPaymentService = Depends(get_payment_service),
    current_user: models.User = Depends(security.require_role(
        UserRole.patient.value, UserRole.doctor.value, UserRole.secretary.value,
    )),
):
    """Book a consultation. Staff bookings wait for payment; patient self-bookings are confirmed."""
    _ensure_own_record(current_user, appointment.patient_id)
    try:
        result = await service.create_appointment_with_payment_validation(
            appointment, created_by=current_user.id, created_by_role=current_user.role,
        )
    except CRUDError as e:
        raise http_error(e)
    return schemas.BookingResponse(
        appointment=schemas.AppointmentResponse.model_validate(result.appointment),
        payment_required=result.payment_required,
        payment_link=schemas.PaymentLinkResponse.model_validate(result.payment_link) if result.payment_link else None,
    )


@router.get("/appointments", response_model=List[schemas.AppointmentResponse])
def read_appointments(
    doctor_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    status_filter: Optional[List[models.AppointmentStatus]] = Query(None, alias="status"),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: models.User = Depends(security.get_current_user),
):
    if current_user.role == UserRole.patient:
        patient_id = current_user.id
    filters = {
        "doctor_id": doctor_id,
        "patient_id": patient_id,
        "status": status_filter,
        "date_from": date_from,
        "date_to": date_to,
    }
    try:
        return service.list_appointments(filters)
    except CRUDError as e:
        raise http_error(e)


@router.get("/appointments/statistics", response_model=schemas.AppointmentStatistics)
def read_appointment_statistics(
    doctor_id: Optional[int] = None,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: models.User = Depends(security.require_role(*STAFF_ROLES)),
):
    return service.get_appointment_statistics(doctor_id)


@router.websocket("/appointments/stream")
async def stream_appointments(
    websocket: WebSocket,
    token: Optional[str] = None,
    doctor_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    service: AppointmentService = Depends(get_appointment_service),
):
    """Sends the full filtered appointment list on connect and after changes.

    Reloads run in the threadpool; changes committed during a reload are
    folded into the next one.
    """
    payload = security.verify_token(token) if token else None
    if not payload:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if payload.get("role") == UserRole.patient.value:
        patient_id = payload.get("user_id")

    await websocket.accept()
    loop = asyncio.get_running_loop()
    changed = asyncio.Event()
    reloads = []
    snapshots = []

    def schedule(reload):
        # Commits may happen on worker threads
        reloads[:] = [reload]
        loop.call_soon_threadsafe(changed.set)

    subscription = service.subscribe_to_appointments(
        snapshots.append, {"doctor_id": doctor_id, "patient_id": patient_id}, dispatch=schedule,
    )

    async def forward():
        while True:
            await changed.wait()
            changed.clear()
            await run_in_threadpool(reloads[0])
            while snapshots:
                await websocket.send_json(snapshots.pop(0))

    def report(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Appointment stream for user {payload.get('user_id')} stopped: {task.exception()}")

    sender = asyncio.create_task(forward())
    sender.add_done_callback(report)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Appointment stream client disconnected")
    finally:
        subscription.unsubscribe()
        sender.cancel()


@router.get("/appointments/{appointment_id}", response_model=schemas.AppointmentResponse)
def read_appointment(
    appointment_id: int,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: models.User = Depends(security.get_current_user),
):
    try:
        appointment = service.get_appointment(appointment_id, user_id=current_user.id)
    except CRUDError as e:
        raise http_error(e)
    _ensure_own_record(current_user, appointment.patient_id)
    return appointment


@router.put("/appointments/{appointment_id}", response_model=schemas.AppointmentResponse)
def update_appointment(
    appointment_id: int,
    appointment_update: schemas.AppointmentUpdate,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: models.User = Depends(security.require_role(*STAFF_ROLES)),
):
    try:
        return service.update_appointment(appointment_id, appointment_update, user_id=current_user.id)
    except CRUDError as e:
        raise http_error(e)


@router.delete("/appointments/{appointment_id}", response_model=schemas.AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: models.User = Depends(security.get_current_user),
):
    """Soft-cancel; the appointment stays in the history."""
    try:
        appointment = service.get_appointment(appointment_id)
        _ensure_own_record(current_user, appointment.patient_id)
        return service.delete_appointment(appointment_id, user_id=current_user.id, user_role=current_user.role)
    except CRUDError as e:
        raise http_error(e)


@router.get("/appointments/{appointment_id}/payment-status", response_model=schemas.PaymentRuleResponse)
def read_payment_status(
    appointment_id: int,
    service: AppointmentPaymentService = Depends(get_payment_service),
    current_user: models.User = Depends(security.get_current_user),
):
    rule = service.get_appointment_validation_status(appointment_id)
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No payment rule for this appointment")
    if current_user.role == UserRole.patient:
        try:
            appointment = service.appointments.get_appointment(appointment_id)
        except CRUDError as e:
            raise http_error(e)
        _ensure_own_record(current_user, appointment.patient_id)
    return rule
