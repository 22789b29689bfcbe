# telemed/schemas.py
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Dict, Any, Union
from pydantic import BaseModel, Field, EmailStr, field_validator

from .models import (
    UserRole, AppointmentType, AppointmentStatus, PaymentStatus,
    PaymentLinkStatus, ConfirmationStatus, AuditAction,
)


def _assume_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# --- Base Schemas ---
class BaseSchema(BaseModel):
    class Config:
        from_attributes = True


class PaginationResult(BaseModel):
    data: List[Any]
    count: int
    total: int
    has_more: bool


# --- Auth Schemas ---
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


class UserResponse(BaseSchema):
    id: int
    email: EmailStr
    role: UserRole
    first_name: str
    last_name: str
    phone_number: Optional[str] = None
    is_active: Optional[bool] = None
    created_at: Optional[datetime] = None


class DoctorResponse(BaseSchema):
    id: Union[int, str]
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    specialty: Optional[str] = None
    consultation_fee: Optional[Decimal] = None
    verified: Optional[bool] = None
    working_hours: Optional[Dict[str, Any]] = None
    available_hours: Optional[Dict[str, Any]] = None


# --- Appointment Schemas ---
class AppointmentBase(BaseModel):
    patient_id: int
    doctor_id: int
    scheduled_at: datetime
    duration: int = Field(30, ge=5, le=240, description="Duration in minutes")
    type: AppointmentType = AppointmentType.video
    reason: Optional[str] = Field(None, max_length=2000)
    notes: Optional[str] = None


class AppointmentCreate(AppointmentBase):
    patient_name: Optional[str] = Field(None, max_length=200)
    patient_email: Optional[EmailStr] = None
    patient_phone: Optional[str] = Field(None, max_length=20)
    doctor_name: Optional[str] = Field(None, max_length=200)
    fee: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)

    @field_validator("scheduled_at")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("scheduled_at must include a timezone offset")
        return v


class AppointmentUpdate(BaseModel):
    """Partial update. `version` must be strictly greater than the stored one."""
    version: int = Field(..., ge=1)
    scheduled_at: Optional[datetime] = None
    duration: Optional[int] = Field(None, ge=5, le=240)
    doctor_id: Optional[int] = None
    type: Optional[AppointmentType] = None
    reason: Optional[str] = Field(None, max_length=2000)
    notes: Optional[str] = None
    status: Optional[AppointmentStatus] = None
    cancellation_reason: Optional[str] = None

    @field_validator("scheduled_at")
    @classmethod
    def require_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            raise ValueError("scheduled_at must include a timezone offset")
        return v


class AppointmentResponse(BaseSchema):
    id: Union[int, str]
    patient_id: int
    patient_name: str = ""
    patient_email: Optional[str] = None
    patient_phone: Optional[str] = None
    doctor_id: int
    doctor_name: str = ""
    scheduled_at: datetime
    duration: int
    ends_at: Optional[datetime] = None
    type: AppointmentType
    reason: Optional[str] = None
    notes: Optional[str] = None
    status: AppointmentStatus
    payment_status: PaymentStatus = PaymentStatus.not_required
    fee: Decimal = Decimal("0")
    created_by: Optional[int] = None
    created_by_role: UserRole
    version: int = 1
    last_modified_by: Optional[int] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    normalize_utc = field_validator(
        "scheduled_at", "ends_at", "confirmed_at", "cancelled_at", "created_at", "updated_at",
    )(_assume_utc)


class AppointmentStatistics(BaseModel):
    total: int
    pending_payment: int = 0
    scheduled: int = 0
    confirmed: int = 0
    completed: int = 0
    cancelled: int = 0
    today: int = 0
    this_week: int = 0


class AvailableSlotsResponse(BaseModel):
    doctor_id: int
    date: str
    slots: List[str]


# --- Payment Schemas ---
class PaymentLinkResponse(BaseSchema):
    id: int
    appointment_id: int
    patient_id: int
    amount: Decimal
    currency: str
    status: PaymentLinkStatus
    payment_url: str
    expires_at: datetime
    paid_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    created_at: Optional[datetime] = None

    normalize_utc = field_validator("expires_at", "paid_at", "created_at")(_assume_utc)


class PaymentConfirmation(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=255)
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    payment_method: str = Field(..., min_length=1, max_length=50)


class PaymentRuleResponse(BaseSchema):
    id: int
    appointment_id: int
    created_by: Optional[int] = None
    created_by_role: UserRole
    requires_payment: bool
    payment_status: PaymentStatus
    payment_link_id: Optional[int] = None
    confirmation_status: ConfirmationStatus
    patient_notified: bool = False
    staff_notified: bool = False
    reminders_sent: int = 0


class BookingResponse(BaseModel):
    appointment: AppointmentResponse
    payment_required: bool
    payment_link: Optional[PaymentLinkResponse] = None


class PaymentStatistics(BaseModel):
    total_appointments: int
    paid_appointments: int
    pending_payments: int
    expired_payments: int
    total_revenue: Decimal


class JobResult(BaseModel):
    job: str
    result: Dict[str, int]


# --- Audit Log Schemas ---
class AuditLogResponse(BaseSchema):
    id: int
    user_id: Optional[int] = None
    username: Optional[str] = None
    action: AuditAction
    event: Optional[str] = None
    category: str
    severity: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[int] = None
    details: Optional[str] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None
