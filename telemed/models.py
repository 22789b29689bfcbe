# telemed/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text,
    Enum as SQLAlchemyEnum, Boolean, JSON, Numeric, Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class UserRole(str, enum.Enum):
    patient = "patient"
    doctor = "doctor"
    secretary = "secretary"
    admin = "admin"


class AppointmentType(str, enum.Enum):
    video = "video"
    phone = "phone"
    chat = "chat"


class AppointmentStatus(str, enum.Enum):
    pending_payment = "pending_payment"
    scheduled = "scheduled"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"


# Statuses that occupy the doctor's time slot
BLOCKING_STATUSES = (
    AppointmentStatus.pending_payment,
    AppointmentStatus.scheduled,
    AppointmentStatus.confirmed,
)

# Allowed moves through a plain update; cancelled is reachable from everywhere and terminal.
# pending_payment is confirmed only by a validated payment.
STATUS_TRANSITIONS = {
    AppointmentStatus.pending_payment: {AppointmentStatus.cancelled},
    AppointmentStatus.scheduled: {AppointmentStatus.confirmed, AppointmentStatus.completed, AppointmentStatus.cancelled},
    AppointmentStatus.confirmed: {AppointmentStatus.completed, AppointmentStatus.cancelled},
    AppointmentStatus.completed: {AppointmentStatus.cancelled},
    AppointmentStatus.cancelled: set(),
}


class PaymentStatus(str, enum.Enum):
    not_required = "not_required"
    pending = "pending"
    paid = "paid"
    failed = "failed"
    expired = "expired"


class PaymentLinkStatus(str, enum.Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    expired = "expired"


class ConfirmationStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    cancelled = "cancelled"


class ReminderStatus(str, enum.Enum):
    pending = "pending"
    sent = "sent"
    cancelled = "cancelled"
    failed = "failed"


class NotificationType(str, enum.Enum):
    payment_link_sent = "payment_link_sent"
    payment_success = "payment_success"
    payment_failed = "payment_failed"
    payment_expired = "payment_expired"
    patient_booking_confirmed = "patient_booking_confirmed"


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    ACCESS_DENIED = "ACCESS_DENIED"
    PAYMENT = "PAYMENT"


class User(Base):
    """Patients, doctors, secretaries and administrators share one table."""
    __tablename__ = "users"
    __table_args__ = (
        Index('idx_users_role_active', 'role', 'is_active'),
        Index('idx_users_last_name', 'last_name'),
    )

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=True)
    role = Column(SQLAlchemyEnum(UserRole, name='user_role'), default=UserRole.patient, nullable=False)

    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    phone_number = Column(String(20), nullable=True)

    # Doctor profile
    specialty = Column(String(100), nullable=True)
    consultation_fee = Column(Numeric(10, 2), nullable=True)
    verified = Column(Boolean, default=False)
    working_hours = Column(JSON, nullable=True)
    available_hours = Column(JSON, nullable=True)
    last_appointment_created = Column(DateTime(timezone=True), nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Appointment(Base):
    """Teleconsultation booking. Rows are soft-cancelled, never deleted."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_doctor_start', 'doctor_id', 'scheduled_at'),
        Index('idx_appointments_patient_start', 'patient_id', 'scheduled_at'),
        Index('idx_appointments_status_start', 'status', 'scheduled_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    patient_name = Column(String(200), nullable=False, default="")
    patient_email = Column(String(255), nullable=True)
    patient_phone = Column(String(20), nullable=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    doctor_name = Column(String(200), nullable=False, default="")

    scheduled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    duration = Column(Integer, nullable=False, default=30)  # minutes
    ends_at = Column(DateTime(timezone=True), nullable=False)

    type = Column(SQLAlchemyEnum(AppointmentType, name='appointment_type'), default=AppointmentType.video, nullable=False)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), default=AppointmentStatus.scheduled, nullable=False, index=True)
    payment_status = Column(SQLAlchemyEnum(PaymentStatus, name='payment_status'), default=PaymentStatus.not_required, nullable=False)
    fee = Column(Numeric(10, 2), nullable=False, default=0)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_by_role = Column(SQLAlchemyEnum(UserRole, name='user_role'), nullable=False)

    # Optimistic concurrency
    version = Column(Integer, nullable=False, default=1)
    last_modified_by = Column(Integer, nullable=True)

    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(Integer, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("User", foreign_keys=[doctor_id])
    payment_links = relationship("PaymentLink", back_populates="appointment")
    payment_rule = relationship("AppointmentPaymentRule", back_populates="appointment", uselist=False)


class PaymentLink(Base):
    """Time-limited, single-use reference gating confirmation on payment."""
    __tablename__ = "payment_links"
    __table_args__ = (
        Index('idx_payment_links_status_expiry', 'status', 'expires_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    status = Column(SQLAlchemyEnum(PaymentLinkStatus, name='payment_link_status'), default=PaymentLinkStatus.pending, nullable=False)
    token = Column(String(64), unique=True, nullable=False, index=True)
    payment_url = Column(String(500), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    transaction_id = Column(String(255), nullable=True)
    payment_method = Column(String(50), nullable=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    appointment = relationship("Appointment", back_populates="payment_links")


class AppointmentPaymentRule(Base):
    __tablename__ = "appointment_payment_rules"

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, unique=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_by_role = Column(SQLAlchemyEnum(UserRole, name='user_role'), nullable=False)
    requires_payment = Column(Boolean, nullable=False)
    payment_status = Column(SQLAlchemyEnum(PaymentStatus, name='payment_status'), nullable=False)
    payment_link_id = Column(Integer, ForeignKey("payment_links.id"), nullable=True)
    confirmation_status = Column(SQLAlchemyEnum(ConfirmationStatus, name='confirmation_status'), nullable=False)

    patient_notified = Column(Boolean, default=False)
    staff_notified = Column(Boolean, default=False)
    reminders_sent = Column(Integer, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    appointment = relationship("Appointment", back_populates="payment_rule")


class ScheduledReminder(Base):
    __tablename__ = "scheduled_reminders"
    __table_args__ = (
        Index('idx_reminders_status_due', 'status', 'scheduled_for'),
    )

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False)
    payment_link_id = Column(Integer, ForeignKey("payment_links.id"), nullable=False)
    type = Column(String(50), default="payment_reminder")
    scheduled_for = Column(DateTime(timezone=True), nullable=False)
    interval_hours = Column(Integer, nullable=False)
    status = Column(SQLAlchemyEnum(ReminderStatus, name='reminder_status'), default=ReminderStatus.pending, nullable=False)

    sent_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class StaffNotification(Base):
    __tablename__ = "staff_notifications"

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    type = Column(SQLAlchemyEnum(NotificationType, name='notification_type'), nullable=False)
    message = Column(Text, nullable=False)
    target_role = Column(String(20), nullable=True)
    target_user_id = Column(Integer, nullable=True)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class EmailLog(Base):
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(50), nullable=False)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    recipient = Column(String(255), nullable=True)
    status = Column(String(20), default="sent")  # sent, simulated, failed
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PaymentValidationLog(Base):
    __tablename__ = "payment_validation_logs"

    id = Column(Integer, primary_key=True, index=True)
    payment_link_id = Column(Integer, nullable=False, index=True)
    appointment_id = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False)  # success, failed
    transaction_id = Column(String(255), nullable=True)
    amount = Column(Numeric(10, 2), nullable=True)
    payment_method = Column(String(50), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AuditLog(Base):
    """Append-only record of who performed which mutation."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_user_date', 'user_id', 'timestamp'),
        Index('idx_audit_action_date', 'action', 'timestamp'),
        Index('idx_audit_resource', 'resource_type', 'resource_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    username = Column(String(255), nullable=True)  # Denormalized for audit integrity
    action = Column(SQLAlchemyEnum(AuditAction, name='audit_action'), nullable=False)
    event = Column(String(100), nullable=True)
    category = Column(String(50), nullable=False, default="GENERAL", index=True)
    severity = Column(String(20), default="INFO", index=True)  # INFO, WARN, ERROR
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User")
