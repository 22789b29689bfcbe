# telemed/services/appointment_payment_service.py
import logging
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, NamedTuple, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from telemed import crud, models, schemas
from telemed.config import get_settings
from telemed.database import SessionLocal
from telemed.exceptions import (
    CRUDError, PaymentAmountMismatchError, PaymentLinkAccessError, PaymentLinkExpiredError, PaymentLinkNotFoundError,
    PaymentLinkNotPendingError, PaymentValidationError, SlotConflictError,
)
from telemed.local_cache import LocalStore
from telemed.realtime import ChangeFeed
from telemed.services.appointment_service import AppointmentService, as_utc
from telemed.services.email_service import PaymentEmailService, email_service as default_email_service

logger = logging.getLogger(__name__)

STAFF_MESSAGES = {
    models.NotificationType.payment_link_sent: "Payment link sent for the appointment of {patient}",
    models.NotificationType.payment_success: "Payment confirmed - appointment of {patient} validated",
    models.NotificationType.payment_failed: "Payment failed for the appointment of {patient}",
    models.NotificationType.payment_expired: "Payment expired - appointment of {patient} cancelled",
    models.NotificationType.patient_booking_confirmed: "New patient booking confirmed: {patient}",
}


class BookingResult(NamedTuple):
    appointment: models.Appointment
    payment_required: bool
    payment_link: Optional[models.PaymentLink]


class PaymentValidationResult(NamedTuple):
    appointment: models.Appointment
    payment_link: models.PaymentLink


class AppointmentPaymentService:
    """Bookings gated on payment when staff book on behalf of a patient.

    All rows of one booking or one validation are written in a single
    transaction; emails go out after the commit and are recorded in EmailLog.
    """

    def __init__(
        self,
        db: Optional[Session],
        email_service: Optional[PaymentEmailService] = None,
        appointment_service: Optional[AppointmentService] = None,
        now: Optional[Callable[[], datetime]] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        feed: Optional[ChangeFeed] = None,
        cache: Optional[LocalStore] = None,
    ):
        self.db = db
        self.settings = get_settings()
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.email = email_service or default_email_service
        self.appointments = appointment_service or AppointmentService(
            db, session_factory=session_factory, feed=feed, cache=cache, now=self._now,
        )

    @property
    def payment_link_expiry_hours(self) -> int:
        return self.settings.payment_link_expiry_hours

    @property
    def reminder_intervals(self) -> List[int]:
        return list(self.settings.payment_reminder_intervals)

    @property
    def currency(self) -> str:
        return self.settings.payment_currency

    def _require_db(self) -> Session:
        if self.db is None:
            raise CRUDError("Database not configured")
        return self.db

    @staticmethod
    def should_require_payment(role: Union[models.UserRole, str]) -> bool:
        """Staff bookings need payment before confirmation; patient self-bookings do not."""
        return models.UserRole(role) in (models.UserRole.doctor, models.UserRole.secretary)

    # ----------------------------------------------------------------- booking

    async def create_appointment_with_payment_validation(
        self,
        data: schemas.AppointmentCreate,
        created_by: int,
        created_by_role: Union[models.UserRole, str],
    ) -> BookingResult:
        db = self._require_db()
        role = models.UserRole(created_by_role)
        requires_payment = self.should_require_payment(role)
        now = self._now()

        try:
            appointment = self.appointments.create_appointment(
                data, created_by, role,
                initial_status=models.AppointmentStatus.pending_payment if requires_payment else models.AppointmentStatus.confirmed,
                payment_status=models.PaymentStatus.pending if requires_payment else models.PaymentStatus.not_required,
                commit=False,
            )
            rule = crud.create_document(db, models.AppointmentPaymentRule, {
                "appointment_id": appointment.id,
                "created_by_role": role,
                "requires_payment": requires_payment,
                "payment_status": models.PaymentStatus.pending if requires_payment else models.PaymentStatus.not_required,
                "confirmation_status": models.ConfirmationStatus.pending if requires_payment else models.ConfirmationStatus.confirmed,
                "reminders_sent": 0,
            }, user_id=created_by, commit=False)

            payment_link = None
            if requires_payment:
                payment_link = self._generate_payment_link(appointment, now, created_by)
                rule.payment_link_id = payment_link.id
                self._schedule_reminders(appointment, payment_link, now)
                self._notify_staff(appointment, models.NotificationType.payment_link_sent)
            else:
                self._notify_staff(appointment, models.NotificationType.patient_booking_confirmed)
            rule.staff_notified = True

            self.appointments._commit()
        except CRUDError as e:
            db.rollback()
            if AppointmentService._is_overlap_violation(e):
                raise SlotConflictError("The requested time slot is no longer available") from e
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while booking with payment validation: {e}")
            raise CRUDError("A database error occurred while booking the appointment.") from e

        db.refresh(appointment)
        logger.info(
            f"Appointment {appointment.id} booked by {role.value} {created_by} "
            f"(payment required: {requires_payment})"
        )

        if payment_link is not None:
            db.refresh(payment_link)
            result = await self.email.send_payment_link(
                appointment.patient_email, appointment.patient_name, appointment.doctor_name,
                as_utc(appointment.scheduled_at), payment_link.amount, payment_link.currency,
                payment_link.payment_url, as_utc(payment_link.expires_at),
            )
            self._log_email("payment_link", appointment, result, patient_notified=True)

        return BookingResult(appointment, requires_payment, payment_link)

    def _generate_payment_link(self, appointment: models.Appointment, now: datetime, user_id: Optional[int]) -> models.PaymentLink:
        token = secrets.token_urlsafe(24)
        return crud.create_document(self.db, models.PaymentLink, {
            "appointment_id": appointment.id,
            "patient_id": appointment.patient_id,
            "amount": appointment.fee,
            "currency": self.currency,
            "status": models.PaymentLinkStatus.pending,
            "token": token,
            "payment_url": f"{self.settings.payment_base_url.rstrip('/')}/payment/{token}",
            "expires_at": now + timedelta(hours=self.payment_link_expiry_hours),
            "created_at": now,
        }, user_id=user_id, audit_action="create_payment_link", category="PAYMENT", commit=False)

    def _schedule_reminders(self, appointment: models.Appointment, payment_link: models.PaymentLink, now: datetime) -> None:
        expires_at = now + timedelta(hours=self.payment_link_expiry_hours)
        for hours in self.reminder_intervals:
            scheduled_for = now + timedelta(hours=hours)
            if scheduled_for >= expires_at:
                continue
            self.db.add(models.ScheduledReminder(
                appointment_id=appointment.id,
                payment_link_id=payment_link.id,
                type="payment_reminder",
                scheduled_for=scheduled_for,
                interval_hours=hours,
                status=models.ReminderStatus.pending,
            ))

    def _notify_staff(self, appointment: models.Appointment, notification_type: models.NotificationType) -> None:
        self.db.add(models.StaffNotification(
            appointment_id=appointment.id,
            type=notification_type,
            message=STAFF_MESSAGES[notification_type].format(patient=appointment.patient_name),
            target_role=appointment.created_by_role.value if appointment.created_by_role else models.UserRole.doctor.value,
            target_user_id=appointment.created_by or appointment.doctor_id,
            read=False,
        ))
        logger.info(f"Staff notification {notification_type.value} for appointment {appointment.id}")

    def _log_email(self, email_type: str, appointment: models.Appointment, result: Dict, patient_notified: bool = False) -> None:
        db = self.db
        try:
            db.add(models.EmailLog(
                type=email_type,
                appointment_id=appointment.id,
                recipient=appointment.patient_email,
                status=result.get("status", "sent" if result.get("success") else "failed"),
                error=None if result.get("success") else result.get("message"),
            ))
            if patient_notified and result.get("success"):
                rule = self._rule_for(appointment.id)
                if rule is not None:
                    rule.patient_notified = True
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            # The email itself already went out
            logger.error(f"Failed to record {email_type} email for appointment {appointment.id}: {e}")

    def _rule_for(self, appointment_id: int) -> Optional[models.AppointmentPaymentRule]:
        return (
            self.db.query(models.AppointmentPaymentRule)
            .filter(models.AppointmentPaymentRule.appointment_id == appointment_id)
            .first()
        )

    # -------------------------------------------------------------- validation

    async def validate_payment_and_confirm_appointment(
        self,
        payment_link_id: int,
        payment: schemas.PaymentConfirmation,
        user_id: Optional[int] = None,
        user_role: Optional[Union[models.UserRole, str]] = None,
    ) -> PaymentValidationResult:
        """Confirm the appointment behind a payment link.

        A patient may only pay their own link; staff may record any payment.
        Raises a PaymentValidationError subclass when the link is unknown,
        belongs to another patient, already used, expired, for another amount,
        or its appointment is no longer awaiting payment. An expired link is
        expired in the database (with its appointment cancelled) before the
        error is raised.
        """
        db = self._require_db()
        now = self._now()
        appointment_id = None
        expired_appointment = None

        try:
            link = (
                db.query(models.PaymentLink)
                .filter(models.PaymentLink.id == payment_link_id)
                .with_for_update()
                .first()
            )
            if link is None:
                raise PaymentLinkNotFoundError(f"Payment link {payment_link_id} not found")
            appointment_id = link.appointment_id
            if user_role is not None and models.UserRole(user_role) == models.UserRole.patient and link.patient_id != user_id:
                raise PaymentLinkAccessError(f"Payment link {payment_link_id} belongs to another patient")

            if link.status in (models.PaymentLinkStatus.paid, models.PaymentLinkStatus.failed):
                raise PaymentLinkNotPendingError(f"Payment link {payment_link_id} is already {link.status.value}")

            if link.status == models.PaymentLinkStatus.expired or now > as_utc(link.expires_at):
                expired_appointment = self._expire_link(link, now, user_id)
                db.commit()
                raise PaymentLinkExpiredError(f"Payment link {payment_link_id} expired at {as_utc(link.expires_at).isoformat()}")

            if Decimal(str(payment.amount)) != Decimal(str(link.amount)):
                raise PaymentAmountMismatchError(
                    f"Paid amount {payment.amount} does not match the expected {link.amount} {link.currency}"
                )

            appointment = (
                db.query(models.Appointment)
                .filter(models.Appointment.id == link.appointment_id)
                .with_for_update()
                .first()
            )
            if appointment is None or appointment.status != models.AppointmentStatus.pending_payment:
                raise PaymentLinkNotPendingError(f"Appointment {link.appointment_id} is not awaiting payment")

            crud.update_document(db, models.PaymentLink, link.id, {
                "status": models.PaymentLinkStatus.paid,
                "paid_at": now,
                "transaction_id": payment.transaction_id,
                "payment_method": payment.payment_method,
            }, user_id=user_id, commit=False)
            crud.update_document(db, models.Appointment, appointment.id, {
                "status": models.AppointmentStatus.confirmed,
                "payment_status": models.PaymentStatus.paid,
                "confirmed_at": now,
            }, user_id=user_id, audit_action="validate_payment", category="PAYMENT",
                expected_version=appointment.version, commit=False)

            rule = self._rule_for(appointment.id)
            if rule is not None:
                rule.payment_status = models.PaymentStatus.paid
                rule.confirmation_status = models.ConfirmationStatus.confirmed
            self._notify_staff(appointment, models.NotificationType.payment_success)
            db.add(models.PaymentValidationLog(
                payment_link_id=link.id,
                appointment_id=appointment.id,
                status="success",
                transaction_id=payment.transaction_id,
                amount=payment.amount,
                payment_method=payment.payment_method,
            ))
            db.commit()
        except PaymentValidationError as e:
            db.rollback()
            self._record_validation_failure(payment_link_id, appointment_id, payment, e, user_id)
            if expired_appointment is not None:
                await self._send_expired_email(expired_appointment)
            raise
        except CRUDError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error validating payment link {payment_link_id}: {e}")
            raise CRUDError("A database error occurred while validating the payment.") from e

        db.refresh(appointment)
        db.refresh(link)
        logger.info(f"Payment {payment.transaction_id} confirmed appointment {appointment.id}")

        result = await self.email.send_payment_confirmation(
            appointment.patient_email, appointment.patient_name, appointment.doctor_name,
            as_utc(appointment.scheduled_at), link.amount, link.currency,
        )
        self._log_email("payment_confirmation", appointment, result)
        return PaymentValidationResult(appointment, link)

    def _record_validation_failure(self, payment_link_id, appointment_id, payment, error, user_id) -> None:
        logger.warning(f"Payment validation failed for link {payment_link_id}: {error}")
        self.db.add(models.PaymentValidationLog(
            payment_link_id=payment_link_id,
            appointment_id=appointment_id,
            status="failed",
            transaction_id=payment.transaction_id,
            amount=payment.amount,
            payment_method=payment.payment_method,
            error=str(error),
        ))
        crud.log_audit_action(
            self.db, user_id, "payment_validation_failed",
            resource_type="PaymentLink", resource_id=payment_link_id,
            details=f"{type(error).__name__}: {error}",
            severity="WARN", category="PAYMENT",
        )

    def _expire_link(self, link: models.PaymentLink, now: datetime, user_id: Optional[int] = None) -> Optional[models.Appointment]:
        """Expire a pending link and cancel what hangs off it. The caller commits.

        Returns the appointment when it was cancelled by this call.
        """
        if link.status != models.PaymentLinkStatus.pending:
            return None
        db = self.db

        cancelled = None
        appointment = (
            db.query(models.Appointment)
            .filter(models.Appointment.id == link.appointment_id)
            .with_for_update()
            .first()
        )
        if appointment is not None and appointment.status == models.AppointmentStatus.pending_payment:
            crud.update_document(db, models.Appointment, appointment.id, {
                "status": models.AppointmentStatus.cancelled,
                "payment_status": models.PaymentStatus.expired,
                "cancelled_at": now,
                "cancelled_by": user_id,
                "cancellation_reason": "Payment not received before the link expired",
            }, user_id=user_id, audit_action="expire_appointment_payment", category="PAYMENT",
                expected_version=appointment.version, commit=False)
            self._notify_staff(appointment, models.NotificationType.payment_expired)
            cancelled = appointment
        elif appointment is not None and appointment.payment_status == models.PaymentStatus.pending:
            crud.update_document(db, models.Appointment, appointment.id, {
                "payment_status": models.PaymentStatus.expired,
            }, user_id=user_id, expected_version=appointment.version, commit=False)

        self.appointments.expire_pending_payment(
            link.appointment_id, now, user_id, "Payment link expired before payment",
        )
        logger.info(f"Payment link {link.id} expired; appointment {link.appointment_id} cancelled: {cancelled is not None}")
        return cancelled

    async def _send_expired_email(self, appointment: models.Appointment) -> None:
        result = await self.email.send_payment_expired(
            appointment.patient_email, appointment.patient_name, appointment.doctor_name,
            as_utc(appointment.scheduled_at),
        )
        self._log_email("payment_expired", appointment, result)

    # -------------------------------------------------------------------- jobs

    async def process_payment_reminders(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Send every due reminder whose link is still payable; cancel the rest.

        Each reminder is committed on its own so one failure does not undo the others.
        """
        db = self._require_db()
        now = as_utc(now) if now else self._now()
        counts = {"sent": 0, "cancelled": 0, "failed": 0}

        try:
            due_ids = [
                row.id for row in db.query(models.ScheduledReminder.id)
                .filter(
                    models.ScheduledReminder.status == models.ReminderStatus.pending,
                    models.ScheduledReminder.scheduled_for <= now,
                )
                .order_by(models.ScheduledReminder.scheduled_for)
                .all()
            ]
        except SQLAlchemyError as e:
            logger.error(f"Could not load due payment reminders: {e}")
            raise CRUDError("A database error occurred while loading payment reminders.") from e

        for reminder_id in due_ids:
            try:
                outcome = await self._process_reminder(reminder_id, now)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Reminder {reminder_id} failed: {e}")
                self._mark_reminder_failed(reminder_id, now, str(e))
                outcome = "failed"
            if outcome:
                counts[outcome] += 1

        logger.info(f"Payment reminders processed: {counts}")
        return counts

    async def _process_reminder(self, reminder_id: int, now: datetime) -> Optional[str]:
        db = self.db
        reminder = db.get(models.ScheduledReminder, reminder_id)
        if reminder is None or reminder.status != models.ReminderStatus.pending:
            return None

        link = db.get(models.PaymentLink, reminder.payment_link_id)
        appointment = db.get(models.Appointment, reminder.appointment_id)
        payable = (
            link is not None
            and appointment is not None
            and link.status == models.PaymentLinkStatus.pending
            and now <= as_utc(link.expires_at)
            and appointment.status == models.AppointmentStatus.pending_payment
        )
        if not payable:
            reminder.status = models.ReminderStatus.cancelled
            reminder.cancelled_at = now
            db.commit()
            return "cancelled"

        result = await self.email.send_payment_reminder(
            appointment.patient_email, appointment.patient_name, appointment.doctor_name,
            as_utc(appointment.scheduled_at), link.amount, link.currency,
            link.payment_url, as_utc(link.expires_at), reminder.interval_hours,
        )
        db.add(models.EmailLog(
            type="payment_reminder",
            appointment_id=appointment.id,
            recipient=appointment.patient_email,
            status=result.get("status", "failed"),
            error=None if result.get("success") else result.get("message"),
        ))
        if not result.get("success"):
            reminder.status = models.ReminderStatus.failed
            reminder.failed_at = now
            reminder.error = result.get("message")
            db.commit()
            return "failed"

        reminder.status = models.ReminderStatus.sent
        reminder.sent_at = now
        rule = self._rule_for(appointment.id)
        if rule is not None:
            rule.reminders_sent = (rule.reminders_sent or 0) + 1
        db.commit()
        return "sent"

    def _mark_reminder_failed(self, reminder_id: int, now: datetime, error: str) -> None:
        db = self.db
        try:
            db.query(models.ScheduledReminder).filter(models.ScheduledReminder.id == reminder_id).update({
                models.ScheduledReminder.status: models.ReminderStatus.failed,
                models.ScheduledReminder.failed_at: now,
                models.ScheduledReminder.error: error,
            }, synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not mark reminder {reminder_id} as failed: {e}")

    async def cleanup_expired_payment_links(self, now: Optional[datetime] = None) -> int:
        """Expire every pending link past its deadline. Returns how many were expired."""
        db = self._require_db()
        now = as_utc(now) if now else self._now()

        try:
            link_ids = [
                row.id for row in db.query(models.PaymentLink.id)
                .filter(
                    models.PaymentLink.status == models.PaymentLinkStatus.pending,
                    models.PaymentLink.expires_at < now,
                )
                .all()
            ]
        except SQLAlchemyError as e:
            logger.error(f"Could not load expired payment links: {e}")
            raise CRUDError("A database error occurred while loading expired payment links.") from e

        processed = 0
        for link_id in link_ids:
            try:
                link = (
                    db.query(models.PaymentLink)
                    .filter(models.PaymentLink.id == link_id)
                    .with_for_update()
                    .first()
                )
                if link is None or link.status != models.PaymentLinkStatus.pending:
                    db.rollback()
                    continue
                cancelled = self._expire_link(link, now)
                db.commit()
            except (CRUDError, SQLAlchemyError) as e:
                db.rollback()
                logger.error(f"Could not expire payment link {link_id}: {e}")
                continue
            processed += 1
            if cancelled is not None:
                await self._send_expired_email(cancelled)

        logger.info(f"Expired {processed} payment link(s)")
        return processed

    # ------------------------------------------------------------------- reads

    def get_payment_link_by_token(self, token: str) -> models.PaymentLink:
        db = self._require_db()
        link = db.query(models.PaymentLink).filter(models.PaymentLink.token == token).first()
        if link is None:
            raise PaymentLinkNotFoundError("Payment link not found")
        return link

    def get_appointment_validation_status(self, appointment_id: int) -> Optional[models.AppointmentPaymentRule]:
        if self.db is None:
            return None
        try:
            return self._rule_for(appointment_id)
        except SQLAlchemyError as e:
            logger.error(f"Error fetching validation status for appointment {appointment_id}: {e}")
            return None

    def get_payment_statistics(self, doctor_id: int) -> schemas.PaymentStatistics:
        empty = schemas.PaymentStatistics(
            total_appointments=0, paid_appointments=0, pending_payments=0,
            expired_payments=0, total_revenue=Decimal("0"),
        )
        if self.db is None:
            return empty
        try:
            rows = (
                self.db.query(
                    models.Appointment.payment_status,
                    func.count(models.Appointment.id),
                    func.sum(models.Appointment.fee),
                )
                .filter(models.Appointment.doctor_id == doctor_id)
                .group_by(models.Appointment.payment_status)
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Error computing payment statistics for doctor {doctor_id}: {e}")
            return empty

        counts = {status: count for status, count, _ in rows}
        revenue = next((fees for status, _, fees in rows if status == models.PaymentStatus.paid), None)
        return schemas.PaymentStatistics(
            total_appointments=sum(counts.values()),
            paid_appointments=counts.get(models.PaymentStatus.paid, 0),
            pending_payments=counts.get(models.PaymentStatus.pending, 0),
            expired_payments=counts.get(models.PaymentStatus.expired, 0),
            total_revenue=Decimal(str(revenue or 0)).quantize(Decimal("0.01")),
        )
