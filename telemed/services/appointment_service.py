# telemed/services/appointment_service.py
import logging
import time as _time
from datetime import datetime, date, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Union

from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from telemed import crud, models, schemas
from telemed.config import get_settings
from telemed.database import NO_OVERLAP_CONSTRAINT, SessionLocal, is_database_configured
from telemed.exceptions import (
    CRUDError, InvalidTransitionError, NotFoundError, SlotConflictError, VersionConflictError,
)
from telemed.local_cache import APPOINTMENTS_KEY, DOCTORS_KEY, LocalStore
from telemed.realtime import ChangeFeed, Subscription, bind_feed, change_feed, record_change

logger = logging.getLogger(__name__)

# Standard half-hour grid offered to patients
SLOT_GRID = [
    "08:00", "08:30", "09:00", "09:30", "10:00", "10:30", "11:00", "11:30",
    "14:00", "14:30", "15:00", "15:30", "16:00", "16:30", "17:00", "17:30",
]
SLOT_LENGTH_MINUTES = 30
FALLBACK_SLOTS = ["09:00", "10:00", "11:00", "14:00", "15:00", "16:00"]
DEFAULT_SPECIALTY = "General practice"

RESCHEDULING_FIELDS = ("scheduled_at", "duration", "doctor_id")
UNPAID_CANCELLATION = "Appointment cancelled before payment"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC. Naive values (SQLite round-trips) are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_dt(value: Union[str, datetime, None]) -> Optional[datetime]:
    if isinstance(value, str):
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    return as_utc(value)


class SlotConflict(NamedTuple):
    appointment: models.Appointment
    message: str


class AppointmentService:
    """Booking operations for one unit of work.

    `db` is the caller's session; ``None`` means no database is configured and
    reads are served from the local JSON cache.
    """

    def __init__(
        self,
        db: Optional[Session],
        session_factory: Callable[[], Session] = SessionLocal,
        feed: Optional[ChangeFeed] = None,
        cache: Optional[LocalStore] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.session_factory = session_factory
        self.feed = feed or change_feed
        self.cache = cache or LocalStore()
        self.settings = get_settings()
        self._now = now or (lambda: datetime.now(timezone.utc))
        if db is not None:
            bind_feed(db, self.feed)

    @property
    def local_mode(self) -> bool:
        return self.db is None

    def _require_db(self) -> Session:
        if self.db is None:
            raise CRUDError("Database not configured")
        return self.db

    # ------------------------------------------------------------------ create

    def create_appointment(
        self,
        data: schemas.AppointmentCreate,
        user_id: Optional[int],
        user_role: models.UserRole,
        initial_status: models.AppointmentStatus = models.AppointmentStatus.scheduled,
        payment_status: models.PaymentStatus = models.PaymentStatus.not_required,
        commit: bool = True,
    ) -> Union[models.Appointment, Dict[str, Any]]:
        """Book a consultation after checking the doctor's slot.

        With ``commit=False`` the caller owns the transaction (and the doctor
        row lock taken here).
        """
        now = self._now()
        start = as_utc(data.scheduled_at)

        if self.local_mode:
            return self._create_local_appointment(data, user_id, user_role, initial_status, start, now)

        db = self.db
        doctor = self._lock_doctor(data.doctor_id)
        patient = crud.get_user(db, data.patient_id)
        if patient is None:
            db.rollback()
            raise NotFoundError(f"Patient {data.patient_id} not found")

        conflict = self.check_slot_conflict(data.doctor_id, start, data.duration)
        if conflict:
            db.rollback()
            logger.info(f"Slot conflict for doctor {data.doctor_id} at {start.isoformat()}: {conflict.message}")
            raise SlotConflictError(conflict.message, conflict.appointment.id)

        fee = data.fee
        if fee is None:
            fee = doctor.consultation_fee if doctor.consultation_fee is not None else Decimal(str(self.settings.default_consultation_fee))

        values = {
            "patient_id": patient.id,
            "patient_name": data.patient_name or patient.full_name,
            "patient_email": data.patient_email or patient.email,
            "patient_phone": data.patient_phone or patient.phone_number,
            "doctor_id": doctor.id,
            "doctor_name": data.doctor_name or doctor.full_name,
            "scheduled_at": start,
            "duration": data.duration,
            "ends_at": start + timedelta(minutes=data.duration),
            "type": data.type,
            "reason": data.reason,
            "notes": data.notes,
            "status": initial_status,
            "payment_status": payment_status,
            "fee": fee,
            "created_by_role": user_role,
            "version": 1,
            "last_modified_by": user_id,
        }
        if initial_status == models.AppointmentStatus.confirmed:
            values["confirmed_at"] = now

        try:
            appointment = crud.create_document(
                db, models.Appointment, values, user_id=user_id,
                audit_action="create_appointment", category="APPOINTMENT", commit=False,
            )
            doctor.last_appointment_created = now
            record_change(db, models.User.__tablename__, "UPDATE", doctor.id)
            if commit:
                self._commit()
                db.refresh(appointment)
        except CRUDError as e:
            if self._is_overlap_violation(e):
                raise SlotConflictError("The requested time slot is no longer available") from e
            raise

        logger.info(f"Appointment {appointment.id} created for doctor {doctor.id} at {start.isoformat()} ({initial_status.value})")
        return appointment

    def _create_local_appointment(self, data, user_id, user_role, status, start, now) -> Dict[str, Any]:
        record = data.model_dump()
        record.update({
            "id": f"local-{int(_time.time() * 1000)}",
            "scheduled_at": start,
            "ends_at": start + timedelta(minutes=data.duration),
            "patient_name": data.patient_name or "",
            "doctor_name": data.doctor_name or "",
            "fee": data.fee if data.fee is not None else Decimal(str(self.settings.default_consultation_fee)),
            "status": status,
            "payment_status": models.PaymentStatus.not_required,
            "created_by": user_id,
            "created_by_role": user_role,
            "version": 1,
            "last_modified_by": user_id,
            "created_at": now,
            "updated_at": now,
        })
        logger.warning(f"Database not configured; appointment stored locally as {record['id']}")
        self.cache.append(APPOINTMENTS_KEY, record)
        return jsonable_encoder(record)

    def _lock_doctor(self, doctor_id: int) -> models.User:
        """Row lock on the doctor serializes concurrent bookings for that doctor."""
        try:
            doctor = (
                self.db.query(models.User)
                .filter(models.User.id == doctor_id, models.User.role == models.UserRole.doctor)
                .with_for_update()
                .first()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error locking doctor {doctor_id}: {e}")
            raise CRUDError("A database error occurred while reserving the slot.") from e
        if doctor is None:
            self.db.rollback()
            raise NotFoundError(f"Doctor {doctor_id} not found")
        return doctor

    def _commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.error(f"Integrity error on commit: {e}")
            raise CRUDError("Could not save appointment due to a database integrity issue.") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error on commit: {e}")
            raise CRUDError("A database error occurred while saving the appointment.") from e

    @staticmethod
    def _is_overlap_violation(error: CRUDError) -> bool:
        cause = error.__cause__
        return isinstance(cause, IntegrityError) and NO_OVERLAP_CONSTRAINT in str(cause.orig)

    # ---------------------------------------------------------------- conflicts

    def check_slot_conflict(
        self,
        doctor_id: int,
        scheduled_at: datetime,
        duration: int,
        exclude_id: Optional[int] = None,
    ) -> Optional[SlotConflict]:
        """First blocking appointment of the doctor overlapping [start, start + duration)."""
        if self.local_mode:
            return None

        start = as_utc(scheduled_at)
        end = start + timedelta(minutes=duration)
        # Durations are capped, so any overlapping booking starts inside this window
        window_start = start - timedelta(hours=self.settings.conflict_window_hours)

        try:
            query = self.db.query(models.Appointment).filter(
                models.Appointment.doctor_id == doctor_id,
                models.Appointment.status.in_(models.BLOCKING_STATUSES),
                models.Appointment.scheduled_at >= window_start,
                models.Appointment.scheduled_at < end,
            )
            if exclude_id is not None:
                query = query.filter(models.Appointment.id != exclude_id)
            candidates = query.order_by(models.Appointment.scheduled_at).all()
        except SQLAlchemyError as e:
            logger.error(f"Database error checking conflicts for doctor {doctor_id}: {e}")
            raise CRUDError("A database error occurred while checking availability.") from e

        for existing in candidates:
            existing_start = as_utc(existing.scheduled_at)
            existing_end = existing_start + timedelta(minutes=existing.duration)
            if start < existing_end and existing_start < end:
                message = (
                    f"Conflict with the appointment of {existing.patient_name} "
                    f"from {existing_start:%H:%M} to {existing_end:%H:%M}"
                )
                return SlotConflict(existing, message)
        return None

    # ------------------------------------------------------------------ update

    def get_appointment(self, appointment_id: Union[int, str], user_id: Optional[int] = None):
        if self.local_mode:
            for item in self.cache.read(APPOINTMENTS_KEY):
                if str(item.get("id")) == str(appointment_id):
                    return item
            raise NotFoundError(f"Appointment {appointment_id} not found")
        return crud.read_document(self.db, models.Appointment, appointment_id, user_id=user_id)

    def update_appointment(
        self,
        appointment_id: int,
        updates: schemas.AppointmentUpdate,
        user_id: Optional[int],
    ) -> models.Appointment:
        """Versioned partial update.

        The submitted version must be strictly greater than the stored one; the
        write itself is conditional on the version that was read, so a
        concurrent writer in between turns into VersionConflictError.
        """
        db = self._require_db()
        try:
            current = crud.read_document(db, models.Appointment, appointment_id)
            if updates.version <= current.version:
                raise VersionConflictError(
                    "Version conflict: the appointment was modified by another user"
                )

            changes = updates.model_dump(exclude_unset=True, exclude={"version"})
            changes = {k: v for k, v in changes.items() if v is not None}
            now = self._now()

            new_status = changes.get("status")
            if new_status is not None:
                if new_status == current.status:
                    changes.pop("status")
                elif new_status not in models.STATUS_TRANSITIONS[current.status]:
                    raise InvalidTransitionError(
                        f"Cannot change status from {current.status.value} to {new_status.value}"
                    )
                elif new_status == models.AppointmentStatus.confirmed:
                    changes["confirmed_at"] = now
                elif new_status == models.AppointmentStatus.cancelled:
                    changes["cancelled_at"] = now
                    changes["cancelled_by"] = user_id
                    if current.status == models.AppointmentStatus.pending_payment:
                        changes["payment_status"] = models.PaymentStatus.expired
                        self.expire_pending_payment(current.id, now, user_id, UNPAID_CANCELLATION)

            if "scheduled_at" in changes:
                changes["scheduled_at"] = as_utc(changes["scheduled_at"])
            current_start = as_utc(current.scheduled_at)
            rescheduled = (
                changes.get("scheduled_at", current_start) != current_start
                or changes.get("duration", current.duration) != current.duration
                or changes.get("doctor_id", current.doctor_id) != current.doctor_id
            )
            if rescheduled:
                self._reschedule(current, changes)

            expected_version = current.version
            appointment = crud.update_document(
                db, models.Appointment, appointment_id, changes, user_id=user_id,
                audit_action="update_appointment", category="APPOINTMENT",
                expected_version=expected_version, commit=False,
            )
            self._commit()
            db.refresh(appointment)
        except CRUDError as e:
            db.rollback()
            if self._is_overlap_violation(e):
                raise SlotConflictError("The requested time slot is no longer available") from e
            raise
        logger.info(f"Appointment {appointment_id} updated to version {appointment.version}")
        return appointment

    def _reschedule(self, current: models.Appointment, changes: Dict[str, Any]) -> None:
        doctor_id = changes.get("doctor_id", current.doctor_id)
        start = changes.get("scheduled_at", as_utc(current.scheduled_at))
        duration = changes.get("duration", current.duration)
        status = changes.get("status", current.status)

        doctor = self._lock_doctor(doctor_id)
        if doctor_id != current.doctor_id:
            changes["doctor_name"] = doctor.full_name
        changes["scheduled_at"] = start
        changes["ends_at"] = start + timedelta(minutes=duration)

        if status in models.BLOCKING_STATUSES:
            conflict = self.check_slot_conflict(doctor_id, start, duration, exclude_id=current.id)
            if conflict:
                raise SlotConflictError(conflict.message, conflict.appointment.id)

    def delete_appointment(self, appointment_id: int, user_id: Optional[int], user_role: models.UserRole) -> models.Appointment:
        """Soft-cancel; the row stays for audit."""
        db = self._require_db()
        try:
            current = crud.read_document(db, models.Appointment, appointment_id)
            if current.status == models.AppointmentStatus.cancelled:
                return current
            role = user_role.value if hasattr(user_role, "value") else str(user_role)
            now = self._now()
            values = {
                "status": models.AppointmentStatus.cancelled,
                "cancelled_by": user_id,
                "cancelled_at": now,
                "cancellation_reason": f"Deleted by {role}",
            }
            if current.status == models.AppointmentStatus.pending_payment:
                values["payment_status"] = models.PaymentStatus.expired
                self.expire_pending_payment(current.id, now, user_id, UNPAID_CANCELLATION)
            appointment = crud.update_document(
                db, models.Appointment, appointment_id, values,
                user_id=user_id, audit_action="cancel_appointment", category="APPOINTMENT",
                expected_version=current.version, commit=False,
            )
            self._commit()
            db.refresh(appointment)
        except CRUDError:
            db.rollback()
            raise
        logger.info(f"Appointment {appointment_id} cancelled by {role} {user_id}")
        return appointment

    def expire_pending_payment(self, appointment_id: int, now: datetime, user_id: Optional[int], reason: str) -> None:
        """Close the payment an appointment still waits for. The caller commits.

        Pending links expire, pending reminders are cancelled and a pending
        rule becomes expired/cancelled. The appointment row is left to the caller.
        """
        db = self._require_db()
        try:
            links = (
                db.query(models.PaymentLink)
                .filter(
                    models.PaymentLink.appointment_id == appointment_id,
                    models.PaymentLink.status == models.PaymentLinkStatus.pending,
                )
                .with_for_update()
                .all()
            )
            for link in links:
                crud.update_document(db, models.PaymentLink, link.id, {
                    "status": models.PaymentLinkStatus.expired,
                    "failure_reason": reason,
                }, user_id=user_id, audit_action="expire_payment_link", category="PAYMENT", commit=False)

            (
                db.query(models.ScheduledReminder)
                .filter(
                    models.ScheduledReminder.appointment_id == appointment_id,
                    models.ScheduledReminder.status == models.ReminderStatus.pending,
                )
                .update({
                    models.ScheduledReminder.status: models.ReminderStatus.cancelled,
                    models.ScheduledReminder.cancelled_at: now,
                }, synchronize_session=False)
            )

            rule = (
                db.query(models.AppointmentPaymentRule)
                .filter(models.AppointmentPaymentRule.appointment_id == appointment_id)
                .first()
            )
            if rule is not None and rule.payment_status == models.PaymentStatus.pending:
                rule.payment_status = models.PaymentStatus.expired
                rule.confirmation_status = models.ConfirmationStatus.cancelled
        except SQLAlchemyError as e:
            logger.error(f"Database error expiring the payment of appointment {appointment_id}: {e}")
            raise CRUDError("A database error occurred while closing the payment.") from e
        logger.info(f"Payment of appointment {appointment_id} closed ({len(links)} link(s)): {reason}")

    # ------------------------------------------------------------------- reads

    @staticmethod
    def _appointment_filters(filters: Optional[Dict[str, Any]]) -> List[tuple]:
        filters = filters or {}
        clauses = []
        if filters.get("doctor_id"):
            clauses.append(("doctor_id", "eq", filters["doctor_id"]))
        if filters.get("patient_id"):
            clauses.append(("patient_id", "eq", filters["patient_id"]))
        if filters.get("status"):
            clauses.append(("status", "in", [models.AppointmentStatus(s) for s in filters["status"]]))
        if filters.get("date_from"):
            clauses.append(("scheduled_at", "gte", as_utc(filters["date_from"])))
        if filters.get("date_to"):
            clauses.append(("scheduled_at", "lt", as_utc(filters["date_to"])))
        return clauses

    @staticmethod
    def _filter_cached(items: List[Dict[str, Any]], filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        filters = filters or {}
        statuses = {models.AppointmentStatus(s).value for s in filters.get("status") or []}
        result = []
        for item in items:
            if filters.get("doctor_id") and item.get("doctor_id") != filters["doctor_id"]:
                continue
            if filters.get("patient_id") and item.get("patient_id") != filters["patient_id"]:
                continue
            if statuses and item.get("status") not in statuses:
                continue
            start = _parse_dt(item.get("scheduled_at"))
            if filters.get("date_from") and (start is None or start < as_utc(filters["date_from"])):
                continue
            if filters.get("date_to") and (start is None or start >= as_utc(filters["date_to"])):
                continue
            result.append(item)
        return result

    def _query_appointments(self, db: Session, filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        rows = crud.query_documents(
            db, models.Appointment,
            filters=self._appointment_filters(filters),
            order_by="-scheduled_at",
        ).data
        return [schemas.AppointmentResponse.model_validate(r).model_dump(mode="json") for r in rows]

    def _query_doctors(self, db: Session) -> List[Dict[str, Any]]:
        rows = crud.query_documents(
            db, models.User,
            filters=[("role", "eq", models.UserRole.doctor), ("is_active", "eq", True)],
            order_by=["last_name", "first_name"],
        ).data
        doctors = []
        for user in rows:
            doctor = schemas.DoctorResponse.model_validate(user)
            doctor.specialty = doctor.specialty or DEFAULT_SPECIALTY
            if doctor.consultation_fee is None:
                doctor.consultation_fee = Decimal(str(self.settings.default_consultation_fee))
            doctors.append(doctor.model_dump(mode="json"))
        return doctors

    def list_appointments(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Filtered appointments, most recent first. Served from the local cache without a database."""
        if self.local_mode:
            return self._filter_cached(self.cache.read(APPOINTMENTS_KEY), filters)
        items = self._query_appointments(self.db, filters)
        self.cache.write(APPOINTMENTS_KEY, items)
        return items

    def list_doctors(self) -> List[Dict[str, Any]]:
        if self.local_mode:
            return self.cache.read(DOCTORS_KEY)
        items = self._query_doctors(self.db)
        self.cache.write(DOCTORS_KEY, items)
        return items

    def _subscribe(self, table: str, cache_key: str, loader, callback, cached, dispatch=None) -> Subscription:
        def refetch() -> None:
            if self.local_mode or (self.session_factory is SessionLocal and not is_database_configured()):
                callback(cached())
                return
            session = self.session_factory()
            try:
                items = loader(session)
            except (CRUDError, SQLAlchemyError) as e:
                logger.warning(f"Loading {table} failed, serving the local cache: {e}")
                items = cached()
            else:
                self.cache.write(cache_key, items)
            finally:
                session.close()
            callback(items)

        def on_change(change=None) -> None:
            if dispatch is None:
                refetch()
            else:
                dispatch(refetch)

        on_change()
        return self.feed.subscribe(table, on_change)

    def subscribe_to_appointments(
        self,
        callback: Callable[[List[Dict[str, Any]]], None],
        filters: Optional[Dict[str, Any]] = None,
        dispatch: Optional[Callable[[Callable[[], None]], None]] = None,
    ) -> Subscription:
        """Push the whole filtered list now and after every committed appointment change.

        Without `dispatch` the list is reloaded in the committing thread.
        Otherwise `dispatch` receives the reload and decides where it runs,
        e.g. off an event loop.
        """
        return self._subscribe(
            models.Appointment.__tablename__, APPOINTMENTS_KEY,
            lambda session: self._query_appointments(session, filters),
            callback,
            lambda: self._filter_cached(self.cache.read(APPOINTMENTS_KEY), filters),
            dispatch,
        )

    def subscribe_to_doctors(self, callback: Callable[[List[Dict[str, Any]]], None]) -> Subscription:
        return self._subscribe(
            models.User.__tablename__, DOCTORS_KEY,
            self._query_doctors,
            callback,
            lambda: self.cache.read(DOCTORS_KEY),
        )

    def get_available_slots(self, doctor_id: int, day: date) -> List[str]:
        """Free half-hour slots of the standard grid for one day (UTC)."""
        if self.local_mode:
            return list(FALLBACK_SLOTS)

        day_start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        day_end = day_start + timedelta(days=1)
        try:
            booked = self.db.query(models.Appointment).filter(
                models.Appointment.doctor_id == doctor_id,
                models.Appointment.status.in_(models.BLOCKING_STATUSES),
                models.Appointment.scheduled_at >= day_start - timedelta(hours=self.settings.conflict_window_hours),
                models.Appointment.scheduled_at < day_end,
            ).all()
        except SQLAlchemyError as e:
            logger.error(f"Error fetching slots for doctor {doctor_id} on {day}: {e}")
            return list(FALLBACK_SLOTS)

        intervals = []
        for appointment in booked:
            start = as_utc(appointment.scheduled_at)
            intervals.append((start, start + timedelta(minutes=appointment.duration)))

        available = []
        for slot in SLOT_GRID:
            hour, minute = (int(part) for part in slot.split(":"))
            slot_start = datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)
            slot_end = slot_start + timedelta(minutes=SLOT_LENGTH_MINUTES)
            if not any(slot_start < end and start < slot_end for start, end in intervals):
                available.append(slot)
        return available

    # -------------------------------------------------------------- statistics

    def get_appointment_statistics(self, doctor_id: Optional[int] = None) -> schemas.AppointmentStatistics:
        filters = {"doctor_id": doctor_id} if doctor_id else None
        if self.local_mode:
            items = self._filter_cached(self.cache.read(APPOINTMENTS_KEY), filters)
        else:
            try:
                items = self._query_appointments(self.db, filters)
            except CRUDError as e:
                logger.warning(f"Statistics query failed, using the local cache: {e}")
                items = self._filter_cached(self.cache.read(APPOINTMENTS_KEY), filters)
        return self._calculate_statistics(items)

    def _calculate_statistics(self, items: List[Dict[str, Any]]) -> schemas.AppointmentStatistics:
        now = self._now()
        today = now.date()
        week_start = today - timedelta(days=today.weekday())
        week_end = week_start + timedelta(days=7)

        counts = {status.value: 0 for status in models.AppointmentStatus}
        today_count = week_count = 0
        for item in items:
            status = item.get("status")
            if status in counts:
                counts[status] += 1
            start = _parse_dt(item.get("scheduled_at"))
            if start is None:
                continue
            if start.date() == today:
                today_count += 1
            if week_start <= start.date() < week_end:
                week_count += 1

        return schemas.AppointmentStatistics(total=len(items), today=today_count, this_week=week_count, **counts)
