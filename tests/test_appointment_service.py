# tests/test_appointment_service.py
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from telemed import models, schemas
from telemed.exceptions import (
    CRUDError, InvalidTransitionError, NotFoundError, SlotConflictError, VersionConflictError,
)
from telemed.local_cache import APPOINTMENTS_KEY
from telemed.services.appointment_service import FALLBACK_SLOTS, SLOT_GRID, AppointmentService, as_utc

from conftest import at, make_booking


def book(service, users, start, duration=30, creator=None, **extra):
    creator = creator or users.secretary
    return service.create_appointment(
        make_booking(users.patient, users.doctor, start, duration, **extra),
        creator.id, creator.role,
    )


class TestCreateAppointment:
    def test_create_fills_denormalized_fields(self, appointment_service, users, db, clock):
        appointment = book(appointment_service, users, at(10))

        assert appointment.version == 1
        assert appointment.status == models.AppointmentStatus.scheduled
        assert appointment.patient_name == "Jean Dupont"
        assert appointment.patient_email == "jean.dupont@example.com"
        assert appointment.doctor_name == "Anne Martin"
        assert appointment.fee == Decimal("80.00")
        assert appointment.last_modified_by == users.secretary.id
        assert appointment.created_by == users.secretary.id
        assert as_utc(appointment.ends_at) == at(10, 30)

        db.refresh(users.doctor)
        assert as_utc(users.doctor.last_appointment_created) == clock()

    def test_fee_falls_back_to_default(self, appointment_service, users):
        appointment = appointment_service.create_appointment(
            make_booking(users.patient, users.other_doctor, at(10)),
            users.secretary.id, users.secretary.role,
        )
        assert appointment.fee == Decimal("50.00")

    def test_create_writes_audit_entry(self, appointment_service, users, db):
        appointment = book(appointment_service, users, at(10))

        entry = db.query(models.AuditLog).filter(models.AuditLog.event == "create_appointment").one()
        assert entry.action == models.AuditAction.CREATE
        assert entry.resource_id == appointment.id
        assert entry.user_id == users.secretary.id

    def test_unknown_doctor(self, appointment_service, users):
        data = schemas.AppointmentCreate(patient_id=users.patient.id, doctor_id=users.patient.id, scheduled_at=at(10))
        with pytest.raises(NotFoundError):
            appointment_service.create_appointment(data, users.secretary.id, users.secretary.role)

    def test_unknown_patient(self, appointment_service, users):
        data = schemas.AppointmentCreate(patient_id=9999, doctor_id=users.doctor.id, scheduled_at=at(10))
        with pytest.raises(NotFoundError):
            appointment_service.create_appointment(data, users.secretary.id, users.secretary.role)


class TestSlotConflicts:
    def test_overlapping_booking_is_rejected(self, appointment_service, users, db):
        first = book(appointment_service, users, at(10))

        with pytest.raises(SlotConflictError) as exc_info:
            book(appointment_service, users, at(10, 15))

        assert exc_info.value.conflicting_appointment_id == first.id
        assert "Jean Dupont" in str(exc_info.value)
        assert "10:00 to 10:30" in str(exc_info.value)
        assert db.query(models.Appointment).count() == 1

    def test_back_to_back_bookings_do_not_conflict(self, appointment_service, users):
        book(appointment_service, users, at(10))
        second = book(appointment_service, users, at(10, 30))
        earlier = book(appointment_service, users, at(9, 30))
        assert second.id and earlier.id

    def test_long_earlier_appointment_blocks_later_slot(self, appointment_service, users):
        book(appointment_service, users, at(8), duration=180)
        with pytest.raises(SlotConflictError):
            book(appointment_service, users, at(10, 45))

    def test_enclosing_booking_conflicts(self, appointment_service, users):
        book(appointment_service, users, at(10, 15), duration=15)
        with pytest.raises(SlotConflictError):
            book(appointment_service, users, at(10), duration=60)

    def test_cancelled_appointments_free_the_slot(self, appointment_service, users):
        first = book(appointment_service, users, at(10))
        appointment_service.delete_appointment(first.id, users.secretary.id, users.secretary.role)
        assert book(appointment_service, users, at(10)).id != first.id

    def test_pending_payment_blocks_the_slot(self, appointment_service, users):
        appointment_service.create_appointment(
            make_booking(users.patient, users.doctor, at(10)),
            users.doctor.id, users.doctor.role,
            initial_status=models.AppointmentStatus.pending_payment,
        )
        with pytest.raises(SlotConflictError):
            book(appointment_service, users, at(10))

    def test_other_doctor_is_independent(self, appointment_service, users):
        book(appointment_service, users, at(10))
        other = appointment_service.create_appointment(
            make_booking(users.patient, users.other_doctor, at(10)),
            users.secretary.id, users.secretary.role,
        )
        assert other.doctor_id == users.other_doctor.id

    def test_check_slot_conflict_excludes_given_appointment(self, appointment_service, users):
        first = book(appointment_service, users, at(10))
        assert appointment_service.check_slot_conflict(users.doctor.id, at(10), 30) is not None
        assert appointment_service.check_slot_conflict(users.doctor.id, at(10), 30, exclude_id=first.id) is None


class TestUpdateAppointment:
    def test_update_requires_newer_version(self, appointment_service, users):
        appointment = book(appointment_service, users, at(10))

        with pytest.raises(VersionConflictError):
            appointment_service.update_appointment(
                appointment.id, schemas.AppointmentUpdate(version=1, notes="stale"), users.doctor.id,
            )

    def test_update_bumps_stored_version(self, appointment_service, users):
        appointment = book(appointment_service, users, at(10))

        updated = appointment_service.update_appointment(
            appointment.id, schemas.AppointmentUpdate(version=2, notes="Bring blood results"), users.doctor.id,
        )

        assert updated.version == 2
        assert updated.notes == "Bring blood results"
        assert updated.last_modified_by == users.doctor.id

        with pytest.raises(VersionConflictError):
            appointment_service.update_appointment(
                appointment.id, schemas.AppointmentUpdate(version=2, notes="again"), users.doctor.id,
            )

    def test_reschedule_into_conflict_is_rejected(self, appointment_service, users, db):
        book(appointment_service, users, at(10))
        second = book(appointment_service, users, at(11))

        with pytest.raises(SlotConflictError):
            appointment_service.update_appointment(
                second.id, schemas.AppointmentUpdate(version=2, scheduled_at=at(10, 15)), users.doctor.id,
            )

        db.expire_all()
        unchanged = db.get(models.Appointment, second.id)
        assert as_utc(unchanged.scheduled_at) == at(11)
        assert unchanged.version == 1

    def test_reschedule_updates_end_time(self, appointment_service, users):
        appointment = book(appointment_service, users, at(10))

        updated = appointment_service.update_appointment(
            appointment.id, schemas.AppointmentUpdate(version=2, scheduled_at=at(14), duration=45), users.doctor.id,
        )

        assert as_utc(updated.scheduled_at) == at(14)
        assert as_utc(updated.ends_at) == at(14, 45)

    def test_moving_within_own_slot_is_allowed(self, appointment_service, users):
        appointment = book(appointment_service, users, at(10), duration=60)
        updated = appointment_service.update_appointment(
            appointment.id, schemas.AppointmentUpdate(version=2, scheduled_at=at(10, 15)), users.doctor.id,
        )
        assert as_utc(updated.scheduled_at) == at(10, 15)

    @pytest.mark.parametrize("start,target", [
        (models.AppointmentStatus.cancelled, models.AppointmentStatus.confirmed),
        (models.AppointmentStatus.completed, models.AppointmentStatus.scheduled),
        (models.AppointmentStatus.confirmed, models.AppointmentStatus.pending_payment),
        (models.AppointmentStatus.pending_payment, models.AppointmentStatus.confirmed),
        (models.AppointmentStatus.pending_payment, models.AppointmentStatus.completed),
    ])
    def test_backward_transitions_are_rejected(self, appointment_service, users, db, start, target):
        appointment = book(appointment_service, users, at(10))
        appointment.status = start
        db.commit()

        with pytest.raises(InvalidTransitionError):
            appointment_service.update_appointment(
                appointment.id, schemas.AppointmentUpdate(version=2, status=target), users.doctor.id,
            )

    def test_confirming_stamps_confirmed_at(self, appointment_service, users, clock):
        appointment = book(appointment_service, users, at(10))
        updated = appointment_service.update_appointment(
            appointment.id, schemas.AppointmentUpdate(version=2, status="confirmed"), users.doctor.id,
        )
        assert updated.status == models.AppointmentStatus.confirmed
        assert as_utc(updated.confirmed_at) == clock()

    def test_local_mode_updates_are_refused(self, cache, users):
        service = AppointmentService(None, cache=cache)
        with pytest.raises(CRUDError):
            service.update_appointment(1, schemas.AppointmentUpdate(version=2), users.doctor.id)


class TestDeleteAppointment:
    def test_delete_soft_cancels(self, appointment_service, users, db, clock):
        appointment = book(appointment_service, users, at(10))

        cancelled = appointment_service.delete_appointment(appointment.id, users.secretary.id, users.secretary.role)

        assert cancelled.status == models.AppointmentStatus.cancelled
        assert cancelled.cancelled_by == users.secretary.id
        assert cancelled.cancellation_reason == "Deleted by secretary"
        assert as_utc(cancelled.cancelled_at) == clock()
        assert cancelled.version == 2
        assert db.query(models.Appointment).count() == 1
        assert db.query(models.AuditLog).filter(models.AuditLog.event == "cancel_appointment").count() == 1

    def test_delete_is_idempotent(self, appointment_service, users):
        appointment = book(appointment_service, users, at(10))
        appointment_service.delete_appointment(appointment.id, users.secretary.id, users.secretary.role)
        again = appointment_service.delete_appointment(appointment.id, users.secretary.id, users.secretary.role)
        assert again.version == 2

    def test_delete_missing(self, appointment_service, users):
        with pytest.raises(NotFoundError):
            appointment_service.delete_appointment(404, users.secretary.id, users.secretary.role)


class TestReads:
    def test_list_appointments_filters_and_orders(self, appointment_service, users):
        book(appointment_service, users, at(9))
        book(appointment_service, users, at(11))
        appointment_service.create_appointment(
            make_booking(users.other_patient, users.other_doctor, at(10)),
            users.secretary.id, users.secretary.role,
        )

        mine = appointment_service.list_appointments({"patient_id": users.patient.id})
        assert [item["scheduled_at"][:16] for item in mine] == ["2025-01-20T11:00", "2025-01-20T09:00"]

        by_status = appointment_service.list_appointments({"status": ["cancelled"]})
        assert by_status == []

        window = appointment_service.list_appointments({"date_from": at(10), "date_to": at(12)})
        assert len(window) == 2

    def test_list_doctors_sorted_by_last_name(self, appointment_service, users):
        doctors = appointment_service.list_doctors()
        assert [d["last_name"] for d in doctors] == ["Bernard", "Martin"]
        assert doctors[0]["specialty"] == "General practice"
        assert Decimal(doctors[0]["consultation_fee"]) == Decimal("50")

    def test_available_slots_skip_overlapped_grid_entries(self, appointment_service, users):
        book(appointment_service, users, at(10), duration=60)
        book(appointment_service, users, at(14, 45), duration=15)

        slots = appointment_service.get_available_slots(users.doctor.id, date(2025, 1, 20))

        assert "10:00" not in slots and "10:30" not in slots
        assert "14:30" not in slots
        assert "09:30" in slots and "11:00" in slots and "14:00" in slots
        assert len(slots) == len(SLOT_GRID) - 3

    def test_available_slots_fallback_without_database(self, cache):
        service = AppointmentService(None, cache=cache)
        assert service.get_available_slots(1, date(2025, 1, 20)) == FALLBACK_SLOTS

    def test_statistics(self, appointment_service, users, clock):
        clock.current = at(8)
        book(appointment_service, users, at(9))
        cancelled = book(appointment_service, users, at(10))
        appointment_service.delete_appointment(cancelled.id, users.secretary.id, users.secretary.role)
        book(appointment_service, users, at(10) + timedelta(days=2))
        book(appointment_service, users, at(10) + timedelta(days=8))

        stats = appointment_service.get_appointment_statistics(users.doctor.id)

        assert stats.total == 4
        assert stats.scheduled == 3
        assert stats.cancelled == 1
        assert stats.today == 2
        # 2025-01-20 is a Monday: the 22nd is the same ISO week, the 28th is not
        assert stats.this_week == 3


class TestLocalMode:
    def test_create_stores_in_local_cache(self, cache, users, clock):
        service = AppointmentService(None, cache=cache, now=clock)

        record = service.create_appointment(
            make_booking(users.patient, users.doctor, at(10)), users.patient.id, models.UserRole.patient,
        )

        assert record["id"].startswith("local-")
        assert record["status"] == "scheduled"
        assert [item["id"] for item in cache.read(APPOINTMENTS_KEY)] == [record["id"]]
        assert service.list_appointments({"patient_id": users.patient.id})[0]["id"] == record["id"]
        assert service.get_appointment(record["id"])["doctor_id"] == users.doctor.id

    def test_statistics_from_cache(self, cache, users, clock):
        service = AppointmentService(None, cache=cache, now=clock)
        service.create_appointment(make_booking(users.patient, users.doctor, at(10)), users.patient.id, models.UserRole.patient)

        stats = service.get_appointment_statistics()

        assert stats.total == 1
        assert stats.scheduled == 1


class TestSubscriptions:
    def test_appointment_subscription_pushes_full_list(self, appointment_service, users, cache):
        snapshots = []
        subscription = appointment_service.subscribe_to_appointments(snapshots.append, {"doctor_id": users.doctor.id})
        assert snapshots == [[]]

        first = book(appointment_service, users, at(10))
        book(appointment_service, users, at(11))
        assert [len(s) for s in snapshots] == [0, 1, 2]
        assert snapshots[-1][1]["id"] == first.id

        subscription.unsubscribe()
        book(appointment_service, users, at(12))
        assert len(snapshots) == 3
        assert len(cache.read(APPOINTMENTS_KEY)) == 2

    def test_rolled_back_booking_pushes_nothing(self, appointment_service, users):
        book(appointment_service, users, at(10))
        snapshots = []
        appointment_service.subscribe_to_appointments(snapshots.append)

        with pytest.raises(SlotConflictError):
            book(appointment_service, users, at(10))

        assert len(snapshots) == 1

    def test_doctor_subscription_follows_bookings(self, appointment_service, users):
        snapshots = []
        appointment_service.subscribe_to_doctors(snapshots.append)

        book(appointment_service, users, at(10))

        assert len(snapshots) == 2
        martin = next(d for d in snapshots[-1] if d["last_name"] == "Martin")
        assert martin["specialty"] == "Cardiology"

    def test_dispatch_decides_where_reloads_run(self, appointment_service, users):
        reloads = []
        snapshots = []
        appointment_service.subscribe_to_appointments(snapshots.append, dispatch=reloads.append)
        assert snapshots == []

        book(appointment_service, users, at(10))
        assert len(reloads) == 2
        assert snapshots == []

        reloads[-1]()
        assert [len(s) for s in snapshots] == [1]

    def test_failed_load_serves_cache(self, db, feed, cache, clock, users):
        cache.write(APPOINTMENTS_KEY, [{"id": 1, "doctor_id": users.doctor.id, "status": "scheduled"}])

        # An unbound session fails on its first query
        service = AppointmentService(db, session_factory=lambda: Session(bind=None), feed=feed, cache=cache, now=clock)
        snapshots = []
        service.subscribe_to_appointments(snapshots.append, {"doctor_id": users.doctor.id})

        assert snapshots == [[{"id": 1, "doctor_id": users.doctor.id, "status": "scheduled"}]]

    def test_local_mode_serves_cache(self, cache, users):
        cache.write(APPOINTMENTS_KEY, [
            {"id": "local-1", "patient_id": users.patient.id, "status": "scheduled", "scheduled_at": "2025-01-20T10:00:00Z"},
            {"id": "local-2", "patient_id": users.other_patient.id, "status": "scheduled", "scheduled_at": "2025-01-20T11:00:00Z"},
        ])
        service = AppointmentService(None, cache=cache)
        snapshots = []

        service.subscribe_to_appointments(snapshots.append, {"patient_id": users.patient.id})

        assert [item["id"] for item in snapshots[0]] == ["local-1"]
