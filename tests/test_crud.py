# tests/test_crud.py
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from telemed import crud, models
from telemed.exceptions import CRUDError, NotFoundError, VersionConflictError
from telemed.realtime import bind_feed


@pytest.fixture
def changes(db, feed):
    bind_feed(db, feed)
    seen = []
    for table in ("users", "appointments"):
        feed.subscribe(table, seen.append)
    return seen


def appointment_values(users, hour, **extra):
    start = datetime(2025, 1, 20, hour, 0, tzinfo=timezone.utc)
    values = {
        "patient_id": users.patient.id,
        "patient_name": users.patient.full_name,
        "doctor_id": users.doctor.id,
        "doctor_name": users.doctor.full_name,
        "scheduled_at": start,
        "duration": 30,
        "ends_at": start.replace(minute=30),
        "status": models.AppointmentStatus.scheduled,
        "fee": Decimal("80.00"),
        "created_by_role": models.UserRole.secretary,
        "version": 1,
    }
    values.update(extra)
    return values


def test_create_stamps_bookkeeping_fields(db, users):
    appointment = crud.create_document(db, models.Appointment, appointment_values(users, 10), user_id=users.secretary.id)

    assert appointment.id is not None
    assert appointment.created_by == users.secretary.id
    assert appointment.created_at is not None
    assert appointment.updated_at is not None


def test_changes_are_published_after_commit(db, users, changes):
    appointment = crud.create_document(db, models.Appointment, appointment_values(users, 10), commit=False)
    assert changes == []

    db.commit()

    assert [(c.table, c.event, c.record_id) for c in changes] == [("appointments", "INSERT", appointment.id)]


def test_changes_are_dropped_on_rollback(db, users, changes):
    crud.create_document(db, models.Appointment, appointment_values(users, 10), commit=False)
    db.rollback()
    db.commit()

    assert changes == []


def test_update_without_version(db, users, changes):
    appointment = crud.create_document(db, models.Appointment, appointment_values(users, 10))

    updated = crud.update_document(db, models.Appointment, appointment.id, {"notes": "Fasting"}, user_id=users.doctor.id)

    assert updated.notes == "Fasting"
    assert updated.last_modified_by == users.doctor.id
    assert updated.version == 1
    assert changes[-1].event == "UPDATE"


def test_versioned_update_is_conditional(db, users):
    appointment = crud.create_document(db, models.Appointment, appointment_values(users, 10))

    updated = crud.update_document(db, models.Appointment, appointment.id, {"notes": "v2"}, expected_version=1)
    assert updated.version == 2

    with pytest.raises(VersionConflictError):
        crud.update_document(db, models.Appointment, appointment.id, {"notes": "stale"}, expected_version=1, commit=False)
    db.rollback()

    db.expire_all()
    assert db.get(models.Appointment, appointment.id).notes == "v2"


def test_update_writes_old_and_new_values_to_audit(db, users):
    appointment = crud.create_document(db, models.Appointment, appointment_values(users, 10))

    crud.update_document(
        db, models.Appointment, appointment.id, {"notes": "Bring ECG"},
        user_id=users.doctor.id, audit_action="update_appointment", category="APPOINTMENT",
    )

    entry = db.query(models.AuditLog).filter(models.AuditLog.event == "update_appointment").one()
    assert entry.action == models.AuditAction.UPDATE
    assert entry.old_values["notes"] is None
    assert entry.new_values["notes"] == "Bring ECG"


def test_missing_rows(db):
    with pytest.raises(NotFoundError):
        crud.read_document(db, models.Appointment, 404)
    with pytest.raises(NotFoundError):
        crud.update_document(db, models.Appointment, 404, {"notes": "x"})
    with pytest.raises(NotFoundError):
        crud.delete_document(db, models.Appointment, 404)


def test_read_with_access_audit(db, users):
    appointment = crud.create_document(db, models.Appointment, appointment_values(users, 10))

    crud.read_document(db, models.Appointment, appointment.id, user_id=users.admin.id, audit_access=True)

    entry = db.query(models.AuditLog).filter(models.AuditLog.category == "DATA_ACCESS").one()
    assert entry.action == models.AuditAction.READ
    assert entry.user_id == users.admin.id


def test_delete_document(db, users, changes):
    notification = crud.create_document(db, models.StaffNotification, {
        "appointment_id": crud.create_document(db, models.Appointment, appointment_values(users, 10)).id,
        "type": models.NotificationType.payment_success,
        "message": "Payment confirmed",
    })

    assert crud.delete_document(db, models.StaffNotification, notification.id, audit_action="delete_notification") is True
    assert db.query(models.StaffNotification).count() == 0
    assert db.query(models.AuditLog).filter(models.AuditLog.action == models.AuditAction.DELETE).count() == 1


def test_query_documents_operators_and_pagination(db, users):
    for hour in (8, 9, 10, 11, 14):
        crud.create_document(db, models.Appointment, appointment_values(users, hour))
    crud.create_document(db, models.Appointment, appointment_values(
        users, 15, status=models.AppointmentStatus.cancelled,
    ))

    page = crud.query_documents(
        db, models.Appointment,
        filters=[("status", "in", [models.AppointmentStatus.scheduled]), ("duration", "gte", 30)],
        order_by="-scheduled_at", limit=2, offset=1,
    )

    assert page.total == 5
    assert page.count == 2
    assert page.has_more is True
    assert [a.scheduled_at.hour for a in page.data] == [11, 10]

    by_equality = crud.query_documents(db, models.Appointment, filters={"status": models.AppointmentStatus.cancelled})
    assert by_equality.total == 1
    assert by_equality.has_more is False


def test_query_documents_rejects_unknown_fields(db):
    with pytest.raises(CRUDError):
        crud.query_documents(db, models.Appointment, filters=[("favourite_colour", "eq", "blue")])
    with pytest.raises(CRUDError):
        crud.query_documents(db, models.Appointment, filters=[("status", "between", 1)])


def test_subscribe_to_table_refetches_on_commit(db, users, session_factory, feed):
    bind_feed(db, feed)
    snapshots = []

    subscription = crud.subscribe_to_table(
        models.Appointment, snapshots.append, order_by="scheduled_at",
        session_factory=session_factory, feed=feed,
    )
    assert snapshots == [[]]

    crud.create_document(db, models.Appointment, appointment_values(users, 10))
    assert len(snapshots) == 2
    assert [a.scheduled_at.hour for a in snapshots[-1]] == [10]

    subscription.unsubscribe()
    crud.create_document(db, models.Appointment, appointment_values(users, 11))
    assert len(snapshots) == 2


def test_get_user_by_email_is_case_insensitive(db, users):
    assert crud.get_user_by_email(db, "  Jean.Dupont@example.com ").id == users.patient.id
    assert crud.get_user_by_email(db, "nobody@example.com") is None


def test_audit_log_filters(db, users):
    crud.log_audit_action(db, users.admin.id, "LOGIN", category="AUTH", details="ok")
    crud.log_audit_action(db, users.patient.id, "payment_validation_failed", category="PAYMENT", severity="WARN")

    assert [e.event for e in crud.get_audit_logs(db, severity="WARN")] == ["payment_validation_failed"]
    assert [e.user_id for e in crud.get_audit_logs(db, category="AUTH")] == [users.admin.id]
    assert len(crud.get_audit_logs(db)) == 2
