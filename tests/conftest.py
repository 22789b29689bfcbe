# tests/conftest.py
import os

# Settings are cached on first use: pin the environment before importing telemed
os.environ["DATABASE_URL"] = ""
os.environ["SENDGRID_API_KEY"] = ""
os.environ["SECRET_KEY"] = "test-secret-key-not-for-production"

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from telemed import models, schemas
from telemed.database import Base
from telemed.local_cache import LocalStore
from telemed.realtime import ChangeFeed
from telemed.security import get_password_hash
from telemed.services.appointment_service import AppointmentService
from telemed.services.appointment_payment_service import AppointmentPaymentService

PASSWORD = "Secret#2025"
PASSWORD_HASH = get_password_hash(PASSWORD)
UTC = timezone.utc


class Clock:
    """Injectable 'now' that tests move forward explicitly."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class RecordingEmailService:
    """Stands in for SendGrid; remembers every message instead of sending it."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def _record(self, kind, to_email, **details):
        self.sent.append(SimpleNamespace(kind=kind, to=to_email, **details))
        if self.fail:
            return {"success": False, "status": "failed", "message": "SendGrid returned 503"}
        return {"success": True, "status": "sent", "message": "Email sent successfully"}

    async def send_payment_link(self, to_email, patient_name, doctor_name, scheduled_at, amount, currency, payment_url, expires_at):
        return await self._record("payment_link", to_email, amount=amount, payment_url=payment_url)

    async def send_payment_reminder(self, to_email, patient_name, doctor_name, scheduled_at, amount, currency, payment_url, expires_at, hours_elapsed):
        return await self._record("payment_reminder", to_email, hours=hours_elapsed)

    async def send_payment_confirmation(self, to_email, patient_name, doctor_name, scheduled_at, amount, currency):
        return await self._record("payment_confirmation", to_email, amount=amount)

    async def send_payment_expired(self, to_email, patient_name, doctor_name, scheduled_at):
        return await self._record("payment_expired", to_email)

    def kinds(self):
        return [message.kind for message in self.sent]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def users(db):
    def user(email, role, first_name, last_name, **extra):
        return models.User(
            email=email, password_hash=PASSWORD_HASH, role=role,
            first_name=first_name, last_name=last_name, is_active=True, **extra,
        )

    people = SimpleNamespace(
        doctor=user("anne.martin@example.com", models.UserRole.doctor, "Anne", "Martin",
                    specialty="Cardiology", consultation_fee=Decimal("80.00"), verified=True),
        other_doctor=user("louis.bernard@example.com", models.UserRole.doctor, "Louis", "Bernard"),
        secretary=user("claire.petit@example.com", models.UserRole.secretary, "Claire", "Petit"),
        patient=user("jean.dupont@example.com", models.UserRole.patient, "Jean", "Dupont",
                     phone_number="+262692000001"),
        other_patient=user("marie.leroy@example.com", models.UserRole.patient, "Marie", "Leroy"),
        admin=user("admin@example.com", models.UserRole.admin, "Site", "Admin"),
    )
    db.add_all(vars(people).values())
    db.commit()
    for person in vars(people).values():
        db.refresh(person)
    return people


@pytest.fixture
def clock():
    return Clock(datetime(2025, 1, 19, 9, 0, tzinfo=UTC))


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def cache(tmp_path):
    return LocalStore(str(tmp_path / "cache"))


@pytest.fixture
def emails():
    return RecordingEmailService()


@pytest.fixture
def appointment_service(db, session_factory, feed, cache, clock):
    return AppointmentService(db, session_factory=session_factory, feed=feed, cache=cache, now=clock)


@pytest.fixture
def payment_service(db, session_factory, feed, cache, clock, emails):
    return AppointmentPaymentService(
        db, email_service=emails, now=clock,
        session_factory=session_factory, feed=feed, cache=cache,
    )


def make_booking(patient, doctor, start, duration=30, **extra) -> schemas.AppointmentCreate:
    return schemas.AppointmentCreate(
        patient_id=patient.id,
        doctor_id=doctor.id,
        scheduled_at=start,
        duration=duration,
        reason=extra.pop("reason", "Follow-up consultation"),
        **extra,
    )


def at(hour, minute=0, day=20) -> datetime:
    return datetime(2025, 1, day, hour, minute, tzinfo=UTC)
