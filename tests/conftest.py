import os
import tempfile
from datetime import date, timedelta
from itertools import count

import pytest

# Set testing environment before the app (and its engine) is imported
os.environ["TESTING"] = "1"
os.environ.setdefault(
    "TEST_DATABASE_URL",
    f"sqlite:///{os.path.join(tempfile.gettempdir(), 'scheduling_app_test.db')}"
)

from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.main import app
from app.api.deps import get_notifier
from app.core.database import Base, build_engine, get_db
from app.core.security import UserRole, create_access_token
from app.models.appointment import Appointment, AppointmentStatus
from app.models.user import User
from app.services.scheduling_store import AppointmentStore

FUTURE_DATE = date.today() + timedelta(days=30)


class RecordingNotifier:
    """Stands in for the Redis-backed dispatcher and remembers events."""

    def __init__(self):
        self.events = []

    def dispatch(self, appointment_id, event):
        self.events.append((appointment_id, getattr(event, "value", event)))
        return True


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'scheduling.db'}")
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
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(session_factory, notifier):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier

    with TestClient(app, base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    sequence = count(1)

    def _make_user(role, is_active=True, **profile):
        n = next(sequence)
        user = User(
            email=f"{role}{n}@example.com",
            role=UserRole(role),
            is_active=is_active,
            first_name=profile.pop("first_name", role.capitalize()),
            last_name=profile.pop("last_name", f"Number{n}"),
            **profile
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def doctor(make_user):
    return make_user("doctor", specialization="Cardiology", department="Internal Medicine")


@pytest.fixture
def patient(make_user):
    return make_user("patient", first_name="Pat", last_name="Smith")


@pytest.fixture
def admin(make_user):
    return make_user("admin")


@pytest.fixture
def nurse(make_user):
    return make_user("nurse", department="Internal Medicine")


@pytest.fixture
def make_appointment(db):
    """Insert an appointment straight through the store."""
    def _make_appointment(patient, doctor, start="09:00", end="09:30",
                          on=FUTURE_DATE, status=AppointmentStatus.PENDING):
        appointment = Appointment(
            patient_id=patient.id,
            doctor_id=doctor.id,
            appointment_date=on,
            start_time=start,
            end_time=end,
            status=status,
            reason="Routine check of blood pressure",
        )
        return AppointmentStore(db).insert(appointment)

    return _make_appointment


def auth_headers(user):
    token = create_access_token({"sub": user.id, "role": user.role.value})
    return {"Authorization": f"Bearer {token}"}


def booking_payload(doctor, start="09:00", end="09:30", on=FUTURE_DATE, **overrides):
    payload = {
        "doctorId": doctor.id,
        "appointmentDate": on.isoformat(),
        "timeSlot": {"start": start, "end": end},
        "reason": "Annual physical exam",
    }
    payload.update(overrides)
    return payload
