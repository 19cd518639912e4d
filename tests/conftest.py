import os

# Set testing environment variable before the app modules read settings
os.environ["TESTING"] = "1"

import asyncio
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from medilink.core.database import get_redis, init_db, make_engine
from medilink.core.security import UserRole, create_access_token
from medilink.main import app
from medilink.models.doctor import ApprovalStatus, Doctor
from medilink.services.container import build_services
from medilink.services.triage_service import load_knowledge_base

NOW = datetime(2024, 5, 1, 9, 0)


class FakeClock:
    """Settable stand-in for ``datetime.now``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class FakeRedis:
    """Just enough of the redis client for the rate limiter."""

    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = str(value)

    def incr(self, key):
        self.store[key] = str(int(self.store.get(key, 0)) + 1)
        return int(self.store[key])


# Test data
DOCTORS = {
    "cardio_online": dict(first_name="Ada", last_name="Heart", specialization="cardiology",
                          status=ApprovalStatus.APPROVED, is_online=True, rating=4.5),
    "cardio_offline": dict(first_name="Ben", last_name="Pulse", specialization="cardiology",
                           status=ApprovalStatus.APPROVED, is_online=False, rating=4.9),
    "general": dict(first_name="Cleo", last_name="Gray", specialization="general_medicine",
                    status=ApprovalStatus.APPROVED, is_online=False, rating=4.0),
    "derm_pending": dict(first_name="Dev", last_name="Skin", specialization="dermatology",
                         status=ApprovalStatus.PENDING, is_online=True, rating=5.0),
}


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'medilink.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture
def doctors(session_factory):
    """Seed the directory; returns name -> doctor id."""
    ids = {}
    with session_factory() as db:
        for key, fields in DOCTORS.items():
            doctor = Doctor(**fields)
            db.add(doctor)
            db.flush()
            ids[key] = doctor.id
        db.commit()
    return ids


@pytest.fixture(scope="session")
def knowledge_base():
    return load_knowledge_base()


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def services(session_factory, knowledge_base, clock, doctors):
    return build_services(session_factory, knowledge_base=knowledge_base, clock=clock)


@pytest.fixture
def event_loop_for_handles():
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def client(services, fake_redis):
    app.state.services = services
    app.dependency_overrides[get_redis] = lambda: fake_redis
    with TestClient(app, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.services = None


def token_for(kind: UserRole, user_id: int) -> str:
    return create_access_token(user_id, kind)


def auth_headers(kind: UserRole, user_id: int) -> dict:
    return {"Authorization": f"Bearer {token_for(kind, user_id)}"}
