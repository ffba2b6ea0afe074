import os

# Settings are read at import time, so the test environment goes first
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["OUTBOX_POLLER_ENABLED"] = "false"
os.environ["ALLOCATION_RETRY_BACKOFF_SECONDS"] = "0"
os.environ["LOCK_TIMEOUT_SECONDS"] = "2"

# Imports for testing tools
import datetime
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from unittest.mock import AsyncMock
from jose import jwt

# Import your application code
from allocation_service.main import app
from allocation_service.database import Base, get_db
from allocation_service.config import settings
from allocation_service.facade import AllocationFacade
from allocation_service.intervals import Interval
from allocation_service.locking import ResourceLockManager
from allocation_service import crud, models

DAY = datetime.datetime(2030, 6, 1)


def at(hour: int, minute: int = 0) -> datetime.datetime:
    """A time on the fixed test day."""
    return DAY + datetime.timedelta(hours=hour, minutes=minute)


def slot(start_hour, end_hour) -> Interval:
    return Interval(at(start_hour), at(end_hour))


def create_test_token(user_id: int = 1) -> str:
    """Creates a simple JWT for testing."""
    payload = {"sub": str(user_id)}
    token = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return f"Bearer {token}"


# --- Database Management Fixtures ---
@pytest.fixture(scope="function")
def engine():
    """A fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()


# --- Engine Fixtures ---
@pytest.fixture
def lock_manager():
    return ResourceLockManager(timeout_seconds=2)


@pytest.fixture
def table_facade(lock_manager):
    return AllocationFacade(models.ResourceKind.TABLE, lock_manager, settings)


@pytest.fixture
def hall_facade(lock_manager):
    return AllocationFacade(models.ResourceKind.HALL, lock_manager, settings)


@pytest.fixture
def staff_facade(lock_manager):
    return AllocationFacade(models.ResourceKind.STAFF, lock_manager, settings)


@pytest.fixture
def table(db_session):
    return crud.create_resource(db_session, models.ResourceKind.TABLE, "Table 1", capacity=4)


@pytest.fixture
def hall(db_session):
    return crud.create_resource(db_session, models.ResourceKind.HALL, "Grand Hall", capacity=200)


@pytest.fixture
def waiter(db_session):
    return crud.create_resource(db_session, models.ResourceKind.STAFF, "Nimal Perera")


# --- Mocking External Services ---
@pytest.fixture(scope="function", autouse=True)
def mock_background_tasks(mocker):
    """
    Mocks the outbox poller that runs on app lifespan.
    """
    mocker.patch("allocation_service.main.run_outbox_poller", new_callable=AsyncMock)


# --- API Test Client Fixture ---
@pytest.fixture(scope="function")
def client(db_session):
    """Provides a TestClient bound to the per-test database."""
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Provides authorization headers with a default test token (user_id=1)."""
    return {"Authorization": create_test_token()}
