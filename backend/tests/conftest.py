# backend/tests/conftest.py
"""
Pytest configuration for the booking core.

Every test gets its own SQLite database file under ``tmp_path`` so sessions
opened by worker threads (async facade, background dispatch) see the same
committed data as the test's own session.
"""

import os
import sys

os.environ.setdefault("CI", "true")

# Add the backend directory to Python path so imports work
backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, backend_dir)

from datetime import datetime, timezone  # noqa: E402

from fastapi.testclient import TestClient  # noqa: E402
import pytest  # noqa: E402

from bookingcore.api.dependencies import get_clock, get_db, get_session_factory  # noqa: E402
from bookingcore.core.clock import FixedClock  # noqa: E402
from bookingcore.database import create_db_engine, create_session_factory, init_db  # noqa: E402
from bookingcore.main import create_app  # noqa: E402
from bookingcore.services.booking_service import BookingService  # noqa: E402

FIXED_NOW = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine(tmp_path):
    db_engine = create_db_engine(f"sqlite:///{tmp_path / 'bookings.db'}")
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory):
    """A fresh session per test."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def clock():
    return FixedClock(FIXED_NOW)


@pytest.fixture
def booking_service(db, clock):
    return BookingService(db, clock=clock)


@pytest.fixture
def app(session_factory, clock):
    application = create_app()

    def _get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    application.dependency_overrides[get_db] = _get_db
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_clock] = lambda: clock
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """TestClient without lifespan so the configured database is never touched."""
    return TestClient(app)
