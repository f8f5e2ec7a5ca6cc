"""
Pytest configuration and shared fixtures.

This module loads environment variables from .env and provides an
isolated in-memory SQLite database, seeded with the default sessions,
pickup zones and two drivers before every test.
"""
import sys
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

# Load .env file before any imports that might use settings
from dotenv import load_dotenv

# Load .env from backend directory
backend_dir = Path(__file__).parent.parent
env_file = backend_dir / ".env"
if env_file.exists():
    load_dotenv(env_file)

# Add parent directory to path
sys.path.insert(0, str(backend_dir))

from httpx import AsyncClient, ASGITransport
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db, init_db
from db_models import Booking, ClassSession, DayOverride, DispatchEvent, Driver, PickupZone
from main import app, DEFAULT_ZONES_PATH
import db_service


# =============================================================================
# Test Database Setup - Isolated In-Memory SQLite
# =============================================================================

TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,  # Share connection across threads for in-memory DB
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

BANGKOK = ZoneInfo("Asia/Bangkok")

# Fixed clock for service-level tests: the class day is well in the future
CLASS_DAY = date(2026, 3, 10)
NOW = datetime(2026, 3, 1, 9, 0, tzinfo=BANGKOK)


def override_get_db():
    """Override database dependency for isolated testing."""
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create all tables and point the app at the test database."""
    init_db(bind=test_engine)
    app.dependency_overrides[get_db] = override_get_db
    yield
    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(autouse=True)
def clean_tables():
    """Reset tables and reference data before each test for isolation."""
    db = TestSessionLocal()
    try:
        db.query(DispatchEvent).delete()
        db.query(Booking).delete()
        db.query(DayOverride).delete()
        db.query(Driver).delete()
        db.query(PickupZone).delete()
        db.query(ClassSession).delete()
        db.commit()

        db_service.seed_sessions(db, capacity=12)
        db_service.import_zones_from_geojson(db, DEFAULT_ZONES_PATH)
        db_service.create_driver(db, "drv-1", "Somchai", "+66 81 000 0001")
        db_service.create_driver(db, "drv-2", "Niran", "+66 81 000 0002")
    finally:
        db.close()
    yield


@pytest.fixture
def db_session():
    """Get a test database session."""
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest_asyncio.fixture
async def client():
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_booking(db_session):
    """Factory creating active bookings on CLASS_DAY with the fixed clock."""
    def _make(pax_count=2, session_id="morning_class", booking_date=CLASS_DAY, route_order=None, **kwargs):
        booking = db_service.create_booking(
            db_session, booking_date, session_id, pax_count, now=NOW, **kwargs
        )
        if route_order is not None:
            booking.route_order = route_order
            db_session.commit()
            db_session.refresh(booking)
        return booking
    return _make
