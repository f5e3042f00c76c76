"""
Pytest fixtures for the solar kernel test suite.

Provides:
- A fresh SQLite database per test (in-memory by default)
- DeterministicClock and principal factories
- Application / session / bid builders
- Captured structured logs

Environment Variables:
- DATABASE_URL: run the suite against another database (e.g. PostgreSQL).
  Tables are dropped and recreated around every test.
"""

import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest

from solar_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from solar_kernel.domain.clock import DeterministicClock
from solar_kernel.domain.dtos import BidProposal, Principal, Role
from solar_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from solar_kernel.models.application import Application, ApplicationStatus
from solar_kernel.models.meter_reading import MeterReading
from solar_kernel.services.bid_session_service import BidSessionService

T0 = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture solar_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, bid_service):
            bid_service.select_bid(...)
            logs = captured_logs()
            assert any(r["message"] == "bid_selected" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("solar_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", "sqlite:///:memory:")


@pytest.fixture
def engine():
    """Fresh engine and schema for every test."""
    reset_engine()
    eng = init_engine_from_url(get_database_url(), pool_size=5, max_overflow=5)
    drop_tables()
    create_tables()
    yield eng
    drop_tables()
    reset_engine()


@pytest.fixture
def session(engine):
    """A session the test drives directly.  Services only flush."""
    sess = get_session()
    yield sess
    sess.rollback()
    sess.close()


# =============================================================================
# Clock and principals
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock(T0)


@pytest.fixture
def customer():
    return Principal(id=uuid4(), role=Role.CUSTOMER)


@pytest.fixture
def other_customer():
    return Principal(id=uuid4(), role=Role.CUSTOMER)


@pytest.fixture
def officer():
    return Principal(id=uuid4(), role=Role.OFFICER)


@pytest.fixture
def make_installer():
    """Factory: installer principal, each in its own organization by default."""

    def _make(organization_id: UUID | None = None) -> Principal:
        return Principal(
            id=uuid4(),
            role=Role.INSTALLER,
            organization_id=organization_id or uuid4(),
        )

    return _make


@pytest.fixture
def installer(make_installer):
    return make_installer()


# =============================================================================
# Builders
# =============================================================================


@pytest.fixture
def make_application(session):
    """Factory: persisted Application owned by ``customer_id``."""
    counter = {"n": 0}

    def _make(
        customer_id: UUID,
        status: ApplicationStatus = ApplicationStatus.FINDING_INSTALLER,
    ) -> Application:
        counter["n"] += 1
        application = Application(
            reference=f"APP-{counter['n']:04d}-{uuid4().hex[:6]}",
            status=status,
            customer_id=customer_id,
        )
        session.add(application)
        session.flush()
        return application

    return _make


@pytest.fixture
def application(make_application, customer):
    return make_application(customer.id)


@pytest.fixture
def bid_service(session, deterministic_clock):
    return BidSessionService(session, deterministic_clock)


def make_proposal(price="1500000.00", days=14, package_id=None) -> BidProposal:
    return BidProposal(
        price=Decimal(price),
        proposal="5 kW rooftop system with hybrid inverter",
        warranty="10 years panels, 5 years inverter",
        estimated_days=days,
        package_id=package_id,
    )


@pytest.fixture
def proposal():
    return make_proposal()


@pytest.fixture
def open_session(bid_service, application, customer):
    """An OPEN 48h bid session for ``application``."""
    return bid_service.open_or_extend_session(application.id, 48, customer)


@pytest.fixture
def add_reading(session):
    """Factory: persisted MeterReading with kWh values as strings or numbers."""

    def _add(
        application_id: UUID,
        reading_date: datetime,
        generated="0",
        exported="0",
        imported="0",
    ) -> MeterReading:
        reading = MeterReading(
            application_id=application_id,
            reading_date=reading_date,
            kwh_generated=Decimal(str(generated)),
            kwh_exported=Decimal(str(exported)),
            kwh_imported=Decimal(str(imported)),
            source="test",
        )
        session.add(reading)
        session.flush()
        return reading

    return _add


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
