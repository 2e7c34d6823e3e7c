"""
Shared fixtures for the employee compliance test suite.

Tests run against an in-memory SQLite database. The pysqlite driver needs two
event hooks before SAVEPOINTs behave (per-record savepoints are used by the
correlation handlers and the recalculation job), and a StaticPool so every
session and the API's worker threads share one connection.
"""

import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager
from employee_compliance.connection import create_test_provider
from employee_compliance.models import (
    Base,
    CorrelatedEmployee,
    Integration,
    Policy,
    Asset,
)
from employee_compliance.monitoring import reset_metrics


def build_sqlite_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture
def engine():
    engine = build_sqlite_engine()
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def empty_engine():
    """Same engine setup as `engine`, with no tables."""
    engine = build_sqlite_engine()
    yield engine
    engine.dispose()


@pytest.fixture
def db_provider(engine):
    provider = create_test_provider(engine)
    provider.init()
    yield provider
    provider.close()


@pytest.fixture
def session(db_provider):
    """Session committed on success, like the application's session_scope."""
    with db_provider.session_scope() as session:
        yield session


@pytest.fixture(autouse=True)
def _reset_query_stats():
    reset_metrics()
    yield


@pytest.fixture
def org_id():
    return uuid.uuid4()


@pytest.fixture
def other_org_id():
    return uuid.uuid4()


@pytest.fixture
def config(tmp_path):
    """ConfigManager with defaults (no config file)."""
    return ConfigManager(str(tmp_path / "missing.yaml"))


@pytest.fixture
def make_integration(session, org_id):
    def _make(name="Workday", integration_type="hris", organization_id=None, last_sync_at=None):
        integration = Integration(
            organization_id=organization_id or org_id,
            name=name,
            type=integration_type,
            last_sync_at=last_sync_at,
        )
        session.add(integration)
        session.flush()
        return integration
    return _make


@pytest.fixture
def make_policy(session, org_id):
    def _make(title="Acceptable Use Policy", category="security"):
        policy = Policy(organization_id=org_id, title=title, category=category)
        session.add(policy)
        session.flush()
        return policy
    return _make


@pytest.fixture
def make_asset(session, org_id):
    def _make(name="MacBook Pro", external_id=None, serial_number=None, organization_id=None):
        asset = Asset(
            organization_id=organization_id or org_id,
            name=name,
            asset_type="laptop",
            external_id=external_id,
            serial_number=serial_number,
        )
        session.add(asset)
        session.flush()
        return asset
    return _make


@pytest.fixture
def make_employee(session, org_id):
    def _make(email, organization_id=None, **attributes):
        attributes.setdefault("employment_status", "active")
        attributes.setdefault("last_correlated_at", datetime.now(timezone.utc))
        employee = CorrelatedEmployee(
            organization_id=organization_id or org_id,
            email=email,
            **attributes
        )
        session.add(employee)
        session.flush()
        return employee
    return _make
