"""
Shared pytest fixtures for the Operations Desk test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - staff / other_staff / acme: pre-created reference rows
"""

import pytest

from opsdesk import create_app
from opsdesk.models import db as _db
from opsdesk.models.directory import Client, StaffMember


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Reference data ───────────────────────────────────────────────────────


@pytest.fixture()
def staff():
    member = StaffMember(name="Dana Park", email="dana@example.com", role="employee")
    _db.session.add(member)
    _db.session.commit()
    return member


@pytest.fixture()
def other_staff():
    member = StaffMember(name="Ari Levin", email="ari@example.com", role="admin")
    _db.session.add(member)
    _db.session.commit()
    return member


@pytest.fixture()
def acme():
    c = Client(name="Acme Bakery")
    _db.session.add(c)
    _db.session.commit()
    return c
