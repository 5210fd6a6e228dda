"""
Shared pytest fixtures for the LOTO Work Permit test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - permit_form: a valid form submission body
    - auth_header: builds an Authorization header for a role
    - make_permit: inserts a permit directly, optionally mid-workflow
"""

import pytest

from loto import create_app
from loto.models import db as _db
from loto.models.permit import LotoWorkPermit, required_role_for
from loto.services.identity import Identity
from loto.services.jwt_service import generate_access_token


# A minimal, valid form submission.
PERMIT_FORM = {
    "bd_slip_no": "BD-1001",
    "permit_date": "2024-03-05",
    "permit_issuing_time": "08:30",
    "shift": "A",
    "plant": "Plant 1",
    "department": "Press Shop",
    "bay_no": "B2",
    "line_name": "Line 4",
    "machine_no": "PR-17",
    "presence_of_bay_manager_shift1": True,
    "no_of_persons_working_in_machine_shift1": 3,
    "mcb_off_lock_condition_shift1": "yes",
}


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


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def auth_header():
    """Return a builder: ``auth_header("bay_manager")`` → headers dict."""
    def _build(role, username=None, forms=None):
        token = generate_access_token(username or f"{role}-user", role, forms=forms)
        return {"Authorization": f"Bearer {token}"}
    return _build


@pytest.fixture()
def permit_form():
    """A fresh copy of a valid form submission."""
    return dict(PERMIT_FORM)


@pytest.fixture()
def caller():
    """Return a builder for service-layer identities."""
    def _build(role, username=None):
        return Identity(username or f"{role}-user", role)
    return _build


@pytest.fixture()
def make_permit():
    """Insert a permit row directly and return its id.

    ``status`` defaults to PENDING_BAY; current_approver_role follows the
    status unless given explicitly (pass None to simulate a legacy row).
    """
    _unset = object()

    def _make(status="PENDING_BAY", current_approver_role=_unset, **fields):
        values = {"bd_slip_no": "BD-1", "plant": "Plant 1", **fields}
        permit = LotoWorkPermit(**values)
        permit.status = status
        permit.current_approver_role = (
            required_role_for(status) if current_approver_role is _unset else current_approver_role
        )
        _db.session.add(permit)
        _db.session.commit()
        return permit.id

    return _make
