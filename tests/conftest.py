"""
Shared pytest fixtures for the LabOps Reconciliation Service test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - project: Pre-created Project row
    - account / allocation: Pre-created funding account and allocation
    - tree_document: Task document of the worked 25 / 75 / 100 example
"""

import pytest

from labops import create_app
from labops.models import db as _db
from labops.services import funding_service, workpackage_service


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
def project():
    """A committed, empty project."""
    row = workpackage_service.create_project({"name": "Cryo-EM pipeline", "status": "active"})
    _db.session.commit()
    return row


@pytest.fixture()
def account(project):
    """A committed 10 000 EUR funding account."""
    row = funding_service.create_account({
        "name": "ERC Starting Grant",
        "project_id": project.id,
        "total_budget": 10000,
        "currency": "EUR",
    })
    _db.session.commit()
    return row


@pytest.fixture()
def allocation(account, project):
    """A committed 1 000 EUR project allocation on ``account``."""
    row = funding_service.create_allocation({
        "funding_account_id": account.id,
        "type": "PROJECT",
        "project_id": project.id,
        "allocated_amount": 1000,
    })
    _db.session.commit()
    return row


@pytest.fixture()
def tree_document():
    """Task document of the worked example used across the suite.

    T1: S1 (1 of 4 todos done → 25), S2 (3 of 4 done → 75)   → 50
    T2: S3 (2 of 2 done → 100)                                → 100
    Workpackage                                               → 75
    """

    def todos(prefix, done_count, total):
        return [
            {"id": f"{prefix}-td{i}", "text": f"{prefix} step {i}", "done": i < done_count, "order": i}
            for i in range(total)
        ]

    return [
        {
            "id": "t1", "name": "Sample prep", "status": "in-progress",
            "subtasks": [
                {"id": "s1", "name": "Grid screening", "todos": todos("s1", 1, 4)},
                {"id": "s2", "name": "Vitrification", "todos": todos("s2", 3, 4)},
            ],
        },
        {
            "id": "t2", "name": "Data collection", "status": "in-progress",
            "subtasks": [
                {"id": "s3", "name": "Microscope booking", "todos": todos("s3", 2, 2)},
            ],
        },
    ]
