"""
Shared pytest fixtures for the Innovation Workflow Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_entity: factory placing an entity directly at any stage
    - pilot_approvers: users holding the four pilot approval roles
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.entity import Entity
from app.models.workflow import RoleAssignment

PILOT_CHAIN = ["technical_lead", "budget_officer", "municipality_director", "gdisb_admin"]


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
def make_entity():
    """Insert an entity at an arbitrary stage, bypassing the transition engine.

    Used to set up sources for conversion tests (e.g. a completed Pilot).
    """

    def _make(entity_type, stage, title=None, fields=None, created_by="creator"):
        entity = Entity(
            entity_type=entity_type,
            title=title or f"{entity_type} at {stage}",
            stage=stage,
            created_by=created_by,
        )
        entity.fields = fields or {}
        _db.session.add(entity)
        _db.session.commit()
        return entity

    return _make


@pytest.fixture()
def pilot_approvers():
    """Map role → user id for the four-step pilot approval chain."""
    users = {}
    for role in PILOT_CHAIN:
        user_id = f"user-{role}"
        _db.session.add(RoleAssignment(user_id=user_id, role=role))
        users[role] = user_id
    _db.session.commit()
    return users
