"""
Shared pytest fixtures for the Commitment Ledger test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - file_app: app on an on-disk SQLite file, for multi-threaded tests
    - make_org / make_user / make_client: row factories
    - org, founder, manager, customer: a ready AGENCY organization
    - founder_ctx / manager_ctx: AuthContext for service-level tests
    - auth_headers: Bearer headers for API tests
    - new_commitment: DRAFT commitment factory
"""

import pytest

from app import create_app
from app.core.identity import AuthContext
from app.models import db as _db
from app.models.auth import PLAN_AGENCY, ROLE_FOUNDER, ROLE_MANAGER, Organization, User
from app.models.client import Client


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


@pytest.fixture()
def file_app(tmp_path, monkeypatch):
    """Second app on an on-disk SQLite file.

    The in-memory database shares one connection across threads; tests that
    need truly concurrent transactions run here instead.
    """
    from app.config import TestingConfig, config

    class FileTestingConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'ledger.db'}"

    monkeypatch.setitem(config, "testing_file", FileTestingConfig)
    application = create_app("testing_file")
    with application.app_context():
        _db.create_all()
    yield application
    with application.app_context():
        _db.drop_all()
        _db.engine.dispose()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_org():
    counter = {"n": 0}

    def _make(plan=PLAN_AGENCY, name=None, **kwargs):
        counter["n"] += 1
        org = Organization(
            name=name or f"Studio {counter['n']}",
            slug=f"studio-{counter['n']}",
            plan=plan,
            **kwargs,
        )
        _db.session.add(org)
        _db.session.commit()
        return org

    return _make


@pytest.fixture()
def make_user():
    counter = {"n": 0}

    def _make(org, role=ROLE_FOUNDER, is_active=True):
        counter["n"] += 1
        user = User(
            org_id=org.id,
            email=f"user{counter['n']}@studio.test",
            full_name=f"User {counter['n']}",
            role=role,
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def make_client():
    counter = {"n": 0}

    def _make(org, name=None, email=None, company_name="Acme Pvt Ltd"):
        counter["n"] += 1
        row = Client(
            org_id=org.id,
            name=name or f"Client {counter['n']}",
            email=email or f"client{counter['n']}@acme.test",
            company_name=company_name,
        )
        _db.session.add(row)
        _db.session.commit()
        return row

    return _make


@pytest.fixture()
def org(make_org):
    return make_org()


@pytest.fixture()
def founder(org, make_user):
    return make_user(org, role=ROLE_FOUNDER)


@pytest.fixture()
def manager(org, make_user):
    return make_user(org, role=ROLE_MANAGER)


@pytest.fixture()
def customer(org, make_client):
    return make_client(org, name="Priya Sharma", email="priya@acme.test")


def ctx_for(user) -> AuthContext:
    return AuthContext(user_id=user.id, org_id=user.org_id, role=user.role)


@pytest.fixture()
def founder_ctx(founder):
    return ctx_for(founder)


@pytest.fixture()
def manager_ctx(manager):
    return ctx_for(manager)


@pytest.fixture()
def as_ctx():
    """Callable: user → AuthContext."""
    return ctx_for


@pytest.fixture()
def auth_headers():
    """Callable: user → {"Authorization": "Bearer …"}."""
    from app.services.jwt_service import generate_access_token

    def _headers(user):
        token = generate_access_token(user.id, user.org_id, user.role)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def new_commitment(founder_ctx, customer):
    """Callable creating a DRAFT commitment through the service layer."""
    from app.services.commitment_service import create_commitment

    def _create(ctx=None, **overrides):
        data = {
            "client_id": customer.id,
            "title": "Website redesign",
            "scope_description": "Five page marketing site",
            "amount": 50000,
            "currency": "INR",
            "payment_terms": [{"text": "50% upfront"}, {"text": "50% on delivery"}],
            "milestones": [{"text": "Wireframes"}],
            "deliverables": [{"text": "Homepage"}],
        }
        data.update(overrides)
        return create_commitment(ctx or founder_ctx, data)

    return _create
