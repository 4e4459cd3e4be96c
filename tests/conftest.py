"""
Shared pytest fixtures for the Member Resource Marketplace test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_org / make_listing: ORM-level factories
    - auth_headers: Bearer header for an organization's owning user
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from marketplace import create_app
from marketplace.models import db as _db
from marketplace.models.listing import CATEGORY_OFFERING_STAFF
from marketplace.models.organization import Organization
from marketplace.services import relay
from marketplace.services.listing_service import ListingStore
from marketplace.services.token_service import generate_access_token

_seq = itertools.count(1)


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
    relay.reset_broker()
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
    relay.reset_broker()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_org():
    """Create a registered organization directly via the ORM."""

    def _make(name=None, *, email=None, phone="+47 000 00 000", address="Storgata 1, Oslo"):
        n = next(_seq)
        name = name or f"Org {n}"
        org = Organization(
            user_id=f"user-{n}",
            handle=f"member_t{n:04d}",
            name=name,
            contact_company_name=f"{name} AS",
            contact_email=email or f"post{n}@example.com",
            contact_phone=phone,
            contact_address=address,
        )
        _db.session.add(org)
        _db.session.commit()
        return org

    return _make


@pytest.fixture()
def make_listing():
    """Create an open listing through the store (valid today → +30 days)."""

    def _make(owner, *, category=CATEGORY_OFFERING_STAFF, descriptor="Two welders",
              valid_from=None, valid_to=None, **kwargs):
        today = datetime.now(timezone.utc).date()
        listing, failure = ListingStore.create(
            owner_org_id=owner.id,
            category=category,
            descriptor=descriptor,
            valid_from=valid_from or today,
            valid_to=valid_to or today + timedelta(days=30),
            location=kwargs.pop("location", "Bergen"),
            **kwargs,
        )
        assert failure is None, failure
        return listing

    return _make


@pytest.fixture()
def auth_headers():
    """Return an Authorization header for the user owning ``org``."""

    def _headers(org_or_user_id):
        user_id = getattr(org_or_user_id, "user_id", org_or_user_id)
        return {"Authorization": f"Bearer {generate_access_token(user_id)}"}

    return _headers
