"""
Fixtures for the UAT Hub tests.

Every test runs inside an app context against a fresh in-memory schema.
The default graph is one active session ("Website Launch UAT") owned by
``user`` with one item, a guest, a collaborator and a developer; the
``make_*`` factories add more.
"""

import pytest

from uathub import create_app
from uathub.models import db as _db
from uathub.models.auth import User
from uathub.models.uat import (
    UatChecklistItem, UatChecklistItemStep, UatGuest, UatSession,
    UatSessionCollaborator,
)
from uathub.services.actor_resolver import Actor, ActorType


@pytest.fixture(scope="session")
def app():
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """App context for the test; schema rebuilt afterwards."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


_counter = {"n": 0}


def _token(prefix):
    _counter["n"] += 1
    return f"{prefix}-{_counter['n']:04d}"


@pytest.fixture()
def user():
    u = User(username="alice", full_name="Alice Admin", email="alice@agency.test")
    _db.session.add(u)
    _db.session.commit()
    return u


@pytest.fixture()
def auth_headers(user):
    """Headers that make the test client act as ``user`` (auth disabled in testing)."""
    return {"X-User-Id": str(user.id)}


@pytest.fixture()
def internal_actor(user):
    return Actor(actor_type=ActorType.INTERNAL, id=user.id, name=user.display_name)


def _make_session(owner=None, status="active", name="Website Launch UAT", **kw):
    s = UatSession(
        name=name,
        status=status,
        invite_token=_token("inv"),
        owner_id=owner.id if owner else None,
        created_by_id=owner.id if owner else None,
        **kw,
    )
    _db.session.add(s)
    _db.session.commit()
    return s


def _make_item(session, title="Checkout works", order=0):
    item = UatChecklistItem(session_id=session.id, title=title, order=order)
    _db.session.add(item)
    _db.session.commit()
    return item


def _make_step(item, step_type="test", title=None, order=None, notes_required=False, **kw):
    if order is None:
        order = item.steps.count()
    step = UatChecklistItemStep(
        item_id=item.id,
        step_type=step_type,
        title=title or f"{step_type} step {order + 1}",
        order=order,
        notes_required=notes_required,
        **kw,
    )
    _db.session.add(step)
    _db.session.commit()
    return step


def _make_guest(session, email="guest@client.test", name="Gina Guest"):
    g = UatGuest(session_id=session.id, email=email, name=name, access_token=_token("gst"))
    _db.session.add(g)
    _db.session.commit()
    return g


def _make_collaborator(session, role="pm", email=None, name=None):
    c = UatSessionCollaborator(
        session_id=session.id,
        email=email or f"{role}@client.test",
        name=name or f"{role.title()} Person",
        role=role,
        access_token=_token(role),
    )
    _db.session.add(c)
    _db.session.commit()
    return c


@pytest.fixture()
def uat_session(user):
    return _make_session(owner=user)


@pytest.fixture()
def item(uat_session):
    return _make_item(uat_session)


@pytest.fixture()
def guest(uat_session):
    return _make_guest(uat_session)


@pytest.fixture()
def collaborator(uat_session):
    return _make_collaborator(uat_session, role="pm")


@pytest.fixture()
def developer(uat_session):
    return _make_collaborator(uat_session, role="developer", email="dev@agency.test")


# Factory fixtures for tests that need more than the default graph

@pytest.fixture()
def make_session():
    return _make_session


@pytest.fixture()
def make_item():
    return _make_item


@pytest.fixture()
def make_step():
    return _make_step


@pytest.fixture()
def make_guest():
    return _make_guest


@pytest.fixture()
def make_collaborator():
    return _make_collaborator
