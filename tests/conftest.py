"""
Pytest configuration and fixtures for the OTP service tests.

Every test gets a fresh in-memory SQLite schema and fake delivery providers,
so nothing talks to Twilio, an SMTP relay or a real database.
"""
import sys
import pathlib

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import create_app  # noqa: E402
from auth_guard import issue_token  # noqa: E402
from config import TestingConfig  # noqa: E402
from db import db as _db  # noqa: E402
from models.user import User  # noqa: E402
from services.dispatch import DispatchResult  # noqa: E402
from utils.identifiers import Channel  # noqa: E402


class FakeDispatcher:
    """Records what would have been sent; optionally fails every send."""

    def __init__(self, fail_with=None, category="failed"):
        self.sent = []
        self.fail_with = fail_with
        self.category = category

    def send(self, identifier, code, expiry_minutes):
        if self.fail_with:
            return DispatchResult.fail(self.fail_with, self.category)
        self.sent.append((identifier, code, expiry_minutes))
        return DispatchResult.ok("sent", provider_id=f"fake-{len(self.sent)}")

    @property
    def last_code(self):
        return self.sent[-1][1]


@pytest.fixture
def dispatchers():
    return {Channel.SMS: FakeDispatcher(), Channel.EMAIL: FakeDispatcher()}


@pytest.fixture
def app(dispatchers):
    """
    App built from TestingConfig with the schema created and fake providers installed.

    The app context stays pushed for the whole test so fixtures and tests share
    one db.session with the test client's requests.
    """
    app = create_app(TestingConfig)
    app.extensions["otp_dispatchers"] = dispatchers
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(db):
    def _make(role="Analyst", email=None, password="secret-pass", is_active=True):
        user = User(
            email=email or f"{role.lower()}@dialogue.local",
            name=f"{role} User",
            role=role,
            is_active=is_active,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def auth_header(make_user):
    def _header(role="Analyst"):
        user = make_user(role=role)
        return {"Authorization": f"Bearer {issue_token(user)}"}
    return _header
