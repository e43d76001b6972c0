"""Shared fixtures: an MFA app on in-memory SQLite with test secrets."""

import base64
import time
from datetime import datetime, timezone

import pytest

from ibimina_mfa.app import create_app
from ibimina_mfa.extensions import db
from ibimina_mfa.security.mfa.models import SYSTEM_ADMIN_ROLE, User

DATA_KEY = base64.b64encode(b"k" * 32).decode("ascii")

TEST_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret-key",
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    "RATELIMIT_ENABLED": False,
    "MAIL_DEFAULT_SENDER": "noreply@sacco.test",
    "MFA_DATA_KEY": DATA_KEY,
    "MFA_BACKUP_PEPPER": "test-pepper",
    "MFA_SESSION_SECRET": "test-session-secret",
    "MFA_TRUSTED_COOKIE_SECRET": "test-trusted-secret",
    "MFA_RATE_LIMIT_SECRET": "test-rate-limit-secret",
    "MFA_ENROLLMENT_SECRET": "test-enrollment-secret",
    "MFA_BACKUP_HASH_ITERATIONS": 1000,
    "MFA_BACKUP_CODE_COUNT": 4,
    "MFA_WEBAUTHN_RP_ID": "localhost",
    "MFA_WEBAUTHN_ORIGIN": "http://localhost:3000",
}


@pytest.fixture
def frozen_at():
    """Ten seconds into a recent TOTP step, always behind the wall clock."""
    step_start = (int(time.time()) // 30 - 1) * 30
    return datetime.fromtimestamp(step_start + 10, tz=timezone.utc)


@pytest.fixture
def base_config():
    return dict(TEST_CONFIG)


def make_app(services=None, **overrides):
    config = dict(TEST_CONFIG)
    config.update(overrides)
    return create_app(config, **(services or {}))


@pytest.fixture
def app_config():
    """Per-test config overrides."""
    return {}


@pytest.fixture
def app_services():
    """Per-test orchestrator dependency overrides."""
    return {}


@pytest.fixture
def app(app_config, app_services):
    """Create test Flask application."""
    app = make_app(app_services, **app_config)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def orchestrator(app):
    return app.extensions["ibimina_mfa"]


@pytest.fixture
def user(app):
    user = User(id="user-1", email="staff@sacco.test", phone="+250788123456")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin(app):
    admin = User(id="admin-1", email="admin@sacco.test", role=SYSTEM_ADMIN_ROLE)
    db.session.add(admin)
    db.session.commit()
    return admin


@pytest.fixture
def login(client):
    """Log a user into the test client through the Flask-Login session."""

    def _login(user_id):
        with client.session_transaction() as sess:
            sess["_user_id"] = user_id
            sess["_fresh"] = True

    return _login
