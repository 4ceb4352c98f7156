"""
Pytest fixtures for cuehall backend tests.

Provides test database setup, staff/table/device factories, signed device
request headers, fake light-test timers and the test client.
"""

import uuid
from decimal import Decimal

import pytest
from cuehall import create_app
from cuehall.extensions import db, nonce_store, test_timers
from cuehall.models import Table, User
from cuehall.services import auth_service, command_service, session_service
from cuehall.services.device_auth_service import compute_signature
from cuehall.time_utils import unix_now


TEST_PASSWORD = "Password123!"
TEST_PIN = "482913"
TEST_HMAC_SECRET = "test-hmac-secret"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'IOT_HMAC_SECRET': TEST_HMAC_SECRET,
        'IOT_GATEWAY_DEVICE_ID': None,
        'BACKGROUND_JOBS_ENABLED': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        nonce_store.clear()
        test_timers.clear()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        test_timers.clear()


@pytest.fixture(scope='function')
def make_user(db_session):
    """Factory: make_user(role, username=None, pin=None) -> User."""
    def _make(role: str, username: str | None = None, pin: str | None = None) -> User:
        user = auth_service.create_user(
            username=username or f"{role.lower()}_{uuid.uuid4().hex[:6]}",
            password=TEST_PASSWORD,
            role=role,
        )
        if pin:
            auth_service.set_user_pin(user.id, pin)
        return user
    return _make


@pytest.fixture(scope='function')
def cashier(make_user):
    return make_user("CASHIER", username="cashier")


@pytest.fixture(scope='function')
def owner(make_user):
    return make_user("OWNER", username="owner", pin=TEST_PIN)


@pytest.fixture(scope='function')
def make_table(db_session):
    """Factory: make_table(name, rate=30000, **wiring) -> Table (AVAILABLE)."""
    def _make(name: str, rate="30000", **wiring) -> Table:
        table = Table(name=name, hourly_rate=Decimal(str(rate)), status="AVAILABLE", is_active=True, **wiring)
        db_session.add(table)
        db_session.commit()
        return table
    return _make


@pytest.fixture(scope='function')
def make_device(db_session):
    """Factory: make_device(name) -> (IotDevice, plaintext_token)."""
    def _make(name: str = "gateway-1"):
        return command_service.register_device(name)
    return _make


@pytest.fixture(scope='function')
def signed_headers(app):
    """
    Build device auth headers.

    signed_headers(device_id, token, body="", timestamp=None, nonce=None)
    """
    def _build(device_id, token, body: str = "", timestamp=None, nonce=None) -> dict:
        ts = str(unix_now() if timestamp is None else timestamp)
        nonce = nonce or uuid.uuid4().hex
        return {
            "X-Device-Id": str(device_id),
            "X-Device-Token": token,
            "X-Timestamp": ts,
            "X-Nonce": nonce,
            "X-Signature": compute_signature(app.config["IOT_HMAC_SECRET"], device_id, ts, nonce, body),
        }
    return _build


class FakeTimer:
    """Stands in for threading.Timer; fire() runs the callback on demand."""

    def __init__(self, seconds, callback):
        self.seconds = seconds
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.callback()


@pytest.fixture(scope='function')
def fake_timers(app, monkeypatch):
    """Swap the light-test timer factory; returns the list of created FakeTimers."""
    created = []

    def factory(seconds, callback):
        timer = FakeTimer(seconds, callback)
        created.append(timer)
        return timer

    monkeypatch.setattr(app.extensions["table_testing"], "timer_factory", factory)
    return created


def auth_headers_for(user: User) -> dict:
    """Helper to create Authorization headers without a login round trip."""
    _, token = session_service.create_session(user_id=user.id)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def cashier_headers(cashier):
    return auth_headers_for(cashier)


@pytest.fixture(scope='function')
def owner_headers(owner):
    return auth_headers_for(owner)
