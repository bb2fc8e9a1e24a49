import os
import tempfile
from datetime import datetime
from pathlib import Path

import pytest

_db_dir = tempfile.mkdtemp(prefix="parking-billing-")
os.environ["PARKING_DATABASE_URL"] = f"sqlite:///{Path(_db_dir) / 'test.db'}"

from app import app as flask_app  # noqa: E402
from models.models import SessionLocal, create_db, drop_db  # noqa: E402

NOW = datetime(2024, 3, 15, 12, 0, 0)


class FakeClock:
    """A settable time source."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture(autouse=True)
def fresh_db():
    drop_db()
    create_db()
    yield


@pytest.fixture
def db():
    with SessionLocal() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(clock):
    flask_app.config.update(TESTING=True, CLOCK=clock)
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def sign_in(client, role="admin", email="admin@parking.dev"):
    with client.session_transaction() as sess:
        sess["role"] = role
        sess["user_email"] = email


@pytest.fixture
def admin_client(client):
    sign_in(client)
    return client


@pytest.fixture
def super_client(client):
    sign_in(client, role="super-admin", email="super@parking.dev")
    return client
