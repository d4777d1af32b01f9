import logging

import pytest

from db import init_db, make_engine, make_session_factory
from flask_app import create_app
from queue_service import QueueManager
from shared.auth_lib import Identity, issue_token

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
)

TEST_SECRET = "test-secret"

RUNNER = Identity(id="runner-1", role="doctor", name="R")
SPECTATOR = Identity(id="spectator-1", role="doctor", name="S")
ADMIN = Identity(id="admin-1", role="admin", name="Admin")


class RecordingNotifier:
    """Stands in for the chat webhook; keeps every call for assertions."""

    def __init__(self):
        self.calls = []

    def notify(self, event_type, data, message_id=None):
        self.calls.append(("notify", event_type, data, message_id))
        return message_id or "message-1"

    def session_started(self, status):
        self.calls.append(("started", status))

    def session_updated(self, status, editor_name=None):
        self.calls.append(("updated", status, editor_name))

    def session_stopped(self, runner_name, duration_ms, doctor_count):
        self.calls.append(("stopped", runner_name, duration_ms, doctor_count))


def make_doctors(count):
    return [{"_id": f"d{index}", "name": f"D{index}"} for index in range(1, count + 1)]


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    return make_session_factory(engine)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def manager(session_factory, notifier):
    return QueueManager(session_factory, notifier=notifier)


@pytest.fixture
def app(notifier):
    app = create_app(
        {
            "TESTING": True,
            "DATABASE_URL": "sqlite://",
            "JWT_SECRET": TEST_SECRET,
            "QUEUE_NOTIFIER": notifier,
        }
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def _auth(identity):
    token = issue_token(identity.id, identity.role, identity.name, secret=TEST_SECRET)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def runner_headers():
    return _auth(RUNNER)


@pytest.fixture
def spectator_headers():
    return _auth(SPECTATOR)


@pytest.fixture
def admin_headers():
    return _auth(ADMIN)
