"""
Pytest configuration and fixtures for testing
"""
import os
import tempfile

# Must be set before farmgate.database is imported. A file DB (not :memory:)
# so the feed's worker-thread reads get their own connections.
_DB_DIR = tempfile.mkdtemp(prefix="farmgate-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["FEED_POLL_SECONDS"] = "0.05"
os.environ["FEED_MAX_BACKOFF_SECONDS"] = "0.2"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402

from farmgate import models  # noqa: E402
from farmgate.database import Base, SessionLocal, engine  # noqa: E402
from farmgate.identity import Identity, IdentityState  # noqa: E402
from farmgate.record_feed import InMemoryRecordFeed  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RecordingNavigator:
    def __init__(self):
        self.routes = []

    def navigate(self, route):
        self.routes.append(route)


class RecordingReporter:
    def __init__(self):
        self.errors = []

    def report_error(self, context, error):
        self.errors.append((context, error))


class FixedClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta: timedelta):
        self.now = self.now + delta


def trial_record(started_at, is_paid=False):
    return {"isPaid": is_paid, "subscriptionStatus": "trial", "trialStartedAt": started_at}


@pytest.fixture
def navigator():
    return RecordingNavigator()


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def feed():
    return InMemoryRecordFeed()


@pytest.fixture
def identity_state():
    state = IdentityState().init()
    yield state
    state.teardown()


@pytest.fixture
def alice():
    return Identity(uid="alice", email="alice@example.com")


@pytest.fixture
def bob():
    return Identity(uid="bob", email="bob@example.com")


@pytest.fixture
def db():
    """
    Fresh tables for each test on the temporary file engine.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_account(db):
    def _make(uid, **fields):
        fields.setdefault("is_paid", False)
        account = models.Account(uid=uid, **fields)
        db.add(account)
        db.commit()
        db.refresh(account)
        return account

    return _make
