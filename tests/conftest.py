from datetime import datetime, timedelta, timezone

import pytest

from app import create_app
from config import Config
from models import db
from security.codes import CodeGenerator
from services.booking_engine import BookingEngine
from services.notifications import Notifier
from store.memory import MemoryDocumentStore


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    DOCUMENT_STORE = "memory"
    NOTIFICATIONS_ASYNC = False
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    REQUIRE_START_CODE = False


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryDocumentStore(clock=clock)


@pytest.fixture
def notifier(store):
    return Notifier(store, asynchronous=False)


@pytest.fixture
def engine(store, notifier, clock):
    return BookingEngine(store, notifier=notifier, codes=CodeGenerator(), clock=clock)


@pytest.fixture
def reserve(engine):
    """Reserve a slot with sensible defaults; keyword arguments override them."""
    def _reserve(**overrides):
        params = dict(
            customer_id="cust-1",
            provider_id="prov-1",
            date="2026-03-10",
            start_time="10:00",
            duration_minutes=60,
            customer_name="Asha",
            provider_name="Ravi",
        )
        params.update(overrides)
        return engine.reserve_slot(**params)
    return _reserve


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
    yield app
    app.extensions["notifier"].shutdown()


@pytest.fixture
def client(app):
    return app.test_client()
