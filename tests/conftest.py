"""
Pytest configuration for alert engine tests
"""

import pytest
import sys
import os
import time
from datetime import datetime

# Environment must be in place BEFORE importing any clinical_alerts modules:
# settings are read at import time.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ALERT_WORKER_ENABLED"] = "false"
os.environ["AWS_REGION"] = "us-east-1"
os.environ["AWS_ACCESS_KEY_ID"] = ""
os.environ["AWS_SECRET_ACCESS_KEY"] = ""
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["TWILIO_AUTH_TOKEN"] = ""
os.environ["TWILIO_PHONE_NUMBER"] = ""

# Add parent directory to path to import clinical_alerts
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinical_alerts.database import Base
from clinical_alerts.models import alert_models  # noqa: F401
from clinical_alerts.services.alert_engine.config_service import AlertConfigService
from clinical_alerts.services.alert_engine.enums import NotificationChannel
from clinical_alerts.services.alert_engine.notification_service import ChannelDeliveryError
from clinical_alerts.services.alert_engine.rule_definitions import parse_rule

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


T0 = datetime(2026, 3, 2, 9, 0, 0)


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio backend for async tests"""
    return 'asyncio'


@pytest.fixture
def engine():
    """Fresh in-memory database per test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def engine_config():
    """Default engine policy for every test; fast retries"""
    service = AlertConfigService()
    service.reset_to_defaults()
    service.update_config({
        "fetch_backoff_seconds": 0,
        "delivery_backoff_seconds": 0,
    })
    yield service
    service.reset_to_defaults()


@pytest.fixture
def now():
    return T0


@pytest.fixture
def make_rule():
    """Factory for parsed rules with a HIGH pain rule as the baseline"""

    def _make(**overrides):
        raw = {
            "id": "pain-high",
            "name": "High pain",
            "condition": "pain_scale_0_10",
            "operator": "greater_than_or_equal",
            "threshold": 8,
            "severity": "HIGH",
            "cooldown": "1h",
        }
        raw.update(overrides)
        return parse_rule(raw)

    return _make


class FakeChannel:
    """In-process channel sender that records deliveries"""

    def __init__(self, channel, field="email", failures=0, delay=0.0):
        self.channel = channel
        self.field = field
        self.failures = failures
        self.delay = delay
        self.calls = 0
        self.sent = []

    def address_for(self, recipient):
        return getattr(recipient, self.field)

    def send(self, alert, event_type, address):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.calls <= self.failures:
            raise ChannelDeliveryError("provider unavailable")
        self.sent.append((alert.id, event_type.value, address))
        return f"msg-{self.calls}"


@pytest.fixture
def fake_channel():
    return FakeChannel


@pytest.fixture
def fake_channels():
    return {
        NotificationChannel.EMAIL: FakeChannel(NotificationChannel.EMAIL, "email"),
        NotificationChannel.SMS: FakeChannel(NotificationChannel.SMS, "phone"),
        NotificationChannel.PHONE_CALL: FakeChannel(NotificationChannel.PHONE_CALL, "phone"),
    }
