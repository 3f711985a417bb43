import pytest
from fastapi.testclient import TestClient

from maintenance_desk.config import Settings
from maintenance_desk.core.notifications import NotificationDispatcher, NotifierConfig
from maintenance_desk.integrations.channels import DeliveryError, NotificationChannel
from maintenance_desk.main import create_app
from maintenance_desk.models import Customer

FRONTEND_URL = "https://portal.example"


class FakeChannel(NotificationChannel):
    """
    Records every message; addresses listed in ``failing`` raise.

    ``on_deliver`` is called with each contact before it is recorded.
    """

    name = "fake"

    def __init__(self):
        self.sent = []
        self.failing = set()
        self.on_deliver = None

    def address_for(self, contact):
        return contact.email or contact.webhook_url

    def deliver(self, contact, message):
        address = self.address_for(contact)
        if self.on_deliver is not None:
            self.on_deliver(contact)
        if address in self.failing:
            raise DeliveryError(f"mailbox {address} unavailable")
        self.sent.append((address, message))

    def subjects_for(self, address):
        return [m.subject for a, m in self.sent if a == address]


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        frontend_url=FRONTEND_URL,
        operator_contact_email="ops@provider.example",
        seed_demo_data=False,
    )


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def dispatcher(settings, channel):
    return NotificationDispatcher(NotifierConfig.from_settings(settings), channels=[channel])


@pytest.fixture
def app(settings, dispatcher):
    return create_app(settings, dispatcher=dispatcher)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def db(app):
    session = app.state.session_factory()
    yield session
    session.close()


@pytest.fixture
def customers(db):
    """Two reachable customers, A and B, plus one without any address."""
    a = Customer(name="Acme GmbH", email="it@acme.example")
    b = Customer(name="Globex AG", email="ops@globex.example")
    c = Customer(name="No Contact Ltd")
    db.add_all([a, b, c])
    db.commit()
    return {"A": a, "B": b, "C": c}
