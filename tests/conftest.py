import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_secret")

from datetime import datetime
from typing import Optional

import pytest
from sqlmodel import SQLModel, Session, create_engine

from errors import EmailError
from gateway import compute_signature, signature_matches
from models import AccountStatus, User, UserRole, Vehicle, utcnow
from notifications import NotificationSink
from reminders import REMINDER_SPECS, schedule_reminders

GATEWAY_SECRET = "test_secret"


def reminder_schedule_consistent(vehicle):
    """A reminder has a due time exactly when its source date is set."""
    return all(
        (getattr(vehicle, spec.source_field) is None) == (getattr(vehicle, spec.scheduled_field) is None)
        for spec in REMINDER_SPECS.values()
    )


class FakeEmailSender:
    def __init__(self):
        self.sent = []
        self.fail_all = False
        self.fail_for = set()

    def send(self, to_address, subject, body):
        if self.fail_all or to_address in self.fail_for:
            raise EmailError(f"SMTP unavailable for {to_address}")
        self.sent.append((to_address, subject, body))

    def subjects_to(self, address):
        return [subject for to, subject, _ in self.sent if to == address]


class FakePushSender:
    enabled = True

    def __init__(self):
        self.sent = []

    def send(self, token, title, body):
        self.sent.append((token, title, body))


class FakeGateway:
    key_id = "rzp_test_key"
    secret = GATEWAY_SECRET

    def __init__(self):
        self.configured = True
        self.orders = []
        self.error: Optional[Exception] = None

    def create_order(self, amount_minor_units, currency, receipt, notes=None):
        if self.error:
            raise self.error
        order = {
            "id": f"order_{len(self.orders) + 1}",
            "amount": amount_minor_units,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        self.orders.append(order)
        return order

    def verify_signature(self, order_id, payment_id, signature):
        return signature_matches(self.secret, order_id, payment_id, signature)


def sign(order_id, payment_id, secret=GATEWAY_SECRET):
    return compute_signature(secret, order_id, payment_id)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return lambda: Session(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def push_sender():
    return FakePushSender()


@pytest.fixture
def sink(email_sender, push_sender):
    return NotificationSink(email_sender, push_sender)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_user(session):
    counter = {"n": 0}

    def _make_user(role=UserRole.customer, status=AccountStatus.active, name=None, email=None, device_token=""):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            name=name or f"{role.value.title()} {n}",
            email=email or f"{role.value}{n}@test.com",
            mobile=f"98765432{n:02d}",
            role=role,
            account_status=status,
            device_token=device_token,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_vehicle(session):
    counter = {"n": 0}

    def _make_vehicle(
        owner,
        registration_number=None,
        insurance_amount=None,
        start_date: Optional[datetime] = None,
        expiry_date: Optional[datetime] = None,
    ):
        counter["n"] += 1
        vehicle = Vehicle(
            owner_id=owner.id,
            registration_number=registration_number or f"MH04AB{1000 + counter['n']}",
            model="Test Vehicle",
            insurance_amount=insurance_amount,
            start_date=start_date,
            expiry_date=expiry_date,
        )
        schedule_reminders(vehicle)
        session.add(vehicle)
        session.commit()
        session.refresh(vehicle)
        return vehicle

    return _make_vehicle


@pytest.fixture
def now():
    return utcnow()
