import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient

from api.auth import create_access_token
from booking_errors import NotificationError, TransientError
from booking_schemas import BookingCreate
from config import Settings
from main import create_app
from notifications.email import BrevoEmailClient
from payments.gateway import CheckoutSession, StripeGateway
from persistence.models import CatalogItemModel

WEBHOOK_SECRET = "whsec_test_secret"
CUSTOMER_EMAIL = "hana@example.com"


class FakeGateway(StripeGateway):
    """Records session requests instead of calling Stripe; signature checks stay real."""

    def __init__(self):
        super().__init__("sk_test_fake", WEBHOOK_SECRET, currency="jpy", max_attempts=2, backoff_seconds=0)
        self.sessions = []
        self.fail_with = None

    def create_checkout_session(self, amount, name, description, metadata, success_url, cancel_url,
                                client_reference_id=None):
        if self.fail_with is not None:
            raise self.fail_with
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append({"id": session_id, "amount": amount, "name": name, "metadata": dict(metadata),
                              "success_url": success_url, "cancel_url": cancel_url})
        return CheckoutSession(session_id, f"https://checkout.stripe.test/{session_id}", amount)


class RecordingEmailClient(BrevoEmailClient):
    def __init__(self):
        super().__init__("test-key", "bookings@example.com", "Bookings")
        self.sent = []
        self.failures = []

    def send(self, message):
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(message)
        return f"msg-{len(self.sent)}"

    def subjects(self, to=None):
        return [m.subject for m in self.sent if to is None or m.to == to]

    def fail_next(self, count=1, transient=False):
        error = TransientError("provider down") if transient else NotificationError("rejected")
        self.failures.extend([error] * count)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'bookings.db'}",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        JWT_SECRET_KEY="test-jwt-secret",
        ADMIN_EMAIL="ops@example.com",
        SITE_URL="https://travel.example.com",
        NOTIFY_DISABLED=frozenset(),
        NOTIFY_BACKOFF_SECONDS=0,
        NOTIFY_WAIT_SECONDS=5.0,
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def email():
    return RecordingEmailClient()


@pytest.fixture
def app(settings, gateway, email):
    app = create_app(settings, gateway=gateway, email_client=email)
    seed_catalog(app.state.services.db)
    yield app
    app.state.services.dispatcher.shutdown()
    app.state.services.db.dispose()


@pytest.fixture
def services(app):
    return app.state.services


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_headers(settings):
    token = create_access_token(settings, "ops", role="admin")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer_headers(settings):
    def make(user_id="user-1"):
        return {"Authorization": f"Bearer {create_access_token(settings, user_id)}"}

    return make


def seed_catalog(db):
    with db.session() as session:
        session.add_all([
            CatalogItemModel(item_type="tour", item_id="tour-fuji", title="Mt. Fuji Day Tour",
                             vehicle_rates={"v8": 12000, "v10": 15000, "coaster": 40000}),
            CatalogItemModel(item_type="transfer", item_id="transfer-narita", title="Narita Airport Transfer",
                             vehicle_rates={"v8": 8000, "v14": 14000}),
            CatalogItemModel(item_type="package", item_id="pkg-kyoto", title="Kyoto 3 Day Package",
                             vehicle_rates={"v10": 50000, "bigbus": 120000}),
            CatalogItemModel(item_type="tour", item_id="tour-retired", title="Retired Tour",
                             vehicle_rates={"v8": 9000}, active=False),
        ])
        session.commit()


def tour_item(**overrides):
    item = {
        "itemType": "tour",
        "itemId": "tour-fuji",
        "travelDate": "2026-11-20",
        "vehicleSelection": {"v8": 1},
        "pickupLocation": "Shinjuku Station",
        "dropoffLocation": "Shinjuku Station",
        "pickupTime": "08:30",
        "passengersCount": 4,
        "largeSuitcases": 0,
    }
    item.update(overrides)
    return item


def booking_payload(items=None, **overrides):
    payload = {
        "items": items or [tour_item()],
        "customer": {"name": "Hana Sato", "email": CUSTOMER_EMAIL, "phone": "+81 90 0000 0000"},
    }
    payload.update(overrides)
    return payload


def create_booking(services, items=None, **overrides):
    """Create a booking through the service layer and return the BookingCreated."""
    created = services.checkout.create_booking(BookingCreate.model_validate(booking_payload(items, **overrides)))
    services.dispatcher.drain(5)
    return created


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def session_event(event_id, booking_id, token, amount, event_type="checkout.session.completed",
                  payment_status="paid", pay_type="deposit", payment_intent="pi_test_1"):
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "object": "checkout.session",
                "amount_total": amount,
                "currency": "jpy",
                "payment_status": payment_status,
                "payment_intent": payment_intent,
                "payment_method_types": ["card"],
                "metadata": {"booking_id": str(booking_id), "token": token, "pay_type": pay_type},
            }
        },
    }


def refund_event(event_id, payment_intent, amount_refunded, previous_refunded=0):
    return {
        "id": event_id,
        "object": "event",
        "type": "charge.refunded",
        "data": {
            "object": {
                "id": f"ch_{event_id}",
                "object": "charge",
                "payment_intent": payment_intent,
                "amount_refunded": amount_refunded,
                "refunds": {"data": [{"reason": "requested_by_customer"}]},
            },
            "previous_attributes": {"amount_refunded": previous_refunded},
        },
    }


def post_event(client, event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event).encode("utf-8")
    return client.post(
        "/webhooks/payment",
        content=payload,
        headers={"stripe-signature": sign(payload, secret), "content-type": "application/json"},
    )


def assert_money(booking):
    assert booking.amount_paid + booking.remaining_amount == booking.total_amount
    assert 0 <= booking.amount_paid <= booking.total_amount
    assert booking.remaining_amount >= 0
