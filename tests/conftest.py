# tests/conftest.py
import os
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Point tests at a throwaway SQLite file unless DATABASE_URL says otherwise
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{Path(tempfile.gettempdir()) / 'orderflow_test.db'}",
)
os.environ.setdefault("GATEWAY_API_KEY", "test-imp-key")
os.environ.setdefault("GATEWAY_API_SECRET", "test-imp-secret")
os.environ.setdefault("GATEWAY_BASE_URL", "https://gateway.test")

from orderflow.main import app, get_gateway  # noqa
from orderflow.db import engine, SessionLocal  # noqa
from orderflow.errors import GatewayLookupError  # noqa
from orderflow.gateway import CancelResult, GatewayPaymentRecord  # noqa
from orderflow.models import Base, BuyerSession, CouponHold, Item  # noqa
from orderflow.services.ledger import LedgerGateway  # noqa

ALICE_TOKEN = "tok-alice"
BOB_TOKEN = "tok-bob"


def auth(token):
    return {"Authorization": f"Bearer {token}"}


class FakeGateway:
    """In-memory stand-in for GatewayClient used by the API tests."""

    def __init__(self):
        self.payments = {}
        self.cancel_result = CancelResult(success=True)
        self.fetch_error = None
        self.cancel_error = None
        self.cancel_calls = []

    def add_payment(self, tx_id, merchant_ref, amount, status="paid", pay_method="card", provider="html5_inicis"):
        self.payments[tx_id] = GatewayPaymentRecord(
            tx_id=tx_id,
            merchant_ref=merchant_ref,
            amount=amount,
            status=status,
            pay_method=pay_method,
            provider=provider,
        )

    def authenticate(self):
        return "fake-token"

    def fetch_payment(self, tx_id, token):
        if self.fetch_error:
            raise self.fetch_error
        if tx_id not in self.payments:
            raise GatewayLookupError("Payment lookup failed: no such payment")
        return self.payments[tx_id]

    def cancel_payment(self, tx_id, amount, reason, token):
        if self.cancel_error:
            raise self.cancel_error
        self.cancel_calls.append((tx_id, amount, reason))
        return self.cancel_result


@pytest.fixture(autouse=True)
def create_schema_and_clean_db():
    # Ensure tables exist (startup also does this, but be explicit for tests)
    Base.metadata.create_all(bind=engine)
    # Empty every table between tests so they don't interfere
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture
def seeded():
    with SessionLocal() as db:
        db.add_all([
            Item(id="item-1", title="Premium report", is_active=True),
            Item(id="item-retired", title="Old report", is_active=False),
            BuyerSession(token=ALICE_TOKEN, buyer_id="alice"),
            BuyerSession(token=BOB_TOKEN, buyer_id="bob"),
            CouponHold(id="C1", owner_id="alice", discount_amount=1000),
            CouponHold(id="C2", owner_id="bob", discount_amount=500),
        ])
        db.commit()


@pytest.fixture
def ledger():
    return LedgerGateway(SessionLocal)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway, seeded):
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def place_order(client):
    def _place(amount=10000, merchant_ref="mr-1", tx_id="tx-1", coupon_ref=None, token=ALICE_TOKEN):
        body = {
            "item_id": "item-1",
            "amount": amount,
            "pay_method": "card",
            "tx_id": tx_id,
            "merchant_ref": merchant_ref,
            "provider": "html5_inicis",
        }
        if coupon_ref:
            body["coupon_ref"] = coupon_ref
        return client.post("/orders", json=body, headers=auth(token))
    return _place


@pytest.fixture
def paid_order(client, gateway, place_order):
    """A completed 10000 order bought by alice with coupon C1."""
    def _paid(coupon_ref="C1"):
        r = place_order(coupon_ref=coupon_ref)
        assert r.status_code == 200
        gateway.add_payment("tx-1", "mr-1", 10000)
        confirm = client.post("/payments/confirm", json={"tx_id": "tx-1", "merchant_ref": "mr-1", "status": "paid"})
        assert confirm.status_code == 200
        return r.json()["order_id"]
    return _paid
