import json
from datetime import timedelta
from typing import Any, Dict, List, Optional

import mongomock
import pytest

from cart import CartService
from checkout import CheckoutService
from config import Settings
from coupons import CouponService
from database import create_document, ensure_indexes, now_utc
from errors import WebhookSignatureError
from inventory import InventoryService
from orders import OrderService
from payments import PaymentSession
from products import ProductService
from schemas import Coupon, OrderItem, Product, Variant


class FakeGateway:
    """In-memory stand-in for the Stripe gateway."""

    signature = "valid-signature"

    def __init__(self):
        self.sessions: Dict[str, PaymentSession] = {}
        self.created: List[Dict[str, Any]] = []

    def create_session(self, lines: List[OrderItem], metadata: Dict[str, str],
                       discount_percentage: float = 0) -> PaymentSession:
        session_id = f"cs_test_{len(self.sessions) + 1}"
        session = PaymentSession(id=session_id, url=f"https://pay.example/{session_id}", metadata=metadata)
        self.sessions[session_id] = session
        self.created.append({"lines": lines, "metadata": metadata, "discount_percentage": discount_percentage})
        return session

    def retrieve_session(self, session_id: str) -> PaymentSession:
        return self.sessions[session_id]

    def mark_paid(self, session_id: str, payment_intent_id: str = "pi_test") -> None:
        session = self.sessions[session_id]
        session.payment_status = "paid"
        session.payment_intent_id = payment_intent_id

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if signature != self.signature:
            raise WebhookSignatureError("Invalid webhook signature")
        return json.loads(payload)


@pytest.fixture
def settings():
    return Settings(_env_file=None, inventory_retry_base_delay=0, admin_key="test-admin-key")


@pytest.fixture
def db():
    database = mongomock.MongoClient(tz_aware=True)["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def products(db):
    return ProductService(db)


@pytest.fixture
def inventory(db):
    return InventoryService(db, max_retries=3, base_delay=0, sleep=lambda _: None)


@pytest.fixture
def coupons(db):
    return CouponService(db)


@pytest.fixture
def cart(db, coupons):
    return CartService(db, coupons)


@pytest.fixture
def orders(db):
    return OrderService(db)


@pytest.fixture
def checkout(db, inventory, coupons, cart, gateway):
    return CheckoutService(db, inventory, coupons, cart, gateway, gift_threshold=200.0)


@pytest.fixture
def user_id(db):
    return create_document(db, "user", {"name": "Ada", "email": "ada@lovelace.dev", "cart_items": []})


@pytest.fixture
def product(products):
    return products.create_product(Product(name="Mug", price=25.0, stock=10))


@pytest.fixture
def variant_product(products):
    return products.create_product(Product(
        name="T-Shirt",
        price=20.0,
        variants=[
            Variant(variant_id="s-red", attributes={"size": "S", "color": "red"}, stock=5),
            Variant(variant_id="m-red", attributes={"size": "M", "color": "red"}, price=22.5, stock=2),
        ],
    ))


@pytest.fixture
def make_coupon(coupons):
    def make(code="SAVE20", discount_percentage=20, days=7, **kwargs):
        return coupons.create(Coupon(code=code, discount_percentage=discount_percentage,
                                     expires_at=now_utc() + timedelta(days=days), **kwargs))
    return make
