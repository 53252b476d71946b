"""Pytest configuration and fixtures."""

import itertools
import json
import threading
import time
from collections import defaultdict
from decimal import Decimal

import pytest
from sqlalchemy import JSON, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from cookieshop.exceptions import BillingProviderError, BillingResourceMissing, WebhookSignatureError
from cookieshop.models import Base, Product


# 테스트용 메모리 SQLite 엔진 (StaticPool: TestClient 스레드와 같은 커넥션 공유)
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)

TestSessionLocal = sessionmaker(
    bind=test_engine,
    autoflush=False,
    expire_on_commit=False,
)


def _patch_jsonb_to_json(base):
    """
    SQLite에서 JSONB를 JSON으로 변경하여 컴파일 오류 방지.
    테스트용으로만 사용.
    """
    from sqlalchemy.dialects.postgresql import JSONB

    for table in base.metadata.sorted_tables:
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()


@pytest.fixture(scope="function")
def test_session() -> Session:
    """
    테스트용 데이터베이스 세션 fixture.
    각 테스트마다 테이블을 새로 생성합니다.
    """
    _patch_jsonb_to_json(Base)
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def db_session(test_session: Session):
    """test_session alias"""
    yield test_session


class FakeBillingClient:
    """
    Stripe 호출을 메모리에서 흉내내는 BillingClient 대역.
    동기화 테스트에서 스레드로 호출되므로 상태 변경은 lock 안에서 처리합니다.
    """

    currency = "usd"

    def __init__(self):
        self._lock = threading.Lock()
        self._seq = itertools.count(1)
        self.calls = defaultdict(list)
        self.products = {}
        self.prices = {}
        self.customers = {}
        self.sessions = {}
        self.line_items = {}
        self.subscriptions = {}
        self.invoices = defaultdict(list)
        self._idempotent = {}

        # 실패/지연 주입
        self.fail_product_names = set()
        self.slow_product_names = set()
        self.slow_seconds = 0.3
        self.before_create_customer = None

    def _record(self, _op, **kwargs):
        with self._lock:
            self.calls[_op].append(kwargs)

    def _next_id(self, prefix):
        with self._lock:
            return f"{prefix}_test_{next(self._seq)}"

    def call_count(self, name):
        return len(self.calls[name])

    # --- Products / Prices ---

    def create_product(self, name, description="", images=None, metadata=None, idempotency_key=None):
        self._record("create_product", name=name, description=description, metadata=metadata)
        if name in self.slow_product_names:
            time.sleep(self.slow_seconds)
        if name in self.fail_product_names:
            raise BillingProviderError(f"create failed for {name}", code="api_error", http_status=500)
        product = {
            "id": self._next_id("prod"),
            "name": name,
            "description": description,
            "active": True,
            "metadata": dict(metadata or {}),
        }
        with self._lock:
            self.products[product["id"]] = product
        return dict(product)

    def retrieve_product(self, product_id):
        self._record("retrieve_product", product_id=product_id)
        with self._lock:
            product = self.products.get(product_id)
        if product is None:
            raise BillingResourceMissing(f"No such product: '{product_id}'", code="resource_missing", http_status=404)
        return dict(product)

    def update_product(self, product_id, **fields):
        self._record("update_product", product_id=product_id, **fields)
        with self._lock:
            product = self.products.get(product_id)
            if product is None:
                raise BillingResourceMissing(f"No such product: '{product_id}'", code="resource_missing", http_status=404)
            product.update(fields)
            return dict(product)

    def create_price(self, product_id, unit_amount, metadata=None, idempotency_key=None):
        self._record("create_price", product_id=product_id, unit_amount=unit_amount, metadata=metadata)
        price = {
            "id": self._next_id("price"),
            "product": product_id,
            "unit_amount": unit_amount,
            "currency": self.currency,
            "metadata": dict(metadata or {}),
        }
        with self._lock:
            self.prices[price["id"]] = price
        return dict(price)

    def retrieve_price(self, price_id):
        self._record("retrieve_price", price_id=price_id)
        with self._lock:
            price = self.prices.get(price_id)
        if price is None:
            raise BillingResourceMissing(f"No such price: '{price_id}'", code="resource_missing", http_status=404)
        return dict(price)

    # --- Customers ---

    def add_remote_customer(self, email, name=None, phone=None, metadata=None):
        customer = {
            "id": self._next_id("cus"),
            "email": email,
            "name": name,
            "phone": phone,
            "metadata": dict(metadata or {}),
        }
        self.customers[customer["id"]] = customer
        return customer

    def find_customer_by_email(self, email):
        self._record("find_customer_by_email", email=email)
        for customer in self.customers.values():
            if customer["email"] == email:
                return dict(customer)
        return None

    def create_customer(self, email, name=None, metadata=None, idempotency_key=None):
        self._record("create_customer", email=email, name=name, metadata=metadata, idempotency_key=idempotency_key)
        if idempotency_key and idempotency_key in self._idempotent:
            return dict(self._idempotent[idempotency_key])
        if self.before_create_customer:
            self.before_create_customer(email)
        customer = self.add_remote_customer(email, name=name, metadata=metadata)
        if idempotency_key:
            self._idempotent[idempotency_key] = customer
        return dict(customer)

    def update_customer(self, customer_id, **fields):
        self._record("update_customer", customer_id=customer_id, **fields)
        customer = self.customers.setdefault(customer_id, {"id": customer_id})
        customer.update(fields)
        return dict(customer)

    # --- Checkout / Payments ---

    def create_checkout_session(self, **params):
        self._record("create_checkout_session", **params)
        amount_total = sum(
            self.prices[line["price"]]["unit_amount"] * line["quantity"] for line in params["line_items"]
        )
        session = {
            "id": self._next_id("cs"),
            "url": "https://checkout.stripe.test/pay",
            "amount_total": amount_total,
            "payment_status": "unpaid",
            "currency": self.currency,
            **params,
        }
        self.sessions[session["id"]] = session
        return dict(session)

    def retrieve_checkout_session(self, session_id):
        self._record("retrieve_checkout_session", session_id=session_id)
        session = self.sessions.get(session_id)
        if session is None:
            raise BillingResourceMissing(f"No such checkout.session: '{session_id}'", code="resource_missing")
        return dict(session)

    def list_checkout_line_items(self, session_id, limit=100):
        self._record("list_checkout_line_items", session_id=session_id)
        return list(self.line_items.get(session_id, []))

    def create_payment_intent(self, amount, customer_id=None, metadata=None):
        self._record("create_payment_intent", amount=amount, customer_id=customer_id, metadata=metadata)
        intent_id = self._next_id("pi")
        return {"id": intent_id, "client_secret": f"{intent_id}_secret", "amount": amount}

    def create_refund(self, payment_intent_id, amount=None, reason=None):
        self._record("create_refund", payment_intent_id=payment_intent_id, amount=amount, reason=reason)
        return {"id": self._next_id("re"), "payment_intent": payment_intent_id, "amount": amount, "reason": reason}

    def update_dispute(self, dispute_id, evidence, submit=False):
        self._record("update_dispute", dispute_id=dispute_id, evidence=evidence, submit=submit)
        return {"id": dispute_id, "evidence": evidence, "status": "under_review" if submit else "needs_response"}

    # --- Subscriptions / Billing ---

    def create_subscription(self, customer_id, price_id, metadata=None):
        self._record("create_subscription", customer_id=customer_id, price_id=price_id, metadata=metadata)
        subscription = {
            "id": self._next_id("sub"),
            "customer": customer_id,
            "status": "incomplete",
            "current_period_start": 1760000000,
            "current_period_end": 1760604800,
            "metadata": dict(metadata or {}),
        }
        self.subscriptions[subscription["id"]] = subscription
        return dict(subscription)

    def cancel_subscription(self, subscription_id):
        self._record("cancel_subscription", subscription_id=subscription_id)
        subscription = self.subscriptions.get(subscription_id, {"id": subscription_id})
        subscription["status"] = "canceled"
        return dict(subscription)

    def list_subscriptions(self, customer_id, status="active", limit=10):
        self._record("list_subscriptions", customer_id=customer_id, status=status)
        return [dict(s) for s in self.subscriptions.values() if s.get("customer") == customer_id]

    def list_invoices(self, customer_id, limit=10):
        self._record("list_invoices", customer_id=customer_id)
        return list(self.invoices[customer_id])[:limit]

    def create_coupon(self, **params):
        self._record("create_coupon", **params)
        return {"id": self._next_id("coupon"), **params}

    def create_invoice(self, customer_id, amount, description, days_until_due=30):
        self._record("create_invoice", customer_id=customer_id, amount=amount, description=description)
        invoice = {"id": self._next_id("in"), "customer": customer_id, "amount_due": amount, "days_until_due": days_until_due}
        self.invoices[customer_id].append(invoice)
        return dict(invoice)

    def list_resources(self, kind, limit=20):
        self._record("list_resources", kind=kind, limit=limit)
        if kind == "products":
            return list(self.products.values())[:limit]
        return []

    # --- Webhooks ---

    def construct_event(self, payload, sig_header, secret=None):
        if sig_header != "t=1,v1=valid":
            raise WebhookSignatureError("Invalid webhook signature")
        return json.loads(payload)


@pytest.fixture
def billing_client() -> FakeBillingClient:
    return FakeBillingClient()


@pytest.fixture
def make_product(test_session: Session):
    """상품 생성 helper"""

    def _make(name="Chocolate Chip", base_price="3.50", **fields):
        product = Product(
            name=name,
            description=fields.pop("description", f"{name} cookie"),
            base_price=Decimal(str(base_price)),
            **fields,
        )
        test_session.add(product)
        test_session.commit()
        return product

    return _make


# 테스트 마커 정의
def pytest_configure(config):
    """Pytest 마커 등록."""
    config.addinivalue_line("markers", "unit: 단위 테스트 (DB 불필요)")
    config.addinivalue_line("markers", "integration: 통합 테스트 (실제 DB/API 필요)")
    config.addinivalue_line("markers", "slow: 느린 테스트 (> 1분)")
