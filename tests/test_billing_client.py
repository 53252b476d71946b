import hashlib
import hmac
import json
import time

import pytest
import stripe

from cookieshop.billing_client import BillingClient
from cookieshop.exceptions import (
    BillingConfigurationError,
    BillingProviderError,
    BillingResourceMissing,
    WebhookSignatureError,
)

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def client():
    return BillingClient("sk_test_123", stripe_version="2024-06-20", timeout=5.0)


@pytest.fixture
def no_retry_sleep(monkeypatch):
    monkeypatch.setattr(BillingClient._send.retry, "sleep", lambda seconds: None)


def _sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def test_missing_api_key():
    with pytest.raises(BillingConfigurationError):
        BillingClient("")


def test_request_options_are_passed_per_call(client, monkeypatch):
    captured = {}

    def fake_create(**params):
        captured.update(params)
        return {"id": "cus_1", "email": params["email"]}

    monkeypatch.setattr(stripe.Customer, "create", fake_create)

    result = client.create_customer("a@example.com", name="A", idempotency_key="customer-create-abc")

    assert result == {"id": "cus_1", "email": "a@example.com"}
    assert captured["api_key"] == "sk_test_123"
    assert captured["stripe_version"] == "2024-06-20"
    assert captured["idempotency_key"] == "customer-create-abc"
    assert captured["name"] == "A"


def test_create_product_omits_empty_description(client, monkeypatch):
    captured = {}
    monkeypatch.setattr(stripe.Product, "create", lambda **params: captured.update(params) or {"id": "prod_1"})

    client.create_product("Cookie", description="", metadata={"productId": "1"})

    assert "description" not in captured
    assert "images" not in captured
    assert captured["metadata"] == {"productId": "1"}


def test_create_price_uses_client_currency(client, monkeypatch):
    captured = {}
    monkeypatch.setattr(stripe.Price, "create", lambda **params: captured.update(params) or {"id": "price_1"})

    client.create_price("prod_1", 350)

    assert captured["currency"] == "usd"
    assert captured["unit_amount"] == 350
    assert captured["product"] == "prod_1"


def test_resource_missing_is_translated(client, monkeypatch):
    def missing(product_id, **params):
        raise stripe.InvalidRequestError("No such product: 'prod_x'", "id", code="resource_missing", http_status=404)

    monkeypatch.setattr(stripe.Product, "retrieve", missing)

    with pytest.raises(BillingResourceMissing) as excinfo:
        client.retrieve_product("prod_x")
    assert excinfo.value.http_status == 404
    assert excinfo.value.context == {"operation": "retrieve_product"}


def test_card_error_is_provider_error(client, monkeypatch):
    def declined(**params):
        raise stripe.CardError("Your card was declined.", None, "card_declined", http_status=402)

    monkeypatch.setattr(stripe.PaymentIntent, "create", declined)

    with pytest.raises(BillingProviderError) as excinfo:
        client.create_payment_intent(700)
    assert not isinstance(excinfo.value, BillingResourceMissing)
    assert excinfo.value.code == "card_declined"


def test_connection_errors_are_retried(client, monkeypatch, no_retry_sleep):
    attempts = []

    def flaky(price_id, **params):
        attempts.append(price_id)
        if len(attempts) < 3:
            raise stripe.APIConnectionError("connection reset")
        return {"id": price_id, "unit_amount": 350}

    monkeypatch.setattr(stripe.Price, "retrieve", flaky)

    assert client.retrieve_price("price_1")["unit_amount"] == 350
    assert len(attempts) == 3


def test_retried_create_reuses_idempotency_key(client, monkeypatch, no_retry_sleep):
    """타임아웃 후 재시도해도 같은 키로 전송되어 Stripe에서 중복 생성되지 않음"""
    keys = []

    def flaky(**params):
        keys.append(params.get("idempotency_key"))
        if len(keys) == 1:
            raise stripe.APIConnectionError("read timeout")
        return {"id": "prod_1", "name": params["name"]}

    monkeypatch.setattr(stripe.Product, "create", flaky)

    assert client.create_product("Sugar")["id"] == "prod_1"
    assert len(keys) == 2
    assert keys[0] is not None
    assert keys[0] == keys[1]

    client.create_product("Oatmeal")
    assert keys[2] != keys[0]


def test_refund_sends_idempotency_key(client, monkeypatch):
    captured = {}
    monkeypatch.setattr(stripe.Refund, "create", lambda **params: captured.update(params) or {"id": "re_1"})

    client.create_refund("pi_1", amount=100)

    assert captured["idempotency_key"].startswith("create_refund-")


def test_reads_send_no_idempotency_key(client, monkeypatch):
    captured = {}
    monkeypatch.setattr(stripe.Price, "retrieve",
                        lambda price_id, **params: captured.update(params) or {"id": price_id})

    client.retrieve_price("price_1")

    assert "idempotency_key" not in captured


def test_retries_exhausted(client, monkeypatch, no_retry_sleep):
    def always_limited(**params):
        raise stripe.RateLimitError("Too many requests", http_status=429)

    monkeypatch.setattr(stripe.Customer, "list", always_limited)

    with pytest.raises(BillingProviderError) as excinfo:
        client.find_customer_by_email("a@example.com")
    assert excinfo.value.http_status == 429


def test_find_customer_by_email(client, monkeypatch):
    monkeypatch.setattr(stripe.Customer, "list", lambda **params: {"data": [{"id": "cus_1"}, {"id": "cus_2"}]})
    assert client.find_customer_by_email("a@example.com") == {"id": "cus_1"}

    monkeypatch.setattr(stripe.Customer, "list", lambda **params: {"data": []})
    assert client.find_customer_by_email("b@example.com") is None


def test_list_resources_rejects_unknown_kind(client):
    with pytest.raises(ValueError):
        client.list_resources("charges-and-more")


def test_construct_event_verifies_signature(client):
    payload = json.dumps({"id": "evt_1", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}})

    event = client.construct_event(payload.encode(), _sign(payload), secret=WEBHOOK_SECRET)

    assert event["id"] == "evt_1"
    assert event["data"]["object"]["id"] == "ch_1"


def test_construct_event_rejects_bad_signature(client):
    payload = json.dumps({"id": "evt_1", "type": "charge.refunded", "data": {"object": {}}})

    with pytest.raises(WebhookSignatureError):
        client.construct_event(payload.encode(), _sign(payload, secret="whsec_other"), secret=WEBHOOK_SECRET)
    with pytest.raises(WebhookSignatureError):
        client.construct_event(payload.encode(), None, secret=WEBHOOK_SECRET)


def test_construct_event_requires_secret(client, monkeypatch):
    monkeypatch.setattr("cookieshop.billing_client.settings.stripe_webhook_secret", "")

    with pytest.raises(BillingConfigurationError):
        client.construct_event(b"{}", "t=1,v1=abc")
