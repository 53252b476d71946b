import pytest

from cookieshop.exceptions import DomainValidationError
from cookieshop.services.customer_resolver import CustomerResolver
from cookieshop.services.payments_admin import PaymentsAdminService
from cookieshop.services.subscriptions import SubscriptionService


def test_refund_is_requested_remotely_only(billing_client):
    service = PaymentsAdminService(billing_client)

    refund = service.process_refund("pi_1", amount=300, reason="requested_by_customer")

    assert refund["payment_intent"] == "pi_1"
    assert billing_client.calls["create_refund"] == [
        {"payment_intent_id": "pi_1", "amount": 300, "reason": "requested_by_customer"}
    ]


def test_refund_drops_unsupported_reason(billing_client):
    PaymentsAdminService(billing_client).process_refund("pi_1", reason="changed my mind")

    assert billing_client.calls["create_refund"][0]["reason"] is None


@pytest.mark.parametrize("payment_intent, amount", [("", None), ("pi_1", 0), ("pi_1", -5)])
def test_refund_validation(billing_client, payment_intent, amount):
    with pytest.raises(DomainValidationError):
        PaymentsAdminService(billing_client).process_refund(payment_intent, amount=amount)
    assert billing_client.call_count("create_refund") == 0


def test_coupon_validation(billing_client):
    service = PaymentsAdminService(billing_client)

    coupon = service.create_coupon(duration="repeating", percent_off=15, duration_in_months=3, name="Fall15")
    assert coupon["percent_off"] == 15
    assert coupon["duration_in_months"] == 3

    fixed = service.create_coupon(amount_off=500)
    assert fixed["currency"] == "usd"

    with pytest.raises(DomainValidationError):
        service.create_coupon(duration="weekly", percent_off=10)
    with pytest.raises(DomainValidationError):
        service.create_coupon(percent_off=150)
    with pytest.raises(DomainValidationError):
        service.create_coupon()
    with pytest.raises(DomainValidationError):
        service.create_coupon(duration="repeating", percent_off=10)


def test_list_remote(billing_client):
    service = PaymentsAdminService(billing_client)

    assert service.list_remote("products") == []
    with pytest.raises(DomainValidationError):
        service.list_remote("charges")


def test_dispute_and_invoice(billing_client):
    service = PaymentsAdminService(billing_client)

    dispute = service.update_dispute("dp_1", {"customer_name": "Jamie"}, submit=True)
    assert dispute["status"] == "under_review"

    invoice = service.create_invoice("cus_1", 2500, "Office party cookies", days_until_due=14)
    assert invoice["amount_due"] == 2500
    with pytest.raises(DomainValidationError):
        service.create_invoice("cus_1", 0, "Nothing")


def test_create_subscription(test_session, billing_client):
    service = SubscriptionService(billing_client, CustomerResolver(test_session, billing_client))

    result = service.create_subscription("sub@example.com", "Sam", "weekly", [{"id": 1, "quantity": 12}])

    assert result.plan["price_id"] == "price_weekly_cookies"
    assert result.status == "incomplete"
    call = billing_client.calls["create_subscription"][0]
    assert call["customer_id"] == result.customer_id
    assert call["metadata"]["items"] == '[{"id":1,"quantity":12}]'

    assert [s["id"] for s in service.list_customer_subscriptions(result.customer_id)] == [result.subscription_id]
    assert service.cancel_subscription(result.subscription_id)["status"] == "canceled"


@pytest.mark.parametrize(
    "email, name, plan, items, message",
    [
        ("", "Sam", "weekly", [], "Missing required fields"),
        ("sub@example.com", "Sam", "weekly", None, "Missing required fields"),
        ("sub@example.com", "Sam", "yearly", [], "Invalid subscription plan"),
    ],
)
def test_create_subscription_validation(test_session, billing_client, email, name, plan, items, message):
    service = SubscriptionService(billing_client, CustomerResolver(test_session, billing_client))

    with pytest.raises(DomainValidationError, match=message):
        service.create_subscription(email, name, plan, items)
    assert billing_client.call_count("create_customer") == 0
