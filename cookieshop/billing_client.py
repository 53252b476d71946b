import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

import stripe
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from cookieshop.exceptions import (
    BillingConfigurationError,
    BillingProviderError,
    BillingResourceMissing,
    WebhookSignatureError,
)
from cookieshop.settings import settings

logger = logging.getLogger(__name__)

# 관리자 대시보드에서 조회 가능한 리소스 목록
LISTABLE_RESOURCES: Dict[str, Callable[..., Any]] = {
    "customers": stripe.Customer.list,
    "products": stripe.Product.list,
    "prices": stripe.Price.list,
    "subscriptions": stripe.Subscription.list,
    "payment-intents": stripe.PaymentIntent.list,
    "disputes": stripe.Dispute.list,
    "refunds": stripe.Refund.list,
    "invoices": stripe.Invoice.list,
    "coupons": stripe.Coupon.list,
}

# 재시도 시 같은 키를 재사용해야 하는 쓰기 요청 (POST)
_IDEMPOTENT_PREFIXES = ("create_", "update_", "cancel_")


def _plain(obj: Any) -> Dict[str, Any]:
    """StripeObject를 일반 dict로 변환 (서비스 계층은 SDK 타입을 다루지 않음)"""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class BillingClient:
    """
    Stripe API 클라이언트

    - 요청마다 api_key / stripe_version을 명시적으로 전달 (전역 stripe.api_key 미사용)
    - 연결 오류/429는 tenacity로 재시도
    - 모든 stripe.StripeError는 Billing* 도메인 예외로 변환
    """

    def __init__(
        self,
        api_key: str,
        stripe_version: Optional[str] = None,
        timeout: float = 20.0,
        currency: str = "usd",
    ):
        if not api_key:
            raise BillingConfigurationError("Stripe secret key is not configured")
        self.api_key = api_key
        self.stripe_version = stripe_version
        self.currency = currency
        self.timeout = timeout

        # SDK 자체 재시도는 끄고 tenacity 재시도만 사용
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def from_settings(cls) -> "BillingClient":
        return cls(
            api_key=settings.stripe_secret_key,
            stripe_version=settings.stripe_api_version,
            timeout=settings.stripe_timeout_seconds,
            currency=settings.stripe_currency,
        )

    def _request_options(self, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        options: Dict[str, Any] = {"api_key": self.api_key}
        if self.stripe_version:
            options["stripe_version"] = self.stripe_version
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    @retry(
        stop=stop_after_attempt(settings.stripe_retry_count),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type((stripe.APIConnectionError, stripe.RateLimitError)),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"[STRIPE] 재시도 중... ({retry_state.attempt_number}회째): {retry_state.outcome.exception()}"
        ),
    )
    def _send(self, fn: Callable[..., Any], *args: Any, **params: Any) -> Any:
        return fn(*args, **params)

    def _call(
        self,
        operation: str,
        fn: Callable[..., Any],
        *args: Any,
        idempotency_key: Optional[str] = None,
        **params: Any,
    ) -> Dict[str, Any]:
        if idempotency_key is None and operation.startswith(_IDEMPOTENT_PREFIXES):
            # tenacity 재시도 전체에서 동일한 키 사용 (타임아웃 후 재전송 시 중복 생성 방지)
            idempotency_key = f"{operation}-{uuid.uuid4()}"
        try:
            result = self._send(fn, *args, **self._request_options(idempotency_key), **params)
        except stripe.StripeError as e:
            code = getattr(e, "code", None)
            http_status = getattr(e, "http_status", None)
            message = getattr(e, "user_message", None) or str(e)
            context = {"operation": operation}
            if code == "resource_missing":
                logger.info(f"[STRIPE] {operation}: resource missing ({message})")
                raise BillingResourceMissing(message, code=code, http_status=http_status, context=context) from e
            logger.error(f"[STRIPE] {operation} failed (status={http_status}, code={code}): {message}")
            raise BillingProviderError(message, code=code, http_status=http_status, context=context) from e
        return _plain(result)

    # --- Products / Prices ---

    def create_product(self, name: str, description: str = "", images: Optional[List[str]] = None,
                       metadata: Optional[Dict[str, str]] = None, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"name": name, "metadata": metadata or {}}
        # Stripe는 빈 description을 거부함
        if description:
            params["description"] = description
        if images:
            params["images"] = images
        return self._call("create_product", stripe.Product.create, idempotency_key=idempotency_key, **params)

    def retrieve_product(self, product_id: str) -> Dict[str, Any]:
        return self._call("retrieve_product", stripe.Product.retrieve, product_id)

    def update_product(self, product_id: str, **fields: Any) -> Dict[str, Any]:
        return self._call("update_product", stripe.Product.modify, product_id, **fields)

    def create_price(self, product_id: str, unit_amount: int, metadata: Optional[Dict[str, str]] = None,
                     idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        return self._call(
            "create_price",
            stripe.Price.create,
            idempotency_key=idempotency_key,
            product=product_id,
            unit_amount=unit_amount,
            currency=self.currency,
            metadata=metadata or {},
        )

    def retrieve_price(self, price_id: str) -> Dict[str, Any]:
        return self._call("retrieve_price", stripe.Price.retrieve, price_id)

    # --- Customers ---

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        result = self._call("find_customer_by_email", stripe.Customer.list, email=email, limit=1)
        data = result.get("data") or []
        return data[0] if data else None

    def create_customer(self, email: str, name: Optional[str] = None, metadata: Optional[Dict[str, str]] = None,
                        idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"email": email, "metadata": metadata or {}}
        if name:
            params["name"] = name
        return self._call("create_customer", stripe.Customer.create, idempotency_key=idempotency_key, **params)

    def update_customer(self, customer_id: str, **fields: Any) -> Dict[str, Any]:
        return self._call("update_customer", stripe.Customer.modify, customer_id, **fields)

    # --- Checkout / Payments ---

    def create_checkout_session(self, **params: Any) -> Dict[str, Any]:
        return self._call("create_checkout_session", stripe.checkout.Session.create, **params)

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return self._call("retrieve_checkout_session", stripe.checkout.Session.retrieve, session_id)

    def list_checkout_line_items(self, session_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        result = self._call(
            "list_checkout_line_items",
            stripe.checkout.Session.list_line_items,
            session_id,
            limit=limit,
            expand=["data.price"],
        )
        return result.get("data") or []

    def create_payment_intent(self, amount: int, customer_id: Optional[str] = None,
                              metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": self.currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata or {},
        }
        if customer_id:
            params["customer"] = customer_id
        return self._call("create_payment_intent", stripe.PaymentIntent.create, **params)

    def create_refund(self, payment_intent_id: str, amount: Optional[int] = None,
                      reason: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = amount
        if reason:
            params["reason"] = reason
        return self._call("create_refund", stripe.Refund.create, **params)

    def update_dispute(self, dispute_id: str, evidence: Dict[str, Any], submit: bool = False) -> Dict[str, Any]:
        return self._call("update_dispute", stripe.Dispute.modify, dispute_id, evidence=evidence, submit=submit)

    # --- Subscriptions / Billing ---

    def create_subscription(self, customer_id: str, price_id: str, metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return self._call(
            "create_subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            payment_behavior="default_incomplete",
            expand=["latest_invoice.payment_intent"],
            metadata=metadata or {},
        )

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._call("cancel_subscription", stripe.Subscription.cancel, subscription_id)

    def list_subscriptions(self, customer_id: str, status: str = "active", limit: int = 10) -> List[Dict[str, Any]]:
        result = self._call(
            "list_subscriptions",
            stripe.Subscription.list,
            customer=customer_id,
            status=status,
            limit=limit,
        )
        return result.get("data") or []

    def list_invoices(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        result = self._call("list_invoices", stripe.Invoice.list, customer=customer_id, limit=limit)
        return result.get("data") or []

    def create_coupon(self, **params: Any) -> Dict[str, Any]:
        return self._call("create_coupon", stripe.Coupon.create, **params)

    def create_invoice(self, customer_id: str, amount: int, description: str,
                       days_until_due: int = 30) -> Dict[str, Any]:
        invoice = self._call(
            "create_invoice",
            stripe.Invoice.create,
            customer=customer_id,
            collection_method="send_invoice",
            days_until_due=days_until_due,
        )
        self._call(
            "create_invoice_item",
            stripe.InvoiceItem.create,
            customer=customer_id,
            invoice=invoice["id"],
            amount=amount,
            currency=self.currency,
            description=description,
        )
        return invoice

    def list_resources(self, kind: str, limit: int = 20) -> List[Dict[str, Any]]:
        if kind == "balance":
            return [self._call("retrieve_balance", stripe.Balance.retrieve)]
        fn = LISTABLE_RESOURCES.get(kind)
        if fn is None:
            raise ValueError(f"Unsupported billing resource: {kind}")
        result = self._call(f"list_{kind}", fn, limit=limit)
        return result.get("data") or []

    # --- Webhooks ---

    def construct_event(self, payload: bytes, sig_header: Optional[str], secret: Optional[str] = None) -> Dict[str, Any]:
        """
        웹훅 서명을 검증하고 이벤트를 dict로 반환합니다.

        Raises:
            WebhookSignatureError: 서명 헤더 누락/불일치 또는 payload 파싱 실패
            BillingConfigurationError: webhook secret 미설정
        """
        secret = secret or settings.stripe_webhook_secret
        if not secret:
            raise BillingConfigurationError("Stripe webhook secret is not configured")
        if not sig_header:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, sig_header, secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[WEBHOOK] Signature verification failed: {e}")
            raise WebhookSignatureError("Invalid webhook signature") from e
        except ValueError as e:
            raise WebhookSignatureError("Invalid webhook payload") from e
        return json.loads(payload)
