import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from cookieshop.billing_client import BillingClient
from cookieshop.exceptions import CheckoutValidationError
from cookieshop.models import Product
from cookieshop.services.billing_sync import BillingSyncService
from cookieshop.services.customer_resolver import CustomerResolver, normalize_email
from cookieshop.services.pricing import calculate_cart_total, format_price, to_minor_units
from cookieshop.settings import settings

logger = logging.getLogger(__name__)

# Stripe metadata 값 최대 길이
METADATA_VALUE_LIMIT = 500


@dataclass(frozen=True)
class CartItem:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class CustomerInfo:
    email: str
    name: str
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSessionResult:
    session_id: str
    url: Optional[str]
    amount_total: int  # 센트 단위, Stripe가 계산한 값
    customer_id: Optional[str]


@dataclass(frozen=True)
class PaymentIntentResult:
    payment_intent_id: str
    client_secret: Optional[str]
    amount: int
    customer_id: Optional[str]


class CheckoutSessionBuilder:
    def __init__(
        self,
        session: Session,
        client: BillingClient,
        sync: Optional[BillingSyncService] = None,
        customers: Optional[CustomerResolver] = None,
    ):
        self.session = session
        self.client = client
        self.sync = sync or BillingSyncService(session, client)
        self.customers = customers or CustomerResolver(session, client)

    def _validate(self, items: Sequence[CartItem], customer_info: CustomerInfo) -> List[CartItem]:
        """원격 호출 전에 장바구니/고객 정보를 검증하고 같은 상품 라인을 합칩니다."""
        if not items:
            raise CheckoutValidationError("No items provided")
        if not normalize_email(customer_info.email) or not (customer_info.name or "").strip():
            raise CheckoutValidationError("Customer information is required")

        merged: Dict[int, int] = {}
        for item in items:
            if not isinstance(item.quantity, int) or isinstance(item.quantity, bool) or item.quantity < 1:
                raise CheckoutValidationError(
                    f"Invalid quantity for product {item.product_id}",
                    {"product_id": item.product_id, "quantity": item.quantity},
                )
            merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity

        for product_id, quantity in merged.items():
            product = self.session.get(Product, product_id)
            if product is None:
                raise CheckoutValidationError(f"Product {product_id} not found", {"product_id": product_id})
            if not product.is_available:
                raise CheckoutValidationError(f"Product {product_id} is not available", {"product_id": product_id})
            if quantity < product.min_quantity or quantity > product.max_quantity:
                raise CheckoutValidationError(
                    f"Quantity for product {product_id} must be between "
                    f"{product.min_quantity} and {product.max_quantity}",
                    {"product_id": product_id, "quantity": quantity},
                )

        return [CartItem(product_id=pid, quantity=qty) for pid, qty in merged.items()]

    def _expected_total(self, items: Sequence[CartItem]) -> Decimal:
        """카탈로그 기준 합계 (Stripe amount_total 검증용)"""
        return calculate_cart_total(
            {"price": self.session.get(Product, item.product_id).base_price, "quantity": item.quantity}
            for item in items
        )

    def _items_metadata(self, items: Sequence[CartItem]) -> Optional[str]:
        encoded = json.dumps(
            [{"id": item.product_id, "quantity": item.quantity} for item in items],
            separators=(",", ":"),
        )
        if len(encoded) > METADATA_VALUE_LIMIT:
            # 웹훅에서는 line item 조회로 대체
            logger.info(f"[CHECKOUT] Cart metadata too long ({len(encoded)} chars), relying on line items")
            return None
        return encoded

    def _open_session(self, items: List[CartItem], customer_info: CustomerInfo) -> tuple[Dict[str, Any], Optional[str]]:
        customer_id = customer_info.customer_id or self.customers.resolve_customer(
            customer_info.email, customer_info.name
        )

        line_items = [
            {"price": self.sync.get_or_create_price_id(item.product_id), "quantity": item.quantity}
            for item in items
        ]

        metadata: Dict[str, str] = {"customerName": customer_info.name.strip()}
        if customer_id:
            metadata["customerId"] = customer_id
        items_json = self._items_metadata(items)
        if items_json:
            metadata["items"] = items_json

        base_url = settings.public_base_url
        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": line_items,
            "success_url": f"{base_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base_url}/checkout/canceled",
            "metadata": metadata,
            "shipping_address_collection": {"allowed_countries": list(settings.checkout_allowed_countries)},
            "allow_promotion_codes": True,
            "payment_intent_data": {"setup_future_usage": "off_session"},
        }
        # 주문 이력 연결을 위해 customer id 우선, 없으면 이메일
        if customer_id:
            params["customer"] = customer_id
        else:
            params["customer_email"] = normalize_email(customer_info.email)

        return self.client.create_checkout_session(**params), customer_id

    def create_checkout_session(self, items: Sequence[CartItem], customer_info: CustomerInfo) -> CheckoutSessionResult:
        merged = self._validate(items, customer_info)
        remote, customer_id = self._open_session(merged, customer_info)
        expected = self._expected_total(merged)
        amount_total = int(remote.get("amount_total") or 0)
        logger.info(
            f"[CHECKOUT] Created session {remote['id']} "
            f"(lines={len(merged)}, amount_total={amount_total}, expected={format_price(expected)})"
        )
        if amount_total != to_minor_units(expected):
            logger.warning(
                f"[CHECKOUT] Session {remote['id']} total {amount_total} differs from catalog total "
                f"{format_price(expected)}"
            )
        return CheckoutSessionResult(
            session_id=remote["id"],
            url=remote.get("url"),
            amount_total=amount_total,
            customer_id=customer_id,
        )

    def create_payment_intent(self, items: Sequence[CartItem], customer_info: CustomerInfo) -> PaymentIntentResult:
        """
        임베디드 결제 폼용 PaymentIntent 생성.
        금액은 Checkout Session이 계산한 amount_total을 그대로 사용합니다.
        """
        merged = self._validate(items, customer_info)
        remote_session, customer_id = self._open_session(merged, customer_info)
        amount = int(remote_session.get("amount_total") or 0)

        intent = self.client.create_payment_intent(
            amount=amount,
            customer_id=customer_id,
            metadata={
                "sessionId": remote_session["id"],
                "customerName": customer_info.name.strip(),
                "customerEmail": normalize_email(customer_info.email),
            },
        )
        logger.info(f"[CHECKOUT] Created payment intent {intent['id']} (amount={amount})")
        return PaymentIntentResult(
            payment_intent_id=intent["id"],
            client_secret=intent.get("client_secret"),
            amount=amount,
            customer_id=customer_id,
        )

    def verify_session(self, session_id: str) -> Dict[str, Any]:
        if not session_id:
            raise CheckoutValidationError("Session ID is required")
        remote = self.client.retrieve_checkout_session(session_id)
        return {
            "id": remote.get("id"),
            "payment_status": remote.get("payment_status"),
            "amount_total": remote.get("amount_total"),
            "currency": remote.get("currency"),
            "customer_email": remote.get("customer_email"),
            "customer_details": remote.get("customer_details"),
            "metadata": remote.get("metadata") or {},
        }
