"""
Stripe 웹훅 이벤트 → 로컬 주문/고객 상태 반영.

- 이벤트 타입별 핸들러는 @handles 데코레이터로 _HANDLERS 테이블에 등록
- billing_events(event_id unique) 원장 행을 효과와 같은 트랜잭션에 기록하여 재전송 시 no-op
- 주문이 없는 이벤트(unmatched)는 경고 로그 후 기록하고 정상 응답 (재시도 불필요)
- 핸들러 예외는 롤백 후 그대로 전파 → Stripe가 재전송
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cookieshop.billing_client import BillingClient
from cookieshop.exceptions import DomainValidationError
from cookieshop.models import BillingEvent, Order, OrderItem, OrderStatusHistory, Product
from cookieshop.services.customer_resolver import CustomerResolver, normalize_email
from cookieshop.services.order_status import OrderStatus, can_transition
from cookieshop.services.pricing import from_minor_units
from cookieshop.settings import settings

logger = logging.getLogger(__name__)

STATUS_APPLIED = "applied"
STATUS_NOOP = "noop"
STATUS_UNMATCHED = "unmatched"
STATUS_IGNORED = "ignored"
STATUS_LOGGED = "logged"
STATUS_DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ReconcileOutcome:
    event_id: str
    event_type: str
    status: str
    order_id: Optional[int] = None
    detail: Optional[str] = None


HandlerResult = Tuple[str, Optional[int], Optional[str]]
EventHandler = Callable[["EventReconciler", Dict[str, Any]], HandlerResult]

_HANDLERS: Dict[str, EventHandler] = {}


def handles(*event_types: str) -> Callable[[EventHandler], EventHandler]:
    """이벤트 타입 → 핸들러 등록"""

    def decorator(fn: EventHandler) -> EventHandler:
        for event_type in event_types:
            _HANDLERS[event_type] = fn
        return fn

    return decorator


def registered_event_types() -> List[str]:
    return sorted(_HANDLERS)


class EventReconciler:
    def __init__(
        self,
        session: Session,
        client: BillingClient,
        customers: Optional[CustomerResolver] = None,
        dispute_won_status: Optional[str] = None,
    ):
        self.session = session
        self.client = client
        self.customers = customers or CustomerResolver(session, client)
        self.dispute_won_status = OrderStatus(dispute_won_status or settings.dispute_won_status)

    # --- 공통 ---

    def _already_processed(self, event_id: str) -> bool:
        return self.session.scalar(
            select(BillingEvent.id).where(BillingEvent.event_id == event_id)
        ) is not None

    def _find_order_by_payment_intent(self, payment_intent_id: Optional[str]) -> Optional[Order]:
        if not payment_intent_id:
            return None
        return self.session.scalars(
            select(Order).where(Order.stripe_payment_intent_id == payment_intent_id).limit(1)
        ).first()

    def _find_order_by_checkout_session(self, session_id: Optional[str]) -> Optional[Order]:
        if not session_id:
            return None
        return self.session.scalars(
            select(Order).where(Order.stripe_checkout_session_id == session_id).limit(1)
        ).first()

    def _record_history(self, order: Order, from_status: Optional[str], to_status: str, note: str) -> None:
        self.session.add(
            OrderStatusHistory(
                order_id=order.id,
                from_status=from_status,
                to_status=to_status,
                source="webhook",
                note=note,
            )
        )

    def _transition(self, order: Order, target: OrderStatus, note: str) -> bool:
        current = order.status
        if current == target.value:
            return False
        if not can_transition(current, target):
            logger.info(f"[WEBHOOK] Order {order.id}: {current} → {target.value} not allowed, keeping {current}")
            return False
        order.status = target.value
        self._record_history(order, current, target.value, note)
        logger.info(f"[WEBHOOK] Order {order.id}: {current} → {target.value} ({note})")
        return True

    def _apply_refund_amount(self, order: Order, refunded_total: Decimal) -> Decimal:
        """누적 환불액 기준으로 아직 반영하지 않은 차액만 고객 누적 구매액에서 차감"""
        delta = refunded_total - (order.refunded_amount or Decimal("0"))
        if delta <= 0:
            return Decimal("0")
        order.refunded_amount = refunded_total
        if order.stripe_customer_id:
            self.customers.record_refund(order.stripe_customer_id, delta)
        return delta

    # --- dispatch ---

    def dispatch(self, event: Dict[str, Any]) -> ReconcileOutcome:
        event_id = event.get("id")
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object")
        if not event_id or not event_type or not isinstance(obj, dict):
            raise DomainValidationError("Malformed billing event")

        if self._already_processed(event_id):
            logger.info(f"[WEBHOOK] Event {event_id} ({event_type}) already processed")
            return ReconcileOutcome(event_id, event_type, STATUS_DUPLICATE)

        handler = _HANDLERS.get(event_type)
        try:
            if handler is None:
                logger.info(f"[WEBHOOK] Unhandled event type: {event_type}")
                status, order_id, detail = STATUS_IGNORED, None, None
            else:
                status, order_id, detail = handler(self, obj)

            self.session.add(
                BillingEvent(event_id=event_id, event_type=event_type, status=status, payload=event)
            )
            self.session.commit()
        except IntegrityError:
            # 동일 이벤트가 동시에 처리되어 원장 행이 먼저 기록됨
            self.session.rollback()
            if self._already_processed(event_id):
                logger.info(f"[WEBHOOK] Event {event_id} processed concurrently, skipping")
                return ReconcileOutcome(event_id, event_type, STATUS_DUPLICATE)
            raise
        except Exception:
            self.session.rollback()
            logger.exception(f"[WEBHOOK] Error handling event {event_id} ({event_type})")
            raise

        if status == STATUS_UNMATCHED:
            logger.warning(f"[WEBHOOK] {event_type} {event_id}: {detail}")
        return ReconcileOutcome(event_id, event_type, status, order_id, detail)

    # --- checkout ---

    def _items_from_metadata(self, metadata: Dict[str, Any]) -> List[Tuple[int, int]]:
        raw = metadata.get("items")
        if not raw:
            return []
        try:
            entries = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"[WEBHOOK] Could not parse cart metadata: {raw!r}")
            return []

        items: List[Tuple[int, int]] = []
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict):
                continue
            try:
                product_id = int(entry.get("id") or entry.get("productId") or 0)
                quantity = int(entry.get("quantity") or 0)
            except (TypeError, ValueError):
                continue
            items.append((product_id, quantity))
        return items

    def _items_from_line_items(self, session_id: str) -> List[Tuple[int, int]]:
        items: List[Tuple[int, int]] = []
        for line in self.client.list_checkout_line_items(session_id):
            price = line.get("price") or {}
            product_id = 0
            raw_id = (price.get("metadata") or {}).get("productId")
            if raw_id and str(raw_id).isdigit():
                product_id = int(raw_id)
            else:
                remote_product = price.get("product")
                if isinstance(remote_product, dict):
                    remote_product = remote_product.get("id")
                if remote_product:
                    product_id = self.session.scalar(
                        select(Product.id).where(Product.stripe_product_id == remote_product)
                    ) or 0
            items.append((product_id, int(line.get("quantity") or 0)))
        return items

    def _merge_valid_items(self, items: List[Tuple[int, int]]) -> Dict[int, int]:
        merged: Dict[int, int] = {}
        for product_id, quantity in items:
            if product_id <= 0 or quantity <= 0:
                continue
            if self.session.get(Product, product_id) is None:
                logger.warning(f"[WEBHOOK] Skipping unknown product {product_id} in checkout")
                continue
            merged[product_id] = merged.get(product_id, 0) + quantity
        return merged

    @handles("checkout.session.completed")
    def _on_checkout_completed(self, checkout: Dict[str, Any]) -> HandlerResult:
        if checkout.get("mode") == "subscription":
            return STATUS_IGNORED, None, "subscription checkout"

        session_id = checkout.get("id")
        payment_intent_id = checkout.get("payment_intent")
        if isinstance(payment_intent_id, dict):
            payment_intent_id = payment_intent_id.get("id")

        existing = self._find_order_by_payment_intent(payment_intent_id) or self._find_order_by_checkout_session(session_id)
        if existing is not None:
            logger.info(f"[WEBHOOK] Order already exists for checkout {session_id} (order={existing.id})")
            return STATUS_NOOP, existing.id, "order already exists"

        metadata = checkout.get("metadata") or {}
        details = checkout.get("customer_details") or {}
        name = metadata.get("customerName") or details.get("name") or ""
        email = normalize_email(checkout.get("customer_email") or details.get("email"))
        customer_id = checkout.get("customer") or metadata.get("customerId")
        total = from_minor_units(checkout.get("amount_total"))

        if customer_id:
            self.customers.ensure_customer(customer_id, email, name or None)

        status = OrderStatus.PAID
        if checkout.get("payment_status") == "unpaid":
            # 지연 결제 수단: payment_intent.succeeded에서 paid로 전환
            status = OrderStatus.PENDING

        order = Order(
            customer_name=name,
            customer_email=email,
            total_price=total,
            stripe_payment_intent_id=payment_intent_id,
            stripe_checkout_session_id=session_id,
            stripe_customer_id=customer_id,
            status=status.value,
            refunded_amount=Decimal("0"),
        )
        self.session.add(order)
        self.session.flush()

        raw_items = self._items_from_metadata(metadata) or self._items_from_line_items(session_id)
        for product_id, quantity in self._merge_valid_items(raw_items).items():
            self.session.add(OrderItem(order_id=order.id, product_id=product_id, quantity=quantity))

        self._record_history(order, None, status.value, "checkout.session.completed")
        # 고객 누적 집계는 결제가 확정된 주문만 반영 (pending은 payment_intent.succeeded에서)
        if customer_id and status == OrderStatus.PAID:
            self.customers.update_customer_stats(customer_id, total)

        logger.info(f"[WEBHOOK] Order created: {order.id} (checkout={session_id}, total={total})")
        return STATUS_APPLIED, order.id, None

    # --- payment intents ---

    @handles("payment_intent.succeeded")
    def _on_payment_succeeded(self, intent: Dict[str, Any]) -> HandlerResult:
        order = self._find_order_by_payment_intent(intent.get("id"))
        if order is None:
            return STATUS_UNMATCHED, None, f"no order for payment intent {intent.get('id')}"
        # pending에서만 paid로 전환 (이미 진행된 주문은 되돌리지 않음)
        if order.status != OrderStatus.PENDING.value:
            return STATUS_NOOP, order.id, None
        self._transition(order, OrderStatus.PAID, "payment_intent.succeeded")
        if order.stripe_customer_id:
            self.customers.update_customer_stats(order.stripe_customer_id, order.total_price)
        return STATUS_APPLIED, order.id, None

    @handles("payment_intent.payment_failed")
    def _on_payment_failed(self, intent: Dict[str, Any]) -> HandlerResult:
        order = self._find_order_by_payment_intent(intent.get("id"))
        if order is None:
            return STATUS_UNMATCHED, None, f"no order for payment intent {intent.get('id')}"
        if intent.get("status") == "succeeded":
            return STATUS_NOOP, order.id, "payment intent already succeeded"

        previous = order.status
        if not self._transition(order, OrderStatus.CANCELED, "payment_intent.payment_failed"):
            return STATUS_NOOP, order.id, None
        # pending 주문은 집계 전이므로 되돌릴 것이 없음
        if previous != OrderStatus.PENDING.value and order.stripe_customer_id:
            remaining = order.total_price - (order.refunded_amount or Decimal("0"))
            self.customers.revert_order_stats(order.stripe_customer_id, remaining)
        return STATUS_APPLIED, order.id, None

    # --- refunds / disputes ---

    @handles("charge.refunded")
    def _on_charge_refunded(self, charge: Dict[str, Any]) -> HandlerResult:
        order = self._find_order_by_payment_intent(charge.get("payment_intent"))
        if order is None:
            return STATUS_UNMATCHED, None, f"no order for payment intent {charge.get('payment_intent')}"

        delta = self._apply_refund_amount(order, from_minor_units(charge.get("amount_refunded")))
        changed = self._transition(order, OrderStatus.REFUNDED, "charge.refunded")
        if delta > 0:
            logger.info(f"[WEBHOOK] Order {order.id}: refunded {delta} (total refunded {order.refunded_amount})")
        return (STATUS_APPLIED if changed or delta > 0 else STATUS_NOOP), order.id, None

    @handles("charge.dispute.created")
    def _on_dispute_created(self, dispute: Dict[str, Any]) -> HandlerResult:
        order = self._find_order_by_payment_intent(dispute.get("payment_intent"))
        if order is None:
            return STATUS_UNMATCHED, None, f"no order for payment intent {dispute.get('payment_intent')}"
        changed = self._transition(order, OrderStatus.DISPUTED, "charge.dispute.created")
        return (STATUS_APPLIED if changed else STATUS_NOOP), order.id, None

    def _status_before_dispute(self, order: Order) -> OrderStatus:
        """분쟁 승소 시 복귀할 상태 (배송된 주문은 shipped 유지)"""
        previous = self.session.scalar(
            select(OrderStatusHistory.from_status)
            .where(
                OrderStatusHistory.order_id == order.id,
                OrderStatusHistory.to_status == OrderStatus.DISPUTED.value,
            )
            .order_by(OrderStatusHistory.created_at.desc())
            .limit(1)
        )
        if previous == OrderStatus.SHIPPED.value:
            return OrderStatus.SHIPPED
        return OrderStatus.PAID

    @handles("charge.dispute.closed")
    def _on_dispute_closed(self, dispute: Dict[str, Any]) -> HandlerResult:
        order = self._find_order_by_payment_intent(dispute.get("payment_intent"))
        if order is None:
            return STATUS_UNMATCHED, None, f"no order for payment intent {dispute.get('payment_intent')}"

        outcome = dispute.get("status")
        if outcome in ("won", "warning_closed"):
            target = self.dispute_won_status
            if target == OrderStatus.PAID:
                target = self._status_before_dispute(order)
            changed = self._transition(order, target, f"dispute {outcome}")
        elif outcome == "lost":
            self._apply_refund_amount(
                order,
                max(order.refunded_amount or Decimal("0"), from_minor_units(dispute.get("amount"))),
            )
            changed = self._transition(order, OrderStatus.REFUNDED, "dispute lost")
        else:
            return STATUS_NOOP, order.id, f"dispute status {outcome}"
        return (STATUS_APPLIED if changed else STATUS_NOOP), order.id, None

    # --- subscriptions / invoices (기록만) ---

    @handles(
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
    )
    def _on_billing_lifecycle(self, obj: Dict[str, Any]) -> HandlerResult:
        logger.info(f"[WEBHOOK] {obj.get('object', 'object')} {obj.get('id')} status={obj.get('status')}")
        return STATUS_LOGGED, None, None
