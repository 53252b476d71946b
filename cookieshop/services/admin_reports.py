"""
Admin Report Service

관리자 대시보드용 집계 조회와 주문 수동 처리(배송/배송완료/취소)를 담당합니다.
집계는 조회 시점의 DB 상태만 반영합니다.
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from cookieshop.exceptions import (
    DomainValidationError,
    InvalidStatusTransition,
    NotFoundError,
    OrderNotFoundError,
)
from cookieshop.models import Customer, Order, OrderItem, OrderStatusHistory, Product
from cookieshop.services.order_status import REVENUE_STATUSES, OrderStatus, can_transition

logger = logging.getLogger(__name__)

# 관리자가 직접 지정할 수 있는 상태 (환불/분쟁은 Stripe 이벤트로만 반영)
MANUAL_STATUSES = frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELED})


class AdminReportService:
    def __init__(self, db: Session):
        self.db = db

    def get_dashboard_stats(self) -> Dict[str, Any]:
        revenue = self.db.scalar(
            select(func.coalesce(func.sum(Order.total_price), 0)).where(Order.status.in_(REVENUE_STATUSES))
        )
        revenue = Decimal(str(revenue or 0))
        paid_orders = self.db.scalar(
            select(func.count(Order.id)).where(Order.status.in_(REVENUE_STATUSES))
        ) or 0
        total_orders = self.db.scalar(select(func.count(Order.id))) or 0
        total_customers = self.db.scalar(select(func.count(Customer.id))) or 0
        total_products = self.db.scalar(select(func.count(Product.id))) or 0
        featured_products = self.db.scalar(
            select(func.count(Product.id)).where(Product.is_featured.is_(True))
        ) or 0

        recent_orders = self.db.scalars(
            select(Order).order_by(desc(Order.created_at), desc(Order.id)).limit(10)
        ).all()

        sold = func.sum(OrderItem.quantity).label("total_sold")
        top_rows = self.db.execute(
            select(Product.id, Product.name, Product.base_price, sold)
            .join(OrderItem, OrderItem.product_id == Product.id)
            .join(Order, Order.id == OrderItem.order_id)
            .where(Order.status.in_(REVENUE_STATUSES))
            .group_by(Product.id, Product.name, Product.base_price)
            .order_by(desc(sold), Product.id)
            .limit(5)
        ).all()

        average = (revenue / paid_orders).quantize(Decimal("0.01")) if paid_orders else Decimal("0.00")
        return {
            "total_revenue": revenue.quantize(Decimal("0.01")),
            "total_orders": total_orders,
            "total_customers": total_customers,
            "total_products": total_products,
            "average_order_value": average,
            "featured_products": featured_products,
            "recent_orders": [
                {
                    "id": o.id,
                    "customer_name": o.customer_name,
                    "total_price": o.total_price,
                    "status": o.status,
                    "created_at": o.created_at,
                }
                for o in recent_orders
            ],
            "top_products": [
                {
                    "id": row.id,
                    "name": row.name,
                    "total_sold": int(row.total_sold or 0),
                    "revenue": (Decimal(str(row.base_price)) * int(row.total_sold or 0)).quantize(Decimal("0.01")),
                }
                for row in top_rows
            ],
        }

    def list_orders(self, status: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[Order]:
        stmt = select(Order).order_by(desc(Order.created_at), desc(Order.id))
        if status:
            stmt = stmt.where(Order.status == status)
        return list(self.db.scalars(stmt.limit(limit).offset(offset)).all())

    def get_product_sales_since(self, days: int = 30) -> List[Dict[str, Any]]:
        """최근 N일간 결제 완료 주문의 상품별 판매 수량 (재고 보충 참고용)"""
        since = datetime.now(timezone.utc) - timedelta(days=days)
        total_sold = func.sum(OrderItem.quantity).label("total_sold")
        rows = self.db.execute(
            select(OrderItem.product_id, Product.name, total_sold)
            .join(Order, Order.id == OrderItem.order_id)
            .join(Product, Product.id == OrderItem.product_id)
            .where(Order.created_at >= since, Order.status.in_(REVENUE_STATUSES))
            .group_by(OrderItem.product_id, Product.name)
            .order_by(desc(total_sold))
        ).all()
        return [
            {"product_id": r.product_id, "product_name": r.name, "total_sold": int(r.total_sold or 0)}
            for r in rows
        ]

    def get_revenue_by_product(self) -> List[Dict[str, Any]]:
        quantity = func.sum(OrderItem.quantity).label("quantity")
        order_count = func.count(OrderItem.order_id).label("order_count")
        rows = self.db.execute(
            select(Product.id, Product.name, Product.base_price, quantity, order_count)
            .join(OrderItem, OrderItem.product_id == Product.id)
            .join(Order, Order.id == OrderItem.order_id)
            .where(Order.status.in_(REVENUE_STATUSES))
            .group_by(Product.id, Product.name, Product.base_price)
            .order_by(Product.id)
        ).all()
        return [
            {
                "product_id": r.id,
                "product_name": r.name,
                "total_quantity": int(r.quantity or 0),
                "total_orders": int(r.order_count or 0),
                # 주문 시점 단가는 저장하지 않으므로 현재 base_price 기준 추정치
                "total_revenue": (Decimal(str(r.base_price)) * int(r.quantity or 0)).quantize(Decimal("0.01")),
            }
            for r in rows
        ]

    # --- 고객 ---

    def _get_customer(self, stripe_customer_id: str) -> Customer:
        customer = self.db.scalars(
            select(Customer).where(Customer.stripe_customer_id == stripe_customer_id)
        ).first()
        if customer is None:
            raise NotFoundError("Customer not found", {"stripe_customer_id": stripe_customer_id})
        return customer

    def _customer_orders(self, stripe_customer_id: str) -> List[Order]:
        return list(
            self.db.scalars(
                select(Order)
                .where(Order.stripe_customer_id == stripe_customer_id)
                .order_by(desc(Order.created_at), desc(Order.id))
            ).all()
        )

    def get_customer_order_history(self, stripe_customer_id: str) -> Dict[str, Any]:
        customer = self.db.scalars(
            select(Customer).where(Customer.stripe_customer_id == stripe_customer_id)
        ).first()
        orders = self._customer_orders(stripe_customer_id)
        return {
            "customer": customer,
            "orders": orders,
            "total_orders": len(orders),
            "total_spent": sum((o.total_price for o in orders), Decimal("0")),
        }

    @staticmethod
    def calculate_order_frequency(orders: List[Order]) -> Optional[int]:
        """주문 간 평균 간격(일). 주문이 2건 미만이면 None. orders는 최신순."""
        if len(orders) < 2:
            return None
        span = orders[0].created_at - orders[-1].created_at
        return round(span.total_seconds() / 86400 / (len(orders) - 1))

    def get_customer_analytics(self, stripe_customer_id: str) -> Dict[str, Any]:
        customer = self._get_customer(stripe_customer_id)
        orders = self._customer_orders(stripe_customer_id)
        total_spent = Decimal(str(customer.total_spent or 0))
        return {
            "customer": customer,
            "total_orders": len(orders),
            "total_spent": total_spent,
            "average_order_value": (total_spent / len(orders)).quantize(Decimal("0.01")) if orders else Decimal("0.00"),
            "first_order_date": orders[-1].created_at if orders else None,
            "last_order_date": orders[0].created_at if orders else None,
            "order_frequency_days": self.calculate_order_frequency(orders),
            "recent_orders": orders[:5],
        }

    def get_top_customers(self, limit: int = 10) -> List[Customer]:
        return list(
            self.db.scalars(
                select(Customer).order_by(desc(Customer.total_spent), Customer.id).limit(limit)
            ).all()
        )

    def search_customers(
        self,
        email: Optional[str] = None,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Customer]:
        stmt = select(Customer)
        if email:
            stmt = stmt.where(Customer.email.ilike(f"%{email.strip()}%"))
        if name:
            stmt = stmt.where(Customer.name.ilike(f"%{name.strip()}%"))
        if phone:
            stmt = stmt.where(Customer.phone.ilike(f"%{phone.strip()}%"))
        stmt = stmt.order_by(Customer.last_order_at.desc().nulls_last(), Customer.id).limit(limit).offset(offset)
        return list(self.db.scalars(stmt).all())

    # --- 주문 수동 처리 ---

    def update_order_status(self, order_id: int, status: str, note: Optional[str] = None) -> Order:
        try:
            target = OrderStatus(status)
        except ValueError:
            raise DomainValidationError(f"Unknown order status: {status}")
        if target not in MANUAL_STATUSES:
            raise DomainValidationError(f"Order status '{status}' cannot be set manually")

        order = self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        # 분쟁 중인 주문은 charge.dispute.closed 웹훅으로만 해소
        if order.status == OrderStatus.DISPUTED.value or not can_transition(order.status, target):
            raise InvalidStatusTransition(order.status, target.value)

        previous = order.status
        order.status = target.value
        self.db.add(
            OrderStatusHistory(
                order_id=order.id,
                from_status=previous,
                to_status=target.value,
                source="admin",
                note=note,
            )
        )
        self.db.commit()
        logger.info(f"[ADMIN] Order {order_id}: {previous} → {target.value}")
        return order
