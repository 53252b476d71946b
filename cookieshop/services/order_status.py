from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    DISPUTE_WON = "dispute_won"


# 허용되는 상태 전이 (역방향 전이 불가)
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELED}),
    OrderStatus.PAID: frozenset({
        OrderStatus.SHIPPED,
        OrderStatus.CANCELED,
        OrderStatus.REFUNDED,
        OrderStatus.DISPUTED,
    }),
    OrderStatus.SHIPPED: frozenset({
        OrderStatus.DELIVERED,
        OrderStatus.REFUNDED,
        OrderStatus.DISPUTED,
    }),
    OrderStatus.DISPUTED: frozenset({
        OrderStatus.REFUNDED,
        OrderStatus.PAID,
        OrderStatus.SHIPPED,
        OrderStatus.DISPUTE_WON,
    }),
}

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELED,
    OrderStatus.REFUNDED,
    OrderStatus.DISPUTE_WON,
})

# 매출 집계에 포함되는 상태
REVENUE_STATUSES: tuple[str, ...] = (
    OrderStatus.PAID.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
)


def can_transition(current: str | OrderStatus, target: str | OrderStatus) -> bool:
    """current → target 전이 가능 여부. 알 수 없는 상태 값은 False."""
    try:
        current = OrderStatus(current)
        target = OrderStatus(target)
    except ValueError:
        return False
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())
