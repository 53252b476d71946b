"""
도메인 예외 정의

API 계층은 이 예외들을 HTTP 상태 코드로 변환합니다.
Stripe SDK 예외는 BillingClient 밖으로 나가지 않고 Billing* 예외로 변환됩니다.
"""
from typing import Any, Dict, Optional


class CookieShopError(Exception):
    """
    Base exception for all domain errors

    Attributes:
        message: 에러 메시지
        context: 추가 컨텍스트 정보
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class NotFoundError(CookieShopError):
    pass


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id: int):
        super().__init__(f"Product with ID {product_id} not found", {"product_id": product_id})
        self.product_id = product_id


class ProductUnitNotFoundError(NotFoundError):
    def __init__(self, unit_id: int):
        super().__init__(f"Product unit with ID {unit_id} not found", {"unit_id": unit_id})


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: int):
        super().__init__(f"Order with ID {order_id} not found", {"order_id": order_id})


class DomainValidationError(CookieShopError):
    """원격 호출 전에 동기적으로 거부되는 입력 오류"""


class CheckoutValidationError(DomainValidationError):
    pass


class InvalidStatusTransition(CookieShopError):
    def __init__(self, current: str, target: str):
        super().__init__(
            f"Order status cannot move from '{current}' to '{target}'",
            {"current": current, "target": target},
        )
        self.current = current
        self.target = target


class BillingError(CookieShopError):
    pass


class BillingConfigurationError(BillingError):
    pass


class BillingProviderError(BillingError):
    """
    결제 제공자(Stripe) 호출 실패

    Attributes:
        code: 제공자 에러 코드 (예: resource_missing)
        http_status: 제공자 응답 HTTP 상태
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.code = code
        self.http_status = http_status


class BillingResourceMissing(BillingProviderError):
    """원격 객체가 제공자 쪽에서 삭제되었거나 존재하지 않음"""


class WebhookSignatureError(BillingError):
    pass


class StorageError(CookieShopError):
    """이미지 저장소(Supabase Storage) 미설정 또는 업로드 실패"""
