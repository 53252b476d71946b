from functools import lru_cache
from typing import NoReturn, Optional

from fastapi import HTTPException

from cookieshop.billing_client import BillingClient
from cookieshop.exceptions import (
    BillingConfigurationError,
    BillingProviderError,
    CookieShopError,
    DomainValidationError,
    InvalidStatusTransition,
    NotFoundError,
    StorageError,
    WebhookSignatureError,
)
from cookieshop.services.storage_service import StorageService


@lru_cache(maxsize=1)
def _default_billing_client() -> BillingClient:
    return BillingClient.from_settings()


def get_billing_client() -> BillingClient:
    """Stripe 클라이언트 의존성 (테스트에서는 dependency_overrides로 교체)"""
    try:
        return _default_billing_client()
    except BillingConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))


def get_optional_billing_client() -> Optional[BillingClient]:
    """Stripe 미설정이어도 동작해야 하는 엔드포인트용 (상품 생성 등)"""
    try:
        return _default_billing_client()
    except BillingConfigurationError:
        return None


@lru_cache(maxsize=1)
def get_storage_service() -> StorageService:
    return StorageService()


def raise_http_error(e: CookieShopError) -> NoReturn:
    """도메인 예외 → HTTPException"""
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=404, detail=str(e)) from e
    if isinstance(e, (DomainValidationError, WebhookSignatureError)):
        raise HTTPException(status_code=400, detail=str(e)) from e
    if isinstance(e, InvalidStatusTransition):
        raise HTTPException(status_code=409, detail=str(e)) from e
    if isinstance(e, BillingProviderError):
        raise HTTPException(status_code=502, detail=f"결제 서비스 오류: {e}") from e
    if isinstance(e, (BillingConfigurationError, StorageError)):
        raise HTTPException(status_code=500, detail=str(e)) from e
    raise HTTPException(status_code=500, detail=str(e)) from e
