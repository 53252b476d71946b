import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import update
from sqlalchemy.orm import Session

from cookieshop.api.deps import get_billing_client, get_optional_billing_client, raise_http_error
from cookieshop.billing_client import BillingClient
from cookieshop.billing_sync_job import CHANNEL_PRODUCTS, CHANNEL_UNSYNCED, run_billing_sync_job
from cookieshop.db import get_session
from cookieshop.exceptions import BillingError, CookieShopError
from cookieshop.models import Product
from cookieshop.schemas.customer import CustomerResponse
from cookieshop.schemas.order import OrderResponse
from cookieshop.schemas.product import ProductResponse
from cookieshop.services.admin_reports import AdminReportService
from cookieshop.services.billing_sync import BillingSyncService
from cookieshop.services.customer_resolver import CustomerResolver
from cookieshop.services.payments_admin import PaymentsAdminService
from cookieshop.services.subscriptions import SubscriptionService

router = APIRouter()

logger = logging.getLogger(__name__)


class InventoryUpdateIn(BaseModel):
    isAvailable: bool


class InventoryBulkIn(BaseModel):
    productIds: List[int] = Field(min_length=1)
    isAvailable: bool


class SyncProductsIn(BaseModel):
    forceUpdate: bool = False
    skipExisting: bool = False


class OrderStatusIn(BaseModel):
    status: str
    note: Optional[str] = None


class RefundIn(BaseModel):
    paymentIntentId: str
    amount: Optional[int] = Field(default=None, gt=0)  # 센트, 없으면 전액
    reason: Optional[str] = None


class DisputeUpdateIn(BaseModel):
    evidence: Dict[str, str] = {}
    submit: bool = False


class CouponIn(BaseModel):
    duration: str = "once"
    percent_off: Optional[float] = None
    amount_off: Optional[int] = None
    duration_in_months: Optional[int] = None
    name: Optional[str] = None


class InvoiceIn(BaseModel):
    customerId: str
    amount: int = Field(gt=0)
    description: str = ""
    daysUntilDue: int = Field(default=30, ge=1, le=365)


class CustomerUpdateIn(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


# --- 대시보드 / 재고 ---

@router.get("/stats")
def get_stats(session: Session = Depends(get_session)):
    return AdminReportService(session).get_dashboard_stats()


@router.get("/inventory/low-stock")
def get_low_stock(
    days: int = Query(default=30, ge=1, le=365),
    session: Session = Depends(get_session),
):
    return {"productSales": AdminReportService(session).get_product_sales_since(days)}


@router.get("/inventory/revenue")
def get_revenue_report(session: Session = Depends(get_session)):
    return {"revenueByProduct": AdminReportService(session).get_revenue_by_product()}


@router.post("/inventory/bulk")
def bulk_update_inventory(
    payload: InventoryBulkIn,
    session: Session = Depends(get_session),
    client: BillingClient | None = Depends(get_optional_billing_client),
):
    """일괄 판매 여부 변경. Stripe 반영은 상품별로 처리하며 한 상품의 실패가 나머지를 막지 않습니다."""
    session.execute(
        update(Product)
        .where(Product.id.in_(payload.productIds))
        .values(is_available=payload.isAvailable)
    )
    session.commit()

    failed: List[Dict[str, Any]] = []
    if client is not None:
        sync = BillingSyncService(session, client)
        for product_id in payload.productIds:
            try:
                if payload.isAvailable:
                    sync.update_product(product_id)
                else:
                    sync.archive_product(product_id)
            except CookieShopError as e:
                session.rollback()
                logger.error(f"[SYNC:STRIPE] Bulk inventory sync failed for product {product_id}: {e}")
                failed.append({"productId": product_id, "error": str(e)})

    return {
        "message": f"{len(payload.productIds)} products updated",
        "productIds": payload.productIds,
        "syncFailed": failed,
    }


@router.post("/inventory/{product_id}", response_model=ProductResponse)
def update_inventory(
    product_id: int,
    payload: InventoryUpdateIn,
    session: Session = Depends(get_session),
    client: BillingClient | None = Depends(get_optional_billing_client),
):
    """판매 여부 변경 후 Stripe 반영 (판매 재개 → 동기화, 판매 중지 → 보관)"""
    product = session.get(Product, product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="상품을 찾을 수 없습니다.")
    product.is_available = payload.isAvailable
    session.commit()

    if client is not None:
        sync = BillingSyncService(session, client)
        try:
            if payload.isAvailable:
                sync.update_product(product_id)
            else:
                sync.archive_product(product_id)
        except BillingError as e:
            session.rollback()
            logger.error(f"[SYNC:STRIPE] Failed to sync product {product_id} with Stripe: {e}")

    session.refresh(product)
    return product


# --- Stripe 상품 동기화 ---

def _sync_response(job) -> Dict[str, Any]:
    if job.skipped_run:
        raise HTTPException(status_code=409, detail="이미 동기화가 실행 중입니다.")
    return {
        "runId": str(job.run.id),
        "status": job.run.status,
        "synced": len(job.results),
        "errors": job.run.error_count,
        "results": [
            {
                "productId": r.product_id,
                "stripeProductId": r.stripe_product_id,
                "stripePriceId": r.stripe_price_id,
                "action": r.action,
            }
            for r in job.results
        ],
    }


@router.post("/sync-products")
def sync_all_products(
    payload: SyncProductsIn = SyncProductsIn(),
    session: Session = Depends(get_session),
    client: BillingClient = Depends(get_billing_client),
):
    job = run_billing_sync_job(
        session,
        client,
        channel=CHANNEL_PRODUCTS,
        force_update=payload.forceUpdate,
        skip_existing=payload.skipExisting,
    )
    return _sync_response(job)


@router.post("/sync-products/unsynced")
def sync_unsynced_products(
    session: Session = Depends(get_session),
    client: BillingClient = Depends(get_billing_client),
):
    return _sync_response(run_billing_sync_job(session, client, channel=CHANNEL_UNSYNCED))


@router.get("/sync-products/status")
def get_sync_status(
    session: Session = Depends(get_session),
    client: BillingClient | None = Depends(get_optional_billing_client),
):
    return BillingSyncService(session, client).get_sync_status()


# --- 주문 ---

@router.patch("/orders/{order_id}/status", response_model=OrderResponse)
def update_order_status(order_id: int, payload: OrderStatusIn, session: Session = Depends(get_session)):
    try:
        return AdminReportService(session).update_order_status(order_id, payload.status, payload.note)
    except CookieShopError as e:
        raise_http_error(e)


# --- 환불 / 분쟁 / Stripe 대시보드 ---

@router.post("/refunds")
def process_refund(payload: RefundIn, client: BillingClient = Depends(get_billing_client)):
    try:
        refund = PaymentsAdminService(client).process_refund(
            payload.paymentIntentId,
            amount=payload.amount,
            reason=payload.reason,
        )
    except CookieShopError as e:
        raise_http_error(e)
    return {"refund": refund}


@router.post("/disputes/{dispute_id}")
def update_dispute(dispute_id: str, payload: DisputeUpdateIn, client: BillingClient = Depends(get_billing_client)):
    try:
        return {"dispute": PaymentsAdminService(client).update_dispute(dispute_id, payload.evidence, payload.submit)}
    except CookieShopError as e:
        raise_http_error(e)


@router.post("/billing/coupons")
def create_coupon(payload: CouponIn, client: BillingClient = Depends(get_billing_client)):
    try:
        return {"coupon": PaymentsAdminService(client).create_coupon(**payload.model_dump())}
    except CookieShopError as e:
        raise_http_error(e)


@router.post("/billing/invoices")
def create_invoice(payload: InvoiceIn, client: BillingClient = Depends(get_billing_client)):
    try:
        invoice = PaymentsAdminService(client).create_invoice(
            payload.customerId,
            payload.amount,
            payload.description,
            days_until_due=payload.daysUntilDue,
        )
    except CookieShopError as e:
        raise_http_error(e)
    return {"invoice": invoice}


@router.get("/billing/{kind}")
def list_billing_resources(
    kind: str,
    limit: int = Query(default=10, ge=1, le=100),
    client: BillingClient = Depends(get_billing_client),
):
    try:
        return {kind: PaymentsAdminService(client).list_remote(kind, limit=limit)}
    except CookieShopError as e:
        raise_http_error(e)


# --- 고객 ---

@router.get("/customers", response_model=List[CustomerResponse])
def search_customers(
    email: str | None = Query(default=None),
    name: str | None = Query(default=None),
    phone: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    session: Session = Depends(get_session),
):
    return AdminReportService(session).search_customers(email, name, phone, limit=limit, offset=offset)


@router.get("/customers/top", response_model=List[CustomerResponse])
def top_customers(limit: int = Query(default=10, ge=1, le=100), session: Session = Depends(get_session)):
    return AdminReportService(session).get_top_customers(limit)


@router.get("/customers/{stripe_customer_id}/analytics")
def customer_analytics(stripe_customer_id: str, session: Session = Depends(get_session)):
    try:
        analytics = AdminReportService(session).get_customer_analytics(stripe_customer_id)
    except CookieShopError as e:
        raise_http_error(e)
    analytics["customer"] = CustomerResponse.model_validate(analytics["customer"])
    analytics["recent_orders"] = [OrderResponse.model_validate(o) for o in analytics["recent_orders"]]
    return analytics


@router.get("/customers/{stripe_customer_id}/orders")
def customer_orders(stripe_customer_id: str, session: Session = Depends(get_session)):
    history = AdminReportService(session).get_customer_order_history(stripe_customer_id)
    customer = history["customer"]
    return {
        "customer": CustomerResponse.model_validate(customer) if customer else None,
        "orders": [OrderResponse.model_validate(o) for o in history["orders"]],
        "total_orders": history["total_orders"],
        "total_spent": history["total_spent"],
    }


@router.get("/customers/{stripe_customer_id}/invoices")
def customer_invoices(
    stripe_customer_id: str,
    session: Session = Depends(get_session),
    client: BillingClient = Depends(get_billing_client),
):
    service = SubscriptionService(client, CustomerResolver(session, client))
    try:
        return {"invoices": service.list_customer_invoices(stripe_customer_id)}
    except CookieShopError as e:
        raise_http_error(e)


@router.patch("/customers/{stripe_customer_id}", response_model=CustomerResponse)
def update_customer(
    stripe_customer_id: str,
    payload: CustomerUpdateIn,
    session: Session = Depends(get_session),
    client: BillingClient = Depends(get_billing_client),
):
    try:
        return CustomerResolver(session, client).update_customer(
            stripe_customer_id,
            name=payload.name,
            phone=payload.phone,
            preferences=payload.preferences,
        )
    except CookieShopError as e:
        raise_http_error(e)
