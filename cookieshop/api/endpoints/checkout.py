import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.orm import Session

from cookieshop.api.deps import get_billing_client, raise_http_error
from cookieshop.billing_client import BillingClient
from cookieshop.db import get_session
from cookieshop.exceptions import CookieShopError
from cookieshop.services.checkout_service import CartItem, CheckoutSessionBuilder, CustomerInfo

router = APIRouter()

logger = logging.getLogger(__name__)


class CartItemIn(BaseModel):
    # 프론트엔드 장바구니는 id, API 클라이언트는 productId를 보냄
    productId: int = Field(validation_alias=AliasChoices("productId", "id"))
    quantity: int


class CheckoutIn(BaseModel):
    items: List[CartItemIn] = []
    customerEmail: Optional[str] = None
    customerName: Optional[str] = None


class CheckoutOut(BaseModel):
    sessionId: str
    url: Optional[str] = None
    amountTotal: int
    customerId: Optional[str] = None


class PaymentIntentOut(BaseModel):
    clientSecret: Optional[str] = None
    paymentIntentId: str
    amount: int


def _to_domain(payload: CheckoutIn) -> tuple[list[CartItem], CustomerInfo]:
    items = [CartItem(product_id=i.productId, quantity=i.quantity) for i in payload.items]
    return items, CustomerInfo(email=payload.customerEmail or "", name=payload.customerName or "")


@router.post("/checkout", response_model=CheckoutOut)
def create_checkout(
    payload: CheckoutIn,
    session: Session = Depends(get_session),
    client: BillingClient = Depends(get_billing_client),
):
    items, customer = _to_domain(payload)
    try:
        result = CheckoutSessionBuilder(session, client).create_checkout_session(items, customer)
    except CookieShopError as e:
        logger.error(f"[CHECKOUT] Failed to create checkout session: {e}")
        raise_http_error(e)
    return CheckoutOut(
        sessionId=result.session_id,
        url=result.url,
        amountTotal=result.amount_total,
        customerId=result.customer_id,
    )


@router.post("/create-payment-intent", response_model=PaymentIntentOut)
def create_payment_intent(
    payload: CheckoutIn,
    session: Session = Depends(get_session),
    client: BillingClient = Depends(get_billing_client),
):
    items, customer = _to_domain(payload)
    try:
        result = CheckoutSessionBuilder(session, client).create_payment_intent(items, customer)
    except CookieShopError as e:
        logger.error(f"[CHECKOUT] Payment intent creation error: {e}")
        raise_http_error(e)
    return PaymentIntentOut(
        clientSecret=result.client_secret,
        paymentIntentId=result.payment_intent_id,
        amount=result.amount,
    )


@router.get("/verify-session")
def verify_session(
    session_id: str | None = Query(default=None),
    session: Session = Depends(get_session),
    client: BillingClient = Depends(get_billing_client),
):
    try:
        return CheckoutSessionBuilder(session, client).verify_session(session_id or "")
    except CookieShopError as e:
        raise_http_error(e)
