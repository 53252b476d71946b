import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from cookieshop.api.deps import get_billing_client, raise_http_error
from cookieshop.billing_client import BillingClient
from cookieshop.db import get_session
from cookieshop.exceptions import CookieShopError
from cookieshop.services.customer_resolver import CustomerResolver
from cookieshop.services.subscriptions import SubscriptionService

router = APIRouter()

logger = logging.getLogger(__name__)


class SubscriptionIn(BaseModel):
    customerEmail: Optional[str] = None
    customerName: Optional[str] = None
    plan: Optional[str] = None
    items: Optional[List[Dict[str, Any]]] = None


def _service(session: Session, client: BillingClient) -> SubscriptionService:
    return SubscriptionService(client, CustomerResolver(session, client))


@router.post("")
def create_subscription(
    payload: SubscriptionIn,
    session: Session = Depends(get_session),
    client: BillingClient = Depends(get_billing_client),
):
    try:
        result = _service(session, client).create_subscription(
            payload.customerEmail or "",
            payload.customerName or "",
            payload.plan or "",
            payload.items,
        )
    except CookieShopError as e:
        raise_http_error(e)
    return {
        "subscriptionId": result.subscription_id,
        "customerId": result.customer_id,
        "plan": result.plan,
        "status": result.status,
        "current_period_start": result.current_period_start,
        "current_period_end": result.current_period_end,
    }


@router.get("")
def list_subscriptions(
    customer_id: str | None = Query(default=None, alias="customerId"),
    session: Session = Depends(get_session),
    client: BillingClient = Depends(get_billing_client),
):
    try:
        return {"subscriptions": _service(session, client).list_customer_subscriptions(customer_id or "")}
    except CookieShopError as e:
        raise_http_error(e)


@router.delete("")
def cancel_subscription(
    subscription_id: str | None = Query(default=None, alias="subscriptionId"),
    session: Session = Depends(get_session),
    client: BillingClient = Depends(get_billing_client),
):
    try:
        result = _service(session, client).cancel_subscription(subscription_id or "")
    except CookieShopError as e:
        raise_http_error(e)
    return {"message": "Subscription canceled successfully", "subscription": result}
