import logging

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from cookieshop.api.deps import get_billing_client, raise_http_error
from cookieshop.billing_client import BillingClient
from cookieshop.db import get_session
from cookieshop.exceptions import CookieShopError
from cookieshop.services.event_reconciler import EventReconciler

router = APIRouter()

logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    session: Session = Depends(get_session),
    client: BillingClient = Depends(get_billing_client),
):
    """
    Stripe 웹훅 수신.
    서명 검증 실패는 400, 처리 중 예외는 500으로 응답하여 Stripe가 재전송하도록 합니다.
    """
    payload = await request.body()
    try:
        event = client.construct_event(payload, stripe_signature)
        outcome = await run_in_threadpool(EventReconciler(session, client).dispatch, event)
    except CookieShopError as e:
        raise_http_error(e)

    return {
        "received": True,
        "eventId": outcome.event_id,
        "type": outcome.event_type,
        "status": outcome.status,
        "orderId": outcome.order_id,
    }
