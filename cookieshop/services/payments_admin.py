import logging
from typing import Any, Dict, List, Optional

from cookieshop.billing_client import LISTABLE_RESOURCES, BillingClient
from cookieshop.exceptions import DomainValidationError

logger = logging.getLogger(__name__)

REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})
COUPON_DURATIONS = frozenset({"once", "repeating", "forever"})
REMOTE_KINDS = frozenset(LISTABLE_RESOURCES) | {"balance"}


class PaymentsAdminService:
    """
    Stripe 대시보드 관리 작업 (환불, 분쟁 대응, 쿠폰/인보이스, 원격 목록 조회).

    환불은 Stripe에만 요청합니다. 주문 상태와 고객 누적 구매액은
    charge.refunded 웹훅이 반영하므로 여기서 로컬 값을 바꾸지 않습니다.
    """

    def __init__(self, client: BillingClient):
        self.client = client

    def process_refund(
        self,
        payment_intent_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not payment_intent_id:
            raise DomainValidationError("Payment intent ID is required")
        if amount is not None and amount <= 0:
            raise DomainValidationError("Refund amount must be positive")
        if reason and reason not in REFUND_REASONS:
            # 허용되지 않은 사유는 Stripe에 전달하지 않음
            logger.info(f"[REFUND] Ignoring unsupported refund reason: {reason}")
            reason = None

        refund = self.client.create_refund(payment_intent_id, amount=amount, reason=reason)
        logger.info(f"[REFUND] Created refund {refund.get('id')} for {payment_intent_id} (amount={amount})")
        return refund

    def update_dispute(self, dispute_id: str, evidence: Optional[Dict[str, str]] = None,
                       submit: bool = False) -> Dict[str, Any]:
        if not dispute_id:
            raise DomainValidationError("Dispute ID is required")
        dispute = self.client.update_dispute(dispute_id, evidence=evidence or {}, submit=submit)
        logger.info(f"[DISPUTE] Updated dispute {dispute_id} (submit={submit})")
        return dispute

    def list_remote(self, kind: str, limit: int = 10) -> List[Dict[str, Any]]:
        if kind not in REMOTE_KINDS:
            raise DomainValidationError(f"Invalid billing resource: {kind}")
        return self.client.list_resources(kind, limit=limit)

    def create_coupon(
        self,
        duration: str = "once",
        percent_off: Optional[float] = None,
        amount_off: Optional[int] = None,
        duration_in_months: Optional[int] = None,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        if duration not in COUPON_DURATIONS:
            raise DomainValidationError(f"Invalid coupon duration: {duration}")

        params: Dict[str, Any] = {"duration": duration}
        if percent_off:
            if not 0 < percent_off <= 100:
                raise DomainValidationError("percent_off must be between 0 and 100")
            params["percent_off"] = percent_off
        elif amount_off:
            if amount_off <= 0:
                raise DomainValidationError("amount_off must be positive")
            params["amount_off"] = amount_off
            params["currency"] = self.client.currency
        else:
            raise DomainValidationError("Either percent_off or amount_off is required")

        if duration == "repeating":
            if not duration_in_months:
                raise DomainValidationError("duration_in_months is required for repeating coupons")
            params["duration_in_months"] = duration_in_months
        if name:
            params["name"] = name
        return self.client.create_coupon(**params)

    def create_invoice(self, customer_id: str, amount: int, description: str,
                       days_until_due: int = 30) -> Dict[str, Any]:
        if not customer_id:
            raise DomainValidationError("Customer ID is required")
        if amount <= 0:
            raise DomainValidationError("Invoice amount must be positive")
        return self.client.create_invoice(customer_id, amount, description, days_until_due=days_until_due)
