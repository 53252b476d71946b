import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from cookieshop.billing_client import BillingClient
from cookieshop.exceptions import DomainValidationError
from cookieshop.services.customer_resolver import CustomerResolver
from cookieshop.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionResult:
    subscription_id: str
    customer_id: str
    plan: Dict[str, str]
    status: Optional[str]
    current_period_start: Optional[int]
    current_period_end: Optional[int]


class SubscriptionService:
    """쿠키 박스 정기 구독 (주간/격주/월간)"""

    def __init__(self, client: BillingClient, customers: CustomerResolver):
        self.client = client
        self.customers = customers

    def create_subscription(self, email: str, name: str, plan: str,
                            items: Optional[List[Dict[str, Any]]] = None) -> SubscriptionResult:
        if not email or not name or not plan or items is None:
            raise DomainValidationError("Missing required fields")
        selected = settings.get_subscription_plan(plan)
        if selected is None:
            raise DomainValidationError("Invalid subscription plan", {"plan": plan})

        customer_id = self.customers.resolve_customer(email, name)
        metadata = {"plan": plan, "customerName": name}
        items_json = json.dumps(items, separators=(",", ":"))
        if len(items_json) <= 500:
            metadata["items"] = items_json
        subscription = self.client.create_subscription(customer_id, selected["price_id"], metadata=metadata)
        logger.info(f"[SUBSCRIPTION] Created {subscription['id']} ({plan}) for {customer_id}")

        return SubscriptionResult(
            subscription_id=subscription["id"],
            customer_id=customer_id,
            plan=selected,
            status=subscription.get("status"),
            current_period_start=subscription.get("current_period_start") or subscription.get("start_date"),
            current_period_end=subscription.get("current_period_end"),
        )

    def list_customer_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        if not customer_id:
            raise DomainValidationError("Customer ID is required")
        return self.client.list_subscriptions(customer_id, status="active", limit=10)

    def list_customer_invoices(self, customer_id: str) -> List[Dict[str, Any]]:
        if not customer_id:
            raise DomainValidationError("Customer ID is required")
        return self.client.list_invoices(customer_id, limit=10)

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        if not subscription_id:
            raise DomainValidationError("Subscription ID is required")
        result = self.client.cancel_subscription(subscription_id)
        logger.info(f"[SUBSCRIPTION] Canceled {subscription_id}")
        return result
