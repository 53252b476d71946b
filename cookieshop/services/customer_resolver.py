import hashlib
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cookieshop.billing_client import BillingClient
from cookieshop.exceptions import DomainValidationError, NotFoundError
from cookieshop.models import Customer
from cookieshop.settings import settings

logger = logging.getLogger(__name__)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class CustomerResolver:
    """
    이메일 → Stripe customer id 매핑.

    조회 순서: 로컬 customers 테이블 → Stripe 이메일 검색(로컬 백필) → Stripe 신규 생성.
    customers.email unique 제약이 동시 생성 경합의 최종 판정자이며,
    제약 위반 시 먼저 저장된 행을 다시 읽어 그 결과를 따릅니다.
    """

    def __init__(self, session: Session, client: BillingClient):
        self.session = session
        self.client = client

    def get_customer_by_email(self, email: str) -> Optional[Customer]:
        return self.session.scalars(
            select(Customer).where(Customer.email == normalize_email(email)).limit(1)
        ).first()

    def get_customer_by_stripe_id(self, stripe_customer_id: str) -> Optional[Customer]:
        return self.session.scalars(
            select(Customer).where(Customer.stripe_customer_id == stripe_customer_id).limit(1)
        ).first()

    def _idempotency_key(self, email: str) -> str:
        digest = hashlib.sha256(email.encode("utf-8")).hexdigest()[:32]
        return f"customer-create-{digest}"

    def _insert_local(self, stripe_customer_id: str, email: str, name: Optional[str],
                      phone: Optional[str] = None, preferences: Optional[dict] = None) -> str:
        customer = Customer(
            stripe_customer_id=stripe_customer_id,
            email=email,
            name=name,
            phone=phone,
            preferences=preferences or None,
            total_orders=0,
            total_spent=Decimal("0"),
            is_active=True,
        )
        self.session.add(customer)
        try:
            self.session.commit()
        except IntegrityError:
            # 동시에 같은 이메일이 먼저 저장됨 → 그 행을 따른다
            self.session.rollback()
            winner = self.get_customer_by_email(email)
            if winner is None:
                raise
            logger.info(f"[CUSTOMER] Concurrent resolve for {email}, using {winner.stripe_customer_id}")
            return winner.stripe_customer_id
        return stripe_customer_id

    def resolve_customer(self, email: str, name: Optional[str] = None) -> str:
        email = normalize_email(email)
        if not email:
            raise DomainValidationError("Customer email is required")

        local = self.get_customer_by_email(email)
        if local is not None:
            return local.stripe_customer_id

        remote = self.client.find_customer_by_email(email)
        if remote:
            logger.info(f"[CUSTOMER] Backfilling existing Stripe customer {remote['id']} for {email}")
            return self._insert_local(
                remote["id"],
                email,
                remote.get("name") or name,
                phone=remote.get("phone"),
                preferences=dict(remote.get("metadata") or {}),
            )

        # 키는 이메일 기준이므로 요청 파라미터도 이메일로만 결정되어야 함 (이름은 생성 후 반영)
        created = self.client.create_customer(
            email=email,
            metadata={"source": settings.billing_metadata_source, "created_via": "checkout"},
            idempotency_key=self._idempotency_key(email),
        )
        logger.info(f"[CUSTOMER] Created Stripe customer {created['id']} for {email}")
        if name and not created.get("name"):
            created = self.client.update_customer(created["id"], name=name)
        return self._insert_local(created["id"], email, created.get("name") or name, phone=created.get("phone"))

    def ensure_customer(self, stripe_customer_id: Optional[str], email: Optional[str],
                        name: Optional[str] = None) -> Optional[Customer]:
        """
        웹훅에서 처음 보는 Stripe customer를 로컬에 등록합니다.
        호출자의 트랜잭션 안에서 flush만 하고 commit 하지 않습니다.
        """
        if not stripe_customer_id:
            return None

        existing = self.get_customer_by_stripe_id(stripe_customer_id)
        if existing is not None:
            return existing

        email = normalize_email(email)
        if not email:
            logger.warning(f"[CUSTOMER] Stripe customer {stripe_customer_id} has no email, not stored locally")
            return None

        by_email = self.get_customer_by_email(email)
        if by_email is not None:
            logger.warning(
                f"[CUSTOMER] {email} already mapped to {by_email.stripe_customer_id}, "
                f"ignoring {stripe_customer_id}"
            )
            return by_email

        customer = Customer(
            stripe_customer_id=stripe_customer_id,
            email=email,
            name=name,
            total_orders=0,
            total_spent=Decimal("0"),
            is_active=True,
        )
        self.session.add(customer)
        self.session.flush()
        logger.info(f"[CUSTOMER] Registered Stripe customer {stripe_customer_id} from webhook")
        return customer

    def update_customer_stats(self, stripe_customer_id: str, order_total: Decimal) -> None:
        """주문 1건 반영: total_orders + 1, total_spent + order_total (commit 하지 않음)"""
        self.session.execute(
            update(Customer)
            .where(Customer.stripe_customer_id == stripe_customer_id)
            .values(
                total_orders=Customer.total_orders + 1,
                total_spent=Customer.total_spent + order_total,
                last_order_at=datetime.now(timezone.utc),
            )
        )

    def revert_order_stats(self, stripe_customer_id: str, amount: Decimal) -> None:
        """집계된 주문이 취소된 경우: total_orders - 1, total_spent - amount (commit 하지 않음)"""
        self.session.execute(
            update(Customer)
            .where(Customer.stripe_customer_id == stripe_customer_id, Customer.total_orders > 0)
            .values(
                total_orders=Customer.total_orders - 1,
                total_spent=Customer.total_spent - amount,
            )
        )

    def record_refund(self, stripe_customer_id: str, amount: Decimal) -> None:
        """환불 금액만큼 누적 구매액 차감 (commit 하지 않음)"""
        if amount <= 0:
            return
        self.session.execute(
            update(Customer)
            .where(Customer.stripe_customer_id == stripe_customer_id)
            .values(total_spent=Customer.total_spent - amount)
        )

    def update_customer(
        self,
        stripe_customer_id: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> Customer:
        customer = self.get_customer_by_stripe_id(stripe_customer_id)
        if customer is None:
            raise NotFoundError(f"Customer {stripe_customer_id} not found", {"stripe_customer_id": stripe_customer_id})

        remote_fields: Dict[str, Any] = {}
        if name:
            remote_fields["name"] = name
        if phone:
            remote_fields["phone"] = phone
        if preferences:
            # Stripe metadata 값은 문자열만 허용
            remote_fields["metadata"] = {k: str(v) for k, v in preferences.items()}
        if remote_fields:
            self.client.update_customer(stripe_customer_id, **remote_fields)

        if name:
            customer.name = name
        if phone:
            customer.phone = phone
        if preferences:
            customer.preferences = preferences
        self.session.commit()
        return customer
