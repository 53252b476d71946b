"""
Stripe 상품/가격 동기화 서비스.

로컬 products 테이블이 기준(source of truth)이며 Stripe 쪽 product / price를 맞춰 갑니다.
- Stripe price는 불변으로 취급: 금액이 바뀌면 새 price를 만들고 기존 price는 건드리지 않음
- 원격에서 삭제된 product는 없는 것으로 보고 새로 생성
- 상품 비활성화는 삭제가 아니라 active=false 업데이트 (과거 주문의 price 참조 보존)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from cookieshop.billing_client import BillingClient
from cookieshop.exceptions import BillingResourceMissing, ProductNotFoundError
from cookieshop.models import Product
from cookieshop.services.pricing import to_minor_units
from cookieshop.settings import settings

logger = logging.getLogger(__name__)

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_SKIPPED = "skipped"

SyncErrorCallback = Callable[[int, Exception], None]


@dataclass(frozen=True)
class ProductSnapshot:
    """스레드에서 원격 호출할 때 ORM 객체 대신 넘기는 상품 스냅샷"""

    id: int
    name: str
    description: str
    base_price: Decimal
    image_url: Optional[str]
    is_available: bool
    stripe_product_id: Optional[str]
    stripe_price_id: Optional[str]

    @classmethod
    def from_model(cls, product: Product) -> "ProductSnapshot":
        return cls(
            id=product.id,
            name=product.name,
            description=product.description or "",
            base_price=product.base_price,
            image_url=product.image_url,
            is_available=bool(product.is_available),
            stripe_product_id=product.stripe_product_id,
            stripe_price_id=product.stripe_price_id,
        )


@dataclass(frozen=True)
class ProductSyncResult:
    product_id: int
    stripe_product_id: str
    stripe_price_id: str
    action: str


class BillingSyncService:
    def __init__(
        self,
        session: Session,
        client: BillingClient,
        *,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        item_timeout: Optional[float] = None,
    ):
        self.session = session
        self.client = client
        self.batch_size = batch_size or settings.billing_sync_batch_size
        self.batch_delay = settings.billing_sync_batch_delay if batch_delay is None else batch_delay
        self.item_timeout = item_timeout or settings.billing_sync_item_timeout

    def _get_product(self, product_id: int) -> Product:
        product = self.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def _metadata(self, product_id: int) -> dict[str, str]:
        return {"productId": str(product_id), "source": settings.billing_metadata_source}

    # --- 원격 호출 (세션 접근 없음) ---

    def _create_remote(self, snapshot: ProductSnapshot, unit_amount: int) -> ProductSyncResult:
        remote_product = self.client.create_product(
            name=snapshot.name,
            description=snapshot.description,
            images=[snapshot.image_url] if snapshot.image_url else None,
            metadata=self._metadata(snapshot.id),
        )
        remote_price = self.client.create_price(
            remote_product["id"],
            unit_amount,
            metadata=self._metadata(snapshot.id),
        )
        return ProductSyncResult(snapshot.id, remote_product["id"], remote_price["id"], ACTION_CREATED)

    def _reconcile_remote(
        self,
        snapshot: ProductSnapshot,
        force_update: bool = False,
        skip_existing: bool = False,
    ) -> ProductSyncResult:
        unit_amount = to_minor_units(snapshot.base_price)

        if snapshot.stripe_product_id:
            if skip_existing and not force_update and snapshot.stripe_price_id:
                return ProductSyncResult(
                    snapshot.id, snapshot.stripe_product_id, snapshot.stripe_price_id, ACTION_SKIPPED
                )

            try:
                remote_product = self.client.retrieve_product(snapshot.stripe_product_id)
                if remote_product.get("deleted"):
                    raise BillingResourceMissing(f"Stripe product {snapshot.stripe_product_id} was deleted")

                action = ACTION_SKIPPED
                if force_update:
                    self.client.update_product(
                        snapshot.stripe_product_id,
                        name=snapshot.name,
                        description=snapshot.description,
                        active=snapshot.is_available,
                    )
                    action = ACTION_UPDATED

                price_id = snapshot.stripe_price_id
                current_amount = None
                if price_id:
                    try:
                        current_amount = self.client.retrieve_price(price_id).get("unit_amount")
                    except BillingResourceMissing:
                        logger.info(f"[SYNC:STRIPE] Price {price_id} missing for product {snapshot.id}")

                if current_amount != unit_amount:
                    new_price = self.client.create_price(
                        snapshot.stripe_product_id,
                        unit_amount,
                        metadata=self._metadata(snapshot.id),
                    )
                    price_id = new_price["id"]
                    action = ACTION_UPDATED

                return ProductSyncResult(snapshot.id, snapshot.stripe_product_id, price_id, action)
            except BillingResourceMissing:
                logger.warning(
                    f"[SYNC:STRIPE] Stripe product {snapshot.stripe_product_id} not found, "
                    f"creating new one for product {snapshot.id}"
                )

        return self._create_remote(snapshot, unit_amount)

    # --- DB 반영 ---

    def _apply_result(self, result: ProductSyncResult) -> None:
        if result.action == ACTION_SKIPPED:
            return
        product = self._get_product(result.product_id)
        product.stripe_product_id = result.stripe_product_id
        product.stripe_price_id = result.stripe_price_id
        product.stripe_last_synced_at = datetime.now(timezone.utc)

    # --- 공개 API ---

    def sync_product(
        self,
        product_id: int,
        force_update: bool = False,
        skip_existing: bool = False,
    ) -> ProductSyncResult:
        product = self._get_product(product_id)
        result = self._reconcile_remote(ProductSnapshot.from_model(product), force_update, skip_existing)
        self._apply_result(result)
        self.session.commit()
        logger.info(
            f"[SYNC:STRIPE] product={product_id} action={result.action} "
            f"stripe_product={result.stripe_product_id} price={result.stripe_price_id}"
        )
        return result

    async def _reconcile_with_timeout(
        self,
        snapshot: ProductSnapshot,
        force_update: bool,
        skip_existing: bool,
    ) -> ProductSyncResult:
        return await asyncio.wait_for(
            asyncio.to_thread(self._reconcile_remote, snapshot, force_update, skip_existing),
            timeout=self.item_timeout,
        )

    async def sync_all_products(
        self,
        force_update: bool = False,
        skip_existing: bool = False,
        on_error: Optional[SyncErrorCallback] = None,
    ) -> List[ProductSyncResult]:
        """
        판매 가능한 전체 상품을 batch_size 단위로 동시에 동기화합니다.

        한 상품의 실패는 같은 배치의 다른 상품에 영향을 주지 않으며, 성공한 결과만 반환합니다.
        실패 건은 on_error(product_id, exc)로 전달됩니다.
        """
        products = self.session.scalars(
            select(Product).where(Product.is_available.is_(True)).order_by(Product.id)
        ).all()
        snapshots = [ProductSnapshot.from_model(p) for p in products]
        logger.info(f"[SYNC:STRIPE] Syncing {len(snapshots)} products (batch_size={self.batch_size})")

        results: List[ProductSyncResult] = []
        for start in range(0, len(snapshots), self.batch_size):
            batch = snapshots[start:start + self.batch_size]
            outcomes = await asyncio.gather(
                *(self._reconcile_with_timeout(s, force_update, skip_existing) for s in batch),
                return_exceptions=True,
            )

            for snapshot, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"[SYNC:STRIPE] Failed to sync product {snapshot.id}: {outcome!r}")
                    if on_error:
                        on_error(snapshot.id, outcome)
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome
                self._apply_result(outcome)
                results.append(outcome)
            self.session.commit()

            if start + self.batch_size < len(snapshots) and self.batch_delay:
                await asyncio.sleep(self.batch_delay)

        logger.info(f"[SYNC:STRIPE] Synced {len(results)}/{len(snapshots)} products")
        return results

    def sync_unsynced_products(self, on_error: Optional[SyncErrorCallback] = None) -> List[ProductSyncResult]:
        """Stripe product id가 없는 판매 가능 상품만 순차 동기화"""
        product_ids = self.session.scalars(
            select(Product.id)
            .where(Product.is_available.is_(True), Product.stripe_product_id.is_(None))
            .order_by(Product.id)
        ).all()

        results: List[ProductSyncResult] = []
        for product_id in product_ids:
            try:
                results.append(self.sync_product(product_id))
            except Exception as e:
                self.session.rollback()
                logger.error(f"[SYNC:STRIPE] Failed to sync unsynced product {product_id}: {e}")
                if on_error:
                    on_error(product_id, e)
        return results

    def get_or_create_price_id(self, product_id: int) -> str:
        """
        체크아웃용 Stripe price id 반환.
        저장된 price가 존재하고 금액이 일치하면 그대로 쓰고, 아니면 sync_product로 맞춥니다.
        """
        product = self._get_product(product_id)
        if product.stripe_product_id and product.stripe_price_id:
            try:
                price = self.client.retrieve_price(product.stripe_price_id)
                if price.get("unit_amount") == to_minor_units(product.base_price):
                    return product.stripe_price_id
            except BillingResourceMissing:
                logger.info(f"[SYNC:STRIPE] Stored price for product {product_id} is gone, re-syncing")
        return self.sync_product(product_id).stripe_price_id

    def update_product(self, product_id: int) -> ProductSyncResult:
        """관리자 수정 사항(이름/설명/판매 여부/가격)을 Stripe에 반영"""
        product = self._get_product(product_id)
        if not product.stripe_product_id:
            return self.sync_product(product_id)
        return self.sync_product(product_id, force_update=True)

    def archive_product(self, product_id: int) -> bool:
        """Stripe product를 active=false로 전환. 동기화 이력이 없으면 건너뜀."""
        product = self._get_product(product_id)
        if not product.stripe_product_id:
            logger.info(f"[SYNC:STRIPE] Product {product_id} has no Stripe product, nothing to archive")
            return False
        try:
            self.client.update_product(product.stripe_product_id, active=False)
        except BillingResourceMissing:
            logger.warning(f"[SYNC:STRIPE] Stripe product {product.stripe_product_id} already gone")
            return False
        product.stripe_last_synced_at = datetime.now(timezone.utc)
        self.session.commit()
        logger.info(f"[SYNC:STRIPE] Archived Stripe product {product.stripe_product_id} (product={product_id})")
        return True

    def count_unsynced_products(self) -> int:
        return self.session.scalar(
            select(func.count(Product.id)).where(
                Product.is_available.is_(True),
                Product.stripe_product_id.is_(None),
            )
        ) or 0

    def get_sync_status(self) -> dict:
        total = self.session.scalar(
            select(func.count(Product.id)).where(Product.is_available.is_(True))
        ) or 0
        unsynced = self.count_unsynced_products()
        return {"total": total, "synced": total - unsynced, "unsynced": unsynced}
