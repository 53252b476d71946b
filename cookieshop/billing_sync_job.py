from __future__ import annotations

import asyncio
import logging
import traceback
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from cookieshop.billing_client import BillingClient
from cookieshop.models import SyncRun
from cookieshop.services.billing_sync import BillingSyncService, ProductSyncResult
from cookieshop.services.sync_runner import SyncRunner

logger = logging.getLogger(__name__)

CHANNEL_PRODUCTS = "products"
CHANNEL_UNSYNCED = "unsynced"
CHANNELS = (CHANNEL_PRODUCTS, CHANNEL_UNSYNCED)


@dataclass
class BillingSyncJobResult:
    run: Optional[SyncRun]
    results: list[ProductSyncResult] = field(default_factory=list)

    @property
    def skipped_run(self) -> bool:
        """같은 채널이 이미 실행 중이라 실행하지 않은 경우"""
        return self.run is None


def run_billing_sync_job(
    session: Session,
    client: BillingClient,
    channel: str = CHANNEL_PRODUCTS,
    force_update: bool = False,
    skip_existing: bool = False,
) -> BillingSyncJobResult:
    """
    상품 → Stripe 대량 동기화 잡.

    SyncRunner로 감싸 실행 이력과 상품별 실패를 기록합니다.
    이벤트 루프 밖(CLI, 동기 엔드포인트 스레드)에서 호출해야 합니다.
    """
    if channel not in CHANNELS:
        raise ValueError(f"Unknown sync channel: {channel}")

    service = BillingSyncService(session, client)
    runner = SyncRunner(session, vendor="stripe", channel=channel)
    job = BillingSyncJobResult(run=None)

    def record_failure(sync_run: SyncRun, product_id: int, exc: Exception) -> None:
        runner.log_error(
            sync_run,
            "product",
            str(exc) or type(exc).__name__,
            stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            entity_id=str(product_id),
        )
        # 이후 상품 실패 시 rollback 되어도 에러 기록은 남도록 즉시 commit
        session.commit()

    def execute(sync_run: SyncRun) -> None:
        on_error = lambda product_id, exc: record_failure(sync_run, product_id, exc)  # noqa: E731
        if channel == CHANNEL_UNSYNCED:
            job.results = service.sync_unsynced_products(on_error=on_error)
        else:
            job.results = asyncio.run(
                service.sync_all_products(
                    force_update=force_update,
                    skip_existing=skip_existing,
                    on_error=on_error,
                )
            )
        sync_run.read_count = len(job.results) + sync_run.error_count
        sync_run.write_count = sum(1 for r in job.results if r.action != "skipped")

    job.run = runner.run(
        execute,
        meta={"forceUpdate": force_update, "skipExisting": skip_existing},
    )
    return job
