import hashlib
import logging
import time
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import Connection, text
from sqlalchemy.orm import Session

from cookieshop.models import SyncRun, SyncRunError

logger = logging.getLogger(__name__)


class SyncRunner:
    """
    대량 동기화 잡 러너.
    - PostgreSQL advisory lock으로 같은 vendor:channel 동시 실행 방지 (다른 DB에서는 생략)
    - 실행 이력(SyncRun) 및 상품별 에러(SyncRunError) 기록
    """

    def __init__(self, session: Session, vendor: str, channel: str):
        self.session = session
        self.vendor = vendor
        self.channel = channel
        self.run_id: Optional[uuid.UUID] = None
        self._lock_conn: Optional[Connection] = None
        # 안정적인 64비트 signed 정수 락 ID (Postgres bigint 호환)
        self.lock_id = int(hashlib.md5(f"{vendor}:{channel}".encode()).hexdigest()[:16], 16)
        if self.lock_id > 0x7FFFFFFFFFFFFFFF:
            self.lock_id -= 0x10000000000000000

    def _uses_advisory_lock(self) -> bool:
        return self.session.get_bind().dialect.name == "postgresql"

    def _acquire_lock(self) -> bool:
        if not self._uses_advisory_lock():
            return True
        # 세션 레벨 락이므로 작업 중 commit과 무관하게 유지되는 전용 커넥션에서 획득
        try:
            self._lock_conn = self.session.get_bind().connect()
            result = self._lock_conn.execute(
                text("SELECT pg_try_advisory_lock(:id)"),
                {"id": self.lock_id},
            ).scalar()
            if not result:
                self._lock_conn.close()
                self._lock_conn = None
            return bool(result)
        except Exception as e:
            logger.error(f"[SYNC] Failed to acquire lock for {self.vendor}:{self.channel}: {e}")
            return False

    def _release_lock(self) -> None:
        if self._lock_conn is None:
            return
        try:
            self._lock_conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": self.lock_id})
        except Exception as e:
            logger.error(f"[SYNC] Failed to release lock for {self.vendor}:{self.channel}: {e}")
        finally:
            self._lock_conn.close()
            self._lock_conn = None

    def run(self, func: Callable[[SyncRun], Any], meta: Optional[dict] = None) -> Optional[SyncRun]:
        """
        동기화 작업을 감싸서 실행합니다.

        Args:
            func: 실제 동기화 로직. SyncRun 객체를 인자로 받습니다.
            meta: SyncRun.meta에 저장할 실행 옵션

        Returns:
            완료된 SyncRun. 이미 실행 중이면 None.
        """
        if not self._acquire_lock():
            logger.warning(f"[SYNC] {self.vendor}:{self.channel} is already running. Skipping this run.")
            return None

        sync_run = SyncRun(
            vendor=self.vendor,
            channel=self.channel,
            status="running",
            read_count=0,
            write_count=0,
            error_count=0,
            meta=meta or {},
        )
        self.session.add(sync_run)
        self.session.commit()
        self.run_id = sync_run.id

        start_time = time.time()
        logger.info(f"[SYNC] Starting run {self.run_id} ({self.vendor}:{self.channel})")

        try:
            func(sync_run)
            if sync_run.status == "running":
                sync_run.status = "success" if sync_run.error_count == 0 else "partial"
        except Exception as e:
            logger.error(f"[SYNC] Run {self.run_id} encountered a critical failure: {e}")
            self.session.rollback()
            sync_run.status = "fail"
            self.log_error(sync_run, "system", str(e), traceback.format_exc())
        finally:
            sync_run.finished_at = datetime.now(timezone.utc)
            sync_run.duration_ms = int((time.time() - start_time) * 1000)
            self.session.commit()
            self._release_lock()
            logger.info(
                f"[SYNC] Run {self.run_id} completed. Status: {sync_run.status}, "
                f"Processed: {sync_run.write_count}, Errors: {sync_run.error_count}"
            )
        return sync_run

    def log_error(
        self,
        sync_run: SyncRun,
        entity_type: str,
        message: str,
        stack: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> None:
        """상세 에러 기록 보조 메서드"""
        self.session.add(
            SyncRunError(
                run_id=sync_run.id,
                entity_type=entity_type,
                entity_id=entity_id,
                message=message,
                stack=stack,
            )
        )
        sync_run.error_count = (sync_run.error_count or 0) + 1
