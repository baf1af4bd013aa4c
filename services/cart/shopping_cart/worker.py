"""
Reservation Worker — 予約ジョブを処理するバックグラウンドワーカー

1サイクルの流れ:
  ┌─────────────────────────────────────────────────────────┐
  │  1. キューからジョブを取り出す (dequeue はブロックする)    │
  │  2. リトライ上限を超えていれば FAILED にして終了           │
  │  3. ジョブ種別で処理を振り分ける                          │
  │     ├─ AVAILABILITY_CHECK → 在庫確認                      │
  │     │    └─ 在庫あり → RESERVATION ジョブを投入           │
  │     └─ RESERVATION → 在庫引き当て                         │
  │  4. 成功 → COMPLETED                                      │
  │     失敗 → attempts を加算し、再投入 or FAILED            │
  └─────────────────────────────────────────────────────────┘

サイクル内ではスリープしない。バックオフは retry_delay 秒の
遅延付き再投入 (キュー側の遅延公開) で実現する。
"""

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from .domain import ItemStatus, JobStatus, JobType, ReservationJob
from .errors import CartError, QueueError, StoreError, UnknownJobTypeError
from .ports import ItemStore, JobQueue, ReservationProvider

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    max_attempts: int = 3
    retry_delay: float = 5.0
    error_backoff: float = 1.0


class ReservationWorker:
    def __init__(
        self,
        queue: JobQueue,
        provider: ReservationProvider,
        store: ItemStore,
        config: WorkerConfig | None = None,
        name: str = "worker",
    ) -> None:
        self.queue = queue
        self.provider = provider
        self.store = store
        self.config = config or WorkerConfig()
        self.name = name

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        shutdown_event がセットされるまでジョブを処理し続ける。

        停止時は待機中の dequeue だけを中断する。取り出し済みのジョブは
        complete / fail / 再投入のいずれかを終えてから戻る。
        """
        logger.info("%s started", self.name)
        while not shutdown_event.is_set():
            try:
                job = await self._next_job(shutdown_event)
                if job is None:
                    break
                await self.handle_job(job)
            except QueueError:
                logger.exception("%s: queue error, retrying on next iteration", self.name)
                await _wait(shutdown_event, self.config.error_backoff)
            except Exception:
                logger.exception("%s: unexpected error while processing job", self.name)
                await _wait(shutdown_event, self.config.error_backoff)
        logger.info("%s stopped", self.name)

    async def process_next_job(self) -> None:
        """1サイクル分の処理。キューのエラーは呼び出し元に伝播する。"""
        job = await self.queue.dequeue()
        await self.handle_job(job)

    async def handle_job(self, job: ReservationJob) -> None:
        # 上限到達済みのジョブはプロバイダを呼ばずに FAILED
        if not job.can_retry(self.config.max_attempts):
            logger.warning(
                "Job %s exceeded maximum retry attempts (%d)", job.id, self.config.max_attempts
            )
            await self.queue.fail(job)
            return

        try:
            await self._process(job)
        except UnknownJobTypeError as e:
            # スキーマ不一致。リトライしても解決しないので即 FAILED
            logger.critical("Job %s rejected: %s", job.id, e)
            await self.queue.fail(job)
            return
        except CartError as e:
            await self._on_attempt_failed(job, e)
            return
        except Exception:
            # 想定外の例外はリトライで直らない。processing に残さず FAILED にする
            logger.exception("Job %s failed with an unexpected error", job.id)
            await self._mark_item_failed(job)
            await self.queue.fail(job)
            return

        await self.queue.complete(job)
        logger.info("Job %s (%s) completed", job.id, job.job_type)

    async def _on_attempt_failed(self, job: ReservationJob, error: Exception) -> None:
        job.attempts += 1
        job.last_attempted_at = datetime.now(timezone.utc)

        if job.can_retry(self.config.max_attempts):
            logger.info(
                "Retrying job %s, attempt %d of %d: %s",
                job.id,
                job.attempts,
                self.config.max_attempts,
                error,
            )
            await self.queue.enqueue(job, delay=self.config.retry_delay)
            return

        logger.warning("Job %s failed after %d attempts: %s", job.id, job.attempts, error)
        await self.queue.fail(job)

    async def _process(self, job: ReservationJob) -> None:
        handler = {
            JobType.AVAILABILITY_CHECK.value: self._process_availability_check,
            JobType.RESERVATION.value: self._process_reservation,
        }.get(job.job_type)
        if handler is None:
            raise UnknownJobTypeError(job.job_type)
        await handler(job)

    async def _process_availability_check(self, job: ReservationJob) -> None:
        try:
            available = await self.provider.check_availability(job.item_name, job.quantity)
        except CartError:
            await self._mark_item_failed(job)
            raise

        if not available:
            # 在庫なしは業務上の結果であり、ジョブとしては成功
            await self.store.update_item_status(job.item_id, ItemStatus.UNAVAILABLE)
            return

        await self.store.update_item_status(job.item_id, ItemStatus.AVAILABLE)
        reservation_job = ReservationJob(
            id=str(uuid4()),
            item_id=job.item_id,
            item_name=job.item_name,
            quantity=job.quantity,
            job_type=JobType.RESERVATION.value,
            status=JobStatus.PENDING,
        )
        await self.queue.enqueue(reservation_job)

    async def _process_reservation(self, job: ReservationJob) -> None:
        try:
            reservation_id = await self.provider.reserve_item(job.item_name, job.quantity)
        except CartError:
            await self._mark_item_failed(job)
            raise

        await self.store.update_item_reservation(job.item_id, reservation_id)

    async def _mark_item_failed(self, job: ReservationJob) -> None:
        # 書き込みに失敗してもジョブの行方 (リトライ / FAILED) は変えない
        try:
            await self.store.update_item_status(job.item_id, ItemStatus.FAILED)
        except StoreError:
            logger.exception("Could not mark item %s as FAILED", job.item_id)

    async def _next_job(self, shutdown_event: asyncio.Event) -> ReservationJob | None:
        """dequeue と停止シグナルを競わせる。停止が先なら None。"""
        dequeue = asyncio.ensure_future(self.queue.dequeue())
        stop = asyncio.ensure_future(shutdown_event.wait())
        try:
            await asyncio.wait({dequeue, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            dequeue.cancel()
            raise
        finally:
            stop.cancel()

        if not dequeue.done():
            dequeue.cancel()
            with suppress(asyncio.CancelledError):
                await dequeue
        if dequeue.cancelled():
            return None
        # 停止と同時に取り出されたジョブも最後まで処理する
        return dequeue.result()


async def _wait(event: asyncio.Event, timeout: float) -> None:
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(event.wait(), timeout=timeout)
