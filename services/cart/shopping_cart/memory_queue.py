"""
Cart Service — インメモリ・ジョブキュー

RedisJobQueue と同じ意味論をプロセス内で再現する (テスト・ローカル実行用)。
ジョブ本体は id をキーにした辞書(アリーナ)に JSON で保持し、
各コレクションは id をキーにした挿入順の辞書で、削除は常に id で O(1)。
"""

import asyncio
import heapq
import itertools
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from .domain import JobStatus, ReservationJob

logger = logging.getLogger(__name__)

COLLECTIONS = ("pending", "processing", "completed", "failed")


class InMemoryJobQueue:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._jobs: dict[str, str] = {}
        self._pending: dict[str, None] = {}
        self._delayed: list[tuple[float, int, str]] = []
        self._delayed_ids: dict[str, int] = {}
        self._processing: dict[str, None] = {}
        self._completed: dict[str, None] = {}
        self._failed: dict[str, None] = {}
        self._seq = itertools.count()
        self._cond = asyncio.Condition()

    # ── キュー操作 ───────────────────────────────────

    async def enqueue(self, job: ReservationJob, delay: float = 0.0) -> None:
        async with self._cond:
            stored = self._load(job.id)
            if stored is not None and stored.is_terminal:
                logger.warning(
                    "Refusing to enqueue job %s: already %s", job.id, stored.status.value
                )
                return

            job.status = JobStatus.PENDING
            if job.created_at is None:
                job.created_at = _now()

            self._discard(job.id)
            self._jobs[job.id] = job.model_dump_json()
            if delay > 0:
                seq = next(self._seq)
                heapq.heappush(self._delayed, (self._clock() + delay, seq, job.id))
                self._delayed_ids[job.id] = seq
            else:
                self._pending[job.id] = None
            self._cond.notify_all()

    async def dequeue(self) -> ReservationJob:
        """ジョブが来るまで待機し、pending → processing へ移動する。"""
        async with self._cond:
            while True:
                self._promote_due()
                if self._pending:
                    job_id = next(iter(self._pending))
                    del self._pending[job_id]
                    self._processing[job_id] = None
                    job = self._load(job_id)
                    job.status = JobStatus.PROCESSING
                    job.last_attempted_at = _now()
                    self._jobs[job_id] = job.model_dump_json()
                    return job

                # 遅延ジョブがあれば、その公開時刻までで待機を打ち切る
                timeout = self._next_due_in()
                if timeout is None:
                    await self._cond.wait()
                    continue
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass

    async def complete(self, job: ReservationJob) -> None:
        await self._finish(job, JobStatus.COMPLETED, self._completed)

    async def fail(self, job: ReservationJob) -> None:
        await self._finish(job, JobStatus.FAILED, self._failed)

    async def retry_failed_jobs(self) -> int:
        """failed を丸ごと pending に戻す (運用者向けの復旧操作)。"""
        async with self._cond:
            job_ids = list(self._failed)
            self._failed.clear()
            for job_id in job_ids:
                job = self._load(job_id)
                job.status = JobStatus.PENDING
                self._jobs[job_id] = job.model_dump_json()
                self._pending[job_id] = None
            if job_ids:
                self._cond.notify_all()
            return len(job_ids)

    # ── 参照系 ───────────────────────────────────────

    async def stats(self) -> dict[str, int]:
        async with self._cond:
            return {
                "pending": len(self._pending) + len(self._delayed_ids),
                "processing": len(self._processing),
                "completed": len(self._completed),
                "failed": len(self._failed),
            }

    async def list_jobs(self, collection: str) -> list[ReservationJob]:
        async with self._cond:
            if collection == "pending":
                delayed = [
                    job_id
                    for _, seq, job_id in sorted(self._delayed)
                    if self._delayed_ids.get(job_id) == seq
                ]
                job_ids = list(self._pending) + delayed
            elif collection == "processing":
                job_ids = list(self._processing)
            elif collection == "completed":
                job_ids = list(self._completed)
            elif collection == "failed":
                job_ids = list(self._failed)
            else:
                raise ValueError(f"unknown collection: {collection}")
            return [self._load(job_id) for job_id in job_ids]

    # ── 内部処理 ─────────────────────────────────────

    async def _finish(
        self, job: ReservationJob, status: JobStatus, target: dict[str, None]
    ) -> None:
        async with self._cond:
            stored = self._load(job.id)
            if stored is not None and stored.is_terminal:
                # 終端済みのジョブは二重に登録しない
                return
            job.status = status
            self._discard(job.id)
            self._jobs[job.id] = job.model_dump_json()
            target[job.id] = None

    def _load(self, job_id: str) -> ReservationJob | None:
        payload = self._jobs.get(job_id)
        if payload is None:
            return None
        return ReservationJob.model_validate_json(payload)

    def _discard(self, job_id: str) -> None:
        self._pending.pop(job_id, None)
        self._delayed_ids.pop(job_id, None)
        self._processing.pop(job_id, None)

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, seq, job_id = heapq.heappop(self._delayed)
            if self._delayed_ids.get(job_id) == seq:
                del self._delayed_ids[job_id]
                self._pending[job_id] = None

    def _next_due_in(self) -> float | None:
        while self._delayed and self._delayed_ids.get(self._delayed[0][2]) != self._delayed[0][1]:
            heapq.heappop(self._delayed)
        if not self._delayed:
            return None
        return max(self._delayed[0][0] - self._clock(), 0.0)


def _now() -> datetime:
    return datetime.now(timezone.utc)
