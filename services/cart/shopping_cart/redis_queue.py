"""
Cart Service — Redis ジョブキュー

┌──────────┐ enqueue  ┌──────────────────────┐ claim  ┌────────────────────────┐
│ Producer │ ───────▶ │ reservation:queue    │ ─────▶ │ reservation:processing │
└──────────┘          │ reservation:delayed  │        └───────────┬────────────┘
                      └──────────────────────┘                    │ complete / fail
                                                        ┌─────────▼────────────┐
                                                        │ reservation:completed│
                                                        │ reservation:failed   │
                                                        └──────────────────────┘

ジョブ本体は reservation:job:{id} のハッシュ (フィールドごと) に保持し、
各コレクションは id をメンバーにしたソート済みセットで持つ。
  - queue / processing / completed / failed: スコアは reservation:seq の連番 (FIFO)
  - delayed: スコアは公開時刻 (UNIX 秒)
削除は ZREM による id 指定だけで、リストの走査はしない。

取り出し (claim) は Lua スクリプト1回で「遅延ジョブの昇格 → 先頭の取り出し →
processing への登録 → status=PROCESSING の刻印」を原子的に行う。
空のときは reservation:signal を BLPOP して待つ (投入ごとにトークンが積まれる)。

Redis クライアントは decode_responses=True で生成すること。
"""

import asyncio
import logging
import time
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .domain import JobStatus, ReservationJob
from .errors import QueueError

logger = logging.getLogger(__name__)

# KEYS: job, pending, delayed, processing, seq, signal
# ARGV: id, ready_at, field1, value1, ...
ENQUEUE_SCRIPT = """
local status = redis.call('HGET', KEYS[1], 'status')
if status == 'COMPLETED' or status == 'FAILED' then
  return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('ZREM', KEYS[4], ARGV[1])
redis.call('DEL', KEYS[1])
for i = 3, #ARGV, 2 do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
if tonumber(ARGV[2]) > 0 then
  redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
else
  redis.call('ZADD', KEYS[2], redis.call('INCR', KEYS[5]), ARGV[1])
  redis.call('RPUSH', KEYS[6], '1')
end
return 1
"""

# KEYS: delayed, pending, processing, seq
# ARGV: now, promote limit, job key prefix, last_attempted_at
CLAIM_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, job_id in ipairs(due) do
  redis.call('ZREM', KEYS[1], job_id)
  redis.call('ZADD', KEYS[2], redis.call('INCR', KEYS[4]), job_id)
end
while true do
  local popped = redis.call('ZPOPMIN', KEYS[2])
  if #popped == 0 then
    return false
  end
  local job_key = ARGV[3] .. popped[1]
  if redis.call('EXISTS', job_key) == 1 then
    redis.call('HSET', job_key, 'status', 'PROCESSING')
    redis.call('HSET', job_key, 'last_attempted_at', ARGV[4])
    redis.call('ZADD', KEYS[3], redis.call('INCR', KEYS[4]), popped[1])
    return redis.call('HGETALL', job_key)
  end
end
"""

# KEYS: job, pending, delayed, processing, target, seq
# ARGV: id, field1, value1, ...
FINISH_SCRIPT = """
local status = redis.call('HGET', KEYS[1], 'status')
if status == 'COMPLETED' or status == 'FAILED' then
  return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('ZREM', KEYS[4], ARGV[1])
redis.call('DEL', KEYS[1])
for i = 2, #ARGV, 2 do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
redis.call('ZADD', KEYS[5], redis.call('INCR', KEYS[6]), ARGV[1])
return 1
"""

# KEYS: job, processing, pending, signal / ARGV: id
RELEASE_SCRIPT = """
if redis.call('ZREM', KEYS[2], ARGV[1]) == 0 then
  return 0
end
redis.call('HSET', KEYS[1], 'status', 'PENDING')
local head = redis.call('ZRANGE', KEYS[3], 0, 0, 'WITHSCORES')
local score = 0
if #head > 0 then
  score = tonumber(head[2]) - 1
end
redis.call('ZADD', KEYS[3], score, ARGV[1])
redis.call('RPUSH', KEYS[4], '1')
return 1
"""

# KEYS: failed, pending, seq, signal / ARGV: job key prefix
RETRY_FAILED_SCRIPT = """
local ids = redis.call('ZRANGE', KEYS[1], 0, -1)
for _, job_id in ipairs(ids) do
  redis.call('HSET', ARGV[1] .. job_id, 'status', 'PENDING')
  redis.call('ZADD', KEYS[2], redis.call('INCR', KEYS[3]), job_id)
  redis.call('RPUSH', KEYS[4], '1')
end
redis.call('DEL', KEYS[1])
return #ids
"""

PROMOTE_BATCH_SIZE = 100


class RedisJobQueue:
    def __init__(
        self,
        redis: aioredis.Redis,
        prefix: str = "reservation",
        block_timeout: float = 1.0,
    ) -> None:
        self.redis = redis
        self.block_timeout = block_timeout
        self.job_key_prefix = f"{prefix}:job:"
        self.pending_key = f"{prefix}:queue"
        self.delayed_key = f"{prefix}:delayed"
        self.processing_key = f"{prefix}:processing"
        self.completed_key = f"{prefix}:completed"
        self.failed_key = f"{prefix}:failed"
        self.seq_key = f"{prefix}:seq"
        self.signal_key = f"{prefix}:signal"

        self._enqueue = redis.register_script(ENQUEUE_SCRIPT)
        self._claim = redis.register_script(CLAIM_SCRIPT)
        self._finish = redis.register_script(FINISH_SCRIPT)
        self._release = redis.register_script(RELEASE_SCRIPT)
        self._retry_failed = redis.register_script(RETRY_FAILED_SCRIPT)

    async def enqueue(self, job: ReservationJob, delay: float = 0.0) -> None:
        """
        ジョブを pending に積む。

        created_at は初回投入時のみ刻印する (リトライで再投入しても変えない)。
        delay > 0 の場合は reservation:delayed に入れ、公開時刻を過ぎたら
        取り出し時に pending へ昇格させる。
        """
        created_at = job.created_at or _now()
        queued = job.model_copy(update={"status": JobStatus.PENDING, "created_at": created_at})
        ready_at = time.time() + delay if delay > 0 else 0

        try:
            accepted = await self._enqueue(
                keys=[
                    self._job_key(job.id),
                    self.pending_key,
                    self.delayed_key,
                    self.processing_key,
                    self.seq_key,
                    self.signal_key,
                ],
                args=[job.id, ready_at, *_fields(queued)],
            )
        except RedisError as e:
            raise QueueError(f"enqueue failed for job {job.id}: {e}") from e

        if not accepted:
            logger.warning("Refusing to enqueue job %s: already terminal", job.id)
            return
        job.status = JobStatus.PENDING
        job.created_at = created_at

    async def dequeue(self) -> ReservationJob:
        """
        pending からジョブを1件取り出して processing に移す。

        空のときは signal の BLPOP でブロックするため CPU を消費しない。
        block_timeout ごとに起きて遅延ジョブの昇格を行う。
        タスクのキャンセルで待機は即座に中断される。取り出しの途中で
        キャンセルされた場合、取り出したジョブは pending の先頭に戻す。
        """
        try:
            while True:
                job = await self._claim_shielded()
                if job is not None:
                    return job
                await self.redis.blpop([self.signal_key], timeout=self.block_timeout)
        except RedisError as e:
            raise QueueError(f"dequeue failed: {e}") from e

    async def complete(self, job: ReservationJob) -> None:
        await self._move_to(job, JobStatus.COMPLETED, self.completed_key)

    async def fail(self, job: ReservationJob) -> None:
        await self._move_to(job, JobStatus.FAILED, self.failed_key)

    async def retry_failed_jobs(self) -> int:
        """failed の全ジョブを PENDING に戻し、失敗した順に pending へ積み直す。"""
        try:
            moved = await self._retry_failed(
                keys=[self.failed_key, self.pending_key, self.seq_key, self.signal_key],
                args=[self.job_key_prefix],
            )
        except RedisError as e:
            raise QueueError(f"retry of failed jobs failed: {e}") from e
        logger.info("Moved %d failed jobs back to pending", moved)
        return int(moved)

    async def stats(self) -> dict[str, int]:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zcard(self.pending_key)
                pipe.zcard(self.delayed_key)
                pipe.zcard(self.processing_key)
                pipe.zcard(self.completed_key)
                pipe.zcard(self.failed_key)
                pending, delayed, processing, completed, failed = await pipe.execute()
        except RedisError as e:
            raise QueueError(f"stats failed: {e}") from e
        return {
            "pending": pending + delayed,
            "processing": processing,
            "completed": completed,
            "failed": failed,
        }

    async def list_jobs(self, collection: str) -> list[ReservationJob]:
        """コレクション内のジョブを古い順に返す。"""
        keys = {
            "pending": self.pending_key,
            "processing": self.processing_key,
            "completed": self.completed_key,
            "failed": self.failed_key,
        }
        if collection not in keys:
            raise ValueError(f"unknown collection: {collection}")

        try:
            job_ids = await self.redis.zrange(keys[collection], 0, -1)
            if collection == "pending":
                job_ids += await self.redis.zrange(self.delayed_key, 0, -1)
            if not job_ids:
                return []
            async with self.redis.pipeline(transaction=False) as pipe:
                for job_id in job_ids:
                    pipe.hgetall(self._job_key(job_id))
                payloads = await pipe.execute()
        except RedisError as e:
            raise QueueError(f"listing {collection} failed: {e}") from e
        return [ReservationJob.model_validate(p) for p in payloads if p]

    # ── 内部処理 ─────────────────────────────────────

    async def _claim_shielded(self) -> ReservationJob | None:
        claim = asyncio.ensure_future(self._claim_next())
        try:
            return await asyncio.shield(claim)
        except asyncio.CancelledError:
            # スクリプトはサーバ側で完了している可能性がある。結果を待って返却する
            try:
                job = await claim
                if job is not None:
                    await self._release_claim(job)
            except RedisError:
                logger.exception("Could not return an interrupted claim to pending")
            raise

    async def _claim_next(self) -> ReservationJob | None:
        fields = await self._claim(
            keys=[self.delayed_key, self.pending_key, self.processing_key, self.seq_key],
            args=[time.time(), PROMOTE_BATCH_SIZE, self.job_key_prefix, _now().isoformat()],
        )
        if not fields:
            return None
        return ReservationJob.model_validate(dict(zip(fields[::2], fields[1::2])))

    async def _release_claim(self, job: ReservationJob) -> None:
        released = await self._release(
            keys=[self._job_key(job.id), self.processing_key, self.pending_key, self.signal_key],
            args=[job.id],
        )
        if released:
            logger.info("Returned job %s to the head of pending", job.id)

    async def _move_to(self, job: ReservationJob, status: JobStatus, target_key: str) -> None:
        finished = job.model_copy(update={"status": status})
        try:
            moved = await self._finish(
                keys=[
                    self._job_key(job.id),
                    self.pending_key,
                    self.delayed_key,
                    self.processing_key,
                    target_key,
                    self.seq_key,
                ],
                args=[job.id, *_fields(finished)],
            )
        except RedisError as e:
            raise QueueError(f"moving job {job.id} to {status.value} failed: {e}") from e

        if not moved:
            logger.debug("Job %s already terminal, skipping %s", job.id, status.value)
            return
        job.status = status

    def _job_key(self, job_id: str) -> str:
        return f"{self.job_key_prefix}{job_id}"


def _fields(job: ReservationJob) -> list:
    """ハッシュに書き込む field, value の並び。None のフィールドは書かない。"""
    flat = []
    for name, value in job.model_dump(mode="json", exclude_none=True).items():
        flat += [name, value]
    return flat


def _now() -> datetime:
    return datetime.now(timezone.utc)
