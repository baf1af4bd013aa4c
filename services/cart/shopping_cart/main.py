"""
Cart Service — FastAPI エントリーポイント

カートへの追加は即座に 201 を返し、在庫確認と引き当ては
同じプロセス内のワーカー (asyncio タスク) が非同期に処理する。

┌────────┐ POST /api/v1/items ┌──────────────┐ enqueue ┌───────────┐
│ Client │ ─────────────────▶ │ Cart Service │ ──────▶ │ Job Queue │
└────────┘                    └──────────────┘         └─────┬─────┘
                                                             │ dequeue
                              ┌──────────────┐         ┌─────▼─────┐
                              │ Reservation  │ ◀────── │  Worker   │
                              │ Provider     │         │  (N 個)   │
                              └──────────────┘         └───────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from . import commands, queries
from .config import Settings, configure_logging
from .domain import Item
from .errors import CartError
from .item_store import SqlItemStore, create_schema
from .memory_queue import COLLECTIONS, InMemoryJobQueue
from .ports import ItemStore, JobQueue
from .redis_queue import RedisJobQueue
from .reservation_provider import HttpReservationProvider, MockReservationProvider
from .worker import ReservationWorker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にアダプタを組み立て、ワーカーをバックグラウンドタスクとして開始する。"""
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    engine = create_async_engine(settings.database_url, echo=False)
    await create_schema(engine)
    store = SqlItemStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))

    redis_pool: aioredis.Redis | None = None
    if settings.queue_backend == "redis":
        redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
        queue = RedisJobQueue(redis_pool, settings.queue_prefix, settings.dequeue_timeout)
    else:
        queue = InMemoryJobQueue()

    http_client: httpx.AsyncClient | None = None
    if settings.use_mock:
        provider = MockReservationProvider(
            latency=settings.mock_latency,
            failure_rate=settings.mock_failure_rate,
        )
    else:
        http_client = httpx.AsyncClient(timeout=settings.reservation_timeout)
        provider = HttpReservationProvider(http_client, settings.reservation_service_url)

    app.state.store = store
    app.state.queue = queue

    shutdown_event = asyncio.Event()
    worker_tasks = [
        asyncio.create_task(
            ReservationWorker(
                queue, provider, store, settings.worker_config(), name=f"worker-{i}"
            ).run(shutdown_event)
        )
        for i in range(settings.worker_concurrency)
    ]
    logger.info("Started %d reservation workers (%s queue)", len(worker_tasks), settings.queue_backend)

    try:
        yield
    finally:
        # 処理中のジョブは完了させてから止める
        shutdown_event.set()
        await asyncio.gather(*worker_tasks, return_exceptions=True)
        if http_client is not None:
            await http_client.aclose()
        if redis_pool is not None:
            await redis_pool.aclose()
        await engine.dispose()


app = FastAPI(title="Cart Service", lifespan=lifespan)


# ── Dependencies ─────────────────────────────────


def get_store(request: Request) -> ItemStore:
    return request.app.state.store


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


# ── Request Models ───────────────────────────────


class AddItemRequest(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    quantity: int = Field(ge=1)


def _item_response(item: Item) -> dict:
    return {**item.model_dump(mode="json"), "available": item.is_available}


# ── Command Endpoints ────────────────────────────


@app.post("/api/v1/items", status_code=201)
async def add_item(
    req: AddItemRequest,
    store: ItemStore = Depends(get_store),
    queue: JobQueue = Depends(get_queue),
):
    """カート追加コマンド。在庫確認はバックグラウンドで行う。"""
    try:
        item = await commands.add_item_to_cart(store, queue, req.name, req.quantity)
    except CartError as e:
        logger.error("Could not add %s to cart: %s", req.name, e)
        raise HTTPException(status_code=503, detail=str(e))
    return _item_response(item)


# ── Query Endpoints ──────────────────────────────


@app.get("/api/v1/items")
async def list_items(store: ItemStore = Depends(get_store)):
    try:
        items = await queries.list_cart_items(store)
    except CartError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return [_item_response(item) for item in items]


@app.get("/api/v1/items/{item_id}")
async def get_item(item_id: int, store: ItemStore = Depends(get_store)):
    try:
        item = await queries.get_cart_item(store, item_id)
    except CartError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not item:
        raise HTTPException(404, "Item not found")
    return _item_response(item)


# ── 運用者向け (ジョブキューの管理) ──────────────


@app.post("/admin/jobs/retry-failed")
async def retry_failed(queue: JobQueue = Depends(get_queue)):
    """failed のジョブをすべて pending に戻す"""
    try:
        moved = await commands.retry_failed_jobs(queue)
    except CartError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"moved": moved}


@app.get("/admin/jobs/stats")
async def job_stats(queue: JobQueue = Depends(get_queue)):
    try:
        return await queue.stats()
    except CartError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get("/admin/jobs/{collection}")
async def list_jobs(collection: str, queue: JobQueue = Depends(get_queue)):
    if collection not in COLLECTIONS:
        raise HTTPException(404, "Unknown collection")
    try:
        jobs = await queue.list_jobs(collection)
    except CartError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return [job.model_dump(mode="json") for job in jobs]


@app.get("/health")
async def health():
    return {"status": "ok", "service": "cart-service"}
