"""
Cart Service — コマンドハンドラ (Write 側)

カートへの追加はすぐに応答を返し、在庫確認と引き当ては
ワーカーがバックグラウンドで行う。ここではジョブの受付までを担う。
"""

import logging
from uuid import uuid4

from .domain import Item, ItemStatus, JobStatus, JobType, ReservationJob
from .errors import QueueError, StoreError
from .ports import ItemStore, JobQueue

logger = logging.getLogger(__name__)


async def add_item_to_cart(
    store: ItemStore,
    queue: JobQueue,
    name: str,
    quantity: int,
) -> Item:
    """
    カート追加コマンド

    1. Item を PENDING で作成
    2. AVAILABILITY_CHECK ジョブを投入
    3. 投入に失敗したら Item を FAILED にしてエラーを返す
    """
    item = await store.create_item(Item(name=name, quantity=quantity, status=ItemStatus.PENDING))

    job = ReservationJob(
        id=str(uuid4()),
        item_id=item.id,
        item_name=name,
        quantity=quantity,
        job_type=JobType.AVAILABILITY_CHECK.value,
        status=JobStatus.PENDING,
    )

    try:
        await queue.enqueue(job)
    except QueueError:
        try:
            await store.update_item_status(item.id, ItemStatus.FAILED)
        except StoreError:
            logger.exception("Could not mark item %s as FAILED", item.id)
        raise

    logger.info("Item %s added to cart, job %s enqueued", item.id, job.id)
    return item


async def retry_failed_jobs(queue: JobQueue) -> int:
    """failed のジョブを pending に戻す (運用者が手動で実行する)。"""
    moved = await queue.retry_failed_jobs()
    logger.info("Operator retry moved %d jobs back to pending", moved)
    return moved
