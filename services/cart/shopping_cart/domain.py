"""
Cart Service — ドメインモデル

カート明細(Item)と、バックグラウンドで処理される予約ジョブ(ReservationJob)。

ジョブの状態遷移:
    PENDING → PROCESSING → COMPLETED  (処理成功)
                         → PENDING    (失敗・リトライ可能)
                         → FAILED     (失敗・リトライ上限)

COMPLETED と FAILED は終端状態。
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ItemStatus(str, Enum):
    PENDING = "PENDING"
    AVAILABILITY_CHECK = "AVAILABILITY_CHECK"
    AVAILABLE = "AVAILABLE"
    UNAVAILABLE = "UNAVAILABLE"
    RESERVED = "RESERVED"
    FAILED = "FAILED"


class JobType(str, Enum):
    AVAILABILITY_CHECK = "AVAILABILITY_CHECK"
    RESERVATION = "RESERVATION"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_JOB_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


class Item(BaseModel):
    """カート明細。id と created_at / updated_at はストアが採番する。"""

    id: int | None = None
    name: str
    quantity: int = Field(gt=0)
    reservation_id: str | None = None
    status: ItemStatus = ItemStatus.PENDING
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_available(self) -> bool:
        """画面上「在庫あり(の可能性)」として表示してよいか。"""
        return self.status in {
            ItemStatus.PENDING,
            ItemStatus.AVAILABILITY_CHECK,
            ItemStatus.AVAILABLE,
        }


class ReservationJob(BaseModel):
    """
    予約ジョブ — キューを流れる非同期処理の単位。

    job_type は文字列のまま保持する。新しいプロデューサが未知の種別を
    書き込んでもデコードに失敗せず、ワーカーまで届いて FAILED になる。
    """

    id: str
    item_id: int
    item_name: str
    quantity: int
    job_type: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    last_attempted_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def can_retry(self, max_attempts: int) -> bool:
        return can_retry(self, max_attempts)


def can_retry(job: ReservationJob, max_attempts: int) -> bool:
    """リトライ可否のドメインルール。処理前と失敗後の2回参照される。"""
    return job.status != JobStatus.COMPLETED and job.attempts < max_attempts
