"""
Cart Service — ポート (外部コラボレータのインターフェース)

ワーカーとカートのコマンドはこれらの Protocol だけに依存する。
実装は redis_queue / memory_queue / item_store / reservation_provider。
"""

from typing import Protocol

from .domain import Item, ItemStatus, ReservationJob


class JobQueue(Protocol):
    async def enqueue(self, job: ReservationJob, delay: float = 0.0) -> None:
        ...

    async def dequeue(self) -> ReservationJob:
        ...

    async def complete(self, job: ReservationJob) -> None:
        ...

    async def fail(self, job: ReservationJob) -> None:
        ...

    async def retry_failed_jobs(self) -> int:
        ...

    async def stats(self) -> dict[str, int]:
        ...

    async def list_jobs(self, collection: str) -> list[ReservationJob]:
        ...


class ItemStore(Protocol):
    async def create_item(self, item: Item) -> Item:
        ...

    async def update_item_status(self, item_id: int, status: ItemStatus) -> None:
        ...

    async def update_item_reservation(self, item_id: int, reservation_id: str) -> None:
        ...

    async def get_item(self, item_id: int) -> Item | None:
        ...

    async def list_items(self) -> list[Item]:
        ...


class ReservationProvider(Protocol):
    async def check_availability(self, item_name: str, quantity: int) -> bool:
        ...

    async def reserve_item(self, item_name: str, quantity: int) -> str:
        ...
