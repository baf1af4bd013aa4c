"""Shared fixtures — in-memory queue, fake item store, scripted provider.

The fakes implement the ports in shopping_cart.ports so the worker and the
cart commands can be exercised without Redis, a database or the network.
"""

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from shopping_cart.domain import Item, ItemStatus, JobType, ReservationJob
from shopping_cart.errors import ItemNotFoundError, ProviderError, StoreError
from shopping_cart.memory_queue import InMemoryJobQueue


class FakeItemStore:
    def __init__(self) -> None:
        self.items: dict[int, Item] = {}
        self.fail_updates = False
        self._next_id = 1

    async def create_item(self, item: Item) -> Item:
        now = datetime.now(timezone.utc)
        created = item.model_copy(update={"id": self._next_id, "created_at": now, "updated_at": now})
        self.items[created.id] = created
        self._next_id += 1
        return created

    async def update_item_status(self, item_id: int, status: ItemStatus) -> None:
        self._update(item_id, status=status)

    async def update_item_reservation(self, item_id: int, reservation_id: str) -> None:
        self._update(item_id, reservation_id=reservation_id, status=ItemStatus.RESERVED)

    async def get_item(self, item_id: int) -> Item | None:
        return self.items.get(item_id)

    async def list_items(self) -> list[Item]:
        return list(self.items.values())

    def _update(self, item_id: int, **values) -> None:
        if self.fail_updates:
            raise StoreError("database unavailable")
        if item_id not in self.items:
            raise ItemNotFoundError(item_id)
        self.items[item_id] = self.items[item_id].model_copy(update=values)


class ScriptedProvider:
    """Returns fixed answers; raises `error` on every call when set."""

    def __init__(
        self,
        available: bool = True,
        reservation_id: str = "RSV-test-1",
        error: Exception | None = None,
    ) -> None:
        self.available = available
        self.reservation_id = reservation_id
        self.error = error
        self.calls: list[tuple[str, str, int]] = []

    async def check_availability(self, item_name: str, quantity: int) -> bool:
        self.calls.append(("check_availability", item_name, quantity))
        if self.error:
            raise self.error
        return self.available

    async def reserve_item(self, item_name: str, quantity: int) -> str:
        self.calls.append(("reserve_item", item_name, quantity))
        if self.error:
            raise self.error
        return self.reservation_id


def _make_job(
    item_id: int = 1,
    item_name: str = "laptop",
    quantity: int = 1,
    job_type: str = JobType.AVAILABILITY_CHECK.value,
    attempts: int = 0,
) -> ReservationJob:
    return ReservationJob(
        id=str(uuid4()),
        item_id=item_id,
        item_name=item_name,
        quantity=quantity,
        job_type=job_type,
        attempts=attempts,
    )


@pytest.fixture
def make_job():
    return _make_job


@pytest.fixture
def queue():
    return InMemoryJobQueue()


@pytest.fixture
def store():
    return FakeItemStore()


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def failing_provider():
    return ScriptedProvider(error=ProviderError("service temporarily unavailable"))


@pytest.fixture
async def item(store):
    return await store.create_item(Item(name="laptop", quantity=5))
