"""
Cart Service — 予約プロバイダ (外部在庫サービス)

HttpReservationProvider: 外部の予約サービスを HTTP で呼び出す本番用実装。
MockReservationProvider: 開発用のシミュレータ。乱数・時計・sleep は
コンストラクタで注入するため、テストでは決定的に振る舞わせられる。
"""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, TypeVar

import httpx
from pydantic import BaseModel, StrictBool, StrictStr, ValidationError

from .errors import ProviderError

logger = logging.getLogger(__name__)


# ── Response Models ──────────────────────────────


class AvailabilityResponse(BaseModel):
    available: StrictBool


class ReservationResponse(BaseModel):
    reservation_id: StrictStr


ResponseT = TypeVar("ResponseT", bound=BaseModel)


class HttpReservationProvider:
    """
    外部予約サービスのクライアント

    GET  {base_url}/availability  {"item", "quantity"} → {"available": bool}
    POST {base_url}/reserve       {"item", "quantity"} → {"reservation_id": str}

    応答本文は型付きモデルで検証する。形の合わない本文は ProviderError。
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def check_availability(self, item_name: str, quantity: int) -> bool:
        body = await self._call("GET", "/availability", item_name, quantity, AvailabilityResponse)
        return body.available

    async def reserve_item(self, item_name: str, quantity: int) -> str:
        body = await self._call("POST", "/reserve", item_name, quantity, ReservationResponse)
        if not body.reservation_id:
            raise ProviderError("reservation service returned an empty reservation_id")
        return body.reservation_id

    async def _call(
        self,
        method: str,
        path: str,
        item_name: str,
        quantity: int,
        response_model: type[ResponseT],
    ) -> ResponseT:
        try:
            resp = await self.client.request(
                method,
                f"{self.base_url}{path}",
                json={"item": item_name, "quantity": quantity},
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"error calling {path}: {e}") from e

        if resp.status_code != httpx.codes.OK:
            raise ProviderError(f"unexpected status code from {path}: {resp.status_code}")

        try:
            return response_model.model_validate_json(resp.content)
        except ValidationError as e:
            raise ProviderError(f"invalid response from {path}: {e}") from e


DEFAULT_INVENTORY = {
    "laptop": 10,
    "phone": 20,
    "tablet": 15,
    "headphones": 30,
}


class MockReservationProvider:
    def __init__(
        self,
        inventory: dict[str, int] | None = None,
        latency: float = 0.0,
        failure_rate: float = 0.0,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._inventory = dict(DEFAULT_INVENTORY if inventory is None else inventory)
        self._reservations: set[str] = set()
        self._latency = latency
        self._failure_rate = failure_rate
        self._rng = rng or random.Random()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    async def check_availability(self, item_name: str, quantity: int) -> bool:
        await self._simulate_latency()
        if self._should_fail():
            raise ProviderError("service temporarily unavailable")

        async with self._lock:
            available = self._inventory.get(item_name)
        if available is None:
            return False
        return available >= quantity

    async def reserve_item(self, item_name: str, quantity: int) -> str:
        await self._simulate_latency()
        if self._should_fail():
            raise ProviderError("reservation failed: service temporarily unavailable")

        async with self._lock:
            available = self._inventory.get(item_name)
            if available is None:
                raise ProviderError("item not found")
            if available < quantity:
                raise ProviderError("insufficient inventory")

            reservation_id = f"RSV-{item_name}-{int(self._clock())}"
            self._inventory[item_name] = available - quantity
            self._reservations.add(reservation_id)

        logger.info("Reserved %d x %s as %s", quantity, item_name, reservation_id)
        return reservation_id

    # ── デモ操作用 ───────────────────────────────────

    def set_inventory(self, item_name: str, quantity: int) -> None:
        self._inventory[item_name] = quantity

    def get_inventory(self, item_name: str) -> int:
        return self._inventory.get(item_name, 0)

    def has_reservation(self, reservation_id: str) -> bool:
        return reservation_id in self._reservations

    async def _simulate_latency(self) -> None:
        if self._latency > 0:
            await self._sleep(self._rng.uniform(0, self._latency))

    def _should_fail(self) -> bool:
        return self._rng.random() < self._failure_rate
