"""Reservation providers — HTTP client (httpx.MockTransport) and the simulator."""

import json
import random

import httpx
import pytest

from shopping_cart.domain import ItemStatus
from shopping_cart.errors import ProviderError
from shopping_cart.reservation_provider import HttpReservationProvider, MockReservationProvider
from shopping_cart.worker import ReservationWorker, WorkerConfig


def _provider(handler) -> HttpReservationProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpReservationProvider(client, "http://reservation.test/")


@pytest.mark.asyncio
async def test_check_availability_sends_item_and_quantity():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"available": True})

    assert await _provider(handler).check_availability("laptop", 3) is True
    assert seen == {
        "method": "GET",
        "path": "/availability",
        "body": {"item": "laptop", "quantity": 3},
    }


@pytest.mark.asyncio
async def test_reserve_item_returns_reservation_id():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/reserve"
        return httpx.Response(200, json={"reservation_id": "RSV-laptop-1"})

    assert await _provider(handler).reserve_item("laptop", 1) == "RSV-laptop-1"


@pytest.mark.asyncio
async def test_non_200_is_provider_error():
    provider = _provider(lambda request: httpx.Response(503))
    with pytest.raises(ProviderError):
        await provider.check_availability("laptop", 1)


@pytest.mark.asyncio
async def test_transport_error_is_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError):
        await _provider(handler).reserve_item("laptop", 1)


@pytest.mark.asyncio
async def test_undecodable_body_is_provider_error():
    provider = _provider(lambda request: httpx.Response(200, content=b"not json"))
    with pytest.raises(ProviderError):
        await provider.check_availability("laptop", 1)


@pytest.mark.asyncio
async def test_non_object_body_is_provider_error():
    provider = _provider(lambda request: httpx.Response(200, json=["x"]))
    with pytest.raises(ProviderError):
        await provider.check_availability("laptop", 1)
    with pytest.raises(ProviderError):
        await provider.reserve_item("laptop", 1)


@pytest.mark.asyncio
@pytest.mark.parametrize("available", ["false", "true", 0, None])
async def test_non_boolean_available_is_provider_error(available):
    provider = _provider(lambda request: httpx.Response(200, json={"available": available}))
    with pytest.raises(ProviderError):
        await provider.check_availability("laptop", 1)


@pytest.mark.asyncio
async def test_unavailable_answer_is_false():
    provider = _provider(lambda request: httpx.Response(200, json={"available": False}))
    assert await provider.check_availability("laptop", 1) is False


@pytest.mark.asyncio
@pytest.mark.parametrize("reservation_id", ["", 42])
async def test_bad_reservation_id_is_provider_error(reservation_id):
    provider = _provider(
        lambda request: httpx.Response(200, json={"reservation_id": reservation_id})
    )
    with pytest.raises(ProviderError):
        await provider.reserve_item("laptop", 1)


@pytest.mark.asyncio
async def test_malformed_answer_drives_worker_retry(queue, store, item, make_job):
    provider = _provider(lambda request: httpx.Response(200, json=["x"]))
    worker = ReservationWorker(queue, provider, store, WorkerConfig(retry_delay=0))
    await queue.enqueue(make_job(item_id=item.id))

    await worker.process_next_job()

    assert await queue.stats() == {"pending": 1, "processing": 0, "completed": 0, "failed": 0}
    [retried] = await queue.list_jobs("pending")
    assert retried.attempts == 1
    assert store.items[item.id].status == ItemStatus.FAILED


@pytest.mark.asyncio
async def test_missing_reservation_id_is_provider_error():
    provider = _provider(lambda request: httpx.Response(200, json={"available": True}))
    with pytest.raises(ProviderError):
        await provider.reserve_item("laptop", 1)


# ── MockReservationProvider ──────────────────────


@pytest.mark.asyncio
async def test_mock_checks_seeded_inventory():
    provider = MockReservationProvider()
    assert await provider.check_availability("laptop", 10) is True
    assert await provider.check_availability("laptop", 11) is False
    assert await provider.check_availability("toaster", 1) is False


@pytest.mark.asyncio
async def test_mock_reserve_decrements_inventory():
    provider = MockReservationProvider(clock=lambda: 1700000000)

    reservation_id = await provider.reserve_item("phone", 4)

    assert reservation_id == "RSV-phone-1700000000"
    assert provider.get_inventory("phone") == 16
    assert provider.has_reservation(reservation_id)


@pytest.mark.asyncio
async def test_mock_reserve_rejects_unknown_and_insufficient():
    provider = MockReservationProvider()
    provider.set_inventory("tablet", 1)

    with pytest.raises(ProviderError):
        await provider.reserve_item("toaster", 1)
    with pytest.raises(ProviderError):
        await provider.reserve_item("tablet", 2)


@pytest.mark.asyncio
async def test_mock_failure_rate_uses_injected_rng():
    provider = MockReservationProvider(failure_rate=1.0, rng=random.Random(7))
    with pytest.raises(ProviderError):
        await provider.check_availability("laptop", 1)


@pytest.mark.asyncio
async def test_mock_latency_uses_injected_sleep():
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    provider = MockReservationProvider(latency=2.0, rng=random.Random(1), sleep=fake_sleep)
    await provider.check_availability("laptop", 1)

    assert len(delays) == 1
    assert 0 <= delays[0] <= 2.0
