import asyncio

import httpx
import pytest

from conftest import make_crime, mock_client
from errors import RateLimitExceeded, TransientFetchFailure
from models import Coordinate
from rate_queue import RateLimitedQueue

POINT = Coordinate(lat=51.5074, lon=-0.1278)


def _queue(client, clock, **kwargs) -> RateLimitedQueue:
    options = dict(min_interval=0.25, max_attempts=3, throttle_cooldown=1.0, retry_backoff=0.5)
    options.update(kwargs)
    return RateLimitedQueue(client, clock=clock, sleep=clock.sleep, **options)


def test_successful_fetch_parses_records(fake_clock):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(200, json=[make_crime("abc"), make_crime("def", category="robbery")])

    async def run():
        queue = _queue(mock_client(handler), fake_clock)
        return await queue.submit(POINT, "2024-02")

    records = asyncio.run(run())
    assert [r.persistentId for r in records] == ["abc", "def"]
    assert records[1].category == "robbery"
    assert records[0].streetName == "On or near High Street"
    assert seen[0].path == "/api/crimes-street/all-crime"
    assert seen[0].params["date"] == "2024-02"
    assert float(seen[0].params["lat"]) == POINT.lat
    assert float(seen[0].params["lng"]) == POINT.lon


def test_dispatch_spacing_and_fifo_order(fake_clock):
    dispatched = []

    def handler(request: httpx.Request) -> httpx.Response:
        dispatched.append((fake_clock(), float(request.url.params["lat"])))
        return httpx.Response(200, json=[])

    points = [Coordinate(lat=51.5 + i * 0.01, lon=-0.1) for i in range(5)]

    async def run():
        queue = _queue(mock_client(handler), fake_clock)
        await asyncio.gather(*(queue.submit(p, "2024-02") for p in points))

    asyncio.run(run())
    assert [lat for _, lat in dispatched] == [p.lat for p in points]
    times = [t for t, _ in dispatched]
    for earlier, later in zip(times, times[1:]):
        assert later - earlier >= 0.25


def test_spacing_holds_after_queue_drains(fake_clock):
    dispatched = []

    def handler(request: httpx.Request) -> httpx.Response:
        dispatched.append(fake_clock())
        return httpx.Response(200, json=[])

    async def run():
        queue = _queue(mock_client(handler), fake_clock)
        await queue.submit(POINT, "2024-02")
        await queue.submit(POINT, "2024-03")

    asyncio.run(run())
    assert dispatched[1] - dispatched[0] >= 0.25


def test_throttle_then_success_is_invisible_to_caller(fake_clock):
    responses = [httpx.Response(429), httpx.Response(200, json=[make_crime("abc")])]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    async def run():
        queue = _queue(mock_client(handler), fake_clock)
        records = await queue.submit(POINT, "2024-02")
        return queue, records

    queue, records = asyncio.run(run())
    assert [r.persistentId for r in records] == ["abc"]
    assert fake_clock.sleeps == [1.0]
    assert queue.stats["throttled"] == 1


def test_persistent_throttling_raises_rate_limit_exceeded(fake_clock):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429)

    async def run():
        queue = _queue(mock_client(handler), fake_clock)
        await queue.submit(POINT, "2024-02")

    with pytest.raises(RateLimitExceeded):
        asyncio.run(run())
    assert len(calls) == 3
    assert fake_clock.sleeps == [1.0, 1.0]


def test_persistent_server_error_raises_after_linear_backoff(fake_clock):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    async def run():
        queue = _queue(mock_client(handler), fake_clock)
        await queue.submit(POINT, "2024-02")

    with pytest.raises(TransientFetchFailure) as excinfo:
        asyncio.run(run())
    assert excinfo.value.status_code == 500
    assert excinfo.value.attempts == 3
    assert len(calls) == 3
    assert fake_clock.sleeps == [0.5, 1.0]


def test_not_found_is_empty_result_without_retry(fake_clock):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(404)

    async def run():
        queue = _queue(mock_client(handler), fake_clock)
        return await queue.submit(POINT, "2024-02")

    assert asyncio.run(run()) == []
    assert len(calls) == 1
    assert fake_clock.sleeps == []


def test_network_error_is_retried(fake_clock):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=[make_crime("abc")])

    async def run():
        queue = _queue(mock_client(handler), fake_clock)
        return await queue.submit(POINT, "2024-02")

    records = asyncio.run(run())
    assert len(records) == 1
    assert len(attempts) == 2


def test_malformed_payload_is_treated_as_transient(fake_clock):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "unexpected"})

    async def run():
        queue = _queue(mock_client(handler), fake_clock, max_attempts=2)
        await queue.submit(POINT, "2024-02")

    with pytest.raises(TransientFetchFailure):
        asyncio.run(run())


def test_cancelled_request_is_dropped_before_dispatch(fake_clock):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(float(request.url.params["lat"]))
        return httpx.Response(200, json=[])

    second = Coordinate(lat=51.6, lon=-0.1)

    async def run():
        queue = _queue(mock_client(handler), fake_clock)
        first_task = asyncio.ensure_future(queue.submit(POINT, "2024-02"))
        second_task = asyncio.ensure_future(queue.submit(second, "2024-02"))
        await asyncio.sleep(0)
        second_task.cancel()
        await first_task
        await asyncio.gather(second_task, return_exceptions=True)
        # Let the worker pick up the dropped request
        for _ in range(5):
            await asyncio.sleep(0)
        return queue

    queue = asyncio.run(run())
    assert calls == [POINT.lat]
    assert queue.stats["dropped"] == 1


def test_closed_queue_rejects_submissions(fake_clock):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[])

    async def run():
        queue = _queue(mock_client(handler), fake_clock)
        await queue.submit(POINT, "2024-02")
        await queue.aclose()
        await queue.submit(POINT, "2024-02")

    with pytest.raises(RuntimeError):
        asyncio.run(run())


@pytest.mark.parametrize("status, first_delay", [(429, 1.0), (503, 0.5)])
def test_caller_cancelled_while_waiting_to_retry_stops_retrying(fake_clock, status, first_delay):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status)

    async def run():
        caller = None

        async def sleep(seconds):
            # The caller gives up while the worker is cooling down
            caller.cancel()
            await fake_clock.sleep(seconds)

        queue = RateLimitedQueue(mock_client(handler), min_interval=0.25, max_attempts=3,
                                 throttle_cooldown=1.0, retry_backoff=0.5,
                                 clock=fake_clock, sleep=sleep)
        caller = asyncio.ensure_future(queue.submit(POINT, "2024-02"))
        with pytest.raises(asyncio.CancelledError):
            await caller
        for _ in range(5):
            await asyncio.sleep(0)
        return queue

    queue = asyncio.run(run())
    assert len(calls) == 1
    assert fake_clock.sleeps == [first_delay]
    assert queue.stats["dispatched"] == 1
    assert not queue.is_dispatching


def test_short_cooldown_still_respects_minimum_spacing(fake_clock):
    dispatched = []
    responses = [httpx.Response(429), httpx.Response(200, json=[])]

    def handler(request: httpx.Request) -> httpx.Response:
        dispatched.append(fake_clock())
        return responses.pop(0)

    async def run():
        queue = _queue(mock_client(handler), fake_clock, min_interval=0.5, throttle_cooldown=0.125)
        await queue.submit(POINT, "2024-02")

    asyncio.run(run())
    assert dispatched == [0.0, 0.5]
    assert fake_clock.sleeps == [0.125, 0.375]
