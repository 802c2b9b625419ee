"""MetroSafe Backend — Rate-limited street-crime request queue

data.police.uk enforces a single per-client request rate, so every fetch in
the process goes through one RateLimitedQueue. Requests are dispatched one at
a time, in submission order, with a minimum gap between HTTP calls. A slow or
retrying request holds up everything queued behind it.

Per request:
  429        -> cool down, retry (RateLimitExceeded once attempts run out)
  404        -> no data for that point/month, returns []
  other/net  -> linear backoff, retry (TransientFetchFailure once attempts run out)
  2xx        -> parsed IncidentRecords
"""

import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from config import (
    POLICE_API_BASE, REQUEST_INTERVAL_S, MAX_ATTEMPTS,
    THROTTLE_COOLDOWN_S, RETRY_BACKOFF_S,
)
from errors import RateLimitExceeded, TransientFetchFailure
from models import Coordinate, IncidentRecord

logger = logging.getLogger("metrosafe.queue")


@dataclass
class QueuedRequest:
    coordinate: Coordinate
    month: str
    future: asyncio.Future

    @property
    def label(self) -> str:
        return f"({self.coordinate.lat:.4f}, {self.coordinate.lon:.4f}) {self.month}"


class RateLimitedQueue:
    """Serial, time-spaced dispatcher for street-crime lookups.

    One worker task owns the FIFO. Callers ``await submit(...)`` and are
    resumed when their request settles. If a caller cancels its await, the
    request is dropped before dispatch, or stops at the next retry boundary
    if it is already in flight.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: str = POLICE_API_BASE,
        min_interval: float = REQUEST_INTERVAL_S,
        max_attempts: int = MAX_ATTEMPTS,
        throttle_cooldown: float = THROTTLE_COOLDOWN_S,
        retry_backoff: float = RETRY_BACKOFF_S,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._client = client
        self.base_url = base_url.rstrip("/")
        self.min_interval = min_interval
        self.max_attempts = max_attempts
        self.throttle_cooldown = throttle_cooldown
        self.retry_backoff = retry_backoff
        self._clock = clock
        self._sleep = sleep

        self._pending: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[asyncio.Task] = None
        self._dispatching = False
        self._last_dispatch: Optional[float] = None
        self._closed = False
        self.stats = {"dispatched": 0, "retries": 0, "throttled": 0, "dropped": 0}

    @property
    def is_dispatching(self) -> bool:
        return self._dispatching

    @property
    def pending(self) -> int:
        return self._pending.qsize() if self._pending is not None else 0

    async def submit(self, coordinate: Coordinate, month: str) -> list[IncidentRecord]:
        """Queue a lookup for ``coordinate`` in ``month`` (YYYY-MM) and wait for it."""
        if self._closed:
            raise RuntimeError("RateLimitedQueue is closed")
        loop = asyncio.get_running_loop()
        self._ensure_worker(loop)
        request = QueuedRequest(coordinate=coordinate, month=month, future=loop.create_future())
        self._pending.put_nowait(request)
        return await request.future

    async def aclose(self):
        """Stop the worker and fail anything still queued. Does not close the HTTP client."""
        self._closed = True
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        if self._pending is not None:
            while not self._pending.empty():
                request = self._pending.get_nowait()
                if not request.future.done():
                    request.future.set_exception(RuntimeError("RateLimitedQueue closed before dispatch"))

    # ── worker ──

    def _ensure_worker(self, loop: asyncio.AbstractEventLoop):
        if self._loop is not loop:
            # Queue primitives are bound to the loop that first waits on them
            self._loop = loop
            self._pending = asyncio.Queue()
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._dispatch_loop())

    async def _dispatch_loop(self):
        while True:
            request = await self._pending.get()
            if request.future.done():
                self.stats["dropped"] += 1
                logger.debug(f"Dropped cancelled request {request.label}")
                continue

            self._dispatching = True
            try:
                await self._wait_for_slot()
                if request.future.done():
                    self.stats["dropped"] += 1
                    continue
                records = await self._fetch_with_retry(request)
            except asyncio.CancelledError:
                if not request.future.done():
                    request.future.cancel()
                raise
            except Exception as e:
                if not request.future.done():
                    request.future.set_exception(e)
            else:
                if not request.future.done():
                    request.future.set_result(records)
            finally:
                self._dispatching = False
            # Waiters see the settled future (and may cancel queued siblings)
            # before the next request is taken
            await asyncio.sleep(0)

    async def _wait_for_slot(self):
        if self._last_dispatch is None:
            return
        wait = self._last_dispatch + self.min_interval - self._clock()
        if wait > 0:
            await self._sleep(wait)

    async def _fetch_with_retry(self, request: QueuedRequest) -> list[IncidentRecord]:
        url = f"{self.base_url}/crimes-street/all-crime"
        params = {
            "lat": request.coordinate.lat,
            "lng": request.coordinate.lon,
            "date": request.month,
        }

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                await self._wait_for_slot()
            if request.future.cancelled():
                logger.info(f"Abandoning {request.label}: caller cancelled")
                return []

            self._last_dispatch = self._clock()
            self.stats["dispatched"] += 1
            status: Optional[int] = None
            try:
                r = await self._client.get(url, params=params)
                status = r.status_code
                if status == 429:
                    self.stats["throttled"] += 1
                    if attempt >= self.max_attempts:
                        logger.warning(f"Still throttled after {attempt} attempts for {request.label}")
                        raise RateLimitExceeded(attempt)
                    logger.info(f"Throttled on {request.label} (attempt {attempt}), cooling down {self.throttle_cooldown}s")
                    await self._sleep(self.throttle_cooldown)
                    continue
                if status == 404:
                    return []
                if not r.is_success:
                    raise TransientFetchFailure(f"HTTP {status}", status_code=status, attempts=attempt)
                payload = r.json()
                if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
                    raise TransientFetchFailure("Unexpected street-crime payload", status_code=status, attempts=attempt)
                return [IncidentRecord.from_api(item) for item in payload]
            except (httpx.HTTPError, TransientFetchFailure, ValueError) as e:
                if attempt >= self.max_attempts:
                    logger.warning(f"Giving up on {request.label} after {attempt} attempts: {e}")
                    if isinstance(e, TransientFetchFailure):
                        e.attempts = attempt
                        raise
                    raise TransientFetchFailure(str(e) or type(e).__name__, status_code=status, attempts=attempt) from e
                self.stats["retries"] += 1
                delay = self.retry_backoff * attempt
                logger.info(f"Retrying {request.label} in {delay}s (attempt {attempt} failed: {e})")
                await self._sleep(delay)
