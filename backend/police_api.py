"""MetroSafe Backend — Area fetch over the street-crime API

An area is tiled into grid samples, each sample becomes one queued lookup,
and the per-sample lists are merged into one deduplicated record set.
"""

import asyncio
import inspect
import logging
from datetime import date
from typing import Awaitable, Callable, Iterable, Optional, Union

from config import DATA_LAG_MONTHS, DEFAULT_RADIUS_KM
from errors import AreaFetchFailed, MetroSafeError
from geo import generate_grid
from models import AreaFetchResult, Coordinate, FetchProgress, IncidentRecord
from rate_queue import RateLimitedQueue

logger = logging.getLogger("metrosafe.fetch")

ProgressCallback = Callable[[int, int], Union[None, Awaitable[None]]]


def target_month(today: Optional[date] = None, lag_months: int = DATA_LAG_MONTHS) -> str:
    """Latest published month (YYYY-MM), ``lag_months`` before ``today``."""
    today = today or date.today()
    index = today.year * 12 + (today.month - 1) - lag_months
    year, month = divmod(index, 12)
    return f"{year:04d}-{month + 1:02d}"


def merge_records(batches: Iterable[Iterable[IncidentRecord]]) -> list[IncidentRecord]:
    """Flatten per-sample results, keeping the first record seen for each identity.

    Neighbouring samples overlap, so duplicates are expected and dropped silently.
    """
    seen: set[str] = set()
    unique: list[IncidentRecord] = []
    for batch in batches:
        for record in batch:
            key = record.dedup_key
            if key in seen:
                continue
            seen.add(key)
            unique.append(record)
    return unique


class AreaFetchOrchestrator:
    def __init__(self, queue: RateLimitedQueue, *, lag_months: int = DATA_LAG_MONTHS,
                 today: Callable[[], date] = date.today):
        self.queue = queue
        self.lag_months = lag_months
        self._today = today

    def current_month(self) -> str:
        return target_month(self._today(), self.lag_months)

    async def fetch_area(
        self,
        center: Coordinate,
        radius_km: float = DEFAULT_RADIUS_KM,
        on_progress: Optional[ProgressCallback] = None,
        month: Optional[str] = None,
    ) -> list[IncidentRecord]:
        """Fetch every grid sample; any sample that exhausts its retries fails the whole area.

        The failing sample cancels its siblings before the queue takes another
        request, so outstanding samples are never dispatched.
        """
        month = month or self.current_month()
        grid = generate_grid(center, radius_km)
        progress = FetchProgress(total=len(grid))
        logger.info(f"Fetching {len(grid)} samples around ({center.lat:.4f}, {center.lon:.4f}) r={radius_km}km for {month}")

        tasks: list[asyncio.Future] = []

        def cancel_siblings():
            current = asyncio.current_task()
            for task in tasks:
                if task is not current:
                    task.cancel()

        tasks.extend(
            asyncio.ensure_future(self._fetch_sample(point, month, progress, on_progress, cancel_siblings))
            for point in grid
        )
        try:
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for outcome in outcomes:
            if isinstance(outcome, BaseException) and not isinstance(outcome, asyncio.CancelledError):
                raise outcome

        records = merge_records(outcomes)
        logger.info(f"Area fetch for {month}: {len(records)} unique records from {len(grid)} samples")
        return records

    async def fetch_area_partial(
        self,
        center: Coordinate,
        radius_km: float = DEFAULT_RADIUS_KM,
        on_progress: Optional[ProgressCallback] = None,
        month: Optional[str] = None,
    ) -> AreaFetchResult:
        """Like ``fetch_area`` but keeps successful samples and reports the failed ones."""
        month = month or self.current_month()
        grid = generate_grid(center, radius_km)
        progress = FetchProgress(total=len(grid))

        outcomes = await asyncio.gather(
            *(self._fetch_sample(point, month, progress, on_progress) for point in grid),
            return_exceptions=True,
        )

        batches: list[list[IncidentRecord]] = []
        failed: list[Coordinate] = []
        for outcome in outcomes:
            if isinstance(outcome, AreaFetchFailed):
                failed.append(Coordinate(lat=outcome.lat, lon=outcome.lon))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                batches.append(outcome)

        if failed:
            logger.warning(f"Area fetch for {month}: {len(failed)}/{len(grid)} samples failed")
        return AreaFetchResult(records=merge_records(batches), failedSamples=failed, total=len(grid))

    async def _fetch_sample(
        self,
        point: Coordinate,
        month: str,
        progress: FetchProgress,
        on_progress: Optional[ProgressCallback],
        on_failure: Optional[Callable[[], None]] = None,
    ) -> list[IncidentRecord]:
        try:
            records = await self.queue.submit(point, month)
        except MetroSafeError as e:
            if on_failure is not None:
                on_failure()
            await self._report(progress, on_progress)
            raise AreaFetchFailed.for_sample(point.lat, point.lon, month, e) from e
        await self._report(progress, on_progress)
        return records

    async def _report(self, progress: FetchProgress, on_progress: Optional[ProgressCallback]):
        progress.completed += 1
        logger.debug(f"Progress {progress.completed}/{progress.total}")
        if on_progress is None:
            return
        result = on_progress(progress.completed, progress.total)
        if inspect.isawaitable(result):
            await result
