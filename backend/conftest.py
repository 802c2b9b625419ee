import asyncio
from typing import Callable

import httpx
import pytest


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def make_crime(persistent_id: str, category: str = "burglary", street: str = "On or near High Street",
               month: str = "2024-02", crime_id: int = 1) -> dict:
    """Street-crime JSON as data.police.uk returns it."""
    return {
        "category": category,
        "location_type": "Force",
        "location": {
            "latitude": "51.507400",
            "longitude": "-0.127800",
            "street": {"id": 1234, "name": street},
        },
        "context": "",
        "outcome_status": {"category": "Under investigation", "date": month},
        "persistent_id": persistent_id,
        "id": crime_id,
        "location_subtype": "",
        "month": month,
    }


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
