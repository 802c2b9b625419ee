"""MetroSafe Backend — Pipeline errors

A valid "no data" answer from an upstream is never an exception; it is an
empty list. Everything here is user-visible once it leaves the pipeline.
"""

from typing import Optional


class MetroSafeError(Exception):
    """Base class for errors surfaced to the caller of the pipeline."""


class OutOfRegion(MetroSafeError):
    def __init__(self, lat: float, lon: float, message: str = "This location is outside Greater London boundaries."):
        super().__init__(message)
        self.lat = lat
        self.lon = lon


class LocationNotFound(MetroSafeError):
    def __init__(self, query: str):
        super().__init__(f"No location found for '{query}'")
        self.query = query


class RateLimitExceeded(MetroSafeError):
    def __init__(self, attempts: int):
        super().__init__(f"Rate limit exceeded after {attempts} attempts")
        self.attempts = attempts


class TransientFetchFailure(MetroSafeError):
    def __init__(self, message: str, status_code: Optional[int] = None, attempts: int = 0):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts


class AreaFetchFailed(MetroSafeError):
    """A grid sample exhausted its retries; the whole area fetch is void.

    Built with ``for_sample`` so the raised error is also an instance of the
    sample's own failure type: callers can catch ``RateLimitExceeded`` or
    ``TransientFetchFailure`` straight from an area fetch.
    """

    def __init__(self, lat: float, lon: float, month: str, cause: Optional[MetroSafeError] = None):
        MetroSafeError.__init__(self, f"Fetch failed for sample ({lat:.4f}, {lon:.4f}) in {month}")
        self.lat = lat
        self.lon = lon
        self.month = month
        self.cause = cause
        self.attempts = getattr(cause, "attempts", 0)
        self.status_code = getattr(cause, "status_code", None)

    @classmethod
    def for_sample(cls, lat: float, lon: float, month: str, cause: MetroSafeError) -> "AreaFetchFailed":
        if isinstance(cause, RateLimitExceeded):
            return SampleRateLimited(lat, lon, month, cause)
        if isinstance(cause, TransientFetchFailure):
            return SampleFetchFailure(lat, lon, month, cause)
        return cls(lat, lon, month, cause)


class SampleRateLimited(AreaFetchFailed, RateLimitExceeded):
    pass


class SampleFetchFailure(AreaFetchFailed, TransientFetchFailure):
    pass
