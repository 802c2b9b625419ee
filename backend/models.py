"""MetroSafe Backend — Pydantic Models"""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field

from config import DEFAULT_RADIUS_KM, MAX_RADIUS_KM


class Coordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lon: float


class GeoBounds(BaseModel):
    """Fixed serviceable rectangle. Bounds are inclusive."""

    model_config = ConfigDict(frozen=True)

    minLat: float
    maxLat: float
    minLon: float
    maxLon: float

    def contains(self, lat: float, lon: float) -> bool:
        return self.minLat <= lat <= self.maxLat and self.minLon <= lon <= self.maxLon

    def viewbox(self) -> str:
        # Nominatim order: left,top,right,bottom as lon,lat pairs
        return f"{self.minLon},{self.minLat},{self.maxLon},{self.maxLat}"


class OutcomeStatus(BaseModel):
    category: str
    date: Optional[str] = None


class IncidentRecord(BaseModel):
    persistentId: str
    category: str
    streetName: str
    latitude: str
    longitude: str
    month: str  # YYYY-MM
    outcomeStatus: Optional[OutcomeStatus] = None
    id: Optional[int] = None
    locationType: str = ""
    locationSubtype: str = ""
    context: str = ""

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "IncidentRecord":
        """Build from the data.police.uk street-crime JSON shape."""
        location = payload.get("location") or {}
        street = location.get("street") or {}
        outcome = payload.get("outcome_status")
        return cls(
            persistentId=payload.get("persistent_id") or "",
            category=payload.get("category", "unknown"),
            streetName=street.get("name", ""),
            latitude=str(location.get("latitude", "")),
            longitude=str(location.get("longitude", "")),
            month=payload.get("month", ""),
            outcomeStatus=OutcomeStatus(**outcome) if outcome else None,
            id=payload.get("id"),
            locationType=payload.get("location_type") or "",
            locationSubtype=payload.get("location_subtype") or "",
            context=payload.get("context") or "",
        )

    @property
    def dedup_key(self) -> str:
        # Anti-social behaviour records come back with an empty persistent_id
        if self.persistentId:
            return self.persistentId
        return f"id:{self.id}"


class FetchProgress(BaseModel):
    completed: int = 0
    total: int = 0


class StreetCount(BaseModel):
    model_config = ConfigDict(frozen=True)

    street: str
    count: int


class TemporalDistribution(BaseModel):
    model_config = ConfigDict(frozen=True)

    byMonth: dict[str, int] = Field(default_factory=dict)


class CrimeSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    totalCrimes: int
    dateRange: str
    categoryCounts: dict[str, int]
    topStreets: list[StreetCount]  # at most 5, count descending
    temporalDistribution: TemporalDistribution


class ResolvedLocation(BaseModel):
    lat: float
    lon: float
    displayName: str
    source: str = ""  # postcode, outcode, nominatim, coordinates


class PlaceSuggestion(BaseModel):
    placeId: int
    lat: float
    lon: float
    displayName: str
    type: str = ""
    category: str = ""
    boundingBox: list[str] = []


class AreaFetchResult(BaseModel):
    records: list[IncidentRecord]
    failedSamples: list[Coordinate] = []
    total: int = 0

    @property
    def complete(self) -> bool:
        return not self.failedSamples


# ─────────────────────────── HTTP bodies ───────────────────────

class AreaSummaryRequest(BaseModel):
    query: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    radiusKm: float = Field(default=DEFAULT_RADIUS_KM, gt=0, le=MAX_RADIUS_KM)
    allowPartial: bool = False


class AreaSummaryResponse(BaseModel):
    location: ResolvedLocation
    month: str
    radiusKm: float
    samples: int
    summary: CrimeSummary
    categoryPercentages: dict[str, int]
    failedSamples: int = 0
    partial: bool = False


class BriefingRequest(BaseModel):
    locationName: str
    summary: CrimeSummary
    apiKey: Optional[str] = None  # passed through to the provider, never stored


class BriefingResponse(BaseModel):
    briefing: str
