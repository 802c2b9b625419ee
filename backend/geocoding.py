"""MetroSafe Backend — Location resolution (postcodes.io → Nominatim)

Postcodes.io gives exact postcode / outcode centroids, so it is tried first for
anything shaped like a UK postcode. Everything else, and every postcode miss,
goes to Nominatim constrained to the region's viewbox. Only an explicit
out-of-region answer stops the chain early.
"""

import re
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx

from cache import TTLCache
from config import POSTCODES_API_BASE, NOMINATIM_BASE, USER_AGENT, REGION_NAME
from errors import LocationNotFound, OutOfRegion, TransientFetchFailure
from geo import REGION
from models import GeoBounds, PlaceSuggestion, ResolvedLocation

logger = logging.getLogger("metrosafe.geocoding")

# Full postcode, space optional: SW1A 1AA, SW1A1AA, E1 6AN, EC1A 1BB, W1A 0AX
UK_POSTCODE_RE = re.compile(r"^([A-Z]{1,2}[0-9][0-9A-Z]?)\s?([0-9][A-Z]{2})$", re.IGNORECASE)
# Outward code only: SW1A, E1, EC1A, W1A
UK_OUTCODE_RE = re.compile(r"^[A-Z]{1,2}[0-9][0-9A-Z]?$", re.IGNORECASE)

MIN_SUGGEST_CHARS = 3


# ─────────────────────────── Query classification ──────────────

@dataclass(frozen=True)
class PreciseCode:
    code: str     # normalised full postcode, no space
    outcode: str  # its outward part, used when the full code misses


@dataclass(frozen=True)
class AreaCode:
    outcode: str


@dataclass(frozen=True)
class FreeText:
    text: str


QueryKind = Union[PreciseCode, AreaCode, FreeText]


def classify_query(query: str) -> QueryKind:
    trimmed = query.strip()
    upper = trimmed.upper()
    m = UK_POSTCODE_RE.match(upper)
    if m:
        return PreciseCode(code=m.group(1) + m.group(2), outcode=m.group(1))
    if UK_OUTCODE_RE.match(upper):
        return AreaCode(outcode=upper)
    return FreeText(text=trimmed)


# ─────────────────────────── Providers ─────────────────────────

class PostcodesClient:
    """postcodes.io lookups. ``None`` means no such code; out-of-region raises."""

    def __init__(self, client: httpx.AsyncClient, base_url: str = POSTCODES_API_BASE,
                 region: GeoBounds = REGION):
        self._client = client
        self.base_url = base_url.rstrip("/")
        self.region = region

    async def _get_result(self, path: str) -> Optional[dict[str, Any]]:
        r = await self._client.get(f"{self.base_url}/{path}")
        if r.status_code == 404:
            return None
        r.raise_for_status()
        body = r.json()
        if not isinstance(body, dict):
            raise TransientFetchFailure(f"Unexpected postcodes.io payload for {path}", status_code=r.status_code)
        result = body.get("result")
        return result if isinstance(result, dict) else None

    async def lookup_postcode(self, code: str) -> Optional[ResolvedLocation]:
        result = await self._get_result(f"postcodes/{code}")
        if not result or result.get("latitude") is None or result.get("longitude") is None:
            return None

        lat, lon = float(result["latitude"]), float(result["longitude"])
        if not self.region.contains(lat, lon):
            raise OutOfRegion(lat, lon, "This postcode is outside Greater London boundaries.")

        parts = [
            result.get("postcode"),
            result.get("admin_ward"),
            result.get("admin_district"),
            result.get("region"),
        ]
        return ResolvedLocation(
            lat=lat, lon=lon,
            displayName=", ".join(p for p in parts if p),
            source="postcode",
        )

    async def lookup_outcode(self, outcode: str) -> Optional[ResolvedLocation]:
        result = await self._get_result(f"outcodes/{outcode}")
        if not result or result.get("latitude") is None or result.get("longitude") is None:
            return None

        lat, lon = float(result["latitude"]), float(result["longitude"])
        if not self.region.contains(lat, lon):
            raise OutOfRegion(lat, lon, "This postcode area is outside Greater London boundaries.")

        districts = result.get("admin_district") or []
        if isinstance(districts, str):
            districts = [districts]
        district = districts[0] if districts else REGION_NAME
        return ResolvedLocation(
            lat=lat, lon=lon,
            displayName=f"{result.get('outcode', outcode)}, {district}",
            source="outcode",
        )


class NominatimClient:
    """OpenStreetMap Nominatim search, biased to the region's viewbox."""

    def __init__(self, client: httpx.AsyncClient, base_url: str = NOMINATIM_BASE,
                 region: GeoBounds = REGION, region_name: str = REGION_NAME,
                 user_agent: str = USER_AGENT):
        self._client = client
        self.base_url = base_url
        self.region = region
        self.region_name = region_name
        self.user_agent = user_agent

    async def search(self, query: str, limit: int = 1) -> list[dict[str, Any]]:
        params = {
            "q": f"{query}, {self.region_name}",
            "format": "json",
            "addressdetails": "1",
            "limit": str(limit),
            "viewbox": self.region.viewbox(),
            "bounded": "1",
        }
        r = await self._client.get(self.base_url, params=params, headers={"User-Agent": self.user_agent})
        r.raise_for_status()
        body = r.json()
        if not isinstance(body, list):
            raise TransientFetchFailure("Unexpected Nominatim payload", status_code=r.status_code)
        return [item for item in body if isinstance(item, dict)]


def _coordinates(item: dict[str, Any]) -> Optional[tuple[float, float]]:
    try:
        return float(item["lat"]), float(item["lon"])
    except (KeyError, TypeError, ValueError):
        return None


def _to_suggestion(item: dict[str, Any]) -> Optional[PlaceSuggestion]:
    coords = _coordinates(item)
    if coords is None:
        return None
    return PlaceSuggestion(
        placeId=int(item.get("place_id", 0)),
        lat=coords[0],
        lon=coords[1],
        displayName=item.get("display_name", ""),
        type=item.get("type", ""),
        category=item.get("class", ""),
        boundingBox=[str(v) for v in item.get("boundingbox", [])],
    )


# ─────────────────────────── Resolver ──────────────────────────

class LocationResolver:
    """Free-text query → coordinates inside the serviceable region.

    ``precise_first=False`` skips postcodes.io and sends everything to the
    general geocoder.
    """

    def __init__(
        self,
        postcodes: PostcodesClient,
        nominatim: NominatimClient,
        *,
        region: GeoBounds = REGION,
        precise_first: bool = True,
        cache: Optional[TTLCache] = None,
        suggestions_cache: Optional[TTLCache] = None,
    ):
        self.postcodes = postcodes
        self.nominatim = nominatim
        self.region = region
        self.precise_first = precise_first
        self._cache = cache
        self._suggestions_cache = suggestions_cache

    def from_coordinates(self, lat: float, lon: float) -> ResolvedLocation:
        if not self.region.contains(lat, lon):
            raise OutOfRegion(lat, lon)
        return ResolvedLocation(lat=lat, lon=lon, displayName=f"{lat:.5f}, {lon:.5f}", source="coordinates")

    async def resolve(self, query: str) -> ResolvedLocation:
        text = query.strip()
        if not text:
            raise LocationNotFound(query)

        cache_key = f"resolve:{' '.join(text.upper().split())}"
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.info(f"Geocode cache hit for {text}")
                return cached

        location = None
        if self.precise_first:
            location = await self._resolve_precise(classify_query(text))
        if location is None:
            location = await self._resolve_free_text(text)

        if self._cache is not None:
            self._cache.set(cache_key, location)
        return location

    async def suggest(self, query: str, limit: int = 5) -> list[PlaceSuggestion]:
        """Interactive suggestions. Best effort: provider failures give an empty list."""
        text = query.strip()
        if len(text) < MIN_SUGGEST_CHARS:
            return []

        cache_key = f"suggest:{limit}:{text.lower()}"
        if self._suggestions_cache is not None:
            cached = self._suggestions_cache.get(cache_key)
            if cached is not None:
                return cached

        try:
            results = await self.nominatim.search(text, limit=limit)
            suggestions = [s for s in map(_to_suggestion, results) if s is not None]
        except (httpx.HTTPError, TransientFetchFailure, ValueError) as e:
            logger.warning(f"Suggestion lookup failed for {text}: {e}")
            return []

        # bounded=1 is only a hint to Nominatim
        suggestions = [s for s in suggestions if self.region.contains(s.lat, s.lon)]
        if self._suggestions_cache is not None:
            self._suggestions_cache.set(cache_key, suggestions)
        return suggestions

    async def _resolve_precise(self, kind: QueryKind) -> Optional[ResolvedLocation]:
        if isinstance(kind, FreeText):
            return None
        if isinstance(kind, PreciseCode):
            location = await self._try_postcodes(self.postcodes.lookup_postcode, kind.code)
            if location is not None:
                return location
        return await self._try_postcodes(self.postcodes.lookup_outcode, kind.outcode)

    async def _try_postcodes(self, lookup, code: str) -> Optional[ResolvedLocation]:
        # OutOfRegion propagates and ends the chain
        try:
            return await lookup(code)
        except (httpx.HTTPError, TransientFetchFailure, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Postcodes.io lookup failed for {code}, falling back: {e}")
            return None

    async def _resolve_free_text(self, text: str) -> ResolvedLocation:
        try:
            results = await self.nominatim.search(text, limit=1)
        except httpx.HTTPStatusError as e:
            raise TransientFetchFailure(f"Geocoding failed: HTTP {e.response.status_code}",
                                        status_code=e.response.status_code) from e
        except (httpx.HTTPError, ValueError) as e:
            raise TransientFetchFailure(f"Geocoding failed: {e}") from e

        if not results:
            raise LocationNotFound(text)

        top = results[0]
        coords = _coordinates(top)
        if coords is None:
            raise TransientFetchFailure(f"Geocoding failed: no coordinates in result for {text}")
        lat, lon = coords
        if not self.region.contains(lat, lon):
            raise OutOfRegion(lat, lon)
        return ResolvedLocation(lat=lat, lon=lon, displayName=top.get("display_name", text), source="nominatim")
