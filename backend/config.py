"""MetroSafe Backend — Configuration & Constants"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env from project root (one level up from backend/)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path)

# ── Upstream APIs (all keyless) ──
POLICE_API_BASE = os.environ.get("POLICE_API_BASE", "https://data.police.uk/api")
POSTCODES_API_BASE = os.environ.get("POSTCODES_API_BASE", "https://api.postcodes.io")
NOMINATIM_BASE = os.environ.get("NOMINATIM_BASE", "https://nominatim.openstreetmap.org/search")
USER_AGENT = os.environ.get("METROSAFE_USER_AGENT", "MetroSafe/1.0 (https://metrosafe.app)")
HTTP_TIMEOUT_S = float(os.environ.get("HTTP_TIMEOUT_S", "15"))

# ── Narrative provider ──
# Optional server-side default; callers normally pass their own key through.
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "")
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.5-flash-lite")

# ── Request queue tuning ──
# data.police.uk allows 15 req/s: 67ms + 3ms buffer
REQUEST_INTERVAL_S = float(os.environ.get("REQUEST_INTERVAL_S", "0.07"))
MAX_ATTEMPTS = int(os.environ.get("MAX_ATTEMPTS", "3"))
THROTTLE_COOLDOWN_S = float(os.environ.get("THROTTLE_COOLDOWN_S", "1.0"))
RETRY_BACKOFF_S = float(os.environ.get("RETRY_BACKOFF_S", "0.5"))

# ── Area fetch ──
DATA_LAG_MONTHS = int(os.environ.get("DATA_LAG_MONTHS", "2"))  # street data publishes ~2 months late
DEFAULT_RADIUS_KM = 1.0
MAX_RADIUS_KM = 5.0

# Sampling grid degree deltas, calibrated for London's latitude
LAT_DEG_PER_KM = 0.009
LON_DEG_PER_KM = 0.014

# ── Serviceable region ──
REGION_NAME = "London"
REGION_BOUNDS = {
    "minLat": 51.2867,
    "maxLat": 51.6918,
    "minLon": -0.5103,
    "maxLon": 0.3340,
}

# ── Cache TTLs (seconds) ──
GEOCODE_CACHE_TTL = 1800   # 30 min
SUGGEST_CACHE_TTL = 300    # 5 min
AREA_CACHE_TTL = 1800      # 30 min
