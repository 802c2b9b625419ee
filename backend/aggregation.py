"""MetroSafe Backend — Crime summary aggregation"""

import math
from collections import Counter
from typing import Iterable

from models import CrimeSummary, IncidentRecord, StreetCount, TemporalDistribution

TOP_STREETS = 5
BRIEFING_CATEGORY_LIMIT = 10


def aggregate(records: Iterable[IncidentRecord]) -> CrimeSummary:
    """Category counts, top-5 streets, per-month histogram and date range."""
    records = list(records)
    categories = Counter(r.category for r in records)
    streets = Counter(r.streetName for r in records)
    months = Counter(r.month for r in records)

    # YYYY-MM is zero-padded, so string order is chronological
    date_range = f"{min(months)} to {max(months)}" if months else "N/A"

    return CrimeSummary(
        totalCrimes=len(records),
        dateRange=date_range,
        categoryCounts=dict(categories),
        topStreets=[StreetCount(street=s, count=c) for s, c in streets.most_common(TOP_STREETS)],
        temporalDistribution=TemporalDistribution(byMonth=dict(months)),
    )


def get_category_percentage(summary: CrimeSummary, category: str) -> int:
    if summary.totalCrimes == 0:
        return 0
    share = 100 * summary.categoryCounts.get(category, 0) / summary.totalCrimes
    return math.floor(share + 0.5)  # half-up, not banker's rounding


def format_category_name(category: str) -> str:
    """'violent-crime' → 'Violent Crime'"""
    return " ".join(word[:1].upper() + word[1:] for word in category.split("-"))


def format_summary_for_briefing(location: str, summary: CrimeSummary) -> str:
    """Deterministic plain-text rendering handed to the narrative provider."""
    ranked = sorted(summary.categoryCounts.items(), key=lambda kv: (-kv[1], kv[0]))
    category_lines = "\n".join(
        f"- {format_category_name(category)}: {count}"
        for category, count in ranked[:BRIEFING_CATEGORY_LIMIT]
    )
    street_lines = "\n".join(f"- {s.street}: {s.count} incidents" for s in summary.topStreets)

    return f"""Analyze this area using ONLY the data below.

Location: {location}
Total Incidents: {summary.totalCrimes}
Date Range: {summary.dateRange}

Crime Categories (count):
{category_lines or "- None recorded"}

Hotspot Streets (incidents):
{street_lines or "- None recorded"}

Additional Data (optional):
- Comparative Baseline: Not provided
- Temporal Breakdown: Not provided

Generate a concise safety briefing. Follow the required headings and rules from the system prompt."""
