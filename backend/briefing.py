"""MetroSafe Backend — Narrative safety briefing via Gemini

The key comes from the caller and is passed straight through to Google;
it is never stored. A briefing is a best-effort extra, so provider failures
come back as a markdown error note instead of an exception.
"""

import hashlib
import logging
import threading
from typing import Optional

from cachetools import LRUCache

from aggregation import format_summary_for_briefing
from config import GEMINI_API_KEY, GEMINI_MODEL
from models import CrimeSummary

logger = logging.getLogger("metrosafe.briefing")

_BRIEFING_CACHE = LRUCache(maxsize=128)
_BRIEFING_CACHE_LOCK = threading.Lock()

SYSTEM_PROMPT = """You are a Safety Analyst interpreting official UK police street-level crime statistics for London, UK.

SOURCE CONSTRAINTS
- Use ONLY the data provided in the user message (derived from data.police.uk).
- Do NOT use general knowledge about London, postcodes, boroughs, landmarks, or "typical" crime patterns.
- Do NOT introduce any street or place names that are not explicitly present in the input.

EVIDENCE RULE (HARD)
- Every factual claim must be directly supported by the provided input.
- If the input lacks the information a required section needs, write exactly: "Not available in provided data."
- Never invent statistics, rankings, trends, or comparisons.
- Do not infer time-of-day or day-of-week patterns unless the input includes that breakdown.

RISK RATING RULE (HARD)
- Without a comparative baseline (borough average, London average, prior month), output:
  Overall Safety Assessment: "Moderate Risk (no comparative baseline provided)"
- Only output "Low Risk" or "High Risk" if the input includes an explicit baseline or threshold.

HOTSPOT GUIDANCE RULE (HARD)
- Describe "higher concentration locations" only from the provided hotspot list.
- Never label streets as "safe".

OUTPUT FORMAT (MARKDOWN)
Use exactly these headings in this order:
1. Overall Safety Assessment
2. Top Crime Categories
3. Temporal Patterns
4. Hotspot-Aware Guidance
5. Positive Notes
6. Data Quality Notes

STYLE
- Balanced, factual, concise.
- Bullet points for recommendations.
- No alarmist language."""

UNAVAILABLE_MESSAGE = """## AI Analysis Unavailable

To enable AI-generated safety briefings:
1. Get a free API key from [Google AI Studio](https://aistudio.google.com/apikey)
2. Open Settings (gear icon)
3. Paste your key and click "Save"

Your key is stored locally and never shared."""


def _error_message(error: Exception) -> str:
    return f"""## Error Generating Briefing

There was an error connecting to the AI service. Please check your API key in Settings and try again.

Error: {error}"""


async def _call_gemini(api_key: str, prompt: str) -> str:
    import google.generativeai as genai
    genai.configure(api_key=api_key)
    model = genai.GenerativeModel(GEMINI_MODEL, system_instruction=SYSTEM_PROMPT)
    result = await model.generate_content_async(
        prompt,
        generation_config=genai.types.GenerationConfig(
            temperature=0.3,
            max_output_tokens=1000,
        ),
    )
    return result.text.strip()


async def generate_briefing(location: str, summary: CrimeSummary, api_key: Optional[str] = None) -> str:
    """Markdown briefing for ``summary``; never raises for provider trouble."""
    key = api_key or GEMINI_API_KEY
    if not key:
        return UNAVAILABLE_MESSAGE

    prompt = format_summary_for_briefing(location, summary)
    # One entry per (key, prompt); only a digest of the key is kept
    cache_key = (hashlib.sha256(key.encode()).hexdigest(), prompt)
    with _BRIEFING_CACHE_LOCK:
        if cache_key in _BRIEFING_CACHE:
            return _BRIEFING_CACHE[cache_key]

    try:
        text = await _call_gemini(key, prompt)
    except Exception as e:
        logger.warning(f"Gemini briefing error: {e}")
        return _error_message(e)

    if not text:
        return "Unable to generate briefing."

    with _BRIEFING_CACHE_LOCK:
        _BRIEFING_CACHE[cache_key] = text
    logger.info(f"Generated briefing for {location} ({len(text)} chars)")
    return text


def clear_briefing_cache():
    with _BRIEFING_CACHE_LOCK:
        _BRIEFING_CACHE.clear()
