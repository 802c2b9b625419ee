"""
MetroSafe Backend — FastAPI entry point.
Logic is split across:
  config.py, models.py, errors.py, cache.py, geo.py, geocoding.py,
  rate_queue.py, police_api.py, aggregation.py, briefing.py, routes.py
"""

import logging

logging.basicConfig(level=logging.INFO)

from routes import app  # noqa: F401

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
