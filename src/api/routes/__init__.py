"""
Route modules for the API.

Each module exports a FastAPI APIRouter with endpoints
for a specific domain/feature.
"""

from api.routes import health
from api.routes import feed
from api.routes import experiments

__all__ = ["health", "feed", "experiments"]
