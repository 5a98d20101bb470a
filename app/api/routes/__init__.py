from __future__ import annotations

from app.api.routes.health import router as health_router
from app.api.routes.ratelimit import router as ratelimit_router

__all__ = ["health_router", "ratelimit_router"]
