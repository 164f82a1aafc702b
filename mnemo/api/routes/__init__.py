"""API route modules."""

from mnemo.api.routes.health import router as health_router
from mnemo.api.routes.memories import router as memories_router
from mnemo.api.routes.status import router as status_router

__all__ = [
    "health_router",
    "memories_router",
    "status_router",
]
