"""API routers."""
from .heartbeat import router as heartbeat_router
from .monitors import router as monitors_router
from .statistics import router as statistics_router

__all__ = ["heartbeat_router", "monitors_router", "statistics_router"]
