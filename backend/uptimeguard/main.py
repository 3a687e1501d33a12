"""Main FastAPI application - API layer plus the scheduled monitoring core."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import async_session, close_db, init_db
from .routers import heartbeat_router, monitors_router, statistics_router
from .services.pipeline import build_core
from .services.scheduler import SchedulerService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info(f"Starting UptimeGuard (region={settings.region})")

    await init_db()
    logger.info("Database initialized")

    scheduler = SchedulerService(app.state.core)
    scheduler.start()
    app.state.scheduler = scheduler

    yield

    scheduler.stop()
    await app.state.core.executor.transport.aclose()
    await close_db()
    logger.info("Shutdown complete")


def create_app(core=None, run_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    ``core`` defaults to one built over the configured database; the
    scheduler only runs when ``run_lifespan`` is set.
    """
    app = FastAPI(
        title="UptimeGuard",
        description="Uptime monitoring - HTTP, keyword, ping, port, TLS and heartbeat checks",
        version="1.0.0",
        lifespan=lifespan if run_lifespan else None,
    )
    app.state.core = core or build_core(async_session)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(heartbeat_router)
    app.include_router(monitors_router)
    app.include_router(statistics_router)

    @app.get("/health")
    async def health_check():
        scheduler = getattr(app.state, "scheduler", None)
        return {
            "status": "healthy",
            "region": settings.region,
            "scheduler": bool(scheduler and scheduler.running),
        }

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
