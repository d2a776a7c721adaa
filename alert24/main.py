"""Main FastAPI application."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_database_url, settings
from .database import create_engine, create_session_factory, init_db
from .pipeline import build_pipeline
from .routers import check_results_router, cron_router, incidents_router, status_router
from .services.scheduler import SchedulerService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(config: Optional[Settings] = None, start_scheduler: bool = True, dispatcher=None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``dispatcher`` replaces the notification dispatcher built from settings.
    """
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan - startup and shutdown."""
        logger.info("Starting Alert24")

        # Initialize database
        engine = create_engine(get_database_url(config))
        await init_db(engine, config.data_path)
        logger.info("Database initialized")

        session_factory = create_session_factory(engine)
        pipeline = build_pipeline(config, session_factory, dispatcher=dispatcher)
        scheduler = SchedulerService(
            pipeline,
            tick_seconds=config.scheduler_tick_seconds,
            max_concurrent=config.max_concurrent_tasks,
            retention_days=config.check_result_retention_days,
        )

        app.state.config = config
        app.state.session_factory = session_factory
        app.state.pipeline = pipeline
        app.state.scheduler = scheduler

        if start_scheduler:
            scheduler.start()

        yield

        # Shutdown
        scheduler.stop()
        await engine.dispose()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Alert24",
        description="Status pages, monitoring and incident escalation",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict to your domain
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(check_results_router)
    app.include_router(cron_router)
    app.include_router(incidents_router)
    app.include_router(status_router)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
