"""FastAPI application factory and configuration."""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from app.config import Settings, get_settings
from app.database import build_engine, build_session_factory, init_db
from app.services.abuse_guard import AbuseGuard
from app.services.geo_resolver import GeoResolver
from app.services.ingestion_pipeline import IngestionPipeline
from app.services.view_gateway import ViewGateway

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings: Settings = app.state.settings
    # Startup
    configure_logging(settings.LOG_LEVEL)
    logger.info(f"Starting reftracker in {settings.ENVIRONMENT} mode")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[-1]}")  # Hide credentials
    await init_db(app.state.engine)
    yield
    # Shutdown
    logger.info("Shutting down reftracker")
    await app.state.geo_resolver.aclose()
    await app.state.engine.dispose()


def create_app(
    settings: Settings | None = None,
    geo_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Components and the database pool are built once here from the settings
    and shared by all requests through `app.state`.

    Args:
        settings: Application settings (loaded from the environment if omitted)
        geo_client: HTTP client for the geolocation provider
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Referral Tracker",
        description="Records referral clicks with geolocation and redirects onward",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    engine = build_engine(settings.DATABASE_URL, echo=settings.LOG_LEVEL.upper() == "DEBUG")
    geo_resolver = GeoResolver(settings, client=geo_client)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.geo_resolver = geo_resolver
    app.state.pipeline = IngestionPipeline(settings, AbuseGuard(settings), geo_resolver)
    app.state.view_gateway = ViewGateway(settings)

    # Mount routes
    from app.routes import ingest, misc, view

    app.include_router(misc.router)
    app.include_router(view.router, tags=["View"])
    app.include_router(ingest.router, tags=["Ingest"])

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "app.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_level=settings.LOG_LEVEL.lower(),
    )
