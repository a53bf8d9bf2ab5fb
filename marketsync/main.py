"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import structlog

from marketsync import __version__
from marketsync.api.routes import router
from marketsync.config import settings
from marketsync.database import init_db
from marketsync.logging_config import configure_logging
from marketsync.monitoring.metrics import registry

configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("app_started", app_name=settings.app_name, env=settings.app_env, version=__version__)
    yield
    logger.info("app_stopped")


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="Amazon Selling Partner API report sync and finance reconciliation",
    lifespan=lifespan,
)

app.include_router(router, prefix="/api/v1")


@app.get("/")
async def root():
    """Root endpoint."""
    return {"name": settings.app_name, "status": "running", "version": __version__}


if settings.metrics_enabled:
    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics."""
        return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
