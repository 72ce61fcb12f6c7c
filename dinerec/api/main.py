"""FastAPI application main module.

This module builds the FastAPI application for the DineRec recommendation
service: routers, the error handler for ``DineRecException``, request
logging, and the health and metrics endpoints.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dinerec import __version__
from dinerec.api.logging_config import RequestLoggingMiddleware, setup_logging
from dinerec.api.metrics import metrics_service
from dinerec.api.routes import recommend, training
from dinerec.config import Settings
from dinerec.config import settings as default_settings
from dinerec.exceptions import DineRecException
from dinerec.recommender.data import InMemoryDataSource
from dinerec.recommender.service import RecommendationService
from dinerec.recommender.utils import check_model_exists

logger = logging.getLogger(__name__)


def build_default_service(settings: Settings) -> RecommendationService:
    """Create a service over the configured CSV data and saved models.

    Without a data directory the service starts with an empty in-memory
    data source. Saved model artifacts are loaded when present.
    """
    if settings.data_dir:
        data_source = InMemoryDataSource.from_csv(settings.data_dir)
    else:
        logger.warning("DINEREC_DATA_DIR not set, starting with an empty catalog")
        data_source = InMemoryDataSource()

    service = RecommendationService(data_source, settings)
    if check_model_exists(settings.model_dir):
        try:
            service.load(settings.model_dir)
        except Exception as e:
            logger.error(
                f"Failed to load saved models from {settings.model_dir}: {e}",
                exc_info=True,
            )
    return service


def create_app(
    service: Optional[RecommendationService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        service: Service to serve. Built from ``settings`` when omitted.
        settings: Settings to use (default: environment settings).

    Returns:
        Configured FastAPI application with ``app.state.service`` set.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        logger.info(f"{settings.app_name} {__version__} started")
        yield

    app = FastAPI(
        title=settings.app_name,
        description="Hybrid restaurant recommendation service",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.state.service = service or build_default_service(settings)

    app.include_router(recommend.router)
    app.include_router(training.router)

    @app.exception_handler(DineRecException)
    async def dinerec_exception_handler(request: Request, exc: DineRecException) -> JSONResponse:
        logger.warning(
            exc.message,
            extra={
                "path": str(request.url.path),
                "status_code": exc.status_code,
                "error_type": type(exc).__name__,
            },
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": type(exc).__name__,
                "message": exc.message,
                "details": exc.details,
            },
        )

    @app.get("/ping")
    def ping() -> Dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics() -> Dict:
        """Recommendation latency, strategy and fallback counters."""
        return metrics_service.get_metrics()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dinerec.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
