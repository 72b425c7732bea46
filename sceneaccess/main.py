import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Plain os.getenv readers (SKIP_ENV_VALIDATION, TEST_DATABASE_URL) see .env too
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from sceneaccess.api import access, health, metrics, payments, stats
from sceneaccess.api.deps import Services, build_services
from sceneaccess.core import database
from sceneaccess.core.config import Settings, settings, validate_config
from sceneaccess.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from sceneaccess.core.logging import configure_logging
from sceneaccess.core.middleware.metrics import MetricsMiddleware
from sceneaccess.core.middleware.request_id import RequestIdMiddleware
from sceneaccess.core.validation import validate_env


logger = logging.getLogger("sceneaccess")


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg = app.state.services.settings
    logger.info(
        "sceneaccess.start",
        extra={"reason": f"store={cfg.STORE_BACKEND} rate_limit={cfg.RATE_LIMIT_BACKEND} billing={app.state.services.billing.enabled}"},
    )
    if cfg.STORE_BACKEND == "sql" and cfg.DB_AUTO_CREATE:
        await asyncio.to_thread(database.create_all_tables)
        logger.info("db.schema_ready")
    try:
        yield
    finally:
        if cfg.STORE_BACKEND == "sql":
            database.dispose_engine()
        logger.info("sceneaccess.stop")


def create_app(services: Optional[Services] = None, cfg: Optional[Settings] = None) -> FastAPI:
    cfg = cfg or (services.settings if services else settings)

    app = FastAPI(title="sceneaccess", lifespan=lifespan)
    app.state.services = services or build_services(cfg)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(access.router, prefix="/api", tags=["access"])
    app.include_router(payments.router, prefix="/api", tags=["payments"])
    app.include_router(stats.router, prefix="/api", tags=["stats"])
    app.include_router(health.router, tags=["health"])
    app.include_router(metrics.router, tags=["metrics"])

    return app


configure_logging(settings.ENV)
validate_env()
validate_config()

app = create_app()


def init_db() -> None:
    """Console entry point: create any missing tables in DATABASE_URL."""
    database.init_engine(settings.DATABASE_URL)
    database.create_all_tables()
    logger.info("db.schema_ready")
    database.dispose_engine()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run(
        "sceneaccess.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level="info",
    )


if __name__ == "__main__":
    run()
