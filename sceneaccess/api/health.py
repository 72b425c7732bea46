"""
Liveness and readiness probes.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from sceneaccess.api.deps import Services, get_services
from sceneaccess.core import database


logger = logging.getLogger("sceneaccess")

router = APIRouter(tags=["health"])


def _not_ready(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@router.get("/healthz")
def healthz():
    """Process is up; touches no dependencies."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(services: Services = Depends(get_services)):
    """Ready to serve: with the SQL store, the database answers and every table exists."""
    if services.settings.STORE_BACKEND != "sql":
        return {"status": "ok", "store": "memory"}

    try:
        database.ping()
        missing = database.missing_tables()
    except (SQLAlchemyError, ValueError) as e:
        logger.error("readyz.database_unreachable", extra={"error_code": "db_unavailable", "reason": str(e)})
        return _not_ready("database unreachable")

    if missing:
        logger.warning("readyz.missing_tables", extra={"reason": ", ".join(missing)})
        return _not_ready(f"missing tables: {', '.join(missing)}")

    return {"status": "ok", "store": "sql"}
