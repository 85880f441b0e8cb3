"""
Health check endpoints for liveness and readiness checks.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from messaging.core.config import Settings, get_settings
from messaging.core.database import get_db
from messaging.core.logging import get_logger
from messaging.schemas.message import HealthResponse
from messaging.services.templates import TemplateRegistry, get_template_registry

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get(
    "/live",
    response_model=HealthResponse,
    summary="Liveness check",
    description="Always returns 200 to indicate the service is alive."
)
async def liveness() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    response_model=HealthResponse,
    summary="Readiness check",
    description="Returns 200 if the service is ready to handle traffic."
)
async def readiness(
    response: Response,
    db: Annotated[Session, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
    registry: Annotated[TemplateRegistry, Depends(get_template_registry)],
) -> HealthResponse:
    """
    Readiness check: whether the service can handle traffic.

    Checks:
    - Database is reachable
    - Message templates are loaded
    - WEBHOOK_SECRET is configured (contact form only; reported, not required)
    """
    checks = {}
    is_ready = True

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as e:
        checks["database"] = "failed"
        is_ready = False
        logger.warning(f"Readiness check failed: database not reachable: {e}")

    checks["templates"] = "ok" if len(registry) else "empty"
    if not len(registry):
        is_ready = False
        logger.warning("Readiness check failed: no message templates loaded")

    checks["webhook_secret"] = "ok" if settings.is_webhook_secret_configured else "not configured"

    if is_ready:
        return HealthResponse(status="ok", checks=checks)
    response.status_code = 503
    return HealthResponse(status="not ready", checks=checks)
