"""Liveness, readiness and dependency health."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from settlement_engine.api.dependencies import Services
from settlement_engine.api.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _database_status(services) -> str:
    try:
        with services.session_factory() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Settlement database unreachable")
        return "unhealthy"
    return "healthy"


@router.get("/health", response_model=HealthResponse)
def health_check(services: Services) -> HealthResponse:
    """Report database reachability and which adapter serves each provider."""
    database = _database_status(services)
    return HealthResponse(
        status="healthy" if database == "healthy" else "degraded",
        timestamp=datetime.now(timezone.utc),
        database=database,
        providers={
            name: type(services.providers.get(name)).__name__
            for name in services.providers.names()
        },
    )


@router.get("/ready")
def readiness_check() -> dict[str, str]:
    return {"status": "ready"}


@router.get("/live")
def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
