from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from imgoptim.api.schemas.health import HealthResponse
from imgoptim.core.config import get_settings
from imgoptim.db.session import get_engine

router = APIRouter(tags=["health"])


def _database_reachable() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return False
    return True


@router.get("/health", response_model=HealthResponse)
def get_health() -> HealthResponse:
    settings = get_settings()
    database_ok = _database_reachable()
    return HealthResponse(
        status="ok" if database_ok else "degraded",
        service=settings.app_name,
        environment=settings.environment,
        database="ok" if database_ok else "unavailable",
        quality_range=(settings.min_quality, settings.max_quality),
        accepted_media_types=list(settings.accepted_media_types),
        timestamp=datetime.now(tz=timezone.utc),
    )
