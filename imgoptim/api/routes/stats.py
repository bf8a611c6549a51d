from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from imgoptim.api.schemas.stats import StatsResponse
from imgoptim.db.session import get_session_factory
from imgoptim.optimizer.errors import StoreError
from imgoptim.stats.service import StatsService, stats_snapshot_to_dict

router = APIRouter(prefix="/stats", tags=["stats"])


def get_stats_service() -> StatsService:
    return StatsService(session_factory=get_session_factory())


@router.get("", response_model=StatsResponse)
def get_compression_stats(service: StatsService = Depends(get_stats_service)) -> StatsResponse:
    try:
        snapshot = service.get_stats()
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "Error", "message": str(exc)},
        ) from exc
    return StatsResponse.model_validate(stats_snapshot_to_dict(snapshot))
