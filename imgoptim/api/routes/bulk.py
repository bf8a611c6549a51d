from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from imgoptim.api.schemas.bulk import (
    InitJobResponse,
    ItemFailureListResponse,
    ItemFailureResponse,
    ProgressResponse,
    StepJobResponse,
)
from imgoptim.core.config import get_settings
from imgoptim.inventory.service import InventoryPolicyError
from imgoptim.jobs.service import (
    BulkJobService,
    failure_snapshot_to_dict,
    init_result_to_dict,
    progress_snapshot_to_dict,
    step_result_to_dict,
)
from imgoptim.jobs.store import JobConflictError
from imgoptim.optimizer.errors import StoreError
from imgoptim.worker.pipeline import build_bulk_job_service

router = APIRouter(prefix="/bulk", tags=["bulk"])


def get_bulk_job_service() -> BulkJobService:
    return build_bulk_job_service(get_settings())


@router.post("/init", response_model=InitJobResponse)
def init_bulk_job(service: BulkJobService = Depends(get_bulk_job_service)) -> InitJobResponse:
    try:
        result = service.init_job()
    except JobConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except InventoryPolicyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "Error", "message": str(exc)},
        ) from exc
    return InitJobResponse.model_validate(init_result_to_dict(result))


@router.post("/step", response_model=StepJobResponse)
def step_bulk_job(service: BulkJobService = Depends(get_bulk_job_service)) -> StepJobResponse:
    try:
        result = service.step()
    except JobConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "Error", "message": str(exc)},
        ) from exc
    return StepJobResponse.model_validate(step_result_to_dict(result))


@router.get("/progress", response_model=ProgressResponse)
def get_bulk_progress(service: BulkJobService = Depends(get_bulk_job_service)) -> ProgressResponse:
    try:
        snapshot = service.progress()
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "Error", "message": str(exc)},
        ) from exc
    return ProgressResponse.model_validate(progress_snapshot_to_dict(snapshot))


@router.get("/failures", response_model=ItemFailureListResponse)
def list_bulk_failures(
    limit: int | None = Query(default=None, ge=1),
    service: BulkJobService = Depends(get_bulk_job_service),
) -> ItemFailureListResponse:
    try:
        items = service.list_failures(limit=limit)
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "Error", "message": str(exc)},
        ) from exc
    return ItemFailureListResponse(
        items=[ItemFailureResponse.model_validate(failure_snapshot_to_dict(item)) for item in items]
    )
