from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from imgoptim.api.schemas.uploads import UploadNoticeResponse, UploadRequest, UploadResponse
from imgoptim.core.config import get_settings
from imgoptim.inventory.service import InventoryPolicyError
from imgoptim.optimizer.errors import StoreError
from imgoptim.uploads.service import UploadService, notice_to_dict, upload_result_to_dict
from imgoptim.worker.pipeline import build_upload_service

router = APIRouter(prefix="/uploads", tags=["uploads"])


def get_upload_service() -> UploadService:
    return build_upload_service(get_settings())


@router.post("", response_model=UploadResponse)
def handle_upload(request: UploadRequest, service: UploadService = Depends(get_upload_service)) -> UploadResponse:
    try:
        result = service.handle_upload(request.path, request.media_type)
    except InventoryPolicyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "Error", "message": str(exc)},
        ) from exc
    return UploadResponse.model_validate(upload_result_to_dict(result))


@router.get("/notice", response_model=UploadNoticeResponse)
def pop_upload_notice(service: UploadService = Depends(get_upload_service)) -> UploadNoticeResponse:
    notice = service.pop_notice()
    if notice is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No pending upload notice")
    return UploadNoticeResponse.model_validate(notice_to_dict(notice))
