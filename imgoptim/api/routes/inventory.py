from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status

from imgoptim.api.schemas.inventory import ScanResponse
from imgoptim.core.config import get_settings
from imgoptim.inventory.service import InventoryPolicyError, LibraryInventory
from imgoptim.optimizer.errors import StoreError
from imgoptim.worker.pipeline import build_inventory

router = APIRouter(prefix="/inventory", tags=["inventory"])


def get_inventory() -> LibraryInventory:
    return build_inventory(get_settings())


@router.post("/scan", response_model=ScanResponse)
def scan_inventory(inventory: LibraryInventory = Depends(get_inventory)) -> ScanResponse:
    try:
        result = inventory.scan()
    except InventoryPolicyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "Error", "message": str(exc)},
        ) from exc
    return ScanResponse.model_validate(asdict(result))
