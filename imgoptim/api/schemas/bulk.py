from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class InitJobResponse(BaseModel):
    job_id: str | None
    total: int
    already_optimized: bool


class StepJobResponse(BaseModel):
    done: bool
    total: int
    processed: int
    percentage: int
    current_item_label: str | None
    item_id: int | None
    item_status: str | None
    error_code: str | None


class ProgressResponse(BaseModel):
    status: str
    job_id: str | None
    total: int
    processed: int
    percentage: int
    current_item_label: str | None
    last_error_code: str | None
    last_error_message: str | None
    updated_at: datetime | None


class ItemFailureResponse(BaseModel):
    id: int
    job_id: str
    item_id: int
    outcome: str
    error_code: str
    error_message: str | None
    created_at: datetime


class ItemFailureListResponse(BaseModel):
    items: list[ItemFailureResponse]
