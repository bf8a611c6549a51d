from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class UploadRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(min_length=1, max_length=4096)
    media_type: str = Field(min_length=1, max_length=64)


class UploadNoticeResponse(BaseModel):
    original_size_label: str
    compressed_size_label: str
    savings_bytes: int
    savings_label: str


class UploadResponse(BaseModel):
    item_id: int | None
    media_type: str
    optimized: bool
    notice: UploadNoticeResponse | None
