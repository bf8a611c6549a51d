from __future__ import annotations

from pydantic import BaseModel


class StatsResponse(BaseModel):
    count: int
    original_bytes: int
    compressed_bytes: int
    saved_bytes: int
    original_label: str
    compressed_label: str
    saved_label: str
