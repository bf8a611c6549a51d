from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    service: str
    environment: str
    database: Literal["ok", "unavailable"]
    quality_range: tuple[int, int]
    accepted_media_types: list[str]
    timestamp: datetime
