from __future__ import annotations

from pydantic import BaseModel


class ScanResponse(BaseModel):
    files_seen: int
    registered: int
    updated: int
