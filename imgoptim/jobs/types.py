from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from imgoptim.db.models import ItemOutcome


class JobProgressStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class BulkJobState:
    job_id: str
    total: int
    processed: int = 0
    pending: list[int] = field(default_factory=list)
    already_complete: bool = False
    version: int = 0
    current_item_label: str | None = None
    last_error_code: str | None = None
    last_error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_done(self) -> bool:
        return not self.pending


@dataclass(frozen=True)
class InitResult:
    job_id: str | None
    total: int
    already_optimized: bool


@dataclass(frozen=True)
class StepResult:
    done: bool
    total: int
    processed: int
    percentage: int
    current_item_label: str | None = None
    item_id: int | None = None
    item_status: ItemOutcome | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class ProgressSnapshot:
    status: JobProgressStatus
    job_id: str | None
    total: int
    processed: int
    percentage: int
    current_item_label: str | None
    last_error_code: str | None
    last_error_message: str | None
    updated_at: datetime | None


@dataclass(frozen=True)
class ItemFailureSnapshot:
    id: int
    job_id: str
    item_id: int
    outcome: ItemOutcome
    error_code: str
    error_message: str | None
    created_at: datetime
