from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Iterator
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from imgoptim.core.config import Settings
from imgoptim.db.models import BULK_JOB_KEY, OPTIMIZED_MARKER_KEY, ItemOutcome
from imgoptim.inventory.types import Inventory
from imgoptim.jobs.lock_service import JobLockService, Lease
from imgoptim.jobs.progress import ProgressReporter, compute_percentage
from imgoptim.jobs.store import JobConflictError, JobStore
from imgoptim.jobs.types import (
    BulkJobState,
    InitResult,
    ItemFailureSnapshot,
    ProgressSnapshot,
    StepResult,
)
from imgoptim.optimizer.errors import OptimizationError, StoreError
from imgoptim.optimizer.processor import ItemProcessor

logger = logging.getLogger(__name__)

UNRESOLVED_ITEM_CODE = "ITEM_UNRESOLVED"
ALREADY_OPTIMIZED_CODE = "ALREADY_OPTIMIZED"


@dataclass(frozen=True)
class _ItemOutcome:
    status: ItemOutcome
    label: str | None
    error_code: str | None = None
    error_message: str | None = None


class BulkJobService:
    """Resumable bulk optimization driven one item per ``step`` call.

    No process survives between calls: every ``init_job`` and ``step`` loads
    the job record, works under a lease on ``bulk_process_job`` and persists
    the record before returning. Per-item failures are logged and counted as
    processed, including unexpected exceptions from the processor; only
    failures on the record itself reach the caller.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        inventory: Inventory,
        processor: ItemProcessor,
        store: JobStore | None = None,
        lock_service: JobLockService | None = None,
    ):
        self._settings = settings
        self._inventory = inventory
        self._processor = processor
        self._store = store or JobStore(session_factory)
        self._lock_service = lock_service or JobLockService(settings, session_factory)
        self._reporter = ProgressReporter(self._store)

    @contextmanager
    def _lease(self) -> Iterator[Lease]:
        try:
            lease = self._lock_service.try_acquire(BULK_JOB_KEY)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to acquire bulk job lease: {exc}") from exc
        if lease is None:
            raise JobConflictError("Another bulk job operation is in progress")
        try:
            yield lease
        finally:
            self._lock_service.release(lease)

    def _ensure_lease_alive(self, lease: Lease) -> None:
        if not self._lock_service.is_alive(lease):
            raise JobConflictError("Bulk job lease expired before the record was saved")

    def init_job(self) -> InitResult:
        with self._lease():
            candidates = self._inventory.list_candidate_items(
                self._settings.accepted_media_types,
                OPTIMIZED_MARKER_KEY,
            )
            state = BulkJobState(
                job_id=str(uuid4()),
                total=len(candidates),
                processed=0,
                pending=candidates,
                already_complete=not candidates,
            )
            saved = self._store.replace(state)

        if saved.already_complete:
            logger.info("Bulk job %s: nothing to optimize", saved.job_id)
        else:
            logger.info("Bulk job %s initialized with %d candidates", saved.job_id, saved.total)
        return InitResult(job_id=saved.job_id, total=saved.total, already_optimized=saved.already_complete)

    def step(self) -> StepResult:
        with self._lease() as lease:
            state = self._store.load()
            if state is None:
                return StepResult(done=True, total=0, processed=0, percentage=0)
            if state.is_done:
                return StepResult(
                    done=True,
                    total=state.total,
                    processed=state.processed,
                    percentage=compute_percentage(state.processed, state.total),
                    current_item_label=state.current_item_label,
                )

            item_id = state.pending[0]
            outcome = self._process_item(state.job_id, item_id)
            updated = replace(
                state,
                pending=state.pending[1:],
                processed=min(state.total, state.processed + 1),
                current_item_label=outcome.label,
                last_error_code=outcome.error_code if outcome.status == ItemOutcome.FAILED else state.last_error_code,
                last_error_message=(
                    outcome.error_message if outcome.status == ItemOutcome.FAILED else state.last_error_message
                ),
            )
            self._ensure_lease_alive(lease)
            saved = self._store.save(updated)

        if saved.is_done:
            logger.info("Bulk job %s completed: %d/%d processed", saved.job_id, saved.processed, saved.total)
        return StepResult(
            done=saved.is_done,
            total=saved.total,
            processed=saved.processed,
            percentage=compute_percentage(saved.processed, saved.total),
            current_item_label=saved.current_item_label,
            item_id=item_id,
            item_status=outcome.status,
            error_code=outcome.error_code,
        )

    def _process_item(self, job_id: str, item_id: int) -> _ItemOutcome:
        label = self._inventory.get_label(item_id)
        path = self._inventory.resolve_path(item_id)
        if path is None:
            logger.warning("Bulk job %s: item %d no longer resolves to a file", job_id, item_id)
            self._store.record_failure(
                job_id=job_id,
                item_id=item_id,
                outcome=ItemOutcome.SKIPPED,
                error_code=UNRESOLVED_ITEM_CODE,
                error_message="Item could not be resolved to a file path",
            )
            return _ItemOutcome(status=ItemOutcome.SKIPPED, label=label, error_code=UNRESOLVED_ITEM_CODE)

        if self._store.has_marker(item_id):
            # A previous step optimized it but lost the record write.
            return _ItemOutcome(status=ItemOutcome.SKIPPED, label=label, error_code=ALREADY_OPTIMIZED_CODE)

        try:
            self._processor.process(path)
        except OptimizationError as exc:
            logger.warning("Bulk job %s: item %d failed with %s: %s", job_id, item_id, exc.code, exc)
            self._store.record_failure(
                job_id=job_id,
                item_id=item_id,
                outcome=ItemOutcome.FAILED,
                error_code=exc.code,
                error_message=str(exc),
            )
            return _ItemOutcome(
                status=ItemOutcome.FAILED,
                label=label,
                error_code=exc.code,
                error_message=str(exc),
            )
        except Exception as exc:
            logger.exception("Bulk job %s: item %d failed unexpectedly", job_id, item_id)
            message = f"{type(exc).__name__}: {exc}"
            self._store.record_failure(
                job_id=job_id,
                item_id=item_id,
                outcome=ItemOutcome.FAILED,
                error_code=OptimizationError.code,
                error_message=message,
            )
            return _ItemOutcome(
                status=ItemOutcome.FAILED,
                label=label,
                error_code=OptimizationError.code,
                error_message=message,
            )
        return _ItemOutcome(status=ItemOutcome.OPTIMIZED, label=label)

    def progress(self) -> ProgressSnapshot:
        return self._reporter.report()

    def list_failures(self, *, limit: int | None = None) -> list[ItemFailureSnapshot]:
        state = self._store.load()
        if state is None:
            return []
        bounded_limit = max(1, min(limit or self._settings.default_page_size, self._settings.max_page_size))
        return self._store.list_failures(state.job_id, limit=bounded_limit)


def init_result_to_dict(result: InitResult) -> dict[str, Any]:
    return {
        "job_id": result.job_id,
        "total": result.total,
        "already_optimized": result.already_optimized,
    }


def step_result_to_dict(result: StepResult) -> dict[str, Any]:
    return {
        "done": result.done,
        "total": result.total,
        "processed": result.processed,
        "percentage": result.percentage,
        "current_item_label": result.current_item_label,
        "item_id": result.item_id,
        "item_status": None if result.item_status is None else result.item_status.value,
        "error_code": result.error_code,
    }


def progress_snapshot_to_dict(snapshot: ProgressSnapshot) -> dict[str, Any]:
    return {
        "status": snapshot.status.value,
        "job_id": snapshot.job_id,
        "total": snapshot.total,
        "processed": snapshot.processed,
        "percentage": snapshot.percentage,
        "current_item_label": snapshot.current_item_label,
        "last_error_code": snapshot.last_error_code,
        "last_error_message": snapshot.last_error_message,
        "updated_at": snapshot.updated_at,
    }


def failure_snapshot_to_dict(snapshot: ItemFailureSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "job_id": snapshot.job_id,
        "item_id": snapshot.item_id,
        "outcome": snapshot.outcome.value,
        "error_code": snapshot.error_code,
        "error_message": snapshot.error_message,
        "created_at": snapshot.created_at,
    }
