from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from imgoptim.db.models import BULK_JOB_KEY, BulkJob, ItemFailure, ItemOutcome, OptimizedMarker
from imgoptim.jobs.types import BulkJobState, ItemFailureSnapshot
from imgoptim.optimizer.errors import StoreError
from imgoptim.stats.service import StatsService


class JobConflictError(RuntimeError):
    pass


class JobStore:
    """Durable home of the bulk job record, optimized markers and failure log.

    The job record is a singleton row keyed by ``bulk_process_job``. Every
    persist bumps ``version``; ``save`` only succeeds when the caller still
    holds the version it loaded, so two writers can never interleave a
    pop-and-increment.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _to_state(self, row: BulkJob) -> BulkJobState:
        return BulkJobState(
            job_id=row.job_id,
            total=row.total,
            processed=row.processed,
            pending=[int(item) for item in row.pending or []],
            already_complete=row.already_complete,
            version=row.version,
            current_item_label=row.current_item_label,
            last_error_code=row.last_error_code,
            last_error_message=row.last_error_message,
            created_at=row.created_at,
            updated_at=row.updated_at,
            finished_at=row.finished_at,
        )

    def load(self) -> BulkJobState | None:
        try:
            with self._session_factory() as session:
                row = session.get(BulkJob, BULK_JOB_KEY)
                return None if row is None else self._to_state(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to load bulk job record: {exc}") from exc

    def replace(self, state: BulkJobState) -> BulkJobState:
        """Overwrite the job record unconditionally (used by Init)."""
        now = self._now()
        try:
            with self._session_factory() as session:
                previous_version = session.scalar(select(BulkJob.version).where(BulkJob.key == BULK_JOB_KEY))
                session.execute(delete(BulkJob).where(BulkJob.key == BULK_JOB_KEY))
                row = BulkJob(
                    key=BULK_JOB_KEY,
                    job_id=state.job_id,
                    version=int(previous_version or 0) + 1,
                    total=state.total,
                    processed=state.processed,
                    pending=list(state.pending),
                    already_complete=state.already_complete,
                    current_item_label=state.current_item_label,
                    last_error_code=None,
                    last_error_message=None,
                    created_at=now,
                    updated_at=now,
                    finished_at=now if state.is_done else None,
                )
                session.add(row)
                session.commit()
                session.refresh(row)
                return self._to_state(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to write bulk job record: {exc}") from exc

    def save(self, state: BulkJobState) -> BulkJobState:
        """Persist ``state`` if the stored version still equals ``state.version``."""
        now = self._now()
        try:
            with self._session_factory() as session:
                result = session.execute(
                    update(BulkJob)
                    .where(BulkJob.key == BULK_JOB_KEY, BulkJob.version == state.version)
                    .values(
                        version=BulkJob.version + 1,
                        processed=state.processed,
                        pending=list(state.pending),
                        current_item_label=state.current_item_label,
                        last_error_code=state.last_error_code,
                        last_error_message=state.last_error_message,
                        updated_at=now,
                        finished_at=now if state.is_done else None,
                    )
                )
                if int(result.rowcount or 0) != 1:
                    session.rollback()
                    raise JobConflictError("Bulk job record changed since it was loaded")
                session.commit()
                row = session.get(BulkJob, BULK_JOB_KEY)
                if row is None:
                    raise JobConflictError("Bulk job record disappeared after save")
                session.refresh(row)
                return self._to_state(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to persist bulk job record: {exc}") from exc

    def has_marker(self, item_id: int) -> bool:
        try:
            with self._session_factory() as session:
                return session.get(OptimizedMarker, item_id) is not None
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read optimized marker for item {item_id}: {exc}") from exc

    def set_marker(
        self,
        item_id: int,
        *,
        original_bytes: int,
        compressed_bytes: int,
        quality: int,
        stats: StatsService | None = None,
    ) -> None:
        """Write the optimized marker, and the stats increment when ``stats`` is given.

        Both land in one transaction: a failure leaves neither behind, so a
        retried item is never counted twice.
        """
        try:
            with self._session_factory() as session:
                marker = session.get(OptimizedMarker, item_id)
                if marker is None:
                    marker = OptimizedMarker(item_id=item_id)
                    session.add(marker)
                marker.optimized_at = self._now()
                marker.original_bytes = original_bytes
                marker.compressed_bytes = compressed_bytes
                marker.quality = quality
                if stats is not None:
                    stats.apply(session, original_bytes, compressed_bytes)
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to set optimized marker for item {item_id}: {exc}") from exc

    def record_failure(
        self,
        *,
        job_id: str,
        item_id: int,
        outcome: ItemOutcome,
        error_code: str,
        error_message: str | None,
    ) -> None:
        """Log a failed or skipped item once per job; a retried step keeps the first entry."""
        try:
            with self._session_factory() as session:
                existing = session.scalar(
                    select(ItemFailure.id).where(ItemFailure.job_id == job_id, ItemFailure.item_id == item_id)
                )
                if existing is not None:
                    return
                session.add(
                    ItemFailure(
                        job_id=job_id,
                        item_id=item_id,
                        outcome=outcome,
                        error_code=error_code,
                        error_message=error_message,
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to log failure for item {item_id}: {exc}") from exc

    def list_failures(self, job_id: str, *, limit: int) -> list[ItemFailureSnapshot]:
        try:
            with self._session_factory() as session:
                rows = session.scalars(
                    select(ItemFailure).where(ItemFailure.job_id == job_id).order_by(ItemFailure.id.asc()).limit(limit)
                ).all()
                return [
                    ItemFailureSnapshot(
                        id=row.id,
                        job_id=row.job_id,
                        item_id=row.item_id,
                        outcome=row.outcome,
                        error_code=row.error_code,
                        error_message=row.error_message,
                        created_at=row.created_at,
                    )
                    for row in rows
                ]
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to list failures for job {job_id}: {exc}") from exc
