from __future__ import annotations

from imgoptim.jobs.store import JobStore
from imgoptim.jobs.types import BulkJobState, JobProgressStatus, ProgressSnapshot


def compute_percentage(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    # Half-up rounding; ``round`` would send 12.5 to 12.
    return (processed * 200 + total) // (total * 2)


def progress_from_state(state: BulkJobState | None) -> ProgressSnapshot:
    if state is None:
        return ProgressSnapshot(
            status=JobProgressStatus.IDLE,
            job_id=None,
            total=0,
            processed=0,
            percentage=0,
            current_item_label=None,
            last_error_code=None,
            last_error_message=None,
            updated_at=None,
        )
    if state.is_done:
        status = JobProgressStatus.COMPLETED
    elif state.last_error_code is not None:
        # An item failed along the way; the next Step resumes the run.
        status = JobProgressStatus.ERROR
    else:
        status = JobProgressStatus.RUNNING
    return ProgressSnapshot(
        status=status,
        job_id=state.job_id,
        total=state.total,
        processed=state.processed,
        percentage=compute_percentage(state.processed, state.total),
        current_item_label=state.current_item_label,
        last_error_code=state.last_error_code,
        last_error_message=state.last_error_message,
        updated_at=state.updated_at,
    )


class ProgressReporter:
    def __init__(self, store: JobStore):
        self._store = store

    def report(self) -> ProgressSnapshot:
        return progress_from_state(self._store.load())
