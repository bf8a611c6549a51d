from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import pytest
from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import sessionmaker

import imgoptim.db.session as db_session_module
from imgoptim.core.config import Settings, get_settings
from imgoptim.db.init_db import initialize_database
from imgoptim.db.models import BULK_JOB_KEY, OPTIMIZED_MARKER_KEY, ItemFailure, ItemOutcome, LibraryImage, OptimizedMarker
from imgoptim.inventory.service import LibraryInventory
from imgoptim.jobs.lock_service import JobLockService
from imgoptim.jobs.service import ALREADY_OPTIMIZED_CODE, UNRESOLVED_ITEM_CODE, BulkJobService
from imgoptim.jobs.store import JobConflictError, JobStore
from imgoptim.jobs.types import BulkJobState, JobProgressStatus
from imgoptim.optimizer.errors import StoreError
from imgoptim.optimizer.processor import ItemProcessor
from imgoptim.optimizer.quality import QualityPolicy
from imgoptim.stats.service import StatsService
from imgoptim.worker.pipeline import run_bulk_job

MB = 1024 * 1024


def make_settings(tmp_path: Path, *, lock_ttl_seconds: int = 30) -> Settings:
    libraries_root = tmp_path / "libraries"
    libraries_root.mkdir(parents=True, exist_ok=True)
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)

    os.environ["IMGOPTIM_LIBRARIES_ROOT"] = libraries_root.as_posix()
    os.environ["IMGOPTIM_STATE_ROOT"] = state_root.as_posix()
    os.environ["IMGOPTIM_JOB_LOCK_TTL_SECONDS"] = str(lock_ttl_seconds)

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()
    return get_settings()


def build_service(settings: Settings, recompressor, *, store: JobStore | None = None) -> BulkJobService:
    session_factory = db_session_module.get_session_factory()
    inventory = LibraryInventory(settings, session_factory)
    effective_store = store or JobStore(session_factory)
    processor = ItemProcessor(
        policy=QualityPolicy.from_settings(settings),
        inventory=inventory,
        recompressor=recompressor,
        stats=StatsService(session_factory),
        store=effective_store,
    )
    return BulkJobService(
        settings,
        session_factory,
        inventory=inventory,
        processor=processor,
        store=effective_store,
    )


def seed_images(settings: Settings, sized_file, sizes: dict[str, int]) -> list[int]:
    inventory = LibraryInventory(settings, db_session_module.get_session_factory())
    item_ids: list[int] = []
    for name, size in sizes.items():
        sized_file(settings.libraries_root / name, size)
        item_ids.append(inventory.register(name).id)
    return item_ids


def stats_count() -> int:
    return StatsService(db_session_module.get_session_factory()).get_stats().count


def marked_ids() -> set[int]:
    with db_session_module.get_session_factory()() as session:
        return set(session.scalars(select(OptimizedMarker.item_id)).all())


def failed_ids(job_id: str) -> set[int]:
    with db_session_module.get_session_factory()() as session:
        return set(session.scalars(select(ItemFailure.item_id).where(ItemFailure.job_id == job_id)).all())


def test_bulk_job_walks_items_one_step_at_a_time(tmp_path: Path, fake_recompressor, sized_file) -> None:
    settings = make_settings(tmp_path)
    seed_images(settings, sized_file, {"a.jpg": MB, "b.jpg": 5 * MB, "c.png": 20 * MB})
    service = build_service(settings, fake_recompressor)

    init = service.init_job()
    assert init.total == 3
    assert not init.already_optimized
    assert service.progress().status == JobProgressStatus.RUNNING

    first = service.step()
    assert (first.done, first.processed, first.percentage) == (False, 1, 33)
    assert first.current_item_label == "a"
    assert first.item_status == ItemOutcome.OPTIMIZED

    second = service.step()
    assert (second.done, second.processed, second.percentage) == (False, 2, 67)

    third = service.step()
    assert (third.done, third.processed, third.percentage, third.total) == (True, 3, 100, 3)
    assert third.current_item_label == "c"

    assert fake_recompressor.qualities == [81, 65, 40]
    assert stats_count() == 3
    assert len(marked_ids()) == 3

    progress = service.progress()
    assert progress.status == JobProgressStatus.COMPLETED
    assert progress.percentage == 100


def test_empty_inventory_reports_already_optimized(tmp_path: Path, fake_recompressor) -> None:
    settings = make_settings(tmp_path)
    service = build_service(settings, fake_recompressor)

    init = service.init_job()
    assert init.total == 0
    assert init.already_optimized

    step = service.step()
    assert step.done
    assert step.total == 0
    assert step.processed == 0
    assert step.percentage == 0
    assert fake_recompressor.calls == []


def test_step_without_any_job_is_done_and_progress_is_idle(tmp_path: Path, fake_recompressor) -> None:
    settings = make_settings(tmp_path)
    service = build_service(settings, fake_recompressor)

    assert service.progress().status == JobProgressStatus.IDLE
    assert service.progress().percentage == 0
    step = service.step()
    assert step.done
    assert JobStore(db_session_module.get_session_factory()).load() is None


def test_failed_and_unresolved_items_still_count_as_processed(tmp_path: Path, fake_recompressor, sized_file) -> None:
    settings = make_settings(tmp_path)
    first_id, missing_file_id, missing_row_id = seed_images(
        settings, sized_file, {"keep.jpg": 2 * MB, "gone.jpg": MB, "orphan.png": MB}
    )
    service = build_service(settings, fake_recompressor)
    init = service.init_job()

    (settings.libraries_root / "gone.jpg").unlink()
    with db_session_module.get_session_factory()() as session:
        session.execute(delete(LibraryImage).where(LibraryImage.id == missing_row_id))
        session.commit()

    results = [service.step() for _ in range(3)]

    assert [result.item_status for result in results] == [
        ItemOutcome.OPTIMIZED,
        ItemOutcome.FAILED,
        ItemOutcome.SKIPPED,
    ]
    assert results[1].error_code == "READ_ERROR"
    assert results[2].error_code == UNRESOLVED_ITEM_CODE
    assert results[-1].done
    assert results[-1].processed == 3

    assert marked_ids() == {first_id}
    assert stats_count() == 1
    assert failed_ids(init.job_id) == {missing_file_id, missing_row_id}

    progress = service.progress()
    assert progress.last_error_code == "READ_ERROR"
    failures = service.list_failures()
    assert [failure.error_code for failure in failures] == ["READ_ERROR", UNRESOLVED_ITEM_CODE]
    assert failures[0].outcome == ItemOutcome.FAILED
    assert failures[1].outcome == ItemOutcome.SKIPPED


def test_every_listed_item_ends_marked_or_logged(tmp_path: Path, fake_recompressor, sized_file) -> None:
    settings = make_settings(tmp_path)
    item_ids = seed_images(
        settings,
        sized_file,
        {"one.jpg": 1000, "two.jpg": 2000, "three.png": 3000, "four.jpg": 4000},
    )
    fake_recompressor.reject.add("two.jpg")
    fake_recompressor.fail_on_rewrite.add("four.jpg")
    service = build_service(settings, fake_recompressor)

    init = service.init_job()
    seen_counts: list[int] = []
    while True:
        result = service.step()
        seen_counts.append(stats_count())
        if result.done:
            break

    assert seen_counts == sorted(seen_counts)
    accounted = marked_ids() | failed_ids(init.job_id)
    assert accounted == set(item_ids)
    assert marked_ids().isdisjoint(failed_ids(init.job_id))


def test_init_twice_without_steps_yields_same_candidates(tmp_path: Path, fake_recompressor, sized_file) -> None:
    settings = make_settings(tmp_path)
    item_ids = seed_images(settings, sized_file, {"x.jpg": 1000, "y.png": 2000})
    service = build_service(settings, fake_recompressor)
    store = JobStore(db_session_module.get_session_factory())

    first = service.init_job()
    first_state = store.load()
    second = service.init_job()
    second_state = store.load()

    assert first.total == second.total == 2
    assert first_state is not None and second_state is not None
    assert first_state.pending == second_state.pending == item_ids
    assert second_state.processed == 0
    assert second.job_id != first.job_id


def test_reinit_after_completion_skips_marked_items(tmp_path: Path, fake_recompressor, sized_file) -> None:
    settings = make_settings(tmp_path)
    seed_images(settings, sized_file, {"x.jpg": 1000, "y.png": 2000})
    service = build_service(settings, fake_recompressor)

    service.init_job()
    service.step()
    service.step()
    seed_images(settings, sized_file, {"z.jpg": 3000})

    again = service.init_job()
    assert again.total == 1
    assert not again.already_optimized


def test_step_after_completion_does_not_mutate_record(tmp_path: Path, fake_recompressor, sized_file) -> None:
    settings = make_settings(tmp_path)
    seed_images(settings, sized_file, {"only.jpg": 1000})
    service = build_service(settings, fake_recompressor)
    store = JobStore(db_session_module.get_session_factory())

    service.init_job()
    service.step()
    before = store.load()
    after_step = service.step()
    after = store.load()

    assert after_step.done
    assert after_step.processed == 1
    assert after_step.item_status is None
    assert before is not None and after is not None
    assert after.version == before.version
    assert after.processed == before.processed == 1
    assert len(fake_recompressor.calls) == 1


def test_step_fails_fast_while_another_caller_holds_the_lease(
    tmp_path: Path, fake_recompressor, sized_file
) -> None:
    settings = make_settings(tmp_path)
    seed_images(settings, sized_file, {"a.jpg": 1000, "b.jpg": 2000})
    service = build_service(settings, fake_recompressor)
    service.init_job()
    store = JobStore(db_session_module.get_session_factory())
    before = store.load()

    lock_service = JobLockService(settings, db_session_module.get_session_factory())
    held = lock_service.try_acquire(BULK_JOB_KEY)
    assert held is not None
    assert lock_service.try_acquire(BULK_JOB_KEY) is None

    with pytest.raises(JobConflictError):
        service.step()
    with pytest.raises(JobConflictError):
        service.init_job()

    after = store.load()
    assert before is not None and after is not None
    assert after.version == before.version
    assert after.pending == before.pending
    assert fake_recompressor.calls == []

    lock_service.release(held)

    assert service.step().processed == 1


def test_save_with_stale_version_is_rejected(tmp_path: Path) -> None:
    make_settings(tmp_path)
    store = JobStore(db_session_module.get_session_factory())
    saved = store.replace(BulkJobState(job_id="job-1", total=2, pending=[1, 2]))

    advanced = store.save(
        BulkJobState(job_id=saved.job_id, total=2, processed=1, pending=[2], version=saved.version)
    )
    assert advanced.version == saved.version + 1

    with pytest.raises(JobConflictError):
        store.save(BulkJobState(job_id=saved.job_id, total=2, processed=1, pending=[2], version=saved.version))

    current = store.load()
    assert current is not None
    assert current.processed == 1
    assert current.version == advanced.version


class FlakySaveStore(JobStore):
    def __init__(self, session_factory, failures: int = 1):
        super().__init__(session_factory)
        self.failures = failures

    def save(self, state: BulkJobState) -> BulkJobState:
        if self.failures > 0:
            self.failures -= 1
            raise StoreError("Simulated record write failure")
        return super().save(state)


def test_lost_record_write_does_not_recompress_twice(tmp_path: Path, fake_recompressor, sized_file) -> None:
    settings = make_settings(tmp_path)
    (item_id,) = seed_images(settings, sized_file, {"retry.jpg": 2 * MB})
    store = FlakySaveStore(db_session_module.get_session_factory())
    service = build_service(settings, fake_recompressor, store=store)
    service.init_job()

    with pytest.raises(StoreError):
        service.step()

    untouched = store.load()
    assert untouched is not None
    assert untouched.processed == 0
    assert untouched.pending == [item_id]
    assert stats_count() == 1

    retried = service.step()
    assert retried.done
    assert retried.processed == 1
    assert retried.item_status == ItemOutcome.SKIPPED
    assert retried.error_code == ALREADY_OPTIMIZED_CODE
    assert stats_count() == 1
    assert len(fake_recompressor.calls) == 1


def test_expired_lease_blocks_record_write(tmp_path: Path, fake_recompressor, sized_file) -> None:
    settings = make_settings(tmp_path, lock_ttl_seconds=1)
    seed_images(settings, sized_file, {"slow.jpg": 1000})
    service = build_service(settings, fake_recompressor)
    service.init_job()

    original_load = fake_recompressor.load

    def slow_load(path: Path):
        time.sleep(1.2)
        return original_load(path)

    fake_recompressor.load = slow_load

    with pytest.raises(JobConflictError):
        service.step()

    state = JobStore(db_session_module.get_session_factory()).load()
    assert state is not None
    assert state.processed == 0


def test_concurrent_steps_advance_the_record_once(tmp_path: Path, fake_recompressor, sized_file) -> None:
    settings = make_settings(tmp_path)
    seed_images(settings, sized_file, {"a.jpg": 1000, "b.jpg": 2000})
    service = build_service(settings, fake_recompressor)
    service.init_job()

    original_load = fake_recompressor.load

    def slow_load(path: Path):
        time.sleep(0.3)
        return original_load(path)

    fake_recompressor.load = slow_load

    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def step() -> None:
        barrier.wait(timeout=2)
        try:
            service.step()
            result = "stepped"
        except JobConflictError:
            result = "conflict"
        with lock:
            outcomes.append(result)

    t1 = threading.Thread(target=step)
    t2 = threading.Thread(target=step)
    t1.start()
    t2.start()
    t1.join()
    t2.join()

    assert sorted(outcomes) == ["conflict", "stepped"]
    state = JobStore(db_session_module.get_session_factory()).load()
    assert state is not None
    assert state.processed == 1
    assert len(fake_recompressor.calls) == 1


def test_run_bulk_job_drives_steps_until_done(tmp_path: Path, fake_recompressor, sized_file) -> None:
    settings = make_settings(tmp_path)
    seed_images(settings, sized_file, {"p.jpg": 1000, "q.jpg": 2000, "r.png": 3000})

    partial = run_bulk_job(max_steps=2, recompressor=fake_recompressor)
    assert partial is not None
    assert not partial.done
    assert partial.processed == 2

    finished = run_bulk_job(recompressor=fake_recompressor)
    assert finished is not None
    assert finished.done
    assert finished.total == 1

    assert run_bulk_job(recompressor=fake_recompressor) is None
    assert stats_count() == 3


class FailingMarkerStore(JobStore):
    def set_marker(self, item_id: int, **kwargs) -> None:
        raise StoreError(f"Simulated marker write failure for item {item_id}")


def test_failed_marker_write_leaves_stats_untouched(tmp_path: Path, fake_recompressor, sized_file) -> None:
    settings = make_settings(tmp_path)
    (item_id,) = seed_images(settings, sized_file, {"marker.jpg": 2 * MB})
    failing_store = FailingMarkerStore(db_session_module.get_session_factory())
    failing = build_service(settings, fake_recompressor, store=failing_store)

    init = failing.init_job()
    result = failing.step()

    assert result.item_status == ItemOutcome.FAILED
    assert result.error_code == "STORE_ERROR"
    assert stats_count() == 0
    assert marked_ids() == set()
    assert failed_ids(init.job_id) == {item_id}

    service = build_service(settings, fake_recompressor)
    again = service.init_job()
    assert again.total == 1
    assert service.step().item_status == ItemOutcome.OPTIMIZED
    assert stats_count() == 1
    assert marked_ids() == {item_id}


class ExplodingRecompressor:
    def __init__(self, delegate, names: set[str]):
        self._delegate = delegate
        self._names = names

    def load(self, path: Path):
        if path.name in self._names:
            raise KeyError(path.name)
        return self._delegate.load(path)


def test_unexpected_processor_exception_does_not_stall_the_job(
    tmp_path: Path, fake_recompressor, sized_file
) -> None:
    settings = make_settings(tmp_path)
    bad_id, good_id = seed_images(settings, sized_file, {"bad.jpg": 1000, "good.jpg": 2000})
    service = build_service(settings, ExplodingRecompressor(fake_recompressor, {"bad.jpg"}))

    init = service.init_job()
    first = service.step()

    assert not first.done
    assert first.processed == 1
    assert first.item_status == ItemOutcome.FAILED
    assert first.error_code == "OPTIMIZATION_FAILED"

    progress = service.progress()
    assert progress.status == JobProgressStatus.ERROR
    assert progress.last_error_code == "OPTIMIZATION_FAILED"
    assert "KeyError" in (progress.last_error_message or "")

    second = service.step()
    assert second.done
    assert second.item_status == ItemOutcome.OPTIMIZED
    assert marked_ids() == {good_id}
    assert failed_ids(init.job_id) == {bad_id}
    assert service.progress().status == JobProgressStatus.COMPLETED


def test_retried_failed_step_logs_the_item_once(tmp_path: Path, fake_recompressor, sized_file) -> None:
    settings = make_settings(tmp_path)
    (item_id,) = seed_images(settings, sized_file, {"rejected.jpg": 1000})
    fake_recompressor.reject.add("rejected.jpg")
    store = FlakySaveStore(db_session_module.get_session_factory())
    service = build_service(settings, fake_recompressor, store=store)
    init = service.init_job()

    with pytest.raises(StoreError):
        service.step()
    retried = service.step()

    assert retried.done
    assert retried.item_status == ItemOutcome.FAILED
    failures = service.list_failures()
    assert [failure.item_id for failure in failures] == [item_id]
    assert failures[0].job_id == init.job_id


def test_record_failure_keeps_one_entry_per_job_and_item(tmp_path: Path) -> None:
    make_settings(tmp_path)
    store = JobStore(db_session_module.get_session_factory())

    for job_id in ("job-1", "job-1", "job-2"):
        store.record_failure(
            job_id=job_id,
            item_id=7,
            outcome=ItemOutcome.FAILED,
            error_code="READ_ERROR",
            error_message="gone",
        )

    assert len(store.list_failures("job-1", limit=10)) == 1
    assert len(store.list_failures("job-2", limit=10)) == 1


def test_unreadable_tables_surface_as_store_errors(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    empty = create_engine(f"sqlite:///{(tmp_path / 'empty.sqlite3').as_posix()}", future=True)
    session_factory = sessionmaker(bind=empty)
    inventory = LibraryInventory(settings, session_factory)

    with pytest.raises(StoreError):
        inventory.list_candidate_items(settings.accepted_media_types, OPTIMIZED_MARKER_KEY)
    with pytest.raises(StoreError):
        inventory.resolve_path(1)
    with pytest.raises(StoreError):
        inventory.get_label(1)
    with pytest.raises(StoreError):
        JobStore(session_factory).list_failures("job-1", limit=5)
