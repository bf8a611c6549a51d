from __future__ import annotations

import logging

from imgoptim.core.config import Settings, get_settings
from imgoptim.db.session import get_session_factory
from imgoptim.inventory.service import LibraryInventory
from imgoptim.jobs.service import BulkJobService
from imgoptim.jobs.store import JobStore
from imgoptim.jobs.types import StepResult
from imgoptim.optimizer.processor import ItemProcessor
from imgoptim.optimizer.quality import QualityPolicy
from imgoptim.optimizer.recompress import PillowRecompressor, Recompressor
from imgoptim.stats.service import StatsService
from imgoptim.uploads.notices import NoticeStore
from imgoptim.uploads.service import UploadResult, UploadService

logger = logging.getLogger(__name__)


def build_inventory(settings: Settings | None = None) -> LibraryInventory:
    return LibraryInventory(settings=settings or get_settings(), session_factory=get_session_factory())


def build_item_processor(
    settings: Settings | None = None,
    *,
    inventory: LibraryInventory | None = None,
    recompressor: Recompressor | None = None,
) -> ItemProcessor:
    effective_settings = settings or get_settings()
    session_factory = get_session_factory()
    return ItemProcessor(
        policy=QualityPolicy.from_settings(effective_settings),
        inventory=inventory or build_inventory(effective_settings),
        recompressor=recompressor or PillowRecompressor(),
        stats=StatsService(session_factory),
        store=JobStore(session_factory),
    )


def build_bulk_job_service(
    settings: Settings | None = None,
    *,
    recompressor: Recompressor | None = None,
) -> BulkJobService:
    effective_settings = settings or get_settings()
    inventory = build_inventory(effective_settings)
    return BulkJobService(
        effective_settings,
        get_session_factory(),
        inventory=inventory,
        processor=build_item_processor(effective_settings, inventory=inventory, recompressor=recompressor),
    )


def build_upload_service(
    settings: Settings | None = None,
    *,
    recompressor: Recompressor | None = None,
) -> UploadService:
    effective_settings = settings or get_settings()
    inventory = build_inventory(effective_settings)
    return UploadService(
        effective_settings,
        inventory=inventory,
        processor=build_item_processor(effective_settings, inventory=inventory, recompressor=recompressor),
        notices=NoticeStore(get_session_factory()),
    )


def process_upload(relative_path: str, media_type: str) -> UploadResult:
    return build_upload_service().handle_upload(relative_path, media_type)


def run_bulk_job(*, max_steps: int | None = None, recompressor: Recompressor | None = None) -> StepResult | None:
    """Initialize a bulk job and drive it with ``step`` until done or ``max_steps`` is reached.

    Returns the last step result, or ``None`` when there was nothing to do.
    """
    service = build_bulk_job_service(recompressor=recompressor)
    init = service.init_job()
    if init.already_optimized:
        return None

    last: StepResult | None = None
    steps = 0
    while max_steps is None or steps < max_steps:
        last = service.step()
        steps += 1
        if last.done:
            break
    logger.info("Bulk run stopped after %d steps", steps)
    return last
