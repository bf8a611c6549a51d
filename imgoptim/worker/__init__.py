from imgoptim.worker.pipeline import (
    build_bulk_job_service,
    build_inventory,
    build_item_processor,
    build_upload_service,
    process_upload,
    run_bulk_job,
)

__all__ = [
    "build_inventory",
    "build_item_processor",
    "build_bulk_job_service",
    "build_upload_service",
    "process_upload",
    "run_bulk_job",
]
