from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from imgoptim.core.config import Settings
from imgoptim.core.sizes import format_size
from imgoptim.db.models import UPLOAD_NOTICE_KEY
from imgoptim.inventory.service import LibraryInventory
from imgoptim.optimizer.errors import OptimizationError
from imgoptim.optimizer.processor import ItemProcessor
from imgoptim.uploads.notices import NoticeStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadNotice:
    original_size_label: str
    compressed_size_label: str
    savings_bytes: int
    savings_label: str


@dataclass(frozen=True)
class UploadResult:
    item_id: int | None
    media_type: str
    optimized: bool
    notice: UploadNotice | None


class UploadService:
    def __init__(
        self,
        settings: Settings,
        *,
        inventory: LibraryInventory,
        processor: ItemProcessor,
        notices: NoticeStore,
    ):
        self._settings = settings
        self._inventory = inventory
        self._processor = processor
        self._notices = notices

    def handle_upload(self, relative_path: str, media_type: str) -> UploadResult:
        """Register a freshly stored upload and optimize it when it is an accepted image.

        Optimization failures are not reported to the caller; the upload
        simply goes through without a notice.
        """
        normalized_type = media_type.lower().strip()
        if normalized_type not in self._settings.accepted_media_types:
            logger.debug("Upload %s has media type %s; not optimizing", relative_path, normalized_type)
            return UploadResult(item_id=None, media_type=normalized_type, optimized=False, notice=None)

        item = self._inventory.register(relative_path, normalized_type)

        path = self._inventory.resolve_path(item.id)
        if path is None:
            return UploadResult(item_id=item.id, media_type=normalized_type, optimized=False, notice=None)

        try:
            result = self._processor.process(path)
        except OptimizationError as exc:
            logger.warning("Upload %s was not optimized (%s): %s", relative_path, exc.code, exc)
            return UploadResult(item_id=item.id, media_type=normalized_type, optimized=False, notice=None)

        notice = UploadNotice(
            original_size_label=format_size(result.original_size),
            compressed_size_label=format_size(result.compressed_size),
            savings_bytes=result.savings_bytes,
            savings_label=format_size(result.savings_bytes),
        )
        self._notices.put(UPLOAD_NOTICE_KEY, notice_to_dict(notice), self._settings.upload_notice_ttl_seconds)
        return UploadResult(item_id=item.id, media_type=normalized_type, optimized=True, notice=notice)

    def pop_notice(self) -> UploadNotice | None:
        payload = self._notices.pop(UPLOAD_NOTICE_KEY)
        if payload is None:
            return None
        return UploadNotice(
            original_size_label=str(payload["original_size_label"]),
            compressed_size_label=str(payload["compressed_size_label"]),
            savings_bytes=int(payload["savings_bytes"]),
            savings_label=str(payload["savings_label"]),
        )


def notice_to_dict(notice: UploadNotice) -> dict[str, Any]:
    return {
        "original_size_label": notice.original_size_label,
        "compressed_size_label": notice.compressed_size_label,
        "savings_bytes": notice.savings_bytes,
        "savings_label": notice.savings_label,
    }


def upload_result_to_dict(result: UploadResult) -> dict[str, Any]:
    return {
        "item_id": result.item_id,
        "media_type": result.media_type,
        "optimized": result.optimized,
        "notice": None if result.notice is None else notice_to_dict(result.notice),
    }
