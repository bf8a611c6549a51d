from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from imgoptim.inventory.types import Inventory
from imgoptim.jobs.store import JobStore
from imgoptim.optimizer.errors import ReadError, ResolutionError
from imgoptim.optimizer.quality import QualityPolicy
from imgoptim.optimizer.recompress import Recompressor
from imgoptim.stats.service import StatsService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    path: Path
    original_size: int
    compressed_size: int
    quality: int
    item_id: int | None

    @property
    def marked(self) -> bool:
        return self.item_id is not None

    @property
    def savings_bytes(self) -> int:
        return self.original_size - self.compressed_size


def _read_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError as exc:
        raise ReadError(f"Cannot read size of {path.as_posix()}: {exc}") from exc


class ItemProcessor:
    """Recompresses one file in place and records the outcome.

    Raises ``ReadError``, ``UnsupportedFormat``, ``EncodeError`` or
    ``StoreError``; callers that walk many items catch them and move on.
    Calling it twice on the same file recompresses twice; the bulk job avoids
    that by checking the optimized marker before calling in. The marker and
    the stats increment commit together, so a failed marker write leaves the
    totals untouched.
    """

    def __init__(
        self,
        *,
        policy: QualityPolicy,
        inventory: Inventory,
        recompressor: Recompressor,
        stats: StatsService,
        store: JobStore,
    ):
        self._policy = policy
        self._inventory = inventory
        self._recompressor = recompressor
        self._stats = stats
        self._store = store

    def process(self, path: Path) -> ProcessResult:
        original_size = _read_size(path)
        encoder = self._recompressor.load(path)
        quality = self._policy.compute_quality(original_size)
        encoder.rewrite(quality)
        compressed_size = _read_size(path)

        if compressed_size > original_size:
            logger.warning(
                "Recompression grew %s from %d to %d bytes at quality %d",
                path.name,
                original_size,
                compressed_size,
                quality,
            )

        item_id: int | None
        try:
            item_id = self._inventory.resolve_item_id(path)
        except ResolutionError as exc:
            logger.warning("Optimized %s but skipped its marker: %s", path.name, exc)
            item_id = None
            self._stats.record(original_size, compressed_size)
        else:
            self._store.set_marker(
                item_id,
                original_bytes=original_size,
                compressed_bytes=compressed_size,
                quality=quality,
                stats=self._stats,
            )

        logger.info(
            "Optimized %s at quality %d: %d -> %d bytes",
            path.name,
            quality,
            original_size,
            compressed_size,
        )
        return ProcessResult(
            path=path,
            original_size=original_size,
            compressed_size=compressed_size,
            quality=quality,
            item_id=item_id,
        )
