from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from imgoptim.core.sizes import format_size
from imgoptim.db.models import COMPRESSION_STATS_KEY, CompressionStats
from imgoptim.optimizer.errors import StoreError


@dataclass(frozen=True)
class StatsSnapshot:
    count: int
    original_bytes: int
    compressed_bytes: int

    @property
    def saved_bytes(self) -> int:
        return self.original_bytes - self.compressed_bytes


class StatsService:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _increment(self, session: Session, original_size: int, compressed_size: int) -> int:
        result = session.execute(
            update(CompressionStats)
            .where(CompressionStats.key == COMPRESSION_STATS_KEY)
            .values(
                count=CompressionStats.count + 1,
                original_bytes=CompressionStats.original_bytes + original_size,
                compressed_bytes=CompressionStats.compressed_bytes + compressed_size,
            )
        )
        return int(result.rowcount or 0)

    def apply(self, session: Session, original_size: int, compressed_size: int) -> None:
        """Add one result to the totals inside the caller's transaction.

        The caller commits. On SQLite the update takes the write lock, so the
        insert fallback cannot race another writer in the same transaction.
        """
        if original_size < 0 or compressed_size < 0:
            raise ValueError("Sizes must be non-negative")

        if self._increment(session, original_size, compressed_size) == 0:
            session.add(
                CompressionStats(
                    key=COMPRESSION_STATS_KEY,
                    count=1,
                    original_bytes=original_size,
                    compressed_bytes=compressed_size,
                )
            )
            session.flush()

    def record(self, original_size: int, compressed_size: int) -> None:
        if original_size < 0 or compressed_size < 0:
            raise ValueError("Sizes must be non-negative")

        try:
            with self._session_factory() as session:
                try:
                    self.apply(session, original_size, compressed_size)
                except IntegrityError:
                    # Lost the race to create the row; it exists now.
                    session.rollback()
                    self._increment(session, original_size, compressed_size)
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to update compression stats: {exc}") from exc

    def get_stats(self) -> StatsSnapshot:
        try:
            with self._session_factory() as session:
                row = session.get(CompressionStats, COMPRESSION_STATS_KEY)
                if row is None:
                    return StatsSnapshot(count=0, original_bytes=0, compressed_bytes=0)
                return StatsSnapshot(
                    count=int(row.count),
                    original_bytes=int(row.original_bytes),
                    compressed_bytes=int(row.compressed_bytes),
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read compression stats: {exc}") from exc


def stats_snapshot_to_dict(snapshot: StatsSnapshot) -> dict[str, Any]:
    return {
        "count": snapshot.count,
        "original_bytes": snapshot.original_bytes,
        "compressed_bytes": snapshot.compressed_bytes,
        "saved_bytes": snapshot.saved_bytes,
        "original_label": format_size(snapshot.original_bytes),
        "compressed_label": format_size(snapshot.compressed_bytes),
        "saved_label": format_size(snapshot.saved_bytes),
    }
