from __future__ import annotations

import logging

from sqlalchemy import Engine, select, text
from sqlalchemy.orm import Session

from imgoptim.db.migrations import apply_migrations
from imgoptim.db.models import COMPRESSION_STATS_KEY, Base, CompressionStats
from imgoptim.db.session import get_engine

logger = logging.getLogger(__name__)


def _seed_compression_stats(engine: Engine) -> None:
    with Session(engine) as session:
        exists = session.scalar(select(CompressionStats.key).where(CompressionStats.key == COMPRESSION_STATS_KEY))
        if exists is None:
            session.add(CompressionStats(key=COMPRESSION_STATS_KEY, count=0, original_bytes=0, compressed_bytes=0))
            session.commit()


def initialize_database(engine: Engine | None = None) -> list[int]:
    """Create missing tables, run pending migrations and seed the stats row.

    Returns the migration versions applied by this call, empty when the schema
    was already current.
    """
    target = engine or get_engine()
    Base.metadata.create_all(bind=target)
    applied = apply_migrations(target)
    _seed_compression_stats(target)

    if target.url.drivername.startswith("sqlite"):
        with target.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()

    if applied:
        logger.info("Applied schema migrations: %s", ", ".join(str(version) for version in applied))
    return applied
