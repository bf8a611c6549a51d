from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, insert, select, text

from imgoptim.db.models import ItemFailure, SchemaMigration


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _columns(conn: Connection, table_name: str) -> set[str]:
    inspector = inspect(conn)
    if not inspector.has_table(table_name):
        return set()
    return {str(column["name"]) for column in inspector.get_columns(table_name)}


def _indexes(conn: Connection, table_name: str) -> set[str]:
    inspector = inspect(conn)
    if not inspector.has_table(table_name):
        return set()
    return {str(index["name"]) for index in inspector.get_indexes(table_name)}


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _migration_0002_bulk_job_version_token(conn: Connection) -> None:
    # Records written before optimistic saves carry neither column.
    columns = _columns(conn, "bulk_jobs")
    if not columns:
        return
    if "version" not in columns:
        conn.execute(text("ALTER TABLE bulk_jobs ADD COLUMN version INTEGER NOT NULL DEFAULT 1"))
    if "job_id" not in columns:
        conn.execute(text("ALTER TABLE bulk_jobs ADD COLUMN job_id VARCHAR(36) NOT NULL DEFAULT ''"))


def _migration_0003_item_failure_log(conn: Connection) -> None:
    table = ItemFailure.__table__
    table.create(conn, checkfirst=True)
    existing = _indexes(conn, table.name)
    for index in table.indexes:
        if index.name not in existing:
            index.create(conn)


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="bulk_job_version_token", apply=_migration_0002_bulk_job_version_token),
    MigrationStep(version=3, name="item_failure_log", apply=_migration_0003_item_failure_log),
)


def apply_migrations(engine: Engine) -> list[int]:
    """Run every migration step not yet recorded; returns the versions applied."""
    applied: list[int] = []
    with engine.begin() as conn:
        SchemaMigration.__table__.create(conn, checkfirst=True)
        recorded = set(conn.scalars(select(SchemaMigration.version)).all())

        for step in MIGRATIONS:
            if step.version in recorded:
                continue
            step.apply(conn)
            conn.execute(insert(SchemaMigration).values(version=step.version, name=step.name))
            applied.append(step.version)
    return applied
