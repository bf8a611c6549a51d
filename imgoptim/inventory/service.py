from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from imgoptim.core.config import Settings
from imgoptim.core.path_safety import (
    PathSafetyError,
    relative_to_libraries,
    resolve_under_libraries,
    validate_library_relative_path,
)
from imgoptim.db.models import OPTIMIZED_MARKER_KEY, LibraryImage, OptimizedMarker
from imgoptim.inventory.types import LibraryImageSnapshot, ScanResult
from imgoptim.optimizer.errors import ResolutionError, StoreError

logger = logging.getLogger(__name__)

_MEDIA_TYPES_BY_EXTENSION = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".jpe": "image/jpeg",
    ".png": "image/png",
}
_TEMP_PREFIX = ".imgoptim-"


class InventoryPolicyError(RuntimeError):
    pass


def infer_media_type(relative_path: str) -> str | None:
    return _MEDIA_TYPES_BY_EXTENSION.get(Path(relative_path).suffix.lower())


class LibraryInventory:
    """Image inventory backed by the ``library_images`` table.

    Item ids are the table's primary keys. Paths are stored relative to the
    libraries root and resolved through the path-safety helpers on every
    lookup, so a tampered row can never point outside the root.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _to_snapshot(self, row: LibraryImage) -> LibraryImageSnapshot:
        return LibraryImageSnapshot(
            id=row.id,
            relative_path=row.relative_path,
            media_type=row.media_type,
            label=row.label,
            size_bytes=row.size_bytes,
        )

    def _upsert(self, session: Session, relative_path: str, media_type: str, size_bytes: int) -> tuple[LibraryImage, bool]:
        row = session.scalar(select(LibraryImage).where(LibraryImage.relative_path == relative_path))
        if row is None:
            row = LibraryImage(
                relative_path=relative_path,
                media_type=media_type,
                label=Path(relative_path).stem,
                size_bytes=size_bytes,
            )
            session.add(row)
            session.flush()
            return row, True
        row.media_type = media_type
        row.size_bytes = size_bytes
        return row, False

    def register(self, relative_path: str, media_type: str | None = None) -> LibraryImageSnapshot:
        try:
            rel = validate_library_relative_path(relative_path).as_posix()
            absolute = resolve_under_libraries(self._settings.libraries_root, rel)
        except PathSafetyError as exc:
            raise InventoryPolicyError(str(exc)) from exc

        effective_type = (media_type or infer_media_type(rel) or "").lower().strip()
        if not effective_type:
            raise InventoryPolicyError(f"Cannot infer media type for {rel}")

        size_bytes = absolute.stat().st_size if absolute.is_file() else 0
        try:
            with self._session_factory() as session:
                row, _created = self._upsert(session, rel, effective_type, size_bytes)
                session.commit()
                session.refresh(row)
                return self._to_snapshot(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to register {rel}: {exc}") from exc

    def scan(self) -> ScanResult:
        root = self._settings.libraries_root
        if not root.is_dir():
            raise InventoryPolicyError(f"Libraries root does not exist: {root.as_posix()}")

        files_seen = 0
        registered = 0
        updated = 0
        try:
            with self._session_factory() as session:
                for path in sorted(root.rglob("*")):
                    if not path.is_file() or path.name.startswith(_TEMP_PREFIX):
                        continue
                    media_type = infer_media_type(path.name)
                    if media_type is None:
                        continue
                    files_seen += 1
                    rel = path.relative_to(root).as_posix()
                    _row, created = self._upsert(session, rel, media_type, path.stat().st_size)
                    if created:
                        registered += 1
                    else:
                        updated += 1
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"Inventory scan failed: {exc}") from exc

        logger.info("Inventory scan finished: %d images, %d new", files_seen, registered)
        return ScanResult(files_seen=files_seen, registered=registered, updated=updated)

    def list_candidate_items(self, media_types: Sequence[str], exclude_marker: str) -> list[int]:
        if exclude_marker != OPTIMIZED_MARKER_KEY:
            raise InventoryPolicyError(f"Unknown marker: {exclude_marker}")

        normalized = [item.lower().strip() for item in media_types]
        stmt = (
            select(LibraryImage.id)
            .outerjoin(OptimizedMarker, OptimizedMarker.item_id == LibraryImage.id)
            .where(OptimizedMarker.item_id.is_(None), LibraryImage.media_type.in_(normalized))
            .order_by(LibraryImage.id.asc())
        )
        try:
            with self._session_factory() as session:
                return [int(item_id) for item_id in session.scalars(stmt).all()]
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to list candidate items: {exc}") from exc

    def get_item(self, item_id: int) -> LibraryImageSnapshot | None:
        try:
            with self._session_factory() as session:
                row = session.get(LibraryImage, item_id)
                return None if row is None else self._to_snapshot(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to load inventory item {item_id}: {exc}") from exc

    def resolve_path(self, item_id: int) -> Path | None:
        item = self.get_item(item_id)
        if item is None:
            return None
        try:
            return resolve_under_libraries(self._settings.libraries_root, item.relative_path)
        except PathSafetyError:
            logger.warning("Inventory item %d has an unsafe path: %s", item_id, item.relative_path)
            return None

    def resolve_item_id(self, path: Path) -> int:
        try:
            rel = relative_to_libraries(self._settings.libraries_root, path)
        except PathSafetyError as exc:
            raise ResolutionError(f"Cannot map {path.as_posix()} to an inventory item: {exc}") from exc

        try:
            with self._session_factory() as session:
                item_id = session.scalar(select(LibraryImage.id).where(LibraryImage.relative_path == rel))
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to look up inventory item for {rel}: {exc}") from exc
        if item_id is None:
            raise ResolutionError(f"No inventory item for {rel}")
        return int(item_id)

    def get_label(self, item_id: int) -> str | None:
        item = self.get_item(item_id)
        return None if item is None else item.label
