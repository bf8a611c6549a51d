from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence


class Inventory(Protocol):
    def list_candidate_items(self, media_types: Sequence[str], exclude_marker: str) -> list[int]: ...

    def resolve_path(self, item_id: int) -> Path | None: ...

    def resolve_item_id(self, path: Path) -> int: ...

    def get_label(self, item_id: int) -> str | None: ...


@dataclass(frozen=True)
class LibraryImageSnapshot:
    id: int
    relative_path: str
    media_type: str
    label: str
    size_bytes: int


@dataclass(frozen=True)
class ScanResult:
    files_seen: int
    registered: int
    updated: int
