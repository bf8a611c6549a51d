from __future__ import annotations

from pathlib import Path

import pytest

from imgoptim.optimizer.errors import EncodeError, UnsupportedFormat


def write_sized_file(path: Path, size_bytes: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as handle:
        handle.truncate(size_bytes)
    return path


class ShrinkingEncoder:
    def __init__(self, owner: "FakeRecompressor", path: Path):
        self._owner = owner
        self._path = path

    def rewrite(self, quality: int) -> None:
        self._owner.calls.append((self._path.name, quality))
        if self._path.name in self._owner.fail_on_rewrite:
            raise EncodeError(f"Simulated encoder failure for {self._path.name}")
        new_size = int(self._path.stat().st_size * self._owner.ratio)
        with self._path.open("r+b") as handle:
            handle.truncate(new_size)


class FakeRecompressor:
    """Rewrites files by truncating them to ``ratio`` of their size."""

    def __init__(self, ratio: float = 0.5):
        self.ratio = ratio
        self.calls: list[tuple[str, int]] = []
        self.reject: set[str] = set()
        self.fail_on_rewrite: set[str] = set()

    def load(self, path: Path) -> ShrinkingEncoder:
        if path.name in self.reject:
            raise UnsupportedFormat(f"Simulated unsupported format for {path.name}")
        return ShrinkingEncoder(self, path)

    @property
    def qualities(self) -> list[int]:
        return [quality for _name, quality in self.calls]


@pytest.fixture
def fake_recompressor() -> FakeRecompressor:
    return FakeRecompressor()


@pytest.fixture
def sized_file():
    return write_sized_file
