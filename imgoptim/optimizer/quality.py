from __future__ import annotations

import math
from dataclasses import dataclass

from imgoptim.core.config import Settings

_BYTES_PER_MB = 1024 * 1024
_QUALITY_STEP_PER_MB = 4


@dataclass(frozen=True)
class QualityPolicy:
    """Maps an input size to an encoder quality level.

    Quality drops linearly by four points per megabyte from ``max_quality``,
    is clamped to ``[min_quality, max_quality]`` and rounded half-up. Small
    files stay at the top of the range; very large files never fall below
    the floor.
    """

    min_quality: int = 40
    max_quality: int = 85

    def __post_init__(self) -> None:
        if self.min_quality > self.max_quality:
            raise ValueError("min_quality must be less than or equal to max_quality")

    @classmethod
    def from_settings(cls, settings: Settings) -> "QualityPolicy":
        return cls(min_quality=settings.min_quality, max_quality=settings.max_quality)

    def compute_quality(self, original_size_bytes: int) -> int:
        if original_size_bytes <= 0:
            return self.max_quality
        size_mb = original_size_bytes / _BYTES_PER_MB
        raw = self.max_quality - size_mb * _QUALITY_STEP_PER_MB
        clamped = max(self.min_quality, min(self.max_quality, raw))
        return int(math.floor(clamped + 0.5))
