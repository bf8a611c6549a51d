from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from PIL import Image, UnidentifiedImageError

from imgoptim.optimizer.errors import EncodeError, UnsupportedFormat

logger = logging.getLogger(__name__)

# Multi-picture JPEGs from cameras open as MPO; only the primary frame is kept.
_SAVE_FORMATS = {"JPEG": "JPEG", "MPO": "JPEG", "PNG": "PNG"}


class Encoder(Protocol):
    def rewrite(self, quality: int) -> None: ...


class Recompressor(Protocol):
    def load(self, path: Path) -> Encoder: ...


def png_compress_level(quality: int) -> int:
    # zlib levels run 0-9; high quality keeps the cheap end of the scale.
    return max(0, min(9, (101 - quality) // 10))


class PillowEncoder:
    def __init__(self, path: Path, image: Image.Image, save_format: str):
        self._path = path
        self._image = image
        self._format = save_format

    @property
    def format(self) -> str:
        return self._format

    def _save_options(self, quality: int) -> dict[str, Any]:
        options: dict[str, Any] = {"optimize": True}
        icc_profile = self._image.info.get("icc_profile")
        if icc_profile:
            options["icc_profile"] = icc_profile
        if self._format == "JPEG":
            options["quality"] = quality
            exif = self._image.info.get("exif")
            if exif:
                options["exif"] = exif
        else:
            options["compress_level"] = png_compress_level(quality)
        return options

    def rewrite(self, quality: int) -> None:
        if quality < 0 or quality > 100:
            raise EncodeError(f"Quality out of range: {quality}")

        fd, tmp_name = tempfile.mkstemp(prefix=".imgoptim-", suffix=self._path.suffix, dir=self._path.parent)
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            self._image.save(tmp_path, format=self._format, **self._save_options(quality))
            os.replace(tmp_path, self._path)
        except (OSError, ValueError) as exc:
            tmp_path.unlink(missing_ok=True)
            raise EncodeError(f"Failed to rewrite {self._path.name}: {exc}") from exc
        logger.debug("Rewrote %s as %s at quality %d", self._path, self._format, quality)


class PillowRecompressor:
    def load(self, path: Path) -> PillowEncoder:
        try:
            with Image.open(path) as opened:
                opened.load()
                image_format = opened.format
                image = opened.copy()
                image.format = image_format
                image.info = dict(opened.info)
        except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
            raise UnsupportedFormat(f"Unrecognized image data in {path.name}") from exc
        except OSError as exc:
            raise UnsupportedFormat(f"Cannot decode {path.name}: {exc}") from exc

        save_format = _SAVE_FORMATS.get(image_format or "")
        if save_format is None:
            raise UnsupportedFormat(f"Unsupported image format: {image_format or '<none>'}")
        return PillowEncoder(path, image, save_format)
