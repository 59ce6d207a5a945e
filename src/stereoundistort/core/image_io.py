from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
from PIL import Image


class BitmapReadError(OSError):
    pass


# Pillow `info` keys that survive a round trip through `Image.save`.
_SAVED_METADATA_KEYS = ("exif", "icc_profile", "dpi")


@dataclass
class Bitmap:
    """
    Raster image (H,W) or (H,W,C) plus the metadata read alongside it.
    """

    pixels: np.ndarray
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return 1 if self.pixels.ndim == 2 else int(self.pixels.shape[2])

    @property
    def is_rgb(self) -> bool:
        return self.channels == 3


def load_bitmap(path: str | Path) -> Bitmap:
    """
    Load an image with Pillow, keeping grayscale as (H,W) and color as (H,W,3).

    Palette and other exotic modes are converted to RGB; 16-bit grayscale is
    kept as uint16.
    """
    p = Path(path)
    try:
        with Image.open(p) as im:
            metadata = dict(im.info)
            if im.mode in ("L", "I;16", "RGB"):
                arr = np.asarray(im)
            elif im.mode == "LA":
                arr = np.asarray(im.convert("L"))
            else:
                arr = np.asarray(im.convert("RGB"))
    except OSError as e:
        # Covers missing files and UnidentifiedImageError.
        raise BitmapReadError(f"Cannot read image at path {p}") from e
    return Bitmap(pixels=np.array(arr), metadata=metadata)


def save_bitmap(path: str | Path, bitmap: Bitmap) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    img = Image.fromarray(np.ascontiguousarray(bitmap.pixels))
    kwargs = {k: bitmap.metadata[k] for k in _SAVED_METADATA_KEYS if bitmap.metadata.get(k) is not None}
    if p.suffix.lower() == ".webp":
        kwargs["lossless"] = True
    img.save(p, **kwargs)
    return p
