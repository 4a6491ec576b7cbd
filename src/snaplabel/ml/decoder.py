"""JPEG decoding into a raw RGBA pixel grid.

Only baseline/progressive JPEG (what camera and gallery pickers hand back) is
accepted. The decoded grid keeps the header dimensions exactly; EXIF
orientation is not applied.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from snaplabel.errors import DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# Pillow reports JPEGs carrying a multi-picture (MP) APP2 segment, as many
# phone cameras write, as MPO. The first frame is the primary image.
SUPPORTED_FORMATS = frozenset({"JPEG", "MPO"})
SOURCE_MODE = "RGBA"
SOURCE_CHANNELS = 4


@dataclass(frozen=True, eq=False)
class PixelGrid:
    """Decoded image samples, row-major, top row first, 4 bytes (R, G, B, A) per pixel."""

    width: int
    height: int
    samples: NDArray[np.uint8]


class ImageDecoder:
    """Turns compressed JPEG bytes into a :class:`PixelGrid`."""

    def __init__(self, max_image_pixels: int | None = None) -> None:
        self._max_image_pixels = max_image_pixels

    def decode(self, data: bytes) -> PixelGrid:
        """Decode a JPEG byte buffer.

        Raises:
            DecodeError: If the bytes are empty, not a JPEG, truncated, or too large.
        """
        if not data:
            raise DecodeError("Empty image data")

        try:
            with Image.open(io.BytesIO(data)) as img:
                if img.format not in SUPPORTED_FORMATS:
                    raise DecodeError(f"Unsupported image format: {img.format} (expected JPEG)")
                img.seek(0)
                width, height = img.size
                self._check_size(width, height)
                img.load()
                rgba = img if img.mode == SOURCE_MODE else img.convert(SOURCE_MODE)
                raw = rgba.tobytes()
        except DecodeError:
            raise
        except UnidentifiedImageError:
            raise DecodeError("Data does not contain a recognizable image") from None
        except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
            raise DecodeError(f"Failed to decode JPEG: {exc}") from exc

        samples = np.frombuffer(raw, dtype=np.uint8)
        if samples.size != width * height * SOURCE_CHANNELS:
            raise DecodeError(f"Decoder produced {samples.size} samples for a {width}x{height} image")

        logger.debug("Decoded %dx%d JPEG (%d bytes in)", width, height, len(data))
        return PixelGrid(width=width, height=height, samples=samples)

    def _check_size(self, width: int, height: int) -> None:
        if width <= 0 or height <= 0:
            raise DecodeError(f"Invalid image dimensions {width}x{height}")
        if self._max_image_pixels is not None and width * height > self._max_image_pixels:
            raise DecodeError(
                f"Image of {width}x{height} exceeds the limit of {self._max_image_pixels} pixels"
            )
