"""Re-packing of RGBA pixel grids into the HWC RGB tensor the classifier consumes.

Every 4-byte source pixel becomes exactly 3 bytes in the output; the alpha byte
is dropped and pixel order is preserved. Dimensions are ordered
(height, width, channels); swapping them still yields a valid-looking tensor
and wrong predictions, so the order lives in named constants.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from snaplabel.errors import MalformedGridError
from snaplabel.ml.decoder import SOURCE_CHANNELS

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from snaplabel.ml.decoder import PixelGrid

TENSOR_CHANNELS = 3
TENSOR_RANK = 3
HEIGHT_AXIS = 0
WIDTH_AXIS = 1
CHANNEL_AXIS = 2


@dataclass(frozen=True, eq=False)
class Tensor:
    """Flat uint8 values with their (height, width, 3) shape."""

    dims: tuple[int, ...]
    values: NDArray[np.uint8]

    @property
    def height(self) -> int:
        return self.dims[HEIGHT_AXIS]

    @property
    def width(self) -> int:
        return self.dims[WIDTH_AXIS]

    def as_array(self) -> NDArray[np.uint8]:
        """Return the values viewed as an HxWx3 array."""
        return self.values.reshape(self.dims)


def to_tensor(grid: PixelGrid) -> Tensor:
    """Drop the alpha byte of every pixel and shape the result as (height, width, 3).

    Raises:
        MalformedGridError: If the sample count is not a multiple of 4 or does
            not match ``width * height * 4``.
    """
    samples = np.asarray(grid.samples, dtype=np.uint8).reshape(-1)

    if samples.size % SOURCE_CHANNELS != 0:
        raise MalformedGridError(
            f"Sample count {samples.size} is not a multiple of {SOURCE_CHANNELS}"
        )
    if grid.width <= 0 or grid.height <= 0:
        raise MalformedGridError(f"Invalid grid dimensions {grid.width}x{grid.height}")

    pixel_count = samples.size // SOURCE_CHANNELS
    if pixel_count != grid.width * grid.height:
        raise MalformedGridError(
            f"Grid declares {grid.width}x{grid.height} pixels but carries {pixel_count}"
        )

    rgb = samples.reshape(pixel_count, SOURCE_CHANNELS)[:, :TENSOR_CHANNELS]
    values = np.ascontiguousarray(rgb).reshape(-1)

    dims = [0] * TENSOR_RANK
    dims[HEIGHT_AXIS] = grid.height
    dims[WIDTH_AXIS] = grid.width
    dims[CHANNEL_AXIS] = TENSOR_CHANNELS
    return Tensor(dims=tuple(dims), values=values)
