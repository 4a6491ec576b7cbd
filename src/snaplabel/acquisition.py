"""Image acquisition from the camera or the photo library.

Pickers are platform-provided and return differently shaped results depending
on the source and platform version. :class:`AcquisitionController` reduces
them to either an :class:`ImageReference` or :data:`CANCELLED`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, StrEnum
from typing import TYPE_CHECKING, Any, Final, Literal, Protocol

from snaplabel.errors import AcquisitionError

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)


class ImageSource(StrEnum):
    CAMERA = "camera"
    LIBRARY = "library"


@dataclass(frozen=True, eq=False)
class ImageReference:
    """Opaque handle to a user-selected image.

    Compared by identity: selecting the same URI twice yields two distinct
    references, and only the most recent one is current.
    """

    uri: str


class _Cancelled(Enum):
    CANCELLED = "cancelled"

    def __repr__(self) -> str:
        return "CANCELLED"


CANCELLED: Final = _Cancelled.CANCELLED
Cancelled = Literal[_Cancelled.CANCELLED]


class Picker(Protocol):
    """Platform image picker.

    Results are mappings such as ``{"uri": ...}``, ``{"cancelled": True}``, or
    ``{"canceled": False, "assets": [{"uri": ...}]}``.
    """

    async def pick_from_camera(self) -> Mapping[str, Any]: ...

    async def pick_from_library(self) -> Mapping[str, Any]: ...


class AcquisitionController:
    """Gets one image from a picker and normalizes the result."""

    def __init__(self, picker: Picker) -> None:
        self._picker = picker

    async def acquire(self, source: ImageSource) -> ImageReference | Cancelled:
        """Ask the user for an image.

        Returns:
            The selected image, or ``CANCELLED`` if the user backed out.

        Raises:
            AcquisitionError: If the picker faults or returns no usable image.
        """
        try:
            if source is ImageSource.CAMERA:
                result = await self._picker.pick_from_camera()
            else:
                result = await self._picker.pick_from_library()
        except Exception as exc:
            raise AcquisitionError(f"{source} picker failed: {exc}") from exc

        normalized = normalize_picker_result(result)
        if normalized is CANCELLED:
            logger.info("Image selection from %s cancelled by user", source)
        else:
            logger.info("Selected image from %s: %s", source, normalized.uri)
        return normalized


def normalize_picker_result(result: Mapping[str, Any] | None) -> ImageReference | Cancelled:
    """Reduce a raw picker result to an image reference or ``CANCELLED``.

    Raises:
        AcquisitionError: If the result carries neither a cancellation flag nor a URI.
    """
    if result is None:
        raise AcquisitionError("Picker returned no result")
    if result.get("cancelled") or result.get("canceled"):
        return CANCELLED

    uri = result.get("uri")
    if uri is None:
        assets = result.get("assets") or []
        if assets:
            uri = assets[0].get("uri")

    if not isinstance(uri, str) or not uri:
        raise AcquisitionError(f"Picker result has no image URI: {dict(result)!r}")
    return ImageReference(uri=uri)
