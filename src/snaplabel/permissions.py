"""Camera and photo-library permission boundary."""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import Protocol

logger = logging.getLogger(__name__)


class PermissionKind(StrEnum):
    CAMERA_ROLL = "camera_roll"
    CAMERA = "camera"


class PermissionStatus(StrEnum):
    GRANTED = "granted"
    DENIED = "denied"


class PermissionRequester(Protocol):
    """Platform permission prompt."""

    async def request_permission(self, kind: PermissionKind) -> PermissionStatus: ...


DENIAL_MESSAGES: dict[PermissionKind, str] = {
    PermissionKind.CAMERA_ROLL: "Sorry, we need camera roll permissions to make this work!",
    PermissionKind.CAMERA: "Sorry, we need camera permissions to make this work!",
}


async def request_permissions(
    requester: PermissionRequester,
    kinds: tuple[PermissionKind, ...] = (PermissionKind.CAMERA_ROLL, PermissionKind.CAMERA),
) -> dict[PermissionKind, PermissionStatus]:
    """Request each permission in turn, awaiting each result before reading it.

    Platforms report more than granted/denied (``"undetermined"``,
    ``"limited"``...). Anything other than ``"granted"`` counts as denied.
    """
    statuses: dict[PermissionKind, PermissionStatus] = {}
    for kind in kinds:
        status = await requester.request_permission(kind)
        try:
            statuses[kind] = PermissionStatus(status)
        except ValueError:
            logger.warning("Permission %s returned unknown status %r, treating as denied", kind, status)
            statuses[kind] = PermissionStatus.DENIED
        logger.info("Permission %s: %s", kind, statuses[kind])
    return statuses
