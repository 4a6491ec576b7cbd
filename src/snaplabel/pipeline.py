"""Pipeline coordinator: the single owner of session state.

Sequences runtime init, model load, and permission requests at startup, then
turns each image selection into a classification run. Observers receive a
fresh immutable :class:`PipelineState` after every mutation and user-facing
:class:`Notice` objects for anything that went wrong.

Classification runs are serialized. Each run is tagged with the image
reference it was started for, and its result is dropped if the user has
selected another image in the meantime.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING

from snaplabel.acquisition import CANCELLED, AcquisitionController
from snaplabel.errors import (
    AcquisitionError,
    DecodeError,
    FetchError,
    InferenceError,
    MalformedGridError,
    ModelLoadError,
    RuntimeInitError,
)
from snaplabel.fetch import HttpByteFetcher
from snaplabel.ml.decoder import ImageDecoder
from snaplabel.ml.engine import InferenceEngine
from snaplabel.ml.inference import InferencePool
from snaplabel.ml.model_manager import OnnxModelManager
from snaplabel.ml.tensor import to_tensor
from snaplabel.permissions import DENIAL_MESSAGES, PermissionStatus, request_permissions

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from snaplabel.acquisition import Cancelled, ImageReference, ImageSource, Picker
    from snaplabel.config import Settings
    from snaplabel.fetch import ByteFetcher
    from snaplabel.ml.image_classifier import Prediction
    from snaplabel.ml.tensor import Tensor
    from snaplabel.permissions import PermissionRequester

logger = logging.getLogger(__name__)

CLASSIFICATION_FAILED_MESSAGE = "Classification failed, try again."


@dataclass(frozen=True)
class PipelineState:
    """Snapshot of the session as seen by observers."""

    runtime_ready: bool = False
    model_ready: bool = False
    selected_image: ImageReference | None = None
    predictions: tuple[Prediction, ...] | None = None


class NoticeKind(StrEnum):
    RUNTIME_FAILED = "runtime_failed"
    MODEL_LOAD_FAILED = "model_load_failed"
    PERMISSION_DENIED = "permission_denied"
    ACQUISITION_FAILED = "acquisition_failed"
    CLASSIFICATION_FAILED = "classification_failed"


@dataclass(frozen=True)
class Notice:
    """A transient, user-visible signal."""

    kind: NoticeKind
    message: str


class PipelineCoordinator:
    """Owns :class:`PipelineState` and drives the acquire -> classify flow."""

    def __init__(
        self,
        engine: InferenceEngine,
        acquisition: AcquisitionController,
        fetcher: ByteFetcher,
        permissions: PermissionRequester,
        decoder: ImageDecoder | None = None,
    ) -> None:
        self._engine = engine
        self._acquisition = acquisition
        self._fetcher = fetcher
        self._permissions = permissions
        self._decoder = decoder or ImageDecoder()

        self._state = PipelineState()
        self._state_observers: list[Callable[[PipelineState], None]] = []
        self._notice_observers: list[Callable[[Notice], None]] = []
        self._classify_lock = asyncio.Lock()

    @property
    def state(self) -> PipelineState:
        return self._state

    # -- Observers ----------------------------------------------------------

    def subscribe(self, callback: Callable[[PipelineState], None]) -> Callable[[], None]:
        """Register a state observer. Returns a function that unregisters it."""
        self._state_observers.append(callback)
        return lambda: self._state_observers.remove(callback)

    def subscribe_notices(self, callback: Callable[[Notice], None]) -> Callable[[], None]:
        """Register a notice observer. Returns a function that unregisters it."""
        self._notice_observers.append(callback)
        return lambda: self._notice_observers.remove(callback)

    # -- Session ------------------------------------------------------------

    async def start(self) -> None:
        """Bring up the runtime and model, then ask for permissions.

        Raises:
            RuntimeInitError: If the runtime cannot start. The session is over.
        """
        try:
            await self._engine.init_runtime()
        except RuntimeInitError as exc:
            logger.critical("Runtime initialization failed: %s", exc)
            self._emit(NoticeKind.RUNTIME_FAILED, "The classifier runtime could not start.")
            raise
        self._update(runtime_ready=True)

        await self._load_model()
        await self._request_permissions()

    async def retry_model_load(self) -> bool:
        """Retry a failed model load. Returns whether the model is now ready."""
        if self._state.model_ready:
            return True
        return await self._load_model()

    async def acquire(self, source: ImageSource) -> ImageReference | Cancelled | None:
        """Get an image from ``source`` and classify it.

        Returns:
            The new selection, ``CANCELLED``, or ``None`` if the picker failed.
        """
        try:
            result = await self._acquisition.acquire(source)
        except AcquisitionError as exc:
            logger.warning("Image acquisition from %s failed: %s", source, exc)
            self._emit(NoticeKind.ACQUISITION_FAILED, "Could not get an image, try again.")
            return None

        if result is CANCELLED:
            return CANCELLED

        self._update(selected_image=result, predictions=None)
        await self._classify(result)
        return result

    async def retry_classification(self) -> None:
        """Re-run classification for the current selection if it has no predictions."""
        current = self._state.selected_image
        if current is None or self._state.predictions is not None:
            return
        await self._classify(current)

    # -- Internal -----------------------------------------------------------

    async def _load_model(self) -> bool:
        try:
            await self._engine.load_model()
        except ModelLoadError as exc:
            logger.warning("Model load failed, retry is possible: %s", exc)
            self._emit(NoticeKind.MODEL_LOAD_FAILED, "The model could not be loaded, try again.")
            return False
        self._update(model_ready=True)
        return True

    async def _request_permissions(self) -> None:
        try:
            statuses = await request_permissions(self._permissions)
        except Exception:
            logger.exception("Permission request failed")
            self._emit(NoticeKind.PERMISSION_DENIED, "Could not request camera permissions.")
            return

        for kind, status in statuses.items():
            if status is not PermissionStatus.GRANTED:
                self._emit(NoticeKind.PERMISSION_DENIED, DENIAL_MESSAGES[kind])

    async def _classify(self, tag: ImageReference) -> None:
        async with self._classify_lock:
            if self._state.selected_image is not tag:
                logger.debug("Skipping classification of superseded image %s", tag.uri)
                return

            try:
                data = await self._fetcher.fetch_bytes(tag.uri)
                tensor = await asyncio.to_thread(self._build_tensor, data)
                predictions = await self._engine.classify(tensor)
            except (FetchError, DecodeError, MalformedGridError, InferenceError) as exc:
                self._classification_failed(tag, exc)
                return

            if self._state.selected_image is not tag:
                logger.debug("Discarding stale predictions for %s", tag.uri)
                return
            self._update(predictions=tuple(predictions))

    def _build_tensor(self, data: bytes) -> Tensor:
        return to_tensor(self._decoder.decode(data))

    def _classification_failed(self, tag: ImageReference, exc: Exception) -> None:
        if isinstance(exc, MalformedGridError):
            logger.error("Pixel grid invariant violated for %s", tag.uri, exc_info=exc)
        else:
            logger.warning("Classification of %s failed: %s", tag.uri, exc)

        if self._state.selected_image is not tag:
            logger.debug("Failure for superseded image %s not surfaced", tag.uri)
            return
        self._emit(NoticeKind.CLASSIFICATION_FAILED, CLASSIFICATION_FAILED_MESSAGE)

    def _update(self, **changes: object) -> None:
        self._state = replace(self._state, **changes)
        for callback in list(self._state_observers):
            callback(self._state)

    def _emit(self, kind: NoticeKind, message: str) -> None:
        notice = Notice(kind=kind, message=message)
        for callback in list(self._notice_observers):
            callback(notice)


@asynccontextmanager
async def open_session(
    settings: Settings,
    picker: Picker,
    permissions: PermissionRequester,
) -> AsyncIterator[PipelineCoordinator]:
    """Build a coordinator wired to the ONNX engine and the HTTP/file fetcher.

    The caller still drives :meth:`PipelineCoordinator.start`. On exit the
    fetcher's HTTP client, the inference pool, and cached sessions are released.
    """
    pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    engine = InferenceEngine(settings, model_manager, pool)
    fetcher = HttpByteFetcher(settings)
    coordinator = PipelineCoordinator(
        engine=engine,
        acquisition=AcquisitionController(picker),
        fetcher=fetcher,
        permissions=permissions,
        decoder=ImageDecoder(max_image_pixels=settings.max_image_pixels),
    )
    try:
        yield coordinator
    finally:
        await engine.aclose()
        await fetcher.aclose()
        pool.shutdown()
        model_manager.shutdown()
        logger.info("Pipeline session closed")
