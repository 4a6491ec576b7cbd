"""Inference engine: runtime initialization, model loading, and classification.

Readiness is an explicit state machine::

    UNINITIALIZED -> RUNTIME_READY -> MODEL_READY

States only move forward. A failed model load leaves the engine at
RUNTIME_READY so the load can be retried; a failed runtime init is fatal.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import StrEnum
from typing import TYPE_CHECKING

from snaplabel.errors import InferenceError, ModelLoadError, RuntimeInitError
from snaplabel.ml.tensor import CHANNEL_AXIS, TENSOR_CHANNELS, TENSOR_RANK

if TYPE_CHECKING:
    from snaplabel.config import Settings
    from snaplabel.ml.image_classifier import ImageClassifier, Prediction
    from snaplabel.ml.inference import InferencePool
    from snaplabel.ml.model_manager import ModelManager
    from snaplabel.ml.tensor import Tensor

logger = logging.getLogger(__name__)


class EngineState(StrEnum):
    UNINITIALIZED = "uninitialized"
    RUNTIME_READY = "runtime_ready"
    MODEL_READY = "model_ready"


class InferenceEngine:
    """Wraps the ONNX runtime and one classification model behind a readiness state."""

    def __init__(self, settings: Settings, model_manager: ModelManager, pool: InferencePool) -> None:
        self._model_name = settings.classification_model
        self._model_manager = model_manager
        self._pool = pool
        self._state = EngineState.UNINITIALIZED
        self._classifier: ImageClassifier | None = None
        self._load_lock = asyncio.Lock()
        self._load_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def runtime_ready(self) -> bool:
        return self._state in (EngineState.RUNTIME_READY, EngineState.MODEL_READY)

    @property
    def model_ready(self) -> bool:
        return self._state is EngineState.MODEL_READY

    @property
    def model_name(self) -> str:
        return self._model_name

    async def init_runtime(self) -> None:
        """Prepare the execution backend. Safe to call more than once.

        Raises:
            RuntimeInitError: If the backend cannot be initialized.
        """
        if self.runtime_ready:
            return
        try:
            providers = self._model_manager.verify_runtime()
        except RuntimeInitError:
            raise
        except Exception as exc:
            raise RuntimeInitError(f"Runtime initialization failed: {exc}") from exc
        self._state = EngineState.RUNTIME_READY
        logger.info("Runtime ready (providers=%s)", providers)

    async def load_model(self) -> ImageClassifier:
        """Download and load the configured classifier.

        Raises:
            ModelLoadError: If the runtime is not ready or loading fails. The
                engine stays at RUNTIME_READY and the call can be retried.
        """
        if not self.runtime_ready:
            raise ModelLoadError("load_model() called before init_runtime() completed")

        async with self._load_lock:
            if self._classifier is not None:
                return self._classifier

            logger.info("Loading model %s", self._model_name)
            try:
                classifier = await self._pool.run(self._model_manager.load_classifier, self._model_name)
            except Exception as exc:
                logger.warning("Loading model %s failed: %s", self._model_name, exc)
                raise ModelLoadError(f"Could not load model {self._model_name}: {exc}") from exc

            self._classifier = classifier
            self._state = EngineState.MODEL_READY
            logger.info("Model %s ready", self._model_name)
            return classifier

    def schedule_load(self) -> asyncio.Task[None] | None:
        """Start a background model load unless one is running or the model is ready.

        Returns the in-flight load task, or ``None`` when there is nothing to
        load (model ready, or runtime not initialized).
        """
        if self.model_ready or not self.runtime_ready:
            return None
        if self._load_task is None or self._load_task.done():
            self._load_task = asyncio.create_task(self._load_in_background())
        return self._load_task

    async def aclose(self) -> None:
        """Cancel any background model load."""
        task, self._load_task = self._load_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _load_in_background(self) -> None:
        try:
            await self.load_model()
        except ModelLoadError:
            logger.exception("Background load of %s failed; retried on the next request", self._model_name)

    async def classify(self, tensor: Tensor) -> list[Prediction]:
        """Classify one HxWx3 tensor.

        Returns:
            The model's top-K predictions, highest score first.

        Raises:
            InferenceError: If the model is not loaded, the tensor shape is
                wrong, or the runtime faults.
        """
        if self._classifier is None:
            raise InferenceError(f"classify() requires state {EngineState.MODEL_READY}, engine is {self._state}")
        self._check_shape(tensor)

        try:
            predictions = await self._pool.run(self._classifier.classify, tensor.as_array())
        except Exception as exc:
            raise InferenceError(f"Classification failed: {exc}") from exc

        logger.debug(
            "Classified tensor dims=%s: %s",
            list(tensor.dims),
            ", ".join(f"{p.label}={p.score:.3f}" for p in predictions),
        )
        return predictions

    @staticmethod
    def _check_shape(tensor: Tensor) -> None:
        dims = tuple(tensor.dims)
        if len(dims) != TENSOR_RANK:
            raise InferenceError(f"Expected a {TENSOR_RANK}-D tensor, got dims {list(dims)}")
        if dims[CHANNEL_AXIS] != TENSOR_CHANNELS:
            raise InferenceError(f"Expected {TENSOR_CHANNELS} channels, got {dims[CHANNEL_AXIS]}")
        if any(d <= 0 for d in dims):
            raise InferenceError(f"Tensor dims must be positive, got {list(dims)}")
        expected = dims[0] * dims[1] * dims[2]
        if tensor.values.size != expected:
            raise InferenceError(f"Tensor carries {tensor.values.size} values, dims {list(dims)} need {expected}")
