"""Image classification models.

The classifier is the black box behind the engine: it accepts an HxWx3 RGB
uint8 array of any size and does its own resizing and normalization before
running the ONNX graph.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from snaplabel.ml.model_manager import ModelSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prediction:
    """A single classification prediction."""

    label: str
    score: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[Prediction]:
        """Classify an image and return ranked labels.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            Top-K predictions sorted by score (descending), scores in [0, 1].
        """
        ...


class OnnxImageClassifier:
    """ImageNet-style classifier backed by an ONNX Runtime session."""

    def __init__(self, session: InferenceSession, spec: ModelSpec, labels: list[str]) -> None:
        self._session = session
        self._spec = spec
        self._labels = labels
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def top_k(self) -> int:
        return self._spec.top_k

    def classify(self, image: NDArray[np.uint8]) -> list[Prediction]:
        batch = self._prepare(image)
        outputs = self._session.run(None, {self._input_name: batch})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)

        if scores.size != len(self._labels):
            raise ValueError(
                f"Model {self._spec.name} produced {scores.size} scores for {len(self._labels)} labels"
            )

        if self._spec.outputs_logits:
            scores = _softmax(scores)
        scores = np.clip(scores, 0.0, 1.0)

        k = min(self._spec.top_k, scores.size)
        # Stable sort keeps label order for tied scores.
        ranked = np.argsort(-scores, kind="stable")[:k]
        return [Prediction(label=self._labels[i], score=float(scores[i])) for i in ranked]

    def _prepare(self, image: NDArray[np.uint8]) -> NDArray[np.float32]:
        size = self._spec.input_size
        resized = Image.fromarray(image).resize((size, size), Image.Resampling.BILINEAR)
        pixels = np.asarray(resized, dtype=np.float32) / 255.0
        mean = np.asarray(self._spec.mean, dtype=np.float32)
        std = np.asarray(self._spec.std, dtype=np.float32)
        pixels = (pixels - mean) / std
        if self._spec.channels_first:
            pixels = pixels.transpose(2, 0, 1)
        return np.expand_dims(pixels, axis=0).astype(np.float32)


def _softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = np.exp(logits - np.max(logits))
    return shifted / np.sum(shifted)
