"""Tests for the ONNX image classifier wrapper."""

from __future__ import annotations

from dataclasses import replace
from unittest.mock import MagicMock

import numpy as np
import pytest

from snaplabel.ml.image_classifier import OnnxImageClassifier, Prediction
from snaplabel.ml.model_manager import MODEL_REGISTRY

LABELS = ["cat", "dog", "car", "tree", "boat"]


def _session(scores: list[float]) -> MagicMock:
    model_input = MagicMock()
    model_input.name = "input"
    session = MagicMock()
    session.get_inputs.return_value = [model_input]
    session.run.return_value = [np.array([scores], dtype=np.float32)]
    return session


def _image(height: int = 30, width: int = 40) -> np.ndarray:
    return np.full((height, width, 3), 120, dtype=np.uint8)


class TestOnnxImageClassifier:
    def test_returns_top_k_sorted_descending(self) -> None:
        spec = MODEL_REGISTRY["mobilenet_v2"]
        classifier = OnnxImageClassifier(_session([0.1, 2.0, -1.0, 3.0, 0.5]), spec, LABELS)

        predictions = classifier.classify(_image())

        assert len(predictions) == spec.top_k
        assert [p.label for p in predictions] == ["tree", "dog", "boat"]
        scores = [p.score for p in predictions]
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in scores)

    def test_logits_are_softmaxed(self) -> None:
        spec = replace(MODEL_REGISTRY["mobilenet_v2"], top_k=5)
        classifier = OnnxImageClassifier(_session([1.0, 1.0, 1.0, 1.0, 1.0]), spec, LABELS)

        predictions = classifier.classify(_image())

        assert sum(p.score for p in predictions) == pytest.approx(1.0, abs=1e-5)
        assert all(p.score == pytest.approx(0.2, abs=1e-5) for p in predictions)
        # Ties keep label order.
        assert [p.label for p in predictions] == LABELS

    def test_probabilities_are_clipped_not_softmaxed(self) -> None:
        spec = replace(MODEL_REGISTRY["mobilenet_v2"], outputs_logits=False)
        classifier = OnnxImageClassifier(_session([0.7, 0.2, 1.0000002, 0.0, -0.0001]), spec, LABELS)

        predictions = classifier.classify(_image())

        assert predictions[0] == Prediction(label="car", score=1.0)
        assert predictions[1].score == pytest.approx(0.7)
        assert all(0.0 <= p.score <= 1.0 for p in predictions)

    def test_channels_first_input_layout(self) -> None:
        session = _session([0.0] * 5)
        classifier = OnnxImageClassifier(session, MODEL_REGISTRY["mobilenet_v2"], LABELS)

        classifier.classify(_image(height=10, width=50))

        feed = session.run.call_args.args[1]
        batch = feed["input"]
        assert batch.shape == (1, 3, 224, 224)
        assert batch.dtype == np.float32

    def test_channels_last_input_layout(self) -> None:
        session = _session([0.0] * 5)
        spec = replace(MODEL_REGISTRY["mobilenet_v2"], channels_first=False)
        classifier = OnnxImageClassifier(session, spec, LABELS)

        classifier.classify(_image())

        batch = session.run.call_args.args[1]["input"]
        assert batch.shape == (1, 224, 224, 3)

    @pytest.mark.parametrize(
        ("model", "expected"),
        [
            ("mobilenet_v2", ((120 / 255) - 0.5) / 0.5),
            ("resnet_50", ((120 / 255) - 0.485) / 0.229),
        ],
    )
    def test_normalization_follows_model(self, model: str, expected: float) -> None:
        session = _session([0.0] * 5)
        classifier = OnnxImageClassifier(session, MODEL_REGISTRY[model], LABELS)

        classifier.classify(_image())

        batch = session.run.call_args.args[1]["input"]
        assert batch[0, 0, 0, 0] == pytest.approx(expected, abs=1e-4)

    def test_label_count_mismatch_raises(self) -> None:
        classifier = OnnxImageClassifier(_session([0.5, 0.5]), MODEL_REGISTRY["mobilenet_v2"], LABELS)
        with pytest.raises(ValueError, match="labels"):
            classifier.classify(_image())

    def test_model_name(self) -> None:
        classifier = OnnxImageClassifier(_session([0.0] * 5), MODEL_REGISTRY["mobilenet_v2"], LABELS)
        assert classifier.model_name == "mobilenet_v2"
        assert classifier.top_k == 3
