"""Model manager: download, load, and cache ONNX classification models.

Handles downloading model weights and label maps from HuggingFace, checking
that the configured execution provider exists, and creating and caching ONNX
InferenceSessions.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import onnxruntime
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from snaplabel.errors import RuntimeInitError
from snaplabel.ml.image_classifier import OnnxImageClassifier

if TYPE_CHECKING:
    from snaplabel.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def verify_runtime(self) -> list[str]:
        """Check that the execution backend is usable and return its providers."""
        ...

    def load_classifier(self, model_name: str) -> OnnxImageClassifier:
        """Download (if needed) and load a classifier."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)
# Google's MobileNet and ViT checkpoints were trained on inputs scaled to [-1, 1].
UNIT_MEAN = (0.5, 0.5, 0.5)
UNIT_STD = (0.5, 0.5, 0.5)


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model.

    Repos follow the Hub's transformers.js export layout: the graph lives at
    ``onnx/model.onnx`` and the labels come from ``id2label`` in the
    top-level ``config.json``.
    """

    name: str
    repo_id: str
    license: str
    input_size: int
    top_k: int
    mean: tuple[float, float, float]
    std: tuple[float, float, float]
    filename: str = "model.onnx"
    subfolder: str | None = "onnx"
    labels_filename: str = "config.json"
    channels_first: bool = True
    outputs_logits: bool = True


MODEL_REGISTRY: dict[str, ModelSpec] = {
    # 1001 classes: index 0 is "background".
    "mobilenet_v2": ModelSpec(
        name="mobilenet_v2",
        repo_id="Xenova/mobilenet_v2_1.0_224",
        license="other",
        input_size=224,
        top_k=3,
        mean=UNIT_MEAN,
        std=UNIT_STD,
    ),
    "resnet_50": ModelSpec(
        name="resnet_50",
        repo_id="Xenova/resnet-50",
        license="Apache-2.0",
        input_size=224,
        top_k=3,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
    ),
    "vit_base": ModelSpec(
        name="vit_base",
        repo_id="Xenova/vit-base-patch16-224",
        license="Apache-2.0",
        input_size=224,
        top_k=5,
        mean=UNIT_MEAN,
        std=UNIT_STD,
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads, loads, and caches ONNX classifier sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def verify_runtime(self) -> list[str]:
        """Confirm the preferred execution provider is compiled into onnxruntime.

        Raises:
            RuntimeInitError: If the provider is missing or the runtime cannot be queried.
        """
        try:
            available = onnxruntime.get_available_providers()
        except Exception as exc:
            raise RuntimeInitError(f"ONNX Runtime is not usable: {exc}") from exc

        preferred = self._provider_name(self._providers[0])
        if preferred not in available:
            raise RuntimeInitError(
                f"Execution provider {preferred} is not available (have: {', '.join(available)})"
            )
        logger.info("ONNX Runtime %s ready with %s", onnxruntime.__version__, preferred)
        return [self._provider_name(p) for p in self._providers]

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a model from HuggingFace if not already present locally."""
        spec = self._get_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        downloaded = self._download(spec, spec.filename, spec.subfolder)
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def load_labels(self, model_name: str) -> list[str]:
        """Download the model config and return its ``id2label`` names in class-index order."""
        spec = self._get_spec(model_name)
        path = self._download(spec, spec.labels_filename, None)
        config = json.loads(path.read_text(encoding="utf-8"))
        id2label = config.get("id2label")
        if not id2label:
            raise ValueError(f"{spec.labels_filename} for {model_name} has no id2label mapping")
        indexed = sorted((int(index), label) for index, label in id2label.items())
        if [index for index, _ in indexed] != list(range(len(indexed))):
            raise ValueError(f"id2label for {model_name} does not cover 0..{len(indexed) - 1}")
        return [label for _, label in indexed]

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def load_classifier(self, model_name: str) -> OnnxImageClassifier:
        """Return a classifier wrapping the model's session and labels."""
        spec = self._get_spec(model_name)
        session = self.get_session(model_name)
        labels = self.load_labels(model_name)
        return OnnxImageClassifier(session=session, spec=spec, labels=labels)

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    @staticmethod
    def _provider_name(provider: str | tuple[str, dict[str, object]]) -> str:
        return provider if isinstance(provider, str) else provider[0]

    def _download(self, spec: ModelSpec, filename: str, subfolder: str | None) -> Path:
        # One directory per model: every repo ships the same file names.
        local_dir = self._models_dir / spec.name
        local_dir.mkdir(parents=True, exist_ok=True)
        return Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=filename,
                subfolder=subfolder,
                local_dir=str(local_dir),
            )
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
