"""Tests for the ONNX model manager."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from snaplabel.config import Settings
from snaplabel.errors import RuntimeInitError
from snaplabel.ml.image_classifier import OnnxImageClassifier
from snaplabel.ml.model_manager import MODEL_REGISTRY, OnnxModelManager

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/snaplabel_test_models",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 1,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _fake_download(tmp_path: Path) -> object:
    """hf_hub_download stand-in that writes a config with id2label and returns local paths."""

    def download(*, repo_id: str, filename: str, subfolder: str | None, local_dir: str) -> str:
        path = tmp_path / filename
        if filename == "config.json":
            # Keys arrive as strings and not necessarily in index order.
            config = {
                "architectures": ["MobileNetV2ForImageClassification"],
                "id2label": {"2": "car", "0": "cat", "1": "dog"},
            }
            path.write_text(json.dumps(config), encoding="utf-8")
        else:
            path.touch()
        return str(path)

    return download


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["mobilenet_v2"]
        assert spec.name == "mobilenet_v2"
        assert spec.input_size == 224
        assert spec.channels_first is True

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError):
            MODEL_REGISTRY["nonexistent_model"]

    def test_default_model_is_registered(self) -> None:
        assert Settings().classification_model in MODEL_REGISTRY

    def test_every_model_has_positive_top_k(self) -> None:
        assert all(spec.top_k > 0 for spec in MODEL_REGISTRY.values())

    def test_every_model_uses_hub_export_layout(self) -> None:
        for spec in MODEL_REGISTRY.values():
            assert "/" in spec.repo_id
            assert (spec.subfolder, spec.filename, spec.labels_filename) == ("onnx", "model.onnx", "config.json")
            assert len(spec.mean) == len(spec.std) == 3


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("snaplabel.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "mobilenet_v2" / "onnx" / "model.onnx")
        settings = _make_settings(models_dir=str(tmp_path))
        mgr = OnnxModelManager(settings)

        path = mgr.ensure_downloaded("mobilenet_v2")

        mock_download.assert_called_once_with(
            repo_id="Xenova/mobilenet_v2_1.0_224",
            filename="model.onnx",
            subfolder="onnx",
            local_dir=str(tmp_path / "mobilenet_v2"),
        )
        assert path == tmp_path / "mobilenet_v2" / "onnx" / "model.onnx"

    @patch("snaplabel.ml.model_manager.hf_hub_download")
    def test_models_download_into_separate_directories(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "model.onnx")
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        mgr.ensure_downloaded("mobilenet_v2")
        mgr.ensure_downloaded("resnet_50")

        local_dirs = [c.kwargs["local_dir"] for c in mock_download.call_args_list]
        assert local_dirs == [str(tmp_path / "mobilenet_v2"), str(tmp_path / "resnet_50")]

    @patch("snaplabel.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "model.onnx"
        model_file.touch()

        settings = _make_settings(models_dir=str(tmp_path))
        mgr = OnnxModelManager(settings)
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["mobilenet_v2"] = model_file

        path = mgr.ensure_downloaded("mobilenet_v2")

        mock_download.assert_not_called()
        assert path == model_file

    def test_load_labels_orders_by_class_index(self, tmp_path: Path) -> None:
        settings = _make_settings(models_dir=str(tmp_path))
        mgr = OnnxModelManager(settings)
        with patch("snaplabel.ml.model_manager.hf_hub_download", side_effect=_fake_download(tmp_path)) as download:
            labels = mgr.load_labels("mobilenet_v2")
        assert labels == ["cat", "dog", "car"]
        # config.json sits at the repo root, not next to the graph.
        assert download.call_args.kwargs["filename"] == "config.json"
        assert download.call_args.kwargs["subfolder"] is None

    @pytest.mark.parametrize(
        "config",
        [
            {"architectures": ["ResNetModel"]},
            {"id2label": {"0": "cat", "2": "car"}},
        ],
    )
    def test_load_labels_rejects_unusable_config(self, config: dict[str, object], tmp_path: Path) -> None:
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps(config), encoding="utf-8")
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        with (
            patch("snaplabel.ml.model_manager.hf_hub_download", return_value=str(config_file)),
            pytest.raises(ValueError, match="id2label"),
        ):
            mgr.load_labels("resnet_50")

    @patch("snaplabel.ml.model_manager.InferenceSession")
    def test_get_session_creates_and_caches(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session

        settings = _make_settings(models_dir=str(tmp_path))
        mgr = OnnxModelManager(settings)

        with patch("snaplabel.ml.model_manager.hf_hub_download", side_effect=_fake_download(tmp_path)):
            session1 = mgr.get_session("mobilenet_v2")
            session2 = mgr.get_session("mobilenet_v2")

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()

    @patch("snaplabel.ml.model_manager.InferenceSession")
    def test_load_classifier_wraps_session_and_labels(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        settings = _make_settings(models_dir=str(tmp_path))
        mgr = OnnxModelManager(settings)

        with patch("snaplabel.ml.model_manager.hf_hub_download", side_effect=_fake_download(tmp_path)):
            classifier = mgr.load_classifier("mobilenet_v2")

        assert isinstance(classifier, OnnxImageClassifier)
        assert classifier.model_name == "mobilenet_v2"
        assert mgr.get_loaded_models() == ["mobilenet_v2"]

    @patch("snaplabel.ml.model_manager.InferenceSession")
    def test_shutdown_clears_sessions(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        settings = _make_settings(models_dir=str(tmp_path))
        mgr = OnnxModelManager(settings)
        with patch("snaplabel.ml.model_manager.hf_hub_download", side_effect=_fake_download(tmp_path)):
            mgr.get_session("mobilenet_v2")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_keyerror(self) -> None:
        mgr = OnnxModelManager(_make_settings())
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")

    def test_provider_building_cpu(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cuda"))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="openvino"))
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"


class TestVerifyRuntime:
    @patch("snaplabel.ml.model_manager.onnxruntime.get_available_providers")
    def test_cpu_provider_available(self, mock_available: MagicMock) -> None:
        mock_available.return_value = ["CPUExecutionProvider"]
        mgr = OnnxModelManager(_make_settings(device="cpu"))
        assert mgr.verify_runtime() == ["CPUExecutionProvider"]

    @patch("snaplabel.ml.model_manager.onnxruntime.get_available_providers")
    def test_missing_cuda_provider_is_fatal(self, mock_available: MagicMock) -> None:
        mock_available.return_value = ["CPUExecutionProvider"]
        mgr = OnnxModelManager(_make_settings(device="cuda"))
        with pytest.raises(RuntimeInitError, match="CUDAExecutionProvider"):
            mgr.verify_runtime()

    @patch("snaplabel.ml.model_manager.onnxruntime.get_available_providers")
    def test_runtime_query_failure_is_fatal(self, mock_available: MagicMock) -> None:
        mock_available.side_effect = OSError("libonnxruntime.so not found")
        mgr = OnnxModelManager(_make_settings())
        with pytest.raises(RuntimeInitError, match="not usable"):
            mgr.verify_runtime()
