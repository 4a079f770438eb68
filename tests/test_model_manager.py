"""Tests for the ONNX model manager."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from conftest import FakeSession

from floraid.config import Settings
from floraid.ml.errors import ModelLoadFailed
from floraid.ml.model_manager import MODEL_REGISTRY, OnnxModelManager, ScoreKind, load_labels, read_labels

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/floraid_test_models",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 1,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Model registry and labels
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["oxford102_mobilenetv3"]
        assert spec.name == "oxford102_mobilenetv3"
        assert spec.labels == "oxford102"
        assert spec.scores is ScoreKind.LOGITS

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError):
            MODEL_REGISTRY["nonexistent_model"]

    def test_default_model_is_registered(self) -> None:
        assert Settings().classifier_model in MODEL_REGISTRY

    def test_every_label_set_is_bundled(self) -> None:
        for spec in MODEL_REGISTRY.values():
            assert load_labels(spec.labels)


class TestLabels:
    def test_oxford102_has_102_unique_labels(self) -> None:
        labels = load_labels("oxford102")
        assert len(labels) == 102
        assert len(set(labels)) == 102
        assert labels[41] == "daffodil"

    def test_read_labels_skips_blank_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "labels.txt"
        path.write_text("rose\n\n  tulip  \n", encoding="utf-8")
        assert read_labels(path) == ("rose", "tulip")

    def test_empty_label_file_fails(self, tmp_path: Path) -> None:
        path = tmp_path / "labels.txt"
        path.write_text("\n\n", encoding="utf-8")
        with pytest.raises(ModelLoadFailed, match="empty"):
            read_labels(path)

    def test_missing_label_file_fails(self, tmp_path: Path) -> None:
        with pytest.raises(ModelLoadFailed, match="Cannot read labels"):
            read_labels(tmp_path / "missing.txt")


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("floraid.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock) -> None:
        mock_download.return_value = "/tmp/floraid_test_models/oxford102_mobilenetv3_large.onnx"
        settings = _make_settings()
        mgr = OnnxModelManager(settings)

        path = mgr.ensure_downloaded("oxford102_mobilenetv3")

        mock_download.assert_called_once_with(
            repo_id="floraid/floraid-models",
            filename="oxford102_mobilenetv3_large.onnx",
            subfolder=None,
            local_dir="/tmp/floraid_test_models",
        )
        assert path == Path("/tmp/floraid_test_models/oxford102_mobilenetv3_large.onnx")

    @patch("floraid.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "oxford102_mobilenetv3_large.onnx"
        model_file.touch()

        settings = _make_settings(models_dir=str(tmp_path))
        mgr = OnnxModelManager(settings)
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["oxford102_mobilenetv3"] = model_file

        path = mgr.ensure_downloaded("oxford102_mobilenetv3")

        mock_download.assert_not_called()
        assert path == model_file

    @patch("floraid.ml.model_manager.hf_hub_download")
    def test_local_model_path_skips_download(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "custom.onnx"
        model_file.touch()
        mgr = OnnxModelManager(_make_settings(model_path=str(model_file)))

        assert mgr.ensure_downloaded("oxford102_mobilenetv3") == model_file
        mock_download.assert_not_called()

    def test_missing_local_model_path_fails(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(model_path=str(tmp_path / "absent.onnx")))
        with pytest.raises(ModelLoadFailed, match="not found"):
            mgr.ensure_downloaded("oxford102_mobilenetv3")

    @patch("floraid.ml.model_manager.hf_hub_download")
    def test_download_error_becomes_model_load_failed(self, mock_download: MagicMock) -> None:
        mock_download.side_effect = OSError("connection refused")
        mgr = OnnxModelManager(_make_settings())

        with pytest.raises(ModelLoadFailed, match="Cannot download"):
            mgr.ensure_downloaded("oxford102_mobilenetv3")

    @patch("floraid.ml.model_manager.InferenceSession")
    @patch("floraid.ml.model_manager.hf_hub_download")
    def test_load_creates_and_caches(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/floraid_test_models/oxford102_mobilenetv3_large.onnx"
        mock_session = FakeSession()
        mock_session_cls.return_value = mock_session

        settings = _make_settings()
        mgr = OnnxModelManager(settings)

        model1 = mgr.load("oxford102_mobilenetv3")
        model2 = mgr.load("oxford102_mobilenetv3")

        assert model1 is model2
        assert model1.session is mock_session
        assert model1.input_name == "pixel_values"
        assert len(model1.labels) == 102
        mock_session_cls.assert_called_once()

    @patch("floraid.ml.model_manager.InferenceSession")
    @patch("floraid.ml.model_manager.hf_hub_download")
    def test_load_uses_labels_override(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = "/tmp/floraid_test_models/oxford102_mobilenetv3_large.onnx"
        mock_session_cls.return_value = FakeSession(output_shape=["batch", 2])
        labels = tmp_path / "labels.txt"
        labels.write_text("rose\ntulip\n", encoding="utf-8")

        mgr = OnnxModelManager(_make_settings(labels_path=str(labels)))

        assert mgr.load("oxford102_mobilenetv3").labels == ("rose", "tulip")

    @patch("floraid.ml.model_manager.InferenceSession")
    @patch("floraid.ml.model_manager.hf_hub_download")
    def test_corrupt_model_becomes_model_load_failed(
        self, mock_download: MagicMock, mock_session_cls: MagicMock
    ) -> None:
        mock_download.return_value = "/tmp/floraid_test_models/oxford102_mobilenetv3_large.onnx"
        mock_session_cls.side_effect = RuntimeError("[ONNXRuntimeError] : 7 : INVALID_PROTOBUF")
        mgr = OnnxModelManager(_make_settings())

        with pytest.raises(ModelLoadFailed, match="INVALID_PROTOBUF"):
            mgr.load("oxford102_mobilenetv3")
        assert mgr.get_loaded_models() == []

    @patch("floraid.ml.model_manager.InferenceSession")
    @patch("floraid.ml.model_manager.hf_hub_download")
    def test_label_count_mismatch_fails(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/floraid_test_models/oxford102_mobilenetv3_large.onnx"
        mock_session_cls.return_value = FakeSession(output_shape=["batch", 1000])
        mgr = OnnxModelManager(_make_settings())

        with pytest.raises(ModelLoadFailed, match="1000 classes"):
            mgr.load("oxford102_mobilenetv3")

    @patch("floraid.ml.model_manager.InferenceSession")
    @patch("floraid.ml.model_manager.hf_hub_download")
    def test_symbolic_output_dimension_accepted(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/floraid_test_models/oxford102_mobilenetv3_large.onnx"
        mock_session_cls.return_value = FakeSession(output_shape=["batch", "classes"])
        mgr = OnnxModelManager(_make_settings())

        assert mgr.load("oxford102_mobilenetv3").name == "oxford102_mobilenetv3"

    @patch("floraid.ml.model_manager.InferenceSession")
    @patch("floraid.ml.model_manager.hf_hub_download")
    def test_get_loaded_models(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/floraid_test_models/oxford102_mobilenetv3_large.onnx"
        mock_session_cls.return_value = FakeSession()
        settings = _make_settings()
        mgr = OnnxModelManager(settings)

        assert mgr.get_loaded_models() == []
        mgr.load("oxford102_mobilenetv3")
        assert mgr.get_loaded_models() == ["oxford102_mobilenetv3"]

    def test_provider_building_cpu(self) -> None:
        settings = _make_settings(device="cpu")
        mgr = OnnxModelManager(settings)
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self) -> None:
        settings = _make_settings(device="cuda")
        mgr = OnnxModelManager(settings)
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self) -> None:
        settings = _make_settings(device="openvino")
        mgr = OnnxModelManager(settings)
        assert len(mgr._providers) == 2
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    @patch("floraid.ml.model_manager.InferenceSession")
    @patch("floraid.ml.model_manager.hf_hub_download")
    def test_shutdown_clears_sessions(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/floraid_test_models/oxford102_mobilenetv3_large.onnx"
        mock_session_cls.return_value = FakeSession()
        settings = _make_settings()
        mgr = OnnxModelManager(settings)
        mgr.load("oxford102_mobilenetv3")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_model_load_failed(self) -> None:
        settings = _make_settings()
        mgr = OnnxModelManager(settings)
        with pytest.raises(ModelLoadFailed, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")
