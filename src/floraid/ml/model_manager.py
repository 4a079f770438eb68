"""Model manager: download, load and cache ONNX classification models.

Handles downloading models from HuggingFace (or using a local artifact),
creating ONNX InferenceSessions, and loading the label set each model
predicts over. A loaded model stays cached for the life of the process.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from floraid.ml.errors import ModelLoadFailed

if TYPE_CHECKING:
    from floraid.config import Settings

logger = logging.getLogger(__name__)

LABELS_DIR = Path(__file__).parent / "labels"

IMAGENET_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
IMAGENET_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is available locally and return its file path."""
        ...

    def load(self, model_name: str) -> ClassifierModel:
        """Return the cached model handle, loading it on first use."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Drop all cached models."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ScoreKind(StrEnum):
    PROBABILITIES = "probabilities"
    LOGITS = "logits"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    labels: str
    license: str
    input_size: int = 224
    mean: tuple[float, float, float] = IMAGENET_MEAN
    std: tuple[float, float, float] = IMAGENET_STD
    channels_first: bool = True
    scores: ScoreKind = ScoreKind.LOGITS


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "oxford102_mobilenetv3": ModelSpec(
        name="oxford102_mobilenetv3",
        repo_id="floraid/floraid-models",
        filename="oxford102_mobilenetv3_large.onnx",
        subfolder=None,
        labels="oxford102",
        license="Apache-2.0",
    ),
    "oxford102_efficientnet_b0": ModelSpec(
        name="oxford102_efficientnet_b0",
        repo_id="floraid/floraid-models",
        filename="oxford102_efficientnet_b0.onnx",
        subfolder="efficientnet",
        labels="oxford102",
        license="Apache-2.0",
        scores=ScoreKind.PROBABILITIES,
    ),
}


@dataclass(frozen=True)
class ClassifierModel:
    """A loaded, read-only classification model and its label set."""

    spec: ModelSpec
    session: InferenceSession = field(repr=False)
    labels: tuple[str, ...]

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def input_name(self) -> str:
        return str(self.session.get_inputs()[0].name)


def read_labels(path: Path) -> tuple[str, ...]:
    """Read one label per line, ignoring blank lines."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ModelLoadFailed(f"Cannot read labels from {path}: {exc}") from exc

    labels = tuple(line.strip() for line in text.splitlines() if line.strip())
    if not labels:
        raise ModelLoadFailed(f"Label file {path} is empty")
    return labels


def load_labels(name: str) -> tuple[str, ...]:
    """Return a label set bundled with the package."""
    return read_labels(LABELS_DIR / f"{name}.txt")


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads, loads and caches ONNX classification models."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._models: dict[str, ClassifierModel] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the model file, downloading it from HuggingFace if needed.

        A configured ``model_path`` takes precedence over the registry download.
        """
        spec = self._get_spec(model_name)

        if self._settings.model_path is not None:
            local = Path(self._settings.model_path)
            if not local.is_file():
                raise ModelLoadFailed(f"Model file not found: {local}")
            return local

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        try:
            self._models_dir.mkdir(parents=True, exist_ok=True)
            downloaded = Path(
                hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=spec.filename,
                    subfolder=spec.subfolder,
                    local_dir=str(self._models_dir),
                )
            )
        except (HfHubHTTPError, OSError, ValueError) as exc:
            raise ModelLoadFailed(f"Cannot download model '{model_name}': {exc}") from exc

        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def load(self, model_name: str) -> ClassifierModel:
        """Return a cached model handle, creating its session if needed.

        Raises:
            ModelLoadFailed: If the model is unknown, missing, corrupt, or its
                output does not match its label set.
        """
        with self._lock:
            cached = self._models.get(model_name)
            if cached is not None:
                return cached

        spec = self._get_spec(model_name)
        model_path = self.ensure_downloaded(model_name)
        labels = self._load_labels(spec)

        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:  # onnxruntime raises its own pybind error types
            raise ModelLoadFailed(f"Cannot load model '{model_name}' from {model_path}: {exc}") from exc

        self._check_output(model_name, session, labels)
        model = ClassifierModel(spec=spec, session=session, labels=labels)

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._models.get(model_name)
            if existing is not None:
                return existing
            self._models[model_name] = model
            logger.info("Loaded %s (%d classes)", model_name, len(labels))
            return model

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._models.keys())

    def shutdown(self) -> None:
        """Drop all cached models."""
        with self._lock:
            self._models.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise ModelLoadFailed(f"Unknown model: {model_name}") from None

    def _load_labels(self, spec: ModelSpec) -> tuple[str, ...]:
        if self._settings.labels_path is not None:
            return read_labels(Path(self._settings.labels_path))
        return load_labels(spec.labels)

    @staticmethod
    def _check_output(model_name: str, session: InferenceSession, labels: tuple[str, ...]) -> None:
        outputs = session.get_outputs()
        if not outputs:
            raise ModelLoadFailed(f"Model '{model_name}' has no outputs")
        shape = outputs[0].shape
        num_classes = shape[-1] if shape else None
        # Symbolic dimensions come back as strings and cannot be checked here.
        if isinstance(num_classes, int) and num_classes != len(labels):
            raise ModelLoadFailed(
                f"Model '{model_name}' predicts {num_classes} classes but {len(labels)} labels are configured"
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
