"""Single-image top-1 classification against a loaded ONNX model."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from floraid.ml.errors import BufferAllocationFailed, ErrorKind, InferenceRunnerError
from floraid.ml.model_manager import ScoreKind
from floraid.ml.preprocessing import is_uniform, prepare_input, to_pixel_buffer

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from floraid.ml.model_manager import ClassifierModel
    from floraid.ml.preprocessing import DecodedImage

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "Unknown"


@dataclass(frozen=True)
class ClassificationResult:
    """The top-1 prediction: a label from the model's label set and its confidence."""

    label: str
    confidence: float

    def display_text(self) -> str:
        return f"{self.label} ({self.confidence * 100:.2f}%)"


@dataclass(frozen=True)
class NoDetection:
    """Nothing was recognised. Not an error.

    ``confidence`` holds the best rejected score when the model did run.
    """

    confidence: float | None = None

    def display_text(self) -> str:
        return UNKNOWN_LABEL


@dataclass(frozen=True)
class ClassificationFailed:
    """Classification could not be carried out."""

    kind: ErrorKind
    detail: str = ""

    def display_text(self) -> str:
        return f"Classification failed ({self.kind})"


ClassificationOutcome = ClassificationResult | NoDetection | ClassificationFailed


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: DecodedImage) -> ClassificationResult | NoDetection:
        """Classify an image and return the top-1 prediction.

        Raises:
            ClassificationError: For any terminal failure.
        """
        ...


class OnnxImageClassifier:
    """Runs one inference pass per image and keeps the highest scoring class."""

    def __init__(
        self,
        model: ClassifierModel,
        min_confidence: float = 0.0,
        max_pixels: int | None = None,
    ) -> None:
        self._model = model
        self._min_confidence = min_confidence
        self._max_pixels = max_pixels

    @property
    def model(self) -> ClassifierModel:
        return self._model

    @property
    def model_name(self) -> str:
        return self._model.name

    def classify(self, image: DecodedImage) -> ClassificationResult | NoDetection:
        buffer = to_pixel_buffer(image, max_pixels=self._max_pixels)
        if is_uniform(buffer):
            logger.debug("Uniform %dx%d image, skipping inference", buffer.width, buffer.height)
            return NoDetection()

        spec = self._model.spec
        try:
            tensor = prepare_input(
                buffer,
                spec.input_size,
                spec.mean,
                spec.std,
                channels_first=spec.channels_first,
            )
        except (ValueError, MemoryError) as exc:
            raise BufferAllocationFailed(f"Cannot build model input: {exc}") from exc

        try:
            outputs = self._model.session.run(None, {self._model.input_name: tensor})
        except Exception as exc:  # onnxruntime raises its own pybind error types
            raise InferenceRunnerError(f"Inference failed: {exc}") from exc

        scores = self._scores(outputs)
        if scores.size == 0:
            return NoDetection()

        index = int(np.argmax(scores))
        confidence = float(np.clip(scores[index], 0.0, 1.0))
        if confidence < self._min_confidence:
            logger.debug("Top score %.4f below threshold %.4f", confidence, self._min_confidence)
            return NoDetection(confidence=confidence)

        return ClassificationResult(label=self._model.labels[index], confidence=confidence)

    def _scores(self, outputs: list[object]) -> NDArray[np.float64]:
        if not outputs:
            return np.empty(0, dtype=np.float64)

        scores = np.asarray(outputs[0], dtype=np.float64).reshape(-1)
        if scores.size == 0:
            return scores
        if scores.size != len(self._model.labels):
            raise InferenceRunnerError(
                f"Model returned {scores.size} scores for {len(self._model.labels)} labels"
            )
        if not np.all(np.isfinite(scores)):
            raise InferenceRunnerError("Model returned non-finite scores")

        if self._model.spec.scores is ScoreKind.LOGITS:
            shifted = np.exp(scores - scores.max())
            scores = shifted / shifted.sum()
        return scores
