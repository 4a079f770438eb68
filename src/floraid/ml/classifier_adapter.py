"""Async classification entry point.

The adapter owns the lifecycle around a single classification call:

    idle -> model_loading -> ready -> inferring -> completed | failed

The model is loaded at most once. A failed load is remembered and reported
on every later call instead of being retried. Every call produces exactly one
outcome: a result, a no-detection, or a failure tagged with its kind.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import TYPE_CHECKING

from floraid.ml.errors import (
    ClassificationError,
    ErrorKind,
    InferenceBusy,
    InferenceTimeout,
    ModelLoadFailed,
)
from floraid.ml.image_classifier import ClassificationFailed, OnnxImageClassifier
from floraid.ml.inference import PoolSaturatedError

if TYPE_CHECKING:
    from collections.abc import Callable

    from floraid.config import Settings
    from floraid.ml.image_classifier import ClassificationOutcome, ImageClassifier
    from floraid.ml.inference import InferencePool
    from floraid.ml.model_manager import ClassifierModel, ModelManager
    from floraid.ml.preprocessing import DecodedImage

logger = logging.getLogger(__name__)


class AdapterState(StrEnum):
    IDLE = "idle"
    MODEL_LOADING = "model_loading"
    READY = "ready"
    INFERRING = "inferring"
    COMPLETED = "completed"
    FAILED = "failed"


class ClassifierAdapter:
    """Loads the configured model once and classifies images on the inference pool."""

    def __init__(self, model_manager: ModelManager, pool: InferencePool, settings: Settings) -> None:
        self._model_manager = model_manager
        self._pool = pool
        self._model_name = settings.classifier_model
        self._min_confidence = settings.min_confidence
        self._max_pixels = settings.max_image_pixels

        self._load_lock = asyncio.Lock()
        self._classifier: OnnxImageClassifier | None = None
        self._load_error: ModelLoadFailed | None = None
        self._state = AdapterState.IDLE
        self._in_flight = 0

    @property
    def state(self) -> AdapterState:
        """``inferring`` while any call is running, otherwise the last load or call result."""
        if self._in_flight:
            return AdapterState.INFERRING
        return self._state

    @property
    def model_name(self) -> str:
        return self._model_name

    async def load(self) -> ClassifierModel:
        """Load the model on first use and return the cached handle.

        Raises:
            ModelLoadFailed: If this or an earlier load attempt failed.
        """
        classifier = await self._ensure_classifier()
        return classifier.model

    async def classify(self, image: DecodedImage) -> ClassificationOutcome:
        """Classify one image. Failures are returned, never raised."""
        try:
            classifier = await self._ensure_classifier()
            self._in_flight += 1
            try:
                outcome: ClassificationOutcome = await self._run(classifier, image)
            finally:
                self._in_flight -= 1
        except ClassificationError as exc:
            logger.info("Classification failed (%s): %s", exc.kind, exc)
            self._state = AdapterState.FAILED
            return ClassificationFailed(kind=exc.kind, detail=str(exc))

        self._state = AdapterState.COMPLETED
        logger.debug("Classification outcome: %s", outcome)
        return outcome

    def submit(
        self,
        image: DecodedImage,
        callback: Callable[[ClassificationOutcome], object],
    ) -> asyncio.Task[None]:
        """Classify in the background and hand the outcome to ``callback`` exactly once."""

        async def _deliver() -> None:
            try:
                outcome = await self.classify(image)
            except Exception as exc:
                logger.exception("Unexpected error during classification")
                outcome = ClassificationFailed(kind=ErrorKind.INFERENCE_RUNNER_ERROR, detail=str(exc))
            callback(outcome)

        return asyncio.create_task(_deliver(), name="floraid-classify")

    # -- Internal -----------------------------------------------------------

    async def _ensure_classifier(self) -> OnnxImageClassifier:
        if self._classifier is not None:
            return self._classifier

        async with self._load_lock:
            if self._classifier is not None:
                return self._classifier
            if self._load_error is not None:
                raise self._load_error

            self._state = AdapterState.MODEL_LOADING
            logger.info("Loading classifier model %s", self._model_name)
            try:
                model = await asyncio.to_thread(self._model_manager.load, self._model_name)
            except ModelLoadFailed as exc:
                logger.error("Model %s failed to load: %s", self._model_name, exc)
                self._load_error = exc
                self._state = AdapterState.FAILED
                raise

            self._classifier = OnnxImageClassifier(
                model,
                min_confidence=self._min_confidence,
                max_pixels=self._max_pixels,
            )
            self._state = AdapterState.READY
            return self._classifier

    async def _run(self, classifier: ImageClassifier, image: DecodedImage) -> ClassificationOutcome:
        try:
            return await self._pool.run(classifier.classify, image)
        except PoolSaturatedError as exc:
            raise InferenceBusy(str(exc)) from exc
        except TimeoutError as exc:
            raise InferenceTimeout("Inference timed out") from exc
