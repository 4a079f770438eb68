"""Shared fixtures: fake ONNX sessions and generated images."""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pytest
from PIL import Image

from floraid.ml.model_manager import MODEL_REGISTRY, ClassifierModel, ModelSpec, load_labels
from floraid.ml.preprocessing import DecodedImage

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

DAFFODIL_INDEX = 41


@dataclass
class _NodeArg:
    name: str
    shape: list[Any]


@dataclass
class FakeSession:
    """Stands in for onnxruntime.InferenceSession."""

    outputs: list[Any] = field(default_factory=list)
    error: Exception | None = None
    output_shape: list[Any] = field(default_factory=lambda: ["batch", 102])
    feeds: list[dict[str, np.ndarray]] = field(default_factory=list)

    def get_inputs(self) -> list[_NodeArg]:
        return [_NodeArg(name="pixel_values", shape=["batch", 3, 224, 224])]

    def get_outputs(self) -> list[_NodeArg]:
        return [_NodeArg(name="scores", shape=self.output_shape)]

    def run(self, output_names: object, feed: dict[str, np.ndarray]) -> list[Any]:
        self.feeds.append(feed)
        if self.error is not None:
            raise self.error
        return self.outputs


def probabilities(index: int, confidence: float, num_classes: int = 102) -> np.ndarray:
    """A (1, num_classes) probability row peaking at ``index``."""
    rest = (1.0 - confidence) / (num_classes - 1)
    row = np.full((1, num_classes), rest, dtype=np.float32)
    row[0, index] = confidence
    return row


@pytest.fixture()
def oxford_labels() -> tuple[str, ...]:
    return load_labels("oxford102")


@pytest.fixture()
def make_model(oxford_labels: tuple[str, ...]) -> Callable[..., ClassifierModel]:
    """Factory for a ClassifierModel backed by a FakeSession."""

    def _make(
        outputs: Sequence[Any] | None = None,
        *,
        error: Exception | None = None,
        spec: ModelSpec | None = None,
    ) -> ClassifierModel:
        session = FakeSession(outputs=list(outputs or []), error=error)
        return ClassifierModel(
            spec=spec or MODEL_REGISTRY["oxford102_efficientnet_b0"],
            session=session,  # type: ignore[arg-type]
            labels=oxford_labels,
        )

    return _make


@pytest.fixture()
def gradient_image() -> DecodedImage:
    """A 48x32 RGB image with varying pixels."""
    ys, xs = np.mgrid[0:32, 0:48]
    pixels = np.stack([xs * 5, ys * 7, (xs + ys) * 3], axis=-1).astype(np.uint8)
    return DecodedImage.from_array(pixels)


@pytest.fixture()
def png_bytes() -> Callable[..., bytes]:
    """Factory encoding an image of the given size as PNG."""

    def _encode(width: int = 40, height: int = 30, color: tuple[int, int, int] | None = None) -> bytes:
        if color is None:
            ys, xs = np.mgrid[0:height, 0:width]
            pixels = np.stack([xs * 3, ys * 5, xs + ys], axis=-1).astype(np.uint8)
            image = Image.fromarray(pixels)
        else:
            image = Image.new("RGB", (width, height), color)
        buf = io.BytesIO()
        image.save(buf, format="PNG")
        return buf.getvalue()

    return _encode
