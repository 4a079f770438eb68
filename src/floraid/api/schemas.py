"""Pydantic request/response schemas for the FloraID API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from floraid.ml.image_classifier import (
    ClassificationOutcome,
    ClassificationResult,
    NoDetection,
)


class ClassifyImageResponse(BaseModel):
    """Outcome of classifying a single image."""

    status: Literal["detected", "no_detection", "error"]
    label: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    display: str = Field(description="Human-readable outcome, e.g. 'daffodil (93.00%)' or 'Unknown'")
    error: str | None = Field(default=None, description="Failure kind when status is 'error'")
    model: str

    @classmethod
    def from_outcome(cls, outcome: ClassificationOutcome, model: str) -> ClassifyImageResponse:
        if isinstance(outcome, ClassificationResult):
            return cls(
                status="detected",
                label=outcome.label,
                confidence=outcome.confidence,
                display=outcome.display_text(),
                model=model,
            )
        if isinstance(outcome, NoDetection):
            return cls(
                status="no_detection",
                confidence=outcome.confidence,
                display=outcome.display_text(),
                model=model,
            )
        return cls(
            status="error",
            display=outcome.display_text(),
            error=str(outcome.kind),
            model=model,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    classifier_state: str
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    labels: str = Field(description="Label set the model predicts over")
    input_size: int
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
