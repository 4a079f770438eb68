"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from floraid.api.middleware import verify_api_key
from floraid.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
)
from floraid.ml.errors import ErrorKind
from floraid.ml.image_classifier import ClassificationFailed
from floraid.ml.model_manager import MODEL_REGISTRY
from floraid.ml.preprocessing import ImageDecodeError, ImageTooLargeError, decode_image

if TYPE_CHECKING:
    from floraid.config import Settings
    from floraid.ml.classifier_adapter import ClassifierAdapter
    from floraid.ml.image_classifier import ClassificationOutcome
    from floraid.ml.inference import InferencePool
    from floraid.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_FAILURE_STATUS: dict[ErrorKind, int] = {
    ErrorKind.MODEL_LOAD_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.BUSY: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.BUFFER_ALLOCATION_FAILED: 422,
    ErrorKind.INFERENCE_RUNNER_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.INFERENCE_TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_classifier(request: Request) -> ClassifierAdapter:
    classifier: ClassifierAdapter = request.app.state.classifier
    return classifier


def _status_for(outcome: ClassificationOutcome) -> int:
    if isinstance(outcome, ClassificationFailed):
        return _FAILURE_STATUS[outcome.kind]
    return status.HTTP_200_OK


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        422: {"model": ClassifyImageResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ClassifyImageResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ClassifyImageResponse},
        status.HTTP_504_GATEWAY_TIMEOUT: {"model": ClassifyImageResponse},
    },
    summary="Identify the flower in an image",
)
async def classify_image(request: Request, file: UploadFile) -> JSONResponse:
    """Classify an uploaded image and return the top-1 label with its confidence."""
    settings = _get_settings(request)
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        return _error(413, f"File exceeds {settings.max_file_size} bytes")

    try:
        image = decode_image(data, max_pixels=settings.max_image_pixels)
    except ImageTooLargeError as exc:
        return _error(413, str(exc))
    except ImageDecodeError as exc:
        logger.info("Rejected upload %r: %s", file.filename, exc)
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    classifier = _get_classifier(request)
    outcome = await classifier.classify(image)
    body = ClassifyImageResponse.from_outcome(outcome, model=classifier.model_name)
    return JSONResponse(status_code=_status_for(outcome), content=body.model_dump())


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).get_loaded_models(),
        classifier_state=str(_get_classifier(request).state),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registered models, marking the configured one as active."""
    settings = _get_settings(request)

    models: list[ModelInfo] = [
        ModelInfo(
            name=spec.name,
            labels=spec.labels,
            input_size=spec.input_size,
            status="active" if spec.name == settings.classifier_model else "available",
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
