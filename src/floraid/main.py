"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from floraid.api.routes import router
from floraid.config import get_settings
from floraid.ml.classifier_adapter import ClassifierAdapter
from floraid.ml.errors import ModelLoadFailed
from floraid.ml.inference import InferencePool
from floraid.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting FloraID (device=%s, max_concurrent=%s, model=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classifier_model,
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    classifier = ClassifierAdapter(model_manager, inference_pool, settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.classifier = classifier

    if settings.preload_model:
        try:
            await classifier.load()
        except ModelLoadFailed:
            # Already logged by the adapter; requests will report model_load_failed.
            logger.warning("Starting without a usable model")

    logger.info("FloraID ready")
    yield

    logger.info("Shutting down FloraID")
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("FloraID shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="FloraID",
        description="Flower identification API backed by a pre-trained ONNX classifier",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run("floraid.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
