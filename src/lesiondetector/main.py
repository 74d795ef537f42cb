"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from lesiondetector.config import Settings

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lesiondetector.api.routes import router
from lesiondetector.config import get_settings
from lesiondetector.ml.image_classifier import OnnxImageClassifier
from lesiondetector.ml.inference import InferencePool
from lesiondetector.ml.model_manager import OnnxModelManager
from lesiondetector.ml.preprocessing import PillowPreprocessor
from lesiondetector.pipeline import ClassificationPipeline
from lesiondetector.session import ClassificationSession

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings) -> None:
    """Wire the classification components onto app.state."""
    model_manager = OnnxModelManager(settings)
    preprocessor = PillowPreprocessor(max_image_pixels=settings.max_image_pixels)
    classifier = OnnxImageClassifier(model_manager, preprocessor, settings.classification_model)
    pipeline = ClassificationPipeline(classifier, preprocessor)
    inference_pool = InferencePool(settings)

    app.state.settings = settings
    app.state.model_manager = model_manager
    app.state.preprocessor = preprocessor
    app.state.pipeline = pipeline
    app.state.inference_pool = inference_pool
    app.state.session = ClassificationSession(pipeline, inference_pool)


def shutdown_app_state(app: FastAPI) -> None:
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting LesionDetector (device=%s, max_concurrent=%s, model=%s, models_dir=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classification_model,
        settings.models_dir,
    )

    init_app_state(app, settings)
    if not app.state.model_manager.is_available(settings.classification_model):
        logger.warning("Model artifact for %s is not bundled; predictions will fail", settings.classification_model)

    logger.info("LesionDetector ready")
    yield

    logger.info("Shutting down LesionDetector")
    shutdown_app_state(app)
    logger.info("LesionDetector shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="LesionDetector",
        description="Classify a skin lesion photo with a bundled ONNX model",
        version="1.0.0",
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
    """Serve the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "lesiondetector.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
