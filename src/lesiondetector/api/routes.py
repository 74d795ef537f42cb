"""API route definitions."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from lesiondetector.api.middleware import verify_api_key
from lesiondetector.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    SessionResponse,
)
from lesiondetector.errors import (
    ClassificationError,
    ImageDecodeError,
    ModelLoadError,
    PoolBusyError,
)
from lesiondetector.ml.model_manager import MODEL_REGISTRY
from lesiondetector.pipeline import ClassificationFailed

if TYPE_CHECKING:
    from lesiondetector.config import Settings
    from lesiondetector.ml.inference import InferencePool
    from lesiondetector.ml.model_manager import OnnxModelManager
    from lesiondetector.ml.preprocessing import ImagePreprocessor
    from lesiondetector.pipeline import ClassificationPipeline
    from lesiondetector.session import ClassificationSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_CLASSIFY_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


def _get_pipeline(request: Request) -> ClassificationPipeline:
    pipeline: ClassificationPipeline = request.app.state.pipeline
    return pipeline


def _get_preprocessor(request: Request) -> ImagePreprocessor:
    preprocessor: ImagePreprocessor = request.app.state.preprocessor
    return preprocessor


def _get_session(request: Request) -> ClassificationSession:
    session: ClassificationSession = request.app.state.session
    return session


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _classification_error(error: ClassificationError) -> JSONResponse:
    if isinstance(error, ImageDecodeError):
        return _error(status.HTTP_400_BAD_REQUEST, str(error))
    if isinstance(error, ModelLoadError):
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, str(error))
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(error))


async def _read_upload(file: UploadFile, settings: Settings) -> bytes | JSONResponse:
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        return _error(
            status.HTTP_413_CONTENT_TOO_LARGE,
            f"File exceeds the {settings.max_file_size} byte limit",
        )
    return data


def _session_response(session: ClassificationSession) -> SessionResponse:
    state = session.state
    return SessionResponse(
        has_image=state.has_image,
        classified=state.classified,
        label=state.label,
        confidence=state.confidence,
    )


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses=_CLASSIFY_RESPONSES,
    summary="Classify an image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return the top label."""
    data = await _read_upload(file, _get_settings(request))
    if isinstance(data, JSONResponse):
        return data

    pipeline = _get_pipeline(request)
    try:
        event = await _get_inference_pool(request).run(pipeline.classify_bytes, data)
    except PoolBusyError as exc:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))

    if event is None:
        return _error(status.HTTP_400_BAD_REQUEST, "No image provided")
    if isinstance(event, ClassificationFailed):
        return _classification_error(event.error)
    return ClassifyImageResponse(label=event.label, confidence=event.confidence)


@router.get(
    "/session",
    response_model=SessionResponse,
    summary="Current screen state",
)
async def get_session(request: Request) -> SessionResponse:
    """Return whether an image is selected and the label currently shown."""
    return _session_response(_get_session(request))


@router.put(
    "/session/image",
    response_model=SessionResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    },
    summary="Select the image to classify",
)
async def select_image(request: Request, file: UploadFile) -> SessionResponse | JSONResponse:
    """Decode an uploaded image and make it the selected image."""
    data = await _read_upload(file, _get_settings(request))
    if isinstance(data, JSONResponse):
        return data

    session = _get_session(request)
    preprocessor = _get_preprocessor(request)
    try:
        await session.acquire(asyncio.to_thread(preprocessor.decode_image, data))
    except ImageDecodeError as exc:
        logger.warning("Rejected selected image: %s", exc)
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))
    return _session_response(session)


@router.post(
    "/session/predict",
    response_model=SessionResponse,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify the selected image",
)
async def predict(request: Request) -> SessionResponse | JSONResponse:
    """Run the classifier on the selected image and publish the label."""
    session = _get_session(request)
    if not session.state.has_image:
        return _error(status.HTTP_409_CONFLICT, "No image selected")

    try:
        event = await session.predict()
    except PoolBusyError as exc:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))

    if isinstance(event, ClassificationFailed):
        return _classification_error(event.error)
    return _session_response(session)


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
        concurrent_requests=pool.active_count,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List bundled models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return bundled models and whether their artifacts are present."""
    settings = _get_settings(request)
    manager = _get_model_manager(request)

    models: list[ModelInfo] = []
    for name, spec in MODEL_REGISTRY.items():
        if not manager.is_available(name):
            model_status = "missing"
        elif name == settings.classification_model:
            model_status = "active"
        else:
            model_status = "available"

        models.append(
            ModelInfo(
                name=name,
                task=spec.task.value,
                status=model_status,
                license=spec.license,
                labels=list(spec.labels),
            )
        )

    return ModelsResponse(models=models)
