"""Pydantic request/response schemas for the LesionDetector API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClassifyImageResponse(BaseModel):
    """Top prediction for a classified image."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class SessionResponse(BaseModel):
    """What the classification screen currently shows."""

    has_image: bool
    classified: bool
    label: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int


class ModelInfo(BaseModel):
    """Information about a bundled model."""

    name: str
    task: str = Field(description="Model task, e.g. 'image_classification'")
    status: str = Field(description="Model status: 'active', 'available', or 'missing'")
    license: str
    labels: list[str]


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
