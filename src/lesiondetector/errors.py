"""Exceptions raised by the classification pipeline."""

from __future__ import annotations


class ClassificationError(Exception):
    """Base class for failures while classifying a single image."""


class ImageDecodeError(ClassificationError):
    """The image could not be converted to pipeline input."""


class ModelLoadError(ClassificationError):
    """The model artifact is missing, unknown, or could not be loaded."""


class InferenceError(ClassificationError):
    """Running the inference request failed or returned unusable output."""


class PoolBusyError(Exception):
    """An inference is already running and requests are not queued."""
