"""Classification pipeline: one image in, one label event out."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from lesiondetector.errors import ClassificationError, InferenceError

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from lesiondetector.ml.image_classifier import ImageClassifier
    from lesiondetector.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationCompleted:
    """The model produced a top label for the image."""

    label: str
    confidence: float


@dataclass(frozen=True)
class ClassificationFailed:
    """Classification failed; the previous label stays in place."""

    error: ClassificationError


ClassificationEvent = ClassificationCompleted | ClassificationFailed


class ClassificationPipeline:
    """Converts a bitmap, runs the classifier, and reports the top label.

    All classification errors are logged and returned as ClassificationFailed
    events. Nothing is retried.
    """

    def __init__(self, classifier: ImageClassifier, preprocessor: ImagePreprocessor) -> None:
        self._classifier = classifier
        self._preprocessor = preprocessor

    def classify(self, image: NDArray[np.generic] | None) -> ClassificationEvent | None:
        """Classify a decoded bitmap.

        Returns None without side effects when no image is given.
        """
        if image is None:
            return None
        try:
            rgb = self._preprocessor.to_rgb(image)
            return self._predict(rgb)
        except ClassificationError as exc:
            return self._failed(exc)

    def classify_bytes(self, image_bytes: bytes | None) -> ClassificationEvent | None:
        """Decode an encoded image file, then classify it."""
        if image_bytes is None:
            return None
        try:
            image = self._preprocessor.decode_image(image_bytes)
            return self._predict(image)
        except ClassificationError as exc:
            return self._failed(exc)

    def _predict(self, image: NDArray[np.uint8]) -> ClassificationCompleted:
        ranked = self._classifier.classify(image)
        if not ranked:
            raise InferenceError(f"Model {self._classifier.model_name} returned no predictions")
        top = ranked[0]
        logger.info("Classified image as %s (%.3f)", top.label, top.confidence)
        return ClassificationCompleted(label=top.label, confidence=top.confidence)

    @staticmethod
    def _failed(error: ClassificationError) -> ClassificationFailed:
        logger.warning("Classification failed (%s): %s", type(error).__name__, error)
        return ClassificationFailed(error=error)
