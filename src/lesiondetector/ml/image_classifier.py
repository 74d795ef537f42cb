"""Image classification on top of a bundled ONNX model.

The classifier owns steps 2-4 of a prediction: obtain the model session,
run a single forward pass, and rank the model's labels by confidence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from lesiondetector.errors import InferenceError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from lesiondetector.ml.model_manager import ModelManager
    from lesiondetector.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def labels(self) -> tuple[str, ...]:
        """Return the model's fixed label set."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an image and return ranked labels.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of classification results sorted by confidence (descending).

        Raises:
            ModelLoadError: If the model cannot be loaded.
            InferenceError: If the inference request fails.
        """
        ...


def softmax(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = scores - np.max(scores)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


class OnnxImageClassifier:
    """ImageClassifier backed by an ONNX Runtime session."""

    def __init__(self, model_manager: ModelManager, preprocessor: ImagePreprocessor, model_name: str) -> None:
        self._model_manager = model_manager
        self._preprocessor = preprocessor
        self._model_name = model_name

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def labels(self) -> tuple[str, ...]:
        return self._model_manager.get_spec(self._model_name).labels

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        spec = self._model_manager.get_spec(self._model_name)
        session = self._model_manager.get_session(self._model_name)
        tensor = self._preprocessor.preprocess_for_classification(image, spec)

        try:
            input_name = session.get_inputs()[0].name
            outputs = session.run(None, {input_name: tensor})
        except Exception as exc:
            raise InferenceError(f"Inference with {self._model_name} failed: {exc}") from exc

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.shape[0] != len(spec.labels):
            raise InferenceError(
                f"Model {self._model_name} returned {scores.shape[0]} scores for {len(spec.labels)} labels"
            )
        if spec.outputs_logits:
            scores = softmax(scores)
        if not np.all(np.isfinite(scores)) or scores.min() < 0.0 or scores.max() > 1.0:
            raise InferenceError(f"Model {self._model_name} returned invalid scores: {scores.tolist()}")

        order = np.argsort(-scores, kind="stable")
        ranked = [ClassificationResult(label=spec.labels[i], confidence=float(scores[i])) for i in order]
        logger.debug("Ranked labels for %s: %s", self._model_name, ranked)
        return ranked
