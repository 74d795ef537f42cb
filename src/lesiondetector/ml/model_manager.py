"""Model manager: locate, load, and cache the bundled ONNX classifier.

Resolves model artifacts in the bundled models directory, creates ONNX
InferenceSessions lazily, and caches them across calls unless caching is
disabled. Any failure along the way surfaces as ModelLoadError.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from lesiondetector.errors import ModelLoadError

if TYPE_CHECKING:
    from lesiondetector.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model loading."""

    def get_spec(self, model_name: str) -> ModelSpec:
        """Return the static metadata for a model."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    IMAGE_CLASSIFICATION = "image_classification"


IMAGENET_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
IMAGENET_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single bundled ONNX classifier."""

    name: str
    filename: str
    task: ModelTask
    license: str
    labels: tuple[str, ...]
    input_size: tuple[int, int] = (224, 224)
    mean: tuple[float, float, float] = IMAGENET_MEAN
    std: tuple[float, float, float] = IMAGENET_STD
    outputs_logits: bool = True


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "lesion_classifier_v1": ModelSpec(
        name="lesion_classifier_v1",
        filename="lesion_classifier_v1.onnx",
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Proprietary",
        labels=("benign", "malignant"),
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Loads and caches ONNX inference sessions for bundled models."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def get_spec(self, model_name: str) -> ModelSpec:
        """Return registry metadata, raising ModelLoadError for unknown names."""
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise ModelLoadError(f"Unknown model: {model_name}") from None

    def resolve_path(self, model_name: str) -> Path:
        """Return the bundled artifact path for a model."""
        spec = self.get_spec(model_name)
        path = self._models_dir / spec.filename
        if not path.is_file():
            raise ModelLoadError(f"Model artifact not found: {path}")
        return path

    def is_available(self, model_name: str) -> bool:
        """Whether the artifact for a known model is present on disk."""
        try:
            self.resolve_path(model_name)
        except ModelLoadError:
            return False
        return True

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        if self._settings.cache_model:
            with self._lock:
                cached = self._sessions.get(model_name)
                if cached is not None:
                    return cached

        session = self._load(model_name)
        if not self._settings.cache_model:
            return session

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            return session

    def get_loaded_models(self) -> list[str]:
        """Return names of models with cached sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _load(self, model_name: str) -> InferenceSession:
        model_path = self.resolve_path(model_name)
        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise ModelLoadError(f"Failed to load {model_name} from {model_path}: {exc}") from exc
        logger.info("Loaded session for %s from %s", model_name, model_path)
        return session

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
