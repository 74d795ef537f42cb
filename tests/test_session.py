"""Tests for the inference pool and the screen session state."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest
from conftest import make_settings

from lesiondetector.errors import InferenceError, ModelLoadError, PoolBusyError
from lesiondetector.ml.image_classifier import OnnxImageClassifier
from lesiondetector.ml.inference import InferencePool
from lesiondetector.ml.model_manager import MODEL_REGISTRY, OnnxModelManager
from lesiondetector.ml.preprocessing import PillowPreprocessor
from lesiondetector.pipeline import ClassificationCompleted, ClassificationFailed, ClassificationPipeline
from lesiondetector.session import ClassificationSession


def _build_session(models_dir: Path, **overrides: object) -> tuple[ClassificationSession, InferencePool]:
    settings = make_settings(models_dir=str(models_dir), **overrides)
    preprocessor = PillowPreprocessor(max_image_pixels=settings.max_image_pixels)
    classifier = OnnxImageClassifier(OnnxModelManager(settings), preprocessor, "lesion_classifier_v1")
    pool = InferencePool(settings)
    return ClassificationSession(ClassificationPipeline(classifier, preprocessor), pool), pool


async def _resolved(value: np.ndarray | None) -> np.ndarray | None:
    return value


# ---------------------------------------------------------------------------
# InferencePool
# ---------------------------------------------------------------------------


class TestInferencePool:
    async def test_runs_on_worker_thread(self) -> None:
        pool = InferencePool(make_settings())
        try:
            name = await pool.run(lambda: threading.current_thread().name)
            assert name.startswith("onnx-inference")
            assert pool.active_count == 0
        finally:
            pool.shutdown()

    async def test_rejects_instead_of_queueing(self) -> None:
        pool = InferencePool(make_settings(max_concurrent=1))
        release = threading.Event()
        try:
            first = asyncio.create_task(pool.run(release.wait, 5))
            await asyncio.sleep(0.05)
            assert pool.active_count == 1

            with pytest.raises(PoolBusyError):
                await pool.run(lambda: None)

            release.set()
            assert await first is True
            assert pool.active_count == 0
        finally:
            release.set()
            pool.shutdown()


# ---------------------------------------------------------------------------
# ClassificationSession
# ---------------------------------------------------------------------------


class TestClassificationSession:
    async def test_starts_without_image_or_label(self, models_dir: Path) -> None:
        session, pool = _build_session(models_dir)
        try:
            state = session.state
            assert state.has_image is False
            assert state.classified is False
            assert state.label is None
        finally:
            pool.shutdown()

    async def test_predict_without_image_does_not_touch_label(self, models_dir: Path) -> None:
        session, pool = _build_session(models_dir)
        try:
            assert await session.predict() is None
            assert session.state.label is None
        finally:
            pool.shutdown()

    async def test_acquire_nothing_leaves_state(self, models_dir: Path) -> None:
        session, pool = _build_session(models_dir)
        try:
            assert await session.acquire(_resolved(None)) is False
            assert session.state.has_image is False
        finally:
            pool.shutdown()

    async def test_select_then_predict_publishes_label(self, models_dir: Path, benign_sample: np.ndarray) -> None:
        session, pool = _build_session(models_dir)
        try:
            assert await session.acquire(_resolved(benign_sample)) is True
            assert session.state.has_image is True
            assert session.state.classified is False

            event = await session.predict()

            assert isinstance(event, ClassificationCompleted)
            assert session.state.label == "benign"
            assert session.state.classified is True
        finally:
            pool.shutdown()

    async def test_new_image_keeps_previous_label(
        self, models_dir: Path, benign_sample: np.ndarray, malignant_sample: np.ndarray
    ) -> None:
        session, pool = _build_session(models_dir)
        try:
            session.select_image(benign_sample)
            await session.predict()

            session.select_image(malignant_sample)
            assert session.state.label == "benign"

            await session.predict()
            assert session.state.label == "malignant"
        finally:
            pool.shutdown()

    async def test_failure_leaves_label_unchanged(
        self, models_dir: Path, benign_sample: np.ndarray
    ) -> None:
        session, pool = _build_session(models_dir, cache_model=False)
        try:
            session.select_image(benign_sample)
            await session.predict()

            (models_dir / "lesion_classifier_v1.onnx").unlink()
            event = await session.predict()

            assert isinstance(event, ClassificationFailed)
            assert isinstance(event.error, ModelLoadError)
            assert session.state.label == "benign"
        finally:
            pool.shutdown()

    async def test_subscribers_receive_events(self, models_dir: Path, benign_sample: np.ndarray) -> None:
        session, pool = _build_session(models_dir)
        try:
            queue = session.subscribe()
            session.select_image(benign_sample)
            event = await session.predict()

            assert queue.get_nowait() == event

            session.unsubscribe(queue)
            await session.predict()
            assert queue.empty()
        finally:
            pool.shutdown()

    async def test_subscribers_receive_failures(
        self, empty_models_dir: Path, benign_sample: np.ndarray
    ) -> None:
        session, pool = _build_session(empty_models_dir)
        try:
            queue = session.subscribe()
            session.select_image(benign_sample)
            await session.predict()

            received = queue.get_nowait()
            assert isinstance(received, ClassificationFailed)
            assert session.state.label is None
        finally:
            pool.shutdown()

    async def test_invalid_scores_leave_label_unchanged(self, benign_sample: np.ndarray) -> None:
        model_input = MagicMock()
        model_input.name = "input"
        onnx_session = MagicMock()
        onnx_session.get_inputs.return_value = [model_input]
        onnx_session.run.return_value = [np.asarray([[2.0, -1.0]], dtype=np.float32)]
        manager = MagicMock()
        manager.get_spec.return_value = MODEL_REGISTRY["lesion_classifier_v1"]
        manager.get_session.return_value = onnx_session

        preprocessor = PillowPreprocessor(max_image_pixels=1_000_000)
        classifier = OnnxImageClassifier(manager, preprocessor, "lesion_classifier_v1")
        pool = InferencePool(make_settings())
        session = ClassificationSession(ClassificationPipeline(classifier, preprocessor), pool)
        try:
            session.select_image(benign_sample)
            await session.predict()
            before = session.state
            assert before.label == "benign"

            onnx_session.run.return_value = [np.asarray([[np.nan, 0.0]], dtype=np.float32)]
            event = await session.predict()

            assert isinstance(event, ClassificationFailed)
            assert isinstance(event.error, InferenceError)
            assert session.state == before
            assert session.state.confidence is not None
            assert np.isfinite(session.state.confidence)
        finally:
            pool.shutdown()

    async def test_full_subscriber_queue_keeps_newest_events(
        self, models_dir: Path, benign_sample: np.ndarray, malignant_sample: np.ndarray
    ) -> None:
        session, pool = _build_session(models_dir)
        try:
            queue = session.subscribe(maxsize=1)
            session.select_image(benign_sample)
            await session.predict()
            session.select_image(malignant_sample)
            await session.predict()

            assert queue.qsize() == 1
            latest = queue.get_nowait()
            assert isinstance(latest, ClassificationCompleted)
            assert latest.label == "malignant"
        finally:
            pool.shutdown()

    async def test_default_subscriber_queue_is_bounded(self, models_dir: Path) -> None:
        session, pool = _build_session(models_dir)
        try:
            assert session.subscribe().maxsize > 0
        finally:
            pool.shutdown()
