"""Shared fixtures: a tiny real ONNX classifier and encoded test images."""

from __future__ import annotations

import io
from pathlib import Path

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper
from PIL import Image

from lesiondetector.config import Settings

MODEL_FILENAME = "lesion_classifier_v1.onnx"


def write_test_model(path: Path, bias: tuple[float, float] = (0.0, 0.0)) -> Path:
    """Write a 2-class model scoring red-dominant images as benign.

    GlobalAveragePool -> Flatten -> Gemm gives logits (r - b, b - r) over the
    normalized channel means, plus bias.
    """
    weights = helper.make_tensor(
        "weights",
        TensorProto.FLOAT,
        dims=[3, 2],
        vals=[1.0, -1.0, 0.0, 0.0, -1.0, 1.0],
    )
    bias_tensor = helper.make_tensor("bias", TensorProto.FLOAT, dims=[2], vals=list(bias))
    graph = helper.make_graph(
        nodes=[
            helper.make_node("GlobalAveragePool", ["input"], ["pooled"]),
            helper.make_node("Flatten", ["pooled"], ["features"], axis=1),
            helper.make_node("Gemm", ["features", "weights", "bias"], ["logits"]),
        ],
        name="lesion_classifier_test",
        inputs=[helper.make_tensor_value_info("input", TensorProto.FLOAT, [1, 3, 224, 224])],
        outputs=[helper.make_tensor_value_info("logits", TensorProto.FLOAT, [1, 2])],
        initializer=[weights, bias_tensor],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    onnx.save(model, str(path))
    return path


def solid_image(color: tuple[int, int, int], size: tuple[int, int] = (224, 224)) -> np.ndarray:
    width, height = size
    return np.full((height, width, 3), color, dtype=np.uint8)


def encode_image(image: np.ndarray, fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(image).save(buffer, format=fmt)
    return buffer.getvalue()


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/lesiondetector_test_models",
        "cache_model": True,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 1,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


@pytest.fixture()
def models_dir(tmp_path: Path) -> Path:
    """A models directory holding the test classifier."""
    directory = tmp_path / "models"
    directory.mkdir()
    write_test_model(directory / MODEL_FILENAME)
    return directory


@pytest.fixture()
def empty_models_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "empty_models"
    directory.mkdir()
    return directory


@pytest.fixture()
def benign_sample() -> np.ndarray:
    """224x224 RGB reference sample the test model labels benign."""
    return solid_image((230, 40, 30))


@pytest.fixture()
def malignant_sample() -> np.ndarray:
    return solid_image((20, 30, 220))


@pytest.fixture()
def nan_models_dir(tmp_path: Path) -> Path:
    """A models directory whose classifier emits NaN logits."""
    directory = tmp_path / "nan_models"
    directory.mkdir()
    write_test_model(directory / MODEL_FILENAME, bias=(float("nan"), 0.0))
    return directory
