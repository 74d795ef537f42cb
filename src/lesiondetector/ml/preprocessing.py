"""Image preprocessing: decoding, color conversion, and model input tensors.

Handles format detection, decoding, EXIF orientation, size validation,
color space conversion, and conversion to the NCHW float32 tensor the
classifier expects.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from lesiondetector.errors import ImageDecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from lesiondetector.ml.model_manager import ModelSpec

logger = logging.getLogger(__name__)


class ImagePreprocessor(Protocol):
    """Protocol for image preprocessing."""

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Args:
            image_bytes: Raw file bytes (any supported format).

        Returns:
            HxWx3 RGB uint8 numpy array.

        Raises:
            ImageDecodeError: If the image cannot be decoded or exceeds size limits.
        """
        ...

    def to_rgb(self, image: NDArray[np.generic]) -> NDArray[np.uint8]:
        """Normalize a decoded bitmap to HxWx3 RGB uint8."""
        ...

    def preprocess_for_classification(self, image: NDArray[np.uint8], spec: ModelSpec) -> NDArray[np.float32]:
        """Prepare an image for the classification model.

        Args:
            image: HxWx3 RGB uint8 array.
            spec: Metadata of the model the tensor is built for.

        Returns:
            1x3xHxW float32 tensor, normalized with the model's mean/std.
        """
        ...


class PillowPreprocessor:
    """Pillow-backed implementation of ImagePreprocessor."""

    def __init__(self, max_image_pixels: int) -> None:
        self._max_image_pixels = max_image_pixels

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        if not image_bytes:
            raise ImageDecodeError("Empty image data")

        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
                if width * height > self._max_image_pixels:
                    raise ImageDecodeError(
                        f"Image has {width * height} pixels, limit is {self._max_image_pixels}"
                    )
                oriented = ImageOps.exif_transpose(img)
                array = np.asarray(oriented.convert("RGB"), dtype=np.uint8)
        except ImageDecodeError:
            raise
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
            raise ImageDecodeError(f"Unable to decode image: {exc}") from exc

        logger.debug("Decoded image %dx%d", array.shape[1], array.shape[0])
        return self.to_rgb(array)

    def to_rgb(self, image: NDArray[np.generic]) -> NDArray[np.uint8]:
        array = np.asarray(image)
        if array.size == 0:
            raise ImageDecodeError("Image is empty")
        if array.dtype != np.uint8:
            raise ImageDecodeError(f"Unsupported pixel type: {array.dtype}")

        if array.ndim == 2:
            return np.stack([array] * 3, axis=-1)
        if array.ndim == 3 and array.shape[2] == 3:
            return array
        if array.ndim == 3 and array.shape[2] == 4:
            return np.ascontiguousarray(array[:, :, :3])
        raise ImageDecodeError(f"Unsupported image shape: {array.shape}")

    def preprocess_for_classification(self, image: NDArray[np.uint8], spec: ModelSpec) -> NDArray[np.float32]:
        width, height = spec.input_size
        resized = Image.fromarray(image).resize((width, height), Image.Resampling.BILINEAR)

        tensor = np.asarray(resized, dtype=np.float32) / 255.0
        tensor = (tensor - np.asarray(spec.mean, dtype=np.float32)) / np.asarray(spec.std, dtype=np.float32)
        # HWC -> NCHW
        return np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
