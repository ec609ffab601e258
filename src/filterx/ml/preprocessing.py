"""Image preprocessing pipeline.

Decodes raw upload bytes with Pillow, applies EXIF orientation, converts to
RGB, resizes (no crop) to the model's square input and scales to [0, 1].
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from filterx.exceptions import DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from filterx.config import Settings

logger = logging.getLogger(__name__)

MAX_CHANNEL_VALUE: float = 255.0


class ImagePreprocessor(Protocol):
    """Protocol for image preprocessing."""

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array."""
        ...

    def preprocess(self, image_bytes: bytes) -> NDArray[np.float32]:
        """Decode, resize and scale an image for the classifier."""
        ...


class PillowPreprocessor:
    """Pillow-backed implementation of :class:`ImagePreprocessor`."""

    def __init__(self, input_size: int = 224, max_image_pixels: int = 16_777_216) -> None:
        if input_size < 1:
            raise ValueError(f"input_size must be positive, got {input_size}")
        self._input_size = input_size
        self._max_image_pixels = max_image_pixels

    @classmethod
    def from_settings(cls, settings: Settings) -> PillowPreprocessor:
        return cls(input_size=settings.input_size, max_image_pixels=settings.max_image_pixels)

    @property
    def input_size(self) -> int:
        return self._input_size

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Args:
            image_bytes: Raw file bytes (any format Pillow can read).

        Returns:
            HxWx3 RGB uint8 numpy array at the original resolution.

        Raises:
            DecodeError: If the image cannot be decoded or exceeds size limits.
        """
        with self._open(image_bytes) as image:
            return np.asarray(image, dtype=np.uint8)

    def preprocess(self, image_bytes: bytes) -> NDArray[np.float32]:
        """Decode an image and turn it into a model input tensor.

        Args:
            image_bytes: Raw file bytes (any format Pillow can read).

        Returns:
            (input_size, input_size, 3) float32 array with values in [0.0, 1.0].

        Raises:
            DecodeError: If the image cannot be decoded or exceeds size limits.
        """
        size = (self._input_size, self._input_size)
        with self._open(image_bytes) as image, image.resize(size, Image.Resampling.BILINEAR) as resized:
            pixels = np.asarray(resized, dtype=np.float32)
        return pixels / MAX_CHANNEL_VALUE

    # -- Internal -----------------------------------------------------------

    def _open(self, image_bytes: bytes) -> Image.Image:
        if not image_bytes:
            raise DecodeError("Empty image payload")
        try:
            with Image.open(io.BytesIO(image_bytes)) as raw:
                width, height = raw.size
                if width * height > self._max_image_pixels:
                    raise DecodeError(
                        f"Image of {width}x{height} pixels exceeds the limit of {self._max_image_pixels}"
                    )
                oriented = ImageOps.exif_transpose(raw)
                rgb = oriented.convert("RGB")
                if oriented is not raw:
                    oriented.close()
                return rgb
        except DecodeError:
            raise
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
            raise DecodeError(f"Cannot decode image: {exc}") from exc
