"""Shared fixtures: synthetic images and fake models."""

from __future__ import annotations

import io
import threading
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from filterx.batch import ImageInput
from filterx.exceptions import InferenceError, LoadError

if TYPE_CHECKING:
    from numpy.typing import NDArray


class FakeModel:
    """Returns canned output vectors, one per predict() call, in order."""

    def __init__(self, outputs: Sequence[Sequence[float]], name: str = "fake") -> None:
        self._outputs = list(outputs)
        self.name = name
        self.batch_shapes: list[tuple[int, ...]] = []

    def predict(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        self.batch_shapes.append(batch.shape)
        scores = self._outputs[(len(self.batch_shapes) - 1) % len(self._outputs)]
        return np.asarray([scores], dtype=np.float32)


class GatedModel(FakeModel):
    """Blocks every predict() until ``gate`` is set."""

    def __init__(self, outputs: Sequence[Sequence[float]], gate: threading.Event) -> None:
        super().__init__(outputs, name="gated")
        self.gate = gate

    def predict(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        if not self.gate.wait(timeout=10):
            raise InferenceError("gate was never released")
        return super().predict(batch)


class BrokenModel(FakeModel):
    """Rejects every input the way a mismatched ONNX graph would."""

    def __init__(self) -> None:
        super().__init__([[0.0]], name="broken")

    def predict(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        raise InferenceError(f"Model '{self.name}' rejected input of shape {batch.shape}")


class FakeProvider:
    """In-memory stand-in for OnnxModelProvider."""

    def __init__(
        self,
        model: FakeModel | None,
        labels: Sequence[str] = ("normal", "theft"),
        error: str | None = None,
    ) -> None:
        self._model = model
        self._labels = tuple(labels)
        self._error = error
        self.next_model: FakeModel | None = None
        self.load_calls = 0

    @property
    def model(self) -> FakeModel | None:
        return self._model

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    @property
    def last_error(self) -> str | None:
        return self._error

    def load(self) -> FakeModel:
        self.load_calls += 1
        if self.next_model is None:
            self._error = "model.onnx not found"
            raise LoadError(self._error)
        self._model = self.next_model
        self._error = None
        return self._model

    def shutdown(self) -> None:
        self._model = None


def encode_image(
    color: tuple[int, int, int] = (255, 0, 0),
    size: tuple[int, int] = (32, 24),
    fmt: str = "PNG",
) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture()
def make_image() -> Callable[..., ImageInput]:
    """Factory for PNG ImageInput objects."""

    def _make(filename: str = "img.png", color: tuple[int, int, int] = (255, 0, 0)) -> ImageInput:
        return ImageInput(filename=filename, content_type="image/png", data=encode_image(color))

    return _make


@pytest.fixture()
def png_bytes() -> bytes:
    return encode_image()
