"""Binary image classification on top of a loaded model.

The reported confidence is the model's raw output at the argmax index. It is
only a probability if the network ends in a normalizing activation; softmax
is applied here only when explicitly requested.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from filterx.exceptions import InferenceError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from filterx.ml.model_manager import ClassifierModel


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float
    index: int


def normalize_scores(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    """Softmax over a 1-D score vector."""
    shifted = scores - np.max(scores)
    exps = np.exp(shifted)
    return (exps / np.sum(exps)).astype(np.float32)


def label_for_index(labels: Sequence[str], index: int) -> str:
    """Return the label at ``index`` or a ``Class <index>`` placeholder."""
    if 0 <= index < len(labels) and labels[index]:
        return labels[index]
    return f"Class {index}"


def argmax_first(scores: Sequence[float]) -> int:
    """Index of the maximum score; the lowest index wins ties."""
    best_index = 0
    best_score = scores[0]
    for i in range(1, len(scores)):
        if scores[i] > best_score:
            best_score = scores[i]
            best_index = i
    return best_index


def _predict_scores(tensor: NDArray[np.float32], model: ClassifierModel, normalize: bool) -> list[float]:
    # The batched copy and the raw output live only inside this frame.
    batched = np.expand_dims(tensor, axis=0)
    output = np.asarray(model.predict(batched), dtype=np.float32).reshape(-1)
    if output.size == 0:
        raise InferenceError(f"Model '{model.name}' returned an empty output vector")
    if normalize:
        output = normalize_scores(output)
    return output.tolist()


def classify(
    tensor: NDArray[np.float32],
    model: ClassifierModel | None,
    labels: Sequence[str],
    *,
    normalize: bool = False,
) -> ClassificationResult:
    """Classify one preprocessed image.

    Args:
        tensor: HxWx3 float32 array from the preprocessor.
        model: Loaded model, or None if loading has not succeeded.
        labels: Class names in model output order.
        normalize: Apply softmax to the raw output before taking the argmax.

    Returns:
        The winning label and its score.

    Raises:
        InferenceError: If no model is loaded, or the model rejects the input.
    """
    if model is None:
        raise InferenceError("Model is not loaded")
    if tensor.ndim != 3:
        raise InferenceError(f"Expected an HxWxC tensor, got shape {tensor.shape}")

    scores = _predict_scores(tensor, model, normalize)
    index = argmax_first(scores)
    return ClassificationResult(
        label=label_for_index(labels, index),
        confidence=float(scores[index]),
        index=index,
    )
