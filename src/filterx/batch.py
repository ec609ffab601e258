"""Batch orchestration: classify a fixed list of images strictly in order.

Each item is preprocessed, classified and appended to the job before the
next one starts. Progress is emitted synchronously once per item, and a
cancellation event is checked at the top of every iteration.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Literal

from filterx.exceptions import BatchCancelledError, DecodeError
from filterx.ml.image_classifier import classify
from filterx.routing import DEFAULT_POLICY, Category, RoutingPolicy

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from filterx.ml.model_manager import ClassifierModel
    from filterx.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)

FailurePolicy = Literal["abort", "skip"]


@dataclass(frozen=True)
class ImageInput:
    """An uploaded image: original bytes plus the name and type it came with."""

    filename: str
    content_type: str
    data: bytes = field(repr=False)

    @property
    def is_image(self) -> bool:
        return self.content_type.lower().startswith("image/")


def select_images(files: Iterable[ImageInput]) -> list[ImageInput]:
    """Keep only entries whose content type is an image; others are dropped silently."""
    selected: list[ImageInput] = []
    for item in files:
        if item.is_image:
            selected.append(item)
        else:
            logger.debug("Dropping non-image upload %s (%s)", item.filename, item.content_type)
    return selected


@dataclass(frozen=True)
class ClassifiedItem:
    """Result of classifying one input image."""

    index: int
    source: ImageInput
    label: str
    confidence: float
    timestamp: datetime


@dataclass(frozen=True)
class FailedItem:
    """An input skipped under the ``skip`` failure policy."""

    index: int
    source: ImageInput
    error: str


@dataclass(frozen=True)
class BatchProgress:
    completed: int
    total: int

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 0.0


class BatchStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class BatchJob:
    """In-flight and final state of one batch run.

    Only :func:`run_batch` mutates a job; everything else reads it.
    """

    inputs: tuple[ImageInput, ...]
    policy: RoutingPolicy = DEFAULT_POLICY
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    status: BatchStatus = BatchStatus.PENDING
    error: str | None = None
    results: list[ClassifiedItem] = field(default_factory=list)
    failures: list[FailedItem] = field(default_factory=list)
    completed: int = 0

    @property
    def progress(self) -> BatchProgress:
        return BatchProgress(completed=self.completed, total=len(self.inputs))

    def category_of(self, item: ClassifiedItem) -> Category:
        return self.policy.route(item.confidence, item.label)

    def grouped(self) -> dict[Category, list[ImageInput]]:
        """Group classified sources by destination category, preserving input order."""
        groups: dict[Category, list[ImageInput]] = {category: [] for category in Category}
        for item in self.results:
            groups[self.category_of(item)].append(item.source)
        return groups

    def counts(self) -> dict[Category, int]:
        return {category: len(sources) for category, sources in self.grouped().items()}


def run_batch(
    inputs: Sequence[ImageInput],
    model: ClassifierModel | None,
    labels: Sequence[str],
    on_progress: Callable[[BatchProgress], None] | None = None,
    *,
    preprocessor: ImagePreprocessor,
    policy: RoutingPolicy = DEFAULT_POLICY,
    failure_policy: FailurePolicy = "abort",
    normalize: bool = False,
    cancel_event: threading.Event | None = None,
    job: BatchJob | None = None,
) -> BatchJob:
    """Classify ``inputs`` one at a time and return the finished job.

    Args:
        inputs: Images to classify, in the order results should appear.
        model: Loaded model; None makes the first item fail with InferenceError.
        labels: Class names in model output order.
        on_progress: Called after every processed item with the new progress.
        preprocessor: Turns image bytes into a model input tensor.
        policy: Routing policy stored on the job for grouping.
        failure_policy: ``abort`` stops the run on the first error; ``skip``
            records undecodable images and continues.
        normalize: Apply softmax to model outputs before the argmax.
        cancel_event: When set, the run stops before the next item.
        job: Pre-created job to fill in, so callers can watch its progress.
            Its ``inputs`` must equal ``inputs``.

    Raises:
        ValueError: If ``inputs`` is empty or differs from ``job.inputs``.
        DecodeError: If an image cannot be decoded under the ``abort`` policy.
        InferenceError: If the model is missing or rejects an input.
        BatchCancelledError: If ``cancel_event`` was set during the run.
    """
    if not inputs:
        raise ValueError("A batch needs at least one image")

    if job is None:
        job = BatchJob(inputs=tuple(inputs), policy=policy)
    elif tuple(inputs) != job.inputs:
        raise ValueError(f"Inputs do not match the images of batch {job.id}")
    job.status = BatchStatus.RUNNING
    total = len(job.inputs)
    logger.info("Starting batch %s with %d images", job.id, total)

    try:
        for index, image in enumerate(job.inputs):
            if cancel_event is not None and cancel_event.is_set():
                raise BatchCancelledError(f"Batch {job.id} cancelled after {job.completed} of {total} images")

            try:
                tensor = preprocessor.preprocess(image.data)
            except DecodeError as exc:
                if failure_policy != "skip":
                    raise
                logger.warning("Skipping %s: %s", image.filename, exc)
                job.failures.append(FailedItem(index=index, source=image, error=str(exc)))
            else:
                result = classify(tensor, model, labels, normalize=normalize)
                del tensor
                job.results.append(
                    ClassifiedItem(
                        index=index,
                        source=image,
                        label=result.label,
                        confidence=result.confidence,
                        timestamp=datetime.now(UTC),
                    )
                )
                logger.debug(
                    "Classified %s as %s (%.4f)",
                    image.filename,
                    result.label,
                    result.confidence,
                )

            job.completed += 1
            if on_progress is not None:
                on_progress(job.progress)
    except BatchCancelledError as exc:
        job.status = BatchStatus.CANCELLED
        job.error = str(exc)
        logger.info("%s", exc)
        raise
    except Exception as exc:
        job.status = BatchStatus.FAILED
        job.error = str(exc)
        logger.exception("Error processing batch %s", job.id)
        raise
    finally:
        job.finished_at = datetime.now(UTC)

    job.status = BatchStatus.COMPLETED
    logger.info(
        "Batch %s complete: %s",
        job.id,
        ", ".join(f"{category}={count}" for category, count in job.counts().items()),
    )
    return job
