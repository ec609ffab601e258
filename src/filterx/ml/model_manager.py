"""Model provider: locate, download, and load the ONNX classifier.

Resolves the model from a local path or the HuggingFace Hub, creates and
caches the ONNX InferenceSession, and reads the class labels from the
accompanying metadata JSON.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from huggingface_hub.errors import EntryNotFoundError, HfHubHTTPError
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import (
    ExecutionMode,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    NoSuchFile,
    RuntimeException,
)
from pydantic import BaseModel, ValidationError

from filterx.exceptions import InferenceError, LoadError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from filterx.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols (kept for test mocking)
# ---------------------------------------------------------------------------


class ClassifierModel(Protocol):
    """A loaded model that maps a batch of images to per-class scores."""

    @property
    def name(self) -> str:
        """Return the model identifier string."""
        ...

    def predict(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run inference on a (1, H, W, 3) batch and return the raw output vector."""
        ...


class ModelProvider(Protocol):
    """Protocol for model lifecycle management."""

    @property
    def model(self) -> ClassifierModel | None:
        """Return the loaded model, or None if loading has not succeeded."""
        ...

    @property
    def labels(self) -> tuple[str, ...]:
        """Return the class labels in model output order."""
        ...

    @property
    def last_error(self) -> str | None:
        """Return the message of the most recent load failure."""
        ...

    def load(self) -> ClassifierModel:
        """Load (or reload) the model and its labels."""
        ...

    def shutdown(self) -> None:
        """Drop the loaded session."""
        ...


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


class ModelMetadata(BaseModel):
    """Subset of the Teachable Machine style metadata.json we rely on."""

    labels: list[str] | None = None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------

_ORT_LOAD_ERRORS = (Fail, InvalidGraph, InvalidProtobuf, NoSuchFile, RuntimeException)
_ORT_RUN_ERRORS = (Fail, InvalidArgument, RuntimeException)


@dataclass(frozen=True)
class OnnxClassifierModel:
    """An ONNX InferenceSession bound to its single image input."""

    name: str
    session: InferenceSession
    input_name: str

    def predict(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        try:
            outputs = self.session.run(None, {self.input_name: batch})
        except _ORT_RUN_ERRORS as exc:
            raise InferenceError(f"Model '{self.name}' rejected input of shape {batch.shape}: {exc}") from exc
        if not outputs:
            raise InferenceError(f"Model '{self.name}' produced no outputs")
        return np.asarray(outputs[0], dtype=np.float32)


class OnnxModelProvider:
    """Resolves, loads, and caches the ONNX classifier and its labels."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._model: OnnxClassifierModel | None = None
        self._labels: tuple[str, ...] = tuple(settings.default_labels)
        self._last_error: str | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def model(self) -> OnnxClassifierModel | None:
        with self._lock:
            return self._model

    @property
    def labels(self) -> tuple[str, ...]:
        with self._lock:
            return self._labels

    @property
    def last_error(self) -> str | None:
        with self._lock:
            return self._last_error

    def ensure_downloaded(self) -> Path:
        """Return the local model path, downloading it from the Hub if needed."""
        settings = self._settings
        if settings.model_path:
            path = Path(settings.model_path)
            if not path.is_file():
                raise LoadError(f"Model file not found: {path}")
            return path

        if not settings.model_repo_id:
            raise LoadError("No model configured; set FILTERX_MODEL_PATH or FILTERX_MODEL_REPO_ID")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=settings.model_repo_id,
                    filename=settings.model_filename,
                    local_dir=str(self._models_dir),
                )
            )
        except (HfHubHTTPError, OSError) as exc:
            raise LoadError(f"Failed to download {settings.model_repo_id}/{settings.model_filename}: {exc}") from exc
        logger.info("Downloaded %s to %s", settings.model_filename, downloaded)
        return downloaded

    def load_labels(self, model_path: Path) -> tuple[str, ...]:
        """Read class labels from metadata, falling back to the configured defaults."""
        defaults = tuple(self._settings.default_labels)
        metadata_path = self._resolve_metadata(model_path)
        if metadata_path is None:
            logger.warning("No metadata found, using default class names %s", defaults)
            return defaults

        try:
            metadata = ModelMetadata.model_validate_json(metadata_path.read_bytes())
        except (OSError, ValidationError) as exc:
            logger.warning("Invalid metadata at %s (%s), using default class names", metadata_path, exc)
            return defaults

        if not metadata.labels:
            logger.warning("Metadata at %s has no labels, using default class names", metadata_path)
            return defaults
        logger.info("Loaded class names %s", metadata.labels)
        return tuple(metadata.labels)

    def load(self) -> OnnxClassifierModel:
        """Create a fresh InferenceSession and label list, replacing any previous one.

        Raises:
            LoadError: If the model cannot be located, downloaded or parsed.
        """
        try:
            model_path = self.ensure_downloaded()
            try:
                session = InferenceSession(
                    str(model_path),
                    sess_options=self._session_options,
                    providers=self._providers,
                )
            except _ORT_LOAD_ERRORS as exc:
                raise LoadError(f"Failed to load model from {model_path}: {exc}") from exc
            inputs = session.get_inputs()
            if not inputs:
                raise LoadError(f"Model at {model_path} declares no inputs")
            labels = self.load_labels(model_path)
        except LoadError as exc:
            with self._lock:
                self._last_error = str(exc)
            logger.error("Error loading model: %s", exc)
            raise

        model = OnnxClassifierModel(name=model_path.stem, session=session, input_name=inputs[0].name)
        with self._lock:
            self._model = model
            self._labels = labels
            self._last_error = None
        logger.info("Loaded session for %s (%d labels)", model.name, len(labels))
        return model

    def shutdown(self) -> None:
        """Drop the cached session."""
        with self._lock:
            self._model = None
            logger.info("Model session cleared")

    # -- Internal -----------------------------------------------------------

    def _resolve_metadata(self, model_path: Path) -> Path | None:
        settings = self._settings
        if settings.metadata_path:
            path = Path(settings.metadata_path)
            return path if path.is_file() else None

        sibling = model_path.with_name(settings.metadata_filename)
        if sibling.is_file():
            return sibling

        if settings.model_path or not settings.model_repo_id:
            return None
        try:
            return Path(
                hf_hub_download(
                    repo_id=settings.model_repo_id,
                    filename=settings.metadata_filename,
                    local_dir=str(self._models_dir),
                )
            )
        except (EntryNotFoundError, HfHubHTTPError, OSError) as exc:
            logger.debug("Metadata download failed: %s", exc)
            return None

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
