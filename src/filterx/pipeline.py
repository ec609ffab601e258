"""End-to-end batch run: classify every image, then build the archive once."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from filterx.archive import ArchiveSpec
from filterx.batch import run_batch
from filterx.exceptions import ArchiveError
from filterx.history import BatchRecord

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable

    from filterx.batch import BatchJob, BatchProgress
    from filterx.config import Settings
    from filterx.history import BatchHistory
    from filterx.ml.model_manager import ModelProvider
    from filterx.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


class BatchPipeline:
    """Binds the model provider, preprocessor and settings for batch runs."""

    def __init__(
        self,
        settings: Settings,
        provider: ModelProvider,
        preprocessor: ImagePreprocessor,
        history: BatchHistory,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._preprocessor = preprocessor
        self._history = history

    def run(
        self,
        job: BatchJob,
        cancel_event: threading.Event | None = None,
        on_progress: Callable[[BatchProgress], None] | None = None,
    ) -> BatchRecord:
        """Classify ``job.inputs`` and archive the result.

        The record is stored in history whatever happens, so failed runs can
        be inspected and a failed archive build can be retried on its own.

        Raises:
            DecodeError, InferenceError, BatchCancelledError: The run aborted;
                no archive is built.
        """
        record = BatchRecord(job=job, spec=ArchiveSpec.from_settings(job.started_at, self._settings))
        self._history.add(record)

        run_batch(
            job.inputs,
            self._provider.model,
            self._provider.labels,
            on_progress,
            preprocessor=self._preprocessor,
            policy=job.policy,
            failure_policy=self._settings.failure_policy,
            normalize=self._settings.normalize_outputs,
            cancel_event=cancel_event,
            job=job,
        )

        try:
            record.ensure_archive()
        except ArchiveError:
            logger.exception("Archive build failed for batch %s; results kept for retry", job.id)
        return record
