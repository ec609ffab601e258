"""Session-scoped history of batch runs.

Keeps finished jobs in memory so their archive can be rebuilt without
re-running inference, and aggregates per-category statistics.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING

from filterx.archive import ArchiveSpec, build_archive
from filterx.batch import BatchStatus
from filterx.exceptions import ArchiveError
from filterx.routing import Category

if TYPE_CHECKING:
    from filterx.batch import BatchJob

logger = logging.getLogger(__name__)


@dataclass
class BatchRecord:
    job: BatchJob
    spec: ArchiveSpec
    archive: bytes | None = None
    archive_error: str | None = None

    def ensure_archive(self) -> bytes:
        """Return the cached archive, building it from the job's results if needed.

        Raises:
            ArchiveError: If the archive cannot be built; the error is kept on the record.
        """
        if self.archive is None:
            try:
                self.archive = build_archive(self.job.grouped(), self.spec)
            except ArchiveError as exc:
                self.archive_error = str(exc)
                raise
            self.archive_error = None
        return self.archive


class BatchHistory:
    """Bounded, insertion-ordered store of batch records."""

    def __init__(self, max_entries: int = 20) -> None:
        self._max_entries = max_entries
        self._records: OrderedDict[str, BatchRecord] = OrderedDict()
        self._lock = threading.Lock()

    def add(self, record: BatchRecord) -> None:
        with self._lock:
            self._records[record.job.id] = record
            while len(self._records) > self._max_entries:
                evicted, _ = self._records.popitem(last=False)
                logger.debug("Evicted batch %s from history", evicted)

    def get(self, batch_id: str) -> BatchRecord | None:
        with self._lock:
            return self._records.get(batch_id)

    def records(self) -> list[BatchRecord]:
        with self._lock:
            return list(self._records.values())

    def completed(self) -> list[BatchRecord]:
        return [record for record in self.records() if record.job.status == BatchStatus.COMPLETED]

    def stats(self) -> dict[Category, int]:
        """Per-category counts over every completed run."""
        totals = {category: 0 for category in Category}
        for record in self.completed():
            for category, count in record.job.counts().items():
                totals[category] += count
        return totals
