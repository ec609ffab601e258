"""Zip archive output with one folder per routing category."""

from __future__ import annotations

import io
import logging
import mimetypes
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from filterx.exceptions import ArchiveError
from filterx.routing import Category

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from datetime import datetime

    from filterx.batch import ImageInput
    from filterx.config import Settings

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "filtered_"
DEFAULT_EXTENSION = ".jpg"


def _default_folders() -> dict[Category, str]:
    return {
        Category.NORMAL: "normal",
        Category.TAMPERED: "theft",
        Category.UNIDENTIFIED: "unidentified",
    }


@dataclass(frozen=True)
class ArchiveSpec:
    """Naming scheme for one batch archive."""

    root: str
    folders: Mapping[Category, str] = field(default_factory=_default_folders)
    compresslevel: int = 6

    @classmethod
    def for_batch(
        cls,
        started_at: datetime,
        *,
        tampered_folder: str = "theft",
        compresslevel: int = 6,
    ) -> ArchiveSpec:
        """Naming scheme for a run that started at ``started_at``.

        The root is ``filtered_`` plus the ISO-8601 start time to the second,
        with colons replaced by dashes.
        """
        stamp = started_at.isoformat()[:19].replace(":", "-")
        folders = _default_folders()
        if tampered_folder in (folders[Category.NORMAL], folders[Category.UNIDENTIFIED]):
            raise ValueError(f"Folder {tampered_folder!r} is already used by another category")
        folders[Category.TAMPERED] = tampered_folder
        return cls(root=f"{ARCHIVE_PREFIX}{stamp}", folders=folders, compresslevel=compresslevel)

    @classmethod
    def from_settings(cls, started_at: datetime, settings: Settings) -> ArchiveSpec:
        return cls.for_batch(
            started_at,
            tampered_folder=settings.tampered_folder,
            compresslevel=settings.archive_compresslevel,
        )

    @property
    def filename(self) -> str:
        return f"{self.root}.zip"

    def folder_for(self, category: Category) -> str:
        return self.folders.get(category, category.value)


def _extension(image: ImageInput) -> str:
    suffix = PurePosixPath(image.filename).suffix.lower()
    if suffix:
        return suffix
    return mimetypes.guess_extension(image.content_type) or DEFAULT_EXTENSION


def entry_name(folder: str, timestamp_ms: int, index: int, extension: str) -> str:
    """``<folder>_<epoch millis>_<index><ext>``; ``index`` keeps names unique within a millisecond."""
    return f"{folder}_{timestamp_ms}_{index}{extension}"


def build_archive(grouped: Mapping[Category, Sequence[ImageInput]], spec: ArchiveSpec) -> bytes:
    """Write every image's original bytes into a zip, one folder per non-empty category.

    Raises:
        ArchiveError: If any entry cannot be written. No partial archive is returned.
    """
    buffer = io.BytesIO()
    written: set[str] = set()
    try:
        with zipfile.ZipFile(
            buffer,
            mode="w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=spec.compresslevel,
        ) as archive:
            for category in Category:
                images = grouped.get(category, ())
                if not images:
                    continue
                folder = spec.folder_for(category)
                for index, image in enumerate(images):
                    name = entry_name(folder, int(time.time() * 1000), index, _extension(image))
                    path = f"{spec.root}/{folder}/{name}"
                    if path in written:
                        raise ArchiveError(f"Duplicate archive entry {path}")
                    written.add(path)
                    archive.writestr(path, image.data)
    except ArchiveError:
        raise
    except (OSError, TypeError, ValueError, zipfile.LargeZipFile) as exc:
        raise ArchiveError(f"Failed to build archive {spec.filename}: {exc}") from exc

    logger.info("Built archive %s with %d files", spec.filename, len(written))
    return buffer.getvalue()
