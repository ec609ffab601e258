"""Exception hierarchy for the classification pipeline."""

from __future__ import annotations


class FilterXError(Exception):
    """Base class for all FilterX errors."""


class LoadError(FilterXError):
    """The model or its label metadata could not be loaded."""


class DecodeError(FilterXError):
    """An image could not be decoded into pixel data."""


class InferenceError(FilterXError):
    """The model is unavailable, rejected the input, or produced no output."""


class ArchiveError(FilterXError):
    """The output archive could not be serialized."""


class BatchCancelledError(FilterXError):
    """A batch run was cancelled between items."""
