"""Pydantic request/response schemas for the FilterX API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ProgressResponse(BaseModel):
    """Progress of a batch run."""

    batch_id: str
    status: str
    completed: int
    total: int
    percent: int = Field(description="Completed share rounded to a whole percent (0-100)")


class ClassifiedImage(BaseModel):
    """A single classified image within a batch."""

    index: int
    filename: str
    label: str
    confidence: float = Field(description="Raw model output at the predicted class index")
    category: str = Field(description="Destination category: 'normal', 'tampered', or 'unidentified'")
    timestamp: datetime


class FailedImage(BaseModel):
    """An image skipped because it could not be decoded."""

    index: int
    filename: str
    error: str


class CategoryCounts(BaseModel):
    normal: int = 0
    tampered: int = 0
    unidentified: int = 0


class BatchResponse(BaseModel):
    """Summary of a batch run."""

    batch_id: str
    status: str
    total: int
    completed: int
    counts: CategoryCounts
    items: list[ClassifiedImage]
    failures: list[FailedImage]
    started_at: datetime
    finished_at: datetime | None = None
    error: str | None = None
    archive_filename: str
    archive_url: str | None = Field(default=None, description="Download URL once the archive is built")
    archive_error: str | None = None


class StatsResponse(BaseModel):
    """Session-wide classification statistics."""

    batches: int
    images: int
    counts: CategoryCounts


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model_loaded: bool
    batch_running: bool


class ModelInfo(BaseModel):
    """Information about the configured classifier."""

    name: str | None = None
    status: str = Field(description="Model status: 'loaded' or 'failed'")
    source: str | None = None
    labels: list[str]
    input_size: int
    error: str | None = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    batch_id: str | None = None
