"""API route definitions."""

from __future__ import annotations

import functools
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response

from filterx.api.middleware import verify_api_key
from filterx.api.schemas import (
    BatchResponse,
    CategoryCounts,
    ClassifiedImage,
    ErrorResponse,
    FailedImage,
    HealthResponse,
    ModelInfo,
    ProgressResponse,
    StatsResponse,
)
from filterx.batch import BatchJob, BatchStatus, ImageInput, select_images
from filterx.exceptions import ArchiveError, BatchCancelledError, DecodeError, InferenceError, LoadError
from filterx.ml.inference import BatchBusyError
from filterx.routing import Category, RoutingPolicy

if TYPE_CHECKING:
    from filterx.config import Settings
    from filterx.history import BatchHistory, BatchRecord
    from filterx.ml.inference import InferencePool
    from filterx.ml.model_manager import ModelProvider
    from filterx.pipeline import BatchPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_provider(request: Request) -> ModelProvider:
    provider: ModelProvider = request.app.state.model_provider
    return provider


def _get_pipeline(request: Request) -> BatchPipeline:
    pipeline: BatchPipeline = request.app.state.pipeline
    return pipeline


def _get_history(request: Request) -> BatchHistory:
    history: BatchHistory = request.app.state.history
    return history


def _counts(counts: dict[Category, int]) -> CategoryCounts:
    return CategoryCounts(**{category.value: count for category, count in counts.items()})


def _error(status_code: int, detail: str, batch_id: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=detail, batch_id=batch_id).model_dump(),
    )


def _progress(job: BatchJob) -> ProgressResponse:
    progress = job.progress
    return ProgressResponse(
        batch_id=job.id,
        status=job.status.value,
        completed=progress.completed,
        total=progress.total,
        percent=round(progress.fraction * 100),
    )


def _summary(request: Request, record: BatchRecord) -> BatchResponse:
    job = record.job
    archive_url = None
    if record.archive is not None:
        archive_url = str(request.url_for("download_archive", batch_id=job.id))
    return BatchResponse(
        batch_id=job.id,
        status=job.status.value,
        total=len(job.inputs),
        completed=job.completed,
        counts=_counts(job.counts()),
        items=[
            ClassifiedImage(
                index=item.index,
                filename=item.source.filename,
                label=item.label,
                confidence=item.confidence,
                category=job.category_of(item).value,
                timestamp=item.timestamp,
            )
            for item in job.results
        ],
        failures=[
            FailedImage(index=failure.index, filename=failure.source.filename, error=failure.error)
            for failure in job.failures
        ],
        started_at=job.started_at,
        finished_at=job.finished_at,
        error=job.error,
        archive_filename=record.spec.filename,
        archive_url=archive_url,
        archive_error=record.archive_error,
    )


@router.post(
    "/batches",
    response_model=BatchResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify a batch of images and build the sorted archive",
)
async def create_batch(request: Request, files: list[UploadFile]) -> BatchResponse | JSONResponse:
    """Classify uploaded images in order and partition them by confidence."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    provider = _get_model_provider(request)
    pipeline = _get_pipeline(request)

    if provider.model is None:
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            f"Model is not loaded: {provider.last_error or 'unknown error'}",
        )
    if pool.busy:
        return _error(status.HTTP_409_CONFLICT, "A batch is already being processed")

    uploads: list[ImageInput] = []
    for position, upload in enumerate(files):
        data = await upload.read()
        if len(data) > settings.max_file_size:
            return _error(
                status.HTTP_413_CONTENT_TOO_LARGE,
                f"{upload.filename} exceeds the maximum file size of {settings.max_file_size} bytes",
            )
        uploads.append(
            ImageInput(
                filename=upload.filename or f"image_{position}",
                content_type=upload.content_type or "",
                data=data,
            )
        )

    images = select_images(uploads)
    logger.info("Received %d files for batch processing, %d images", len(uploads), len(images))
    if not images:
        return _error(status.HTTP_400_BAD_REQUEST, "No image files in upload")

    job = BatchJob(inputs=tuple(images), policy=RoutingPolicy.from_settings(settings))
    try:
        record = await pool.run_batch(job, functools.partial(pipeline.run, job))
    except BatchBusyError as exc:
        return _error(status.HTTP_409_CONFLICT, str(exc))
    except BatchCancelledError as exc:
        return _error(status.HTTP_409_CONFLICT, str(exc), batch_id=job.id)
    except (DecodeError, InferenceError) as exc:
        return _error(
            status.HTTP_422_UNPROCESSABLE_CONTENT,
            f"Failed to process batch images: {exc}",
            batch_id=job.id,
        )

    if record.archive is None:
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            f"Classification finished but the archive failed: {record.archive_error}",
            batch_id=job.id,
        )
    return _summary(request, record)


@router.get(
    "/batches/current",
    response_model=ProgressResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Progress of the running batch",
)
async def current_batch(request: Request) -> ProgressResponse:
    job = _get_inference_pool(request).current_job
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No batch is running")
    return _progress(job)


@router.post(
    "/batches/current/cancel",
    response_model=ProgressResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Cancel the running batch",
)
async def cancel_batch(request: Request) -> ProgressResponse:
    """Stop the running batch before its next image."""
    job = _get_inference_pool(request).cancel_current()
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No batch is running")
    return _progress(job)


@router.get(
    "/batches/{batch_id}",
    response_model=BatchResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Summary of a batch run",
)
async def get_batch(request: Request, batch_id: str) -> BatchResponse:
    record = _get_history(request).get(batch_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown batch: {batch_id}")
    return _summary(request, record)


@router.get(
    "/batches/{batch_id}/archive",
    response_class=Response,
    responses={
        status.HTTP_200_OK: {"content": {"application/zip": {}}},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    },
    summary="Download the sorted archive",
)
async def download_archive(request: Request, batch_id: str) -> Response:
    """Return the batch archive, rebuilding it from stored results if an earlier build failed."""
    record = _get_history(request).get(batch_id)
    if record is None:
        return _error(status.HTTP_404_NOT_FOUND, f"Unknown batch: {batch_id}")
    if record.job.status != BatchStatus.COMPLETED:
        return _error(
            status.HTTP_409_CONFLICT,
            f"Batch {batch_id} is {record.job.status}; no archive is available",
            batch_id=batch_id,
        )

    try:
        data = await _get_inference_pool(request).run(record.ensure_archive)
    except ArchiveError as exc:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc), batch_id=batch_id)

    return Response(
        content=data,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{record.spec.filename}"'},
    )


@router.get(
    "/stats",
    response_model=StatsResponse,
    summary="Classification statistics for this session",
)
async def stats(request: Request) -> StatsResponse:
    history = _get_history(request)
    counts = history.stats()
    return StatsResponse(
        batches=len(history.completed()),
        images=sum(counts.values()),
        counts=_counts(counts),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    provider = _get_model_provider(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok" if provider.model is not None else "degraded",
        gpu=settings.device == "cuda",
        model_loaded=provider.model is not None,
        batch_running=pool.busy,
    )


def _model_info(settings: Settings, provider: ModelProvider) -> ModelInfo:
    model = provider.model
    source = settings.model_path
    if source is None and settings.model_repo_id:
        source = f"{settings.model_repo_id}/{settings.model_filename}"
    return ModelInfo(
        name=model.name if model is not None else None,
        status="loaded" if model is not None else "failed",
        source=source,
        labels=list(provider.labels),
        input_size=settings.input_size,
        error=provider.last_error,
    )


@router.get(
    "/models",
    response_model=ModelInfo,
    summary="Classifier status and labels",
)
async def model_status(request: Request) -> ModelInfo:
    return _model_info(_get_settings(request), _get_model_provider(request))


@router.post(
    "/models/reload",
    response_model=ModelInfo,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Retry loading the classifier",
)
async def reload_model(request: Request) -> ModelInfo | JSONResponse:
    """Reload the model and labels, e.g. after a failed startup load."""
    pool = _get_inference_pool(request)
    provider = _get_model_provider(request)
    if pool.busy:
        return _error(status.HTTP_409_CONFLICT, "Cannot reload the model while a batch is running")
    try:
        await pool.run(provider.load)
    except LoadError as exc:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, f"Failed to load model: {exc}")
    return _model_info(_get_settings(request), provider)
