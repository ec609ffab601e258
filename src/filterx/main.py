"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from filterx.ml.model_manager import ModelProvider

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from filterx.api.routes import router
from filterx.config import Settings, get_settings
from filterx.exceptions import LoadError
from filterx.history import BatchHistory
from filterx.ml.inference import InferencePool
from filterx.ml.model_manager import OnnxModelProvider
from filterx.ml.preprocessing import PillowPreprocessor
from filterx.pipeline import BatchPipeline

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings, provider: ModelProvider | None = None) -> None:
    """Attach settings, model provider, pool, history and pipeline to ``app.state``."""
    provider = provider if provider is not None else OnnxModelProvider(settings)
    history = BatchHistory(max_entries=settings.max_history)
    app.state.settings = settings
    app.state.model_provider = provider
    app.state.inference_pool = InferencePool(settings)
    app.state.history = history
    app.state.pipeline = BatchPipeline(
        settings,
        provider,
        PillowPreprocessor.from_settings(settings),
        history,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting FilterX (device=%s, input_size=%s, threshold=%s, failure_policy=%s)",
        settings.device,
        settings.input_size,
        settings.confidence_threshold,
        settings.failure_policy,
    )

    init_state(app, settings)
    try:
        app.state.model_provider.load()
    except LoadError:
        logger.warning("Model not loaded at startup; batches are disabled until POST /api/v1/models/reload succeeds")

    logger.info("FilterX ready")
    yield

    logger.info("Shutting down FilterX")
    app.state.inference_pool.shutdown()
    app.state.model_provider.shutdown()
    logger.info("FilterX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="FilterX",
        description="Batch image classification that sorts images into normal, theft and unidentified folders",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("filterx.main:app", host=settings.host, port=settings.port)
