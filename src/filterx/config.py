"""Environment-based configuration for FilterX."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Archive folders of the normal and unidentified categories.
RESERVED_FOLDERS = frozenset({"normal", "unidentified"})


class Settings(BaseSettings):
    """Application settings loaded from FILTERX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FILTERX_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model source: a local file wins over the hub repo
    model_path: str | None = None
    model_repo_id: str | None = None
    model_filename: str = "model.onnx"
    metadata_path: str | None = None
    metadata_filename: str = "metadata.json"
    models_dir: str = "models"
    default_labels: list[str] = Field(default_factory=lambda: ["theft", "Normal"])

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Classification
    input_size: int = Field(default=224, ge=1)
    normalize_outputs: bool = False

    # Routing
    safe_label: str = "normal"
    confidence_threshold: float = Field(default=1.0, ge=0.0, le=1.0)
    tampered_folder: str = "theft"

    # Batch
    failure_policy: Literal["abort", "skip"] = "abort"
    archive_compresslevel: int = Field(default=6, ge=0, le=9)
    max_history: int = Field(default=20, ge=1)

    @field_validator("tampered_folder")
    @classmethod
    def _check_tampered_folder(cls, value: str) -> str:
        if not value or "/" in value or "\\" in value:
            raise ValueError("tampered_folder must be a single non-empty path segment")
        if value in RESERVED_FOLDERS:
            raise ValueError(f"tampered_folder must differ from {sorted(RESERVED_FOLDERS)}")
        return value


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
