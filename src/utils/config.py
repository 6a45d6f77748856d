"""Configuration management for the document splitting pipeline.

Loads and validates YAML configuration with sensible defaults
for storage, boundary detection, webhook dispatch, reconciliation,
and confidence settings.
"""

import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class StorageConfig(BaseModel):
    """Configuration for the document store and file store."""

    database_url: str = "sqlite:///data/pipeline.db"
    files_dir: str = "data/files"
    public_base_url: str | None = None


class DetectorConfig(BaseModel):
    """Configuration for the external boundary detection service."""

    url: str | None = None
    bearer_token: str | None = None
    timeout_s: float = Field(default=60.0, gt=0)
    fallback_to_single_range: bool = False


class WebhookConfig(BaseModel):
    """Configuration for the extraction workflow trigger."""

    enabled: bool = True
    url: str | None = None
    method: Literal["GET", "POST"] = "POST"
    bearer_token: str | None = None
    max_retries: int = Field(default=3, ge=1)
    base_timeout_s: float = Field(default=15.0, gt=0)
    timeout_step_s: float = Field(default=10.0, ge=0)
    backoff_base_ms: int = Field(default=1000, ge=0)
    backoff_cap_ms: int = Field(default=5000, ge=0)
    extra_headers: dict[str, str] = Field(default_factory=dict)
    user_agent: str = "document-splitter/1.0"


class ReconcilerConfig(BaseModel):
    """Configuration for the execution reconciler."""

    enabled: bool = False
    engine_url: str | None = None
    api_key: str | None = None
    interval_s: float = Field(default=60.0, gt=0)
    query_timeout_s: float = Field(default=10.0, gt=0)
    batch_limit: int = Field(default=100, ge=1)
    max_not_found: int | None = Field(default=None, ge=1)
    stale_after_minutes: int | None = Field(default=None, ge=1)


class ConfidenceConfig(BaseModel):
    """Configuration for the confidence engine."""

    threshold: float = Field(default=70.0, ge=0, le=100)


class IntakeConfig(BaseModel):
    """Configuration for upload validation."""

    max_upload_mb: int = Field(default=100, ge=1)
    allowed_content_types: list[str] = Field(
        default_factory=lambda: [
            "application/pdf",
            "image/tiff",
            "image/png",
            "image/jpeg",
            "application/octet-stream",
        ]
    )


class AppConfig(BaseModel):
    """Top-level application configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    detector: DetectorConfig = Field(default_factory=DetectorConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    confidence: ConfidenceConfig = Field(default_factory=ConfidenceConfig)
    intake: IntakeConfig = Field(default_factory=IntakeConfig)
    field_catalog_path: str = "configs/field_catalog.yaml"
    log_level: str = "INFO"


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        return AppConfig(**raw)

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()
