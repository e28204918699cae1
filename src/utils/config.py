"""Configuration management for the document ingestion pipeline.

Loads and validates YAML configuration with sensible defaults
for capture normalization, licensing, submission, polling,
batch automation, storage, and OCR settings.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class CompressionProfile(BaseModel):
    """Target size and quality for re-encoding a captured image."""

    max_bytes: int = 1024 * 1024
    max_dimension: int = 2048
    initial_quality: float = 0.85
    min_quality: float = 0.4
    quality_step: float = 0.1


COMPRESSION_PROFILES: dict[str, CompressionProfile] = {
    "standard": CompressionProfile(),
    "aggressive": CompressionProfile(
        max_bytes=512 * 1024, max_dimension=1600, initial_quality=0.75
    ),
    "high_quality": CompressionProfile(
        max_bytes=2 * 1024 * 1024, max_dimension=3000, initial_quality=0.92
    ),
}


class CaptureConfig(BaseModel):
    """Configuration for the capture normalizer."""

    min_compress_bytes: int = 500 * 1024
    compression_mode: str = "standard"
    max_text_pages: int = 5
    min_text_chars: int = 10
    render_scale: float = 1.5
    render_max_dimension: int = 2000

    @property
    def compression(self) -> CompressionProfile:
        """Return the active compression profile."""
        return COMPRESSION_PROFILES.get(
            self.compression_mode, COMPRESSION_PROFILES["standard"]
        )


class LicenseConfig(BaseModel):
    """Configuration for the license gate."""

    license_id: str | None = None
    units_per_document: int = 1


class SubmissionConfig(BaseModel):
    """Configuration for multi-file submissions."""

    max_concurrency: int = 3
    default_priority: str = "normal"


class PollingConfig(BaseModel):
    """Configuration for the interactive completion tracker."""

    interval_seconds: float = 2.0
    max_attempts: int = 30


class DuplicateThresholds(BaseModel):
    """Similarity cutoffs per field class for duplicate detection."""

    name: float = 0.85
    address: float = 0.90
    signature: float = 0.85


class AutomationConfig(BaseModel):
    """Configuration for post-submission batch automation."""

    enabled: bool = True
    max_parallel: int = 3
    duplicate_check_delay: float = 10.0
    check_cross_batch: bool = False
    thresholds: DuplicateThresholds = Field(default_factory=DuplicateThresholds)


class StorageConfig(BaseModel):
    """Configuration for the document store and blob storage backends."""

    backend: str = "memory"
    sqlite_path: str = "data/docingest.db"
    blob_dir: str | None = None


class ServerConfig(BaseModel):
    """Bind address of the API server."""

    host: str = "0.0.0.0"
    port: int = 8000
    worker_idle_interval: float = 1.0


class OCRConfig(BaseModel):
    """Configuration for the local Tesseract extraction worker."""

    tesseract_cmd: str | None = None
    default_lang: str = "eng"
    psm: int = 3


class ExtractionFieldConfig(BaseModel):
    """A named value the extraction worker should try to populate."""

    name: str
    description: str = ""


class ProjectSettings(BaseModel):
    """Per-project extraction schema and naming rules."""

    id: str
    name: str = ""
    extraction_fields: list[ExtractionFieldConfig] = Field(default_factory=list)
    table_extraction_fields: list[ExtractionFieldConfig] = Field(
        default_factory=list
    )
    check_scanning_mode: bool = False
    naming_pattern: str | None = None


class AppConfig(BaseModel):
    """Top-level application configuration."""

    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    license: LicenseConfig = Field(default_factory=LicenseConfig)
    submission: SubmissionConfig = Field(default_factory=SubmissionConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    ocr: OCRConfig = Field(default_factory=OCRConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    projects: list[ProjectSettings] = Field(default_factory=list)
    log_level: str = "INFO"

    def get_project(self, project_id: str) -> ProjectSettings | None:
        """Look up a configured project by id."""
        for project in self.projects:
            if project.id == project_id:
                return project
        return None


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
