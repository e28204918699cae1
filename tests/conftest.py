"""Shared test fixtures for the document ingestion test suite."""

import io
import os
from datetime import timedelta
from pathlib import Path

import pytest
from PIL import Image

from src.pipeline.models import License, SubmissionContext, utcnow
from src.utils.config import ExtractionFieldConfig, ProjectSettings


def make_image_bytes(
    width: int = 300, height: int = 200, fmt: str = "PNG", noise: bool = False
) -> bytes:
    """Encode a synthetic image; ``noise`` makes it large and incompressible."""
    if noise:
        img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    else:
        img = Image.new("RGB", (width, height), (255, 255, 255))
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def make_license(remaining: int = 10, total: int = 10, days: int = 30) -> License:
    return License(
        id="lic-1",
        total_documents=total,
        remaining_documents=remaining,
        expires_at=utcnow() + timedelta(days=days),
    )


@pytest.fixture
def small_png() -> bytes:
    """A small PNG well under the compression threshold."""
    return make_image_bytes()


@pytest.fixture
def project() -> ProjectSettings:
    """A project with a couple of requested fields."""
    return ProjectSettings(
        id="invoices",
        name="Invoices",
        extraction_fields=[
            ExtractionFieldConfig(name="Vendor"),
            ExtractionFieldConfig(name="Invoice_Date"),
        ],
        table_extraction_fields=[
            ExtractionFieldConfig(name="Description"),
            ExtractionFieldConfig(name="Amount"),
        ],
    )


@pytest.fixture
def context(project: ProjectSettings) -> SubmissionContext:
    """Submission context for batch ``b-1``."""
    return SubmissionContext(project=project, batch_id="b-1", submitted_by="user-1")


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_dir(project_root: Path) -> Path:
    """Return the configs directory path."""
    return project_root / "configs"


@pytest.fixture
def image_factory():
    """Factory for synthetic encoded images."""
    return make_image_bytes


@pytest.fixture
def license_factory():
    """Factory for licenses with a given remaining quota."""
    return make_license
