"""Shared test fixtures and configuration for backend tests."""
import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app.images.service import ImageTransformService
from app.images.storage import UploadStore
from app.main import app


@pytest.fixture
def upload_dir(tmp_path):
    """Scratch directory used in place of ./uploads."""
    return tmp_path / "uploads"


@pytest.fixture
def upload_store(upload_dir):
    """Install an UploadStore singleton writing into upload_dir."""
    UploadStore.reset_instance()
    ImageTransformService.reset_instance()
    store = UploadStore.get_instance(upload_dir=upload_dir, max_file_size_bytes=50 * 1024 * 1024)
    yield store
    UploadStore.reset_instance()
    ImageTransformService.reset_instance()
    app.dependency_overrides.clear()


@pytest.fixture
def api_client(upload_store):
    """Provide a TestClient for the main FastAPI app backed by upload_store."""
    return TestClient(app)


@pytest.fixture
def make_image():
    """Factory returning encoded image bytes generated in memory."""

    def _make(fmt: str = "JPEG", mode: str = "RGB", size=(64, 48), color=(200, 80, 40)) -> bytes:
        if mode == "RGBA" and len(color) == 3:
            color = (*color, 128)
        elif mode == "L":
            color = color[0]
        elif mode == "P":
            image = Image.new("RGB", size, color).convert("P")
            buf = io.BytesIO()
            image.save(buf, format=fmt)
            return buf.getvalue()
        image = Image.new(mode, size, color)
        buf = io.BytesIO()
        image.save(buf, format=fmt)
        return buf.getvalue()

    return _make
