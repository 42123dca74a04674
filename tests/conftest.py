"""
Pytest configuration and fixtures for the vector engine tests.
"""

import os
import shutil
import tempfile
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["INTERNAL_API_KEY"] = "test-internal-key-12345"
os.environ["STORAGE_DIR"] = tempfile.mkdtemp(prefix="ve_test_storage_")
os.environ["CACHE_DIR"] = tempfile.mkdtemp(prefix="ve_test_cache_")
os.environ["ENABLE_WORKERS"] = "false"
os.environ["REDIS_URL"] = ""
os.environ["S3_BUCKET"] = ""
os.environ["RENDERER_BINARY"] = "ve-test-missing-renderer"

from vector_engine.config import Settings
from vector_engine.main import app
from vector_engine.services.capability import RendererProbe
from vector_engine.services.layout import LayoutEngine
from vector_engine.services.pipeline import JobPipeline
from vector_engine.services.storage import LocalObjectStorage
from vector_engine.services.store import InMemoryJobStore
from vector_engine.services.svg_cache import SvgCache
from vector_engine.services.validation import validate_vector_metadata

from helpers import FakePageRenderer, available_probe, unavailable_probe

SAMPLE_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="200" height="100" viewBox="0 0 200 100">'
    '<rect x="0" y="0" width="200" height="100" fill="#ffffff" stroke="#000000"/>'
    '<path d="M10 10 L190 90" stroke="#ff0000" stroke-width="2"/>'
    "</svg>"
)

SOURCE_KEY = "documents/source/ticket.svg"


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Create and cleanup the directories the app module was configured with."""
    storage_dir = os.environ["STORAGE_DIR"]
    cache_dir = os.environ["CACHE_DIR"]

    yield {"storage": storage_dir, "cache": cache_dir}

    shutil.rmtree(storage_dir, ignore_errors=True)
    shutil.rmtree(cache_dir, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app (lifespan not started)."""
    return TestClient(app)


@pytest.fixture
def internal_key():
    return "test-internal-key-12345"


@pytest.fixture
def auth_headers(internal_key):
    return {"x-internal-key": internal_key}


@pytest.fixture
def settings(tmp_path):
    """Settings for directly constructed pipelines; no network, fast retries."""
    return Settings(
        APP_ENV="test",
        SERVICE_PORT=9000,
        INTERNAL_API_KEY="test-internal-key-12345",
        S3_BUCKET="",
        S3_REGION="",
        S3_ENDPOINT="",
        S3_ACCESS_KEY_ID="",
        S3_SECRET_ACCESS_KEY="",
        STORAGE_DIR=str(tmp_path / "storage"),
        CACHE_DIR=str(tmp_path / "cache"),
        MAX_ATTEMPTS=3,
        RETRY_BACKOFF_SECONDS=2.0,
        POLL_INTERVAL_SECONDS=0.05,
        WORKER_COUNT=2,
        PAGE_CONCURRENCY=4,
        STALE_LOCK_SECONDS=600.0,
        RETENTION_SECONDS=3600.0,
    )


@pytest.fixture
def sample_svg():
    return SAMPLE_SVG


@pytest.fixture
def sample_payload():
    """Four tickets per page over two pages, numbered A1..A8, one text watermark."""
    return {
        "sourceDocumentKey": SOURCE_KEY,
        "ticketCrop": {"pageIndex": 0, "x": 0, "y": 0, "width": 200, "height": 100},
        "layout": {"pageSize": "A4", "repeatPerPage": 4, "totalPages": 2},
        "series": [
            {
                "id": "main",
                "prefix": "A",
                "start": 1,
                "step": 1,
                "font": "Helvetica",
                "fontSize": 12,
                "slots": [
                    {"x": 150, "y": 80},
                    {"x": 350, "y": 80},
                    {"x": 150, "y": 180},
                    {"x": 350, "y": 180},
                ],
            }
        ],
        "watermarks": [
            {
                "id": "void",
                "type": "text",
                "value": "SAMPLE",
                "opacity": 0.3,
                "rotate": 45,
                "position": {"x": 297, "y": 420},
            }
        ],
    }


@pytest.fixture
def job_spec(sample_payload):
    result = validate_vector_metadata(sample_payload)
    assert result.is_valid, result.errors
    return result.spec


@pytest.fixture
def storage(settings, sample_svg):
    s = LocalObjectStorage(settings.STORAGE_DIR)
    s.put(SOURCE_KEY, sample_svg.encode("utf-8"), "image/svg+xml")
    return s


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def probe():
    return unavailable_probe()


@pytest.fixture
def ready_probe():
    return available_probe()


@pytest.fixture
def fake_renderer():
    return FakePageRenderer()


@pytest.fixture
def make_pipeline(settings, store, storage, probe, fake_renderer):
    """Build a JobPipeline over in-memory/local collaborators; overrides by keyword."""
    created = []

    def _make(**overrides):
        s = overrides.pop("settings", settings)
        p = overrides.pop("probe", probe)
        pipeline = JobPipeline(
            settings=s,
            store=overrides.pop("store", store),
            storage=overrides.pop("storage", storage),
            probe=p,
            layout=overrides.pop("layout", LayoutEngine(p, canvas_scale=s.CANVAS_SCALE, default_backend=s.RENDER_BACKEND)),
            renderer=overrides.pop("renderer", fake_renderer),
            svg_cache=overrides.pop("svg_cache", SvgCache(None)),
            queue=overrides.pop("queue", None),
        )
        assert not overrides, f"unknown overrides: {sorted(overrides)}"
        created.append(pipeline)
        return pipeline

    yield _make

    for pipeline in created:
        pipeline.stop(timeout=2.0)


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()


@pytest.fixture
def fast_settings(settings):
    """Settings with zero backoff for retry-loop tests."""
    return replace(settings, RETRY_BACKOFF_SECONDS=0.0)
