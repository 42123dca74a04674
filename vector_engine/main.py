import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import Body, FastAPI, Header, HTTPException, Response

from vector_engine.config import Settings, load_settings
from vector_engine.schemas import HealthResponse, JobStatusResponse, SubmitResponse, ValidationResponse
from vector_engine.services.capability import RendererProbe
from vector_engine.services.errors import ArtifactNotFoundError, StorageError, ValidationError
from vector_engine.services.external_renderer import ExternalRenderer
from vector_engine.services.layout import LayoutEngine
from vector_engine.services.pdf_writer import PdfPageRenderer
from vector_engine.services.pipeline import JobPipeline
from vector_engine.services.queue import connect_queue
from vector_engine.services.storage import build_object_storage
from vector_engine.services.store import InMemoryJobStore
from vector_engine.services.svg_cache import SvgCache
from vector_engine.services.sweeper import CleanupSweeper
from vector_engine.services.validation import validate_vector_metadata

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)
settings = load_settings()


def build_pipeline(settings: Settings) -> tuple[JobPipeline, CleanupSweeper]:
    probe = RendererProbe(
        binary=settings.RENDERER_BINARY,
        timeout=settings.RENDERER_TIMEOUT_SECONDS,
        reprobe_after=settings.REPROBE_SECONDS,
    )
    storage = build_object_storage(settings)
    store = InMemoryJobStore()
    pipeline = JobPipeline(
        settings=settings,
        store=store,
        storage=storage,
        probe=probe,
        layout=LayoutEngine(probe, canvas_scale=settings.CANVAS_SCALE, default_backend=settings.RENDER_BACKEND),
        renderer=PdfPageRenderer(
            external=ExternalRenderer(probe, timeout=settings.RENDERER_TIMEOUT_SECONDS),
            cache_dir=settings.CACHE_DIR,
        ),
        svg_cache=SvgCache(settings.CACHE_DIR),
        queue=connect_queue(
            settings.REDIS_URL,
            block_timeout=settings.POLL_INTERVAL_SECONDS,
            instance=settings.QUEUE_INSTANCE or None,
        ),
    )
    sweeper = CleanupSweeper(store, storage, settings, on_requeue=pipeline.reenqueue)
    return pipeline, sweeper


pipeline, sweeper = build_pipeline(settings)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    pipeline.probe.probe()
    if settings.ENABLE_WORKERS:
        pipeline.start()
        sweeper.start()
    try:
        yield
    finally:
        sweeper.stop()
        pipeline.stop()


app = FastAPI(title="vector-engine", lifespan=lifespan)


def _require_key(x_internal_key: str) -> None:
    if x_internal_key != settings.INTERNAL_API_KEY:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _job_or_404(job_id: str):
    job = pipeline.status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    info = pipeline.health()
    return HealthResponse(
        ok=True,
        version=os.getenv("RAILWAY_GIT_COMMIT_SHA")
        or os.getenv("GIT_COMMIT_SHA")
        or os.getenv("RENDER_GIT_COMMIT")
        or "unknown",
        queue_backend=info["queue_backend"],
        workers_enabled=info["workers_enabled"],
        renderer=info["renderer"],
    )


@app.post("/jobs", response_model=SubmitResponse, status_code=202)
def submit_endpoint(
    payload: dict[str, Any] = Body(...),
    x_internal_key: str = Header(default="", alias="x-internal-key"),
) -> SubmitResponse:
    _require_key(x_internal_key)
    try:
        result = pipeline.submit(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"code": e.code, "errors": e.errors})
    return SubmitResponse(job_id=result.job_id, state="queued", degraded=result.degraded)


@app.post("/jobs/validate", response_model=ValidationResponse)
def validate_endpoint(
    payload: Any = Body(...),
    x_internal_key: str = Header(default="", alias="x-internal-key"),
) -> ValidationResponse:
    _require_key(x_internal_key)
    result = validate_vector_metadata(
        payload,
        canvas_scale=settings.CANVAS_SCALE,
        default_page_size=settings.DEFAULT_PAGE_SIZE,
    )
    return ValidationResponse(is_valid=result.is_valid, errors=list(result.errors))


@app.get("/jobs/{job_id}", response_model=JobStatusResponse)
def status_endpoint(job_id: str, x_internal_key: str = Header(default="", alias="x-internal-key")) -> JobStatusResponse:
    _require_key(x_internal_key)
    return _job_or_404(job_id).to_status()


@app.post("/jobs/{job_id}/cancel", response_model=JobStatusResponse)
def cancel_endpoint(job_id: str, x_internal_key: str = Header(default="", alias="x-internal-key")) -> JobStatusResponse:
    _require_key(x_internal_key)
    job = pipeline.cancel(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_status()


def _pdf_response(read, job_id: str, filename: str) -> Response:
    _job_or_404(job_id)
    try:
        data = read()
    except ArtifactNotFoundError:
        raise HTTPException(status_code=404, detail="Artifact not available")
    except StorageError as e:
        logger.warning("ARTIFACT_READ_FAILED", extra={"job_id": job_id, "error": str(e)})
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return Response(
        content=data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )


@app.get("/jobs/{job_id}/artifact")
def artifact_endpoint(job_id: str, x_internal_key: str = Header(default="", alias="x-internal-key")) -> Response:
    _require_key(x_internal_key)
    return _pdf_response(lambda: pipeline.read_artifact(job_id), job_id, f"{job_id}.pdf")


@app.get("/jobs/{job_id}/pages/{page_index}")
def page_endpoint(
    job_id: str,
    page_index: int,
    x_internal_key: str = Header(default="", alias="x-internal-key"),
) -> Response:
    _require_key(x_internal_key)
    return _pdf_response(lambda: pipeline.read_page(job_id, page_index), job_id, f"{job_id}-{page_index}.pdf")
