"""
Asynchronous job pipeline: submission, worker execution and retries.

A job moves `queued -> rendering -> assembling -> done`; an attempt that
raises a retryable error goes back to `queued` with exponential backoff until
the attempt ceiling is reached, anything else ends in `failed`. Every
transition is a compare-and-swap in the job store guarded on the owning
worker, so a worker that lost its claim (the sweeper requeued it) notices on
its next heartbeat and abandons the attempt instead of overwriting the record.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from threading import Event, Lock, Thread
from typing import Any, Callable, Optional

from vector_engine.config import Settings
from vector_engine.services.capability import RendererProbe
from vector_engine.services.errors import (
    ArtifactNotFoundError,
    JobCancelledError,
    QueueUnavailableError,
    StaleLockError,
    StorageError,
    ValidationError,
    VectorError,
    public_message,
)
from vector_engine.services.flow import AssembleUnit, PageUnit, build_flow, run_flow
from vector_engine.services.layout import LayoutEngine, PageDescription
from vector_engine.services.pdf_writer import ArtworkForm, PdfPageRenderer, assemble_pdf
from vector_engine.services.queue import STAGE_RENDER, LocalWorkQueue, RedisWorkQueue, WorkUnit
from vector_engine.services.storage import ObjectStorage
from vector_engine.services.store import OWNED_STATES, InMemoryJobStore, JobState, VectorJob, utcnow
from vector_engine.services.svg_cache import SvgCache
from vector_engine.services.validation import validate_vector_metadata

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 300.0


def final_artifact_key(job_id: str) -> str:
    return f"documents/final/{job_id}.pdf"


def page_artifact_key(job_id: str, page_index: int) -> str:
    return f"documents/pages/{job_id}/{page_index}.pdf"


@dataclass(frozen=True)
class SubmitResult:
    job_id: str
    degraded: bool


@dataclass(frozen=True)
class ProcessOutcome:
    job: Optional[VectorJob]
    # Seconds to wait before the job is picked up again; None when no retry is due.
    retry_after: Optional[float] = None


class JobPipeline:
    def __init__(
        self,
        settings: Settings,
        store: InMemoryJobStore,
        storage: ObjectStorage,
        probe: RendererProbe,
        layout: LayoutEngine,
        renderer: PdfPageRenderer,
        svg_cache: SvgCache,
        queue: Optional[RedisWorkQueue] = None,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.storage = storage
        self.probe = probe
        self.layout = layout
        self.renderer = renderer
        self.svg_cache = svg_cache
        self.remote = queue
        self.local_queue = LocalWorkQueue()
        self.clock = clock

        self._stop = Event()
        self._workers: list[Thread] = []
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = Lock()

    # Submission surface

    def submit(self, payload: Any) -> SubmitResult:
        result = validate_vector_metadata(
            payload,
            canvas_scale=self.settings.CANVAS_SCALE,
            default_page_size=self.settings.DEFAULT_PAGE_SIZE,
        )
        if not result.is_valid or result.spec is None:
            raise ValidationError(result.errors)

        spec = result.spec
        spec_key = self.store.put(spec.model_dump_json(by_alias=True).encode("utf-8"))
        now = self.clock()
        job = VectorJob(
            id=uuid.uuid4().hex,
            spec=spec,
            state=JobState.QUEUED,
            created_at=now,
            updated_at=now,
            spec_key=spec_key,
        )
        self.store.create(job)
        degraded = not self.reenqueue(job.id)
        logger.info(
            "JOB_SUBMITTED",
            extra={
                "job_id": job.id,
                "pages": spec.layout.total_pages,
                "page_size": spec.layout.page_size,
                "degraded": degraded,
            },
        )
        return SubmitResult(job_id=job.id, degraded=degraded)

    def reenqueue(self, job_id: str, delay: float = 0.0) -> bool:
        """Put a job on the shared queue, or the local one as fallback.

        Returns True when the shared backend took it.
        """
        if self.remote is not None:
            try:
                self.remote.enqueue(job_id, STAGE_RENDER, delay)
                return True
            except QueueUnavailableError as e:
                logger.warning("QUEUE_ENQUEUE_FALLBACK", extra={"job_id": job_id, "error": str(e)})
        self.local_queue.enqueue(job_id, STAGE_RENDER, delay)
        return False

    def status(self, job_id: str) -> Optional[VectorJob]:
        return self.store.find(job_id)

    def cancel(self, job_id: str) -> Optional[VectorJob]:
        """Cancel a job.

        Queued jobs fail at once. A running attempt is only flagged; it ends
        normally and the flag is honoured when the job would be claimed again.
        """
        job = self.store.find(job_id)
        if job is None:
            return None
        if job.state is JobState.QUEUED:
            cancelled = self.store.transition(
                job_id,
                expected={JobState.QUEUED},
                new_state=JobState.FAILED,
                now=self.clock(),
                cancel_requested=True,
                error=public_message(JobCancelledError("cancelled before rendering")),
            )
            if cancelled is not None:
                logger.info("JOB_CANCELLED", extra={"job_id": job_id, "state": "queued"})
                return cancelled
            job = self.store.find(job_id)
        if job is not None and job.state in OWNED_STATES:
            flagged = self.store.transition(job_id, expected=OWNED_STATES, now=self.clock(), cancel_requested=True)
            if flagged is not None:
                logger.info("JOB_CANCEL_REQUESTED", extra={"job_id": job_id, "state": flagged.state.value})
                return flagged
            return self.store.find(job_id)
        return job

    def read_artifact(self, job_id: str) -> bytes:
        job = self.store.find(job_id)
        if job is None or job.state is not JobState.DONE or not job.result_artifact_key:
            raise ArtifactNotFoundError(f"job {job_id} has no finished artifact")
        return self.storage.get(job.result_artifact_key)

    def read_page(self, job_id: str, page_index: int) -> bytes:
        job = self.store.find(job_id)
        if job is None or job.state is not JobState.DONE:
            raise ArtifactNotFoundError(f"job {job_id} has no finished artifact")
        if page_index < 0 or page_index >= len(job.page_artifact_keys):
            raise ArtifactNotFoundError(f"job {job_id} has no page {page_index}")
        return self.storage.get(job.page_artifact_keys[page_index])

    def health(self) -> dict:
        return {
            "queue_backend": self.remote.name if self.remote is not None else self.local_queue.name,
            "workers_enabled": bool(self._workers),
            "renderer": self.probe.state().value,
        }

    # Worker execution

    def backoff(self, attempts: int) -> float:
        return min(MAX_BACKOFF_SECONDS, self.settings.RETRY_BACKOFF_SECONDS * 2 ** max(0, attempts - 1))

    def process(self, job_id: str, owner: str) -> ProcessOutcome:
        job = self.store.claim(job_id, owner, self.clock())
        if job is None:
            logger.info("JOB_CLAIM_SKIPPED", extra={"job_id": job_id, "owner": owner})
            return ProcessOutcome(job=self.store.find(job_id))

        if job.cancel_requested:
            failed = self.store.transition(
                job_id,
                expected=OWNED_STATES,
                new_state=JobState.FAILED,
                expected_owner=owner,
                now=self.clock(),
                owner=None,
                error=public_message(JobCancelledError("cancelled before rendering")),
            )
            logger.info("JOB_CANCELLED", extra={"job_id": job_id, "state": "claimed"})
            return ProcessOutcome(job=failed)

        logger.info("JOB_CLAIMED", extra={"job_id": job_id, "owner": owner, "attempts": job.attempts})
        try:
            done = self._run_attempt(job, owner)
        except StaleLockError as e:
            logger.warning("JOB_ATTEMPT_ABANDONED", extra={"job_id": job_id, "owner": owner, "error": str(e)})
            return ProcessOutcome(job=self.store.find(job_id))
        except VectorError as e:
            return self._handle_failure(job, owner, e, retryable=e.retryable)
        except Exception as e:
            logger.exception("JOB_ATTEMPT_CRASHED", extra={"job_id": job_id, "owner": owner})
            return self._handle_failure(job, owner, e, retryable=True)

        logger.info(
            "JOB_DONE",
            extra={"job_id": job_id, "pages": len(done.page_artifact_keys), "artifact": done.result_artifact_key},
        )
        return ProcessOutcome(job=done)

    def _run_attempt(self, job: VectorJob, owner: str) -> VectorJob:
        spec = job.spec
        source = self.storage.get(spec.source_document_key)
        sanitized = self.svg_cache.get_or_create(source)
        self._heartbeat(job.id, owner, svg_digest=sanitized.digest)

        # Cached while fresh; an unavailable result is re-checked after reprobe_after.
        self.probe.probe()
        pages = self.layout.build_pages(spec, sanitized)
        artwork = self.renderer.prepare_artwork(sanitized, pages[0].render_path)

        flow = build_flow(job.id, len(pages))

        def render_unit(unit: PageUnit) -> str:
            return self._render_page(unit, pages[unit.page_index], artwork, owner)

        def assemble_unit(unit: AssembleUnit, page_keys) -> str:
            return self._assemble(unit, list(page_keys), owner)

        final_key = run_flow(flow, self._page_executor(), render_unit, assemble_unit)

        done = self.store.transition(
            job.id,
            expected={JobState.ASSEMBLING},
            new_state=JobState.DONE,
            expected_owner=owner,
            now=self.clock(),
            owner=None,
            result_artifact_key=final_key,
            error=None,
        )
        if done is None:
            raise StaleLockError(f"job {job.id} is no longer owned by {owner}")
        return done

    def _render_page(self, unit: PageUnit, page: PageDescription, artwork: ArtworkForm, owner: str) -> str:
        data = self.renderer.render_page(page, artwork)
        key = page_artifact_key(unit.job_id, unit.page_index)
        self.storage.put(key, data, "application/pdf")
        self._heartbeat(unit.job_id, owner)
        return key

    def _assemble(self, unit: AssembleUnit, page_keys: list[str], owner: str) -> str:
        moved = self.store.transition(
            unit.job_id,
            expected={JobState.RENDERING},
            new_state=JobState.ASSEMBLING,
            expected_owner=owner,
            now=self.clock(),
            page_artifact_keys=page_keys,
        )
        if moved is None:
            raise StaleLockError(f"job {unit.job_id} is no longer owned by {owner}")

        data = assemble_pdf([self.storage.get(k) for k in page_keys])
        key = final_artifact_key(unit.job_id)
        self.storage.put(key, data, "application/pdf")
        return key

    def _heartbeat(self, job_id: str, owner: str, **changes: Any) -> VectorJob:
        updated = self.store.touch(job_id, owner, now=self.clock(), **changes)
        if updated is None:
            raise StaleLockError(f"job {job_id} is no longer owned by {owner}")
        return updated

    def _handle_failure(self, job: VectorJob, owner: str, exc: BaseException, retryable: bool) -> ProcessOutcome:
        attempts = job.attempts + (1 if retryable else 0)
        message = public_message(exc)

        if retryable and attempts < self.settings.MAX_ATTEMPTS:
            requeued = self.store.transition(
                job.id,
                expected=OWNED_STATES,
                new_state=JobState.QUEUED,
                expected_owner=owner,
                now=self.clock(),
                owner=None,
                attempts=attempts,
                error=message,
            )
            if requeued is None:
                logger.warning("JOB_ATTEMPT_ABANDONED", extra={"job_id": job.id, "owner": owner})
                return ProcessOutcome(job=self.store.find(job.id))
            delay = self.backoff(attempts)
            logger.warning(
                "JOB_RETRY_SCHEDULED",
                extra={"job_id": job.id, "attempts": attempts, "retry_after": delay, "error": message},
            )
            return ProcessOutcome(job=requeued, retry_after=delay)

        failed = self.store.transition(
            job.id,
            expected=OWNED_STATES,
            new_state=JobState.FAILED,
            expected_owner=owner,
            now=self.clock(),
            owner=None,
            attempts=attempts,
            error=message,
        )
        if failed is None:
            logger.warning("JOB_ATTEMPT_ABANDONED", extra={"job_id": job.id, "owner": owner})
            return ProcessOutcome(job=self.store.find(job.id))
        logger.error("JOB_FAILED", extra={"job_id": job.id, "attempts": attempts, "error": message})
        self._discard_pages(job)
        return ProcessOutcome(job=failed)

    def _discard_pages(self, job: VectorJob) -> None:
        for index in range(job.spec.layout.total_pages):
            try:
                self.storage.delete(page_artifact_key(job.id, index))
            except StorageError as e:
                logger.warning("PAGE_ARTIFACT_DISCARD_FAILED", extra={"job_id": job.id, "error": str(e)})
                return

    # Worker threads

    def _page_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.settings.PAGE_CONCURRENCY,
                    thread_name_prefix="vector-page",
                )
            return self._executor

    def start(self) -> None:
        if self._workers:
            return
        self._stop.clear()
        if self.remote is not None:
            try:
                self.remote.recover()
            except QueueUnavailableError as e:
                logger.warning("QUEUE_RECOVER_FAILED", extra={"error": str(e)})

        host = socket.gethostname()
        for i in range(self.settings.WORKER_COUNT):
            owner = f"{host}-{os.getpid()}-w{i}-{uuid.uuid4().hex[:6]}"
            t = Thread(target=self._worker_loop, args=(owner,), name=f"vector-worker-{i}", daemon=True)
            t.start()
            self._workers.append(t)
        logger.info("WORKERS_STARTED", extra={"count": len(self._workers), "queue_backend": self.health()["queue_backend"]})

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        for t in self._workers:
            t.join(timeout)
        self._workers = []
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None
        logger.info("WORKERS_STOPPED")

    def _next_unit(self):
        poll = self.settings.POLL_INTERVAL_SECONDS
        unit = self.local_queue.dequeue(timeout=0.0 if self.remote is not None else poll)
        if unit is not None:
            return self.local_queue, unit
        if self.remote is None:
            return None, None
        try:
            return self.remote, self.remote.dequeue(timeout=poll)
        except QueueUnavailableError as e:
            logger.warning("QUEUE_DEQUEUE_FAILED", extra={"error": str(e)})
            self._stop.wait(poll)
            return None, None

    def _worker_loop(self, owner: str) -> None:
        while not self._stop.is_set():
            source, unit = self._next_unit()
            if unit is None:
                continue
            outcome = self.process(unit.job_id, owner)
            self._settle(source, unit, outcome)

    def _settle(self, source, unit: WorkUnit, outcome: ProcessOutcome) -> None:
        try:
            if outcome.retry_after is not None:
                source.nack(unit, outcome.retry_after)
            else:
                source.ack(unit)
        except QueueUnavailableError as e:
            logger.warning("QUEUE_SETTLE_FAILED", extra={"job_id": unit.job_id, "error": str(e)})
            if outcome.retry_after is not None:
                self.local_queue.enqueue(unit.job_id, unit.stage, outcome.retry_after)
