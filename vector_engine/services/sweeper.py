from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from threading import Event, Thread
from typing import Callable, Optional

from vector_engine.config import Settings
from vector_engine.services.errors import StaleLockError, StorageError, public_message
from vector_engine.services.storage import ObjectStorage
from vector_engine.services.store import OWNED_STATES, InMemoryJobStore, JobState, VectorJob, utcnow

logger = logging.getLogger(__name__)

_EXPIRABLE = frozenset({JobState.QUEUED, JobState.DONE, JobState.FAILED})


@dataclass(frozen=True)
class SweepReport:
    requeued: int = 0
    failed: int = 0
    expired: int = 0
    purged: int = 0


class CleanupSweeper:
    """Periodic reaper for abandoned and old jobs.

    Jobs held by a worker that stopped heartbeating are handed back to the
    queue (or failed once out of attempts), never expired. Old queued and
    finished jobs become `expired` and lose their artifacts; expired records
    are dropped one retention window later. Every change is a CAS guarded on
    the `updated_at` the sweeper saw, so a job that moved in the meantime is
    left alone.
    """

    def __init__(
        self,
        store: InMemoryJobStore,
        storage: ObjectStorage,
        settings: Settings,
        clock: Callable = utcnow,
        on_requeue: Optional[Callable[[str], object]] = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.settings = settings
        self.clock = clock
        self.on_requeue = on_requeue
        self._stop = Event()
        self._thread: Optional[Thread] = None

    def tick(self) -> SweepReport:
        now = self.clock()
        stale_cut = now - timedelta(seconds=self.settings.STALE_LOCK_SECONDS)
        retention_cut = now - timedelta(seconds=self.settings.RETENTION_SECONDS)

        requeued = failed = expired = purged = 0
        for job in self.store.scan_stale(max(stale_cut, retention_cut)):
            if job.state in OWNED_STATES:
                if job.updated_at < stale_cut:
                    outcome = self._recover(job, now)
                    if outcome is JobState.QUEUED:
                        requeued += 1
                    elif outcome is JobState.FAILED:
                        failed += 1
            elif job.updated_at >= retention_cut:
                continue
            elif job.state is JobState.EXPIRED:
                if self.store.delete(job.id):
                    purged += 1
            elif job.state in _EXPIRABLE:
                if self._expire(job, now):
                    expired += 1

        report = SweepReport(requeued=requeued, failed=failed, expired=expired, purged=purged)
        if requeued or failed or expired or purged:
            logger.info(
                "SWEEP_DONE",
                extra={"requeued": requeued, "failed": failed, "expired": expired, "purged": purged},
            )
        return report

    def _recover(self, job: VectorJob, now) -> Optional[JobState]:
        attempts = job.attempts + 1
        error = public_message(StaleLockError(f"worker {job.owner} stopped heartbeating"))
        target = JobState.QUEUED if attempts < self.settings.MAX_ATTEMPTS else JobState.FAILED
        updated = self.store.transition(
            job.id,
            expected={job.state},
            new_state=target,
            expected_owner=job.owner,
            expected_updated_at=job.updated_at,
            now=now,
            owner=None,
            attempts=attempts,
            error=error,
        )
        if updated is None:
            return None

        logger.warning(
            "JOB_STALE_RECOVERED",
            extra={"job_id": job.id, "previous_owner": job.owner, "state": target.value, "attempts": attempts},
        )
        if target is JobState.QUEUED and self.on_requeue is not None:
            self.on_requeue(job.id)
        return target

    def _expire(self, job: VectorJob, now) -> bool:
        updated = self.store.transition(
            job.id,
            expected={job.state},
            new_state=JobState.EXPIRED,
            expected_updated_at=job.updated_at,
            now=now,
        )
        if updated is None:
            return False
        for key in job.artifact_keys:
            try:
                self.storage.delete(key)
            except StorageError as e:
                logger.warning("ARTIFACT_RELEASE_FAILED", extra={"job_id": job.id, "key": key, "error": str(e)})
        logger.info("JOB_EXPIRED", extra={"job_id": job.id, "previous_state": job.state.value})
        return True

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="vector-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.settings.CLEANUP_INTERVAL_SECONDS):
            try:
                self.tick()
            except Exception:
                logger.exception("SWEEP_FAILED")
