"""
Job records and the document store they live in.

The store is the only shared mutable state of the pipeline. Every state
change goes through `transition`, a compare-and-swap on the current state
(and optionally the owning worker and the last update time), so two workers
can never both hold the same job.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Collection, Dict, Optional

from vector_engine.schemas import JobStatusResponse, VectorJobSpec
from vector_engine.services.errors import ArtifactNotFoundError
from vector_engine.utils.hash import blob_key


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    QUEUED = "queued"
    RENDERING = "rendering"
    ASSEMBLING = "assembling"
    DONE = "done"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATES = frozenset({JobState.DONE, JobState.FAILED, JobState.EXPIRED})
OWNED_STATES = frozenset({JobState.RENDERING, JobState.ASSEMBLING})


@dataclass
class VectorJob:
    id: str
    spec: VectorJobSpec
    state: JobState
    created_at: datetime
    updated_at: datetime
    spec_key: Optional[str] = None
    attempts: int = 0
    owner: Optional[str] = None
    result_artifact_key: Optional[str] = None
    page_artifact_keys: list[str] = field(default_factory=list)
    error: Optional[str] = None
    cancel_requested: bool = False
    svg_digest: Optional[str] = None

    @property
    def artifact_keys(self) -> list[str]:
        keys = list(self.page_artifact_keys)
        if self.result_artifact_key:
            keys.append(self.result_artifact_key)
        return keys

    def to_status(self) -> JobStatusResponse:
        return JobStatusResponse(
            job_id=self.id,
            state=self.state.value,
            attempts=self.attempts,
            created_at=self.created_at,
            updated_at=self.updated_at,
            page_count=len(self.page_artifact_keys),
            result_artifact_key=self.result_artifact_key,
            error=self.error,
            cancel_requested=self.cancel_requested,
        )


class InMemoryJobStore:
    """Document store for job records and small blobs (submitted specs).

    Callers always receive copies; mutating a returned VectorJob has no
    effect until it is written back through `save` or `transition`.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, VectorJob] = {}
        self._blobs: Dict[str, bytes] = {}
        self._lock = Lock()

    def put(self, data: bytes) -> str:
        key = blob_key(data)
        with self._lock:
            self._blobs[key] = bytes(data)
        return key

    def get(self, key: str) -> bytes:
        with self._lock:
            data = self._blobs.get(key)
        if data is None:
            raise ArtifactNotFoundError(f"blob {key!r} not found")
        return data

    def create(self, job: VectorJob) -> VectorJob:
        with self._lock:
            if job.id in self._jobs:
                raise KeyError(f"job {job.id} already exists")
            self._jobs[job.id] = copy.deepcopy(job)
        return copy.deepcopy(job)

    def find(self, job_id: str) -> Optional[VectorJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def save(self, job: VectorJob) -> VectorJob:
        with self._lock:
            if job.id not in self._jobs:
                raise KeyError(f"job {job.id} not found")
            self._jobs[job.id] = copy.deepcopy(job)
        return copy.deepcopy(job)

    def transition(
        self,
        job_id: str,
        *,
        expected: Collection[JobState],
        new_state: Optional[JobState] = None,
        expected_owner: Any = ...,
        expected_updated_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
        **changes: Any,
    ) -> Optional[VectorJob]:
        """Atomically move a job out of one of the `expected` states.

        `expected_owner`, when given, must match the current owner;
        `expected_updated_at`, when given, must match the record's last
        update. Returns the updated copy, or None when the job is missing or
        any guard failed.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state not in expected:
                return None
            if expected_owner is not ... and job.owner != expected_owner:
                return None
            if expected_updated_at is not None and job.updated_at != expected_updated_at:
                return None
            if new_state is not None:
                job.state = new_state
            for key, value in changes.items():
                if not hasattr(job, key):
                    raise AttributeError(f"VectorJob has no field {key!r}")
                setattr(job, key, value)
            job.updated_at = now or utcnow()
            return copy.deepcopy(job)

    def claim(self, job_id: str, owner: str, now: Optional[datetime] = None) -> Optional[VectorJob]:
        return self.transition(
            job_id,
            expected={JobState.QUEUED},
            new_state=JobState.RENDERING,
            now=now,
            owner=owner,
        )

    def touch(self, job_id: str, owner: str, now: Optional[datetime] = None, **changes: Any) -> Optional[VectorJob]:
        """Heartbeat: refresh updated_at, and apply `changes`, only while `owner` holds the job."""
        return self.transition(job_id, expected=OWNED_STATES, expected_owner=owner, now=now, **changes)

    def scan_stale(self, threshold: datetime) -> list[VectorJob]:
        with self._lock:
            stale = [copy.deepcopy(j) for j in self._jobs.values() if j.updated_at < threshold]
        stale.sort(key=lambda j: j.updated_at)
        return stale

    def list_jobs(self) -> list[VectorJob]:
        with self._lock:
            jobs = [copy.deepcopy(j) for j in self._jobs.values()]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    def delete(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state in OWNED_STATES:
                return False
            del self._jobs[job_id]
            return True
