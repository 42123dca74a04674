"""
Tests for the job store and its compare-and-swap transitions.
"""

import threading
from datetime import timedelta

import pytest

from vector_engine.services.errors import ArtifactNotFoundError
from vector_engine.services.store import InMemoryJobStore, JobState, VectorJob, utcnow


def _job(spec, job_id="job-1", state=JobState.QUEUED, when=None):
    when = when or utcnow()
    return VectorJob(id=job_id, spec=spec, state=state, created_at=when, updated_at=when)


class TestBlobs:
    """Tests for content-addressed blob storage."""

    def test_put_returns_content_key(self, store):
        key = store.put(b"spec")
        assert key.startswith("blob/")
        assert store.put(b"spec") == key
        assert store.get(key) == b"spec"

    def test_missing_blob(self, store):
        with pytest.raises(ArtifactNotFoundError):
            store.get("blob/unknown")


class TestRecords:
    """Tests for create/find/save."""

    def test_find_returns_copy(self, store, job_spec):
        store.create(_job(job_spec))
        found = store.find("job-1")
        found.state = JobState.DONE
        assert store.find("job-1").state is JobState.QUEUED

    def test_duplicate_create(self, store, job_spec):
        store.create(_job(job_spec))
        with pytest.raises(KeyError):
            store.create(_job(job_spec))

    def test_missing(self, store):
        assert store.find("nope") is None

    def test_list_newest_first(self, store, job_spec):
        t0 = utcnow()
        store.create(_job(job_spec, "old", when=t0))
        store.create(_job(job_spec, "new", when=t0 + timedelta(seconds=1)))
        assert [j.id for j in store.list_jobs()] == ["new", "old"]


class TestTransitions:
    """Tests for transition, claim and touch."""

    def test_claim_sets_owner(self, store, job_spec):
        store.create(_job(job_spec))
        claimed = store.claim("job-1", "w1")
        assert claimed.state is JobState.RENDERING
        assert claimed.owner == "w1"

    def test_claim_only_from_queued(self, store, job_spec):
        store.create(_job(job_spec))
        assert store.claim("job-1", "w1") is not None
        assert store.claim("job-1", "w2") is None

    def test_concurrent_claims_have_one_winner(self, store, job_spec):
        store.create(_job(job_spec))
        start = threading.Barrier(16)
        winners = []

        def claim(i):
            start.wait()
            if store.claim("job-1", f"w{i}") is not None:
                winners.append(i)

        threads = [threading.Thread(target=claim, args=(i,)) for i in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(winners) == 1
        assert store.find("job-1").owner == f"w{winners[0]}"

    def test_owner_guard(self, store, job_spec):
        store.create(_job(job_spec))
        store.claim("job-1", "w1")
        assert store.touch("job-1", "w2") is None
        assert store.touch("job-1", "w1", svg_digest="abc").svg_digest == "abc"

    def test_updated_at_guard(self, store, job_spec):
        t0 = utcnow()
        store.create(_job(job_spec, when=t0))
        store.claim("job-1", "w1", now=t0 + timedelta(seconds=5))
        assert store.transition("job-1", expected={JobState.RENDERING}, expected_updated_at=t0) is None
        assert store.transition(
            "job-1", expected={JobState.RENDERING}, expected_updated_at=t0 + timedelta(seconds=5)
        ) is not None

    def test_unknown_field(self, store, job_spec):
        store.create(_job(job_spec))
        with pytest.raises(AttributeError):
            store.transition("job-1", expected={JobState.QUEUED}, colour="red")

    def test_scan_stale(self, store, job_spec):
        t0 = utcnow()
        store.create(_job(job_spec, "a", when=t0 - timedelta(hours=2)))
        store.create(_job(job_spec, "b", when=t0))
        assert [j.id for j in store.scan_stale(t0 - timedelta(hours=1))] == ["a"]


class TestDelete:
    """Owned jobs are never deleted."""

    def test_refuses_owned(self, store, job_spec):
        store.create(_job(job_spec))
        store.claim("job-1", "w1")
        assert store.delete("job-1") is False
        assert store.find("job-1") is not None

    def test_deletes_terminal(self, store, job_spec):
        store.create(_job(job_spec, state=JobState.DONE))
        assert store.delete("job-1") is True
        assert store.find("job-1") is None
