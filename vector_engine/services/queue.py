"""
Work queues feeding the job workers.

`RedisWorkQueue` is the optional shared backend: a ready list, one processing
list per instance holding units that instance has taken but not acknowledged,
and a sorted set of delayed units scored by their due time. `LocalWorkQueue`
is the in-process fallback used when Redis is not configured or cannot be
reached.
"""

from __future__ import annotations

import heapq
import itertools
import json
import logging
import socket
import time
from dataclasses import dataclass
from threading import Condition
from typing import Optional

import redis

from vector_engine.services.errors import QueueUnavailableError

logger = logging.getLogger(__name__)

STAGE_RENDER = "render"

READY_KEY = "vector:queue"
PROCESSING_KEY = "vector:processing"
DELAYED_KEY = "vector:delayed"


@dataclass(frozen=True)
class WorkUnit:
    job_id: str
    stage: str
    raw: str = ""


def _encode(job_id: str, stage: str) -> str:
    return json.dumps({"job_id": job_id, "stage": stage, "enqueued_at": time.time()}, sort_keys=True)


def _decode(raw: str) -> Optional[WorkUnit]:
    try:
        data = json.loads(raw)
        return WorkUnit(job_id=str(data["job_id"]), stage=str(data.get("stage") or STAGE_RENDER), raw=raw)
    except (ValueError, KeyError, TypeError):
        logger.warning("QUEUE_UNIT_UNREADABLE", extra={"raw": raw[:200]})
        return None


class LocalWorkQueue:
    name = "local"

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._heap: list[tuple[float, int, WorkUnit]] = []
        self._seq = itertools.count()
        self._cond = Condition()

    def enqueue(self, job_id: str, stage: str = STAGE_RENDER, delay: float = 0.0) -> None:
        unit = WorkUnit(job_id=job_id, stage=stage)
        with self._cond:
            heapq.heappush(self._heap, (self._clock() + max(0.0, delay), next(self._seq), unit))
            self._cond.notify()

    def dequeue(self, timeout: float = 1.0) -> Optional[WorkUnit]:
        deadline = self._clock() + max(0.0, timeout)
        with self._cond:
            while True:
                now = self._clock()
                if self._heap and self._heap[0][0] <= now:
                    return heapq.heappop(self._heap)[2]
                remaining = deadline - now
                if remaining <= 0:
                    return None
                if self._heap:
                    remaining = min(remaining, self._heap[0][0] - now)
                self._cond.wait(remaining)

    def ack(self, unit: WorkUnit) -> None:
        return None

    def nack(self, unit: WorkUnit, delay: float = 0.0) -> None:
        self.enqueue(unit.job_id, unit.stage, delay)

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)


class RedisWorkQueue:
    """Shared queue; each instance keeps its taken units in its own processing list.

    Instances must use distinct, restart-stable ids so that `recover` only
    returns units this instance took before it died, never units a live
    replica is still working on.
    """

    name = "redis"

    def __init__(self, client: redis.Redis, instance: Optional[str] = None) -> None:
        self._client = client
        self.instance = instance or socket.gethostname()
        self.processing_key = f"{PROCESSING_KEY}:{self.instance}"

    def enqueue(self, job_id: str, stage: str = STAGE_RENDER, delay: float = 0.0) -> None:
        raw = _encode(job_id, stage)
        try:
            if delay > 0:
                self._client.zadd(DELAYED_KEY, {raw: time.time() + delay})
            else:
                self._client.lpush(READY_KEY, raw)
        except redis.RedisError as e:
            raise QueueUnavailableError(f"enqueue failed ({type(e).__name__})") from e

    def _promote_due(self) -> None:
        for raw in self._client.zrangebyscore(DELAYED_KEY, 0, time.time(), start=0, num=100):
            # Only the caller that removes the entry may push it.
            if self._client.zrem(DELAYED_KEY, raw):
                self._client.lpush(READY_KEY, raw)

    def dequeue(self, timeout: float = 1.0) -> Optional[WorkUnit]:
        try:
            self._promote_due()
            raw = self._client.blmove(READY_KEY, self.processing_key, timeout, src="RIGHT", dest="LEFT")
            if raw is None:
                return None
            unit = _decode(raw)
            if unit is None:
                self._client.lrem(self.processing_key, 1, raw)
        except redis.RedisError as e:
            raise QueueUnavailableError(f"dequeue failed ({type(e).__name__})") from e
        return unit

    def ack(self, unit: WorkUnit) -> None:
        try:
            self._client.lrem(self.processing_key, 1, unit.raw)
        except redis.RedisError as e:
            raise QueueUnavailableError(f"ack failed ({type(e).__name__})") from e

    def nack(self, unit: WorkUnit, delay: float = 0.0) -> None:
        self.ack(unit)
        self.enqueue(unit.job_id, unit.stage, delay)

    def recover(self) -> int:
        """Move units this instance left unacknowledged before a restart back to ready."""
        moved = 0
        try:
            while self._client.lmove(self.processing_key, READY_KEY, src="RIGHT", dest="LEFT") is not None:
                moved += 1
        except redis.RedisError as e:
            raise QueueUnavailableError(f"recover failed ({type(e).__name__})") from e
        if moved:
            logger.warning("QUEUE_RECOVERED", extra={"units": moved, "instance": self.instance})
        return moved


def connect_queue(url: str, block_timeout: float = 1.0, instance: Optional[str] = None) -> Optional[RedisWorkQueue]:
    """Return a Redis-backed queue, or None when unset or unreachable."""
    if not url:
        return None
    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2.0,
            socket_timeout=block_timeout + 5.0,
        )
        client.ping()
    except redis.RedisError as e:
        logger.warning("QUEUE_BACKEND_UNAVAILABLE", extra={"error": type(e).__name__})
        return None
    queue = RedisWorkQueue(client, instance=instance)
    logger.info("QUEUE_BACKEND_CONNECTED", extra={"backend": "redis", "instance": queue.instance})
    return queue
