"""
Fan-out/fan-in composition of one job attempt.

A flow is a tiny DAG: one `PageUnit` per page, all feeding a single
`AssembleUnit`. Page units run concurrently on an executor; a counting
barrier releases assembly only once every page has arrived, and the first
page failure aborts the whole attempt.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from threading import Condition
from typing import Callable, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PageUnit:
    job_id: str
    page_index: int


@dataclass(frozen=True)
class AssembleUnit:
    job_id: str
    depends_on: tuple[PageUnit, ...]


@dataclass(frozen=True)
class RenderFlow:
    job_id: str
    pages: tuple[PageUnit, ...]
    assemble: AssembleUnit


def build_flow(job_id: str, page_count: int) -> RenderFlow:
    if page_count < 1:
        raise ValueError("a flow needs at least one page")
    pages = tuple(PageUnit(job_id=job_id, page_index=i) for i in range(page_count))
    return RenderFlow(job_id=job_id, pages=pages, assemble=AssembleUnit(job_id=job_id, depends_on=pages))


class FanInBarrier:
    """Counts page completions; `wait` returns once all arrived or one failed."""

    def __init__(self, expected: int) -> None:
        if expected < 1:
            raise ValueError("expected must be >= 1")
        self.expected = expected
        self._results: dict[int, object] = {}
        self._error: Optional[BaseException] = None
        self._cond = Condition()

    def arrive(self, index: int, result: object) -> None:
        with self._cond:
            if index in self._results:
                raise ValueError(f"page {index} arrived twice")
            self._results[index] = result
            if len(self._results) == self.expected:
                self._cond.notify_all()

    def fail(self, error: BaseException) -> None:
        with self._cond:
            if self._error is None:
                self._error = error
            self._cond.notify_all()

    @property
    def failed(self) -> bool:
        with self._cond:
            return self._error is not None

    def wait(self, timeout: Optional[float] = None) -> list:
        """Block until released, then return results in page order.

        Re-raises the first recorded failure.
        """
        with self._cond:
            released = self._cond.wait_for(
                lambda: self._error is not None or len(self._results) == self.expected,
                timeout,
            )
            if self._error is not None:
                raise self._error
            if not released:
                raise TimeoutError(f"{self.expected - len(self._results)} page(s) still pending")
            return [self._results[i] for i in range(self.expected)]


def run_flow(
    flow: RenderFlow,
    executor: Executor,
    render_page: Callable[[PageUnit], T],
    assemble: Callable[[AssembleUnit, Sequence[T]], object],
):
    barrier = FanInBarrier(len(flow.pages))

    def _run(unit: PageUnit) -> None:
        if barrier.failed:
            return
        try:
            barrier.arrive(unit.page_index, render_page(unit))
        except Exception as e:
            logger.warning(
                "PAGE_UNIT_FAILED",
                extra={"job_id": unit.job_id, "page_index": unit.page_index, "error": type(e).__name__},
            )
            barrier.fail(e)

    futures = [executor.submit(_run, unit) for unit in flow.pages]
    try:
        results = barrier.wait()
    finally:
        # Let in-flight pages finish so no render outlives its attempt.
        for f in futures:
            f.cancel()
        for f in futures:
            if not f.cancelled():
                f.exception()
    return assemble(flow.assemble, results)
