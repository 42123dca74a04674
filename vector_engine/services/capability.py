from __future__ import annotations

import logging
import shutil
import subprocess
import time
from enum import Enum
from threading import Event, Lock
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ProbeState(str, Enum):
    UNKNOWN = "unknown"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class RendererProbe:
    """Tracks whether the optional external SVG renderer can be used.

    `probe()` runs at most one check at a time; callers arriving while a
    check is in flight wait for that check instead of starting another one.
    A negative result is re-checked once `reprobe_after` seconds have passed,
    a positive one is kept until `invalidate()`.
    """

    def __init__(
        self,
        binary: str = "inkscape",
        timeout: float = 10.0,
        reprobe_after: float = 300.0,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        which: Callable[[str], Optional[str]] = shutil.which,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.binary = binary
        self.timeout = float(timeout)
        self.reprobe_after = float(reprobe_after)
        self._runner = runner
        self._which = which
        self._clock = clock
        self._lock = Lock()
        self._state = ProbeState.UNKNOWN
        self._checked_at: Optional[float] = None
        self._inflight: Optional[Event] = None
        self.version: Optional[str] = None
        self.executable: Optional[str] = None

    def state(self) -> ProbeState:
        return self._state

    def _is_fresh(self) -> bool:
        if self._state is ProbeState.UNKNOWN:
            return False
        if self._state is ProbeState.AVAILABLE:
            return True
        return self._checked_at is not None and (self._clock() - self._checked_at) < self.reprobe_after

    def probe(self, force: bool = False) -> ProbeState:
        with self._lock:
            if not force and self._is_fresh():
                return self._state
            inflight = self._inflight
            leader = inflight is None
            if leader:
                inflight = self._inflight = Event()

        if not leader:
            inflight.wait()
            return self._state

        available = False
        try:
            available = self._check()
        except Exception:
            # The probe reports availability; it must never take its caller down.
            logger.exception("RENDERER_PROBE_ERROR", extra={"binary": self.binary})
        finally:
            with self._lock:
                self._state = ProbeState.AVAILABLE if available else ProbeState.UNAVAILABLE
                self._checked_at = self._clock()
                self._inflight = None
            inflight.set()

        logger.info(
            "RENDERER_PROBE",
            extra={"binary": self.binary, "state": self._state.value, "version": self.version},
        )
        return self._state

    def invalidate(self) -> None:
        with self._lock:
            self._state = ProbeState.UNKNOWN
            self._checked_at = None
            self.executable = None

    def _check(self) -> bool:
        path = self._which(self.binary)
        if not path:
            return False
        try:
            proc = self._runner(
                [path, "--version"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning("RENDERER_PROBE_TIMEOUT", extra={"binary": self.binary, "timeout": self.timeout})
            return False
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            logger.warning("RENDERER_PROBE_FAILED", extra={"binary": self.binary, "error": str(e)})
            return False

        if proc.returncode != 0:
            return False
        out = str(proc.stdout or "").strip()
        if not out:
            return False
        self.version = out.splitlines()[0][:120]
        self.executable = path
        return True
