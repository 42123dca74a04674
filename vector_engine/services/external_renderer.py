from __future__ import annotations

import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Callable

from vector_engine.services.capability import ProbeState, RendererProbe
from vector_engine.services.errors import RenderIOError, RenderingUnavailableError

logger = logging.getLogger(__name__)


class ExternalRenderer:
    """SVG -> PDF through the external renderer binary (Inkscape CLI)."""

    def __init__(
        self,
        probe: RendererProbe,
        timeout: float = 30.0,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.probe = probe
        self.timeout = float(timeout)
        self._runner = runner

    def render(self, svg_bytes: bytes) -> bytes:
        if self.probe.state() is not ProbeState.AVAILABLE:
            raise RenderingUnavailableError(f"external renderer {self.probe.binary!r} is not available")
        binary = self.probe.executable or self.probe.binary

        with tempfile.TemporaryDirectory(prefix="ve_ext_") as td:
            svg_path = Path(td) / "artwork.svg"
            pdf_path = Path(td) / "artwork.pdf"
            svg_path.write_bytes(svg_bytes)
            cmd = [binary, str(svg_path), "--export-type=pdf", f"--export-filename={pdf_path}"]
            try:
                proc = self._runner(cmd, capture_output=True, text=True, timeout=self.timeout, check=False)
            except FileNotFoundError as e:
                self.probe.invalidate()
                raise RenderingUnavailableError(f"external renderer {self.probe.binary!r} disappeared") from e
            except subprocess.TimeoutExpired as e:
                raise RenderIOError(f"external renderer timed out after {self.timeout:g}s") from e
            except OSError as e:
                raise RenderIOError(f"external renderer could not start ({e.strerror or e})") from e

            if proc.returncode != 0:
                detail = str(proc.stderr or "").strip()
                if len(detail) > 240:
                    detail = detail[:240] + "..."
                logger.warning("EXTERNAL_RENDER_FAILED", extra={"returncode": proc.returncode, "stderr": detail})
                raise RenderIOError(f"external renderer exited with status {proc.returncode}")

            try:
                pdf_bytes = pdf_path.read_bytes()
            except OSError as e:
                raise RenderIOError("external renderer produced no output") from e

        if not pdf_bytes.startswith(b"%PDF-"):
            raise RenderIOError("INVALID_SVG_TO_PDF_OUTPUT: expected PDF")
        return pdf_bytes
