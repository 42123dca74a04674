"""
Fakes shared by the test modules.
"""

import io
import subprocess
from pathlib import Path
from threading import Lock

from reportlab.pdfgen.canvas import Canvas

from vector_engine.services.capability import RendererProbe
from vector_engine.services.errors import RenderIOError

# 1x1 transparent PNG.
PNG_DATA_URI = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


def make_pdf(width=200.0, height=100.0, label="artwork"):
    """One-page PDF drawn with ReportLab, no cairo needed."""
    buf = io.BytesIO()
    c = Canvas(buf, pagesize=(width, height))
    c.rect(5, 5, width - 10, height - 10)
    c.drawString(10, height / 2.0, label)
    c.showPage()
    c.save()
    return buf.getvalue()


def version_runner(stdout="Inkscape 1.3.2 (091e20e, 2023-11-25)\n", returncode=0, calls=None):
    def _run(cmd, **kwargs):
        if calls is not None:
            calls.append(list(cmd))
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")

    return _run


def unavailable_probe():
    return RendererProbe(binary="ve-test-missing-renderer", which=lambda _name: None)


def available_probe():
    probe = RendererProbe(
        binary="inkscape",
        which=lambda name: f"/usr/bin/{name}",
        runner=version_runner(),
    )
    probe.probe()
    return probe


def export_runner(calls=None, returncode=0, width=200.0, height=100.0):
    """Stands in for `inkscape in.svg --export-type=pdf --export-filename=out.pdf`."""

    def _run(cmd, **kwargs):
        if calls is not None:
            calls.append(list(cmd))
        if returncode == 0:
            out = next(a for a in cmd if str(a).startswith("--export-filename="))
            Path(out.split("=", 1)[1]).write_bytes(make_pdf(width, height))
        return subprocess.CompletedProcess(cmd, returncode, stdout="", stderr="boom" if returncode else "")

    return _run


class FakePageRenderer:
    """PdfPageRenderer stand-in: real PDFs per page, optional injected failures."""

    def __init__(self, failures=0, error=None):
        self.failures = failures
        self.error = error or RenderIOError("temporary write failure")
        self.calls = 0
        self.render_paths = []
        self.on_render = None
        self._lock = Lock()

    def prepare_artwork(self, sanitized, render_path):
        self.render_paths.append(render_path)
        return sanitized.digest

    def render_page(self, page, artwork):
        with self._lock:
            self.calls += 1
            fail = self.failures > 0
            if fail:
                self.failures -= 1
        if fail:
            raise self.error
        if self.on_render is not None:
            self.on_render(page)
        return make_pdf(page.width, page.height, label=f"page {page.index}")
