from __future__ import annotations

import io
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from pdfrw import PdfReader, PdfWriter
from pdfrw.buildxobj import pagexobj
from pdfrw.errors import PdfParseError
from pdfrw.toreportlab import makerl
from reportlab.lib import colors
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen.canvas import Canvas

from vector_engine.services.errors import InvalidWatermarkError, RenderIOError, RenderingUnavailableError
from vector_engine.services.external_renderer import ExternalRenderer
from vector_engine.services.font_registry import resolve_font_family
from vector_engine.services.layout import (
    RENDER_EXTERNAL,
    PageDescription,
    SerialPlacement,
    TicketPlacement,
    WatermarkPlacement,
)
from vector_engine.services.svg_sanitizer import SanitizedSvg, ViewBox, decode_data_uri, sanitize_and_parse

ARTWORK_PDF_VERSION = "art_v1"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtworkForm:
    digest: str
    pdf_path: str
    width: float
    height: float
    view_box: ViewBox


def _ensure_dir(path: Path) -> None:
    if not path.exists():
        path.mkdir(parents=True, exist_ok=True)


def _has_pdf_header(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return f.read(5) == b"%PDF-"
    except OSError:
        return False


def open_raster(payload: bytes) -> tuple[ImageReader, tuple[int, int]]:
    """Decode a PNG/JPEG/GIF watermark payload; undecodable bytes are bad input."""
    try:
        img = ImageReader(io.BytesIO(payload))
        width, height = img.getSize()
    except Exception as e:
        raise InvalidWatermarkError("image payload could not be decoded") from e
    if width <= 0 or height <= 0:
        raise InvalidWatermarkError("image payload has no pixels")
    return img, (width, height)


def _media_box_size(pdf: PdfReader) -> tuple[float, float]:
    if not pdf.pages:
        raise RenderIOError("artwork PDF has no pages")
    mb = pdf.pages[0].MediaBox
    if not mb or len(mb) != 4:
        raise RenderIOError("artwork PDF MediaBox missing")
    w = float(mb[2]) - float(mb[0])
    h = float(mb[3]) - float(mb[1])
    if w <= 0 or h <= 0:
        raise RenderIOError("artwork PDF MediaBox must be > 0")
    return w, h


def svg_to_pdf_native(svg_bytes: bytes) -> bytes:
    try:
        import cairosvg
    except (ImportError, OSError) as e:
        raise RenderingUnavailableError("native rendering requires cairosvg and libcairo") from e

    try:
        pdf_bytes = cairosvg.svg2pdf(bytestring=svg_bytes, unsafe=False)
    except Exception as e:
        raise RenderIOError(f"native SVG conversion failed ({type(e).__name__})") from e
    if not pdf_bytes or not pdf_bytes.startswith(b"%PDF-"):
        raise RenderIOError("INVALID_SVG_TO_PDF_OUTPUT: expected PDF")
    return pdf_bytes


def _fill_color(raw: str) -> colors.Color:
    value = str(raw or "#000000").strip()
    try:
        return colors.HexColor(value) if value.startswith("#") else colors.toColor(value)
    except ValueError:
        return colors.black


class PdfPageRenderer:
    """Draws page descriptions onto single-page PDFs.

    The ticket artwork is converted once per distinct SVG digest and render
    path, cached on disk, and placed on every ticket as a pdfrw form so the
    output stays vector.
    """

    def __init__(self, external: Optional[ExternalRenderer] = None, cache_dir: str = "tmp/cache") -> None:
        self.external = external
        self.cache_dir = Path(cache_dir) / "artwork"

    def prepare_artwork(self, sanitized: SanitizedSvg, render_path: str) -> ArtworkForm:
        _ensure_dir(self.cache_dir)
        cached = self.cache_dir / f"{sanitized.digest}_{render_path}_{ARTWORK_PDF_VERSION}.pdf"
        if cached.exists() and not _has_pdf_header(cached):
            cached.unlink(missing_ok=True)

        if not cached.exists():
            pdf_bytes = self._convert(sanitized, render_path)
            tmp = cached.with_name(f"{cached.name}.{uuid.uuid4().hex}.tmp")
            tmp.write_bytes(pdf_bytes)
            os.replace(tmp, cached)
            logger.info("ARTWORK_CONVERTED", extra={"digest": sanitized.digest, "render_path": render_path})

        try:
            w, h = _media_box_size(PdfReader(str(cached)))
        except PdfParseError as e:
            cached.unlink(missing_ok=True)
            raise RenderIOError("artwork PDF could not be parsed") from e
        return ArtworkForm(
            digest=sanitized.digest,
            pdf_path=str(cached),
            width=w,
            height=h,
            view_box=sanitized.view_box,
        )

    def _convert(self, sanitized: SanitizedSvg, render_path: str) -> bytes:
        svg_bytes = sanitized.canonical.encode("utf-8")
        if render_path == RENDER_EXTERNAL:
            if self.external is None:
                raise RenderingUnavailableError("no external renderer configured")
            return self.external.render(svg_bytes)
        return svg_to_pdf_native(svg_bytes)

    def render_page(self, page: PageDescription, artwork: ArtworkForm) -> bytes:
        buf = io.BytesIO()
        canvas = Canvas(buf, pagesize=(page.width, page.height))
        form_name = makerl(canvas, pagexobj(PdfReader(artwork.pdf_path).pages[0]))

        for ticket in page.tickets:
            self._draw_ticket(canvas, form_name, ticket, artwork)
        for serial in page.serials:
            self._draw_serial(canvas, serial)
        for mark in page.watermarks:
            self._draw_watermark(canvas, mark)

        canvas.showPage()
        canvas.save()
        return buf.getvalue()

    def _draw_ticket(self, canvas: Canvas, form_name: str, ticket: TicketPlacement, artwork: ArtworkForm) -> None:
        vb = artwork.view_box
        # viewBox units -> artwork PDF points
        fx = artwork.width / vb.width
        fy = artwork.height / vb.height
        crop_x = (ticket.crop_x - vb.x) * fx
        crop_top = (ticket.crop_y - vb.y) * fy
        crop_w = ticket.crop_width * fx
        crop_h = ticket.crop_height * fy
        crop_bottom = artwork.height - crop_top - crop_h

        canvas.saveState()
        clip = canvas.beginPath()
        clip.rect(ticket.x, ticket.y, ticket.width, ticket.height)
        canvas.clipPath(clip, stroke=0, fill=0)
        canvas.translate(ticket.x, ticket.y)
        canvas.scale(ticket.width / crop_w, ticket.height / crop_h)
        canvas.translate(-crop_x, -crop_bottom)
        canvas.doForm(form_name)
        canvas.restoreState()

    def _draw_serial(self, canvas: Canvas, serial: SerialPlacement) -> None:
        font = resolve_font_family(serial.font)
        canvas.saveState()
        canvas.setFillColor(_fill_color(serial.color))
        canvas.setFont(font.name, serial.font_size)
        # Slot anchors are the text baseline start.
        canvas.drawString(serial.x, serial.y, serial.text)
        canvas.restoreState()

    def _draw_watermark(self, canvas: Canvas, mark: WatermarkPlacement) -> None:
        canvas.saveState()
        canvas.translate(mark.x, mark.y)
        if mark.rotate:
            # Editor rotation is clockwise in a Y-down space.
            canvas.rotate(-mark.rotate)
        canvas.setFillAlpha(mark.opacity)
        canvas.setStrokeAlpha(mark.opacity)

        if mark.type == "text":
            font = resolve_font_family(mark.font)
            canvas.setFillColor(_fill_color(mark.color))
            canvas.setFont(font.name, mark.font_size)
            canvas.drawCentredString(0.0, 0.0, mark.value)
        else:
            self._draw_image_watermark(canvas, mark)
        canvas.restoreState()

    def _draw_image_watermark(self, canvas: Canvas, mark: WatermarkPlacement) -> None:
        payload, mime = decode_data_uri(mark.value)
        if mime == "image/svg+xml":
            sanitized = sanitize_and_parse(payload)
            pdf = PdfReader(io.BytesIO(svg_to_pdf_native(sanitized.canonical.encode("utf-8"))))
            src_w, src_h = _media_box_size(pdf)
            w = mark.width or src_w
            h = mark.height or src_h
            canvas.translate(-w / 2.0, -h / 2.0)
            canvas.scale(w / src_w, h / src_h)
            canvas.doForm(makerl(canvas, pagexobj(pdf.pages[0])))
            return

        img, (src_w, src_h) = open_raster(payload)
        w = mark.width or float(src_w)
        h = mark.height or float(src_h)
        try:
            canvas.drawImage(img, -w / 2.0, -h / 2.0, width=w, height=h, mask="auto", preserveAspectRatio=True)
        except Exception as e:
            # Truncated pixel data only shows up once the image is embedded.
            raise InvalidWatermarkError("image payload could not be decoded") from e


def assemble_pdf(pages: Sequence[bytes]) -> bytes:
    """Concatenate single-page PDFs, in the given order, into one document."""
    if not pages:
        raise RenderIOError("nothing to assemble")
    writer = PdfWriter()
    try:
        for data in pages:
            writer.addpages(PdfReader(io.BytesIO(data)).pages)
    except PdfParseError as e:
        raise RenderIOError("page PDF could not be parsed during assembly") from e
    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()
