from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from vector_engine.schemas import SeriesSpec, VectorJobSpec, WatermarkSpec
from vector_engine.services.capability import ProbeState, RendererProbe
from vector_engine.services.errors import LayoutError, LayoutOverflowError, RenderingUnavailableError
from vector_engine.services.geometry import (
    PageSize,
    canvas_to_pdf,
    get_page_size,
    grid_capacity,
    snap,
)
from vector_engine.services.svg_sanitizer import SanitizedSvg

logger = logging.getLogger(__name__)

RENDER_NATIVE = "native"
RENDER_EXTERNAL = "external"
RENDER_AUTO = "auto"


@dataclass(frozen=True)
class TicketPlacement:
    index: int
    # Page box in PDF points, bottom-left origin.
    x: float
    y: float
    width: float
    height: float
    # Region of the artwork drawn into the box, in viewBox user units.
    crop_x: float
    crop_y: float
    crop_width: float
    crop_height: float


@dataclass(frozen=True)
class SerialPlacement:
    series_id: str
    sequence_index: int
    slot_index: int
    text: str
    x: float
    y: float
    font: str
    font_size: float
    color: str


@dataclass(frozen=True)
class WatermarkPlacement:
    id: str
    type: str
    value: str
    x: float
    y: float
    opacity: float
    rotate: float
    font: str
    font_size: float
    color: str
    width: Optional[float] = None
    height: Optional[float] = None


@dataclass(frozen=True)
class PageDescription:
    index: int
    page_size: str
    width: float
    height: float
    render_path: str
    tickets: tuple[TicketPlacement, ...]
    serials: tuple[SerialPlacement, ...]
    watermarks: tuple[WatermarkPlacement, ...]


def serial_text(series: SeriesSpec, sequence_index: int) -> str:
    return f"{series.prefix}{series.start + series.step * sequence_index}"


class LayoutEngine:
    """Turns a validated job spec and its sanitized artwork into page descriptions.

    The output is plain data: every coordinate is already in PDF points and
    snapped, every serial is already numbered, so renderers never have to
    agree on layout rules.
    """

    def __init__(self, probe: RendererProbe, canvas_scale: float = 1.0, default_backend: str = RENDER_AUTO) -> None:
        if canvas_scale <= 0:
            raise ValueError("canvas_scale must be > 0")
        self.probe = probe
        self.canvas_scale = float(canvas_scale)
        self.default_backend = default_backend

    def resolve_render_path(self, spec: VectorJobSpec) -> str:
        mode = spec.render_mode or self.default_backend
        available = self.probe.state() is ProbeState.AVAILABLE
        if mode == RENDER_NATIVE:
            return RENDER_NATIVE
        if mode == RENDER_EXTERNAL:
            if not available:
                raise RenderingUnavailableError(
                    f"job requires the external renderer but {self.probe.binary!r} is {self.probe.state().value}"
                )
            return RENDER_EXTERNAL
        return RENDER_EXTERNAL if available else RENDER_NATIVE

    def build_pages(self, spec: VectorJobSpec, sanitized: SanitizedSvg) -> list[PageDescription]:
        page = get_page_size(spec.layout.page_size)
        render_path = self.resolve_render_path(spec)
        self._check_series_capacity(spec)

        tickets = self._ticket_grid(spec, sanitized, page)
        watermarks = tuple(self._watermark(w, page) for w in spec.watermarks)

        pages: list[PageDescription] = []
        for page_index in range(spec.layout.total_pages):
            serials: list[SerialPlacement] = []
            for series in spec.series:
                serials.extend(self._series_on_page(series, page_index, page))
            pages.append(
                PageDescription(
                    index=page_index,
                    page_size=page.name,
                    width=page.width,
                    height=page.height,
                    render_path=render_path,
                    tickets=tickets,
                    serials=tuple(serials),
                    watermarks=watermarks,
                )
            )

        logger.info(
            "LAYOUT_BUILT",
            extra={
                "pages": len(pages),
                "tickets_per_page": len(tickets),
                "series": len(spec.series),
                "render_path": render_path,
                "svg_digest": sanitized.digest,
            },
        )
        return pages

    def _check_series_capacity(self, spec: VectorJobSpec) -> None:
        layout = spec.layout
        capacity = layout.repeat_per_page * layout.total_pages
        for series in spec.series:
            per_page = len(series.slots)
            if per_page > layout.repeat_per_page:
                raise LayoutOverflowError(
                    f"series {series.id!r} has {per_page} slots per page but repeatPerPage is {layout.repeat_per_page}"
                )
            needed = series.count if series.count is not None else per_page * layout.total_pages
            if needed > min(capacity, per_page * layout.total_pages):
                raise LayoutOverflowError(
                    f"series {series.id!r} needs {needed} slots, only {per_page * layout.total_pages} available"
                )

    def _ticket_grid(self, spec: VectorJobSpec, sanitized: SanitizedSvg, page: PageSize) -> tuple[TicketPlacement, ...]:
        crop = spec.ticket_crop
        vb = sanitized.view_box
        if crop.page_index != 0:
            raise LayoutError(f"ticketCrop.pageIndex {crop.page_index} does not exist in an SVG source")
        if (
            crop.x < 0
            or crop.y < 0
            or snap(crop.x + crop.width) > snap(vb.width)
            or snap(crop.y + crop.height) > snap(vb.height)
        ):
            raise LayoutError(
                f"ticketCrop ({crop.x}, {crop.y}, {crop.width}x{crop.height}) exceeds the artwork viewBox "
                f"({vb.width}x{vb.height})"
            )

        ticket_w = crop.width / self.canvas_scale
        ticket_h = crop.height / self.canvas_scale
        repeat = spec.layout.repeat_per_page
        cols, rows = grid_capacity(page, ticket_w, ticket_h)
        if cols * rows < repeat:
            raise LayoutOverflowError(
                f"{repeat} tickets of {snap(ticket_w)}x{snap(ticket_h)}pt do not fit on {page.name} "
                f"(capacity {cols * rows})"
            )

        # Row-major from the top-left corner; leftover space stays at the right and bottom.
        cols = min(cols, repeat)
        placements: list[TicketPlacement] = []
        for i in range(repeat):
            row, col = divmod(i, cols)
            corner = canvas_to_pdf(
                col * crop.width,
                row * crop.height,
                crop.width,
                crop.height,
                self.canvas_scale,
                page=page,
            )
            placements.append(
                TicketPlacement(
                    index=i,
                    x=snap(corner.pdf_x),
                    y=snap(corner.pdf_y),
                    width=snap(ticket_w),
                    height=snap(ticket_h),
                    crop_x=vb.x + crop.x,
                    crop_y=vb.y + crop.y,
                    crop_width=crop.width,
                    crop_height=crop.height,
                )
            )
        return tuple(placements)

    def _series_on_page(self, series: SeriesSpec, page_index: int, page: PageSize) -> list[SerialPlacement]:
        out: list[SerialPlacement] = []
        per_page = len(series.slots)
        for slot_index, slot in enumerate(series.slots):
            n = page_index * per_page + slot_index
            if series.count is not None and n >= series.count:
                break
            anchor = canvas_to_pdf(slot.x, slot.y, 0.0, 0.0, self.canvas_scale, page=page)
            out.append(
                SerialPlacement(
                    series_id=series.id,
                    sequence_index=n,
                    slot_index=slot_index,
                    text=serial_text(series, n),
                    x=snap(anchor.pdf_x),
                    y=snap(anchor.pdf_y),
                    font=series.font,
                    font_size=snap(series.font_size / self.canvas_scale),
                    color=series.color,
                )
            )
        return out

    def _watermark(self, mark: WatermarkSpec, page: PageSize) -> WatermarkPlacement:
        anchor = canvas_to_pdf(mark.position.x, mark.position.y, 0.0, 0.0, self.canvas_scale, page=page)
        return WatermarkPlacement(
            id=mark.id,
            type=mark.type,
            value=mark.value,
            x=snap(anchor.pdf_x),
            y=snap(anchor.pdf_y),
            opacity=float(mark.opacity),
            rotate=float(mark.rotate),
            font=mark.font,
            font_size=snap(mark.font_size / self.canvas_scale),
            color=mark.color,
            width=snap(mark.width / self.canvas_scale) if mark.width else None,
            height=snap(mark.height / self.canvas_scale) if mark.height else None,
        )
