from __future__ import annotations

import math
from dataclasses import dataclass

from vector_engine.utils.units import mm_to_pt

# 0.001pt is ~0.35 micrometres, well below any printer's resolution.
SNAP_DECIMALS = 3
SNAP_RESOLUTION = 10.0 ** -SNAP_DECIMALS


@dataclass(frozen=True)
class PageSize:
    name: str
    width: float
    height: float


@dataclass(frozen=True)
class PdfPoint:
    pdf_x: float
    pdf_y: float


@dataclass(frozen=True)
class CanvasPoint:
    x: float
    y: float


def _page_mm(name: str, w_mm: float, h_mm: float) -> PageSize:
    return PageSize(name=name, width=mm_to_pt(w_mm), height=mm_to_pt(h_mm))


PAGE_SIZES: dict[str, PageSize] = {
    p.name: p
    for p in (
        _page_mm("A3", 297.0, 420.0),
        _page_mm("A4", 210.0, 297.0),
        _page_mm("A5", 148.0, 210.0),
        _page_mm("LETTER", 215.9, 279.4),
        _page_mm("LEGAL", 215.9, 355.6),
    )
}

A4 = PAGE_SIZES["A4"]


def get_page_size(name: str) -> PageSize:
    key = str(name or "").strip().upper()
    if key not in PAGE_SIZES:
        raise KeyError(f"Unknown page size: {name!r}")
    return PAGE_SIZES[key]


def canvas_to_pdf(
    x: float,
    y: float,
    width: float = 0.0,
    height: float = 0.0,
    scale: float = 1.0,
    *,
    page: PageSize = A4,
) -> PdfPoint:
    """Map a canvas box (top-left origin, Y down) to its PDF bottom-left corner.

    Exact: no snapping is applied, callers snap explicitly.
    """
    if scale <= 0:
        raise ValueError("scale must be > 0")
    return PdfPoint(
        pdf_x=float(x) / scale,
        pdf_y=page.height - (float(y) + float(height)) / scale,
    )


def pdf_to_canvas(
    pdf_x: float,
    pdf_y: float,
    width: float = 0.0,
    height: float = 0.0,
    scale: float = 1.0,
    *,
    page: PageSize = A4,
) -> CanvasPoint:
    if scale <= 0:
        raise ValueError("scale must be > 0")
    return CanvasPoint(
        x=float(pdf_x) * scale,
        y=(page.height - float(pdf_y)) * scale - float(height),
    )


def snap(value: float) -> float:
    # "+ 0.0" folds -0.0 into 0.0 so snapped values compare and serialize stably.
    return round(float(value), SNAP_DECIMALS) + 0.0


def within_page(pdf_x: float, pdf_y: float, page: PageSize) -> bool:
    return 0.0 <= snap(pdf_x) <= snap(page.width) and 0.0 <= snap(pdf_y) <= snap(page.height)


def grid_capacity(page: PageSize, cell_w: float, cell_h: float) -> tuple[int, int]:
    """Columns and rows of cell_w x cell_h boxes that fit on the page without clipping."""
    if snap(cell_w) <= 0 or snap(cell_h) <= 0:
        return 0, 0
    cols = math.floor(snap(page.width) / snap(cell_w) + 1e-9)
    rows = math.floor(snap(page.height) / snap(cell_h) + 1e-9)
    return int(cols), int(rows)
