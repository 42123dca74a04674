from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_snake

from vector_engine.schemas import (
    LayoutSpec,
    SeriesSpec,
    TicketCrop,
    VectorJobSpec,
    WatermarkSpec,
)
from vector_engine.services.errors import InvalidWatermarkError, MalformedSvgError, UnsafeContentError
from vector_engine.services.geometry import (
    PageSize,
    canvas_to_pdf,
    get_page_size,
    grid_capacity,
    snap,
    within_page,
)
from vector_engine.services.pdf_writer import open_raster
from vector_engine.services.svg_sanitizer import (
    WATERMARK_DATA_MIMES,
    data_uri_mime,
    decode_data_uri,
    sanitize_and_parse,
)

M = TypeVar("M", bound=BaseModel)

_TOP_LEVEL_FIELDS = ("sourceDocumentKey", "ticketCrop", "layout", "series", "watermarks", "renderMode")
_RENDER_MODES = ("native", "external", "auto")


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: tuple[str, ...]
    spec: Optional[VectorJobSpec] = None


def _field(raw: Mapping[str, Any], name: str) -> Any:
    if name in raw:
        return raw[name]
    return raw.get(to_snake(name))


def _format_errors(section: str, exc: PydanticValidationError) -> list[str]:
    out: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        path = f"{section}.{loc}" if loc else section
        out.append(f"{path}: {err.get('msg')}")
    return out


def _parse_section(model: type[M], value: Any, section: str, errors: list[str]) -> Optional[M]:
    if value is None:
        errors.append(f"{section}: field required")
        return None
    try:
        return model.model_validate(value)
    except PydanticValidationError as e:
        errors.extend(_format_errors(section, e))
        return None


def _parse_list(model: type[M], value: Any, section: str, errors: list[str], required: bool) -> list[Optional[M]]:
    if value is None:
        if required:
            errors.append(f"{section}: field required")
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        errors.append(f"{section}: expected a list")
        return []
    return [_parse_section(model, item, f"{section}[{i}]", errors) for i, item in enumerate(value)]


def _check_point(x: float, y: float, page: PageSize, scale: float, section: str, errors: list[str]) -> None:
    p = canvas_to_pdf(x, y, 0.0, 0.0, scale, page=page)
    if not within_page(p.pdf_x, p.pdf_y, page):
        errors.append(
            f"{section}: ({x}, {y}) maps to ({snap(p.pdf_x)}, {snap(p.pdf_y)})pt outside the {page.name} page"
        )


def _check_image_watermark(mark: WatermarkSpec, section: str, errors: list[str]) -> None:
    mime = data_uri_mime(mark.value)
    if mime not in WATERMARK_DATA_MIMES:
        errors.append(f"{section}.value: image watermarks must be a data URI of {sorted(WATERMARK_DATA_MIMES)}")
        return
    try:
        payload, _mime = decode_data_uri(mark.value)
        if mime == "image/svg+xml":
            sanitize_and_parse(payload)
        else:
            open_raster(payload)
    except (UnsafeContentError, MalformedSvgError, InvalidWatermarkError) as e:
        errors.append(f"{section}.value: {e}")


def validate_vector_metadata(
    raw: Any,
    *,
    canvas_scale: float = 1.0,
    default_page_size: str = "A4",
) -> ValidationResult:
    """Check a job payload structurally and against the page geometry.

    Never raises for bad input: every violation found is collected in
    `errors` so callers can report them all at once. `spec` is set only when
    the payload is valid.
    """
    errors: list[str] = []
    if not isinstance(raw, Mapping):
        return ValidationResult(is_valid=False, errors=("spec: expected an object",))

    allowed = set(_TOP_LEVEL_FIELDS) | {to_snake(f) for f in _TOP_LEVEL_FIELDS}
    for key in raw:
        if key not in allowed:
            errors.append(f"{key}: unknown field")

    source_key = _field(raw, "sourceDocumentKey")
    if not isinstance(source_key, str) or not source_key.strip():
        errors.append("sourceDocumentKey: must be a non-empty string")

    render_mode = _field(raw, "renderMode")
    if render_mode is not None and render_mode not in _RENDER_MODES:
        errors.append(f"renderMode: must be one of {list(_RENDER_MODES)}")

    crop = _parse_section(TicketCrop, _field(raw, "ticketCrop"), "ticketCrop", errors)

    layout_raw = _field(raw, "layout")
    if isinstance(layout_raw, Mapping) and "pageSize" not in layout_raw and "page_size" not in layout_raw:
        layout_raw = {**layout_raw, "pageSize": default_page_size}
    layout = _parse_section(LayoutSpec, layout_raw, "layout", errors)

    series = _parse_list(SeriesSpec, _field(raw, "series"), "series", errors, required=True)
    watermarks = _parse_list(WatermarkSpec, _field(raw, "watermarks"), "watermarks", errors, required=False)

    seen_series: set[str] = set()
    for i, s in enumerate(series):
        if s is None:
            continue
        if s.id in seen_series:
            errors.append(f"series[{i}].id: duplicate id {s.id!r}")
        seen_series.add(s.id)

    seen_marks: set[str] = set()
    for i, w in enumerate(watermarks):
        if w is None:
            continue
        if w.id in seen_marks:
            errors.append(f"watermarks[{i}].id: duplicate id {w.id!r}")
        seen_marks.add(w.id)
        if w.type == "image":
            _check_image_watermark(w, f"watermarks[{i}]", errors)

    if layout is not None:
        page = get_page_size(layout.page_size)
        if crop is not None:
            cols, rows = grid_capacity(page, crop.width / canvas_scale, crop.height / canvas_scale)
            if cols * rows < layout.repeat_per_page:
                errors.append(
                    f"layout.repeatPerPage: {layout.repeat_per_page} tickets of "
                    f"{snap(crop.width / canvas_scale)}x{snap(crop.height / canvas_scale)}pt do not fit on {page.name} "
                    f"(capacity {cols * rows})"
                )

        capacity = layout.repeat_per_page * layout.total_pages
        for i, s in enumerate(series):
            if s is None:
                continue
            for j, slot in enumerate(s.slots):
                _check_point(slot.x, slot.y, page, canvas_scale, f"series[{i}].slots[{j}]", errors)
            if len(s.slots) > layout.repeat_per_page:
                errors.append(
                    f"series[{i}].slots: {len(s.slots)} slots per page exceed repeatPerPage={layout.repeat_per_page}"
                )
            needed = s.count if s.count is not None else len(s.slots) * layout.total_pages
            available = min(len(s.slots) * layout.total_pages, capacity)
            if needed > available:
                errors.append(f"series[{i}].count: {needed} serials need more than the {available} slots available")

        for i, w in enumerate(watermarks):
            if w is not None:
                _check_point(w.position.x, w.position.y, page, canvas_scale, f"watermarks[{i}].position", errors)

    if errors:
        return ValidationResult(is_valid=False, errors=tuple(errors))

    normalized = dict(raw)
    normalized["layout"] = layout_raw
    try:
        spec = VectorJobSpec.model_validate(normalized)
    except PydanticValidationError as e:
        return ValidationResult(is_valid=False, errors=tuple(_format_errors("spec", e)))
    return ValidationResult(is_valid=True, errors=(), spec=spec)
