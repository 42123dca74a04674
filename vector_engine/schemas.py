from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from vector_engine.services.geometry import PAGE_SIZES

MAX_REPEAT_PER_PAGE = 200
MAX_TOTAL_PAGES = 5000
MAX_FONT_SIZE = 500.0

RenderMode = Literal["native", "external", "auto"]


class _SpecModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
        allow_inf_nan=False,
    )


class CanvasPointIn(_SpecModel):
    x: float
    y: float


class TicketCrop(_SpecModel):
    page_index: int = Field(ge=0)
    x: float
    y: float
    width: float = Field(gt=0)
    height: float = Field(gt=0)


class LayoutSpec(_SpecModel):
    page_size: str = "A4"
    repeat_per_page: int = Field(ge=1, le=MAX_REPEAT_PER_PAGE)
    total_pages: int = Field(ge=1, le=MAX_TOTAL_PAGES)

    @field_validator("page_size")
    @classmethod
    def _known_page_size(cls, v: str) -> str:
        key = str(v or "").strip().upper()
        if key not in PAGE_SIZES:
            raise ValueError(f"unknown page size {v!r}, expected one of {sorted(PAGE_SIZES)}")
        return key


class SeriesSpec(_SpecModel):
    id: str = Field(min_length=1)
    # NOTE: Spaces inside a prefix are valid and must be preserved
    prefix: str = ""
    start: int
    step: int = 1
    font: str = "Helvetica"
    font_size: float = Field(gt=0, le=MAX_FONT_SIZE)
    color: str = "#000000"
    count: int | None = Field(default=None, ge=1)
    slots: tuple[CanvasPointIn, ...] = Field(min_length=1)

    @field_validator("step")
    @classmethod
    def _non_zero_step(cls, v: int) -> int:
        if v == 0:
            raise ValueError("step must be non-zero")
        return v


class WatermarkSpec(_SpecModel):
    id: str = Field(min_length=1)
    type: Literal["text", "image"]
    value: str = Field(min_length=1)
    opacity: float = Field(default=1.0, ge=0.0, le=1.0)
    rotate: float = 0.0
    position: CanvasPointIn
    font: str = "Helvetica"
    font_size: float = Field(default=48.0, gt=0, le=MAX_FONT_SIZE)
    color: str = "#808080"
    width: float | None = Field(default=None, gt=0)
    height: float | None = Field(default=None, gt=0)


class VectorJobSpec(_SpecModel):
    source_document_key: str = Field(min_length=1)
    ticket_crop: TicketCrop
    layout: LayoutSpec
    series: tuple[SeriesSpec, ...] = ()
    watermarks: tuple[WatermarkSpec, ...] = ()
    render_mode: RenderMode | None = None


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class SubmitResponse(_ApiModel):
    job_id: str
    state: str
    degraded: bool = False


class ValidationResponse(_ApiModel):
    is_valid: bool
    errors: list[str]


class JobStatusResponse(_ApiModel):
    job_id: str
    state: str
    attempts: int
    created_at: datetime
    updated_at: datetime
    page_count: int = 0
    result_artifact_key: str | None = None
    error: str | None = None
    cancel_requested: bool = False


class HealthResponse(_ApiModel):
    ok: bool
    version: str
    queue_backend: str
    workers_enabled: bool
    renderer: str
