"""
Tests for page layout: ticket grid, serial numbering and watermark projection.
"""

import copy
import typing

import pytest

from vector_engine.schemas import VectorJobSpec, WatermarkSpec
from vector_engine.services.errors import LayoutError, LayoutOverflowError, RenderingUnavailableError
from vector_engine.services.geometry import A4, snap
from vector_engine.services.layout import RENDER_EXTERNAL, RENDER_NATIVE, LayoutEngine, WatermarkPlacement, serial_text
from vector_engine.services.svg_sanitizer import sanitize_and_parse


@pytest.fixture
def sanitized(sample_svg):
    return sanitize_and_parse(sample_svg)


def _spec(payload, **layout):
    data = copy.deepcopy(payload)
    data["layout"].update(layout)
    return VectorJobSpec.model_validate(data)


def _serials(pages):
    return [s.text for p in pages for s in p.serials]


class TestSerialNumbering:
    """Serial values follow start + step * n in slot-then-page order."""

    def test_a1_to_a8(self, probe, job_spec, sanitized):
        pages = LayoutEngine(probe).build_pages(job_spec, sanitized)
        assert len(pages) == 2
        assert _serials(pages) == [f"A{i}" for i in range(1, 9)]
        assert [s.slot_index for s in pages[1].serials] == [0, 1, 2, 3]
        assert [s.sequence_index for s in pages[1].serials] == [4, 5, 6, 7]

    def test_negative_step(self, probe, sample_payload, sanitized):
        data = copy.deepcopy(sample_payload)
        data["series"][0].update({"prefix": "No. ", "start": 100, "step": -10})
        pages = LayoutEngine(probe).build_pages(VectorJobSpec.model_validate(data), sanitized)
        assert _serials(pages) == ["No. 100", "No. 90", "No. 80", "No. 70", "No. 60", "No. 50", "No. 40", "No. 30"]

    def test_count_leaves_remaining_slots_blank(self, probe, sample_payload, sanitized):
        data = copy.deepcopy(sample_payload)
        data["series"][0]["count"] = 5
        pages = LayoutEngine(probe).build_pages(VectorJobSpec.model_validate(data), sanitized)
        assert [len(p.serials) for p in pages] == [4, 1]
        assert _serials(pages)[-1] == "A5"

    def test_series_are_independent(self, probe, sample_payload, sanitized):
        data = copy.deepcopy(sample_payload)
        second = copy.deepcopy(data["series"][0])
        second.update({"id": "stub", "prefix": "B", "start": 500, "slots": second["slots"][:2]})
        data["series"].append(second)
        pages = LayoutEngine(probe).build_pages(VectorJobSpec.model_validate(data), sanitized)
        stub = [s.text for p in pages for s in p.serials if s.series_id == "stub"]
        assert stub == ["B500", "B501", "B502", "B503"]

    def test_no_duplicate_serials(self, probe, sample_payload, sanitized):
        spec = _spec(sample_payload, totalPages=50)
        texts = _serials(LayoutEngine(probe).build_pages(spec, sanitized))
        assert len(texts) == len(set(texts)) == 200

    def test_serial_text(self, job_spec):
        assert serial_text(job_spec.series[0], 0) == "A1"
        assert serial_text(job_spec.series[0], 41) == "A42"

    def test_slot_anchor_projection(self, probe, job_spec, sanitized):
        first = LayoutEngine(probe).build_pages(job_spec, sanitized)[0].serials[0]
        assert (first.x, first.y) == (150.0, snap(A4.height - 80))


class TestTicketGrid:
    """Tickets are tiled row-major from the top-left corner."""

    def test_row_major_from_top_left(self, probe, job_spec, sanitized):
        tickets = LayoutEngine(probe).build_pages(job_spec, sanitized)[0].tickets
        top = snap(A4.height - 100)
        assert [(t.x, t.y) for t in tickets] == [
            (0.0, top),
            (200.0, top),
            (0.0, snap(top - 100)),
            (200.0, snap(top - 100)),
        ]
        assert all((t.width, t.height) == (200.0, 100.0) for t in tickets)

    def test_every_page_gets_the_same_grid(self, probe, job_spec, sanitized):
        pages = LayoutEngine(probe).build_pages(job_spec, sanitized)
        assert pages[0].tickets == pages[1].tickets

    def test_canvas_scale_shrinks_tickets(self, probe, job_spec, sanitized):
        tickets = LayoutEngine(probe, canvas_scale=2.0).build_pages(job_spec, sanitized)[0].tickets
        assert (tickets[1].x, tickets[1].width, tickets[1].height) == (100.0, 100.0, 50.0)

    def test_crop_offsets_by_view_box_origin(self, probe, job_spec):
        shifted = sanitize_and_parse(
            '<svg xmlns="http://www.w3.org/2000/svg" viewBox="-50 -20 300 200"><path d="M0 0 L1 1"/></svg>'
        )
        t = LayoutEngine(probe).build_pages(job_spec, shifted)[0].tickets[0]
        assert (t.crop_x, t.crop_y, t.crop_width, t.crop_height) == (-50.0, -20.0, 200.0, 100.0)

    def test_crop_outside_artwork(self, probe, sample_payload, sanitized):
        data = copy.deepcopy(sample_payload)
        data["ticketCrop"].update({"x": 50})
        with pytest.raises(LayoutError):
            LayoutEngine(probe).build_pages(VectorJobSpec.model_validate(data), sanitized)

    def test_only_one_source_page(self, probe, sample_payload, sanitized):
        data = copy.deepcopy(sample_payload)
        data["ticketCrop"]["pageIndex"] = 1
        with pytest.raises(LayoutError):
            LayoutEngine(probe).build_pages(VectorJobSpec.model_validate(data), sanitized)


class TestOverflow:
    """Under-provisioned layouts fail instead of wrapping or truncating."""

    def test_more_tickets_than_fit(self, probe, sample_payload, sanitized):
        with pytest.raises(LayoutOverflowError):
            LayoutEngine(probe).build_pages(_spec(sample_payload, repeatPerPage=17), sanitized)

    def test_more_slots_than_tickets(self, probe, sample_payload, sanitized):
        with pytest.raises(LayoutOverflowError):
            LayoutEngine(probe).build_pages(_spec(sample_payload, repeatPerPage=3), sanitized)

    def test_count_beyond_pages(self, probe, sample_payload, sanitized):
        data = copy.deepcopy(sample_payload)
        data["series"][0]["count"] = 9
        with pytest.raises(LayoutOverflowError):
            LayoutEngine(probe).build_pages(VectorJobSpec.model_validate(data), sanitized)


class TestWatermarks:
    """Watermarks are projected once per page; opacity and rotation pass through."""

    def test_projected_once_per_page(self, probe, job_spec, sanitized):
        pages = LayoutEngine(probe).build_pages(job_spec, sanitized)
        marks = [p.watermarks for p in pages]
        assert marks[0] == marks[1]
        assert len(marks[0]) == 1
        mark = marks[0][0]
        assert (mark.x, mark.y) == (297.0, snap(A4.height - 420))
        assert (mark.opacity, mark.rotate) == (0.3, 45.0)

    def test_placement_takes_the_watermark_model(self):
        hints = typing.get_type_hints(LayoutEngine._watermark)
        assert hints["mark"] is WatermarkSpec
        assert hints["return"] is WatermarkPlacement


class TestRenderPath:
    """The render path depends on the requested mode and the probe."""

    def test_auto_without_external(self, probe, job_spec, sanitized):
        pages = LayoutEngine(probe).build_pages(job_spec, sanitized)
        assert {p.render_path for p in pages} == {RENDER_NATIVE}

    def test_auto_with_external(self, ready_probe, job_spec, sanitized):
        pages = LayoutEngine(ready_probe).build_pages(job_spec, sanitized)
        assert pages[0].render_path == RENDER_EXTERNAL

    def test_native_forced(self, ready_probe, sample_payload, sanitized):
        spec = VectorJobSpec.model_validate({**sample_payload, "renderMode": "native"})
        assert LayoutEngine(ready_probe).build_pages(spec, sanitized)[0].render_path == RENDER_NATIVE

    def test_external_required_but_unavailable(self, probe, sample_payload, sanitized):
        probe.probe()
        spec = VectorJobSpec.model_validate({**sample_payload, "renderMode": "external"})
        with pytest.raises(RenderingUnavailableError):
            LayoutEngine(probe).build_pages(spec, sanitized)

    def test_default_backend_from_settings(self, probe, job_spec, sanitized):
        with pytest.raises(RenderingUnavailableError):
            LayoutEngine(probe, default_backend="external").build_pages(job_spec, sanitized)

    def test_rejects_bad_scale(self, probe):
        with pytest.raises(ValueError):
            LayoutEngine(probe, canvas_scale=0)
