"""
Tests for job metadata validation.
"""

import copy
import math

import pytest

from vector_engine.services.validation import validate_vector_metadata

from helpers import PNG_DATA_URI


def _with(payload, **changes):
    out = copy.deepcopy(payload)
    out.update(changes)
    return out


class TestValidPayload:
    """A well-formed payload produces a spec."""

    def test_sample_is_valid(self, sample_payload):
        result = validate_vector_metadata(sample_payload)
        assert result.is_valid
        assert result.errors == ()
        assert result.spec.layout.total_pages == 2
        assert result.spec.series[0].slots[1].x == 350

    def test_snake_case_keys_accepted(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["source_document_key"] = payload.pop("sourceDocumentKey")
        payload["ticket_crop"] = payload.pop("ticketCrop")
        assert validate_vector_metadata(payload).is_valid

    def test_default_page_size_injected(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        del payload["layout"]["pageSize"]
        result = validate_vector_metadata(payload, default_page_size="LETTER")
        assert result.is_valid, result.errors
        assert result.spec.layout.page_size == "LETTER"

    def test_page_size_normalized(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["layout"]["pageSize"] = "a4"
        assert validate_vector_metadata(payload).spec.layout.page_size == "A4"

    def test_svg_image_watermark(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["watermarks"].append(
            {
                "id": "logo",
                "type": "image",
                "value": 'data:image/svg+xml,<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 4 4"><rect width="4" height="4"/></svg>',
                "position": {"x": 100, "y": 100},
            }
        )
        assert validate_vector_metadata(payload).is_valid


class TestNeverRaises:
    """Malformed input is reported, not raised."""

    @pytest.mark.parametrize(
        "raw",
        [
            None,
            [],
            "spec",
            42,
            {},
            {"layout": "A4", "series": "many"},
            {"series": [1, None, {"id": 3}]},
            {"ticketCrop": {"x": math.nan}, "layout": {"repeatPerPage": math.inf, "totalPages": -1}},
        ],
    )
    def test_garbage(self, raw):
        result = validate_vector_metadata(raw)
        assert result.is_valid is False
        assert len(result.errors) > 0
        assert result.spec is None


class TestGeometryChecks:
    """Positions and sizes are checked against the page after conversion."""

    def test_watermark_outside_page(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["watermarks"][0]["position"] = {"x": 5000, "y": 420}
        result = validate_vector_metadata(payload)
        assert result.is_valid is False
        assert any(e.startswith("watermarks[0].position") for e in result.errors)

    def test_watermark_below_page(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["watermarks"][0]["position"] = {"x": 10, "y": 900}
        assert validate_vector_metadata(payload).is_valid is False

    def test_slot_outside_page(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["series"][0]["slots"][2] = {"x": -1, "y": 10}
        result = validate_vector_metadata(payload)
        assert any(e.startswith("series[0].slots[2]") for e in result.errors)

    def test_slot_checked_with_canvas_scale(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["series"][0]["slots"][0] = {"x": 1000, "y": 10}
        assert validate_vector_metadata(payload).is_valid is False
        assert validate_vector_metadata(payload, canvas_scale=2.0).is_valid

    def test_crop_is_in_source_units(self, sample_payload):
        # The crop addresses the source artwork, which may be larger than the output page.
        payload = _with(sample_payload, ticketCrop={"pageIndex": 0, "x": 1200, "y": 0, "width": 200, "height": 100})
        result = validate_vector_metadata(payload)
        assert result.is_valid, result.errors

    def test_crop_needs_an_area(self, sample_payload):
        payload = _with(sample_payload, ticketCrop={"pageIndex": 0, "x": 0, "y": 0, "width": 0, "height": 100})
        result = validate_vector_metadata(payload)
        assert any(e.startswith("ticketCrop.width") for e in result.errors)

    def test_tickets_do_not_fit(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["layout"]["repeatPerPage"] = 17
        result = validate_vector_metadata(payload)
        assert any(e.startswith("layout.repeatPerPage") for e in result.errors)


class TestSeriesChecks:
    """Serial capacity and uniqueness."""

    def test_more_slots_than_tickets(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["layout"]["repeatPerPage"] = 3
        result = validate_vector_metadata(payload)
        assert any("exceed repeatPerPage" in e for e in result.errors)

    def test_count_beyond_capacity(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["series"][0]["count"] = 9
        result = validate_vector_metadata(payload)
        assert any(e.startswith("series[0].count") for e in result.errors)

    def test_count_within_capacity(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["series"][0]["count"] = 5
        assert validate_vector_metadata(payload).is_valid

    def test_duplicate_series_id(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["series"].append(copy.deepcopy(payload["series"][0]))
        result = validate_vector_metadata(payload)
        assert any("duplicate id" in e for e in result.errors)

    def test_zero_step(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["series"][0]["step"] = 0
        assert validate_vector_metadata(payload).is_valid is False


class TestErrorAccumulation:
    """Every violation is reported, not just the first."""

    def test_collects_all(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["layout"]["pageSize"] = "B5"
        payload["series"][0]["fontSize"] = 0
        payload["watermarks"][0]["opacity"] = 1.5
        payload["renderMode"] = "gpu"
        payload["colour"] = "red"
        result = validate_vector_metadata(payload)
        assert result.is_valid is False
        joined = "\n".join(result.errors)
        for fragment in ("layout.pageSize", "series[0].fontSize", "watermarks[0].opacity", "renderMode", "colour"):
            assert fragment in joined

    def test_image_watermark_must_be_data_uri(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["watermarks"][0].update({"type": "image", "value": "https://example.com/logo.png"})
        result = validate_vector_metadata(payload)
        assert any(e.startswith("watermarks[0].value") for e in result.errors)

    def test_unsafe_svg_watermark(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["watermarks"][0].update(
            {
                "type": "image",
                "value": 'data:image/svg+xml,<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 1 1"><script/></svg>',
            }
        )
        result = validate_vector_metadata(payload)
        assert any("UNSAFE_SVG" in e for e in result.errors)

    def test_raster_image_watermark(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["watermarks"][0].update({"type": "image", "value": PNG_DATA_URI})
        assert validate_vector_metadata(payload).is_valid

    def test_undecodable_raster_watermark(self, sample_payload):
        payload = copy.deepcopy(sample_payload)
        payload["watermarks"][0].update({"type": "image", "value": "data:image/png;base64,AAAA"})
        result = validate_vector_metadata(payload)
        assert result.is_valid is False
        assert any(e.startswith("watermarks[0].value: INVALID_WATERMARK") for e in result.errors)
