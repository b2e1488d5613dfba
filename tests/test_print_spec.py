"""
Tests for product geometry.
"""

import pytest

from season_book_backend.errors import ConfigurationMissing
from season_book_backend.print_spec import get_print_spec


@pytest.fixture
def spec(config):
    return get_print_spec(config.print_specs, "lulu", "square_hardcover_775")


class TestPrintSpec:
    """Tests for the configured square hardcover profile."""

    def test_interior_includes_bleed(self, spec):
        interior = spec.interior_dimensions()
        assert (interior.css_width, interior.css_height) == ("8in", "8in")

    def test_cover_at_minimum_page_count(self, spec):
        assert spec.spine_width(24) == pytest.approx(0.19)
        cover = spec.cover_dimensions(24)
        assert cover.css_width == "16.94in"
        assert cover.css_height == "9.25in"

    def test_cover_matches_vendor_template_at_48_pages(self, spec):
        assert spec.cover_dimensions(48).css_width == "17in"

    def test_cover_width_never_shrinks_with_more_pages(self, spec):
        widths = [spec.cover_dimensions(n).width for n in range(0, 200, 7)]
        assert widths == sorted(widths)

    def test_billable_page_count_pads_short_books(self, spec):
        assert spec.billable_page_count(3) == 24
        assert spec.billable_page_count(31) == 31

    def test_negative_page_count_rejected(self, spec):
        with pytest.raises(ValueError):
            spec.spine_width(-1)

    def test_unknown_product_is_configuration_missing(self, config):
        with pytest.raises(ConfigurationMissing):
            get_print_spec(config.print_specs, "lulu", "pocketbook")


class TestRpiSoftcover:
    @pytest.fixture
    def softcover(self, config):
        return get_print_spec(config.print_specs, "rpi", "7x7_softcover_lustre")

    def test_interior_includes_bleed(self, softcover):
        assert softcover.interior_dimensions().css_width == "7.25in"

    def test_cover_has_no_board_wrap(self, softcover):
        cover = softcover.cover_dimensions(24)
        assert cover.css_width == "14.37in"
        assert cover.css_height == "7.25in"

    def test_minimum_page_count(self, softcover):
        assert softcover.billable_page_count(6) == 20
