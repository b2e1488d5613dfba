"""
Tests for vendor status normalization.
"""

import pytest

from season_book_backend.models import OrderStatus
from season_book_backend.status_mapper import advance_status, map_vendor_status


class TestMapVendorStatus:
    @pytest.mark.parametrize(
        "vendor_status, expected",
        [
            ("CREATED", OrderStatus.ORDERED),
            ("IN_PRODUCTION", OrderStatus.PRINTING),
            ("production_ready", OrderStatus.PRINTING),
            ("SHIPPED", OrderStatus.SHIPPED),
            ("DELIVERED", OrderStatus.DELIVERED),
            ("CANCELED", OrderStatus.CANCELLED),
            ("ERROR", OrderStatus.ERROR),
            ("accepted", OrderStatus.ORDERED),
            ("printing", OrderStatus.PRINTING),
            ("shipped", OrderStatus.SHIPPED),
        ],
    )
    def test_known_statuses(self, vendor_status, expected):
        assert map_vendor_status(vendor_status) == expected

    def test_unknown_status_defaults_to_ordered(self):
        assert map_vendor_status("SOMETHING_NEW") == OrderStatus.ORDERED
        assert map_vendor_status(None) == OrderStatus.ORDERED


class TestAdvanceStatus:
    """Out-of-order updates never move an order backwards."""

    def test_first_status_is_taken(self):
        assert advance_status(None, OrderStatus.PRINTING) == OrderStatus.PRINTING

    def test_late_printing_after_shipped_is_ignored(self):
        assert advance_status(OrderStatus.SHIPPED, OrderStatus.PRINTING) == OrderStatus.SHIPPED

    def test_forward_progress(self):
        assert advance_status(OrderStatus.ORDERED, OrderStatus.SHIPPED) == OrderStatus.SHIPPED

    def test_cancel_overrides_active_order(self):
        assert advance_status(OrderStatus.PRINTING, OrderStatus.CANCELLED) == OrderStatus.CANCELLED

    def test_terminal_status_is_final(self):
        assert advance_status(OrderStatus.DELIVERED, OrderStatus.ERROR) == OrderStatus.DELIVERED
        assert advance_status(OrderStatus.CANCELLED, OrderStatus.SHIPPED) == OrderStatus.CANCELLED
