"""
Tests for the SQLite fulfillment ledger.
"""

from datetime import datetime

import pytest

from season_book_backend.models import FulfillmentStage, OrderStatus


def make_row(fulfillment_id="f1", session_id="cs_test_1", **fields):
    now = datetime(2024, 3, 1, 12, 0, 0)
    row = {
        "id": fulfillment_id,
        "payment_session_id": session_id,
        "external_id": f"ts_{session_id}_1",
        "stage": FulfillmentStage.RECEIVED,
        "created_at": now,
        "updated_at": now,
        "events": [{"timestamp": now, "message": "registered"}],
    }
    row.update(fields)
    return row


class TestFulfillmentDatabase:
    def test_insert_and_get(self, database):
        assert database.insert_if_absent(make_row(shipping={"name": "Dana"}))
        row = database.get("f1")
        assert row["stage"] == "received"
        assert row["shipping"] == {"name": "Dana"}
        assert row["attempts"] == 0
        assert row["events"][0]["message"] == "registered"
        assert isinstance(row["created_at"], datetime)

    def test_duplicate_session_is_ignored(self, database):
        assert database.insert_if_absent(make_row("f1", "cs_test_1"))
        assert not database.insert_if_absent(make_row("f2", "cs_test_1"))
        assert database.get("f2") is None
        assert database.get_by_session("cs_test_1")["id"] == "f1"

    def test_update_serializes_enums(self, database):
        database.insert_if_absent(make_row())
        database.update("f1", stage=FulfillmentStage.SUBMITTED, order_status=OrderStatus.PRINTING, vendor_order_id="77")
        row = database.get_by_vendor_order("77")
        assert row["stage"] == "submitted"
        assert row["order_status"] == "printing"
        assert row["updated_at"] > row["created_at"]

    def test_update_rejects_unknown_fields(self, database):
        database.insert_if_absent(make_row())
        with pytest.raises(KeyError):
            database.update("f1", payment_session_id="other")

    def test_add_event_appends(self, database):
        database.insert_if_absent(make_row())
        database.add_event("f1", "fetching")
        messages = [event["message"] for event in database.get("f1")["events"]]
        assert messages == ["registered", "fetching"]

    def test_lookup_by_external_id(self, database):
        database.insert_if_absent(make_row(session_id="cs_test_9"))
        assert database.get_by_external_id("ts_cs_test_9_1")["id"] == "f1"

    def test_list_all_newest_first(self, database):
        database.insert_if_absent(make_row("old", "cs_a", created_at=datetime(2024, 1, 1)))
        database.insert_if_absent(make_row("new", "cs_b", created_at=datetime(2024, 2, 1)))
        assert [row["id"] for row in database.list_all()] == ["new", "old"]


class TestConditionalUpdates:
    def test_rearm_wins_once(self, database):
        database.insert_if_absent(make_row(stage=FulfillmentStage.FAILED, error="boom"))

        assert database.rearm_if_failed("f1", book_data_url="https://books.test/new.json")
        assert not database.rearm_if_failed("f1")

        row = database.get("f1")
        assert row["stage"] == "received"
        assert row["error"] is None
        assert row["book_data_url"] == "https://books.test/new.json"

    def test_rearm_leaves_active_row_alone(self, database):
        database.insert_if_absent(make_row(stage=FulfillmentStage.RENDERING))
        assert not database.rearm_if_failed("f1")
        assert database.get("f1")["stage"] == "rendering"

    def test_order_status_compare_and_set(self, database):
        database.insert_if_absent(make_row())

        assert database.update_if_order_status("f1", None, order_status=OrderStatus.ORDERED)
        assert not database.update_if_order_status("f1", None, order_status=OrderStatus.SHIPPED)
        assert database.update_if_order_status("f1", OrderStatus.ORDERED, order_status=OrderStatus.SHIPPED)
        assert database.get("f1")["order_status"] == "shipped"

    def test_conditional_update_of_unknown_row(self, database):
        assert not database.update_if_order_status("missing", None, tracking_number="1Z")
