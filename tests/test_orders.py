"""Tests for order queries and admin status changes."""
import pytest

from database import now_utc, oid
from errors import AppError, NotFoundError, StatusTransitionError, ValidationError
from orders import history_entry


@pytest.fixture
def make_order(db):
    counter = iter(range(1, 1000))

    def make(status="completed", user_id="u1", total=50.0):
        n = next(counter)
        doc = {
            "order_number": f"ORD-20260101-{n:04d}",
            "user_id": user_id,
            "items": [],
            "subtotal": total,
            "discount": 0,
            "total_amount": total,
            "payment_session_id": f"cs_{n}",
            "status": status,
            "status_history": [history_entry("pending", status, user_id)],
            "inventory_issues": [],
            "created_at": now_utc(),
        }
        return str(db["order"].insert_one(doc).inserted_id)
    return make


class TestUpdateStatus:
    def test_valid_change_appends_history(self, orders, make_order):
        order_id = make_order()
        updated = orders.update_status(order_id, "refunded", "admin-7", "customer request")
        assert updated["status"] == "refunded"
        last = updated["status_history"][-1]
        assert last["from"] == "completed"
        assert last["to"] == "refunded"
        assert last["actor_id"] == "admin-7"
        assert last["reason"] == "customer request"

    def test_invalid_change_is_rejected(self, db, orders, make_order):
        order_id = make_order()
        with pytest.raises(StatusTransitionError) as exc_info:
            orders.update_status(order_id, "cancelled")
        assert exc_info.value.message == "Cannot cancel an order that has already been completed"
        assert db["order"].find_one({"_id": oid(order_id)})["status"] == "completed"

    def test_pending_inventory_can_complete(self, orders, make_order):
        order_id = make_order(status="pending_inventory")
        assert orders.update_status(order_id, "completed")["status"] == "completed"

    def test_concurrent_change_detected(self, db, orders, make_order, monkeypatch):
        order_id = make_order()
        original = orders.orders.find_one_and_update

        def race(filt, update, **kwargs):
            db["order"].update_one({"_id": oid(order_id)}, {"$set": {"status": "refunded"}})
            return original(filt, update, **kwargs)

        monkeypatch.setattr(orders.orders, "find_one_and_update", race)
        with pytest.raises(AppError) as exc_info:
            orders.update_status(order_id, "refunded")
        assert exc_info.value.status_code == 409

    def test_missing_order(self, orders):
        with pytest.raises(NotFoundError):
            orders.update_status("0" * 24, "completed")


def test_bulk_update_applies_only_valid(orders, make_order):
    pending = make_order(status="pending")
    refunded = make_order(status="refunded")
    missing = "0" * 24
    result = orders.bulk_update_status([pending, refunded, missing], "completed", "admin")
    assert result["updated"] == [pending]
    assert [i["order_id"] for i in result["invalid"]] == [refunded]
    assert result["invalid"][0]["error"] == "Cannot mark a refunded order as completed"
    assert result["missing"] == [missing]


def test_bulk_requires_ids(orders):
    with pytest.raises(ValidationError):
        orders.bulk_update_status([], "completed")


class TestQueries:
    def test_list_is_scoped_and_paginated(self, orders, make_order):
        for _ in range(3):
            make_order(user_id="u1")
        make_order(user_id="u2")
        page = orders.list_orders(user_id="u1", page=1, limit=2)
        assert page["total"] == 3
        assert page["pages"] == 2
        assert len(page["orders"]) == 2

    def test_list_status_filter(self, orders, make_order):
        make_order(status="pending_inventory")
        make_order()
        assert orders.list_orders(status="pending_inventory")["total"] == 1
        with pytest.raises(ValidationError):
            orders.list_orders(status="shipped")

    def test_get_order_checks_owner(self, orders, make_order):
        order_id = make_order(user_id="u1")
        assert orders.get_order(order_id, "u1")["_id"] == order_id
        with pytest.raises(NotFoundError):
            orders.get_order(order_id, "u2")

    def test_stats(self, orders, make_order):
        make_order(total=100.0)
        make_order(total=50.0)
        make_order(status="cancelled", total=999.0)
        stats = orders.get_stats()
        assert stats["total_orders"] == 3
        assert stats["total_revenue"] == 150.0
        assert stats["average_order_value"] == 75.0
        assert stats["status_breakdown"]["cancelled"] == 1
