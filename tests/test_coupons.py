"""Tests for coupon lookup, validation and usage accounting."""
from datetime import timedelta

import pytest

from database import now_utc, oid
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Coupon, CouponUpdate


class TestLookup:
    def test_code_is_case_insensitive(self, coupons, make_coupon):
        make_coupon(code="save20")
        assert coupons.find_for_user("Save20")["code"] == "SAVE20"

    def test_user_scoped_coupon_hidden_from_others(self, coupons, make_coupon):
        make_coupon(code="WELCOME", discount_percentage=15, user_id="u1")
        assert coupons.find_for_user("WELCOME", "u1")["discount_percentage"] == 15
        assert coupons.find_for_user("WELCOME", "u2") is None
        assert coupons.find_for_user("WELCOME") is None

    def test_duplicate_code(self, make_coupon):
        make_coupon(code="DUP10")
        with pytest.raises(ConflictError):
            make_coupon(code="dup10")


class TestValidate:
    def test_valid(self, coupons, make_coupon):
        make_coupon()
        result = coupons.validate("save20", cart_total=50)
        assert result.valid
        assert result.discount_percentage == 20

    def test_missing(self, coupons):
        with pytest.raises(NotFoundError):
            coupons.validate("NOPE")

    def test_expired_coupon_is_deactivated(self, coupons, make_coupon):
        created = make_coupon(days=-1)
        with pytest.raises(ValidationError) as exc_info:
            coupons.validate("SAVE20")
        assert exc_info.value.message == "Coupon expired"
        assert coupons.coupons.find_one({"_id": oid(created["_id"])})["active"] is False

    def test_minimum_purchase(self, coupons, make_coupon):
        make_coupon(minimum_purchase_amount=100)
        with pytest.raises(ValidationError):
            coupons.validate("SAVE20", cart_total=99)


class TestUsage:
    def test_increment_and_cap(self, coupons, make_coupon):
        make_coupon(max_uses=2)
        assert coupons.increment_usage("SAVE20")["current_uses"] == 1
        second = coupons.increment_usage("SAVE20")
        assert second["current_uses"] == 2
        assert second["active"] is False
        with pytest.raises(ValidationError):
            coupons.increment_usage("SAVE20")

    def test_single_user_coupon_deactivates(self, coupons, make_coupon):
        make_coupon(code="MINE", user_id="u1")
        assert coupons.increment_usage("MINE", "u1")["active"] is False

    def test_gift_coupon_replaces_previous(self, coupons):
        first = coupons.create_gift_coupon("u1")
        second = coupons.create_gift_coupon("u1")
        assert second["code"].startswith("GIFT")
        assert len(second["code"]) == 10
        assert second["discount_percentage"] == 10.0
        assert coupons.coupons.count_documents({"user_id": "u1"}) == 1
        remaining = coupons.coupons.find_one({"user_id": "u1"})
        assert remaining["code"] == second["code"]
        assert first["_id"] != second["_id"]


class TestAdmin:
    def test_update_can_release_user_scope(self, coupons, make_coupon):
        created = make_coupon(code="VIP", user_id="u1")
        updated = coupons.update(created["_id"], CouponUpdate(user_id=None, description="now public"))
        assert updated["user_id"] is None
        assert updated["description"] == "now public"
        assert coupons.find_for_user("VIP", "u2") is not None

    def test_update_rejects_cap_below_usage(self, coupons, make_coupon):
        created = make_coupon()
        coupons.increment_usage("SAVE20")
        coupons.increment_usage("SAVE20")
        with pytest.raises(ValidationError):
            coupons.update(created["_id"], CouponUpdate(max_uses=1))

    def test_delete_used_coupon_deactivates(self, coupons, make_coupon):
        created = make_coupon()
        coupons.increment_usage("SAVE20")
        result = coupons.delete(created["_id"])
        assert "deactivated" in result["message"]
        assert coupons.coupons.find_one({"_id": oid(created["_id"])})["active"] is False

    def test_delete_unused_coupon(self, coupons, make_coupon):
        created = make_coupon()
        coupons.delete(created["_id"])
        assert coupons.coupons.count_documents({}) == 0

    def test_list_filters(self, coupons, make_coupon):
        make_coupon(code="LIVE1")
        make_coupon(code="OLD1", days=-1)
        coupons.create(Coupon(code="OFF1", discount_percentage=5, expires_at=now_utc() + timedelta(days=1),
                              active=False))
        assert [c["code"] for c in coupons.list_coupons("active")["discounts"]] == ["LIVE1"]
        assert [c["code"] for c in coupons.list_coupons("expired")["discounts"]] == ["OLD1"]
        assert coupons.list_coupons("all")["total"] == 3
        assert coupons.list_coupons("all", search="live")["total"] == 1
