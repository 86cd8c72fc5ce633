"""
Coupons: lookup, validation, usage accounting and admin management.
"""
import math
import secrets
import string
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import now_utc, oid, serialize
from errors import ConflictError, NotFoundError, ValidationError
from pricing import CouponValidation, evaluate_coupon, to_money
from schemas import Coupon, CouponUpdate

logger = structlog.get_logger(__name__)

GIFT_PREFIX = "GIFT"


class CouponService:
    def __init__(self, db: Database, gift_percentage: float = 10.0, gift_days: int = 30):
        self.coupons = db["coupon"]
        self.gift_percentage = gift_percentage
        self.gift_days = gift_days

    def find_for_user(self, code: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """User-scoped coupon first, then a general one with the same code."""
        upper = code.strip().upper()
        coupon = None
        if user_id:
            coupon = self.coupons.find_one({"code": upper, "user_id": user_id})
        if coupon is None:
            coupon = self.coupons.find_one({"code": upper, "user_id": None})
        return coupon

    def validate(self, code: str, user_id: Optional[str] = None, cart_total: Optional[float] = None) -> CouponValidation:
        coupon = self.find_for_user(code, user_id)
        if coupon is None:
            raise NotFoundError("Coupon")
        subtotal = to_money(cart_total) if cart_total is not None else None
        result = evaluate_coupon(coupon, user_id=user_id, subtotal=subtotal)
        if not result.valid:
            if result.reason == "Coupon expired" and coupon.get("active", True):
                self.coupons.update_one({"_id": coupon["_id"]}, {"$set": {"active": False, "updated_at": now_utc()}})
                logger.info("coupon.expired.deactivated", code=coupon["code"])
            raise ValidationError(result.reason)
        return result

    def get_user_coupon(self, user_id: str) -> Optional[Dict[str, Any]]:
        return serialize(self.coupons.find_one({"user_id": user_id, "active": True}))

    # ---------------------- Admin ----------------------

    def create(self, body: Coupon) -> Dict[str, Any]:
        doc = body.model_dump()
        doc.update({"created_at": now_utc(), "updated_at": now_utc()})
        try:
            res = self.coupons.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError("Discount code", "code")
        doc["_id"] = res.inserted_id
        logger.info("coupon.created", code=doc["code"], user_id=doc.get("user_id"))
        return serialize(doc)

    def update(self, coupon_id: str, body: CouponUpdate) -> Dict[str, Any]:
        changes = body.model_dump(exclude_unset=True)
        current = self.coupons.find_one({"_id": oid(coupon_id)})
        if not current:
            raise NotFoundError("Discount", coupon_id)
        max_uses = changes.get("max_uses", current.get("max_uses"))
        if max_uses is not None and current.get("current_uses", 0) > max_uses:
            raise ValidationError("max_uses cannot be lower than current usage")
        changes["updated_at"] = now_utc()
        doc = self.coupons.find_one_and_update({"_id": current["_id"]}, {"$set": changes},
                                               return_document=ReturnDocument.AFTER)
        return serialize(doc)

    def delete(self, coupon_id: str) -> Dict[str, Any]:
        coupon = self.coupons.find_one({"_id": oid(coupon_id)})
        if not coupon:
            raise NotFoundError("Discount", coupon_id)
        if coupon.get("current_uses", 0) > 0:
            self.coupons.update_one({"_id": coupon["_id"]}, {"$set": {"active": False, "updated_at": now_utc()}})
            return {"success": True, "message": "Discount has been deactivated (has existing uses)"}
        self.coupons.delete_one({"_id": coupon["_id"]})
        return {"success": True, "message": "Discount has been permanently deleted"}

    def list_coupons(self, status: str = "all", search: Optional[str] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        filt: Dict[str, Any] = {}
        now = now_utc()
        if status == "active":
            filt.update({"active": True, "expires_at": {"$gt": now}})
        elif status == "inactive":
            filt["active"] = False
        elif status == "expired":
            filt["expires_at"] = {"$lte": now}
        elif status != "all":
            raise ValidationError(f"Unknown coupon status filter: {status}")
        if search:
            filt["$or"] = [
                {"code": {"$regex": search, "$options": "i"}},
                {"description": {"$regex": search, "$options": "i"}},
            ]
        total = self.coupons.count_documents(filt)
        cursor = self.coupons.find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        return {
            "discounts": [serialize(c) for c in cursor],
            "total": total,
            "page": page,
            "pages": math.ceil(total / limit) if total else 0,
        }

    # ---------------------- Usage ----------------------

    def increment_usage(self, code: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Count one use. Single-user coupons and coupons reaching their cap are deactivated."""
        coupon = self.find_for_user(code, user_id)
        if coupon is None:
            raise NotFoundError("Coupon")
        filt: Dict[str, Any] = {"_id": coupon["_id"], "active": True}
        if coupon.get("max_uses") is not None:
            filt["current_uses"] = {"$lt": coupon["max_uses"]}
        updated = self.coupons.find_one_and_update(filt, {"$inc": {"current_uses": 1}},
                                                   return_document=ReturnDocument.AFTER)
        if updated is None:
            current = self.coupons.find_one({"_id": coupon["_id"]})
            if not current.get("active", True):
                raise ValidationError("Coupon is no longer active")
            raise ValidationError("Coupon has reached maximum usage limit")

        exhausted = updated.get("max_uses") is not None and updated["current_uses"] >= updated["max_uses"]
        if updated.get("user_id") or exhausted:
            self.coupons.update_one({"_id": updated["_id"]}, {"$set": {"active": False, "updated_at": now_utc()}})
            updated["active"] = False
        logger.info("coupon.usage.incremented", code=updated["code"], current_uses=updated["current_uses"],
                    active=updated["active"])
        return serialize(updated)

    def create_gift_coupon(self, user_id: str) -> Dict[str, Any]:
        """Issue a fresh gift coupon, replacing the user's previous one."""
        self.coupons.delete_many({"user_id": user_id, "code": {"$regex": f"^{GIFT_PREFIX}"}})
        alphabet = string.ascii_uppercase + string.digits
        code = GIFT_PREFIX + "".join(secrets.choice(alphabet) for _ in range(6))
        coupon = Coupon(
            code=code,
            discount_percentage=self.gift_percentage,
            expires_at=now_utc() + timedelta(days=self.gift_days),
            user_id=user_id,
        )
        return self.create(coupon)
