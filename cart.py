"""
Shopping cart, stored on the user document as ``cart_items``.
"""
from typing import Any, Dict, List, Optional

from pymongo.collection import Collection
from pymongo.database import Database

from coupons import CouponService
from database import now_utc, oid
from errors import NotFoundError, ValidationError
from pricing import PricedLine, calculate_totals, effective_price, evaluate_coupon, subtotal_of
from products import find_variant
from schemas import AppliedCoupon, CartItem


def merge_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    merged: Dict[tuple, Dict[str, Any]] = {}
    for it in items:
        key = (it["product_id"], it.get("variant_id"))
        if key in merged:
            merged[key]["quantity"] += it["quantity"]
        else:
            merged[key] = {**it}
    return list(merged.values())


def price_lines(products: Collection, items: List[Dict[str, Any]], strict: bool = True) -> List[PricedLine]:
    """Snapshot current prices for cart items.

    With ``strict`` a missing product or variant raises NotFoundError,
    otherwise the item is skipped.
    Items naming the same product and variant are merged into one line.
    """
    items = merge_items(items)
    ids = {oid(it["product_id"]) for it in items}
    catalog = {str(p["_id"]): p for p in products.find({"_id": {"$in": list(ids)}})}
    lines = []
    for it in items:
        product = catalog.get(it["product_id"])
        if product is None:
            if strict:
                raise NotFoundError("Product", it["product_id"])
            continue
        variant = None
        if it.get("variant_id"):
            variant = find_variant(product, it["variant_id"])
            if variant is None:
                if strict:
                    raise NotFoundError("Variant", it["variant_id"])
                continue
        elif product.get("variants") and strict:
            raise ValidationError(f"Product {it['product_id']} requires a variant selection")
        lines.append(PricedLine(
            product_id=it["product_id"],
            variant_id=it.get("variant_id"),
            name=product.get("name", ""),
            unit_price=effective_price(product, variant),
            quantity=it["quantity"],
        ))
    return lines


class CartService:
    def __init__(self, db: Database, coupons: CouponService):
        self.users = db["user"]
        self.products = db["product"]
        self.coupons = coupons

    def _load_user(self, user_id: str) -> Dict[str, Any]:
        user = self.users.find_one({"_id": oid(user_id)})
        if not user:
            raise NotFoundError("User", user_id)
        return user

    def _save_items(self, user: Dict[str, Any], items: List[Dict[str, Any]]) -> None:
        self.users.update_one({"_id": user["_id"]}, {"$set": {"cart_items": items, "updated_at": now_utc()}})

    def get_items(self, user_id: str) -> List[CartItem]:
        return [CartItem(**it) for it in self._load_user(user_id).get("cart_items") or []]

    def get_cart(self, user_id: str) -> Dict[str, Any]:
        user = self._load_user(user_id)
        lines = price_lines(self.products, user.get("cart_items") or [], strict=False)
        applied = user.get("applied_coupon")
        coupon = self.coupons.find_for_user(applied["code"], user_id) if applied else None
        totals = calculate_totals(lines, coupon, user_id=user_id)
        if applied and coupon is None:
            totals.coupon = evaluate_coupon(None)
        return {
            "items": [line.model_dump() for line in lines],
            "applied_coupon": applied,
            **totals.model_dump(),
        }

    def add_item(self, user_id: str, item: CartItem) -> Dict[str, Any]:
        user = self._load_user(user_id)
        product = self.products.find_one({"_id": oid(item.product_id)})
        if not product:
            raise NotFoundError("Product", item.product_id)
        if item.variant_id and find_variant(product, item.variant_id) is None:
            raise NotFoundError("Variant", item.variant_id)
        if not item.variant_id and product.get("variants"):
            raise ValidationError("Select a variant before adding this product")

        items = user.get("cart_items") or []
        for it in items:
            if it["product_id"] == item.product_id and it.get("variant_id") == item.variant_id:
                it["quantity"] += item.quantity
                break
        else:
            items.append(item.model_dump())
        self._save_items(user, items)
        return self.get_cart(user_id)

    def update_quantity(self, user_id: str, product_id: str, variant_id: Optional[str], quantity: int) -> Dict[str, Any]:
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative")
        user = self._load_user(user_id)
        items = user.get("cart_items") or []
        matched = [it for it in items if it["product_id"] == product_id and it.get("variant_id") == variant_id]
        if not matched:
            raise NotFoundError("Cart item", product_id)
        if quantity == 0:
            items = [it for it in items if it not in matched]
        else:
            matched[0]["quantity"] = quantity
        self._save_items(user, items)
        return self.get_cart(user_id)

    def remove_item(self, user_id: str, product_id: str, variant_id: Optional[str] = None) -> Dict[str, Any]:
        user = self._load_user(user_id)
        items = [
            it for it in user.get("cart_items") or []
            if not (it["product_id"] == product_id and it.get("variant_id") == variant_id)
        ]
        self._save_items(user, items)
        return self.get_cart(user_id)

    def clear(self, user_id: str) -> None:
        self.users.update_one({"_id": oid(user_id)},
                              {"$set": {"cart_items": [], "applied_coupon": None, "updated_at": now_utc()}})

    def apply_coupon(self, user_id: str, code: str) -> Dict[str, Any]:
        user = self._load_user(user_id)
        lines = price_lines(self.products, user.get("cart_items") or [], strict=False)
        result = self.coupons.validate(code, user_id, cart_total=float(subtotal_of(lines)))
        applied = AppliedCoupon(code=result.code, discount_percentage=result.discount_percentage)
        self.users.update_one({"_id": user["_id"]},
                              {"$set": {"applied_coupon": applied.model_dump(), "updated_at": now_utc()}})
        return self.get_cart(user_id)

    def remove_coupon(self, user_id: str) -> Dict[str, Any]:
        user = self._load_user(user_id)
        self.users.update_one({"_id": user["_id"]}, {"$set": {"applied_coupon": None, "updated_at": now_utc()}})
        return self.get_cart(user_id)
