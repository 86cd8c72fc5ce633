"""
Cart totals and coupon evaluation.

Pure functions over price snapshots; callers resolve products and coupons
before calling in. Money math runs on Decimal and is reported as floats
rounded to cents.
"""
from datetime import datetime
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from pydantic import BaseModel, Field

from database import as_utc, now_utc

CENT = Decimal("0.01")
ZERO = Decimal("0")


class PricedLine(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    name: str = ""
    unit_price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class CouponValidation(BaseModel):
    valid: bool
    code: Optional[str] = None
    discount_percentage: float = 0
    reason: Optional[str] = None


class CartTotals(BaseModel):
    subtotal: float
    discount: float
    total: float
    coupon: Optional[CouponValidation] = None


def to_money(value: Union[int, float, str, Decimal]) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def effective_price(product: Mapping[str, Any], variant: Optional[Mapping[str, Any]] = None) -> float:
    if variant is not None and variant.get("price") is not None:
        return float(variant["price"])
    return float(product["price"])


def subtotal_of(lines: Iterable[PricedLine]) -> Decimal:
    total = sum((to_money(line.unit_price) * line.quantity for line in lines), ZERO)
    return total.quantize(CENT, rounding=ROUND_HALF_UP)


def evaluate_coupon(coupon: Optional[Union[Mapping[str, Any], BaseModel]], user_id: Optional[str] = None,
                    now: Optional[datetime] = None, subtotal: Optional[Decimal] = None) -> CouponValidation:
    if coupon is None:
        return CouponValidation(valid=False, reason="Coupon not found")
    data: Dict[str, Any] = coupon.model_dump() if isinstance(coupon, BaseModel) else dict(coupon)
    now = now or now_utc()
    code = data.get("code")

    def reject(reason: str) -> CouponValidation:
        return CouponValidation(valid=False, code=code, reason=reason)

    if not data.get("active", True):
        return reject("Coupon is no longer active")
    expires_at = as_utc(data.get("expires_at"))
    if expires_at is not None and expires_at < now:
        return reject("Coupon expired")
    max_uses = data.get("max_uses")
    if max_uses is not None and data.get("current_uses", 0) >= max_uses:
        return reject("Coupon has reached maximum usage limit")
    owner = data.get("user_id")
    if owner is not None and owner != user_id:
        return reject("Coupon belongs to another user")
    minimum = data.get("minimum_purchase_amount")
    if minimum and subtotal is not None and subtotal < to_money(minimum):
        return reject(f"Minimum purchase amount of ${minimum} required")

    return CouponValidation(valid=True, code=code, discount_percentage=float(data.get("discount_percentage", 0)))


def calculate_totals(lines: Iterable[PricedLine], coupon: Optional[Union[Mapping[str, Any], BaseModel]] = None,
                     user_id: Optional[str] = None, now: Optional[datetime] = None) -> CartTotals:
    subtotal = subtotal_of(list(lines))
    discount = ZERO
    validation = None
    if coupon is not None:
        validation = evaluate_coupon(coupon, user_id=user_id, now=now, subtotal=subtotal)
        if validation.valid:
            pct = to_money(validation.discount_percentage)
            discount = (subtotal * pct / 100).quantize(CENT, rounding=ROUND_FLOOR)
    total = max(ZERO, subtotal - discount)
    return CartTotals(subtotal=float(subtotal), discount=float(discount), total=float(total), coupon=validation)
