"""
Product catalog.
"""
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.database import Database

from database import now_utc, oid, serialize, version_filter
from errors import AppError, NotFoundError, ValidationError
from schemas import Product, ProductUpdate, Variant


def find_variant(product: Dict[str, Any], variant_id: Optional[str]) -> Optional[Dict[str, Any]]:
    for v in product.get("variants") or []:
        if v.get("variant_id") == variant_id:
            return v
    return None


def check_variants(variants: List[Variant]) -> List[Dict[str, Any]]:
    """Assign missing variant ids and reject duplicate ids or attribute combinations."""
    seen_ids = set()
    seen_attrs = set()
    out = []
    for v in variants:
        doc = v.model_dump()
        if not doc.get("variant_id"):
            doc["variant_id"] = str(ObjectId())
        if doc["variant_id"] in seen_ids:
            raise ValidationError(f"Duplicate variant id: {doc['variant_id']}")
        combo = tuple(sorted((k.lower(), str(val).lower()) for k, val in doc["attributes"].items()))
        if combo in seen_attrs:
            label = ", ".join(f"{k}={val}" for k, val in combo) or "no attributes"
            raise ValidationError(f"Duplicate variant attribute combination: {label}")
        seen_ids.add(doc["variant_id"])
        seen_attrs.add(combo)
        out.append(doc)
    return out


class ProductService:
    def __init__(self, db: Database):
        self.products = db["product"]

    def create_product(self, body: Product) -> Dict[str, Any]:
        doc = body.model_dump()
        doc["variants"] = check_variants(body.variants)
        doc.update({"version": 0, "created_at": now_utc(), "updated_at": now_utc()})
        res = self.products.insert_one(doc)
        doc["_id"] = res.inserted_id
        return serialize(doc)

    def get_product(self, product_id: str) -> Dict[str, Any]:
        doc = self.products.find_one({"_id": oid(product_id)})
        if not doc:
            raise NotFoundError("Product", product_id)
        return serialize(doc)

    def list_products(self, q: Optional[str] = None, min_price: Optional[float] = None,
                      max_price: Optional[float] = None, limit: int = 50) -> List[Dict[str, Any]]:
        filt: Dict[str, Any] = {}
        if q:
            filt["name"] = {"$regex": q, "$options": "i"}
        price_cond = {}
        if min_price is not None:
            price_cond["$gte"] = min_price
        if max_price is not None:
            price_cond["$lte"] = max_price
        if price_cond:
            filt["price"] = price_cond
        return [serialize(p) for p in self.products.find(filt).limit(limit)]

    def update_product(self, product_id: str, body: ProductUpdate) -> Dict[str, Any]:
        current = self.products.find_one({"_id": oid(product_id)})
        if not current:
            raise NotFoundError("Product", product_id)
        changes = body.model_dump(exclude_unset=True)
        if body.variants is not None:
            # stock and reservations are owned by the inventory engine
            existing = {v["variant_id"]: v for v in current.get("variants") or []}
            variants = check_variants(body.variants)
            for v in variants:
                prior = existing.get(v["variant_id"])
                v["stock"] = prior["stock"] if prior else 0
                v["reserved"] = prior.get("reserved", 0) if prior else 0
            changes["variants"] = variants
        changes["updated_at"] = now_utc()
        update: Dict[str, Any] = {"$set": changes}
        filt: Dict[str, Any] = {"_id": current["_id"]}
        if "variants" in changes:
            filt = version_filter(current)
            update["$inc"] = {"version": 1}
        res = self.products.update_one(filt, update)
        if res.matched_count == 0:
            raise AppError("Product was modified concurrently, please retry", 409)
        return self.get_product(product_id)

    def delete_product(self, product_id: str) -> None:
        res = self.products.delete_one({"_id": oid(product_id)})
        if res.deleted_count == 0:
            raise NotFoundError("Product", product_id)
