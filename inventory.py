"""
Inventory adjustments and stock queries.

Stock lives on the product document: ``stock``/``reserved`` for products
without variants, and the same pair on each variant otherwise. Every write
is a compare-and-set on the product's ``version`` field; a writer that loses
the race re-reads and tries again with exponential backoff. Each accepted
adjustment appends one entry to ``inventory_history``.
"""
import math
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, get_args

import structlog
from pydantic import BaseModel
from pymongo.database import Database

from database import now_utc, oid, serialize, version_filter
from errors import AppError, InsufficientInventoryError, InventoryLockFailedError, NotFoundError, ValidationError
from products import find_variant
from schemas import InventoryHistoryEntry, InventoryReason, InventoryUpdate, StockStatus

logger = structlog.get_logger(__name__)

MAX_INVENTORY = 999999
REASONS = frozenset(get_args(InventoryReason))
# corrections clamp at zero instead of failing
CORRECTIVE_REASONS = frozenset({"manual_correction"})


class InventoryAdjustment(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    adjustment: int
    previous_quantity: int
    new_quantity: int
    available_stock: int
    history_id: Optional[str] = None


class BulkItemResult(BaseModel):
    index: int
    product_id: str
    variant_id: Optional[str] = None
    success: bool
    result: Optional[InventoryAdjustment] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class InventoryInfo(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    current_stock: int
    reserved_stock: int
    available_stock: int
    low_stock_threshold: int
    allow_backorder: bool
    stock_status: StockStatus


class InventoryMetrics(BaseModel):
    total_products: int = 0
    total_value: float = 0
    out_of_stock_count: int = 0
    low_stock_count: int = 0
    total_reserved: int = 0


class StockRow(BaseModel):
    product_id: str
    product_name: str
    variant_id: Optional[str] = None
    variant_details: str = ""
    current_stock: int
    available_stock: int
    low_stock_threshold: int


class TurnoverRow(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    variant_id: Optional[str] = None
    sold_quantity: int
    average_stock: float
    turnover_rate: float
    period_start: datetime
    period_end: datetime


class HistoryPage(BaseModel):
    items: List[Dict[str, Any]]
    total: int
    page: int
    pages: int


def calculate_stock_status(available: int, threshold: int, allow_backorder: bool) -> StockStatus:
    if available <= 0:
        return "backordered" if allow_backorder else "out_of_stock"
    if available <= threshold:
        return "low_stock"
    return "in_stock"


def stock_rows(product: Dict[str, Any]) -> Iterator[Tuple[Optional[Dict[str, Any]], int, int]]:
    """Yield (variant, stock, reserved) for every stock-bearing slot of a product."""
    variants = product.get("variants") or []
    if not variants:
        yield None, product.get("stock", 0), product.get("reserved", 0)
        return
    for v in variants:
        yield v, v.get("stock", 0), v.get("reserved", 0)


def variant_details(variant: Optional[Dict[str, Any]]) -> str:
    if not variant:
        return ""
    return " ".join(str(val) for val in (variant.get("attributes") or {}).values())


class InventoryService:
    def __init__(self, db: Database, max_retries: int = 3, base_delay: float = 0.1,
                 default_low_stock_threshold: int = 5, sleep: Callable[[float], None] = time.sleep):
        self.products = db["product"]
        self.history = db["inventory_history"]
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.default_low_stock_threshold = default_low_stock_threshold
        self._sleep = sleep

    # ---------------------- Reads ----------------------

    def _load_product(self, product_id: str) -> Dict[str, Any]:
        product = self.products.find_one({"_id": oid(product_id)})
        if not product:
            raise NotFoundError("Product", product_id)
        return product

    def _threshold(self, product: Dict[str, Any]) -> int:
        threshold = product.get("low_stock_threshold")
        return self.default_low_stock_threshold if threshold is None else threshold

    def _stock_of(self, product: Dict[str, Any], variant_id: Optional[str]) -> Tuple[int, int]:
        if variant_id:
            variant = find_variant(product, variant_id)
            if variant is None:
                raise NotFoundError("Variant", variant_id)
            return variant.get("stock", 0), variant.get("reserved", 0)
        stock = reserved = 0
        for _, s, r in stock_rows(product):
            stock += s
            reserved += r
        return stock, reserved

    def get_available_inventory(self, product_id: str, variant_id: Optional[str] = None) -> int:
        stock, reserved = self._stock_of(self._load_product(product_id), variant_id)
        return max(0, stock - reserved)

    def check_availability(self, product_id: str, variant_id: Optional[str] = None, quantity: int = 1) -> bool:
        try:
            return quantity <= self.get_available_inventory(product_id, variant_id)
        except NotFoundError:
            return False

    def get_product_inventory_info(self, product_id: str, variant_id: Optional[str] = None) -> InventoryInfo:
        product = self._load_product(product_id)
        stock, reserved = self._stock_of(product, variant_id)
        available = max(0, stock - reserved)
        threshold = self._threshold(product)
        allow_backorder = bool(product.get("allow_backorder", False))
        return InventoryInfo(
            product_id=product_id,
            variant_id=variant_id,
            current_stock=stock,
            reserved_stock=reserved,
            available_stock=available,
            low_stock_threshold=threshold,
            allow_backorder=allow_backorder,
            stock_status=calculate_stock_status(available, threshold, allow_backorder),
        )

    # ---------------------- Writes ----------------------

    def update_inventory(self, product_id: str, variant_id: Optional[str], adjustment: int, reason: str,
                         actor_id: str, metadata: Optional[Dict[str, Any]] = None,
                         record_noop: bool = False) -> InventoryAdjustment:
        if reason not in REASONS:
            raise ValidationError(f"Unknown inventory reason: {reason}")
        if isinstance(adjustment, bool) or not isinstance(adjustment, int):
            raise ValidationError("Adjustment must be an integer")
        metadata = dict(metadata or {})
        log = logger.bind(product_id=product_id, variant_id=variant_id, adjustment=adjustment,
                          reason=reason, actor_id=actor_id)
        started = time.monotonic()
        log.info("inventory.update.start")

        for attempt in range(self.max_retries + 1):
            product = self._load_product(product_id)
            variants = product.get("variants") or []
            if variants and not variant_id:
                raise ValidationError("variant_id is required for products with variants")
            if variant_id and not variants:
                raise NotFoundError("Variant", variant_id)
            previous, reserved = self._stock_of(product, variant_id)

            if adjustment == 0:
                history_id = None
                if record_noop:
                    history_id = self._record(product_id, variant_id, previous, previous, 0, reason, actor_id, metadata)
                return InventoryAdjustment(product_id=product_id, variant_id=variant_id, adjustment=0,
                                           previous_quantity=previous, new_quantity=previous,
                                           available_stock=max(0, previous - reserved), history_id=history_id)

            new_quantity = previous + adjustment
            if reason == "sale" and -adjustment > max(0, previous - reserved):
                raise InsufficientInventoryError(
                    f"Cannot sell {-adjustment} items. Only {max(0, previous - reserved)} available",
                    [self._shortfall(product_id, variant_id, -adjustment, max(0, previous - reserved))],
                )
            if new_quantity < 0:
                if reason not in CORRECTIVE_REASONS:
                    raise InsufficientInventoryError(
                        f"Insufficient inventory. Current: {previous}, requested adjustment: {adjustment}",
                        [self._shortfall(product_id, variant_id, -adjustment, previous)],
                    )
                metadata.setdefault("requested_adjustment", adjustment)
                new_quantity = 0
            if new_quantity > MAX_INVENTORY:
                raise ValidationError(f"Inventory limit exceeded. Maximum allowed: {MAX_INVENTORY}")

            changes: Dict[str, Any] = {"updated_at": now_utc()}
            if variant_id:
                changes["variants"] = [
                    dict(v, stock=new_quantity) if v.get("variant_id") == variant_id else v for v in variants
                ]
            else:
                changes["stock"] = new_quantity
            res = self.products.update_one(version_filter(product), {"$set": changes, "$inc": {"version": 1}})
            if res.matched_count == 1:
                applied = new_quantity - previous
                history_id = self._record(product_id, variant_id, previous, new_quantity, applied,
                                          reason, actor_id, metadata)
                log.info("inventory.update.success", previous_quantity=previous, new_quantity=new_quantity,
                         attempts=attempt + 1, duration_ms=round((time.monotonic() - started) * 1000, 2))
                return InventoryAdjustment(product_id=product_id, variant_id=variant_id, adjustment=applied,
                                           previous_quantity=previous, new_quantity=new_quantity,
                                           available_stock=max(0, new_quantity - reserved), history_id=history_id)

            log.warning("inventory.update.retry", attempt=attempt + 1)
            if attempt < self.max_retries:
                self._sleep(self.base_delay * (2 ** attempt))

        log.error("inventory.update.lock_failed", attempts=self.max_retries + 1)
        raise InventoryLockFailedError(product_id, variant_id, self.max_retries + 1)

    def bulk_update_inventory(self, updates: List[InventoryUpdate], actor_id: str) -> List[BulkItemResult]:
        results = []
        for index, update in enumerate(updates):
            try:
                adjusted = self.update_inventory(update.product_id, update.variant_id, update.adjustment,
                                                 update.reason, actor_id, update.metadata)
            except AppError as exc:
                logger.warning("inventory.bulk.item_failed", index=index, product_id=update.product_id,
                               error=exc.message)
                results.append(BulkItemResult(index=index, product_id=update.product_id,
                                              variant_id=update.variant_id, success=False,
                                              error=exc.message, error_type=type(exc).__name__))
            else:
                results.append(BulkItemResult(index=index, product_id=update.product_id,
                                              variant_id=update.variant_id, success=True, result=adjusted))
        return results

    def _record(self, product_id: str, variant_id: Optional[str], previous: int, new: int, adjustment: int,
                reason: str, actor_id: str, metadata: Dict[str, Any]) -> str:
        entry = InventoryHistoryEntry(product_id=product_id, variant_id=variant_id, previous_quantity=previous,
                                      new_quantity=new, adjustment=adjustment, reason=reason,
                                      actor_id=actor_id, timestamp=now_utc(), metadata=metadata)
        return str(self.history.insert_one(entry.model_dump()).inserted_id)

    @staticmethod
    def _shortfall(product_id: str, variant_id: Optional[str], requested: int, available: int) -> Dict[str, Any]:
        return {"product_id": product_id, "variant_id": variant_id,
                "requested_quantity": requested, "available_stock": available}

    # ---------------------- Reports ----------------------

    def get_history(self, product_id: Optional[str] = None, variant_id: Optional[str] = None,
                    reason: Optional[str] = None, page: int = 1, limit: int = 20) -> HistoryPage:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        filt: Dict[str, Any] = {}
        if product_id:
            filt["product_id"] = product_id
        if variant_id:
            filt["variant_id"] = variant_id
        if reason:
            filt["reason"] = reason
        total = self.history.count_documents(filt)
        cursor = (self.history.find(filt)
                  .sort([("timestamp", -1), ("_id", -1)])
                  .skip((page - 1) * limit)
                  .limit(limit))
        return HistoryPage(items=[serialize(d) for d in cursor], total=total, page=page,
                           pages=math.ceil(total / limit) if total else 0)

    def _slot_pipeline(self) -> List[Dict[str, Any]]:
        """One document per stock-bearing slot: the product itself, or each of its variants."""
        has_variant = {"$ifNull": ["$variants", False]}

        def pick(field: str, default: Any) -> Dict[str, Any]:
            return {"$cond": [has_variant,
                              {"$ifNull": [f"$variants.{field}", default]},
                              {"$ifNull": [f"${field}", default]}]}

        return [
            {"$unwind": {"path": "$variants", "preserveNullAndEmptyArrays": True}},
            {"$project": {
                "name": 1,
                "variant": "$variants",
                "allow_backorder": {"$ifNull": ["$allow_backorder", False]},
                "stock": pick("stock", 0),
                "reserved": pick("reserved", 0),
                "price": {"$cond": [has_variant, {"$ifNull": ["$variants.price", "$price"]}, "$price"]},
                "threshold": {"$ifNull": ["$low_stock_threshold", self.default_low_stock_threshold]},
            }},
            {"$addFields": {"available": {"$subtract": ["$stock", "$reserved"]}}},
        ]

    @staticmethod
    def _row(doc: Dict[str, Any]) -> StockRow:
        variant = doc.get("variant")
        return StockRow(product_id=str(doc["_id"]), product_name=doc.get("name", ""),
                        variant_id=variant.get("variant_id") if variant else None,
                        variant_details=variant_details(variant), current_stock=doc["stock"],
                        available_stock=max(0, doc["available"]), low_stock_threshold=doc["threshold"])

    def get_metrics(self) -> InventoryMetrics:
        pipeline = self._slot_pipeline() + [
            {"$group": {
                "_id": None,
                "total_products": {"$sum": 1},
                "total_reserved": {"$sum": "$reserved"},
                "total_value": {"$sum": {"$multiply": ["$stock", "$price"]}},
                "out_of_stock_count": {"$sum": {"$cond": [{"$lte": ["$available", 0]}, 1, 0]}},
                "low_stock_count": {"$sum": {"$cond": [
                    {"$and": [{"$gt": ["$available", 0]}, {"$lte": ["$available", "$threshold"]}]}, 1, 0]}},
            }},
        ]
        result = next(iter(self.products.aggregate(pipeline)), None)
        if not result or not result["total_products"]:
            return InventoryMetrics()
        return InventoryMetrics(
            total_products=result["total_products"],
            total_value=round(result["total_value"], 2),
            out_of_stock_count=result["out_of_stock_count"],
            low_stock_count=result["low_stock_count"],
            total_reserved=result["total_reserved"],
        )

    def get_out_of_stock_products(self) -> List[StockRow]:
        pipeline = self._slot_pipeline() + [
            {"$match": {"available": {"$lte": 0}, "allow_backorder": False}},
            {"$sort": {"name": 1, "_id": 1}},
        ]
        return [self._row(doc) for doc in self.products.aggregate(pipeline)]

    def get_low_stock_products(self, threshold: Optional[int] = None) -> List[StockRow]:
        limit = "$threshold" if threshold is None else threshold
        pipeline = self._slot_pipeline() + [
            {"$match": {"$expr": {"$and": [{"$gt": ["$available", 0]}, {"$lte": ["$available", limit]}]}}},
            {"$sort": {"available": 1, "_id": 1}},
        ]
        return [self._row(doc) for doc in self.products.aggregate(pipeline)]

    def get_turnover(self, start: datetime, end: datetime) -> List[TurnoverRow]:
        """Sold quantity over average observed stock, per product/variant, for sales in [start, end].

        The observed levels are the first entry's previous quantity and every
        entry's new quantity in the period.
        """
        if end < start:
            raise ValidationError("end must not be before start")
        is_sale = {"$and": [{"$eq": ["$reason", "sale"]}, {"$lt": ["$adjustment", 0]}]}
        pipeline = [
            {"$match": {"timestamp": {"$gte": start, "$lte": end}}},
            {"$sort": {"timestamp": 1, "_id": 1}},
            {"$group": {
                "_id": {"product_id": "$product_id", "variant_id": "$variant_id"},
                "sold": {"$sum": {"$cond": [is_sale, {"$subtract": [0, "$adjustment"]}, 0]}},
                "first_level": {"$first": "$previous_quantity"},
                "level_sum": {"$sum": "$new_quantity"},
                "entries": {"$sum": 1},
            }},
            {"$match": {"sold": {"$gt": 0}}},
            {"$project": {
                "sold": 1,
                "average_stock": {"$divide": [{"$add": ["$first_level", "$level_sum"]},
                                              {"$add": ["$entries", 1]}]},
            }},
        ]
        groups = list(self.history.aggregate(pipeline))

        names = {}
        ids = [oid(g["_id"]["product_id"]) for g in groups]
        for product in self.products.find({"_id": {"$in": ids}}, {"name": 1}):
            names[str(product["_id"])] = product.get("name")

        rows = []
        for group in groups:
            product_id = group["_id"]["product_id"]
            average = group["average_stock"]
            rows.append(TurnoverRow(
                product_id=product_id,
                product_name=names.get(product_id),
                variant_id=group["_id"].get("variant_id"),
                sold_quantity=group["sold"],
                average_stock=round(average, 2),
                turnover_rate=round(group["sold"] / average, 4) if average > 0 else 0,
                period_start=start,
                period_end=end,
            ))
        return sorted(rows, key=lambda r: r.turnover_rate, reverse=True)
