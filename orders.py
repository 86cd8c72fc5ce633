"""
Order queries and status changes.

Every status change goes through the order status validator and is written
as a compare-and-set on the current status, so two admins racing on the same
order cannot both win.
"""
import math
from typing import Any, Dict, List, Optional

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database

from database import now_utc, oid, serialize
from errors import AppError, NotFoundError, ValidationError
from order_status import ORDER_STATUSES, StatusTransition, validate_bulk_transitions, validate_transition
from schemas import StatusChange

logger = structlog.get_logger(__name__)


def history_entry(from_status: Optional[str], to_status: str, actor_id: Optional[str] = None,
                  reason: Optional[str] = None) -> Dict[str, Any]:
    change = StatusChange(from_status=from_status, to_status=to_status, timestamp=now_utc(),
                          actor_id=actor_id, reason=reason)
    return change.model_dump(by_alias=True)


class OrderService:
    def __init__(self, db: Database):
        self.orders = db["order"]

    def get_order(self, order_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        filt: Dict[str, Any] = {"_id": oid(order_id)}
        if user_id:
            filt["user_id"] = user_id
        order = self.orders.find_one(filt)
        if not order:
            raise NotFoundError("Order", order_id)
        return serialize(order)

    def list_orders(self, user_id: Optional[str] = None, status: Optional[str] = None,
                    page: int = 1, limit: int = 20) -> Dict[str, Any]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        filt: Dict[str, Any] = {}
        if user_id:
            filt["user_id"] = user_id
        if status:
            if status not in ORDER_STATUSES:
                raise ValidationError(f"Unknown order status: {status}")
            filt["status"] = status
        total = self.orders.count_documents(filt)
        cursor = self.orders.find(filt).sort([("created_at", -1), ("_id", -1)]).skip((page - 1) * limit).limit(limit)
        return {
            "orders": [serialize(o) for o in cursor],
            "total": total,
            "page": page,
            "pages": math.ceil(total / limit) if total else 0,
        }

    def update_status(self, order_id: str, status: str, actor_id: Optional[str] = None,
                      reason: Optional[str] = None) -> Dict[str, Any]:
        order = self.orders.find_one({"_id": oid(order_id)})
        if not order:
            raise NotFoundError("Order", order_id)
        current = order["status"]
        validate_transition(current, status)

        updated = self.orders.find_one_and_update(
            {"_id": order["_id"], "status": current},
            {
                "$set": {"status": status, "updated_at": now_utc()},
                "$push": {"status_history": history_entry(current, status, actor_id, reason)},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise AppError("Order status changed concurrently, please retry", 409)
        logger.info("order.status.updated", order_id=order_id, from_status=current, to_status=status,
                    actor_id=actor_id)
        return serialize(updated)

    def bulk_update_status(self, order_ids: List[str], status: str, actor_id: Optional[str] = None,
                           reason: Optional[str] = None) -> Dict[str, Any]:
        """Apply ``status`` to every order that may legally move to it; report the rest."""
        if not order_ids:
            raise ValidationError("At least one order id is required")
        found = {str(o["_id"]): o for o in self.orders.find({"_id": {"$in": [oid(i) for i in order_ids]}})}
        missing = [i for i in order_ids if i not in found]

        check = validate_bulk_transitions([
            StatusTransition(order_id=i, from_status=found[i]["status"], to_status=status,
                             actor_id=actor_id, reason=reason)
            for i in order_ids if i in found
        ])

        updated, conflicts = [], []
        for t in check.valid:
            res = self.orders.update_one(
                {"_id": oid(t.order_id), "status": t.from_status},
                {
                    "$set": {"status": status, "updated_at": now_utc()},
                    "$push": {"status_history": history_entry(t.from_status, status, actor_id, reason)},
                },
            )
            if res.modified_count:
                updated.append(t.order_id)
            else:
                conflicts.append(t.order_id)

        logger.info("order.status.bulk_updated", to_status=status, updated=len(updated),
                    invalid=len(check.invalid), missing=len(missing), conflicts=len(conflicts))
        return {
            "updated": updated,
            "invalid": [{"order_id": t.order_id, "from": t.from_status, "error": t.error} for t in check.invalid],
            "missing": missing,
            "conflicts": conflicts,
        }

    def get_stats(self) -> Dict[str, Any]:
        breakdown = {s: 0 for s in ORDER_STATUSES}
        revenue = 0.0
        total = 0
        pipeline = [{"$group": {"_id": "$status", "count": {"$sum": 1},
                                "amount": {"$sum": {"$ifNull": ["$total_amount", 0]}}}}]
        for group in self.orders.aggregate(pipeline):
            total += group["count"]
            breakdown[group["_id"]] = group["count"]
            if group["_id"] == "completed":
                revenue = group["amount"]
        return {
            "total_orders": total,
            "total_revenue": round(revenue, 2),
            "average_order_value": round(revenue / breakdown["completed"], 2) if breakdown["completed"] else 0,
            "status_breakdown": breakdown,
        }
