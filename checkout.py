"""
Checkout: payment session creation, order creation on confirmed payment,
and webhook handling.

Order creation is idempotent on the payment session id. The unique index on
``order.payment_session_id`` decides between concurrent deliveries of the
same confirmation; the loser returns the winner's order without side
effects. Once an order exists the customer has paid, so inventory and coupon
follow-ups are logged and recorded on the order rather than raised.
"""
from datetime import datetime, time as dtime
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from cart import CartService, price_lines
from coupons import CouponService
from database import now_utc, oid
from errors import AppError, InsufficientInventoryError, NotFoundError, PaymentError, ValidationError
from inventory import InventoryService
from orders import history_entry
from pricing import calculate_totals
from schemas import CartItem, CheckoutSession, Order, OrderItem, WebhookEvent

logger = structlog.get_logger(__name__)


class CheckoutStart(BaseModel):
    session_id: str
    url: Optional[str] = None
    subtotal: float
    discount: float
    total: float
    coupon_code: Optional[str] = None


class OrderConfirmation(BaseModel):
    order_id: str
    order_number: str
    status: str
    total_amount: float
    created: bool
    inventory_issues: List[str] = []
    gift_coupon_code: Optional[str] = None


class WebhookResult(BaseModel):
    event_id: str
    type: str
    duplicate: bool = False
    ignored: bool = False
    order_id: Optional[str] = None


class CheckoutService:
    def __init__(self, db: Database, inventory: InventoryService, coupons: CouponService, cart: CartService,
                 gateway: Any, gift_threshold: float = 200.0):
        self.db = db
        self.orders = db["order"]
        self.sessions = db["checkout_session"]
        self.events = db["webhook_event"]
        self.inventory = inventory
        self.coupons = coupons
        self.cart = cart
        self.gateway = gateway
        self.gift_threshold = gift_threshold

    # ---------------------- Session ----------------------

    def create_checkout_session(self, user_id: str, items: List[CartItem],
                                coupon_code: Optional[str] = None) -> CheckoutStart:
        if not items:
            raise ValidationError("Cart is empty")
        if not self.db["user"].find_one({"_id": oid(user_id)}):
            raise NotFoundError("User", user_id)

        lines = price_lines(self.db["product"], [it.model_dump() for it in items], strict=True)
        shortfalls = []
        for line in lines:
            available = self.inventory.get_available_inventory(line.product_id, line.variant_id)
            if line.quantity > available:
                shortfalls.append({"product_id": line.product_id, "variant_id": line.variant_id,
                                   "name": line.name, "requested_quantity": line.quantity,
                                   "available_stock": available})
        if shortfalls:
            names = ", ".join(s["name"] or s["product_id"] for s in shortfalls)
            raise InsufficientInventoryError(f"Insufficient stock for: {names}", shortfalls)

        coupon = None
        if coupon_code:
            coupon = self.coupons.find_for_user(coupon_code, user_id)
            if coupon is None:
                raise ValidationError("Coupon not found")
        totals = calculate_totals(lines, coupon, user_id=user_id)
        if totals.coupon is not None and not totals.coupon.valid:
            raise ValidationError(totals.coupon.reason)
        code = totals.coupon.code if totals.coupon else None

        order_items = [
            OrderItem(product_id=l.product_id, variant_id=l.variant_id, name=l.name,
                      price=l.unit_price, quantity=l.quantity)
            for l in lines
        ]
        session = self.gateway.create_session(
            order_items,
            metadata={"user_id": user_id, "coupon_code": code or ""},
            discount_percentage=totals.coupon.discount_percentage if totals.coupon else 0,
        )
        snapshot = CheckoutSession(user_id=user_id, lines=order_items, coupon_code=code,
                                   subtotal=totals.subtotal, discount=totals.discount, total=totals.total)
        self.sessions.insert_one({"_id": session.id, **snapshot.model_dump(),
                                  "created_at": now_utc(), "updated_at": now_utc()})
        logger.info("checkout.session.created", session_id=session.id, user_id=user_id,
                    total=totals.total, coupon_code=code)
        return CheckoutStart(session_id=session.id, url=session.url, subtotal=totals.subtotal,
                             discount=totals.discount, total=totals.total, coupon_code=code)

    # ---------------------- Confirmation ----------------------

    def _confirmation(self, order: Dict[str, Any], created: bool,
                      gift_coupon_code: Optional[str] = None) -> OrderConfirmation:
        return OrderConfirmation(
            order_id=str(order["_id"]),
            order_number=order["order_number"],
            status=order["status"],
            total_amount=order["total_amount"],
            created=created,
            inventory_issues=order.get("inventory_issues") or [],
            gift_coupon_code=gift_coupon_code,
        )

    def _order_number(self) -> str:
        now = now_utc()
        start = datetime.combine(now.date(), dtime.min, tzinfo=now.tzinfo)
        count = self.orders.count_documents({"created_at": {"$gte": start}})
        return f"ORD-{now:%Y%m%d}-{count + 1:04d}"

    def _stock_issues(self, lines: List[OrderItem]) -> List[str]:
        requested: Dict[tuple, int] = {}
        names: Dict[tuple, str] = {}
        for line in lines:
            key = (line.product_id, line.variant_id)
            requested[key] = requested.get(key, 0) + line.quantity
            names.setdefault(key, line.name)
        issues = []
        for (product_id, variant_id), quantity in requested.items():
            name = names[(product_id, variant_id)]
            try:
                available = self.inventory.get_available_inventory(product_id, variant_id)
            except NotFoundError:
                issues.append(f"{name}: product no longer exists")
                continue
            if quantity > available:
                issues.append(f"{name}: requested {quantity}, available {available}")
        return issues

    def confirm_payment(self, session_id: str, payment_intent_id: Optional[str] = None,
                        event_id: Optional[str] = None) -> OrderConfirmation:
        log = logger.bind(session_id=session_id, event_id=event_id)
        existing = self.orders.find_one({"payment_session_id": session_id})
        if existing:
            log.info("checkout.order.already_exists", order_id=str(existing["_id"]))
            return self._confirmation(existing, created=False)

        doc = self.sessions.find_one({"_id": session_id})
        if not doc:
            raise NotFoundError("Checkout session", session_id)
        snapshot = CheckoutSession(**doc)
        user_id = snapshot.user_id

        issues = self._stock_issues(snapshot.lines)
        status = "pending_inventory" if issues else "completed"
        if issues:
            log.warning("checkout.inventory.validation_failed", issues=issues)

        order = Order(
            order_number=self._order_number(),
            user_id=user_id,
            items=snapshot.lines,
            subtotal=snapshot.subtotal,
            discount=snapshot.discount,
            total_amount=snapshot.total,
            coupon_code=snapshot.coupon_code,
            payment_session_id=session_id,
            payment_intent_id=payment_intent_id,
            webhook_event_id=event_id,
            status=status,
            inventory_issues=issues,
        ).model_dump(by_alias=True)
        reason = "Payment confirmed with inventory issues" if issues else "Payment confirmed"
        order["status_history"] = [history_entry("pending", status, user_id, reason)]
        order.update({"created_at": now_utc(), "updated_at": now_utc()})
        try:
            order["_id"] = self.orders.insert_one(order).inserted_id
        except DuplicateKeyError:
            winner = self.orders.find_one({"payment_session_id": session_id})
            log.info("checkout.order.duplicate_delivery", order_id=str(winner["_id"]))
            return self._confirmation(winner, created=False)
        order_id = str(order["_id"])
        log = log.bind(order_id=order_id, order_number=order["order_number"])
        log.info("checkout.order.created", status=status, total=snapshot.total)

        if status == "completed":
            failed = []
            for line in snapshot.lines:
                try:
                    self.inventory.update_inventory(
                        line.product_id, line.variant_id, -line.quantity, "sale", user_id,
                        {"order_id": order_id, "order_number": order["order_number"], "webhook_event_id": event_id},
                    )
                except AppError as exc:
                    log.error("checkout.inventory.decrement_failed", product_id=line.product_id,
                              variant_id=line.variant_id, error=exc.message)
                    failed.append(f"{line.name}: {exc.message}")
            if failed:
                self.orders.update_one({"_id": order["_id"]}, {"$push": {"inventory_issues": {"$each": failed}}})
                order["inventory_issues"] = issues + failed

        if snapshot.coupon_code:
            try:
                self.coupons.increment_usage(snapshot.coupon_code, user_id)
            except AppError as exc:
                log.warning("checkout.coupon.usage_failed", coupon_code=snapshot.coupon_code, error=exc.message)

        self.cart.clear(user_id)

        gift_code = None
        if snapshot.total >= self.gift_threshold:
            try:
                gift_code = self.coupons.create_gift_coupon(user_id)["code"]
            except AppError as exc:
                log.warning("checkout.gift_coupon.failed", error=exc.message)

        self.sessions.update_one({"_id": session_id},
                                 {"$set": {"status": "completed", "order_id": order_id, "updated_at": now_utc()}})
        return self._confirmation(order, created=True, gift_coupon_code=gift_code)

    def confirm_from_redirect(self, session_id: str) -> OrderConfirmation:
        session = self.gateway.retrieve_session(session_id)
        if session.payment_status != "paid":
            raise PaymentError("Payment not completed")
        return self.confirm_payment(session.id, session.payment_intent_id)

    # ---------------------- Webhooks ----------------------

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        event = self.gateway.construct_event(payload, signature)
        event_id, event_type = event["id"], event["type"]
        log = logger.bind(event_id=event_id, event_type=event_type)

        record = self.events.find_one_and_update(
            {"_id": event_id},
            {"$setOnInsert": {**WebhookEvent(type=event_type).model_dump(), "received_at": now_utc()}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        if record.get("processed"):
            log.info("webhook.duplicate")
            return WebhookResult(event_id=event_id, type=event_type, duplicate=True,
                                 order_id=record.get("order_id"))

        try:
            result = self._dispatch(event_type, event["data"]["object"], event_id)
        except Exception as exc:
            message = exc.message if isinstance(exc, AppError) else str(exc)
            self.events.update_one({"_id": event_id}, {"$inc": {"attempts": 1}, "$set": {"error": message}})
            log.error("webhook.failed", error=message)
            raise

        self.events.update_one(
            {"_id": event_id},
            {"$inc": {"attempts": 1},
             "$set": {"processed": True, "order_id": result.order_id, "error": None, "processed_at": now_utc()}},
        )
        log.info("webhook.processed", ignored=result.ignored, order_id=result.order_id)
        return result

    def _dispatch(self, event_type: str, obj: Dict[str, Any], event_id: str) -> WebhookResult:
        result = WebhookResult(event_id=event_id, type=event_type)
        metadata = obj.get("metadata") or {}
        if event_type == "checkout.session.completed":
            if obj.get("payment_status") != "paid":
                result.ignored = True
                return result
            result.order_id = self.confirm_payment(obj["id"], obj.get("payment_intent"), event_id).order_id
        elif event_type == "payment_intent.succeeded" and metadata.get("checkout_session_id"):
            result.order_id = self.confirm_payment(metadata["checkout_session_id"], obj["id"], event_id).order_id
        elif event_type == "payment_intent.payment_failed" and metadata.get("checkout_session_id"):
            error = (obj.get("last_payment_error") or {}).get("message")
            self.sessions.update_one(
                {"_id": metadata["checkout_session_id"], "status": "open"},
                {"$set": {"status": "failed", "failure_reason": error, "updated_at": now_utc()}},
            )
            logger.warning("checkout.payment.failed", session_id=metadata["checkout_session_id"], error=error)
        else:
            result.ignored = True
        return result
