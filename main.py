from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool

from cart import CartService
from checkout import CheckoutService
from config import Settings, get_settings
from coupons import CouponService
from database import connect, create_document, ensure_indexes
from errors import AppError, InsufficientInventoryError, ValidationError
from inventory import InventoryService
from logger import configure_logging
from order_status import valid_next_statuses
from orders import OrderService
from payments import StripeGateway
from products import ProductService
from schemas import CartItem, Coupon, CouponUpdate, InventoryUpdate, OrderStatus, Product, ProductUpdate, User

logger = structlog.get_logger(__name__)


class Services:
    def __init__(self, settings: Settings, db: Database, gateway: Any):
        self.settings = settings
        self.db = db
        self.products = ProductService(db)
        self.inventory = InventoryService(
            db,
            max_retries=settings.inventory_max_retries,
            base_delay=settings.inventory_retry_base_delay,
            default_low_stock_threshold=settings.default_low_stock_threshold,
        )
        self.coupons = CouponService(db, gift_percentage=settings.gift_coupon_percentage,
                                     gift_days=settings.gift_coupon_days)
        self.cart = CartService(db, self.coupons)
        self.orders = OrderService(db)
        self.checkout = CheckoutService(db, self.inventory, self.coupons, self.cart, gateway,
                                        gift_threshold=settings.gift_coupon_threshold)


def services(request: Request) -> Services:
    return request.app.state.services


def require_admin(request: Request, x_admin_key: str = Header(None)) -> None:
    if x_admin_key != request.app.state.services.settings.admin_key:
        raise HTTPException(401, "Unauthorized")


router = APIRouter()
admin = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])

# ---------------------- Models ----------------------

class CartQuantityBody(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int


class CouponCodeBody(BaseModel):
    code: str


class CouponCheckBody(BaseModel):
    code: str
    cart_total: Optional[float] = None


class CheckoutBody(BaseModel):
    items: Optional[List[CartItem]] = None
    coupon_code: Optional[str] = None


class StatusBody(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None


class BulkStatusBody(BaseModel):
    order_ids: List[str]
    status: OrderStatus
    reason: Optional[str] = None


class BulkInventoryBody(BaseModel):
    updates: List[InventoryUpdate]

# ---------------------- Root & Health ----------------------

@router.get("/")
def read_root():
    return {"message": "Storefront API running"}


@router.get("/test")
def test_database(svc: Services = Depends(services)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": svc.db.name,
        "collections": [],
    }
    try:
        response["collections"] = svc.db.list_collection_names()
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response

# ---------------------- Users ----------------------

@router.post("/users")
def create_user(body: User, svc: Services = Depends(services)):
    if svc.db["user"].find_one({"email": body.email}):
        raise ValidationError("Email already registered")
    return {"_id": create_document(svc.db, "user", body.model_dump())}

# ---------------------- Products ----------------------

@router.get("/products")
def list_products(q: Optional[str] = None, min_price: Optional[float] = None, max_price: Optional[float] = None,
                  limit: int = 50, svc: Services = Depends(services)):
    return svc.products.list_products(q, min_price, max_price, limit)


@router.get("/products/{pid}")
def get_product(pid: str, svc: Services = Depends(services)):
    return svc.products.get_product(pid)


@router.get("/products/{pid}/availability")
def product_availability(pid: str, variant_id: Optional[str] = None, quantity: int = Query(1, ge=1),
                         svc: Services = Depends(services)):
    info = svc.inventory.get_product_inventory_info(pid, variant_id)
    return {**info.model_dump(), "available": quantity <= info.available_stock}


@admin.post("/products")
def admin_create_product(body: Product, svc: Services = Depends(services)):
    return svc.products.create_product(body)


@admin.put("/products/{pid}")
def admin_update_product(pid: str, body: ProductUpdate, svc: Services = Depends(services)):
    return svc.products.update_product(pid, body)


@admin.delete("/products/{pid}")
def admin_delete_product(pid: str, svc: Services = Depends(services)):
    svc.products.delete_product(pid)
    return {"ok": True}

# ---------------------- Cart ----------------------

@router.get("/cart")
def get_cart(user_id: str = Query(...), svc: Services = Depends(services)):
    return svc.cart.get_cart(user_id)


@router.post("/cart/add")
def add_to_cart(item: CartItem, user_id: str = Query(...), svc: Services = Depends(services)):
    return svc.cart.add_item(user_id, item)


@router.post("/cart/update")
def update_cart_item(body: CartQuantityBody, user_id: str = Query(...), svc: Services = Depends(services)):
    return svc.cart.update_quantity(user_id, body.product_id, body.variant_id, body.quantity)


@router.post("/cart/remove")
def remove_from_cart(item: CartItem, user_id: str = Query(...), svc: Services = Depends(services)):
    return svc.cart.remove_item(user_id, item.product_id, item.variant_id)


@router.delete("/cart")
def clear_cart(user_id: str = Query(...), svc: Services = Depends(services)):
    svc.cart.clear(user_id)
    return {"ok": True}


@router.post("/cart/coupon")
def apply_cart_coupon(body: CouponCodeBody, user_id: str = Query(...), svc: Services = Depends(services)):
    return svc.cart.apply_coupon(user_id, body.code)


@router.delete("/cart/coupon")
def remove_cart_coupon(user_id: str = Query(...), svc: Services = Depends(services)):
    return svc.cart.remove_coupon(user_id)

# ---------------------- Coupons ----------------------

@router.post("/coupons/validate")
def validate_coupon(body: CouponCheckBody, user_id: Optional[str] = None, svc: Services = Depends(services)):
    return svc.coupons.validate(body.code, user_id, body.cart_total)


@router.get("/coupons/mine")
def my_coupon(user_id: str = Query(...), svc: Services = Depends(services)):
    return svc.coupons.get_user_coupon(user_id)


@admin.get("/coupons")
def admin_list_coupons(status: str = "all", search: Optional[str] = None, page: int = Query(1, ge=1),
                       limit: int = Query(20, ge=1, le=100), svc: Services = Depends(services)):
    return svc.coupons.list_coupons(status, search, page, limit)


@admin.post("/coupons")
def admin_add_coupon(body: Coupon, svc: Services = Depends(services)):
    return svc.coupons.create(body)


@admin.put("/coupons/{cid}")
def admin_update_coupon(cid: str, body: CouponUpdate, svc: Services = Depends(services)):
    return svc.coupons.update(cid, body)


@admin.delete("/coupons/{cid}")
def admin_delete_coupon(cid: str, svc: Services = Depends(services)):
    return svc.coupons.delete(cid)

# ---------------------- Checkout & Payments ----------------------

@router.post("/checkout/session")
def create_checkout_session(body: CheckoutBody, user_id: str = Query(...), svc: Services = Depends(services)):
    items = body.items if body.items is not None else svc.cart.get_items(user_id)
    return svc.checkout.create_checkout_session(user_id, items, body.coupon_code)


@router.get("/checkout/success")
def checkout_success(session_id: str = Query(...), svc: Services = Depends(services)):
    return svc.checkout.confirm_from_redirect(session_id)


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None),
                         svc: Services = Depends(services)):
    payload = await request.body()
    return await run_in_threadpool(svc.checkout.handle_webhook, payload, stripe_signature)

# ---------------------- Orders ----------------------

@router.get("/orders")
def list_orders(user_id: str = Query(...), status: Optional[str] = None, page: int = Query(1, ge=1),
                limit: int = Query(20, ge=1, le=100), svc: Services = Depends(services)):
    return svc.orders.list_orders(user_id, status, page, limit)


@router.get("/orders/{order_id}")
def get_order(order_id: str, user_id: str = Query(...), svc: Services = Depends(services)):
    return svc.orders.get_order(order_id, user_id)


@admin.get("/orders")
def admin_list_orders(user_id: Optional[str] = None, status: Optional[str] = None, page: int = Query(1, ge=1),
                      limit: int = Query(20, ge=1, le=100), svc: Services = Depends(services)):
    return svc.orders.list_orders(user_id, status, page, limit)


@admin.get("/orders/stats")
def admin_order_stats(svc: Services = Depends(services)):
    return svc.orders.get_stats()


@admin.get("/orders/{order_id}")
def admin_get_order(order_id: str, svc: Services = Depends(services)):
    order = svc.orders.get_order(order_id)
    return {**order, "valid_next_statuses": valid_next_statuses(order["status"])}


@admin.put("/orders/{order_id}/status")
def admin_update_order_status(order_id: str, body: StatusBody, x_actor_id: str = Header("admin"),
                              svc: Services = Depends(services)):
    return svc.orders.update_status(order_id, body.status, x_actor_id, body.reason)


@admin.post("/orders/bulk-status")
def admin_bulk_order_status(body: BulkStatusBody, x_actor_id: str = Header("admin"),
                            svc: Services = Depends(services)):
    return svc.orders.bulk_update_status(body.order_ids, body.status, x_actor_id, body.reason)

# ---------------------- Admin: Inventory ----------------------

@admin.get("/inventory/metrics")
def admin_inventory_metrics(svc: Services = Depends(services)):
    return svc.inventory.get_metrics()


@admin.get("/inventory/low-stock")
def admin_low_stock(threshold: Optional[int] = Query(None, ge=0), svc: Services = Depends(services)):
    return svc.inventory.get_low_stock_products(threshold)


@admin.get("/inventory/out-of-stock")
def admin_out_of_stock(svc: Services = Depends(services)):
    return svc.inventory.get_out_of_stock_products()


@admin.get("/inventory/turnover")
def admin_turnover(start: datetime, end: datetime, svc: Services = Depends(services)):
    return svc.inventory.get_turnover(start, end)


@admin.get("/inventory/history")
def admin_inventory_history(product_id: Optional[str] = None, variant_id: Optional[str] = None,
                            reason: Optional[str] = None, page: int = Query(1, ge=1),
                            limit: int = Query(20, ge=1, le=100), svc: Services = Depends(services)):
    return svc.inventory.get_history(product_id, variant_id, reason, page, limit)


@admin.post("/inventory/adjust")
def admin_adjust_inventory(body: InventoryUpdate, x_actor_id: str = Header("admin"),
                           svc: Services = Depends(services)):
    return svc.inventory.update_inventory(body.product_id, body.variant_id, body.adjustment, body.reason,
                                          x_actor_id, body.metadata)


@admin.post("/inventory/bulk")
def admin_bulk_inventory(body: BulkInventoryBody, x_actor_id: str = Header("admin"),
                         svc: Services = Depends(services)):
    results = svc.inventory.bulk_update_inventory(body.updates, x_actor_id)
    return {
        "results": results,
        "succeeded": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success),
    }


@admin.get("/inventory/{pid}")
def admin_product_inventory(pid: str, variant_id: Optional[str] = None, svc: Services = Depends(services)):
    return svc.inventory.get_product_inventory_info(pid, variant_id)

# ---------------------- App ----------------------

def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None,
               gateway: Any = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.json_logs)
    if db is None:
        db = connect(settings.database_url, settings.database_name)
        ensure_indexes(db)
    if gateway is None:
        gateway = StripeGateway(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            success_url=f"{settings.client_url}/purchase-success",
            cancel_url=f"{settings.client_url}/purchase-cancel",
            currency=settings.currency,
        )

    app = FastAPI(title="Storefront API", version="1.0.0")
    app.state.services = Services(settings, db, gateway)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        content: Dict[str, Any] = {"detail": exc.message}
        if isinstance(exc, InsufficientInventoryError) and exc.details:
            content["details"] = exc.details
        if isinstance(exc, ValidationError) and exc.errors:
            content["errors"] = exc.errors
        if exc.status_code >= 500:
            logger.error("request.failed", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=content)

    app.include_router(router)
    app.include_router(admin)
    return app


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
