from errors import (
    AppError,
    ConflictError,
    InsufficientInventoryError,
    InventoryLockFailedError,
    NotFoundError,
    PaymentError,
    StatusTransitionError,
    ValidationError,
    WebhookSignatureError,
)


def test_status_codes():
    assert AppError("boom").status_code == 500
    assert AppError("teapot", 418).status_code == 418
    assert ValidationError("bad").status_code == 400
    assert NotFoundError("Order").status_code == 404
    assert ConflictError("Coupon", "code").status_code == 409
    assert InsufficientInventoryError("short").status_code == 409
    assert StatusTransitionError("no", "refunded", "pending").status_code == 400
    assert InventoryLockFailedError("p1", None, 4).status_code == 409
    assert PaymentError("declined").status_code == 402
    assert WebhookSignatureError("forged").status_code == 400


def test_messages():
    assert NotFoundError("Order", "abc").message == "Order not found with ID: abc"
    assert NotFoundError("Coupon").message == "Coupon not found"
    assert ConflictError("Discount code", "code").message == "Discount code already exists with the same code"
    assert InventoryLockFailedError("p1", "v1", 4).message == "Could not update inventory for p1/v1 after 4 attempts"


def test_hierarchy():
    assert issubclass(WebhookSignatureError, ValidationError)
    assert all(issubclass(cls, AppError) for cls in (ValidationError, NotFoundError, PaymentError))
