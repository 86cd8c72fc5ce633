"""
Application errors.

Every error carries the HTTP status code the API layer answers with.
Services raise these; main.py turns them into JSON responses.
"""
from typing import Any, Dict, List, Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    status_code = 400

    def __init__(self, message: str, errors: Optional[Dict[str, List[str]]] = None):
        super().__init__(message)
        self.errors = errors or {}


class NotFoundError(AppError):
    status_code = 404

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found with ID: {resource_id}" if resource_id else f"{resource} not found"
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(AppError):
    status_code = 409

    def __init__(self, resource: str, field: Optional[str] = None):
        message = f"{resource} already exists with the same {field}" if field else f"{resource} already exists"
        super().__init__(message)
        self.resource = resource
        self.field = field


class InsufficientInventoryError(AppError):
    """Stock would go negative, or a checkout line asks for more than is available."""

    status_code = 409

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.details = details or []


class StatusTransitionError(AppError):
    status_code = 400

    def __init__(self, message: str, from_status: str, to_status: str):
        super().__init__(message)
        self.from_status = from_status
        self.to_status = to_status


class InventoryLockFailedError(AppError):
    """Raised when the compare-and-set retry budget runs out."""

    status_code = 409

    def __init__(self, product_id: str, variant_id: Optional[str], attempts: int):
        target = f"{product_id}/{variant_id}" if variant_id else product_id
        super().__init__(f"Could not update inventory for {target} after {attempts} attempts")
        self.product_id = product_id
        self.variant_id = variant_id
        self.attempts = attempts


class PaymentError(AppError):
    status_code = 402


class WebhookSignatureError(ValidationError):
    pass
