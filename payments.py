"""
Payment provider gateway (Stripe Checkout).

The checkout orchestrator talks to a gateway object with three calls:
``create_session``, ``retrieve_session`` and ``construct_event``. Tests swap
in a fake with the same shape.
"""
import json
from typing import Any, Dict, List, Optional

import stripe
import structlog
from pydantic import BaseModel

from errors import PaymentError, WebhookSignatureError
from schemas import OrderItem

logger = structlog.get_logger(__name__)


class PaymentSession(BaseModel):
    id: str
    url: Optional[str] = None
    payment_status: str = "unpaid"
    payment_intent_id: Optional[str] = None
    amount_total: Optional[int] = None
    metadata: Dict[str, str] = {}


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


class StripeGateway:
    def __init__(self, api_key: str, webhook_secret: str, success_url: str, cancel_url: str,
                 currency: str = "usd"):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.currency = currency

    def _session(self, session: Any) -> PaymentSession:
        intent = session["payment_intent"]
        if intent is not None and not isinstance(intent, str):
            intent = intent["id"]
        return PaymentSession(
            id=session["id"],
            url=session["url"],
            payment_status=session["payment_status"],
            payment_intent_id=intent,
            amount_total=session["amount_total"],
            metadata=dict(session["metadata"] or {}),
        )

    def create_session(self, lines: List[OrderItem], metadata: Dict[str, str],
                       discount_percentage: float = 0) -> PaymentSession:
        line_items = [
            {
                "price_data": {
                    "currency": self.currency,
                    "product_data": {"name": line.name},
                    "unit_amount": to_cents(line.price),
                },
                "quantity": line.quantity,
            }
            for line in lines
        ]
        try:
            discounts = []
            if discount_percentage > 0:
                coupon = stripe.Coupon.create(api_key=self.api_key, percent_off=discount_percentage,
                                              duration="once")
                discounts.append({"coupon": coupon["id"]})
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                payment_method_types=["card"],
                line_items=line_items,
                mode="payment",
                success_url=f"{self.success_url}?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=self.cancel_url,
                discounts=discounts,
                metadata=metadata,
            )
        except stripe.StripeError as exc:
            logger.error("payments.session.create_failed", error=str(exc))
            raise PaymentError(f"Could not create payment session: {exc.user_message or exc}")
        return self._session(session)

    def retrieve_session(self, session_id: str) -> PaymentSession:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            logger.error("payments.session.retrieve_failed", session_id=session_id, error=str(exc))
            raise PaymentError(f"Could not retrieve payment session: {exc.user_message or exc}")
        return self._session(session)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the webhook signature and return the event as a plain dict."""
        if not signature:
            raise WebhookSignatureError("Missing Stripe signature")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError:
            raise WebhookSignatureError("Invalid webhook payload")
        except stripe.SignatureVerificationError:
            raise WebhookSignatureError("Invalid webhook signature")
        return json.loads(payload)
