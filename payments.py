"""
Stripe payments and webhook reconciliation.

Webhook deliveries are verified against STRIPE_WEBHOOK_SECRET before the body
is parsed. The order id is read from the intent's `metadata.order_id`, with
`metadata.orderId` accepted as well. Both order transitions are conditional updates, so Stripe's
at-least-once redelivery leaves the order unchanged the second time:

    payment_intent.succeeded       payment_status != paid    -> paid / processing
    payment_intent.payment_failed  payment_status == pending -> failed / cancelled
"""
import json
import logging
from typing import Any, Dict, List, Optional, Union

import stripe
from pymongo import ReturnDocument
from pymongo.database import Database

import config
from auth import Principal
from database import now_utc, parse_object_id, serialize_document
from errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    SignatureError,
    UpstreamError,
    ValidationError,
)

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE = 300
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


def metadata_order_id(metadata) -> Optional[str]:
    """Order id carried in payment intent metadata, under either `order_id` or `orderId`."""
    metadata = metadata or {}
    return metadata.get("order_id") or metadata.get("orderId")


class PaymentService:
    def __init__(self, db: Database, webhook_secret: Optional[str] = None, api_key: Optional[str] = None):
        self.db = db
        self.webhook_secret = webhook_secret if webhook_secret is not None else config.STRIPE_WEBHOOK_SECRET
        self.api_key = api_key if api_key is not None else config.STRIPE_SECRET_KEY

    # ---------- webhook ----------

    def handle_webhook(self, payload: Union[bytes, str], signature_header: Optional[str]) -> Dict[str, bool]:
        try:
            stripe.WebhookSignature.verify_header(payload, signature_header, self.webhook_secret,
                                                  SIGNATURE_TOLERANCE)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise SignatureError(f"Webhook Error: {exc}")
        try:
            event = json.loads(payload)
        except ValueError:
            raise SignatureError("Webhook Error: malformed payload")

        event_type = event.get("type")
        intent = (event.get("data") or {}).get("object") or {}
        logger.info("Webhook %s received for %s", event_type, intent.get("id"))
        order_id = metadata_order_id(intent.get("metadata"))

        if event_type == PAYMENT_SUCCEEDED:
            if order_id:
                self.mark_paid(order_id, intent.get("id"))
        elif event_type == PAYMENT_FAILED:
            if order_id:
                self.mark_failed(order_id)
        else:
            logger.info("Unhandled event type %s", event_type)
        return {"received": True}

    def mark_paid(self, order_id: str, payment_intent_id: str) -> Optional[dict]:
        """Apply the payment-succeeded transition; returns None when the order is unknown or already paid."""
        try:
            object_id = parse_object_id(order_id, "Order")
        except NotFoundError:
            logger.warning("Payment succeeded for unknown order id %s", order_id)
            return None
        updated = self.db["order"].find_one_and_update(
            {"_id": object_id, "payment_status": {"$ne": "paid"}},
            {"$set": {
                "payment_status": "paid",
                "payment_method": "stripe",
                "stripe_payment_intent_id": payment_intent_id,
                "status": "processing",
                "updated_at": now_utc(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        if updated:
            logger.info("Order %s marked paid (%s)", order_id, payment_intent_id)
        else:
            logger.info("Order %s already paid or missing, succeeded event ignored", order_id)
        return serialize_document(updated)

    def mark_failed(self, order_id: str) -> Optional[dict]:
        try:
            object_id = parse_object_id(order_id, "Order")
        except NotFoundError:
            logger.warning("Payment failed for unknown order id %s", order_id)
            return None
        updated = self.db["order"].find_one_and_update(
            {"_id": object_id, "payment_status": "pending"},
            {"$set": {"payment_status": "failed", "status": "cancelled", "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated:
            logger.info("Order %s payment failed, order cancelled", order_id)
        else:
            logger.info("Order %s not awaiting payment, failed event ignored", order_id)
        return serialize_document(updated)

    # ---------- API calls ----------

    def create_payment_intent(self, amount: float, currency: str, order_id: str, items: List[dict],
                              user: Optional[Principal] = None) -> Dict[str, Any]:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=to_cents(amount),
                currency=currency.lower(),
                metadata={
                    "order_id": str(order_id),
                    "user_id": user.id if user else "guest",
                    "items": json.dumps(items or []),
                },
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as exc:
            logger.error("Payment intent creation failed: %s", exc)
            raise UpstreamError(f"Failed to create payment intent: {exc}")
        return {"client_secret": intent.client_secret, "payment_intent_id": intent.id}

    def confirm_payment(self, payment_intent_id: str, order_id: str) -> dict:
        """Mark an order paid from a client-reported intent.

        The intent must have succeeded, must name this order in its metadata and
        must cover the order total; otherwise the order is left untouched.
        """
        object_id = parse_object_id(order_id, "Order")
        order = self.db["order"].find_one({"_id": object_id})
        if not order:
            raise NotFoundError("Order not found")
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            logger.error("Payment intent lookup failed: %s", exc)
            raise UpstreamError(f"Failed to confirm payment: {exc}")
        if intent.status != "succeeded":
            raise InvalidStateError(f"Payment not completed (status: {intent.status})")
        if metadata_order_id(getattr(intent, "metadata", None)) != order_id:
            logger.warning("Payment intent %s does not belong to order %s", payment_intent_id, order_id)
            raise ForbiddenError("Payment intent does not belong to this order")
        if (getattr(intent, "amount", None) or 0) < to_cents(order.get("total_amount") or 0):
            logger.warning("Payment intent %s amount %s is below order %s total",
                           payment_intent_id, getattr(intent, "amount", None), order_id)
            raise InvalidStateError("Payment amount does not cover the order total")

        self.mark_paid(order_id, payment_intent_id)
        return serialize_document(self.db["order"].find_one({"_id": object_id}))

    def create_customer(self, user: Principal, email: Optional[str] = None, name: Optional[str] = None) -> str:
        account = self.db["user"].find_one({"_id": parse_object_id(user.id, "User")})
        if not account:
            raise NotFoundError("User not found")
        if account.get("stripe_customer_id"):
            return account["stripe_customer_id"]
        try:
            customer = stripe.Customer.create(
                api_key=self.api_key,
                email=email or account.get("email"),
                name=name or account.get("name"),
                metadata={"user_id": user.id},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe customer creation failed: %s", exc)
            raise UpstreamError(f"Failed to create customer: {exc}")
        self.db["user"].update_one({"_id": account["_id"]}, {"$set": {"stripe_customer_id": customer.id}})
        logger.info("Stripe customer %s created for user %s", customer.id, user.id)
        return customer.id

    def _customer_id(self, user: Principal) -> Optional[str]:
        account = self.db["user"].find_one({"_id": parse_object_id(user.id, "User")}, {"stripe_customer_id": 1})
        return (account or {}).get("stripe_customer_id")

    def list_payment_methods(self, user: Principal) -> List[dict]:
        customer_id = self._customer_id(user)
        if not customer_id:
            return []
        try:
            methods = stripe.PaymentMethod.list(api_key=self.api_key, customer=customer_id, type="card")
        except stripe.StripeError as exc:
            logger.error("Listing payment methods failed: %s", exc)
            raise UpstreamError(f"Failed to fetch payment methods: {exc}")
        return [
            {
                "id": method.id,
                "brand": method.card.brand if method.card else None,
                "last4": method.card.last4 if method.card else None,
                "exp_month": method.card.exp_month if method.card else None,
                "exp_year": method.card.exp_year if method.card else None,
            }
            for method in methods.data
        ]

    def save_payment_method(self, user: Principal, payment_method_id: str) -> None:
        customer_id = self._customer_id(user)
        if not customer_id:
            raise ValidationError("Customer not found. Please create customer first.")
        try:
            stripe.PaymentMethod.attach(payment_method_id, api_key=self.api_key, customer=customer_id)
        except stripe.StripeError as exc:
            logger.error("Saving payment method failed: %s", exc)
            raise UpstreamError(f"Failed to save payment method: {exc}")

    def refund(self, payment_intent_id: str, amount: Optional[float] = None,
               reason: str = "requested_by_customer") -> dict:
        params: Dict[str, Any] = {"payment_intent": payment_intent_id, "reason": reason or "requested_by_customer"}
        if amount:
            params["amount"] = to_cents(amount)
        try:
            refund = stripe.Refund.create(api_key=self.api_key, **params)
        except stripe.StripeError as exc:
            logger.error("Refund failed: %s", exc)
            raise UpstreamError(f"Failed to process refund: {exc}")
        logger.info("Refund %s issued for %s", refund.id, payment_intent_id)
        return {"id": refund.id, "status": refund.status, "amount": refund.amount}
