"""
Order lifecycle.

    pending -> processing -> shipped -> delivered
       \\-> cancelled

Customers may cancel only a pending order and only within an hour of placing
it. The admin status endpoint may set any of the five states. Customers may
delete cancelled or delivered orders; admins may delete cancelled ones only,
so delivered orders stay in the sales history.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import Principal
from database import as_utc, create_document, now_utc, parse_object_id, serialize_document
from errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    InvalidStatusError,
    NotFoundError,
    ValidationError,
    WindowExpiredError,
    first_error_message,
)
from mailer import Mailer
from notifications import NEW_ORDER, Notifier
from schemas import ORDER_STATUSES, OrderCreate

logger = logging.getLogger(__name__)

CANCELLATION_WINDOW = timedelta(hours=1)
USER_DELETABLE_STATUSES = ("cancelled", "delivered")
ADMIN_DELETABLE_STATUSES = ("cancelled",)


def _object_ids(values: Iterable[Optional[str]]) -> list:
    ids = []
    for value in values:
        try:
            ids.append(parse_object_id(value))
        except NotFoundError:
            continue
    return ids


def populate_orders(db: Database, orders: List[dict]) -> List[dict]:
    """Resolve item products (name, price) and the attached user (name, email) for display."""
    product_ids = _object_ids(item.get("product_id") for o in orders for item in o.get("items", []))
    user_ids = _object_ids(o.get("user_id") for o in orders if o.get("user_id"))

    products = {
        str(p["_id"]): {"id": str(p["_id"]), "name": p.get("name"), "price": p.get("price"), "images": p.get("images", [])}
        for p in db["product"].find({"_id": {"$in": product_ids}}, {"name": 1, "price": 1, "images": 1})
    } if product_ids else {}
    users = {
        str(u["_id"]): {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}
        for u in db["user"].find({"_id": {"$in": user_ids}}, {"name": 1, "email": 1})
    } if user_ids else {}

    populated = []
    for order in orders:
        doc = serialize_document(order)
        doc["items"] = [dict(item, product=products.get(item.get("product_id"))) for item in doc.get("items", [])]
        doc["user"] = users.get(doc.get("user_id")) if doc.get("user_id") else None
        populated.append(doc)
    return populated


def order_email(order: dict) -> Optional[str]:
    user = order.get("user") or {}
    if user.get("email"):
        return user["email"]
    return (order.get("customer_info") or {}).get("email")


def customer_name(order: dict) -> str:
    user = order.get("user") or {}
    if user.get("name"):
        return user["name"]
    return (order.get("customer_info") or {}).get("name") or "Guest"


class OrderService:
    def __init__(self, db: Database, notifier: Notifier, mailer: Mailer,
                 clock: Callable[[], datetime] = now_utc):
        self.db = db
        self.notifier = notifier
        self.mailer = mailer
        self.clock = clock

    @property
    def collection(self):
        return self.db["order"]

    # ---------- reads ----------

    def _find(self, order_id: str) -> dict:
        order = self.collection.find_one({"_id": parse_object_id(order_id, "Order")})
        if not order:
            raise NotFoundError("Order not found")
        return order

    def _populate_one(self, order: dict) -> dict:
        return populate_orders(self.db, [order])[0]

    def get(self, order_id: str, requester: Optional[Principal] = None) -> dict:
        order = self._find(order_id)
        if requester is not None and not requester.is_admin and order.get("user_id") != requester.id:
            raise ForbiddenError("Not authorized to view this order")
        return self._populate_one(order)

    def list_all(self) -> List[dict]:
        return populate_orders(self.db, list(self.collection.find().sort("created_at", DESCENDING)))

    def list_for_user(self, user_id: str) -> List[dict]:
        cursor = self.collection.find({"user_id": user_id}).sort("created_at", DESCENDING)
        return populate_orders(self.db, list(cursor))

    def find_by_idempotency_key(self, key: Optional[str], user: Optional[Principal] = None,
                                email: Optional[str] = None) -> Optional[dict]:
        """Return the order already placed under `key` by the same buyer.

        Account orders match on user id, guest orders on the customer email. A key
        that belongs to anyone else is a conflict and reveals nothing about the order.
        """
        if not key:
            return None
        existing = self.collection.find_one({"idempotency_key": key})
        if existing is None:
            return None
        if user is not None:
            same_buyer = existing.get("user_id") == user.id
        else:
            stored_email = (existing.get("customer_info") or {}).get("email") or ""
            same_buyer = existing.get("user_id") is None and bool(email) and stored_email.lower() == email.lower()
        if not same_buyer:
            logger.warning("Idempotency key %s reused by a different buyer", key)
            raise ConflictError("Idempotency key already used")
        return self._populate_one(existing)

    # ---------- mutations ----------

    def create(self, order_input: Union[OrderCreate, Dict[str, Any]], user: Optional[Principal] = None,
               idempotency_key: Optional[str] = None) -> dict:
        if isinstance(order_input, OrderCreate):
            order = order_input
        else:
            try:
                order = OrderCreate.model_validate(order_input)
            except PydanticValidationError as exc:
                raise ValidationError(first_error_message(exc.errors()))
        if user is None and order.customer_info is None:
            raise ValidationError("customer_info: Field required for guest checkout")

        data = order.model_dump(exclude={"idempotency_key"})
        data["user_id"] = user.id if user else None
        data["status"] = "pending"
        data["payment_status"] = "pending"
        data["stripe_payment_intent_id"] = None
        key = idempotency_key or order.idempotency_key
        if key:
            # sparse unique index: the field must be absent, not null, when unused
            data["idempotency_key"] = key

        try:
            order_id = create_document("order", data, self.db)
        except DuplicateKeyError:
            buyer_email = order.customer_info.email if order.customer_info else None
            existing = self.find_by_idempotency_key(key, user, buyer_email)
            if existing is None:
                raise
            logger.info("Duplicate submission for idempotency key %s, returning order %s", key, existing["id"])
            return existing

        created = self._populate_one(self.collection.find_one({"_id": parse_object_id(order_id)}))
        logger.info("Order %s created (%s, total %.2f)", order_id, "user " + user.id if user else "guest",
                    created["total_amount"])
        self._emit(NEW_ORDER, {
            "order_id": created["id"],
            "customer": customer_name(created),
            "total_amount": created["total_amount"],
            "created_at": created["created_at"],
        })
        return created

    def update_status(self, order_id: str, new_status: str) -> dict:
        if new_status not in ORDER_STATUSES:
            raise InvalidStatusError("Invalid status")
        updated = self.collection.find_one_and_update(
            {"_id": parse_object_id(order_id, "Order")},
            {"$set": {"status": new_status, "updated_at": self.clock()}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFoundError("Order not found")
        order = self._populate_one(updated)
        logger.info("Order %s status set to %s", order["id"], new_status)
        self._send_status_email(order, new_status)
        return order

    def cancel(self, order_id: str, requesting_user_id: str) -> dict:
        order = self._find(order_id)
        if order.get("user_id") != requesting_user_id:
            raise ForbiddenError("Not authorized to cancel this order")
        if order["status"] != "pending":
            raise InvalidStateError(
                f"Cannot cancel order with status: {order['status']}. Only pending orders can be cancelled."
            )
        if self.clock() - as_utc(order["created_at"]) > CANCELLATION_WINDOW:
            raise WindowExpiredError(
                "Order cancellation time limit exceeded. Orders can only be cancelled within 1 hour of placement."
            )
        updated = self.collection.find_one_and_update(
            {"_id": order["_id"], "status": "pending"},
            {"$set": {"status": "cancelled", "updated_at": self.clock()}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise InvalidStateError("Order status changed before it could be cancelled")
        logger.info("Order %s cancelled by user %s", order_id, requesting_user_id)
        return self._populate_one(updated)

    def delete_by_user(self, order_id: str, requesting_user_id: str) -> None:
        order = self._find(order_id)
        if order.get("user_id") != requesting_user_id:
            raise ForbiddenError("Not authorized to delete this order")
        self._delete_if_status(order, USER_DELETABLE_STATUSES, "Only cancelled or delivered orders can be deleted")

    def delete_by_admin(self, order_id: str) -> None:
        order = self._find(order_id)
        self._delete_if_status(order, ADMIN_DELETABLE_STATUSES, "Only cancelled orders can be deleted")

    def _delete_if_status(self, order: dict, allowed: tuple, message: str) -> None:
        if order["status"] not in allowed:
            raise InvalidStateError(message)
        result = self.collection.delete_one({"_id": order["_id"], "status": {"$in": list(allowed)}})
        if result.deleted_count == 0:
            raise InvalidStateError(message)
        logger.info("Order %s deleted", order["_id"])

    # ---------- side effects ----------

    def _emit(self, event: str, data: dict) -> None:
        try:
            self.notifier.emit(event, data)
        except Exception:
            logger.exception("Notification %s failed", event)

    def _send_status_email(self, order: dict, status: str) -> None:
        recipient = order_email(order)
        if not recipient:
            logger.warning("No email found for order %s", order["id"])
            return
        try:
            self.mailer.send_order_status_email(recipient, order["id"], status)
        except Exception:
            logger.exception("Status email for order %s failed", order["id"])
