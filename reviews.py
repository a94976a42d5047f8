import logging
import math
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import Principal
from database import create_document, now_utc, parse_object_id, serialize_document
from errors import ConflictError, NotFoundError
from notifications import NEW_REVIEW, REVIEW_DELETED, REVIEW_HELPFUL_UPDATED, REVIEW_UPDATED, Notifier
from reporting import rating_distribution, recalculate_product_rating, review_overview
from schemas import ReviewCreate, ReviewStatusUpdate, ReviewUpdate

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
SORTABLE_FIELDS = ("created_at", "rating", "helpful")


def paginate(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total": total,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


class ReviewService:
    def __init__(self, db: Database, notifier: Notifier):
        self.db = db
        self.notifier = notifier

    @property
    def collection(self):
        return self.db["review"]

    def _populate(self, reviews: List[dict]) -> List[dict]:
        user_ids = []
        for review in reviews:
            try:
                user_ids.append(parse_object_id(review.get("user_id")))
            except NotFoundError:
                continue
        users = {
            str(u["_id"]): {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}
            for u in self.db["user"].find({"_id": {"$in": user_ids}}, {"name": 1, "email": 1})
        } if user_ids else {}
        populated = []
        for review in reviews:
            doc = serialize_document(review)
            doc["user"] = users.get(doc.get("user_id"))
            populated.append(doc)
        return populated

    def _find(self, review_id: str, owner_id: Optional[str] = None) -> dict:
        query = {"_id": parse_object_id(review_id, "Review")}
        if owner_id is not None:
            query["user_id"] = owner_id
        review = self.collection.find_one(query)
        if not review:
            if owner_id is not None:
                raise NotFoundError("Review not found or you are not authorized to modify it")
            raise NotFoundError("Review not found")
        return review

    def _emit(self, event: str, data: dict) -> None:
        try:
            self.notifier.emit(event, data)
        except Exception:
            logger.exception("Notification %s failed", event)

    # ---------- storefront ----------

    def list_for_product(self, product_id: str, page: int = 1, limit: int = DEFAULT_PAGE_SIZE,
                         sort_by: str = "created_at", sort_order: str = "desc",
                         rating: Optional[int] = None) -> dict:
        page = max(page, 1)
        limit = max(limit, 1)
        query: Dict[str, Any] = {"product_id": product_id, "status": "approved"}
        if rating:
            query["rating"] = rating
        if sort_by not in SORTABLE_FIELDS:
            sort_by = "created_at"
        direction = 1 if sort_order == "asc" else -1

        cursor = self.collection.find(query).sort(sort_by, direction).skip((page - 1) * limit).limit(limit)
        total = self.collection.count_documents(query)
        return {
            "reviews": self._populate(list(cursor)),
            "pagination": paginate(page, limit, total),
            "rating_distribution": rating_distribution(self.db, product_id),
        }

    def create(self, product_id: str, review: ReviewCreate, user: Principal) -> dict:
        product = self.db["product"].find_one({"_id": parse_object_id(product_id, "Product")}, {"_id": 1})
        if not product:
            raise NotFoundError("Product not found")
        if self.collection.find_one({"product_id": product_id, "user_id": user.id}):
            raise ConflictError("You have already reviewed this product")

        data = review.model_dump()
        data.update({
            "product_id": product_id,
            "user_id": user.id,
            "helpful": 0,
            "verified": False,
            "status": "approved",
            "admin_response": None,
        })
        try:
            review_id = create_document("review", data, self.db)
        except DuplicateKeyError:
            raise ConflictError("You have already reviewed this product")

        recalculate_product_rating(self.db, product_id)
        created = self._populate([self.collection.find_one({"_id": parse_object_id(review_id)})])[0]
        logger.info("Review %s created for product %s by user %s", review_id, product_id, user.id)
        self._emit(NEW_REVIEW, {"product_id": product_id, "review": created})
        return created

    def update(self, review_id: str, changes: ReviewUpdate, user: Principal) -> dict:
        review = self._find(review_id, owner_id=user.id)
        fields = {k: v for k, v in changes.model_dump(exclude_unset=True).items() if v}
        fields["status"] = "approved"
        fields["updated_at"] = now_utc()
        updated = self.collection.find_one_and_update(
            {"_id": review["_id"]}, {"$set": fields}, return_document=ReturnDocument.AFTER,
        )
        recalculate_product_rating(self.db, review["product_id"])
        result = self._populate([updated])[0]
        self._emit(REVIEW_UPDATED, {"product_id": review["product_id"], "review": result})
        return result

    def delete(self, review_id: str, user: Principal) -> None:
        review = self._find(review_id, owner_id=user.id)
        self._remove(review)

    def mark_helpful(self, review_id: str) -> int:
        updated = self.collection.find_one_and_update(
            {"_id": parse_object_id(review_id, "Review")},
            {"$inc": {"helpful": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFoundError("Review not found")
        self._emit(REVIEW_HELPFUL_UPDATED, {"review_id": review_id, "helpful": updated["helpful"]})
        return updated["helpful"]

    # ---------- moderation ----------

    def list_all(self, page: int = 1, limit: int = DEFAULT_PAGE_SIZE, status: Optional[str] = None,
                 rating: Optional[int] = None) -> dict:
        page = max(page, 1)
        limit = max(limit, 1)
        query: Dict[str, Any] = {}
        if status and status != "all":
            query["status"] = status
        if rating:
            query["rating"] = rating
        cursor = self.collection.find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
        reviews = self._populate(list(cursor))

        product_ids = []
        for review in reviews:
            try:
                product_ids.append(parse_object_id(review.get("product_id")))
            except NotFoundError:
                continue
        products = {
            str(p["_id"]): {"id": str(p["_id"]), "name": p.get("name"), "images": p.get("images", [])}
            for p in self.db["product"].find({"_id": {"$in": product_ids}}, {"name": 1, "images": 1})
        } if product_ids else {}
        for review in reviews:
            review["product"] = products.get(review.get("product_id"))

        return {"reviews": reviews, "pagination": paginate(page, limit, self.collection.count_documents(query))}

    def get(self, review_id: str) -> dict:
        return self._populate([self._find(review_id)])[0]

    def set_status(self, review_id: str, update: ReviewStatusUpdate) -> dict:
        fields: Dict[str, Any] = {"status": update.status, "updated_at": now_utc()}
        if update.admin_response is not None:
            fields["admin_response"] = update.admin_response
        updated = self.collection.find_one_and_update(
            {"_id": parse_object_id(review_id, "Review")},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFoundError("Review not found")
        recalculate_product_rating(self.db, updated["product_id"])
        logger.info("Review %s moderated to %s", review_id, update.status)
        result = self._populate([updated])[0]
        self._emit(REVIEW_UPDATED, {"product_id": updated["product_id"], "review": result})
        return result

    def admin_delete(self, review_id: str) -> None:
        self._remove(self._find(review_id))

    def overview(self) -> dict:
        return review_overview(self.db)

    def _remove(self, review: dict) -> None:
        self.collection.delete_one({"_id": review["_id"]})
        recalculate_product_rating(self.db, review["product_id"])
        logger.info("Review %s deleted", review["_id"])
        self._emit(REVIEW_DELETED, {"product_id": review["product_id"], "review_id": str(review["_id"])})
