"""
Catalog: categories and products.

Categories carry a URL slug derived from the name on every save. Products
reference their category by id string; listings resolve it to
{id, name, slug} for display.
"""
import logging
import re
import unicodedata
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, now_utc, parse_object_id, serialize_document
from errors import ConflictError, NotFoundError, ValidationError
from reporting import DEFAULT_RATING
from schemas import Category, CategoryUpdate, Product, ProductUpdate

logger = logging.getLogger(__name__)

FEATURED_CATEGORIES_LIMIT = 6
FEATURED_PRODUCTS_LIMIT = 8
NEW_ARRIVALS_LIMIT = 8
DEFAULT_PAGE_SIZE = 10

SORT_OPTIONS = {
    "newest": [("created_at", DESCENDING)],
    "price-low-high": [("price", ASCENDING)],
    "price-high-low": [("price", DESCENDING)],
    "rating": [("ratings_average", DESCENDING), ("ratings_quantity", DESCENDING)],
}


def slugify(value: Optional[str]) -> str:
    """URL slug for a category name, e.g. "Men's Fashion" -> "men-s-fashion"."""
    ascii_name = (
        unicodedata.normalize("NFKD", (value or "").strip().lower())
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_name).strip("-")
    if not slug:
        slug = uuid4().hex
    return slug


# ---------- Categories ----------

def _with_category_extras(db: Database, categories: List[dict]) -> List[dict]:
    ids = [str(c["_id"]) for c in categories]
    children: Dict[str, List[dict]] = {}
    for child in db["category"].find({"parent_id": {"$in": ids}}).sort("name", ASCENDING):
        children.setdefault(child["parent_id"], []).append(serialize_document(child))
    counts = {
        row["_id"]: row["count"]
        for row in db["product"].aggregate([
            {"$match": {"category_id": {"$in": ids}}},
            {"$group": {"_id": "$category_id", "count": {"$sum": 1}}},
        ])
    }
    result = []
    for category in categories:
        doc = serialize_document(category)
        doc["subcategories"] = children.get(doc["id"], [])
        doc["product_count"] = counts.get(doc["id"], 0)
        result.append(doc)
    return result


def list_categories(db: Database) -> List[dict]:
    return _with_category_extras(db, list(db["category"].find().sort("name", ASCENDING)))


def featured_categories(db: Database, limit: int = FEATURED_CATEGORIES_LIMIT) -> List[dict]:
    return _with_category_extras(db, list(db["category"].find({"featured": True}).limit(limit)))


def get_category(db: Database, category_id: str) -> dict:
    category = db["category"].find_one({"_id": parse_object_id(category_id, "Category")})
    if not category:
        raise NotFoundError("No category found with that ID")
    return _with_category_extras(db, [category])[0]


def get_category_by_slug(db: Database, slug: str) -> dict:
    category = db["category"].find_one({"slug": slug})
    if not category:
        raise NotFoundError("No category found with that slug")
    return _with_category_extras(db, [category])[0]


def _check_parent(db: Database, parent_id: Optional[str], own_id: Optional[str] = None) -> None:
    if not parent_id:
        return
    if parent_id == own_id:
        raise ValidationError("parent_id: A category cannot be its own parent")
    try:
        exists = db["category"].find_one({"_id": parse_object_id(parent_id)}, {"_id": 1})
    except NotFoundError:
        exists = None
    if not exists:
        raise ValidationError("parent_id: Parent category not found")


def create_category(db: Database, category: Category) -> dict:
    _check_parent(db, category.parent_id)
    data = category.model_dump()
    data["name"] = data["name"].strip()
    data["slug"] = slugify(data["name"])
    if db["category"].find_one({"$or": [{"name": data["name"]}, {"slug": data["slug"]}]}):
        raise ConflictError("A category with that name already exists")
    try:
        category_id = create_document("category", data, db)
    except DuplicateKeyError:
        raise ConflictError("A category with that name already exists")
    logger.info("Category %s created (%s)", category_id, data["slug"])
    return get_category(db, category_id)


def update_category(db: Database, category_id: str, changes: CategoryUpdate) -> dict:
    object_id = parse_object_id(category_id, "Category")
    fields = changes.model_dump(exclude_unset=True)
    if "parent_id" in fields:
        _check_parent(db, fields["parent_id"], own_id=category_id)
    if fields.get("name"):
        fields["name"] = fields["name"].strip()
        fields["slug"] = slugify(fields["name"])
    fields["updated_at"] = now_utc()
    try:
        updated = db["category"].find_one_and_update(
            {"_id": object_id}, {"$set": fields}, return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError("A category with that name already exists")
    if not updated:
        raise NotFoundError("No category found with that ID")
    return _with_category_extras(db, [updated])[0]


def delete_category(db: Database, category_id: str) -> None:
    result = db["category"].delete_one({"_id": parse_object_id(category_id, "Category")})
    if result.deleted_count == 0:
        raise NotFoundError("No category found with that ID")
    logger.info("Category %s deleted", category_id)


# ---------- Products ----------

def _with_categories(db: Database, products: List[dict]) -> List[dict]:
    category_ids = []
    for product in products:
        try:
            category_ids.append(parse_object_id(product.get("category_id")))
        except NotFoundError:
            continue
    categories = {
        str(c["_id"]): {"id": str(c["_id"]), "name": c.get("name"), "slug": c.get("slug")}
        for c in db["category"].find({"_id": {"$in": category_ids}}, {"name": 1, "slug": 1})
    } if category_ids else {}
    result = []
    for product in products:
        doc = serialize_document(product)
        doc["category"] = categories.get(doc.get("category_id"))
        result.append(doc)
    return result


def _resolve_category_filter(db: Database, value: str) -> Optional[str]:
    """Accept a slug or an id; None means no such category."""
    category = db["category"].find_one({"slug": value}, {"_id": 1})
    if category:
        return str(category["_id"])
    try:
        parse_object_id(value)
    except NotFoundError:
        return None
    return value


def list_products(db: Database, category: Optional[str] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, brand: Optional[str] = None,
                  featured: Optional[bool] = None, search: Optional[str] = None,
                  sort_by: Optional[str] = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> dict:
    page = max(page, 1)
    limit = max(limit, 1)
    query: Dict[str, Any] = {}
    if category:
        category_id = _resolve_category_filter(db, category)
        if category_id is None:
            return {"products": [], "results": 0, "total": 0, "page": page}
        query["category_id"] = category_id
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price
    if brand:
        query["brand"] = brand
    if featured is not None:
        query["featured"] = featured
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}, {"brand": pattern}]

    sort = SORT_OPTIONS.get(sort_by or "newest", SORT_OPTIONS["newest"])
    cursor = db["product"].find(query).sort(sort).skip((page - 1) * limit).limit(limit)
    products = _with_categories(db, list(cursor))
    return {
        "products": products,
        "results": len(products),
        "total": db["product"].count_documents(query),
        "page": page,
    }


def get_product(db: Database, product_id: str) -> dict:
    product = db["product"].find_one({"_id": parse_object_id(product_id, "Product")})
    if not product:
        raise NotFoundError("Product not found")
    return _with_categories(db, [product])[0]


def featured_products(db: Database, limit: int = FEATURED_PRODUCTS_LIMIT) -> List[dict]:
    cursor = db["product"].find({"featured": True}).sort("created_at", DESCENDING).limit(limit)
    return _with_categories(db, list(cursor))


def new_arrivals(db: Database, limit: int = NEW_ARRIVALS_LIMIT) -> List[dict]:
    cursor = db["product"].find({"is_new_product": True}).sort("created_at", DESCENDING).limit(limit)
    return _with_categories(db, list(cursor))


def search_products(db: Database, q: Optional[str]) -> List[dict]:
    if not q or not q.strip():
        raise ValidationError("q: Search query is required")
    return list_products(db, search=q, limit=50)["products"]


def _check_category(db: Database, category_id: str) -> None:
    try:
        exists = db["category"].find_one({"_id": parse_object_id(category_id)}, {"_id": 1})
    except NotFoundError:
        exists = None
    if not exists:
        raise ValidationError("category_id: Category not found")


def create_product(db: Database, product: Product) -> dict:
    _check_category(db, product.category_id)
    data = product.model_dump()
    data["ratings_average"] = DEFAULT_RATING
    data["ratings_quantity"] = 0
    product_id = create_document("product", data, db)
    logger.info("Product %s created (%s)", product_id, product.name)
    return get_product(db, product_id)


def update_product(db: Database, product_id: str, changes: ProductUpdate) -> dict:
    existing = db["product"].find_one({"_id": parse_object_id(product_id, "Product")})
    if not existing:
        raise NotFoundError("Product not found")
    fields = changes.model_dump(exclude_unset=True)
    if fields.get("category_id"):
        _check_category(db, fields["category_id"])

    price = fields.get("price", existing.get("price"))
    discount = fields.get("discount_price", existing.get("discount_price"))
    if discount is not None and price is not None and discount >= price:
        raise ValidationError(f"discount_price: Discount price ({discount}) should be below regular price")

    fields["updated_at"] = now_utc()
    updated = db["product"].find_one_and_update(
        {"_id": existing["_id"]}, {"$set": fields}, return_document=ReturnDocument.AFTER,
    )
    return _with_categories(db, [updated])[0]


def delete_product(db: Database, product_id: str) -> None:
    result = db["product"].delete_one({"_id": parse_object_id(product_id, "Product")})
    if result.deleted_count == 0:
        raise NotFoundError("Product not found")
    logger.info("Product %s deleted", product_id)
