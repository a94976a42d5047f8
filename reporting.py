"""
Reporting: admin dashboard figures, product rating aggregates, storefront
filter facets and review statistics. Everything is computed from the raw
collections on demand; nothing here is cached or maintained incrementally.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List

from pymongo import DESCENDING
from pymongo.database import Database

from database import now_utc, parse_object_id
from errors import NotFoundError
from orders import customer_name, order_email, populate_orders

logger = logging.getLogger(__name__)

DEFAULT_RATING = 4.5
TOP_PRODUCTS_LIMIT = 5
RECENT_ORDERS_LIMIT = 5

PRICE_RANGES = [
    # (key, label, min, max)
    ("0-50", "Under $50", 0, 50),
    ("50-100", "$50 - $100", 50, 100),
    ("100-200", "$100 - $200", 100, 200),
    ("200+", "Above $200", 200, None),
]

COLOR_HEX = {
    "red": "#FF0000", "blue": "#0000FF", "green": "#00FF00", "black": "#000000",
    "white": "#FFFFFF", "yellow": "#FFFF00", "purple": "#800080", "pink": "#FFC0CB",
    "orange": "#FFA500", "brown": "#A52A2A", "gray": "#808080", "grey": "#808080",
}


def _capitalize(label: str) -> str:
    return label[:1].upper() + label[1:]


def round_rating(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


# ---------- Dashboard ----------

def dashboard_stats(db: Database) -> dict:
    totals = list(db["order"].aggregate([
        {"$group": {"_id": None, "total": {"$sum": "$total_amount"}}},
    ]))
    total_sales = (totals[0].get("total") if totals else 0) or 0

    recent = populate_orders(
        db, list(db["order"].find().sort("created_at", DESCENDING).limit(RECENT_ORDERS_LIMIT))
    )
    for order in recent:
        order["customer"] = {"name": customer_name(order), "email": order_email(order)}

    return {
        "total_sales": total_sales,
        "total_orders": db["order"].count_documents({}),
        "total_customers": db["user"].count_documents({}),
        "recent_orders": recent,
        "top_products": top_products(db),
        "generated_at": now_utc(),
    }


def top_products(db: Database, limit: int = TOP_PRODUCTS_LIMIT) -> List[dict]:
    ranked = list(db["order"].aggregate([
        {"$unwind": "$items"},
        {"$group": {
            "_id": "$items.product_id",
            "sold": {"$sum": "$items.quantity"},
            "revenue": {"$sum": {"$multiply": ["$items.price", "$items.quantity"]}},
        }},
        {"$sort": {"sold": -1}},
        {"$limit": limit},
    ]))
    ids = []
    for row in ranked:
        try:
            ids.append(parse_object_id(row["_id"]))
        except NotFoundError:
            continue
    names = {str(p["_id"]): p.get("name") for p in db["product"].find({"_id": {"$in": ids}}, {"name": 1})}
    return [
        {
            "product_id": row["_id"],
            "name": names.get(row["_id"]) or "Unknown",
            "sold": row["sold"],
            "revenue": row["revenue"],
        }
        for row in ranked
    ]


# ---------- Ratings ----------

def recalculate_product_rating(db: Database, product_id: str) -> Dict[str, float]:
    """Write count and mean of the product's approved reviews onto the product."""
    stats = list(db["review"].aggregate([
        {"$match": {"product_id": product_id, "status": "approved"}},
        {"$group": {"_id": "$product_id", "n_rating": {"$sum": 1}, "avg_rating": {"$avg": "$rating"}}},
    ]))
    if stats and stats[0].get("n_rating"):
        ratings = {
            "ratings_quantity": stats[0]["n_rating"],
            "ratings_average": round_rating(stats[0]["avg_rating"]),
        }
    else:
        ratings = {"ratings_quantity": 0, "ratings_average": DEFAULT_RATING}

    try:
        object_id = parse_object_id(product_id, "Product")
    except NotFoundError:
        logger.warning("Cannot store ratings for malformed product id %s", product_id)
        return ratings
    db["product"].update_one({"_id": object_id}, {"$set": ratings})
    return ratings


def rating_distribution(db: Database, product_id: str) -> Dict[str, int]:
    distribution = {str(star): 0 for star in range(1, 6)}
    for row in db["review"].aggregate([
        {"$match": {"product_id": product_id, "status": "approved"}},
        {"$group": {"_id": "$rating", "count": {"$sum": 1}}},
    ]):
        distribution[str(row["_id"])] = row["count"]
    return distribution


def review_overview(db: Database) -> dict:
    stats = list(db["review"].aggregate([
        {"$group": {
            "_id": None,
            "total_reviews": {"$sum": 1},
            "average_rating": {"$avg": "$rating"},
            "pending_reviews": {"$sum": {"$cond": [{"$eq": ["$status", "pending"]}, 1, 0]}},
            "approved_reviews": {"$sum": {"$cond": [{"$eq": ["$status", "approved"]}, 1, 0]}},
            "rejected_reviews": {"$sum": {"$cond": [{"$eq": ["$status", "rejected"]}, 1, 0]}},
        }},
    ]))
    if stats and stats[0].get("total_reviews"):
        overview = {k: v for k, v in stats[0].items() if k != "_id"}
        overview["average_rating"] = round_rating(overview["average_rating"] or 0)
    else:
        overview = {
            "total_reviews": 0,
            "average_rating": 0,
            "pending_reviews": 0,
            "approved_reviews": 0,
            "rejected_reviews": 0,
        }
    distribution = list(db["review"].aggregate([
        {"$match": {"status": "approved"}},
        {"$group": {"_id": "$rating", "count": {"$sum": 1}}},
        {"$sort": {"_id": -1}},
    ]))
    return {
        "overview": overview,
        "rating_distribution": [{"rating": row["_id"], "count": row["count"]} for row in distribution],
    }


# ---------- Storefront filters ----------

def _value_counts(db: Database, field: str, unwind: bool) -> List[dict]:
    pipeline = []
    if unwind:
        pipeline.append({"$unwind": f"${field}"})
    else:
        pipeline.append({"$match": {field: {"$nin": [None, ""]}}})
    pipeline += [
        {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
        {"$sort": {"count": -1, "_id": 1}},
    ]
    return [{"value": row["_id"], "label": row["_id"], "count": row["count"]}
            for row in db["product"].aggregate(pipeline)]


def _category_options(db: Database) -> List[dict]:
    counts = {
        row["_id"]: row["count"]
        for row in db["product"].aggregate([{"$group": {"_id": "$category_id", "count": {"$sum": 1}}}])
    }
    return [
        {
            "value": str(c["_id"]),
            "label": c.get("name"),
            "slug": c.get("slug"),
            "image": c.get("image"),
            "description": c.get("description"),
            "count": counts.get(str(c["_id"]), 0),
        }
        for c in db["category"].find().sort("name", 1)
    ]


def _price_ranges(db: Database) -> List[dict]:
    facets = {}
    for key, _label, low, high in PRICE_RANGES:
        bound = {"$gte": low}
        if high is not None:
            bound["$lt"] = high
        facets[key] = [{"$match": {"price": bound}}, {"$count": "count"}]
    result = list(db["product"].aggregate([{"$facet": facets}]))
    buckets = result[0] if result else {}
    ranges = []
    for key, label, low, high in PRICE_RANGES:
        rows = buckets.get(key) or [{}]
        ranges.append({"value": key, "label": label, "min": low, "max": high, "count": rows[0].get("count", 0)})
    return ranges


def product_filters(db: Database) -> dict:
    colors = _value_counts(db, "simple_colors", unwind=True)
    sizes = _value_counts(db, "sizes", unwind=True)
    return {
        "categories": _category_options(db),
        "colors": [
            dict(c, label=_capitalize(str(c["label"])), hex=COLOR_HEX.get(str(c["value"]).lower(), "#000000"))
            for c in colors
        ],
        "sizes": [dict(s, label=str(s["label"]).upper()) for s in sizes],
        "brands": _value_counts(db, "brand", unwind=False),
        "price_ranges": _price_ranges(db),
    }
