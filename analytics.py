"""
Product interaction analytics: color picks, size picks and color+size
combinations. Events are append-only; reports aggregate one time window.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo.database import Database

from database import now_utc, parse_object_id, serialize_document
from errors import NotFoundError, ValidationError
from schemas import ColorTrackRequest, CombinationTrackRequest, SizeTrackRequest

logger = logging.getLogger(__name__)

UNKNOWN_PRODUCT = "Unknown Product"
DEFAULT_TIME_RANGE = "30d"
TIME_RANGES = {
    "1d": timedelta(days=1),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}
TOP_LIMIT = 10

# collection, fields identifying one row of the report, fields identifying one "top" entry
REPORTS: Dict[str, Tuple[str, Tuple[str, ...], Tuple[str, ...]]] = {
    "color": ("color_analytics", ("product_id", "product_name", "color_name", "color_hex"),
              ("color_name", "color_hex")),
    "size": ("size_analytics", ("product_id", "product_name", "size_name"), ("size_name",)),
    "combination": ("product_analytics", ("product_id", "product_name", "color_name", "color_hex", "size_name"),
                    ("color_name", "size_name")),
}


def product_name(db: Database, product_id: str) -> str:
    try:
        product = db["product"].find_one({"_id": parse_object_id(product_id)}, {"name": 1})
    except NotFoundError:
        product = None
    return (product or {}).get("name") or UNKNOWN_PRODUCT


def _record(db: Database, kind: str, data: Dict[str, Any], user_id: Optional[str],
            ip_address: Optional[str], user_agent: Optional[str]) -> dict:
    collection = REPORTS[kind][0]
    event = dict(data)
    event.update({
        "product_name": product_name(db, data["product_id"]),
        "user_id": user_id,
        "ip_address": ip_address or "unknown",
        "user_agent": user_agent or "Unknown",
        "timestamp": now_utc(),
    })
    event["_id"] = db[collection].insert_one(event).inserted_id
    logger.debug("Tracked %s %s for product %s", kind, data["action"], data["product_id"])
    return serialize_document(event)


def track_color(db: Database, request: ColorTrackRequest, user_id: Optional[str] = None,
                ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
    return _record(db, "color", request.model_dump(), user_id, ip_address, user_agent)


def track_size(db: Database, request: SizeTrackRequest, user_id: Optional[str] = None,
               ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
    return _record(db, "size", request.model_dump(), user_id, ip_address, user_agent)


def track_combination(db: Database, request: CombinationTrackRequest, user_id: Optional[str] = None,
                      ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
    return _record(db, "combination", request.model_dump(), user_id, ip_address, user_agent)


def window_start(time_range: Optional[str], now: Optional[datetime] = None) -> datetime:
    delta = TIME_RANGES.get(time_range or DEFAULT_TIME_RANGE, TIME_RANGES[DEFAULT_TIME_RANGE])
    return (now or now_utc()) - delta


def _distinct(values: List[Any]) -> int:
    return len({v for v in values if v is not None})


def stats(db: Database, kind: str, time_range: str = DEFAULT_TIME_RANGE, product_id: Optional[str] = None,
          now: Optional[datetime] = None) -> dict:
    if kind not in REPORTS:
        raise ValidationError(f"Unknown analytics report: {kind}")
    collection, fields, top_fields = REPORTS[kind]
    query: Dict[str, Any] = {"timestamp": {"$gte": window_start(time_range, now)}}
    if product_id:
        query["product_id"] = product_id

    grouped = db[collection].aggregate([
        {"$match": query},
        {"$group": {
            "_id": dict({f: f"${f}" for f in fields}, action="$action"),
            "count": {"$sum": 1},
            "users": {"$addToSet": "$user_id"},
            "sessions": {"$addToSet": "$session_id"},
        }},
    ])
    rows: Dict[tuple, dict] = {}
    for group in grouped:
        key = tuple(group["_id"].get(f) for f in fields)
        row = rows.setdefault(key, dict({f: group["_id"].get(f) for f in fields},
                                        actions=[], total_interactions=0))
        row["actions"].append({
            "action": group["_id"]["action"],
            "count": group["count"],
            "unique_users": _distinct(group["users"]),
            "unique_sessions": _distinct(group["sessions"]),
        })
        row["total_interactions"] += group["count"]
    report = sorted(rows.values(), key=lambda r: r["total_interactions"], reverse=True)
    for row in report:
        row["actions"].sort(key=lambda a: a["count"], reverse=True)

    top = []
    for group in db[collection].aggregate([
        {"$match": query},
        {"$group": {
            "_id": {f: f"${f}" for f in top_fields},
            "total": {"$sum": 1},
            "products": {"$addToSet": "$product_id"},
            "users": {"$addToSet": "$user_id"},
        }},
    ]):
        entry = {f: group["_id"].get(f) for f in top_fields}
        entry.update({
            "total_selections": group["total"],
            "unique_products": _distinct(group["products"]),
            "unique_users": _distinct(group["users"]),
        })
        top.append(entry)
    top.sort(key=lambda e: e["total_selections"], reverse=True)

    return {
        "stats": report,
        "top": top[:TOP_LIMIT],
        "time_range": time_range if time_range in TIME_RANGES else DEFAULT_TIME_RANGE,
        "total_records": db[collection].count_documents(query),
    }
