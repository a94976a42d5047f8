import logging
from typing import List

from pymongo import ReturnDocument
from pymongo.database import Database

from database import now_utc, serialize_document
from errors import NotFoundError
from notifications import SETTINGS_UPDATED, Notifier
from schemas import SettingUpdate

logger = logging.getLogger(__name__)


def list_settings(db: Database) -> List[dict]:
    return [serialize_document(s) for s in db["setting"].find().sort("key", 1)]


def get_setting(db: Database, key: str) -> dict:
    setting = db["setting"].find_one({"key": key})
    if not setting:
        raise NotFoundError("Setting not found")
    return serialize_document(setting)


def upsert_setting(db: Database, notifier: Notifier, key: str, update: SettingUpdate) -> dict:
    now = now_utc()
    setting = db["setting"].find_one_and_update(
        {"key": key},
        {
            "$set": {"value": update.value, "description": update.description, "updated_at": now},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Setting %s updated", key)
    try:
        notifier.emit(SETTINGS_UPDATED, {"key": key, "value": setting["value"]})
    except Exception:
        logger.exception("Notification %s failed", SETTINGS_UPDATED)
    return serialize_document(setting)
