"""Buyer-facing notifications.

``emit`` is fire-and-forget: a failed insert is logged and never propagates into the
state transition that triggered it.
"""
import logging
from typing import List, Optional

from pymongo.database import Database

from database import create_document, get_documents, to_object_id
from errors import NotFound
from schemas import Notification

logger = logging.getLogger(__name__)


def emit(db: Database, user_id: str, type: str, title: str, message: str,
         order_id: Optional[str] = None) -> Optional[str]:
    try:
        doc = Notification(user_id=str(user_id), type=type, title=title, message=message,
                           order_id=str(order_id) if order_id else None)
        return create_document(db, "notification", doc.model_dump())
    except Exception:
        logger.exception("Failed to create '%s' notification for user %s", title, user_id)
        return None


def list_for_user(db: Database, user_id: str, limit: int = 50) -> List[dict]:
    return get_documents(db, "notification", {"user_id": user_id}, sort=[("created_at", -1)], limit=limit)


def unread_count(db: Database, user_id: str) -> int:
    return db["notification"].count_documents({"user_id": user_id, "is_read": False})


def mark_read(db: Database, user_id: str, notification_id: str) -> dict:
    oid = to_object_id(notification_id, "Notification")
    result = db["notification"].update_one({"_id": oid, "user_id": user_id}, {"$set": {"is_read": True}})
    if result.matched_count == 0:
        raise NotFound("Notification not found")
    return db["notification"].find_one({"_id": oid})


def mark_all_read(db: Database, user_id: str) -> int:
    result = db["notification"].update_many({"user_id": user_id, "is_read": False}, {"$set": {"is_read": True}})
    return result.modified_count


def broadcast(db: Database, type: str, title: str, message: str) -> int:
    """Send the same notification to every active buyer; returns how many were sent."""
    buyers = db["user"].find({"is_admin": {"$ne": True}, "is_active": {"$ne": False}}, {"_id": 1})
    docs = [
        Notification(user_id=str(u["_id"]), type=type, title=title, message=message).model_dump()
        for u in buyers
    ]
    if docs:
        db["notification"].insert_many(docs)
    logger.info("Broadcast '%s' to %d users", title, len(docs))
    return len(docs)
