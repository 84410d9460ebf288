"""
Return / refund requests for delivered orders.

At most one return exists per order (unique index on ``order_id``). Filing a return
moves the order Delivered -> Returned straight away; cancelling a still-Pending return
deletes it and moves the order back to Delivered.

Status changes go through ``transition``, which writes the new status and its
timeline entry in one conditional update.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import notifications
import orders
from config import config
from database import get_documents, public_id, to_object_id
from errors import (DuplicateReturn, InvalidState, NotFound, ReturnWindowExpired, StoreError, Unauthorized,
                    ValidationError)
from schemas import (RETURN_TRANSITIONS, BankDetails, OrderStatus, RefundMethod, ReturnItem, ReturnReason,
                     ReturnRequest, ReturnStatus, TimelineEntry, ensure_transition)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
MAX_INSERT_ATTEMPTS = 3


def days_since_delivery(order: dict, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    delivered = order.get("delivered_at") or order.get("updated_at") or order.get("created_at")
    return int((now - delivered).total_seconds() // SECONDS_PER_DAY)


def _pick_items(order: dict, selected: List[dict]) -> List[ReturnItem]:
    """Match the buyer's selection against the order snapshot; prices come from the snapshot."""
    if not selected:
        raise ValidationError("Select at least one item to return")
    picked: List[ReturnItem] = []
    seen: set = set()
    for sel in selected:
        key: Tuple = (str(sel.get("product_id")), sel.get("size") or None, sel.get("color") or None)
        if key in seen:
            raise ValidationError("Each order item can only be selected once")
        seen.add(key)
        match = next(
            (i for i in order["items"]
             if (i["product_id"], i.get("size") or None, i.get("color") or None) == key),
            None,
        )
        if match is None:
            raise ValidationError("Selected item is not part of this order")
        quantity = int(sel.get("quantity") or match["quantity"])
        if quantity < 1 or quantity > match["quantity"]:
            raise ValidationError(f"Return quantity for {match.get('name')} must be between 1 and {match['quantity']}")
        if not (sel.get("reason") or "").strip():
            raise ValidationError(f"Give a reason for returning {match.get('name')}")
        picked.append(ReturnItem(
            product_id=match["product_id"],
            name=match.get("name"),
            price=match["price"],
            quantity=quantity,
            size=match.get("size"),
            color=match.get("color"),
            image=match.get("image"),
            reason=sel["reason"].strip(),
        ))
    return picked


def _insert_return(db: Database, doc: dict) -> dict:
    """Insert a return; a clash on ``order_id`` is a duplicate, a clash on ``return_id`` gets a new id."""
    for attempt in range(1, MAX_INSERT_ATTEMPTS + 1):
        try:
            doc["_id"] = db["return"].insert_one(doc).inserted_id
            return doc
        except DuplicateKeyError:
            doc.pop("_id", None)
            if db["return"].find_one({"order_id": doc["order_id"]}):
                raise DuplicateReturn()
            logger.warning("Return id %s already taken, generating another", doc["return_id"])
            doc["return_id"] = public_id(db, "return", "RET", skip=attempt)
    raise InvalidState("Could not allocate a return id, please retry")


def create_return(db: Database, user: dict, order_id: str, items: List[dict], return_reason: ReturnReason,
                  refund_method: RefundMethod = RefundMethod.ORIGINAL,
                  bank_details: Optional[BankDetails] = None,
                  additional_comments: Optional[str] = None) -> dict:
    order = orders.get_order(db, order_id)
    if order["user_id"] != str(user["_id"]):
        raise Unauthorized()
    if db["return"].find_one({"order_id": str(order["_id"])}):
        raise DuplicateReturn()
    if order["order_status"] != OrderStatus.DELIVERED.value:
        raise InvalidState("Can only return delivered orders")

    days = days_since_delivery(order)
    if days > config.RETURN_WINDOW_DAYS:
        raise ReturnWindowExpired(days, config.RETURN_WINDOW_DAYS)

    if refund_method is RefundMethod.BANK_TRANSFER and bank_details is None:
        raise ValidationError("Bank details are required for bank transfer refunds")

    picked = _pick_items(order, items)
    request = ReturnRequest(
        return_id=public_id(db, "return", "RET"),
        order_id=str(order["_id"]),
        order_number=order.get("order_id"),
        user_id=str(user["_id"]),
        items=picked,
        return_reason=return_reason,
        additional_comments=additional_comments,
        refund_amount=round(sum(i.price * i.quantity for i in picked), 2),
        refund_method=refund_method,
        bank_details=bank_details if refund_method is RefundMethod.BANK_TRANSFER else None,
        pickup_address=order.get("shipping_address"),
        timeline=[TimelineEntry(status=ReturnStatus.PENDING, description="Return request submitted")],
    )
    doc = _insert_return(db, request.model_dump())

    if orders.set_return_status(db, order, OrderStatus.RETURNED) is None:
        db["return"].delete_one({"_id": doc["_id"]})
        raise InvalidState("Order changed while the return was being filed, please retry")

    logger.info("Return %s filed for order %s (refund %.2f)", doc["return_id"], order["order_id"], doc["refund_amount"])
    notifications.emit(db, doc["user_id"], "return", "Return Requested",
                       f"Your return request #{doc['return_id']} for order #{order['order_id']} has been submitted",
                       order_id=order["_id"])
    return doc


def get_return(db: Database, return_id: str) -> dict:
    if ObjectId.is_valid(str(return_id)):
        ret = db["return"].find_one({"_id": ObjectId(str(return_id))})
    else:
        ret = db["return"].find_one({"return_id": return_id})
    if not ret:
        raise NotFound("Return not found")
    return ret


def get_for_user(db: Database, user: dict, return_id: str) -> dict:
    ret = get_return(db, return_id)
    if ret["user_id"] != str(user["_id"]) and not user.get("is_admin"):
        raise Unauthorized()
    return ret


def list_for_user(db: Database, user_id: str) -> List[dict]:
    return get_documents(db, "return", {"user_id": user_id}, sort=[("created_at", -1)])


def list_all(db: Database) -> List[dict]:
    return get_documents(db, "return", sort=[("created_at", -1)])


def transition(db: Database, ret: dict, target: ReturnStatus, note: Optional[str] = None,
               extra: Optional[Dict] = None) -> dict:
    """Set the return status and append its timeline entry atomically."""
    current = ReturnStatus(ret["return_status"])
    ensure_transition("return status", RETURN_TRANSITIONS, current, target)
    now = datetime.utcnow()
    entry = TimelineEntry(status=target, description=note or f"Return status updated to {target.value}",
                          timestamp=now)
    changes = dict(extra or {}, return_status=target.value, updated_at=now)
    updated = db["return"].find_one_and_update(
        {"_id": ret["_id"], "return_status": current.value},
        {"$set": changes, "$push": {"timeline": entry.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidState("Return was modified concurrently, please retry")
    return updated


def _undo_transition(db: Database, ret: dict, previous: ReturnStatus) -> None:
    """Put a return back to ``previous`` after the order side of its transition failed."""
    db["return"].update_one(
        {"_id": ret["_id"], "return_status": ret["return_status"]},
        {
            "$set": {"return_status": previous.value, "updated_at": datetime.utcnow()},
            "$unset": {"refund_transaction_id": ""},
            "$pop": {"timeline": 1},
        },
    )
    logger.warning("Return %s reverted to %s", ret["return_id"], previous.value)


def update_status(db: Database, return_id: str, target: ReturnStatus, admin_notes: Optional[str] = None,
                  rejection_reason: Optional[str] = None, refund_transaction_id: Optional[str] = None) -> dict:
    ret = get_return(db, return_id)
    ensure_transition("return status", RETURN_TRANSITIONS, ReturnStatus(ret["return_status"]), target)

    extra: Dict = {}
    if admin_notes:
        extra["admin_notes"] = admin_notes
    note = None
    if target is ReturnStatus.REJECTED:
        if not (rejection_reason or "").strip():
            raise ValidationError("A rejection reason is required")
        extra["rejection_reason"] = rejection_reason.strip()
        note = f"Return rejected: {extra['rejection_reason']}"

    order = orders.get_order(db, ret["order_id"])
    if target is ReturnStatus.REFUND_COMPLETED:
        orders.check_can_refund(order)
        if refund_transaction_id:
            extra["refund_transaction_id"] = refund_transaction_id

    previous = ReturnStatus(ret["return_status"])
    ret = transition(db, ret, target, note=note, extra=extra)

    if target is ReturnStatus.REFUND_COMPLETED:
        try:
            orders.mark_refunded(db, order, ret["refund_amount"], refund_transaction_id)
        except StoreError:
            _undo_transition(db, ret, previous)
            raise
    elif target is ReturnStatus.REJECTED and order["order_status"] == OrderStatus.RETURNED.value:
        orders.set_return_status(db, order, OrderStatus.DELIVERED)
    logger.info("Return %s moved to %s", ret["return_id"], target.value)

    notifications.emit(db, ret["user_id"], "return", f"Return {target.value}",
                       f"Your return request #{ret['return_id']} is now {target.value.lower()}",
                       order_id=ret["order_id"])
    return ret


def cancel_return(db: Database, user: dict, return_id: str) -> None:
    ret = get_return(db, return_id)
    if ret["user_id"] != str(user["_id"]):
        raise Unauthorized()
    if ret["return_status"] != ReturnStatus.PENDING.value:
        raise InvalidState("Can only cancel pending returns")
    result = db["return"].delete_one({"_id": ret["_id"], "return_status": ReturnStatus.PENDING.value})
    if result.deleted_count == 0:
        raise InvalidState("Can only cancel pending returns")

    order = db["order"].find_one({"_id": to_object_id(ret["order_id"], "Order")})
    if order and order["order_status"] == OrderStatus.RETURNED.value:
        orders.set_return_status(db, order, OrderStatus.DELIVERED)
    logger.info("Return %s cancelled by customer", ret["return_id"])
