"""
Order lifecycle.

Order status and payment status only move along the tables in ``schemas``; every
write is conditional on the status it was computed from, so a concurrent change makes
the later writer fail instead of silently overwriting.

A refund owed on an order is kept under ``refund`` as a tagged record:
absent, ``{"state": "requested", ...}`` or ``{"state": "completed", ...}``.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

import catalog
import emailer
import notifications
from database import get_documents, serialize
from errors import CancellationWindowClosed, IllegalTransition, InvalidState, NotFound, Unauthorized, ValidationError
from schemas import (ADMIN_PAYMENT_TARGETS, CANCELLABLE_ORDER_STATUSES, ORDER_TRANSITIONS, PAYMENT_TRANSITIONS,
                     RETURN_DRIVEN_ORDER_STATUSES, BankDetails, DeliveryUpdate, OrderStatus, PaymentMethod,
                     PaymentStatus, RefundCompleted, RefundRequested, ensure_transition)

logger = logging.getLogger(__name__)


def get_order(db: Database, order_id: str) -> dict:
    """Find an order by database id or by its public ``SE...`` id."""
    if ObjectId.is_valid(str(order_id)):
        order = db["order"].find_one({"_id": ObjectId(str(order_id))})
    else:
        order = db["order"].find_one({"order_id": order_id})
    if not order:
        raise NotFound("Order not found")
    return order


def get_for_user(db: Database, user: dict, order_id: str) -> dict:
    order = get_order(db, order_id)
    if order["user_id"] != str(user["_id"]) and not user.get("is_admin"):
        raise Unauthorized()
    return order


def list_for_user(db: Database, user_id: str) -> List[dict]:
    return get_documents(db, "order", {"user_id": user_id}, sort=[("created_at", -1)])


def list_all(db: Database) -> List[dict]:
    return get_documents(db, "order", sort=[("created_at", -1)])


def requires_bank_details(order: dict) -> bool:
    return (
        order.get("order_status") == OrderStatus.CANCELLED.value
        and order.get("payment_status") == PaymentStatus.PAID.value
        and not order.get("refund")
    )


def to_view(order: dict) -> dict:
    out = serialize(order)
    out["requires_bank_details"] = requires_bank_details(order)
    return out


def _conditional_write(db: Database, order: dict, changes: Dict[str, Any],
                       push: Optional[dict] = None) -> dict:
    update: Dict[str, Any] = {"$set": dict(changes, updated_at=datetime.utcnow())}
    if push is not None:
        update["$push"] = {"delivery_updates": push}
    updated = db["order"].find_one_and_update(
        {
            "_id": order["_id"],
            "order_status": order["order_status"],
            "payment_status": order["payment_status"],
        },
        update,
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidState("Order was modified concurrently, please retry")
    return updated


def cancel(db: Database, user: dict, order_id: str, description: Optional[str] = None) -> dict:
    """Cancel an order that has not shipped yet and put its stock back.

    Prepaid orders are not refunded here: the buyer must submit bank details first
    (see ``submit_bank_details``); the view flags this with ``requires_bank_details``.
    """
    order = get_for_user(db, user, order_id)
    by_admin = order["user_id"] != str(user["_id"])
    current = OrderStatus(order["order_status"])
    if current is OrderStatus.CANCELLED:
        raise InvalidState("Order is already cancelled")
    if current not in CANCELLABLE_ORDER_STATUSES:
        raise CancellationWindowClosed()

    now = datetime.utcnow()
    entry = DeliveryUpdate(
        status=OrderStatus.CANCELLED.value,
        description=description or ("Order cancelled by admin" if by_admin else "Order cancelled by customer"),
        timestamp=now,
    )
    order = _conditional_write(
        db, order, {"order_status": OrderStatus.CANCELLED.value, "cancelled_at": now}, push=entry.model_dump()
    )
    for item in order["items"]:
        catalog.restore_stock(db, item["product_id"], item["quantity"])
    logger.info("Order %s cancelled by %s", order["order_id"], "admin" if by_admin else "customer")

    needs_bank = requires_bank_details(order)
    message = f"Your order #{order['order_id']} has been cancelled successfully"
    if needs_bank:
        message += ". Please submit your bank details to receive your refund"
    notifications.emit(db, order["user_id"], "order", "Order Cancelled", message, order_id=order["_id"])
    emailer.notify_user(db, order["user_id"], "order_cancelled", order["order_id"], requires_bank_details=needs_bank)
    return order


def submit_bank_details(db: Database, user: dict, order_id: str, bank_details: BankDetails) -> dict:
    order = get_order(db, order_id)
    if order["user_id"] != str(user["_id"]):
        raise Unauthorized()
    if order.get("refund"):
        raise InvalidState("Refund has already been requested for this order")
    if order["order_status"] != OrderStatus.CANCELLED.value:
        raise InvalidState("Refund details can only be submitted for cancelled orders")
    if order["payment_status"] != PaymentStatus.PAID.value:
        raise InvalidState("No payment to refund for this order")
    ensure_transition("payment status", PAYMENT_TRANSITIONS,
                      PaymentStatus(order["payment_status"]), PaymentStatus.REFUND_REQUESTED)

    refund = RefundRequested(bank_details=bank_details, refund_amount=order["total_amount"])
    order = _conditional_write(db, order, {
        "payment_status": PaymentStatus.REFUND_REQUESTED.value,
        "refund": refund.model_dump(),
    })
    logger.info("Refund requested for order %s (%.2f)", order["order_id"], order["total_amount"])
    notifications.emit(db, order["user_id"], "refund", "Refund Requested",
                       f"We received your bank details for order #{order['order_id']}. "
                       "Your refund will be processed within 5-7 business days.",
                       order_id=order["_id"])
    return order


def update_status(db: Database, admin: dict, order_id: str, target: OrderStatus,
                  location: Optional[str] = None, description: Optional[str] = None) -> dict:
    """Admin-driven order status change; appends a delivery update and notifies the buyer."""
    order = get_order(db, order_id)
    current = OrderStatus(order["order_status"])
    if target in RETURN_DRIVEN_ORDER_STATUSES or current in RETURN_DRIVEN_ORDER_STATUSES:
        raise IllegalTransition("order status", current.value, target.value)
    ensure_transition("order status", ORDER_TRANSITIONS, current, target)

    if target is OrderStatus.CANCELLED:
        return cancel(db, admin, order_id, description=description)

    now = datetime.utcnow()
    changes: Dict[str, Any] = {"order_status": target.value}
    if target is OrderStatus.DELIVERED:
        changes["delivered_at"] = now
        # Cash is collected at the door
        if order["payment_method"] == PaymentMethod.COD.value and order["payment_status"] == PaymentStatus.PENDING.value:
            changes["payment_status"] = PaymentStatus.PAID.value
    entry = DeliveryUpdate(
        status=target.value,
        location=location or "",
        description=description or f"Order {target.value.lower()}",
        timestamp=now,
    )
    order = _conditional_write(db, order, changes, push=entry.model_dump())
    logger.info("Order %s moved %s -> %s", order["order_id"], current.value, target.value)

    notifications.emit(db, order["user_id"], "delivery", f"Order {target.value}",
                       f"Your order #{order['order_id']} is now {target.value.lower()}",
                       order_id=order["_id"])
    return order


def add_delivery_update(db: Database, order_id: str, status: str, location: Optional[str] = None,
                        description: Optional[str] = None) -> dict:
    """Append a free-form tracking entry without changing the order status."""
    order = get_order(db, order_id)
    entry = DeliveryUpdate(status=status, location=location or "", description=description or "")
    order = db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$push": {"delivery_updates": entry.model_dump()}, "$set": {"updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    where = f" - {location}" if location else ""
    notifications.emit(db, order["user_id"], "delivery", "Delivery Update",
                       f"{status}{where}: {description or ''}".rstrip(": "), order_id=order["_id"])
    return order


def _completed_refund(order: dict, amount: float, transaction_id: Optional[str] = None,
                      notes: Optional[str] = None) -> dict:
    requested = order.get("refund") or {}
    return RefundCompleted(
        bank_details=requested.get("bank_details"),
        refund_amount=amount,
        initiated_at=requested.get("initiated_at"),
        transaction_id=transaction_id,
        notes=notes,
    ).model_dump()


def update_payment_status(db: Database, order_id: str, target: PaymentStatus) -> dict:
    if target not in ADMIN_PAYMENT_TARGETS:
        raise ValidationError(f"Payment status cannot be set to '{target.value}' directly")
    order = get_order(db, order_id)
    ensure_transition("payment status", PAYMENT_TRANSITIONS, PaymentStatus(order["payment_status"]), target)
    changes: Dict[str, Any] = {"payment_status": target.value}
    if target is PaymentStatus.REFUNDED:
        changes["refund"] = _completed_refund(order, order["total_amount"])
    order = _conditional_write(db, order, changes)
    logger.info("Order %s payment status set to %s", order["order_id"], target.value)
    return order


def list_refund_requests(db: Database, status: str = "pending") -> List[dict]:
    wanted = {
        "pending": [PaymentStatus.REFUND_REQUESTED.value],
        "completed": [PaymentStatus.REFUNDED.value],
        "all": [PaymentStatus.REFUND_REQUESTED.value, PaymentStatus.REFUNDED.value],
    }.get(status)
    if wanted is None:
        raise ValidationError("status must be one of pending, completed, all")
    return get_documents(db, "order", {"payment_status": {"$in": wanted}}, sort=[("updated_at", -1)])


def process_refund(db: Database, order_id: str, transaction_id: Optional[str] = None,
                   notes: Optional[str] = None) -> dict:
    """Settle a refund requested through ``submit_bank_details``."""
    order = get_order(db, order_id)
    ensure_transition("payment status", PAYMENT_TRANSITIONS,
                      PaymentStatus(order["payment_status"]), PaymentStatus.REFUNDED)
    if order["payment_status"] != PaymentStatus.REFUND_REQUESTED.value:
        raise InvalidState("No refund has been requested for this order")
    amount = order["refund"]["refund_amount"]
    order = _conditional_write(db, order, {
        "payment_status": PaymentStatus.REFUNDED.value,
        "refund": _completed_refund(order, amount, transaction_id, notes),
    })
    logger.info("Refund of %.2f settled for order %s (txn %s)", amount, order["order_id"], transaction_id)
    notifications.emit(db, order["user_id"], "refund", "Refund Processed",
                       f"Your refund of ₹{amount:.2f} for order #{order['order_id']} has been processed.",
                       order_id=order["_id"])
    emailer.notify_user(db, order["user_id"], "refund_completed", order["order_id"], amount)
    return order


def check_can_refund(order: dict) -> None:
    ensure_transition("payment status", PAYMENT_TRANSITIONS,
                      PaymentStatus(order["payment_status"]), PaymentStatus.REFUNDED)


def mark_refunded(db: Database, order: dict, amount: float, transaction_id: Optional[str] = None) -> dict:
    """Settle the refund owed by a completed return."""
    check_can_refund(order)
    return _conditional_write(db, order, {
        "payment_status": PaymentStatus.REFUNDED.value,
        "refund": _completed_refund(order, amount, transaction_id, notes="Return refund"),
    })


def set_return_status(db: Database, order: dict, target: OrderStatus) -> Optional[dict]:
    """Move Delivered <-> Returned on behalf of the return sub-machine.

    Returns ``None`` when the order is no longer in the expected state.
    """
    ensure_transition("order status", ORDER_TRANSITIONS, OrderStatus(order["order_status"]), target)
    return db["order"].find_one_and_update(
        {"_id": order["_id"], "order_status": order["order_status"]},
        {"$set": {"order_status": target.value, "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
