"""
Coupon validation and maintenance.

A coupon is usable iff it is active, ``now`` lies in [valid_from, valid_until] and the
usage cap (if any) has not been reached. ``used_count`` only moves when an order is
actually placed, through the conditional increment in ``claim_usage``.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, to_object_id
from errors import CouponExpired, CouponNotFound, InvalidState, MinimumOrderNotMet, NotFound, ValidationError
from schemas import Coupon, DiscountType

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def find_by_code(db: Database, code: str) -> dict:
    coupon = db["coupon"].find_one({"code": normalize_code(code)})
    if not coupon:
        raise CouponNotFound()
    return coupon


def is_usable(coupon: dict, now: Optional[datetime] = None) -> bool:
    now = now or datetime.utcnow()
    limit = coupon.get("usage_limit")
    return (
        bool(coupon.get("is_active", True))
        and coupon["valid_from"] <= now <= coupon["valid_until"]
        and (limit is None or coupon.get("used_count", 0) < limit)
    )


def discount_for(coupon: dict, subtotal: float) -> float:
    """Discount granted on ``subtotal``; callers clamp against the subtotal."""
    value = float(coupon.get("discount_value", 0))
    if coupon.get("discount_type") == DiscountType.PERCENTAGE.value:
        discount = subtotal * value / 100
        cap = coupon.get("max_discount_amount")
        if cap is not None:
            discount = min(discount, float(cap))
    else:
        discount = value
    return round(discount, 2)


def check(coupon: dict, subtotal: float, now: Optional[datetime] = None) -> None:
    if not is_usable(coupon, now):
        raise CouponExpired()
    if subtotal < float(coupon.get("min_order_amount") or 0):
        raise MinimumOrderNotMet(float(coupon["min_order_amount"]))


def validate(db: Database, code: str, subtotal: float) -> dict:
    coupon = find_by_code(db, code)
    check(coupon, subtotal)
    return coupon


def claim_usage(db: Database, coupon: dict) -> bool:
    """Atomically count one use, re-validating the coupon at the same time."""
    now = datetime.utcnow()
    filt: Dict[str, Any] = {
        "_id": coupon["_id"],
        "is_active": True,
        "valid_from": {"$lte": now},
        "valid_until": {"$gte": now},
    }
    limit = coupon.get("usage_limit")
    if limit is None:
        filt["usage_limit"] = None
    else:
        filt["usage_limit"] = limit
        filt["used_count"] = {"$lt": limit}
    result = db["coupon"].update_one(filt, {"$inc": {"used_count": 1}})
    return result.modified_count == 1


def release_usage(db: Database, coupon_id: ObjectId) -> None:
    db["coupon"].update_one({"_id": coupon_id, "used_count": {"$gt": 0}}, {"$inc": {"used_count": -1}})


# Maintenance

def list_usable(db: Database) -> List[dict]:
    now = datetime.utcnow()
    coupons = get_documents(
        db, "coupon",
        {"is_active": True, "valid_from": {"$lte": now}, "valid_until": {"$gte": now}},
        sort=[("created_at", -1)],
    )
    visible = []
    for c in coupons:
        if not is_usable(c, now):
            continue
        c.pop("used_count", None)
        c.pop("usage_limit", None)
        visible.append(c)
    return visible


def list_all(db: Database) -> List[dict]:
    return get_documents(db, "coupon", sort=[("created_at", -1)])


def create_coupon(db: Database, payload: Coupon) -> dict:
    if payload.valid_until < payload.valid_from:
        raise ValidationError("valid_until must not be before valid_from")
    try:
        coupon_id = create_document(db, "coupon", payload.model_dump())
    except DuplicateKeyError:
        raise ValidationError("Coupon code already exists")
    logger.info("Coupon %s created", payload.code)
    return db["coupon"].find_one({"_id": ObjectId(coupon_id)})


def update_coupon(db: Database, coupon_id: str, changes: Dict[str, Any]) -> dict:
    if "code" in changes:
        changes["code"] = normalize_code(changes["code"])
    current = db["coupon"].find_one({"_id": to_object_id(coupon_id, "Coupon")})
    if not current:
        raise NotFound("Coupon not found")
    if changes.get("valid_until", current["valid_until"]) < changes.get("valid_from", current["valid_from"]):
        raise ValidationError("valid_until must not be before valid_from")
    changes["updated_at"] = datetime.utcnow()
    try:
        # Window checked above only holds if nobody moved it meanwhile
        coupon = db["coupon"].find_one_and_update(
            {"_id": current["_id"], "valid_from": current["valid_from"], "valid_until": current["valid_until"]},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ValidationError("Coupon code already exists")
    if not coupon:
        raise InvalidState("Coupon was modified concurrently, please retry")
    return coupon


def delete_coupon(db: Database, coupon_id: str) -> None:
    result = db["coupon"].delete_one({"_id": to_object_id(coupon_id, "Coupon")})
    if result.deleted_count == 0:
        raise NotFound("Coupon not found")
    logger.info("Coupon %s deleted", coupon_id)


def preview(db: Database, code: str, cart_total: float) -> dict:
    coupon = validate(db, code, cart_total)
    return {"valid": True, "coupon": coupon, "discount": min(discount_for(coupon, cart_total), cart_total)}
