"""
Cart aggregate.

A cart belongs to exactly one user. Lines are keyed by (product, size, color); every
read or mutation re-resolves the lines against the catalog, dropping lines whose
product is gone or sold out and clamping quantities to live stock, and persists the
repaired cart before returning it.

Writes are guarded by the cart's ``version`` counter so two concurrent mutations
cannot both act on the same snapshot.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database

import catalog
import coupons
from config import config
from errors import InsufficientStock, InvalidState, ItemNotFound, StoreError, ValidationError
from schemas import Cart, CartItem

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


@dataclass
class CartLine:
    item: dict
    product: dict

    @property
    def price(self) -> float:
        return float(self.product.get("price", self.item.get("price_at_add", 0.0)))

    @property
    def line_total(self) -> float:
        return round(self.price * self.item["quantity"], 2)


@dataclass
class CartState:
    cart: dict
    lines: List[CartLine] = field(default_factory=list)
    coupon: Optional[dict] = None
    repaired: bool = False

    @property
    def items(self) -> List[dict]:
        return [line.item for line in self.lines]

    @property
    def subtotal(self) -> float:
        return round(sum(line.price * line.item["quantity"] for line in self.lines), 2)

    def totals(self) -> dict:
        return compute_totals(self.subtotal, self.coupon, has_items=bool(self.lines))


def _norm(value: Optional[str]) -> Optional[str]:
    return value or None


def matches(item: dict, product_id: str, size: Optional[str], color: Optional[str]) -> bool:
    return (
        item["product_id"] == str(product_id)
        and _norm(item.get("size")) == _norm(size)
        and _norm(item.get("color")) == _norm(color)
    )


def delivery_charge_for(subtotal: float) -> float:
    return 0.0 if subtotal >= config.FREE_DELIVERY_THRESHOLD else config.DELIVERY_CHARGE


def compute_totals(subtotal: float, coupon: Optional[dict], has_items: bool = True) -> dict:
    discount = 0.0
    coupon_valid = False
    if coupon is not None and coupons.is_usable(coupon) and subtotal >= float(coupon.get("min_order_amount") or 0):
        discount = min(coupons.discount_for(coupon, subtotal), subtotal)
        coupon_valid = True
    delivery = delivery_charge_for(subtotal) if has_items else 0.0
    total = max(0.0, round(subtotal - discount + delivery, 2))
    return {
        "subtotal": round(subtotal, 2),
        "discount": round(discount, 2),
        "delivery_charge": delivery,
        "total": total,
        "coupon_valid": coupon_valid,
    }


def get_or_create(db: Database, user_id: str) -> dict:
    db["cart"].update_one(
        {"user_id": user_id},
        {"$setOnInsert": Cart(user_id=user_id).model_dump(exclude={"user_id"})},
        upsert=True,
    )
    return db["cart"].find_one({"user_id": user_id})


def resolve(db: Database, cart: dict) -> CartState:
    """Re-resolve every line against the catalog and repair stale ones."""
    lines: List[CartLine] = []
    repaired = False
    for item in cart.get("items", []):
        product = catalog.get_product(db, item["product_id"])
        stock = int(product.get("stock", 0)) if product else 0
        if not product or stock <= 0:
            logger.info("Dropping stale cart line %s for user %s", item["product_id"], cart["user_id"])
            repaired = True
            continue
        if item["quantity"] > stock:
            item = dict(item, quantity=stock)
            repaired = True
        lines.append(CartLine(item=item, product=product))

    coupon = None
    if cart.get("applied_coupon"):
        coupon = db["coupon"].find_one({"_id": ObjectId(cart["applied_coupon"])})
        if coupon is None:
            repaired = True
    return CartState(cart=cart, lines=lines, coupon=coupon, repaired=repaired)


def _write(db: Database, cart: dict, items: List[dict], coupon: Optional[dict]) -> bool:
    result = db["cart"].update_one(
        {"_id": cart["_id"], "version": cart.get("version", 0)},
        {
            "$set": {
                "items": items,
                "applied_coupon": str(coupon["_id"]) if coupon else None,
                "updated_at": datetime.utcnow(),
            },
            "$inc": {"version": 1},
        },
    )
    return result.modified_count == 1


def load(db: Database, user_id: str) -> CartState:
    for _ in range(MAX_WRITE_ATTEMPTS):
        state = resolve(db, get_or_create(db, user_id))
        if not state.repaired:
            return state
        if _write(db, state.cart, state.items, state.coupon):
            return resolve(db, db["cart"].find_one({"_id": state.cart["_id"]}))
    raise InvalidState("Cart is being modified concurrently, please retry")


Mutation = Callable[[CartState], Tuple[List[dict], Optional[dict]]]


def mutate(db: Database, user_id: str, change: Mutation) -> CartState:
    """Apply ``change`` to a freshly resolved cart and write it back atomically.

    ``change`` returns the new (items, coupon) pair or raises a ``StoreError``; in the
    latter case any repair already found is still persisted and the error carries the
    current cart view.
    """
    for _ in range(MAX_WRITE_ATTEMPTS):
        state = resolve(db, get_or_create(db, user_id))
        try:
            items, coupon = change(state)
        except StoreError as exc:
            if state.repaired:
                _write(db, state.cart, state.items, state.coupon)
            exc.current = view(load(db, user_id))
            raise
        if _write(db, state.cart, items, coupon):
            return resolve(db, db["cart"].find_one({"_id": state.cart["_id"]}))
        logger.debug("Cart write conflict for user %s, retrying", user_id)
    raise InvalidState("Cart is being modified concurrently, please retry")


def add_item(db: Database, user_id: str, product_id: str, quantity: int = 1,
             size: Optional[str] = None, color: Optional[str] = None) -> CartState:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    catalog.require_product(db, product_id)

    def change(state: CartState):
        product = catalog.require_product(db, product_id)
        stock = int(product.get("stock", 0))
        items = [dict(i) for i in state.items]
        existing = next((i for i in items if matches(i, product_id, size, color)), None)
        wanted = quantity + (existing["quantity"] if existing else 0)
        if wanted > stock:
            raise InsufficientStock(f"Only {stock} left in stock")
        if existing:
            existing["quantity"] = wanted
        else:
            items.append(CartItem(
                product_id=str(product_id),
                quantity=quantity,
                size=_norm(size),
                color=_norm(color),
                price_at_add=float(product.get("price", 0.0)),
            ).model_dump())
        return items, state.coupon

    return mutate(db, user_id, change)


def update_quantity(db: Database, user_id: str, product_id: str, size: Optional[str],
                    color: Optional[str], quantity: int) -> CartState:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1; remove the item instead")

    def change(state: CartState):
        items = [dict(i) for i in state.items]
        line = next((i for i in items if matches(i, product_id, size, color)), None)
        if line is None:
            raise ItemNotFound()
        product = catalog.require_product(db, product_id)
        if quantity > int(product.get("stock", 0)):
            raise InsufficientStock(f"Only {product.get('stock', 0)} left in stock")
        line["quantity"] = quantity
        return items, state.coupon

    return mutate(db, user_id, change)


def remove_item(db: Database, user_id: str, product_id: str, size: Optional[str] = None,
                color: Optional[str] = None) -> CartState:
    def change(state: CartState):
        items = [i for i in state.items if not matches(i, product_id, size, color)]
        if len(items) == len(state.items):
            raise ItemNotFound()
        return items, state.coupon

    return mutate(db, user_id, change)


def apply_coupon(db: Database, user_id: str, code: str) -> CartState:
    coupon = coupons.find_by_code(db, code)

    def change(state: CartState):
        coupons.check(coupon, state.subtotal)
        return state.items, coupon

    return mutate(db, user_id, change)


def remove_coupon(db: Database, user_id: str) -> CartState:
    return mutate(db, user_id, lambda state: (state.items, None))


def clear(db: Database, user_id: str) -> CartState:
    return mutate(db, user_id, lambda state: ([], None))


def remove_ordered(db: Database, user_id: str, ordered: List[dict],
                   coupon_id: Optional[str] = None) -> CartState:
    """Take ordered quantities out of the cart, keeping anything added after checkout began."""
    def change(state: CartState):
        items = [dict(i) for i in state.items]
        for placed in ordered:
            line = next((i for i in items if matches(i, placed["product_id"], placed.get("size"),
                                                     placed.get("color"))), None)
            if line is not None:
                line["quantity"] -= placed["quantity"]
        items = [i for i in items if i["quantity"] > 0]
        coupon = state.coupon
        if coupon is not None and str(coupon["_id"]) == coupon_id:
            coupon = None
        return items, coupon

    return mutate(db, user_id, change)


def view(state: CartState) -> dict:
    cart = state.cart
    items = []
    for line in state.lines:
        items.append({
            "product_id": line.item["product_id"],
            "name": line.product.get("name"),
            "image": catalog.primary_image(line.product),
            "price": line.price,
            "quantity": line.item["quantity"],
            "size": line.item.get("size"),
            "color": line.item.get("color"),
            "stock": int(line.product.get("stock", 0)),
            "line_total": line.line_total,
        })
    applied = None
    if state.coupon:
        applied = {
            "id": str(state.coupon["_id"]),
            "code": state.coupon["code"],
            "discount_type": state.coupon["discount_type"],
            "discount_value": state.coupon["discount_value"],
            "min_order_amount": state.coupon.get("min_order_amount", 0),
            "max_discount_amount": state.coupon.get("max_discount_amount"),
        }
    out = {
        "id": str(cart["_id"]),
        "user_id": cart["user_id"],
        "items": items,
        "applied_coupon": applied,
        "updated_at": cart.get("updated_at").isoformat() if cart.get("updated_at") else None,
    }
    out.update(state.totals())
    return out
