"""
Checkout / payment orchestration.

Every checkout attempt is recorded in the "checkout" collection and moves through
``CheckoutStatus``:

    Draft -> AwaitingPayment -> Verified -> OrderCreated      (online payment)
    Draft -> OrderCreated                                     (cash on delivery)
    AwaitingPayment -> PaymentFailed | Cancelled

Placing the order is a single unit: stock is taken with conditional decrements, the
coupon use is claimed with a conditional increment and the order is inserted; any
failure undoes the steps already done, so the cart is left untouched.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import cart as carts
import catalog
import coupons
import emailer
import notifications
from config import config
from database import public_id
from errors import (CouponExpired, InsufficientStock, InvalidPaymentSignature, InvalidState, NotFound,
                    PaymentGatewayError, StoreError, ValidationError)
from payment import RazorpayGateway, to_minor_units, verify_signature
from schemas import (CHECKOUT_TRANSITIONS, Address, CheckoutAttempt, CheckoutStatus, DeliveryUpdate, Order,
                     OrderItem, PaymentMethod, PaymentStatus, sources_of)

logger = logging.getLogger(__name__)


def _advance(db: Database, attempt: dict, target: CheckoutStatus, **fields) -> Optional[dict]:
    """Move an attempt to ``target`` if its stored status still allows it."""
    fields.update({"status": target.value, "updated_at": datetime.utcnow()})
    return db["checkout"].find_one_and_update(
        {"_id": attempt["_id"], "status": {"$in": sources_of(CHECKOUT_TRANSITIONS, target)}},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )


def _load_nonempty_cart(db: Database, user_id: str) -> carts.CartState:
    state = carts.load(db, user_id)
    if not state.lines:
        raise InvalidState("Cart is empty", current=carts.view(state))
    return state


def _take_stock(db: Database, state: carts.CartState) -> None:
    taken: List[Tuple[str, int]] = []
    for line in state.lines:
        product_id, qty = line.item["product_id"], line.item["quantity"]
        if not catalog.decrement_stock_if_sufficient(db, product_id, qty):
            for pid, q in taken:
                catalog.restore_stock(db, pid, q)
            raise InsufficientStock(
                f"Insufficient stock for {line.product.get('name', 'an item')}",
                current=carts.view(carts.load(db, state.cart["user_id"])),
            )
        taken.append((product_id, qty))


def _give_back_stock(db: Database, state: carts.CartState) -> None:
    for line in state.lines:
        catalog.restore_stock(db, line.item["product_id"], line.item["quantity"])


def _clear_ordered_lines(db: Database, state: carts.CartState, coupon: Optional[dict], now: datetime) -> None:
    """Empty the cart that was ordered; if it changed meanwhile, take out only what was ordered."""
    cleared = db["cart"].update_one(
        {"_id": state.cart["_id"], "version": state.cart.get("version", 0)},
        {"$set": {"items": [], "applied_coupon": None, "updated_at": now}, "$inc": {"version": 1}},
    )
    if cleared.matched_count:
        return
    uid = state.cart["user_id"]
    carts.remove_ordered(db, uid, state.items, str(coupon["_id"]) if coupon else None)
    logger.info("Cart of user %s changed during checkout; kept the changes made meanwhile", uid)


def place_order(db: Database, user: dict, shipping_address: Address, payment_method: PaymentMethod,
                attempt: Optional[dict] = None) -> dict:
    """Turn the user's cart into an order.

    ``attempt`` is the verified checkout attempt for online payments; its amount must
    still match the cart total, and the order starts out Paid.
    """
    uid = str(user["_id"])
    state = _load_nonempty_cart(db, uid)
    totals = state.totals()
    coupon = state.coupon if totals["coupon_valid"] else None

    if attempt is not None and abs(totals["total"] - float(attempt["amount"])) > 0.005:
        raise InvalidState("Cart changed after payment was initiated", current=carts.view(state))

    items = [
        OrderItem(
            product_id=line.item["product_id"],
            name=line.product.get("name", ""),
            price=line.price,
            quantity=line.item["quantity"],
            size=line.item.get("size"),
            color=line.item.get("color"),
            image=catalog.primary_image(line.product),
        )
        for line in state.lines
    ]

    _take_stock(db, state)

    if coupon is not None and not coupons.claim_usage(db, coupon):
        _give_back_stock(db, state)
        raise CouponExpired(current=carts.view(state))

    now = datetime.utcnow()
    order = Order(
        order_id=public_id(db, "order", "SE"),
        user_id=uid,
        items=items,
        shipping_address=shipping_address,
        payment_method=payment_method,
        payment_status=PaymentStatus.PAID if attempt is not None else PaymentStatus.PENDING,
        gateway_order_id=attempt.get("gateway_order_id") if attempt else None,
        gateway_payment_id=attempt.get("gateway_payment_id") if attempt else None,
        delivery_updates=[DeliveryUpdate(status="Order Placed", description="Your order has been placed successfully")],
        expected_delivery=now + timedelta(days=config.EXPECTED_DELIVERY_DAYS),
        subtotal=totals["subtotal"],
        discount=totals["discount"],
        delivery_charge=totals["delivery_charge"],
        total_amount=totals["total"],
        coupon_id=str(coupon["_id"]) if coupon else None,
        created_at=now,
        updated_at=now,
    )
    doc = order.model_dump()
    try:
        doc["_id"] = db["order"].insert_one(doc).inserted_id
    except Exception:
        _give_back_stock(db, state)
        if coupon is not None:
            coupons.release_usage(db, coupon["_id"])
        raise

    _clear_ordered_lines(db, state, coupon, now)
    logger.info("Order %s placed by user %s (%s, total %.2f)", doc["order_id"], uid,
                doc["payment_method"], doc["total_amount"])

    expected = doc["expected_delivery"].strftime("%d/%m/%Y")
    notifications.emit(db, uid, "order", "Order Placed Successfully",
                       f"Your order #{doc['order_id']} has been placed successfully. Expected delivery by {expected}",
                       order_id=doc["_id"])
    emailer.notify_user(db, uid, "order_confirmation", doc["order_id"], doc["total_amount"])
    return doc


def place_cod_order(db: Database, user: dict, shipping_address: Address) -> dict:
    uid = str(user["_id"])
    state = _load_nonempty_cart(db, uid)
    attempt = CheckoutAttempt(
        user_id=uid,
        payment_method=PaymentMethod.COD,
        shipping_address=shipping_address,
        amount=state.totals()["total"],
        currency=config.PAYMENT_CURRENCY,
    ).model_dump(exclude_none=True)
    attempt["_id"] = db["checkout"].insert_one(attempt).inserted_id
    try:
        order = place_order(db, user, shipping_address, PaymentMethod.COD)
    except StoreError as exc:
        _advance(db, attempt, CheckoutStatus.PAYMENT_FAILED, failure_reason=exc.message)
        raise
    _advance(db, attempt, CheckoutStatus.ORDER_CREATED, order_id=str(order["_id"]))
    return order


def begin_online_payment(db: Database, gateway: RazorpayGateway, user: dict, shipping_address: Address,
                         payment_method: PaymentMethod, idempotency_key: Optional[str] = None) -> dict:
    """Create (or, for a repeated idempotency key, return) an attempt awaiting payment."""
    if not payment_method.is_online:
        raise ValidationError("Cash on delivery orders do not need a payment order")
    uid = str(user["_id"])
    if idempotency_key:
        existing = db["checkout"].find_one({"user_id": uid, "idempotency_key": idempotency_key})
        if existing:
            return existing

    state = _load_nonempty_cart(db, uid)
    attempt = CheckoutAttempt(
        user_id=uid,
        payment_method=payment_method,
        shipping_address=shipping_address,
        amount=state.totals()["total"],
        currency=config.PAYMENT_CURRENCY,
        idempotency_key=idempotency_key,
    ).model_dump(exclude_none=True)
    try:
        attempt["_id"] = db["checkout"].insert_one(attempt).inserted_id
    except DuplicateKeyError:
        # Same key from the same user raced us to the insert
        existing = db["checkout"].find_one({"user_id": uid, "idempotency_key": idempotency_key})
        if existing:
            return existing
        raise

    try:
        remote = gateway.create_remote_order(
            to_minor_units(attempt["amount"]), attempt["currency"], receipt=f"rcpt_{attempt['_id']}"
        )
    except PaymentGatewayError as exc:
        _advance(db, attempt, CheckoutStatus.PAYMENT_FAILED, failure_reason=exc.message)
        raise
    updated = _advance(db, attempt, CheckoutStatus.AWAITING_PAYMENT, gateway_order_id=remote["gateway_order_id"])
    logger.info("Checkout %s awaiting payment on gateway order %s", attempt["_id"], remote["gateway_order_id"])
    return updated


def _find_attempt(db: Database, user: dict, gateway_order_id: str) -> dict:
    attempt = db["checkout"].find_one({"gateway_order_id": gateway_order_id, "user_id": str(user["_id"])})
    if not attempt:
        raise NotFound("Payment session not found")
    return attempt


def verify_and_place(db: Database, user: dict, gateway_order_id: str, payment_id: str, signature: str) -> dict:
    attempt = _find_attempt(db, user, gateway_order_id)
    if attempt["status"] == CheckoutStatus.ORDER_CREATED.value:
        return db["order"].find_one({"gateway_order_id": gateway_order_id})

    if not verify_signature(gateway_order_id, payment_id, signature):
        _advance(db, attempt, CheckoutStatus.PAYMENT_FAILED, failure_reason="Invalid payment signature")
        logger.warning("Invalid payment signature for gateway order %s", gateway_order_id)
        raise InvalidPaymentSignature()

    verified = _advance(db, attempt, CheckoutStatus.VERIFIED, gateway_payment_id=payment_id)
    if verified is None:
        raise InvalidState(f"Payment session is {attempt['status']}")

    try:
        order = place_order(db, user, Address(**verified["shipping_address"]),
                            PaymentMethod(verified["payment_method"]), attempt=verified)
    except StoreError as exc:
        # Captured by the gateway but not confirmed here; reconciled out of band
        _advance(db, verified, CheckoutStatus.PAYMENT_FAILED, failure_reason=exc.message)
        logger.error("Verified payment %s could not be turned into an order: %s", payment_id, exc.message)
        raise
    _advance(db, verified, CheckoutStatus.ORDER_CREATED, order_id=str(order["_id"]))
    return order


def cancel_payment(db: Database, user: dict, gateway_order_id: str) -> dict:
    attempt = _find_attempt(db, user, gateway_order_id)
    cancelled = _advance(db, attempt, CheckoutStatus.CANCELLED)
    if cancelled is None:
        raise InvalidState(f"Payment session is {attempt['status']}")
    logger.info("Checkout for gateway order %s abandoned", gateway_order_id)
    return cancelled
