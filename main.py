import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import cart as carts
import catalog
import checkout
import coupons
import database
import notifications
import orders
import returns
from auth import create_token, get_current_user, hash_password, public_user, require_admin, verify_password
from config import config
from database import ensure_indexes, get_db, serialize
from errors import StoreError, ValidationError
from logging_config import setup_logging
from payment import RazorpayGateway, get_gateway, to_minor_units
from schemas import (Address, BankDetails, Coupon, DiscountType, OrderStatus, PaymentMethod, PaymentStatus,
                     Product, RefundMethod, ReturnReason, ReturnStatus, StoreModel, User, naive_utc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if database.db is not None:
        ensure_indexes(database.db)
    yield


# App setup
app = FastAPI(title="ShopEasy Storefront API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    body = {"detail": exc.message, "code": exc.code}
    if exc.current is not None:
        body["current"] = exc.current
    return JSONResponse(status_code=exc.status_code, content=body)


# Schemas (request/response)
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    category: Optional[str] = None
    is_active: Optional[bool] = None


class CartItemIn(BaseModel):
    product_id: str
    quantity: int = 1
    size: Optional[str] = None
    color: Optional[str] = None


class CouponCodeIn(BaseModel):
    code: str


class CouponUpdate(StoreModel):
    code: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, ge=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None


class CouponValidateIn(BaseModel):
    code: str
    cart_total: float = Field(..., ge=0)


class CheckoutRequest(BaseModel):
    shipping_address: Address
    payment_method: PaymentMethod = PaymentMethod.COD
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None


class PaymentOrderRequest(BaseModel):
    shipping_address: Address
    payment_method: PaymentMethod = PaymentMethod.RAZORPAY
    idempotency_key: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class CancelPaymentRequest(BaseModel):
    razorpay_order_id: str


class OrderStatusUpdate(BaseModel):
    order_status: OrderStatus
    location: Optional[str] = None
    description: Optional[str] = None


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus


class DeliveryUpdateIn(BaseModel):
    status: str
    location: Optional[str] = None
    description: Optional[str] = None


class ProcessRefundIn(BaseModel):
    refund_transaction_id: Optional[str] = None
    refund_notes: Optional[str] = None


class ReturnItemIn(BaseModel):
    product_id: str
    quantity: Optional[int] = None
    size: Optional[str] = None
    color: Optional[str] = None
    reason: str


class ReturnCreate(BaseModel):
    order_id: str
    items: List[ReturnItemIn]
    return_reason: ReturnReason
    refund_method: RefundMethod = RefundMethod.ORIGINAL
    bank_details: Optional[BankDetails] = None
    additional_comments: Optional[str] = None


class ReturnStatusUpdate(BaseModel):
    return_status: ReturnStatus
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    refund_transaction_id: Optional[str] = None


class SendNotificationIn(BaseModel):
    user_id: str
    type: str = "general"
    title: str
    message: str


class BroadcastNotificationIn(BaseModel):
    type: str = "general"
    title: str
    message: str


# Health and helpers
@app.get("/")
def root():
    return {"message": "ShopEasy Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
@app.post("/auth/register")
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    doc = User(name=payload.name, email=payload.email, hashed_password=hash_password(payload.password)).model_dump()
    try:
        inserted_id = db["user"].insert_one(doc).inserted_id
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    user = db["user"].find_one({"_id": inserted_id})
    return {"token": create_token(user), "user": public_user(user)}


@app.post("/auth/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_token(user), "user": public_user(user)}


@app.get("/me")
def me(current_user: dict = Depends(get_current_user)):
    return public_user(current_user)


# Products
@app.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return serialize(catalog.require_product(db, product_id))


@app.post("/products", status_code=201)
def create_product(payload: Product, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return {"id": catalog.create_product(db, payload)}


@app.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, user: dict = Depends(require_admin),
                   db: Database = Depends(get_db)):
    return serialize(catalog.update_product(db, product_id, payload.model_dump(exclude_unset=True)))


# Cart
@app.get("/cart")
def get_cart(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return carts.view(carts.load(db, str(user["_id"])))


@app.post("/cart/add")
def cart_add(item: CartItemIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    state = carts.add_item(db, str(user["_id"]), item.product_id, item.quantity, item.size, item.color)
    return carts.view(state)


@app.put("/cart/update")
def cart_update(item: CartItemIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    state = carts.update_quantity(db, str(user["_id"]), item.product_id, item.size, item.color, item.quantity)
    return carts.view(state)


@app.delete("/cart/remove/{product_id}")
def cart_remove(product_id: str, size: Optional[str] = None, color: Optional[str] = None,
                user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return carts.view(carts.remove_item(db, str(user["_id"]), product_id, size, color))


@app.post("/cart/apply-coupon")
def cart_apply_coupon(payload: CouponCodeIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return carts.view(carts.apply_coupon(db, str(user["_id"]), payload.code))


@app.delete("/cart/remove-coupon")
def cart_remove_coupon(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return carts.view(carts.remove_coupon(db, str(user["_id"])))


@app.delete("/cart/clear")
def cart_clear(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return carts.view(carts.clear(db, str(user["_id"])))


# Coupons
@app.get("/coupons")
def list_coupons(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(coupons.list_usable(db))


@app.get("/coupons/all")
def list_all_coupons(user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize(coupons.list_all(db))


@app.post("/coupons", status_code=201)
def create_coupon(payload: Coupon, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize(coupons.create_coupon(db, payload.model_copy(update={"used_count": 0})))


@app.put("/coupons/{coupon_id}")
def update_coupon(coupon_id: str, payload: CouponUpdate, user: dict = Depends(require_admin),
                  db: Database = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    for key in ("valid_from", "valid_until"):
        if changes.get(key) is not None:
            changes[key] = naive_utc(changes[key])
    return serialize(coupons.update_coupon(db, coupon_id, changes))


@app.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    coupons.delete_coupon(db, coupon_id)
    return {"message": "Coupon deleted successfully"}


@app.post("/coupons/validate")
def validate_coupon(payload: CouponValidateIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(coupons.preview(db, payload.code, payload.cart_total))


# Payment
@app.post("/payment/create-order")
def create_payment_order(payload: PaymentOrderRequest, idempotency_key: Optional[str] = Header(default=None),
                         user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                         gateway: RazorpayGateway = Depends(get_gateway)):
    attempt = checkout.begin_online_payment(
        db, gateway, user, payload.shipping_address, payload.payment_method,
        idempotency_key=payload.idempotency_key or idempotency_key,
    )
    return {
        "success": True,
        "order": {
            "id": attempt.get("gateway_order_id"),
            "amount": to_minor_units(attempt["amount"]),
            "currency": attempt["currency"],
        },
        "key_id": config.RAZORPAY_KEY_ID,
        "checkout": serialize(attempt),
    }


@app.post("/payment/verify-payment")
def verify_payment(payload: VerifyPaymentRequest, user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    order = checkout.verify_and_place(db, user, payload.razorpay_order_id, payload.razorpay_payment_id,
                                      payload.razorpay_signature)
    return {"success": True, "message": "Payment verified successfully", "order": orders.to_view(order)}


@app.post("/payment/cancel")
def cancel_payment(payload: CancelPaymentRequest, user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    return serialize(checkout.cancel_payment(db, user, payload.razorpay_order_id))


# Checkout & Orders
@app.post("/orders", status_code=201)
def create_order(payload: CheckoutRequest, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if not payload.payment_method.is_online:
        order = checkout.place_cod_order(db, user, payload.shipping_address)
    else:
        if not (payload.razorpay_order_id and payload.razorpay_payment_id and payload.razorpay_signature):
            raise ValidationError("Online payments must be verified before the order is placed")
        order = checkout.verify_and_place(db, user, payload.razorpay_order_id, payload.razorpay_payment_id,
                                          payload.razorpay_signature)
    return orders.to_view(order)


@app.get("/orders/my-orders")
def my_orders(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return [orders.to_view(o) for o in orders.list_for_user(db, str(user["_id"]))]


@app.get("/orders/admin/refund-requests")
def refund_requests(status: str = "pending", user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return [orders.to_view(o) for o in orders.list_refund_requests(db, status)]


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.to_view(orders.get_for_user(db, user, order_id))


@app.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.to_view(orders.cancel(db, user, order_id))


@app.post("/orders/{order_id}/refund-bank-details")
def submit_refund_bank_details(order_id: str, payload: BankDetails, user: dict = Depends(get_current_user),
                               db: Database = Depends(get_db)):
    order = orders.submit_bank_details(db, user, order_id, payload)
    return {"message": "Refund request submitted successfully", "order": orders.to_view(order)}


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusUpdate, user: dict = Depends(require_admin),
                        db: Database = Depends(get_db)):
    order = orders.update_status(db, user, order_id, payload.order_status, payload.location, payload.description)
    return orders.to_view(order)


@app.put("/orders/{order_id}/payment-status")
def update_payment_status(order_id: str, payload: PaymentStatusUpdate, user: dict = Depends(require_admin),
                          db: Database = Depends(get_db)):
    return orders.to_view(orders.update_payment_status(db, order_id, payload.payment_status))


@app.put("/orders/{order_id}/process-refund")
def process_refund(order_id: str, payload: ProcessRefundIn, user: dict = Depends(require_admin),
                   db: Database = Depends(get_db)):
    order = orders.process_refund(db, order_id, payload.refund_transaction_id, payload.refund_notes)
    return orders.to_view(order)


# Admin
@app.get("/admin/orders")
def admin_orders(user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return [orders.to_view(o) for o in orders.list_all(db)]


@app.post("/admin/orders/{order_id}/delivery-update")
def admin_delivery_update(order_id: str, payload: DeliveryUpdateIn, user: dict = Depends(require_admin),
                          db: Database = Depends(get_db)):
    order = orders.add_delivery_update(db, order_id, payload.status, payload.location, payload.description)
    return orders.to_view(order)


@app.post("/admin/send-notification", status_code=201)
def admin_send_notification(payload: SendNotificationIn, user: dict = Depends(require_admin),
                            db: Database = Depends(get_db)):
    if not ObjectId.is_valid(payload.user_id) or not db["user"].find_one({"_id": ObjectId(payload.user_id)}):
        raise HTTPException(status_code=404, detail="User not found")
    notification_id = notifications.emit(db, payload.user_id, payload.type, payload.title, payload.message)
    return {"id": notification_id}


@app.post("/admin/send-notification-all", status_code=201)
def admin_broadcast_notification(payload: BroadcastNotificationIn, user: dict = Depends(require_admin),
                                 db: Database = Depends(get_db)):
    sent = notifications.broadcast(db, payload.type, payload.title, payload.message)
    return {"message": f"Notification sent to {sent} users", "count": sent}


# Returns
@app.post("/returns", status_code=201)
def create_return(payload: ReturnCreate, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    ret = returns.create_return(
        db, user, payload.order_id,
        items=[i.model_dump() for i in payload.items],
        return_reason=payload.return_reason,
        refund_method=payload.refund_method,
        bank_details=payload.bank_details,
        additional_comments=payload.additional_comments,
    )
    return serialize(ret)


@app.get("/returns/my-returns")
def my_returns(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(returns.list_for_user(db, str(user["_id"])))


@app.get("/returns/admin/all")
def all_returns(user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize(returns.list_all(db))


@app.get("/returns/{return_id}")
def get_return(return_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(returns.get_for_user(db, user, return_id))


@app.put("/returns/{return_id}/status")
def update_return_status(return_id: str, payload: ReturnStatusUpdate, user: dict = Depends(require_admin),
                         db: Database = Depends(get_db)):
    ret = returns.update_status(db, return_id, payload.return_status, payload.admin_notes,
                                payload.rejection_reason, payload.refund_transaction_id)
    return {"message": "Return status updated successfully", "data": serialize(ret)}


@app.delete("/returns/{return_id}")
def cancel_return(return_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    returns.cancel_return(db, user, return_id)
    return {"message": "Return request cancelled successfully"}


# Notifications
@app.get("/notifications")
def list_notifications(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(notifications.list_for_user(db, str(user["_id"])))


@app.get("/notifications/unread-count")
def unread_notifications(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"count": notifications.unread_count(db, str(user["_id"]))}


@app.put("/notifications/read-all")
def read_all_notifications(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    notifications.mark_all_read(db, str(user["_id"]))
    return {"message": "All notifications marked as read"}


@app.put("/notifications/{notification_id}/read")
def read_notification(notification_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(notifications.mark_read(db, str(user["_id"]), notification_id))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
