"""
Database Schemas for the Storefront

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name
(``ReturnRequest`` is stored in "return", ``CheckoutAttempt`` in "checkout").

The three status enumerations and their legal-transition tables live here and nowhere else.
"""
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from errors import IllegalTransition

IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")


# Status enumerations

class OrderStatus(str, Enum):
    PLACED = "Placed"
    CONFIRMED = "Confirmed"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURNED = "Returned"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    REFUND_REQUESTED = "Refund Requested"
    REFUNDED = "Refunded"


class ReturnStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    PICKUP_SCHEDULED = "Pickup Scheduled"
    ITEM_RECEIVED = "Item Received"
    REFUND_PROCESSING = "Refund Processing"
    REFUND_COMPLETED = "Refund Completed"


class CheckoutStatus(str, Enum):
    DRAFT = "Draft"
    AWAITING_PAYMENT = "AwaitingPayment"
    VERIFIED = "Verified"
    ORDER_CREATED = "OrderCreated"
    PAYMENT_FAILED = "PaymentFailed"
    CANCELLED = "Cancelled"


class PaymentMethod(str, Enum):
    COD = "COD"
    RAZORPAY = "Razorpay"
    UPI = "UPI"
    CARD = "Card"

    @property
    def is_online(self) -> bool:
        return self is not PaymentMethod.COD


class RefundMethod(str, Enum):
    ORIGINAL = "Original Payment Method"
    BANK_TRANSFER = "Bank Transfer"
    STORE_CREDIT = "Store Credit"


class ReturnReason(str, Enum):
    DEFECTIVE = "Defective Product"
    WRONG_ITEM = "Wrong Item Received"
    NOT_AS_DESCRIBED = "Not as Described"
    SIZE_FIT = "Size/Fit Issue"
    CHANGED_MIND = "Changed Mind"
    BETTER_PRICE = "Better Price Available"
    OTHER = "Other"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


# Legal transitions

ORDER_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PLACED: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.OUT_FOR_DELIVERY},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED},
    # Delivered <-> Returned is driven by the return sub-machine only
    OrderStatus.DELIVERED: {OrderStatus.RETURNED},
    OrderStatus.RETURNED: {OrderStatus.DELIVERED},
    OrderStatus.CANCELLED: set(),
}

CANCELLABLE_ORDER_STATUSES = {OrderStatus.PLACED, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}
RETURN_DRIVEN_ORDER_STATUSES = {OrderStatus.RETURNED}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PENDING, PaymentStatus.PAID},
    PaymentStatus.PAID: {PaymentStatus.REFUND_REQUESTED, PaymentStatus.REFUNDED, PaymentStatus.FAILED},
    PaymentStatus.REFUND_REQUESTED: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}

ADMIN_PAYMENT_TARGETS = {PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.REFUNDED}

RETURN_TRANSITIONS: Dict[ReturnStatus, Set[ReturnStatus]] = {
    ReturnStatus.PENDING: {ReturnStatus.APPROVED, ReturnStatus.REJECTED},
    ReturnStatus.APPROVED: {ReturnStatus.PICKUP_SCHEDULED},
    ReturnStatus.PICKUP_SCHEDULED: {ReturnStatus.ITEM_RECEIVED},
    ReturnStatus.ITEM_RECEIVED: {ReturnStatus.REFUND_PROCESSING},
    ReturnStatus.REFUND_PROCESSING: {ReturnStatus.REFUND_COMPLETED},
    ReturnStatus.REJECTED: set(),
    ReturnStatus.REFUND_COMPLETED: set(),
}

CHECKOUT_TRANSITIONS: Dict[CheckoutStatus, Set[CheckoutStatus]] = {
    CheckoutStatus.DRAFT: {CheckoutStatus.AWAITING_PAYMENT, CheckoutStatus.ORDER_CREATED, CheckoutStatus.PAYMENT_FAILED},
    CheckoutStatus.AWAITING_PAYMENT: {CheckoutStatus.VERIFIED, CheckoutStatus.PAYMENT_FAILED, CheckoutStatus.CANCELLED},
    CheckoutStatus.VERIFIED: {CheckoutStatus.ORDER_CREATED, CheckoutStatus.PAYMENT_FAILED},
    # A failed attempt may still be confirmed by a later valid callback
    CheckoutStatus.PAYMENT_FAILED: {CheckoutStatus.VERIFIED},
    CheckoutStatus.ORDER_CREATED: set(),
    CheckoutStatus.CANCELLED: set(),
}


def sources_of(table: Dict, target: Enum) -> List[str]:
    """Statuses from which ``target`` may be entered, as stored strings."""
    return [s.value for s, targets in table.items() if target in targets]


def ensure_transition(kind: str, table: Dict, current: Enum, target: Enum) -> None:
    if target not in table.get(current, set()):
        raise IllegalTransition(kind, current.value, target.value)


def naive_utc(value: datetime) -> datetime:
    """Mongo hands back naive UTC datetimes; convert aware ones so comparisons work."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Core domain models

class StoreModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)


class Address(BaseModel):
    full_name: str
    phone: str
    address: str
    city: str
    state: str
    pincode: str


class BankDetails(BaseModel):
    account_holder_name: str = Field(..., min_length=1)
    account_number: str = Field(..., min_length=1)
    ifsc_code: str
    bank_name: Optional[str] = None
    upi_id: Optional[str] = None

    @field_validator("ifsc_code")
    @classmethod
    def check_ifsc(cls, v: str) -> str:
        v = v.strip().upper()
        if not IFSC_PATTERN.match(v):
            raise ValueError("Invalid IFSC code format")
        return v


class User(BaseModel):
    name: str
    email: EmailStr
    hashed_password: str
    is_active: bool = True
    is_admin: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    images: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    is_active: bool = True


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None
    price_at_add: float = Field(0, ge=0)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    applied_coupon: Optional[str] = None
    version: int = 0
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Coupon(StoreModel):
    code: str
    description: str
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0)
    min_order_amount: float = Field(0, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    valid_from: datetime
    valid_until: datetime
    usage_limit: Optional[int] = Field(None, ge=1)
    used_count: int = Field(0, ge=0)
    applicable_categories: List[str] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("valid_from", "valid_until")
    @classmethod
    def as_naive_utc(cls, v: datetime) -> datetime:
        return naive_utc(v)


class OrderItem(BaseModel):
    """Immutable snapshot of a cart line taken at order time."""
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None
    color: Optional[str] = None
    image: Optional[str] = None


class DeliveryUpdate(BaseModel):
    status: str
    location: str = ""
    description: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class RefundRequested(BaseModel):
    state: Literal["requested"] = "requested"
    bank_details: BankDetails
    refund_amount: float
    initiated_at: datetime = Field(default_factory=datetime.utcnow)


class RefundCompleted(BaseModel):
    state: Literal["completed"] = "completed"
    bank_details: Optional[BankDetails] = None
    refund_amount: float
    initiated_at: Optional[datetime] = None
    completed_at: datetime = Field(default_factory=datetime.utcnow)
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


Refund = Annotated[Union[RefundRequested, RefundCompleted], Field(discriminator="state")]


class Order(StoreModel):
    order_id: str
    user_id: str
    items: List[OrderItem]
    shipping_address: Address
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    order_status: OrderStatus = OrderStatus.PLACED
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    refund: Optional[Refund] = None
    delivery_updates: List[DeliveryUpdate] = Field(default_factory=list)
    expected_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    subtotal: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    delivery_charge: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    coupon_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ReturnItem(BaseModel):
    product_id: str
    name: Optional[str] = None
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None
    color: Optional[str] = None
    image: Optional[str] = None
    reason: str = Field(..., min_length=1)


class TimelineEntry(StoreModel):
    status: ReturnStatus
    description: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ReturnRequest(StoreModel):
    return_id: str
    order_id: str
    order_number: Optional[str] = None
    user_id: str
    items: List[ReturnItem]
    return_reason: ReturnReason
    additional_comments: Optional[str] = None
    return_status: ReturnStatus = ReturnStatus.PENDING
    refund_amount: float = Field(..., ge=0)
    refund_method: RefundMethod = RefundMethod.ORIGINAL
    bank_details: Optional[BankDetails] = None
    pickup_address: Optional[Address] = None
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    refund_transaction_id: Optional[str] = None
    timeline: List[TimelineEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class CheckoutAttempt(StoreModel):
    user_id: str
    status: CheckoutStatus = CheckoutStatus.DRAFT
    payment_method: PaymentMethod
    shipping_address: Address
    amount: float = Field(..., ge=0)
    currency: str = "INR"
    idempotency_key: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    order_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Notification(BaseModel):
    user_id: str
    type: str = "order"
    title: str
    message: str
    order_id: Optional[str] = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
