import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from .models import BookingStatus, NotificationType, OrderStatus, ProductType, StockMovement, UserRole


class Token(BaseModel):
    access_token: str
    token_type: str


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


# -----------------------------
# Users
# -----------------------------

class UserOut(BaseModel):
    id: int
    name: Optional[str] = None
    email: str
    phone: Optional[str] = None
    role: UserRole
    is_active: bool
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=30)


class ProducerOut(BaseModel):
    id: int
    user_id: int
    company_name: Optional[str] = None
    address: Optional[str] = None
    description: Optional[str] = None
    iban: Optional[str] = None
    bic: Optional[str] = None
    bank_name: Optional[str] = None
    bank_account_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ProducerUpdate(BaseModel):
    company_name: Optional[str] = Field(None, max_length=150)
    address: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    iban: Optional[str] = Field(None, max_length=64)
    bic: Optional[str] = Field(None, max_length=32)
    bank_name: Optional[str] = Field(None, max_length=100)
    bank_account_name: Optional[str] = Field(None, max_length=150)


class AdminUserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)
    phone: Optional[str] = Field(None, max_length=30)
    role: UserRole = UserRole.CLIENT
    company_name: Optional[str] = None


class AdminUserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=30)
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None


class UserListResponse(BaseModel):
    users: List[UserOut]
    pagination: Pagination


# -----------------------------
# Categories
# -----------------------------

CATEGORY_NAME_PATTERN = re.compile(r"^[a-zA-ZÀ-ÿ\s\-&'()]+$")


class CategoryWrite(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)

    @field_validator("name")
    @classmethod
    def clean_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must have at least 2 characters")
        if not CATEGORY_NAME_PATTERN.match(v):
            raise ValueError("Name may only contain letters, spaces and - & ' ( )")
        return v


class CategoryRef(BaseModel):
    id: int
    name: str

    model_config = ConfigDict(from_attributes=True)


class CategoryOut(CategoryRef):
    created_at: Optional[datetime] = None
    product_count: int = 0


# -----------------------------
# Products
# -----------------------------

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    type: ProductType
    unit: str = Field(..., min_length=1, max_length=20)
    initial_stock: Decimal = Field(Decimal("0"), ge=0)
    available: bool = True
    accept_deferred: bool = False
    min_order_quantity: Decimal = Field(Decimal("0"), ge=0)
    category_ids: List[int] = []


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    type: Optional[ProductType] = None
    unit: Optional[str] = Field(None, min_length=1, max_length=20)
    available: Optional[bool] = None
    accept_deferred: Optional[bool] = None
    min_order_quantity: Optional[Decimal] = Field(None, ge=0)
    category_ids: Optional[List[int]] = None


class StockUpdate(BaseModel):
    quantity: Decimal = Field(..., ge=0)


class ProductOut(BaseModel):
    id: int
    producer_id: int
    name: str
    description: Optional[str] = None
    price: Decimal
    type: ProductType
    unit: str
    available: bool
    accept_deferred: bool
    min_order_quantity: Decimal
    stock_quantity: Optional[Decimal] = None
    categories: List[CategoryRef] = []
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ProductListResponse(BaseModel):
    products: List[ProductOut]
    pagination: Pagination


class ProductSort(str, Enum):
    PRICE_ASC = "price_asc"
    PRICE_DESC = "price_desc"
    NEWEST = "newest"


class CategorySort(str, Enum):
    NAME = "name"
    PRICE = "price"
    CREATED_AT = "created_at"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class CategoryStats(BaseModel):
    total_products: int
    displayed_products: int
    average_price: Decimal
    price_range: Dict[str, Decimal]


class CategoryPagination(Pagination):
    has_more: bool


class CategoryDetail(BaseModel):
    id: int
    name: str
    created_at: Optional[datetime] = None
    products: List[ProductOut]
    stats: CategoryStats
    pagination: Optional[CategoryPagination] = None


class StockHistoryEntry(BaseModel):
    id: int
    type: StockMovement
    quantity: Decimal
    balance: Decimal
    order_id: Optional[int] = None
    note: Optional[str] = None
    date: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class StockHistoryOut(BaseModel):
    product_id: int
    history: List[StockHistoryEntry]
    current_stock: Decimal
    weekly_rate: Decimal
    days_until_empty: Optional[int] = None


class StockAlertWrite(BaseModel):
    threshold: Decimal = Field(..., ge=0)
    percentage: bool = False
    email_alert: bool = True


class StockAlertOut(StockAlertWrite):
    product_id: int

    model_config = ConfigDict(from_attributes=True)


# -----------------------------
# Public producer profiles
# -----------------------------

class ProducerContact(BaseModel):
    id: int
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[datetime] = None


class ProducerStats(BaseModel):
    total_products: int
    active_products: int
    average_price: Optional[Decimal] = None


class ProducerPublic(BaseModel):
    """Producer as seen by other users; the optional blocks are for admins and the owner."""

    id: int
    company_name: Optional[str] = None
    description: Optional[str] = None
    address: Optional[str] = None
    user: ProducerContact
    stats: Optional[ProducerStats] = None
    bank_name: Optional[str] = None
    bank_account_name: Optional[str] = None
    bic: Optional[str] = None
    iban_preview: Optional[str] = None


class ProducerListResponse(BaseModel):
    producers: List[ProducerPublic]
    pagination: Pagination


# -----------------------------
# Orders
# -----------------------------

class OrderItemCreate(BaseModel):
    product_id: int = Field(..., gt=0, description="Product ID")
    quantity: Decimal = Field(..., gt=0, description="Quantity in the product's unit")


class OrderCreate(BaseModel):
    items: List[OrderItemCreate] = Field(default_factory=list)


class OrderItemAdd(OrderItemCreate):
    order_id: Optional[int] = Field(None, gt=0)


class OrderItemUpdate(BaseModel):
    quantity: Decimal = Field(..., gt=0)


class OrderItemOut(BaseModel):
    id: int
    order_id: int
    product_id: int
    product_name: Optional[str] = None
    quantity: Decimal
    price: Decimal

    model_config = ConfigDict(from_attributes=True)


class BookingOut(BaseModel):
    id: int
    slot_id: int
    order_id: int
    quantity: Decimal
    price: Optional[Decimal] = None
    status: BookingStatus
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OrderOut(BaseModel):
    id: int
    user_id: int
    status: OrderStatus
    total: Decimal
    delivery_fee: Decimal
    platform_fee: Optional[Decimal] = None
    delivery_type: Optional[str] = None
    delivery_info: Optional[Dict[str, Any]] = None
    payment_method: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = []
    bookings: List[BookingOut] = []

    model_config = ConfigDict(from_attributes=True)


class OrderListResponse(BaseModel):
    orders: List[OrderOut]
    pagination: Pagination


class DeliveryType(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class PaymentMethod(str, Enum):
    CARD = "card"
    INVOICE = "invoice"
    BANK_TRANSFER = "bank_transfer"


class CheckoutRequest(BaseModel):
    delivery_type: DeliveryType = DeliveryType.PICKUP
    delivery_info: Optional[Dict[str, Any]] = None
    payment_method: PaymentMethod = PaymentMethod.CARD


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class AdminNotesUpdate(BaseModel):
    admin_notes: Optional[str] = Field(None, max_length=2000)


# -----------------------------
# Delivery slots / bookings
# -----------------------------

class DeliverySlotCreate(BaseModel):
    product_id: int = Field(..., gt=0)
    date: datetime
    max_capacity: Decimal = Field(..., ge=Decimal("0.1"), le=Decimal("10000"))


class DeliverySlotUpdate(BaseModel):
    max_capacity: Optional[Decimal] = Field(None, ge=Decimal("0.1"), le=Decimal("10000"))
    is_available: Optional[bool] = None


class DeliverySlotOut(BaseModel):
    id: int
    product_id: int
    product_name: Optional[str] = None
    date: datetime
    max_capacity: Decimal
    reserved: Decimal
    is_available: bool
    available_capacity: Decimal
    capacity_percentage: float
    is_fully_booked: bool
    is_past: bool
    can_book: bool
    days_from_now: int

    model_config = ConfigDict(from_attributes=True)


class DeliverySlotListResponse(BaseModel):
    slots: List[DeliverySlotOut]
    pagination: Pagination


class SlotBookRequest(BaseModel):
    quantity: Decimal = Field(..., gt=0)
    order_id: int = Field(..., gt=0)


class BookedSlotOut(BaseModel):
    booking: BookingOut
    slot: DeliverySlotOut


class SlotCleanupResult(BaseModel):
    deleted: int
    slot_ids: List[int]
    cancelled_bookings: int


class BookingUpdate(BaseModel):
    quantity: Optional[Decimal] = Field(None, ge=Decimal("0.1"), le=Decimal("1000"))
    status: Optional[BookingStatus] = None


class BookingDetailOut(BookingOut):
    can_modify: bool
    is_expired: bool
    days_until_delivery: Optional[int] = None
    total_value: Decimal
    slot: Optional[DeliverySlotOut] = None


class BookingCleanupResult(BaseModel):
    cleaned: int
    booking_ids: List[int]


# -----------------------------
# Invoices / payments
# -----------------------------

class InvoiceCreate(BaseModel):
    order_id: int = Field(..., gt=0)
    amount: Decimal = Field(..., gt=0, le=Decimal("999999"))
    due_date: datetime
    notes: Optional[str] = Field(None, max_length=500)


class InvoiceOut(BaseModel):
    id: int
    invoice_number: str
    order_id: int
    user_id: int
    amount: Decimal
    status: str
    due_date: datetime
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class InvoicePayMethod(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"


class InvoicePayRequest(BaseModel):
    payment_method: InvoicePayMethod
    stripe_payment_intent_id: Optional[str] = Field(None, pattern=r"^pi_")


class MarkPaidMethod(str, Enum):
    MANUAL = "manual"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"


class MarkPaidRequest(BaseModel):
    payment_method: MarkPaidMethod = MarkPaidMethod.MANUAL
    notes: Optional[str] = Field(None, max_length=500)


class PaymentIntentOut(BaseModel):
    payment_intent_id: str
    client_secret: Optional[str] = None
    amount: int
    currency: str
    publishable_key: Optional[str] = None


class PendingCount(BaseModel):
    count: int


# -----------------------------
# Notifications
# -----------------------------

class NotificationCreate(BaseModel):
    user_id: int = Field(..., gt=0)
    type: NotificationType
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1)
    link: Optional[str] = Field(None, max_length=500)
    data: Optional[Dict[str, Any]] = None


class NotificationOut(BaseModel):
    id: int
    user_id: int
    type: NotificationType
    title: str
    message: str
    link: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    read: bool
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class NotificationCounts(BaseModel):
    total: int
    unread: int


class NotificationListResponse(BaseModel):
    notifications: List[NotificationOut]
    pagination: Dict[str, int]
    counts: NotificationCounts


# -----------------------------
# Wallets
# -----------------------------

class WalletTransactionOut(BaseModel):
    id: int
    order_id: Optional[int] = None
    amount: Decimal
    status: str
    type: str
    description: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WalletOut(BaseModel):
    id: int
    producer_id: int
    balance: Decimal
    pending_balance: Decimal
    total_earned: Decimal
    total_withdrawn: Decimal
    transactions: List[WalletTransactionOut] = []

    model_config = ConfigDict(from_attributes=True)


class WithdrawRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class WithdrawalOut(BaseModel):
    id: int
    wallet_id: int
    amount: Decimal
    status: str
    bank_details: Dict[str, Any]
    reference: Optional[str] = None
    processor_note: Optional[str] = None
    requested_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WithdrawalDecision(str, Enum):
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class WithdrawalProcess(BaseModel):
    status: WithdrawalDecision
    note: Optional[str] = Field(None, max_length=500)
    reference: Optional[str] = Field(None, max_length=100)


# -----------------------------
# Admin
# -----------------------------

class AdminLogOut(BaseModel):
    id: int
    action: str
    entity_type: str
    entity_id: str
    admin_id: int
    details: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AdminLogListResponse(BaseModel):
    logs: List[AdminLogOut]
    pagination: Pagination
