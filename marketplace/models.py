from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class UserRole(str, Enum):
    CLIENT = "CLIENT"
    PRODUCER = "PRODUCER"
    ADMIN = "ADMIN"


class ProductType(str, Enum):
    FRESH = "FRESH"
    DRIED = "DRIED"
    SUBSTRATE = "SUBSTRATE"
    WELLNESS = "WELLNESS"


class OrderStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    INVOICE_PENDING = "INVOICE_PENDING"
    INVOICE_PAID = "INVOICE_PAID"
    INVOICE_OVERDUE = "INVOICE_OVERDUE"


class BookingStatus(str, Enum):
    TEMPORARY = "TEMPORARY"
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class StockMovement(str, Enum):
    INITIAL = "initial"
    ADJUSTMENT = "adjustment"
    SALE = "sale"
    RETURN = "return"


class InvoiceStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class NotificationType(str, Enum):
    NEW_ORDER = "NEW_ORDER"
    ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"
    LOW_STOCK = "LOW_STOCK"
    DELIVERY_REMINDER = "DELIVERY_REMINDER"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    SYSTEM = "SYSTEM"
    INVOICE_CREATED = "INVOICE_CREATED"
    INVOICE_REMINDER = "INVOICE_REMINDER"
    INVOICE_OVERDUE = "INVOICE_OVERDUE"
    INVOICE_PAID = "INVOICE_PAID"


product_categories = Table(
    "product_categories",
    Base.metadata,
    Column("product_id", Integer, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100))
    email = Column(String(255), nullable=False, unique=True, index=True)
    phone = Column(String(30))
    hashed_password = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=UserRole.CLIENT.value, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    producer = relationship("Producer", back_populates="user", uselist=False, cascade="all, delete-orphan")
    orders = relationship("Order", back_populates="user")


class Producer(Base):
    __tablename__ = "producers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    company_name = Column(String(150))
    address = Column(String(255))
    description = Column(Text)
    iban = Column(String(64))
    bic = Column(String(32))
    bank_name = Column(String(100))
    bank_account_name = Column(String(150))

    user = relationship("User", back_populates="producer")
    products = relationship("Product", back_populates="producer", cascade="all, delete-orphan")
    wallet = relationship("Wallet", back_populates="producer", uselist=False, cascade="all, delete-orphan")


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    producer_id = Column(Integer, ForeignKey("producers.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False, index=True)
    description = Column(Text)
    price = Column(Numeric(10, 2), nullable=False)
    type = Column(String(20), nullable=False, index=True)
    unit = Column(String(20), nullable=False)
    available = Column(Boolean, nullable=False, default=True)
    accept_deferred = Column(Boolean, nullable=False, default=False)
    min_order_quantity = Column(Numeric(10, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    producer = relationship("Producer", back_populates="products")
    stock = relationship("Stock", back_populates="product", uselist=False, cascade="all, delete-orphan")
    delivery_slots = relationship("DeliverySlot", back_populates="product", cascade="all, delete-orphan")
    categories = relationship(
        "Category", secondary=product_categories, back_populates="products", order_by="Category.name"
    )
    stock_history = relationship(
        "StockHistory", back_populates="product", cascade="all, delete-orphan", order_by="StockHistory.id"
    )
    stock_alert = relationship("StockAlert", back_populates="product", uselist=False, cascade="all, delete-orphan")

    @property
    def stock_quantity(self):
        return self.stock.quantity if self.stock is not None else None


class Stock(Base):
    __tablename__ = "stocks"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, unique=True)
    quantity = Column(Numeric(10, 2), nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    product = relationship("Product", back_populates="stock")


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    products = relationship("Product", secondary=product_categories, back_populates="categories")

    @property
    def product_count(self):
        return len(self.products)


class StockHistory(Base):
    """One stock movement. ``quantity`` is signed for adjustments, ``balance`` is the level after it."""

    __tablename__ = "stock_history"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(20), nullable=False, index=True)
    quantity = Column(Numeric(10, 2), nullable=False)
    balance = Column(Numeric(10, 2), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), index=True)
    note = Column(String(255))
    date = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    product = relationship("Product", back_populates="stock_history")


class StockAlert(Base):
    __tablename__ = "stock_alerts"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, unique=True)
    threshold = Column(Numeric(10, 2), nullable=False)
    percentage = Column(Boolean, nullable=False, default=False)
    email_alert = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    product = relationship("Product", back_populates="stock_alert")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=OrderStatus.DRAFT.value, index=True)
    total = Column(Numeric(10, 2), nullable=False, default=0)
    delivery_fee = Column(Numeric(10, 2), nullable=False, default=0)
    platform_fee = Column(Numeric(10, 2))
    delivery_type = Column(String(20))
    delivery_info = Column(JSON)
    payment_method = Column(String(30))
    admin_notes = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    bookings = relationship("Booking", back_populates="order", cascade="all, delete-orphan")
    invoice = relationship("Invoice", back_populates="order", uselist=False, cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity = Column(Numeric(10, 2), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")

    @property
    def product_name(self):
        return self.product.name if self.product is not None else None


class DeliverySlot(Base):
    __tablename__ = "delivery_slots"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(DateTime(timezone=True), nullable=False, index=True)
    max_capacity = Column(Numeric(10, 2), nullable=False)
    reserved = Column(Numeric(10, 2), nullable=False, default=0)
    is_available = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    product = relationship("Product", back_populates="delivery_slots")
    bookings = relationship("Booking", back_populates="delivery_slot", cascade="all, delete-orphan")


class Booking(Base):
    """Quantity held against a delivery slot for an order.

    TEMPORARY bookings carry ``expires_at`` and are swept back into the slot
    and the stock once it has passed.
    """

    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    slot_id = Column(Integer, ForeignKey("delivery_slots.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity = Column(Numeric(10, 2), nullable=False)
    price = Column(Numeric(10, 2))
    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    expires_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    delivery_slot = relationship("DeliverySlot", back_populates="bookings")
    order = relationship("Order", back_populates="bookings")


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=InvoiceStatus.PENDING.value, index=True)
    due_date = Column(DateTime(timezone=True), nullable=False)
    paid_at = Column(DateTime(timezone=True))
    payment_method = Column(String(30))
    stripe_payment_intent_id = Column(String(255), index=True)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    order = relationship("Order", back_populates="invoice")
    user = relationship("User")

    @property
    def invoice_number(self) -> str:
        return f"INV-{self.id:08d}"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(40), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    link = Column(String(500))
    data = Column(JSON)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AdminLog(Base):
    __tablename__ = "admin_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(50), nullable=False)
    admin_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    details = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, index=True)
    producer_id = Column(Integer, ForeignKey("producers.id", ondelete="CASCADE"), nullable=False, unique=True)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    pending_balance = Column(Numeric(12, 2), nullable=False, default=0)
    total_earned = Column(Numeric(12, 2), nullable=False, default=0)
    total_withdrawn = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    producer = relationship("Producer", back_populates="wallet")
    transactions = relationship(
        "WalletTransaction",
        back_populates="wallet",
        cascade="all, delete-orphan",
        order_by="WalletTransaction.id.desc()",
    )
    withdrawals = relationship("Withdrawal", back_populates="wallet", cascade="all, delete-orphan")


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, index=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    type = Column(String(20), nullable=False)
    description = Column(String(255))
    data = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    wallet = relationship("Wallet", back_populates="transactions")


class Withdrawal(Base):
    __tablename__ = "withdrawals"

    id = Column(Integer, primary_key=True, index=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING", index=True)
    bank_details = Column(JSON, nullable=False)
    reference = Column(String(100))
    processor_note = Column(Text)
    requested_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True))

    wallet = relationship("Wallet", back_populates="withdrawals")
