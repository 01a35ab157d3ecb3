# storefront/models.py
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship
from werkzeug.security import check_password_hash, generate_password_hash

# Use a single, shared Base for all models
from storefront.database import Base
from storefront.errors import InvalidStateTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_column(enum_cls, name: str):
    # Persist the lowercase values ("pending"), not the member names
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda members: [member.value for member in members],
    )


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_PENDING = "payment_pending"
    RESERVED = "reserved"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class ReservationStatus(str, Enum):
    PENDING = "pending"
    RESERVED = "reserved"
    FAILED = "failed"
    ORDERED = "ordered"
    RELEASED = "released"


class PricingRuleType(str, Enum):
    GLOBAL = "global"
    CATEGORY = "category"
    BRAND = "brand"
    PRODUCT = "product"


class MarkupType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class SyncStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ProductSource(str, Enum):
    # vendor: held through vendor reservations; own: shop stock, deducted locally
    VENDOR = "vendor"
    OWN = "own"


class Category(Base):
    __tablename__ = 'Category'
    categoryID = Column(Integer, primary_key=True, autoincrement=True)
    vendor_id = Column(String(100), unique=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False)
    description = Column(Text)
    sort_order = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    products = relationship("Product", back_populates="category")


class Brand(Base):
    __tablename__ = 'Brand'
    brandID = Column(Integer, primary_key=True, autoincrement=True)
    vendor_id = Column(String(100), unique=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False)
    logo_url = Column(String(512))
    description = Column(Text)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    products = relationship("Product", back_populates="brand")


class Product(Base):
    __tablename__ = 'Product'
    productID = Column(Integer, primary_key=True, autoincrement=True)
    vendor_article_id = Column(String(100), unique=True)
    product_source = Column(
        _enum_column(ProductSource, "product_source"),
        default=ProductSource.VENDOR,
        nullable=False,
    )
    sku = Column(String(100), nullable=False)
    ean = Column(String(50))
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True)
    description = Column(Text)
    categoryID = Column(Integer, ForeignKey('Category.categoryID'))
    brandID = Column(Integer, ForeignKey('Brand.brandID'))
    base_price = Column(Numeric(10, 2), nullable=False, default=0)
    # Sell price, always base_price plus the applicable markup
    price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), default="EUR", nullable=False)
    stock_quantity = Column(Integer, default=0, nullable=False)
    available_quantity = Column(Integer, default=0, nullable=False)
    reserved_quantity = Column(Integer, default=0, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    is_featured = Column(Boolean, default=False, nullable=False)
    color = Column(String(100))
    storage = Column(String(100))
    ram = Column(String(100))
    specifications = Column(Text)
    last_synced_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    category = relationship("Category", back_populates="products")
    brand = relationship("Brand", back_populates="products")

    def has_stock_for(self, quantity: int) -> bool:
        return bool(self.is_available) and (self.available_quantity or 0) >= quantity

    @property
    def is_own_stock(self) -> bool:
        return ProductSource(self.product_source or ProductSource.VENDOR) == ProductSource.OWN


class PricingRule(Base):
    __tablename__ = 'PricingRule'
    pricingRuleID = Column(Integer, primary_key=True, autoincrement=True)
    rule_type = Column(_enum_column(PricingRuleType, "pricing_rule_type"), nullable=False)
    # NULL for the global rule
    entity_id = Column(Integer)
    markup_type = Column(
        _enum_column(MarkupType, "markup_type"),
        default=MarkupType.PERCENTAGE,
        nullable=False,
    )
    markup_value = Column(Numeric(10, 2), nullable=False, default=0)
    priority = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Address(Base):
    """Snapshot of a billing/shipping address; never edited once attached to an order."""

    __tablename__ = 'Address'
    addressID = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    company = Column(String(255))
    address_line1 = Column(String(255), nullable=False)
    address_line2 = Column(String(255))
    city = Column(String(100), nullable=False)
    state = Column(String(100))
    postal_code = Column(String(20), nullable=False)
    country = Column(String(2), nullable=False)
    phone = Column(String(50), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "company": self.company,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
            "phone": self.phone,
        }


class Order(Base):
    __tablename__ = 'Order'
    orderID = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(32), unique=True, nullable=False)
    user_id = Column(Integer)
    guest_email = Column(String(255))
    status = Column(
        _enum_column(OrderStatus, "order_status"),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    payment_status = Column(
        _enum_column(PaymentStatus, "payment_status"),
        default=PaymentStatus.UNPAID,
        nullable=False,
    )
    payment_method = Column(String(50))
    payment_transaction_id = Column(String(255))
    subtotal = Column(Numeric(10, 2), nullable=False)
    tax = Column(Numeric(10, 2), nullable=False)
    shipping_cost = Column(Numeric(10, 2), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="EUR", nullable=False)
    billingAddressID = Column(Integer, ForeignKey('Address.addressID'), nullable=False)
    shippingAddressID = Column(Integer, ForeignKey('Address.addressID'), nullable=False)
    notes = Column(Text)
    admin_notes = Column(Text)
    ip_address = Column(String(45))
    user_agent = Column(String(512))
    vendor_order_id = Column(String(100))
    vendor_order_created_at = Column(DateTime)
    tracking_number = Column(String(100))
    shipping_carrier = Column(String(50))
    shipped_at = Column(DateTime)
    paid_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    reservations = relationship("Reservation", back_populates="order", cascade="all, delete-orphan")
    billing_address = relationship("Address", foreign_keys=[billingAddressID])
    shipping_address = relationship("Address", foreign_keys=[shippingAddressID])

    CANCELLABLE_STATUSES = frozenset(
        {OrderStatus.PENDING, OrderStatus.PAYMENT_PENDING, OrderStatus.RESERVED}
    )

    _VALID_TRANSITIONS = {
        OrderStatus.PENDING: {
            OrderStatus.RESERVED,
            OrderStatus.PAYMENT_PENDING,
            OrderStatus.CANCELLED,
        },
        OrderStatus.PAYMENT_PENDING: {OrderStatus.RESERVED, OrderStatus.CANCELLED},
        OrderStatus.RESERVED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
        OrderStatus.PROCESSING: {OrderStatus.SHIPPED},
        OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    }

    def can_transition(self, new_status: OrderStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(OrderStatus(self.status), set())
        return OrderStatus(new_status) in allowed

    def transition_to(self, new_status: OrderStatus) -> None:
        new_status = OrderStatus(new_status)
        if not self.can_transition(new_status):
            current = OrderStatus(self.status).value
            raise InvalidStateTransition(
                f"Order {self.order_number} cannot move from {current} to {new_status.value}",
                current=current,
                target=new_status.value,
            )
        self.status = new_status
        if new_status == OrderStatus.CANCELLED:
            self.cancelled_at = utcnow()

    @property
    def is_guest(self) -> bool:
        return self.user_id is None and bool(self.guest_email)

    @property
    def vendor_items(self) -> List["OrderItem"]:
        return [item for item in self.items if not item.is_own_stock]

    @property
    def own_items(self) -> List["OrderItem"]:
        return [item for item in self.items if item.is_own_stock]


class OrderItem(Base):
    """Frozen copy of the product at checkout time; later price changes never touch it."""

    __tablename__ = 'OrderItem'
    orderItemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    productID = Column(Integer, ForeignKey('Product.productID'))
    product_name = Column(String(255), nullable=False)
    product_sku = Column(String(100))
    vendor_article_id = Column(String(100))
    product_source = Column(
        _enum_column(ProductSource, "order_item_source"),
        default=ProductSource.VENDOR,
        nullable=False,
    )
    quantity = Column(Integer, nullable=False)
    base_price = Column(Numeric(10, 2), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    # pending | reserved | stock_deducted | vendor_ordered | restocked
    fulfillment_status = Column(String(50), default="pending", nullable=False)
    reserved_at = Column(DateTime)

    order = relationship("Order", back_populates="items")

    @property
    def is_own_stock(self) -> bool:
        return ProductSource(self.product_source or ProductSource.VENDOR) == ProductSource.OWN


class Reservation(Base):
    __tablename__ = 'Reservation'
    reservationID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    orderItemID = Column(Integer, ForeignKey('OrderItem.orderItemID'))
    productID = Column(Integer, ForeignKey('Product.productID'))
    vendor_article_id = Column(String(100))
    warehouse = Column(String(50))
    quantity = Column(Integer, nullable=False)
    status = Column(
        _enum_column(ReservationStatus, "reservation_status"),
        default=ReservationStatus.PENDING,
        nullable=False,
    )
    vendor_reservation_id = Column(String(100))
    vendor_response = Column(Text)
    error_message = Column(Text)
    reserved_at = Column(DateTime)
    released_at = Column(DateTime)
    ordered_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="reservations")
    order_item = relationship("OrderItem")

    def mark_reserved(self, vendor_reservation_id: str, vendor_response: Optional[str] = None) -> None:
        self.vendor_reservation_id = vendor_reservation_id
        self.vendor_response = vendor_response
        self.status = ReservationStatus.RESERVED
        self.error_message = None
        self.reserved_at = utcnow()

    def mark_failed(self, reason: str) -> None:
        self.status = ReservationStatus.FAILED
        self.error_message = reason

    def mark_released(self) -> None:
        self.status = ReservationStatus.RELEASED
        self.released_at = utcnow()

    def mark_ordered(self) -> None:
        self.status = ReservationStatus.ORDERED
        self.ordered_at = utcnow()


class Setting(Base):
    __tablename__ = 'Setting'
    settingID = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), unique=True, nullable=False)
    value = Column(Text)
    # string | int | float | bool | json
    value_type = Column(String(20), default="string", nullable=False)
    is_public = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class VendorSyncLog(Base):
    __tablename__ = 'VendorSyncLog'
    syncLogID = Column(Integer, primary_key=True, autoincrement=True)
    sync_type = Column(String(50), default="full", nullable=False)
    status = Column(
        _enum_column(SyncStatus, "sync_status"),
        default=SyncStatus.IN_PROGRESS,
        nullable=False,
    )
    products_synced = Column(Integer, default=0)
    products_added = Column(Integer, default=0)
    products_updated = Column(Integer, default=0)
    products_disabled = Column(Integer, default=0)
    error_message = Column(Text)
    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)
    duration_seconds = Column(Integer)


class VendorApiLog(Base):
    __tablename__ = 'VendorApiLog'
    apiLogID = Column(Integer, primary_key=True, autoincrement=True)
    operation = Column(String(100), nullable=False)
    method = Column(String(10), nullable=False)
    request_payload = Column(Text)
    response_payload = Column(Text)
    status_code = Column(Integer)
    duration_ms = Column(Integer)
    error_message = Column(Text)
    created_at = Column(DateTime, default=utcnow)


class AdminUser(Base):
    __tablename__ = 'AdminUser'
    adminUserID = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), unique=True)
    _password_hash = Column('password_hash', String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    last_login_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    sessions = relationship("AdminSession", back_populates="admin_user", cascade="all, delete-orphan")

    @property
    def password_hash(self):
        return self._password_hash

    def set_password(self, password: str) -> None:
        self._password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self._password_hash:
            return False
        return check_password_hash(self._password_hash, password)


class AdminSession(Base):
    __tablename__ = 'AdminSession'
    adminSessionID = Column(Integer, primary_key=True, autoincrement=True)
    adminUserID = Column(Integer, ForeignKey('AdminUser.adminUserID'), nullable=False)
    token = Column(String(128), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    admin_user = relationship("AdminUser", back_populates="sessions")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return as_utc(self.expires_at) <= now


__all__: List[str] = [
    "OrderStatus",
    "PaymentStatus",
    "ReservationStatus",
    "PricingRuleType",
    "MarkupType",
    "SyncStatus",
    "ProductSource",
    "Category",
    "Brand",
    "Product",
    "PricingRule",
    "Address",
    "Order",
    "OrderItem",
    "Reservation",
    "Setting",
    "VendorSyncLog",
    "VendorApiLog",
    "AdminUser",
    "AdminSession",
    "utcnow",
    "as_utc",
]
