from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey, Index,
    Integer, Numeric, String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship, validates

from storefront.database import Base
from storefront.states import CartStatus, OrderPaymentStatus, OrderStatus, PaymentStatus

Money = Numeric(10, 2)


def utcnow():
    return datetime.now(timezone.utc)


def status_column(enum_cls, default):
    return Column(Enum(enum_cls, native_enum=False, length=32), nullable=False, default=default)


class Product(Base):
    """Catalog row. Only the stock ledger writes ``stock_qty``."""

    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock_qty >= 0", name="ck_products_stock_non_negative"),)

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    sku = Column(String(64), unique=True, nullable=False)
    price = Column(Money, nullable=False)
    stock_qty = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)


class Cart(Base):
    __tablename__ = "carts"
    __table_args__ = (
        # Backstop for the get-or-insert in CartManager: one OPEN cart per customer.
        Index(
            "uq_carts_open_per_customer", "customer_id", unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
    )

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, nullable=False, index=True)
    status = status_column(CartStatus, CartStatus.OPEN)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    items = relationship(
        "CartItem", cascade="all, delete-orphan", lazy="selectin", order_by="CartItem.id"
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def total(self) -> Decimal:
        return sum((item.total_price for item in self.items), Decimal("0.00"))

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def find_item(self, product_id):
        return next((i for i in self.items if i.product_id == product_id), None)


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("cart_id", "product_id", name="uq_cart_items_cart_product"),
        CheckConstraint("quantity >= 1", name="ck_cart_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)      # snapshot at add time

    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total > 0", name="ck_orders_total_positive"),
        CheckConstraint(
            "subtotal >= 0 AND shipping >= 0 AND tax >= 0 AND discount >= 0",
            name="ck_orders_amounts_non_negative",
        ),
    )

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, nullable=False, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), nullable=True)
    status = status_column(OrderStatus, OrderStatus.PENDING)
    payment_status = status_column(OrderPaymentStatus, OrderPaymentStatus.UNPAID)
    subtotal = Column(Money, nullable=False)
    shipping = Column(Money, nullable=False, default=Decimal("0.00"))
    tax = Column(Money, nullable=False, default=Decimal("0.00"))
    discount = Column(Money, nullable=False, default=Decimal("0.00"))
    total = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False)
    shipping_address_id = Column(Integer, nullable=True)
    tracking_number = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)             # append-only audit trail
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    items = relationship(
        "OrderItem", cascade="all, delete-orphan", lazy="selectin", order_by="OrderItem.id"
    )
    payments = relationship(
        "Payment", cascade="all, delete-orphan", lazy="selectin", order_by="Payment.id"
    )

    __mapper_args__ = {"version_id_col": version}

    def append_note(self, note: str, at=None):
        stamp = (at or utcnow()).isoformat(timespec="seconds")
        line = f"[{stamp}] {note}"
        self.notes = f"{self.notes}\n{line}" if self.notes else line


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),)

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    product_name = Column(String(255), nullable=False)
    sku = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)
    total_price = Column(Money, nullable=False)

    @validates("quantity", "unit_price")
    def _recompute_total(self, key, value):
        quantity = value if key == "quantity" else self.quantity
        unit_price = value if key == "unit_price" else self.unit_price
        if quantity is not None and unit_price is not None:
            self.total_price = Decimal(unit_price) * quantity
        return value


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default="stripe")
    status = status_column(PaymentStatus, PaymentStatus.REQUIRES_PAYMENT_METHOD)
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False)
    provider_intent_id = Column(String(100), unique=True, nullable=False)   # idempotency key
    provider_payment_method_id = Column(String(100), nullable=True)
    receipt_url = Column(String(500), nullable=True)
    raw_payload = Column(JSON, nullable=True)       # audit/debug only
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
