"""Order workflow: checkout and the order state machines.

Checkout turns the customer's OPEN cart into an immutable order snapshot and
takes the stock for every line in the same transaction, so either all of
cart close, stock decrements and order insert happen or none of them do.

Fulfillment moves along ``ORDER_TRANSITIONS``:

    PENDING -> CONFIRMED -> SHIPPED -> DELIVERED
    PENDING -> CANCELLED          (restores stock exactly once)

Payment is a separate axis (UNPAID -> PAID -> REFUNDED) driven by the
payment reconciler, so shipping does not depend on it.
"""

import os
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.cart import CartManager
from storefront.database import unit_of_work
from storefront.errors import (
    EmptyCart, InvalidAmount, InvalidTransition, OrderNotFound, ProductUnavailable, ValidationError,
)
from storefront.models import Order, OrderItem
from storefront.states import (
    CANCELLABLE_STATUSES, ORDER_PAYMENT_TRANSITIONS, ORDER_TRANSITIONS, OrderPaymentStatus,
    OrderStatus, can_transition,
)
from storefront.stock import StockLedger

logger = structlog.get_logger(__name__)

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def compute_total(subtotal, shipping=ZERO, tax=ZERO, discount=ZERO) -> Decimal:
    """total = subtotal + shipping + tax - discount, all parts non-negative and total > 0."""
    parts = {"subtotal": subtotal, "shipping": shipping, "tax": tax, "discount": discount}
    for name, value in parts.items():
        if Decimal(value) < 0:
            raise InvalidAmount(f"{name} cannot be negative: {value}")

    gross = Decimal(subtotal) + Decimal(shipping) + Decimal(tax)
    if Decimal(discount) > gross:
        raise InvalidAmount(f"Discount {discount} exceeds order amount {gross}")

    total = (gross - Decimal(discount)).quantize(CENT)
    if total <= 0:
        raise InvalidAmount("Order total must be greater than 0")
    return total


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status: {value}") from None


class OrderWorkflow:

    def __init__(self, session_factory, ledger: StockLedger = None, carts: CartManager = None,
                 currency: str = None):
        self.session_factory = session_factory
        self.ledger = ledger or StockLedger()
        self.carts = carts or CartManager(session_factory, self.ledger)
        self.currency = currency or os.getenv("DEFAULT_CURRENCY", "EUR")

    def create_from_cart(self, customer_id: int, shipping_address_id: int = None, notes: str = None,
                         shipping=ZERO, tax=ZERO, discount=ZERO, currency: str = None) -> Order:
        logger.info("Creating order from cart", customer_id=customer_id)

        with unit_of_work(self.session_factory) as db:
            cart = self.carts.find_open_cart(db, customer_id, for_update=True)
            if cart is None or not cart.items:
                raise EmptyCart(customer_id)

            order_items = []
            # Product id order keeps row locks of concurrent checkouts in one global order.
            for cart_item in sorted(cart.items, key=lambda i: i.product_id):
                product = self.ledger.get_product(db, cart_item.product_id)
                if not product.is_active:
                    raise ProductUnavailable(product.id)
                self.ledger.try_decrement(db, product.id, cart_item.quantity)
                order_items.append(OrderItem(
                    product_id=product.id,
                    product_name=product.name,
                    sku=product.sku,
                    quantity=cart_item.quantity,
                    unit_price=cart_item.unit_price,
                ))

            subtotal = sum((item.total_price for item in order_items), ZERO)
            total = compute_total(subtotal, shipping, tax, discount)

            order = Order(
                customer_id=customer_id,
                cart_id=cart.id,
                status=OrderStatus.PENDING,
                payment_status=OrderPaymentStatus.UNPAID,
                subtotal=subtotal,
                shipping=Decimal(shipping),
                tax=Decimal(tax),
                discount=Decimal(discount),
                total=total,
                currency=(currency or self.currency).upper(),
                shipping_address_id=shipping_address_id,
                notes=notes.strip() if notes and notes.strip() else None,
                items=order_items,
                payments=[],
            )
            db.add(order)
            self.carts.check_out(cart)
            db.flush()

            logger.info(
                "Order created",
                order_id=order.id,
                customer_id=customer_id,
                cart_id=cart.id,
                total=str(total),
                lines=len(order_items),
            )
        return order

    def transition(self, order_id: int, target, note: str = None) -> Order:
        target = parse_status(target)
        with unit_of_work(self.session_factory) as db:
            order = self.lock(db, order_id)
            self.apply_transition(db, order, target, note)
        return order

    def confirm(self, order_id: int) -> Order:
        return self.transition(order_id, OrderStatus.CONFIRMED, "Order confirmed")

    def ship(self, order_id: int, tracking_number: str) -> Order:
        if not tracking_number or not tracking_number.strip():
            raise ValidationError("A tracking number is required to ship an order")
        tracking_number = tracking_number.strip()

        with unit_of_work(self.session_factory) as db:
            order = self.lock(db, order_id)
            self.apply_transition(
                db, order, OrderStatus.SHIPPED, f"Order shipped - tracking: {tracking_number}"
            )
            order.tracking_number = tracking_number
        return order

    def deliver(self, order_id: int) -> Order:
        return self.transition(order_id, OrderStatus.DELIVERED, "Order delivered")

    def cancel(self, order_id: int, reason: str = None) -> Order:
        note = f"Order cancelled: {reason}" if reason else "Order cancelled"
        return self.transition(order_id, OrderStatus.CANCELLED, note)

    def apply_transition(self, db: Session, order: Order, target: OrderStatus, note: str = None) -> None:
        current = order.status
        if not can_transition(ORDER_TRANSITIONS, current, target):
            raise InvalidTransition(current, target)
        if target is OrderStatus.CANCELLED and current not in CANCELLABLE_STATUSES:
            raise InvalidTransition(current, target)

        order.status = target
        order.append_note(note or f"Status changed from {current.value} to {target.value}")
        # Flush first: a racing transition fails on the version check before any stock moves.
        db.flush()

        if target is OrderStatus.CANCELLED:
            for item in order.items:
                self.ledger.increment(db, item.product_id, item.quantity)

        logger.info("Order status changed", order_id=order.id, from_status=current.value, to_status=target.value)

    def record_payment(self, db: Session, order: Order, target: OrderPaymentStatus, note: str) -> None:
        current = order.payment_status
        if not can_transition(ORDER_PAYMENT_TRANSITIONS, current, target):
            raise InvalidTransition(current, target)
        order.payment_status = target
        order.append_note(note)
        db.flush()
        logger.info("Order payment status changed", order_id=order.id, from_status=current.value, to_status=target.value)

    @staticmethod
    def lock(db: Session, order_id: int) -> Order:
        order = db.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def get(self, order_id: int) -> Order:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            return order

    def list_for_customer(self, customer_id: int):
        with self.session_factory() as db:
            return db.execute(
                select(Order)
                .where(Order.customer_id == customer_id)
                .order_by(Order.created_at.desc(), Order.id.desc())
            ).scalars().all()

    def list_by_status(self, status):
        status = parse_status(status)
        with self.session_factory() as db:
            return db.execute(
                select(Order)
                .where(Order.status == status)
                .order_by(Order.created_at.desc(), Order.id.desc())
            ).scalars().all()
