"""Carts only check stock; the decrement happens at checkout."""

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.database import unit_of_work
from storefront.errors import (
    ConcurrentModification, InsufficientStock, InvalidQuantity, ItemNotInCart, ProductUnavailable,
)
from storefront.models import Cart, CartItem, utcnow
from storefront.states import CartStatus
from storefront.stock import StockLedger

logger = structlog.get_logger(__name__)


class CartManager:

    def __init__(self, session_factory, ledger: StockLedger = None):
        self.session_factory = session_factory
        self.ledger = ledger or StockLedger()

    @staticmethod
    def find_open_cart(db: Session, customer_id: int, for_update: bool = False):
        stmt = select(Cart).where(Cart.customer_id == customer_id, Cart.status == CartStatus.OPEN)
        if for_update:
            stmt = stmt.with_for_update()
        return db.execute(stmt).scalar_one_or_none()

    def get_open_cart(self, customer_id: int):
        with self.session_factory() as db:
            return self.find_open_cart(db, customer_id)

    def get_or_create_open_cart(self, customer_id: int) -> Cart:
        """Serialized get-or-insert on (customer_id, OPEN).

        Two racing first calls both try the insert; the partial unique index
        lets exactly one commit and the loser re-reads the winner's cart.
        """
        with self.session_factory() as db:
            cart = self.find_open_cart(db, customer_id)
            if cart is not None:
                return cart

            cart = Cart(customer_id=customer_id, status=CartStatus.OPEN, items=[])
            db.add(cart)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                cart = self.find_open_cart(db, customer_id)
                if cart is None:
                    raise ConcurrentModification(
                        f"Open cart for customer {customer_id} vanished during creation"
                    )
                logger.info("Reused cart created concurrently", customer_id=customer_id, cart_id=cart.id)
                return cart

            logger.info("Opened new cart", customer_id=customer_id, cart_id=cart.id)
            return cart

    def add_item(self, customer_id: int, product_id: int, quantity: int) -> CartItem:
        if quantity <= 0:
            raise InvalidQuantity(quantity)

        with self.session_factory() as db:
            product = self.ledger.get_product(db, product_id)
            if not product.is_active:
                raise ProductUnavailable(product_id)
            if product.stock_qty < quantity:
                raise InsufficientStock(product_id, quantity, product.stock_qty)

        cart_id = self.get_or_create_open_cart(customer_id).id

        try:
            with unit_of_work(self.session_factory) as db:
                cart = self._open_cart_for_write(db, customer_id, cart_id)
                product = self.ledger.get_product(db, product_id)
                if not product.is_active:
                    raise ProductUnavailable(product_id)

                item = cart.find_item(product_id)
                wanted = quantity + (item.quantity if item is not None else 0)
                if product.stock_qty < wanted:
                    raise InsufficientStock(product_id, wanted, product.stock_qty)

                if item is not None:
                    item.quantity = wanted
                    logger.info("Merged cart item", cart_id=cart.id, product_id=product_id, quantity=wanted)
                else:
                    item = CartItem(product_id=product_id, quantity=quantity, unit_price=product.price)
                    cart.items.append(item)
                    logger.info("Added cart item", cart_id=cart.id, product_id=product_id, quantity=quantity)
                cart.updated_at = utcnow()
        except IntegrityError as exc:
            raise ConcurrentModification(
                f"Cart of customer {customer_id} was modified concurrently"
            ) from exc
        return item

    def set_item_quantity(self, customer_id: int, product_id: int, quantity: int) -> CartItem:
        if quantity <= 0:
            raise InvalidQuantity(quantity)

        with unit_of_work(self.session_factory) as db:
            cart = self.find_open_cart(db, customer_id, for_update=True)
            item = cart.find_item(product_id) if cart is not None else None
            if item is None:
                raise ItemNotInCart(product_id)

            product = self.ledger.get_product(db, product_id)
            if not product.is_active:
                raise ProductUnavailable(product_id)
            if product.stock_qty < quantity:
                raise InsufficientStock(product_id, quantity, product.stock_qty)

            item.quantity = quantity
            cart.updated_at = utcnow()
            logger.info("Updated cart item quantity", cart_id=cart.id, product_id=product_id, quantity=quantity)
        return item

    def remove_item(self, customer_id: int, product_id: int) -> None:
        with unit_of_work(self.session_factory) as db:
            cart = self.find_open_cart(db, customer_id, for_update=True)
            item = cart.find_item(product_id) if cart is not None else None
            if item is None:
                return
            cart.items.remove(item)
            cart.updated_at = utcnow()
            logger.info("Removed cart item", cart_id=cart.id, product_id=product_id)

    def clear(self, customer_id: int) -> None:
        with unit_of_work(self.session_factory) as db:
            cart = self.find_open_cart(db, customer_id, for_update=True)
            if cart is None or not cart.items:
                return
            cart.items.clear()
            cart.updated_at = utcnow()
            logger.info("Cleared cart", cart_id=cart.id, customer_id=customer_id)

    def item_count(self, customer_id: int) -> int:
        cart = self.get_open_cart(customer_id)
        return cart.item_count if cart is not None else 0

    def check_out(self, cart: Cart) -> None:
        cart.status = CartStatus.CHECKED_OUT
        cart.updated_at = utcnow()
        logger.info("Cart checked out", cart_id=cart.id, customer_id=cart.customer_id)

    def abandon(self, customer_id: int):
        """Mark the OPEN cart ABANDONED. Returns the cart, or None if there was none."""
        with unit_of_work(self.session_factory) as db:
            cart = self.find_open_cart(db, customer_id, for_update=True)
            if cart is None:
                return None
            cart.status = CartStatus.ABANDONED
            cart.updated_at = utcnow()
            logger.info("Cart abandoned", cart_id=cart.id, customer_id=customer_id)
        return cart

    def _open_cart_for_write(self, db: Session, customer_id: int, cart_id: int) -> Cart:
        cart = self.find_open_cart(db, customer_id, for_update=True)
        if cart is None or cart.id != cart_id:
            raise ConcurrentModification(f"Cart {cart_id} is no longer open")
        return cart
