"""Stock ledger: the only writer of ``Product.stock_qty``.

All methods take the caller's session so that stock movements commit or roll
back together with the order rows written in the same unit of work.
"""

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from storefront.errors import InsufficientStock, InvalidQuantity, ProductNotFound
from storefront.models import Product

logger = structlog.get_logger(__name__)


class StockLedger:

    def get_product(self, db: Session, product_id: int) -> Product:
        product = db.get(Product, product_id)
        if product is None:
            raise ProductNotFound(product_id)
        return product

    def available(self, db: Session, product_id: int) -> int:
        qty = db.execute(
            select(Product.stock_qty).where(Product.id == product_id)
        ).scalar_one_or_none()
        if qty is None:
            raise ProductNotFound(product_id)
        return qty

    def is_available(self, db: Session, product_id: int, quantity: int) -> bool:
        try:
            return self.available(db, product_id) >= quantity
        except ProductNotFound:
            return False

    def try_decrement(self, db: Session, product_id: int, quantity: int) -> int:
        """Atomically take ``quantity`` units, returning the remaining stock.

        Implemented as one conditional UPDATE so concurrent callers on the
        same product are serialized by the row lock the database takes for it.
        """
        if quantity <= 0:
            raise InvalidQuantity(quantity)

        result = db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock_qty >= quantity)
            .values(stock_qty=Product.stock_qty - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            remaining = self.available(db, product_id)
            logger.info(
                "Stock decrement refused",
                product_id=product_id,
                requested=quantity,
                available=remaining,
            )
            raise InsufficientStock(product_id, quantity, remaining)

        remaining = self._refresh(db, product_id)
        logger.info("Stock decremented", product_id=product_id, quantity=quantity, remaining=remaining)
        return remaining

    def increment(self, db: Session, product_id: int, quantity: int) -> int:
        """Unconditionally put ``quantity`` units back. Used for cancellations."""
        if quantity <= 0:
            raise InvalidQuantity(quantity)

        result = db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock_qty=Product.stock_qty + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ProductNotFound(product_id)

        remaining = self._refresh(db, product_id)
        logger.info("Stock restored", product_id=product_id, quantity=quantity, remaining=remaining)
        return remaining

    def low_stock(self, db: Session, threshold: int):
        products = db.execute(
            select(Product)
            .where(Product.is_active.is_(True), Product.stock_qty <= threshold)
            .order_by(Product.stock_qty, Product.id)
        ).scalars().all()
        logger.debug("Low stock lookup", threshold=threshold, count=len(products))
        return products

    def _refresh(self, db: Session, product_id: int) -> int:
        # The bulk UPDATE bypasses the identity map; reload any cached copy.
        product = db.get(Product, product_id, populate_existing=True)
        if product is None:
            raise ProductNotFound(product_id)
        return product.stock_qty
