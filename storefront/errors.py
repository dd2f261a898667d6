"""Error taxonomy of the order engine.

Every failure carries a stable ``kind`` and a human readable ``detail``.
The HTTP layer maps each family to a status code (see ``main.py``).
"""


class StorefrontError(Exception):
    kind = "StorefrontError"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def __repr__(self):
        return f"{type(self).__name__}({self.detail!r})"


class ValidationError(StorefrontError):
    kind = "ValidationError"


class InvalidQuantity(ValidationError):
    kind = "InvalidQuantity"

    def __init__(self, quantity):
        super().__init__(f"Quantity must be greater than 0, got {quantity}")
        self.quantity = quantity


class InvalidAmount(ValidationError):
    kind = "InvalidAmount"


class ProductUnavailable(ValidationError):
    kind = "ProductUnavailable"

    def __init__(self, product_id):
        super().__init__(f"Product {product_id} is not available")
        self.product_id = product_id


class EmptyCart(ValidationError):
    kind = "EmptyCart"

    def __init__(self, customer_id):
        super().__init__(f"Customer {customer_id} has no open cart with items")
        self.customer_id = customer_id


class OrderNotPayable(ValidationError):
    kind = "OrderNotPayable"


class NotFound(StorefrontError):
    kind = "NotFound"


class ProductNotFound(NotFound):
    kind = "ProductNotFound"

    def __init__(self, product_id):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class CartNotFound(NotFound):
    kind = "CartNotFound"


class ItemNotInCart(NotFound):
    kind = "ItemNotInCart"

    def __init__(self, product_id):
        super().__init__(f"Product {product_id} is not in the cart")
        self.product_id = product_id


class OrderNotFound(NotFound):
    kind = "OrderNotFound"

    def __init__(self, order_id):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class PaymentNotFound(NotFound):
    kind = "PaymentNotFound"


class InsufficientStock(StorefrontError):
    kind = "InsufficientStock"

    def __init__(self, product_id, requested, available=None):
        detail = f"Insufficient stock for product {product_id}: requested {requested}"
        if available is not None:
            detail += f", available {available}"
        super().__init__(detail)
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidTransition(StorefrontError):
    kind = "InvalidTransition"

    def __init__(self, current, requested):
        current = getattr(current, "value", current)
        requested = getattr(requested, "value", requested)
        super().__init__(f"Cannot move from {current} to {requested}")
        self.current = current
        self.requested = requested


class ConcurrentModification(StorefrontError):
    kind = "ConcurrentModification"


class GatewayError(StorefrontError):
    kind = "GatewayError"


class InvalidWebhook(ValidationError):
    kind = "InvalidWebhook"
