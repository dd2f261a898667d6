from typing import List

from fastapi import APIRouter, Depends

from storefront.auth import verify_token
from storefront.cart import CartManager
from storefront.database import SessionLocal
from storefront.errors import OrderNotFound, PaymentNotFound
from storefront.orders import OrderWorkflow
from storefront.payments import PaymentReconciler
from storefront.schemas import (
    AddItemRequest, CancelRequest, CartOut, ConfirmPaymentRequest, CreateOrderRequest,
    OrderOut, PaymentIntentOut, PaymentOut, PaymentRequest, ShipRequest, UpdateItemRequest,
)

router = APIRouter()


def get_carts() -> CartManager:
    return CartManager(SessionLocal)


def get_orders() -> OrderWorkflow:
    return OrderWorkflow(SessionLocal)


def get_payments() -> PaymentReconciler:
    return PaymentReconciler(SessionLocal)


def _owned_order(orders: OrderWorkflow, order_id: int, customer_id: int):
    order = orders.get(order_id)
    if order.customer_id != customer_id:
        raise OrderNotFound(order_id)
    return order


def _owned_payment(payments: PaymentReconciler, orders: OrderWorkflow, intent_id: str, customer_id: int):
    payment = payments.get(intent_id)
    if orders.get(payment.order_id).customer_id != customer_id:
        raise PaymentNotFound(f"No payment recorded for intent {intent_id}")
    return payment


@router.get("/cart", response_model=CartOut)
def view_cart(customer_id: int = Depends(verify_token), carts: CartManager = Depends(get_carts)):
    return carts.get_or_create_open_cart(customer_id)


@router.post("/cart/items", response_model=CartOut)
def add_cart_item(
    request: AddItemRequest,
    customer_id: int = Depends(verify_token),
    carts: CartManager = Depends(get_carts),
):
    carts.add_item(customer_id, request.product_id, request.quantity)
    return carts.get_or_create_open_cart(customer_id)


@router.put("/cart/items/{product_id}", response_model=CartOut)
def update_cart_item(
    product_id: int,
    request: UpdateItemRequest,
    customer_id: int = Depends(verify_token),
    carts: CartManager = Depends(get_carts),
):
    carts.set_item_quantity(customer_id, product_id, request.quantity)
    return carts.get_or_create_open_cart(customer_id)


@router.delete("/cart/items/{product_id}", response_model=CartOut)
def remove_cart_item(
    product_id: int,
    customer_id: int = Depends(verify_token),
    carts: CartManager = Depends(get_carts),
):
    carts.remove_item(customer_id, product_id)
    return carts.get_or_create_open_cart(customer_id)


@router.delete("/cart", response_model=CartOut)
def clear_cart(customer_id: int = Depends(verify_token), carts: CartManager = Depends(get_carts)):
    carts.clear(customer_id)
    return carts.get_or_create_open_cart(customer_id)


@router.post("/orders", response_model=OrderOut, status_code=201)
def create_order(
    request: CreateOrderRequest,
    customer_id: int = Depends(verify_token),
    orders: OrderWorkflow = Depends(get_orders),
):
    return orders.create_from_cart(customer_id, request.shipping_address_id, request.notes)


@router.get("/orders", response_model=List[OrderOut])
def list_my_orders(customer_id: int = Depends(verify_token), orders: OrderWorkflow = Depends(get_orders)):
    return orders.list_for_customer(customer_id)


@router.get("/orders/status/{status}", response_model=List[OrderOut])
def list_orders_by_status(status: str, auth=Depends(verify_token), orders: OrderWorkflow = Depends(get_orders)):
    return orders.list_by_status(status.upper())


@router.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: int, customer_id: int = Depends(verify_token), orders: OrderWorkflow = Depends(get_orders)):
    return _owned_order(orders, order_id, customer_id)


@router.post("/orders/{order_id}/confirm", response_model=OrderOut)
def confirm_order(order_id: int, auth=Depends(verify_token), orders: OrderWorkflow = Depends(get_orders)):
    return orders.confirm(order_id)


@router.post("/orders/{order_id}/ship", response_model=OrderOut)
def ship_order(
    order_id: int,
    request: ShipRequest,
    auth=Depends(verify_token),
    orders: OrderWorkflow = Depends(get_orders),
):
    return orders.ship(order_id, request.tracking_number)


@router.post("/orders/{order_id}/deliver", response_model=OrderOut)
def deliver_order(order_id: int, auth=Depends(verify_token), orders: OrderWorkflow = Depends(get_orders)):
    return orders.deliver(order_id)


@router.post("/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(
    order_id: int,
    request: CancelRequest = None,
    customer_id: int = Depends(verify_token),
    orders: OrderWorkflow = Depends(get_orders),
):
    _owned_order(orders, order_id, customer_id)
    return orders.cancel(order_id, request.reason if request else None)


@router.post("/payments", response_model=PaymentIntentOut)
def create_payment_api(
    request: PaymentRequest,
    customer_id: int = Depends(verify_token),
    orders: OrderWorkflow = Depends(get_orders),
    payments: PaymentReconciler = Depends(get_payments),
):
    _owned_order(orders, request.order_id, customer_id)
    created = payments.create_intent(request.order_id, request.amount, request.currency, request.description)
    return PaymentIntentOut(
        payment_id=created.payment.id,
        intent_id=created.payment.provider_intent_id,
        client_secret=created.client_secret,
        status=created.payment.status,
    )


@router.post("/payments/{intent_id}/confirm", response_model=PaymentOut)
def confirm_payment(
    intent_id: str,
    request: ConfirmPaymentRequest,
    customer_id: int = Depends(verify_token),
    orders: OrderWorkflow = Depends(get_orders),
    payments: PaymentReconciler = Depends(get_payments),
):
    _owned_payment(payments, orders, intent_id, customer_id)
    return payments.confirm(intent_id, request.payment_method_id)


@router.get("/payments/{intent_id}", response_model=PaymentOut)
def get_payment(
    intent_id: str,
    customer_id: int = Depends(verify_token),
    orders: OrderWorkflow = Depends(get_orders),
    payments: PaymentReconciler = Depends(get_payments),
):
    return _owned_payment(payments, orders, intent_id, customer_id)


@router.post("/payments/{intent_id}/refresh", response_model=PaymentOut)
def refresh_payment(
    intent_id: str,
    customer_id: int = Depends(verify_token),
    orders: OrderWorkflow = Depends(get_orders),
    payments: PaymentReconciler = Depends(get_payments),
):
    _owned_payment(payments, orders, intent_id, customer_id)
    return payments.refresh_status(intent_id)


@router.get("/payments/order/{order_id}", response_model=List[PaymentOut])
def list_order_payments(
    order_id: int,
    customer_id: int = Depends(verify_token),
    orders: OrderWorkflow = Depends(get_orders),
    payments: PaymentReconciler = Depends(get_payments),
):
    _owned_order(orders, order_id, customer_id)
    return payments.list_by_order(order_id)


@router.get("/payments", response_model=List[PaymentOut])
def list_my_payments(customer_id: int = Depends(verify_token), payments: PaymentReconciler = Depends(get_payments)):
    return payments.list_by_customer(customer_id)


@router.post("/refund", response_model=PaymentOut)
def refund(
    order_id: int,
    customer_id: int = Depends(verify_token),
    orders: OrderWorkflow = Depends(get_orders),
    payments: PaymentReconciler = Depends(get_payments),
):
    _owned_order(orders, order_id, customer_id)
    return payments.refund(order_id)
