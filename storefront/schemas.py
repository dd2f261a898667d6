from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from storefront.states import CartStatus, OrderPaymentStatus, OrderStatus, PaymentStatus


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class AddItemRequest(BaseModel):
    product_id: int
    quantity: int = 1


class UpdateItemRequest(BaseModel):
    quantity: int


class CartItemOut(ORMModel):
    product_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class CartOut(ORMModel):
    id: int
    customer_id: int
    status: CartStatus
    items: List[CartItemOut]
    total: Decimal
    item_count: int


class CreateOrderRequest(BaseModel):
    shipping_address_id: Optional[int] = None
    notes: Optional[str] = None


class ShipRequest(BaseModel):
    tracking_number: str


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class OrderItemOut(ORMModel):
    product_id: int
    product_name: str
    sku: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class PaymentOut(ORMModel):
    id: int
    order_id: int
    provider: str
    status: PaymentStatus
    amount: Decimal
    currency: str
    provider_intent_id: str
    provider_payment_method_id: Optional[str] = None
    receipt_url: Optional[str] = None
    created_at: datetime


class OrderOut(ORMModel):
    id: int
    customer_id: int
    status: OrderStatus
    payment_status: OrderPaymentStatus
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    currency: str
    shipping_address_id: Optional[int] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    items: List[OrderItemOut]
    payments: List[PaymentOut]
    created_at: datetime
    updated_at: datetime


class PaymentRequest(BaseModel):
    order_id: int
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    description: Optional[str] = None


class PaymentIntentOut(BaseModel):
    payment_id: int
    intent_id: str
    client_secret: Optional[str] = None
    status: PaymentStatus


class ConfirmPaymentRequest(BaseModel):
    payment_method_id: str
