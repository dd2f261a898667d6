"""Payment reconciler: applies provider payment status to local payments and orders.

The provider intent id is the idempotency key. Replaying a notification any
number of times converges on the same payment and order state, and an order
is moved to PAID at most once however many SUCCEEDED deliveries arrive.
Gateway calls are made outside database transactions; their results are then
applied through ``reconcile`` in a single unit of work.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from storefront.database import unit_of_work
from storefront.errors import GatewayError, InvalidAmount, OrderNotFound, OrderNotPayable, PaymentNotFound
from storefront.gateway import PaymentGateway, get_gateway
from storefront.models import Order, Payment
from storefront.orders import OrderWorkflow
from storefront.states import (
    PAYMENT_TRANSITIONS, PROVIDER_STATUS_MAP, OrderPaymentStatus, OrderStatus, PaymentStatus,
    can_transition, map_provider_status,
)

logger = structlog.get_logger(__name__)

# Orders in these fulfillment states are never marked paid.
UNPAYABLE_ORDER_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.FAILED})

FAILED_REFUND_STATUSES = frozenset({"failed", "canceled"})


# Fallback when a payment_intent.* event object carries no status of its own.
INTENT_EVENT_STATUS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.processing": "processing",
    "payment_intent.requires_action": "requires_action",
    "payment_intent.payment_failed": "requires_payment_method",
    "payment_intent.canceled": "canceled",
}

CHARGE_EVENT_STATUS = {
    "charge.succeeded": "succeeded",
    "charge.refunded": "refunded",
}


def _field(obj, key):
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _as_dict(obj):
    to_dict = getattr(obj, "to_dict", None)
    data = to_dict() if callable(to_dict) else obj
    return dict(data) if isinstance(data, dict) else None


def to_minor_units(amount) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class IntentCreated:
    payment: Payment
    client_secret: str | None


class PaymentReconciler:

    def __init__(self, session_factory, gateway: PaymentGateway = None, workflow: OrderWorkflow = None):
        self.session_factory = session_factory
        self._gateway = gateway
        self.workflow = workflow or OrderWorkflow(session_factory)

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway or get_gateway()

    def create_intent(self, order_id: int, amount=None, currency: str = None,
                      description: str = None) -> IntentCreated:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            if order.status in UNPAYABLE_ORDER_STATUSES:
                raise OrderNotPayable(f"Order {order_id} is {order.status.value} and cannot be paid")
            if order.payment_status is not OrderPaymentStatus.UNPAID:
                raise OrderNotPayable(f"Order {order_id} is already {order.payment_status.value}")
            customer_id = order.customer_id
            attempt = len(order.payments) + 1
            amount = Decimal(amount) if amount is not None else order.total
            currency = (currency or order.currency).upper()

        if amount <= 0:
            raise InvalidAmount(f"Payment amount must be greater than 0, got {amount}")

        intent = self.gateway.create_intent(
            to_minor_units(amount),
            currency,
            customer_ref=str(customer_id),
            metadata={"order_id": str(order_id), "customer_id": str(customer_id)},
            description=description or f"Payment for order #{order_id}",
            idempotency_key=f"order-{order_id}-attempt-{attempt}",
        )

        try:
            with unit_of_work(self.session_factory) as db:
                payment = Payment(
                    order_id=order_id,
                    provider=self.gateway.provider,
                    status=map_provider_status(intent.status),
                    amount=amount,
                    currency=currency,
                    provider_intent_id=intent.intent_id,
                    raw_payload=intent.raw,
                )
                db.add(payment)
        except IntegrityError:
            # Same idempotency key, same provider intent: already recorded by a concurrent call.
            payment = self.get(intent.intent_id)

        logger.info(
            "Payment intent created",
            order_id=order_id,
            intent_id=intent.intent_id,
            amount=str(amount),
            currency=currency,
        )
        return IntentCreated(payment=payment, client_secret=intent.client_secret)

    def confirm(self, intent_id: str, payment_method_id: str) -> Payment:
        self.get(intent_id)
        result = self.gateway.confirm(intent_id, payment_method_id)
        return self._apply_result(result)

    def refresh_status(self, intent_id: str) -> Payment:
        self.get(intent_id)
        result = self.gateway.get_status(intent_id)
        return self._apply_result(result)

    def refund(self, order_id: int) -> Payment:
        """Refund the succeeded payment of an order. Stock is not touched."""
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            paid = next((p for p in order.payments if p.status is PaymentStatus.SUCCEEDED), None)
            if paid is None:
                raise PaymentNotFound(f"Order {order_id} has no succeeded payment to refund")
            intent_id = paid.provider_intent_id

        refund_status = self.gateway.refund(intent_id)
        if refund_status in FAILED_REFUND_STATUSES:
            logger.error("Refund rejected by provider", order_id=order_id, intent_id=intent_id,
                         refund_status=refund_status)
            raise GatewayError(f"Refund of {intent_id} was {refund_status}")
        logger.info("Refund requested", order_id=order_id, intent_id=intent_id, refund_status=refund_status)
        return self.reconcile(intent_id, "refunded")

    def _apply_result(self, result) -> Payment:
        payment = self.reconcile(
            result.intent_id,
            result.status,
            result.payment_method_id,
            receipt_url=result.receipt_url,
            payload=result.raw,
        )
        if payment is None:
            raise PaymentNotFound(f"No payment recorded for intent {result.intent_id}")
        return payment

    def reconcile(self, provider_intent_id: str, provider_status: str,
                  provider_payment_method_id: str = None, receipt_url: str = None,
                  payload: dict = None):
        """Apply one provider status report. Returns the payment, or None if untracked.

        An unknown intent id is a stale or foreign notification: it is logged
        and dropped rather than raised, since the usual caller is a webhook.
        """
        status = map_provider_status(provider_status)
        if str(provider_status).lower() not in PROVIDER_STATUS_MAP:
            logger.warning(
                "Unrecognized provider status mapped to FAILED",
                intent_id=provider_intent_id,
                provider_status=provider_status,
            )

        with unit_of_work(self.session_factory) as db:
            payment = db.execute(
                select(Payment).where(Payment.provider_intent_id == provider_intent_id).with_for_update()
            ).scalar_one_or_none()
            if payment is None:
                logger.warning("Payment not found for provider notification", intent_id=provider_intent_id)
                return None

            current = payment.status
            if current is not status and not can_transition(PAYMENT_TRANSITIONS, current, status):
                logger.warning(
                    "Ignoring stale payment notification",
                    intent_id=provider_intent_id,
                    current=current.value,
                    reported=status.value,
                )
                return payment

            if provider_payment_method_id:
                payment.provider_payment_method_id = provider_payment_method_id
            if receipt_url:
                payment.receipt_url = receipt_url
            if payload:
                payment.raw_payload = payload

            if current is status:
                logger.info("Payment notification already applied", intent_id=provider_intent_id, status=status.value)
                return payment

            payment.status = status
            db.flush()
            logger.info(
                "Payment status changed",
                intent_id=provider_intent_id,
                from_status=current.value,
                to_status=status.value,
            )

            if status is PaymentStatus.SUCCEEDED:
                self._mark_order_paid(db, payment)
            elif status is PaymentStatus.REFUNDED:
                self._mark_order_refunded(db, payment)
        return payment

    def _mark_order_paid(self, db, payment: Payment) -> None:
        order = self.workflow.lock(db, payment.order_id)
        if order.payment_status is OrderPaymentStatus.PAID:
            logger.warning(
                "Order already paid by another payment",
                order_id=order.id,
                intent_id=payment.provider_intent_id,
            )
            return
        if order.payment_status is not OrderPaymentStatus.UNPAID or order.status in UNPAYABLE_ORDER_STATUSES:
            logger.warning(
                "Payment succeeded for an order that cannot be marked paid",
                order_id=order.id,
                order_status=order.status.value,
                payment_status=order.payment_status.value,
                intent_id=payment.provider_intent_id,
            )
            return
        self.workflow.record_payment(
            db, order, OrderPaymentStatus.PAID, f"Payment {payment.provider_intent_id} succeeded"
        )

    def _mark_order_refunded(self, db, payment: Payment) -> None:
        order = self.workflow.lock(db, payment.order_id)
        still_paid = any(
            p.status is PaymentStatus.SUCCEEDED for p in order.payments if p.id != payment.id
        )
        if order.payment_status is not OrderPaymentStatus.PAID or still_paid:
            return
        self.workflow.record_payment(
            db, order, OrderPaymentStatus.REFUNDED, f"Payment {payment.provider_intent_id} refunded"
        )

    def handle_event(self, event):
        """Reconcile one decoded provider webhook event. Unrelated event types are ignored."""
        event_type = _field(event, "type") or ""
        obj = _field(_field(event, "data") or {}, "object") or {}

        if event_type.startswith("payment_intent."):
            intent_id = _field(obj, "id")
            status = _field(obj, "status") or INTENT_EVENT_STATUS.get(event_type)
            payment_method = _field(obj, "payment_method")
            receipt_url = None
        elif event_type in CHARGE_EVENT_STATUS:
            intent_id = _field(obj, "payment_intent")
            status = CHARGE_EVENT_STATUS[event_type]
            payment_method = _field(obj, "payment_method")
            receipt_url = _field(obj, "receipt_url")
        else:
            logger.debug("Ignoring provider event", event_type=event_type)
            return None

        if not intent_id or not status:
            logger.warning("Provider event without intent or status", event_type=event_type)
            return None

        return self.reconcile(
            intent_id,
            status,
            payment_method if isinstance(payment_method, str) else None,
            receipt_url=receipt_url,
            payload=_as_dict(obj),
        )

    def get(self, intent_id: str) -> Payment:
        with self.session_factory() as db:
            payment = db.execute(
                select(Payment).where(Payment.provider_intent_id == intent_id)
            ).scalar_one_or_none()
            if payment is None:
                raise PaymentNotFound(f"No payment recorded for intent {intent_id}")
            return payment

    def list_by_order(self, order_id: int):
        with self.session_factory() as db:
            return db.execute(
                select(Payment).where(Payment.order_id == order_id).order_by(Payment.id)
            ).scalars().all()

    def list_by_customer(self, customer_id: int):
        with self.session_factory() as db:
            return db.execute(
                select(Payment)
                .join(Order, Payment.order_id == Order.id)
                .where(Order.customer_id == customer_id)
                .order_by(Payment.created_at.desc(), Payment.id.desc())
            ).scalars().all()
