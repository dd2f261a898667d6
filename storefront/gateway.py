"""Payment gateway port and the active-gateway registry.

The engine talks to the payment provider only through ``PaymentGateway``:
create an intent, confirm it, read its status, refund it, and authenticate
webhook deliveries. Every method may raise ``GatewayError``, which the engine
surfaces to its caller without retrying.
"""

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from uuid import uuid4

from storefront.errors import GatewayError, InvalidWebhook


@dataclass(frozen=True)
class IntentResult:
    """Provider view of one payment intent."""

    intent_id: str
    status: str
    client_secret: str | None = None
    payment_method_id: str | None = None
    receipt_url: str | None = None
    raw: dict = field(default_factory=dict)


class PaymentGateway(ABC):
    provider = "unknown"

    @abstractmethod
    def create_intent(
        self,
        amount_minor: int,
        currency: str,
        customer_ref: str,
        metadata: dict,
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> IntentResult:
        ...

    @abstractmethod
    def confirm(self, intent_id: str, payment_method_id: str) -> IntentResult:
        ...

    @abstractmethod
    def get_status(self, intent_id: str) -> IntentResult:
        ...

    @abstractmethod
    def refund(self, intent_id: str) -> str:
        """Refund the captured amount of an intent; returns the refund status."""
        ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        """Authenticate and decode a webhook delivery. Raises InvalidWebhook."""
        ...


class FakeGateway(PaymentGateway):
    """In-memory gateway for development and tests. Never calls out."""

    provider = "fake"
    signature = "test-signature"

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "Card declined"
        self.intents: dict[str, str] = {}
        self.calls: list[dict] = []

    def configure(self, should_succeed: bool, failure_reason: str = "Card declined") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def create_intent(self, amount_minor, currency, customer_ref, metadata,
                      description=None, idempotency_key=None):
        self.calls.append({
            "method": "create_intent",
            "amount": amount_minor,
            "currency": currency,
            "customer_ref": customer_ref,
            "metadata": dict(metadata),
            "idempotency_key": idempotency_key,
        })
        if not self.should_succeed:
            raise GatewayError(self.failure_reason)

        intent_id = f"pi_fake_{uuid4().hex[:16]}"
        self.intents[intent_id] = "requires_payment_method"
        return IntentResult(
            intent_id=intent_id,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret_{uuid4().hex[:8]}",
            raw={"id": intent_id, "amount": amount_minor, "currency": currency.lower()},
        )

    def confirm(self, intent_id, payment_method_id):
        self.calls.append({"method": "confirm", "intent_id": intent_id, "payment_method_id": payment_method_id})
        self._require(intent_id)
        if not self.should_succeed:
            self.intents[intent_id] = "requires_payment_method"
            raise GatewayError(self.failure_reason)

        self.intents[intent_id] = "succeeded"
        return IntentResult(
            intent_id=intent_id,
            status="succeeded",
            payment_method_id=payment_method_id,
            receipt_url=f"https://receipts.example.test/{intent_id}",
            raw={"id": intent_id, "status": "succeeded", "payment_method": payment_method_id},
        )

    def get_status(self, intent_id):
        self.calls.append({"method": "get_status", "intent_id": intent_id})
        status = self._require(intent_id)
        return IntentResult(intent_id=intent_id, status=status, raw={"id": intent_id, "status": status})

    def refund(self, intent_id):
        self.calls.append({"method": "refund", "intent_id": intent_id})
        self._require(intent_id)
        if not self.should_succeed:
            raise GatewayError(self.failure_reason)
        self.intents[intent_id] = "refunded"
        return "succeeded"

    def construct_event(self, payload, signature):
        if signature != self.signature:
            raise InvalidWebhook("Invalid signature")
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise InvalidWebhook("Invalid payload") from exc

    def _require(self, intent_id):
        try:
            return self.intents[intent_id]
        except KeyError:
            raise GatewayError(f"No such payment_intent: '{intent_id}'") from None


_current_gateway: PaymentGateway | None = None


def get_gateway() -> PaymentGateway:
    """Return the active gateway, built from PAYMENT_GATEWAY on first use."""
    global _current_gateway
    if _current_gateway is None:
        if os.getenv("PAYMENT_GATEWAY", "fake").lower() == "stripe":
            from storefront.stripe_service import StripeGateway

            _current_gateway = StripeGateway()
        else:
            _current_gateway = FakeGateway()
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None
