import os
from pathlib import Path
from dotenv import load_dotenv
import stripe

from storefront.errors import GatewayError, InvalidWebhook
from storefront.gateway import IntentResult, PaymentGateway

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

stripe.api_key = os.getenv("STRIPE_SECRET_KEY")


def _text(value):
    # Expandable fields come back either as an id or as the expanded object.
    if isinstance(value, str):
        return value
    inner = getattr(value, "id", None)
    return inner if isinstance(inner, str) else None


def _payload(obj):
    to_dict = getattr(obj, "to_dict", None)
    data = to_dict() if callable(to_dict) else obj
    if isinstance(data, dict):
        return dict(data)
    return {"id": _text(getattr(obj, "id", None))}


def _to_result(intent) -> IntentResult:
    return IntentResult(
        intent_id=intent.id,
        status=intent.status,
        client_secret=_text(getattr(intent, "client_secret", None)),
        payment_method_id=_text(getattr(intent, "payment_method", None)),
        raw=_payload(intent),
    )


def _message(exc: stripe.StripeError) -> str:
    return getattr(exc, "user_message", None) or str(exc) or type(exc).__name__


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents adapter. Errors are wrapped, never retried here."""

    provider = "stripe"

    def __init__(self, webhook_secret=None, return_url=None):
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
        self.return_url = return_url or os.getenv("PAYMENT_RETURN_URL")

    def create_intent(self, amount_minor, currency, customer_ref, metadata,
                      description=None, idempotency_key=None):
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=currency.lower(),
                description=description,
                metadata={**metadata, "customer_ref": customer_ref},
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise GatewayError(_message(exc)) from exc
        return _to_result(intent)

    def confirm(self, intent_id, payment_method_id):
        params = {"payment_method": payment_method_id}
        if self.return_url:
            params["return_url"] = self.return_url
        try:
            intent = stripe.PaymentIntent.confirm(intent_id, **params)
        except stripe.StripeError as exc:
            raise GatewayError(_message(exc)) from exc
        return _to_result(intent)

    def get_status(self, intent_id):
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as exc:
            raise GatewayError(_message(exc)) from exc
        return _to_result(intent)

    def refund(self, intent_id):
        try:
            refund = stripe.Refund.create(payment_intent=intent_id)
        except stripe.StripeError as exc:
            raise GatewayError(_message(exc)) from exc
        return _text(getattr(refund, "status", None)) or "pending"

    def construct_event(self, payload, signature):
        if not signature:
            raise InvalidWebhook("Missing signature")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as exc:
            raise InvalidWebhook("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise InvalidWebhook("Invalid signature") from exc
