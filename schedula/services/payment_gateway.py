# Overview: Payment gateway adapter; Stripe payment intents, refunds and verified webhook events.

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import stripe


EVENT_PAYMENT_SUCCEEDED = "payment_succeeded"
EVENT_PAYMENT_FAILED = "payment_failed"

# Gateway event type -> internal event name
STRIPE_EVENT_TYPES = {
    "payment_intent.succeeded": EVENT_PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EVENT_PAYMENT_FAILED,
}


class PaymentGatewayError(Exception):
    """Raised when the gateway rejects or fails a call."""
    pass


class WebhookVerificationError(PaymentGatewayError):
    """Raised when a webhook payload or signature does not verify."""
    pass


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: str


@dataclass(frozen=True)
class RefundReceipt:
    id: str
    amount_cents: int
    status: str


@dataclass(frozen=True)
class GatewayEvent:
    id: str
    type: str  # EVENT_PAYMENT_SUCCEEDED / EVENT_PAYMENT_FAILED / raw type if unhandled
    payment_intent_id: str | None
    charge_id: str | None = None


class PaymentGateway(Protocol):
    def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict,
        *,
        destination_account: str | None = None,
        application_fee_cents: int | None = None,
        description: str | None = None,
    ) -> PaymentIntent: ...

    def refund(self, charge_id: str, amount_cents: int, metadata: dict) -> RefundReceipt: ...

    def parse_webhook(self, payload: bytes, signature: str | None) -> GatewayEvent: ...


class StripeGateway:
    """
    Stripe implementation of the payment gateway interface.

    The gateway's own ledger is authoritative for money movement; this class
    only translates calls and events. Amounts are integer cents.
    """

    def __init__(self, api_key: str, webhook_secret: str | None = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict,
        *,
        destination_account: str | None = None,
        application_fee_cents: int | None = None,
        description: str | None = None,
    ) -> PaymentIntent:
        params = {
            "amount": int(amount_cents),
            "currency": currency.lower(),
            "metadata": {k: str(v) for k, v in metadata.items()},
        }
        if description:
            params["description"] = description
        if destination_account:
            params["transfer_data"] = {"destination": destination_account}
            if application_fee_cents:
                params["application_fee_amount"] = int(application_fee_cents)
        try:
            intent = stripe.PaymentIntent.create(api_key=self.api_key, **params)
        except stripe.StripeError as exc:
            raise PaymentGatewayError(str(exc)) from exc
        return PaymentIntent(id=intent["id"], client_secret=intent["client_secret"])

    def refund(self, charge_id: str, amount_cents: int, metadata: dict) -> RefundReceipt:
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                charge=charge_id,
                amount=int(amount_cents),
                metadata={k: str(v) for k, v in metadata.items()},
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(str(exc)) from exc
        return RefundReceipt(id=refund["id"], amount_cents=int(refund["amount"]), status=refund["status"])

    def parse_webhook(self, payload: bytes, signature: str | None) -> GatewayEvent:
        if not self.webhook_secret:
            raise WebhookVerificationError("Webhook secret not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except ValueError as exc:
            raise WebhookVerificationError("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError("Invalid signature") from exc

        obj = event["data"]["object"]
        event_type = STRIPE_EVENT_TYPES.get(event["type"], event["type"])
        payment_intent_id = obj.get("id") if event["type"].startswith("payment_intent.") else None
        return GatewayEvent(
            id=event["id"],
            type=event_type,
            payment_intent_id=payment_intent_id,
            charge_id=obj.get("latest_charge") if payment_intent_id else None,
        )
