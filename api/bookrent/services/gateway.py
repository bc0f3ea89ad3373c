"""Payment link gateway adapter.

Wraps the Stripe Checkout API behind the one contract the payment services
need: create a hosted payment (or card hold) page and hand back its id and
redirect URL. The adapter never writes to the database; callers persist the
returned identifiers only after the call succeeded.

With no secret key configured the adapter runs in stub mode and returns
predictable local preview links, so tests and local development never reach
Stripe.
"""

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import stripe

from bookrent.core.config import Settings
from bookrent.core.errors import GatewayUnavailable, MalformedEvent, PaymentRequestInvalid
from bookrent.models.payment import PaymentIntent, PaymentMethodType

logger = logging.getLogger(__name__)

# Stripe Checkout sessions live between 30 minutes and 24 hours
MIN_SESSION_HOURS = 1
MAX_SESSION_HOURS = 24


@dataclass
class PaymentLink:
    payment_id: str
    redirect_url: str
    expires_at: datetime


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


class PaymentLinkGateway:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._configured = False

    @property
    def is_stub(self) -> bool:
        return not self.settings.stripe_secret_key

    def _configure(self) -> None:
        """Set the API key, request timeout and retry policy once per adapter."""
        if self._configured:
            return
        stripe.api_key = self.settings.stripe_secret_key
        # Creation calls carry an idempotency key, so one network retry cannot duplicate a session
        stripe.max_network_retries = 1
        stripe.default_http_client = stripe.RequestsClient(timeout=self.settings.gateway_timeout_seconds)
        self._configured = True

    def _session_hours(self, expiry_hours: int) -> int:
        return max(MIN_SESSION_HOURS, min(expiry_hours, MAX_SESSION_HOURS))

    def _stub_link(self, booking_id: int, amount: Decimal, expires_at: datetime) -> PaymentLink:
        session_id = f"cs_test_{uuid4().hex}"
        url = (
            f"{self.settings.app_domain.rstrip('/')}/payments/preview?"
            f"booking={booking_id}&amount={to_minor_units(amount)}&session={session_id}"
        )
        return PaymentLink(payment_id=session_id, redirect_url=url, expires_at=expires_at)

    def create_payment_link(
        self,
        booking_id: int,
        amount: Decimal,
        currency: str,
        intent: PaymentIntent,
        payment_method_type: PaymentMethodType,
        expiry_hours: int,
        description: str,
    ) -> PaymentLink:
        """Create one hosted payment session. Security deposits place a card hold (manual capture)."""
        if amount <= 0:
            raise PaymentRequestInvalid("Payment link amount must be positive")

        expires_at = datetime.now(UTC) + timedelta(hours=self._session_hours(expiry_hours))

        if self.is_stub:
            link = self._stub_link(booking_id, amount, expires_at)
            logger.info("Stub payment link %s for booking %s (%s %s)", link.payment_id, booking_id, amount, currency)
            return link

        self._configure()

        metadata = {
            "booking_id": str(booking_id),
            "payment_intent": intent.value,
            "payment_method_type": payment_method_type.value,
        }
        payment_intent_data: dict = {"metadata": metadata}
        if intent == PaymentIntent.SECURITY_DEPOSIT:
            payment_intent_data["capture_method"] = "manual"

        domain = self.settings.app_domain.rstrip("/")
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "quantity": 1,
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": to_minor_units(amount),
                            "product_data": {"name": description},
                        },
                    }
                ],
                success_url=f"{domain}/payment-confirmation?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{domain}/booking-form?booking={booking_id}&payment_failed=true",
                expires_at=int(expires_at.timestamp()),
                metadata=metadata,
                payment_intent_data=payment_intent_data,
                idempotency_key=f"link-{booking_id}-{intent.value}-{uuid4().hex}",
            )
        except stripe.StripeError as exc:
            logger.error("Payment link creation failed for booking %s: %s", booking_id, exc)
            raise GatewayUnavailable(f"Payment gateway error: {exc}") from exc

        return PaymentLink(payment_id=session.id, redirect_url=session.url, expires_at=expires_at)

    def expire_session(self, session_id: str) -> bool:
        """Close a hosted payment page so the client can no longer pay it.

        Returns False when the gateway refused, e.g. because the session was
        already completed or expired on its side.
        """
        if self.is_stub:
            logger.info("Stub expiry of session %s", session_id)
            return True
        self._configure()
        try:
            stripe.checkout.Session.expire(session_id)
        except stripe.StripeError as exc:
            logger.warning("Could not expire checkout session %s: %s", session_id, exc)
            return False
        return True

    def capture_authorization(self, transaction_id: str, amount: Decimal) -> None:
        """Capture part or all of a card hold."""
        if self.is_stub:
            logger.info("Stub capture of %s on %s", amount, transaction_id)
            return
        self._configure()
        try:
            stripe.PaymentIntent.capture(transaction_id, amount_to_capture=to_minor_units(amount))
        except stripe.StripeError as exc:
            raise GatewayUnavailable(f"Capture failed: {exc}") from exc

    def release_authorization(self, transaction_id: str) -> None:
        """Release a card hold without charging it."""
        if self.is_stub:
            logger.info("Stub release of %s", transaction_id)
            return
        self._configure()
        try:
            stripe.PaymentIntent.cancel(transaction_id)
        except stripe.StripeError as exc:
            raise GatewayUnavailable(f"Release failed: {exc}") from exc


def construct_webhook_event(payload: bytes, sig_header: str, settings: Settings) -> dict:
    """Verify the signature (when a webhook secret is configured) and decode the body."""
    body = payload.decode("utf-8")
    if settings.stripe_webhook_secret:
        try:
            stripe.WebhookSignature.verify_header(body, sig_header, settings.stripe_webhook_secret)
        except stripe.SignatureVerificationError:
            raise MalformedEvent("Invalid webhook signature") from None
    try:
        event = json.loads(body)
    except ValueError:
        raise MalformedEvent("Webhook body is not valid JSON") from None
    if not isinstance(event, dict):
        raise MalformedEvent("Webhook body must be a JSON object")
    return event
