"""Payment link gateway adapter: stub mode, Stripe session parameters, webhook decoding."""

import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import stripe

from bookrent.core.config import Settings
from bookrent.core.errors import GatewayUnavailable, MalformedEvent, PaymentRequestInvalid
from bookrent.models import PaymentIntent, PaymentMethodType
from bookrent.services.gateway import PaymentLinkGateway, construct_webhook_event, to_minor_units


@pytest.fixture
def live_gateway(monkeypatch):
    """A gateway with a (fake) secret key and Stripe's session API replaced by a mock."""
    # Restore the module-level Stripe globals the adapter sets
    monkeypatch.setattr(stripe, "api_key", stripe.api_key)
    monkeypatch.setattr(stripe, "max_network_retries", stripe.max_network_retries)
    monkeypatch.setattr(stripe, "default_http_client", stripe.default_http_client)

    session = SimpleNamespace(id="cs_live_123", url="https://checkout.stripe.com/c/pay/cs_live_123")
    create = MagicMock(return_value=session)
    monkeypatch.setattr(stripe.checkout.Session, "create", create)
    gateway = PaymentLinkGateway(Settings(stripe_secret_key="sk_test_x", app_domain="https://kingrent.example/"))
    return gateway, create


def test_to_minor_units():
    assert to_minor_units(Decimal("10.50")) == 1050
    assert to_minor_units(Decimal("0.01")) == 1
    assert to_minor_units(Decimal("307.50")) == 30750


def test_stub_mode_returns_local_preview_link(gateway):
    assert gateway.is_stub
    link = gateway.create_payment_link(
        7, Decimal("300.00"), "EUR", PaymentIntent.DOWN_PAYMENT, PaymentMethodType.VISA_MASTERCARD, 48, "Down payment"
    )
    assert link.payment_id.startswith("cs_test_")
    assert "booking=7" in link.redirect_url
    assert "amount=30000" in link.redirect_url


def test_stub_links_are_unique(gateway):
    args = (7, Decimal("300.00"), "EUR", PaymentIntent.DOWN_PAYMENT, PaymentMethodType.VISA_MASTERCARD, 48, "Down")
    assert gateway.create_payment_link(*args).payment_id != gateway.create_payment_link(*args).payment_id


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00")])
def test_non_positive_amount_is_rejected(gateway, amount):
    with pytest.raises(PaymentRequestInvalid):
        gateway.create_payment_link(
            1, amount, "EUR", PaymentIntent.FULL_PAYMENT, PaymentMethodType.VISA_MASTERCARD, 48, "Rental"
        )


def test_checkout_session_parameters(live_gateway):
    gateway, create = live_gateway
    before = datetime.now(UTC)

    link = gateway.create_payment_link(
        12, Decimal("307.50"), "EUR", PaymentIntent.DOWN_PAYMENT, PaymentMethodType.VISA_MASTERCARD, 72, "Down payment"
    )

    assert link.payment_id == "cs_live_123"
    assert link.redirect_url.startswith("https://checkout.stripe.com/")
    # Sessions are capped at 24 hours whatever the link expiry asks for
    assert link.expires_at <= before + timedelta(hours=24, seconds=5)

    kwargs = create.call_args.kwargs
    price = kwargs["line_items"][0]["price_data"]
    assert price["unit_amount"] == 30750
    assert price["currency"] == "eur"
    assert kwargs["metadata"]["booking_id"] == "12"
    assert kwargs["metadata"]["payment_intent"] == "down_payment"
    assert "capture_method" not in kwargs["payment_intent_data"]
    assert kwargs["idempotency_key"].startswith("link-12-down_payment-")
    assert kwargs["success_url"].startswith("https://kingrent.example/payment-confirmation")


def test_security_deposit_uses_manual_capture(live_gateway):
    gateway, create = live_gateway

    gateway.create_payment_link(
        12, Decimal("500.00"), "EUR", PaymentIntent.SECURITY_DEPOSIT, PaymentMethodType.AMEX, 72, "Deposit hold"
    )

    assert create.call_args.kwargs["payment_intent_data"]["capture_method"] == "manual"


def test_stripe_error_becomes_gateway_unavailable(live_gateway):
    gateway, create = live_gateway
    create.side_effect = stripe.StripeError("network down")

    with pytest.raises(GatewayUnavailable):
        gateway.create_payment_link(
            12, Decimal("100.00"), "EUR", PaymentIntent.FULL_PAYMENT, PaymentMethodType.VISA_MASTERCARD, 48, "Rental"
        )


def test_capture_sends_minor_units(live_gateway, monkeypatch):
    gateway, _ = live_gateway
    capture = MagicMock()
    monkeypatch.setattr(stripe.PaymentIntent, "capture", capture)

    gateway.capture_authorization("pi_hold", Decimal("120.00"))

    capture.assert_called_once_with("pi_hold", amount_to_capture=12000)


def test_expire_session_closes_checkout_page(live_gateway, monkeypatch):
    gateway, _ = live_gateway
    expire = MagicMock()
    monkeypatch.setattr(stripe.checkout.Session, "expire", expire)

    assert gateway.expire_session("cs_live_123") is True
    expire.assert_called_once_with("cs_live_123")


def test_expire_session_refused_by_gateway_is_not_an_error(live_gateway, monkeypatch):
    gateway, _ = live_gateway
    monkeypatch.setattr(
        stripe.checkout.Session, "expire", MagicMock(side_effect=stripe.StripeError("session is complete"))
    )

    assert gateway.expire_session("cs_live_123") is False


def test_expire_session_in_stub_mode(gateway, monkeypatch):
    expire = MagicMock()
    monkeypatch.setattr(stripe.checkout.Session, "expire", expire)

    assert gateway.expire_session("cs_test_abc") is True
    expire.assert_not_called()


def test_release_failure_becomes_gateway_unavailable(live_gateway, monkeypatch):
    gateway, _ = live_gateway
    monkeypatch.setattr(stripe.PaymentIntent, "cancel", MagicMock(side_effect=stripe.StripeError("timeout")))

    with pytest.raises(GatewayUnavailable):
        gateway.release_authorization("pi_visa")


# ---------------------------------------------------------------------------
# Webhook decoding
# ---------------------------------------------------------------------------


def test_construct_event_without_secret(app_settings):
    body = json.dumps({"type": "payment.succeeded", "data": {"session_id": "cs_1"}}).encode()
    assert construct_webhook_event(body, "", app_settings)["type"] == "payment.succeeded"


@pytest.mark.parametrize("payload", [b"{oops", b"[1, 2, 3]", b'"text"'])
def test_construct_event_rejects_non_objects(app_settings, payload):
    with pytest.raises(MalformedEvent):
        construct_webhook_event(payload, "", app_settings)


def test_construct_event_rejects_bad_signature():
    settings = Settings(stripe_webhook_secret="whsec_test")
    with pytest.raises(MalformedEvent):
        construct_webhook_event(b'{"type": "payment.succeeded"}', "t=1,v1=bogus", settings)
