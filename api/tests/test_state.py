"""Transition tables and webhook body parsing."""

import pytest

from bookrent.core.errors import InvalidTransition, MalformedEvent
from bookrent.models import AuthorizationStatus, BookingStatus, PaymentLinkStatus
from bookrent.services.transitions import (
    authorization_sources,
    check_authorization_transition,
    check_booking_transition,
    check_payment_transition,
    is_terminal_payment_status,
    payment_sources,
)
from bookrent.services.webhook_events import EventKind, parse_webhook_event

# ---------------------------------------------------------------------------
# Transition tables
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "current,target",
    [
        (PaymentLinkStatus.PENDING, PaymentLinkStatus.ACTIVE),
        (PaymentLinkStatus.PENDING, PaymentLinkStatus.PAID),
        (PaymentLinkStatus.ACTIVE, PaymentLinkStatus.PAID),
        (PaymentLinkStatus.ACTIVE, PaymentLinkStatus.CANCELLED),
        (PaymentLinkStatus.ACTIVE, PaymentLinkStatus.EXPIRED),
    ],
)
def test_allowed_payment_transitions(current, target):
    check_payment_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (PaymentLinkStatus.PAID, PaymentLinkStatus.PENDING),
        (PaymentLinkStatus.PAID, PaymentLinkStatus.CANCELLED),
        (PaymentLinkStatus.CANCELLED, PaymentLinkStatus.PAID),
        (PaymentLinkStatus.EXPIRED, PaymentLinkStatus.ACTIVE),
        (PaymentLinkStatus.ACTIVE, PaymentLinkStatus.PENDING),
    ],
)
def test_rejected_payment_transitions(current, target):
    with pytest.raises(InvalidTransition):
        check_payment_transition(current, target)


def test_terminal_payment_statuses():
    assert is_terminal_payment_status(PaymentLinkStatus.PAID)
    assert is_terminal_payment_status(PaymentLinkStatus.CANCELLED)
    assert is_terminal_payment_status(PaymentLinkStatus.EXPIRED)
    assert not is_terminal_payment_status(PaymentLinkStatus.ACTIVE)


def test_paid_is_entered_only_from_open_states():
    assert set(payment_sources(PaymentLinkStatus.PAID)) == {PaymentLinkStatus.PENDING, PaymentLinkStatus.ACTIVE}
    assert set(authorization_sources(AuthorizationStatus.CAPTURED)) == {AuthorizationStatus.AUTHORIZED}


def test_authorization_transitions():
    check_authorization_transition(AuthorizationStatus.PENDING, AuthorizationStatus.AUTHORIZED)
    check_authorization_transition(AuthorizationStatus.AUTHORIZED, AuthorizationStatus.RELEASED)
    with pytest.raises(InvalidTransition):
        check_authorization_transition(AuthorizationStatus.PENDING, AuthorizationStatus.CAPTURED)
    with pytest.raises(InvalidTransition):
        check_authorization_transition(AuthorizationStatus.RELEASED, AuthorizationStatus.CAPTURED)


def test_booking_transitions():
    check_booking_transition(BookingStatus.DRAFT, BookingStatus.CONFIRMED)
    check_booking_transition(BookingStatus.CANCELLED, BookingStatus.DRAFT)
    with pytest.raises(InvalidTransition):
        check_booking_transition(BookingStatus.CONFIRMED, BookingStatus.DRAFT)


# ---------------------------------------------------------------------------
# Webhook parsing
# ---------------------------------------------------------------------------


def test_parse_flat_shape():
    event = parse_webhook_event(
        {"type": "payment.succeeded", "data": {"session_id": "cs_1", "transaction_id": "pi_1", "status": "paid"}}
    )
    assert event.kind == EventKind.PAYMENT_SUCCEEDED
    assert event.session_id == "cs_1"
    assert event.transaction_id == "pi_1"
    assert event.status == "paid"


def test_parse_nested_shape_and_gateway_event_names():
    event = parse_webhook_event(
        {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_2", "payment_intent": "pi_2", "payment_status": "paid"}},
        }
    )
    assert event.kind == EventKind.PAYMENT_SUCCEEDED
    assert event.identifiers == ("cs_2", "pi_2")
    assert event.status == "paid"


def test_parse_expanded_payment_intent_object():
    event = parse_webhook_event(
        {"type": "checkout.session.expired", "data": {"object": {"id": "cs_3", "payment_intent": {"id": "pi_3"}}}}
    )
    assert event.kind == EventKind.SESSION_EXPIRED
    assert event.transaction_id == "pi_3"


def test_parse_unknown_type_without_ids_is_not_an_error():
    event = parse_webhook_event({"type": "customer.created", "data": {"object": {"email": "x@y.z"}}})
    assert event.kind is None


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"type": "", "data": {"session_id": "cs_1"}},
        {"type": "payment.succeeded"},
        {"type": "payment.succeeded", "data": "cs_1"},
        {"type": "payment.succeeded", "data": {"status": "paid"}},
    ],
)
def test_parse_malformed(body):
    with pytest.raises(MalformedEvent):
        parse_webhook_event(body)
